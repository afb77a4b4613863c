"""AWS mocks for testing.

Provides:
- MockCloudProvider: CloudProvider fake for reconciler tests (drift, failures,
  slow calls)
- MockSession / MockEc2Client: boto3 stand-ins for Ec2Provider tests

Usage:
    provider = MockCloudProvider(ids=["i-123"])
    provider.set_state("i-123", "running")
    provider.vanish("i-123")
"""

from .ec2_client import MockEc2Client, MockSession, client_error
from .provider import MockCloudProvider, MockInstance, provider_error

__all__ = [
    "MockCloudProvider",
    "MockEc2Client",
    "MockInstance",
    "MockSession",
    "client_error",
    "provider_error",
]
