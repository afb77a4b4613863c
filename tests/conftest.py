"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for kube_mock / aws_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from aws_mock import MockCloudProvider  # noqa: E402
from kube_mock import MockObjectStore  # noqa: E402


@pytest.fixture
def store() -> MockObjectStore:
    """In-memory object store."""
    return MockObjectStore()


@pytest.fixture
def provider() -> MockCloudProvider:
    """Fake cloud provider whose first instance is i-123."""
    return MockCloudProvider(ids=["i-123"])
