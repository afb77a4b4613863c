"""Pydantic models for the Ec2Instance custom resource.

The resource is one aggregate with three clearly separated regions:
1. spec - immutable user intent, never written by the operator
2. status - derived, owned by the reconciler
3. metadata - lifecycle markers (deletion request, finalizers)

Parsing happens at the store boundary so the reconciler only ever sees
validated objects.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Resource identity
# =============================================================================

API_GROUP = "compute.cloud.com"
API_VERSION = "v1"
API_PLURAL = "ec2instances"
KIND = "Ec2Instance"

# Cleanup obligation: blocks final removal until the instance is terminated
FINALIZER = "ec2instance.compute.cloud.com"

# Tag written on every created instance to trace it back to its object
OWNER_TAG_KEY = "ec2instance.compute.cloud.com/owner"

# Tag carrying the owning object uid, so a recreated object never adopts the
# instance of its predecessor
OWNER_UID_TAG_KEY = "ec2instance.compute.cloud.com/uid"

# EC2 limit for RunInstances idempotency tokens
MAX_CLIENT_TOKEN_LENGTH = 64


@dataclass(frozen=True, order=True)
class ObjectKey:
    """Namespace/name key of an Ec2Instance object.

    This is the whole payload of a change notification.
    """

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class InstanceState(str, Enum):
    """EC2 instance states as reported by the provider.

    Status mirrors the provider verbatim, so values outside this set are
    stored as-is. The enum only names the states the reconciler reasons about.
    """

    PENDING = "pending"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    TERMINATED = "terminated"


# An instance in one of these states still counts as the object's instance
LIVE_STATES = (
    InstanceState.PENDING,
    InstanceState.RUNNING,
    InstanceState.STOPPING,
    InstanceState.STOPPED,
)


class Phase(str, Enum):
    """Reconciliation phase derived from observable object fields."""

    ABSENT = "Absent"
    DELETING = "Deleting"
    PROVISIONING = "Provisioning"
    SYNCED = "Synced"


# =============================================================================
# Object regions
# =============================================================================


class Ec2InstanceSpec(BaseModel):
    """Desired instance, write-once after creation."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    image_id: Annotated[str, Field(min_length=1, alias="imageId")]
    instance_type: Annotated[str, Field(min_length=1, alias="instanceType")]
    region: str = ""
    key_pair: str = Field("", alias="keyPair")
    subnet: str = ""
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: dict[str, str]) -> dict[str, str]:
        # EC2 rejects keys in the reserved aws: namespace
        reserved = [key for key in v if key.lower().startswith("aws:")]
        if reserved:
            raise ValueError(f"tag keys must not use the reserved 'aws:' prefix: {reserved}")
        return v


class Ec2InstanceStatus(BaseModel):
    """Observed instance, written only by the reconciler."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    instance_id: str = Field("", alias="instanceId")
    state: str = ""
    public_ip: str = Field("", alias="publicIP")
    private_ip: str = Field("", alias="privateIP")
    public_dns: str = Field("", alias="publicDNS")
    private_dns: str = Field("", alias="privateDNS")

    def to_body(self) -> dict[str, str]:
        """Serialize using the resource's field names."""
        return self.model_dump(by_alias=True)


class ObjectMeta(BaseModel):
    """Subset of Kubernetes object metadata used for lifecycle bookkeeping."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    namespace: str = "default"
    uid: str = ""
    resource_version: str = Field("", alias="resourceVersion")
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")
    finalizers: list[str] = Field(default_factory=list)


class Ec2Instance(BaseModel):
    """The Ec2Instance aggregate: spec, status and lifecycle markers."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field(f"{API_GROUP}/{API_VERSION}", alias="apiVersion")
    kind: str = KIND
    metadata: ObjectMeta
    spec: Ec2InstanceSpec
    status: Ec2InstanceStatus = Field(default_factory=Ec2InstanceStatus)

    @field_validator("status", mode="before")
    @classmethod
    def default_status(cls, v: Any) -> Any:
        # A freshly created object carries no status (or "status: null")
        return {} if v is None else v

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.metadata.namespace, name=self.metadata.name)

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def has_finalizer(self) -> bool:
        return FINALIZER in self.metadata.finalizers

    @property
    def phase(self) -> Phase:
        """Derive the reconciliation phase from the current fields."""
        if self.is_deleting:
            return Phase.DELETING
        if not self.status.instance_id:
            return Phase.PROVISIONING
        return Phase.SYNCED

    @property
    def launch_token(self) -> str:
        """Idempotency token for creating this object's instance.

        Stable across retries of the same creation: a timed-out launch that
        still went through is returned again instead of doubled. Any write
        to the object (such as the drift reset) yields a new token.
        """
        if not self.metadata.uid:
            return ""
        token = f"{self.metadata.uid}-{self.metadata.resource_version}"
        return token[:MAX_CLIENT_TOKEN_LENGTH]


# =============================================================================
# Cloud provider records
# =============================================================================


@dataclass(frozen=True)
class CreatedInstance:
    """Result of a successful instance creation."""

    instance_id: str
    state: str
    public_ip: str = ""
    private_ip: str = ""
    public_dns: str = ""
    private_dns: str = ""

    def to_status(self) -> Ec2InstanceStatus:
        return Ec2InstanceStatus(
            instance_id=self.instance_id,
            state=self.state,
            public_ip=self.public_ip,
            private_ip=self.private_ip,
            public_dns=self.public_dns,
            private_dns=self.private_dns,
        )


@dataclass(frozen=True)
class ObservedInstance:
    """What the provider currently reports for an existing instance."""

    instance_id: str
    state: str
    public_ip: str = ""
    private_ip: str = ""
    public_dns: str = ""
    private_dns: str = ""

    @property
    def is_terminated(self) -> bool:
        return self.state == InstanceState.TERMINATED.value

    def apply_to(self, status: Ec2InstanceStatus) -> Ec2InstanceStatus:
        """Return a copy of status overwritten with the observed values."""
        return status.model_copy(
            update={
                "state": self.state,
                "public_ip": self.public_ip,
                "private_ip": self.private_ip,
                "public_dns": self.public_dns,
                "private_dns": self.private_dns,
            }
        )
