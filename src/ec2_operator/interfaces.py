"""Narrow capability interfaces consumed by the reconciler.

Both collaborators are injected into the Reconciler so tests can substitute
in-memory fakes. All methods are blocking; the reconciler runs them in an
executor and bounds each call with a timeout.
"""

from __future__ import annotations

from typing import Protocol

from .models import (
    CreatedInstance,
    Ec2Instance,
    Ec2InstanceSpec,
    Ec2InstanceStatus,
    ObjectKey,
    ObservedInstance,
)


class ObjectStore(Protocol):
    """Declarative store holding Ec2Instance objects."""

    def get(self, key: ObjectKey) -> Ec2Instance | None:
        """Return the current object, or None if it no longer exists."""
        ...

    def add_finalizer(self, key: ObjectKey, finalizer: str) -> Ec2Instance | None:
        """Ensure the finalizer is present. Returns the updated object."""
        ...

    def remove_finalizer(self, key: ObjectKey, finalizer: str) -> Ec2Instance | None:
        """Ensure the finalizer is absent. Returns None if the object is gone."""
        ...

    def update_status(self, key: ObjectKey, status: Ec2InstanceStatus) -> Ec2Instance:
        """Replace the status region only."""
        ...


class CloudProvider(Protocol):
    """Cloud API able to create, describe and terminate instances."""

    def create(
        self,
        spec: Ec2InstanceSpec,
        owner: ObjectKey,
        *,
        uid: str = "",
        client_token: str = "",
    ) -> CreatedInstance:
        """Launch one instance for spec, tagged with its owner.

        Idempotent: a live instance already tagged for owner (and uid, when
        given) is returned instead of launching another, and repeated calls
        with the same client_token launch at most once.
        """
        ...

    def describe(self, region: str, instance_id: str) -> ObservedInstance | None:
        """Return the instance, or None when the provider does not know it."""
        ...

    def terminate(self, region: str, instance_id: str) -> None:
        """Terminate the instance. Unknown instances count as terminated."""
        ...
