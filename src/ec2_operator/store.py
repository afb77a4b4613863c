"""Kubernetes-backed store for Ec2Instance objects.

Read-modify-write of lifecycle markers uses the object's resourceVersion as
an optimistic lock. Conflicts are retried here, at the store boundary, so
the reconciler never has to reason about them.
"""

from __future__ import annotations

import logging
from typing import Any

import kubernetes
from kubernetes.client import ApiException, CustomObjectsApi
from pydantic import ValidationError

from .models import (
    API_GROUP,
    API_PLURAL,
    API_VERSION,
    Ec2Instance,
    Ec2InstanceStatus,
    ObjectKey,
)

logger = logging.getLogger(__name__)

# Attempts for a finalizer update before giving up on repeated conflicts
MAX_CONFLICT_RETRIES = 5

HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409


class StoreError(Exception):
    """Raised when the object store cannot complete an operation."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ConflictError(StoreError):
    """Raised when an optimistic-lock conflict persists past the retry budget."""

    pass


class InvalidObjectError(StoreError):
    """Raised when a stored object does not parse as an Ec2Instance."""

    pass


def load_kubernetes_config() -> None:
    """Load in-cluster config, falling back to the local kubeconfig."""
    try:
        kubernetes.config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except kubernetes.config.ConfigException:
        try:
            kubernetes.config.load_kube_config()
            logger.info("Loaded Kubernetes configuration from kubeconfig")
        except kubernetes.config.ConfigException as e:
            raise StoreError(f"Could not load Kubernetes configuration: {e}") from e


def parse_object(raw: dict[str, Any]) -> Ec2Instance:
    """Validate a raw object body into an Ec2Instance.

    Raises:
        InvalidObjectError: If the body fails validation.
    """
    try:
        return Ec2Instance.model_validate(raw)
    except ValidationError as e:
        metadata = raw.get("metadata") or {}
        name = f"{metadata.get('namespace', '?')}/{metadata.get('name', '?')}"
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise InvalidObjectError(f"Invalid {API_PLURAL} object {name}:\n{error_list}") from e


class KubernetesObjectStore:
    """ObjectStore implementation over the CustomObjectsApi."""

    def __init__(self, api: CustomObjectsApi | None = None) -> None:
        self._api = api if api is not None else CustomObjectsApi()

    @property
    def api(self) -> CustomObjectsApi:
        return self._api

    def get(self, key: ObjectKey) -> Ec2Instance | None:
        raw = self._get_raw(key)
        if raw is None:
            return None
        return parse_object(raw)

    def add_finalizer(self, key: ObjectKey, finalizer: str) -> Ec2Instance | None:
        return self._update_finalizers(key, finalizer, present=True)

    def remove_finalizer(self, key: ObjectKey, finalizer: str) -> Ec2Instance | None:
        return self._update_finalizers(key, finalizer, present=False)

    def update_status(self, key: ObjectKey, status: Ec2InstanceStatus) -> Ec2Instance:
        body = {"status": status.to_body()}
        try:
            raw = self._api.patch_namespaced_custom_object_status(
                API_GROUP, API_VERSION, key.namespace, API_PLURAL, key.name, body
            )
        except ApiException as e:
            raise StoreError(
                f"Failed to update status of {key}: {e.reason}", status=e.status
            ) from e
        return parse_object(raw)

    def _get_raw(self, key: ObjectKey) -> dict[str, Any] | None:
        try:
            return self._api.get_namespaced_custom_object(
                API_GROUP, API_VERSION, key.namespace, API_PLURAL, key.name
            )
        except ApiException as e:
            if e.status == HTTP_NOT_FOUND:
                return None
            raise StoreError(f"Failed to read {key}: {e.reason}", status=e.status) from e

    def _update_finalizers(
        self, key: ObjectKey, finalizer: str, *, present: bool
    ) -> Ec2Instance | None:
        """Add or remove one finalizer with conflict retry.

        Each attempt re-reads the object and sends the full finalizer list
        guarded by the resourceVersion it was computed from.
        """
        for attempt in range(1, MAX_CONFLICT_RETRIES + 1):
            raw = self._get_raw(key)
            if raw is None:
                return None

            metadata = raw.get("metadata") or {}
            finalizers: list[str] = list(metadata.get("finalizers") or [])
            if (finalizer in finalizers) == present:
                return parse_object(raw)

            if present:
                finalizers.append(finalizer)
            else:
                finalizers = [f for f in finalizers if f != finalizer]

            body = {
                "metadata": {
                    "finalizers": finalizers,
                    "resourceVersion": metadata.get("resourceVersion"),
                }
            }
            try:
                updated = self._api.patch_namespaced_custom_object(
                    API_GROUP, API_VERSION, key.namespace, API_PLURAL, key.name, body
                )
            except ApiException as e:
                if e.status == HTTP_CONFLICT:
                    logger.info(
                        "Conflict updating finalizers, retrying",
                        extra={"key": str(key), "attempt": attempt},
                    )
                    continue
                if e.status == HTTP_NOT_FOUND:
                    return None
                raise StoreError(
                    f"Failed to update finalizers of {key}: {e.reason}", status=e.status
                ) from e

            # Removing the last finalizer of a deleting object lets the API
            # server erase it; the response may then be the final snapshot.
            return parse_object(updated)

        raise ConflictError(
            f"Finalizer update of {key} still conflicting after {MAX_CONFLICT_RETRIES} attempts",
            status=HTTP_CONFLICT,
        )
