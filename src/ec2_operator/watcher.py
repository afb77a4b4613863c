"""Change notifications for Ec2Instance objects.

Streams watch events from the Kubernetes API and hands over only the object
key. The reconciler always re-reads the object, so event payloads, ordering
and duplicates do not matter.

The watch client is blocking; run() is meant to execute in a background
thread and the enqueue callback must be thread-safe.
"""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CustomObjectsApi

from .models import API_GROUP, API_PLURAL, API_VERSION, ObjectKey

logger = logging.getLogger(__name__)

HTTP_GONE = 410
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403

MAX_BACKOFF_SECONDS = 30


class WatchExpired(Exception):
    """Raised when the watch resourceVersion is too old and a relist is needed."""

    pass


def key_from_object(obj: dict[str, Any]) -> ObjectKey | None:
    """Extract the namespace/name key of a raw object, if it has one."""
    metadata = obj.get("metadata") or {}
    name = metadata.get("name")
    if not name:
        return None
    return ObjectKey(namespace=metadata.get("namespace") or "default", name=name)


class InstanceWatcher:
    """List-then-watch loop feeding object keys to a callback."""

    def __init__(
        self,
        api: CustomObjectsApi,
        enqueue: Callable[[ObjectKey], None],
        *,
        namespace: str = "",
        timeout_seconds: int = 300,
    ) -> None:
        self._api = api
        self._enqueue = enqueue
        self._namespace = namespace
        self._timeout_seconds = timeout_seconds
        self._stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def stop(self) -> None:
        """Stop the watch loop, interrupting an active stream."""
        self._stop.set()
        with self._watcher_lock:
            if self._active_watcher is not None:
                self._active_watcher.stop()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _list_kwargs(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        if self._namespace:
            return self._api.list_namespaced_custom_object, {
                "group": API_GROUP,
                "version": API_VERSION,
                "namespace": self._namespace,
                "plural": API_PLURAL,
            }
        return self._api.list_cluster_custom_object, {
            "group": API_GROUP,
            "version": API_VERSION,
            "plural": API_PLURAL,
        }

    def list_and_enqueue(self) -> str | None:
        """Enqueue every existing object. Returns the list resourceVersion."""
        list_fn, kwargs = self._list_kwargs()
        response = list_fn(**kwargs)
        items = response.get("items") or []
        for item in items:
            key = key_from_object(item)
            if key is not None:
                self._enqueue(key)
        logger.info("Listed Ec2Instance objects", extra={"count": len(items)})
        return (response.get("metadata") or {}).get("resourceVersion")

    def handle_event(self, event: dict[str, Any]) -> str | None:
        """Enqueue the key of one watch event. Returns its resourceVersion.

        Raises:
            WatchExpired: On an ERROR event reporting 410 Gone.
        """
        event_type = str(event.get("type", ""))
        obj = event.get("object")
        if not isinstance(obj, dict):
            return None

        if event_type == "ERROR":
            if obj.get("code") == HTTP_GONE:
                raise WatchExpired(obj.get("message", "resource version expired"))
            logger.warning("Watch error event", extra={"error": obj.get("message")})
            return None

        key = key_from_object(obj)
        if key is None:
            return None
        logger.debug("Watch event", extra={"event_type": event_type, "key": str(key)})
        self._enqueue(key)
        return (obj.get("metadata") or {}).get("resourceVersion")

    def run(self) -> None:
        """Run until stop(). Blocking."""
        backoff_seconds = 1
        resource_version: str | None = None
        needs_list = True

        while not self._stop.is_set():
            try:
                if needs_list:
                    resource_version = self.list_and_enqueue()
                    needs_list = False
                resource_version = self._watch_once(resource_version)
                backoff_seconds = 1
            except WatchExpired:
                logger.warning("Watch resource version expired, re-listing")
                needs_list = True
            except ApiException as e:
                if e.status == HTTP_GONE:
                    logger.warning("Watch resource version expired, re-listing")
                    needs_list = True
                    continue
                if e.status in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN):
                    logger.error(
                        "Kubernetes API access denied, check operator RBAC",
                        extra={"status_code": e.status},
                    )
                else:
                    logger.exception("Kubernetes API watch error")
                self._sleep_backoff(backoff_seconds)
                backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
            except Exception:
                logger.exception("Unexpected watch error")
                self._sleep_backoff(backoff_seconds)
                backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)

        logger.info("Watcher stopped")

    def _watch_once(self, resource_version: str | None) -> str | None:
        """Consume one watch stream until it ends or stop() is called."""
        watcher = watch.Watch()
        with self._watcher_lock:
            self._active_watcher = watcher
        list_fn, kwargs = self._list_kwargs()
        if resource_version:
            kwargs["resource_version"] = resource_version
        try:
            for event in watcher.stream(list_fn, timeout_seconds=self._timeout_seconds, **kwargs):
                if self._stop.is_set():
                    break
                resource_version = self.handle_event(event) or resource_version
        finally:
            with self._watcher_lock:
                self._active_watcher = None
        return resource_version

    def _sleep_backoff(self, backoff_seconds: float) -> None:
        jittered = backoff_seconds * (0.5 + random.random())
        self._stop.wait(timeout=jittered)
