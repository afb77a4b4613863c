"""Kubernetes API mocks for testing.

Provides:
- MockObjectStore: in-memory ObjectStore with API-server deletion semantics,
  write notifications and failure injection, for reconciler and scheduler tests
- MockCustomObjectsApi: CustomObjectsApi subset with resourceVersion checks,
  for store adapter and watcher tests

Usage:
    store = MockObjectStore()
    key = store.create("web")
    reconciler = Reconciler(config, store, provider)
    await reconciler.reconcile(key)
"""

from .api import MockCustomObjectsApi
from .store import DEFAULT_SPEC, MockObjectStore

__all__ = [
    "DEFAULT_SPEC",
    "MockCustomObjectsApi",
    "MockObjectStore",
]
