"""Requeue scheduler: a bounded worker pool over the work queue.

Each worker takes one key, runs one reconciliation and turns the returned
directive into a future invocation. Per-key serialization comes from the
work queue; different keys run concurrently without ordering guarantees.
"""

from __future__ import annotations

import asyncio
import logging

from .models import ObjectKey
from .reconciler import Action, ReconcileResult, Reconciler
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)


class RequeueScheduler:
    """Dispatches queued keys to the reconciler with a fixed number of workers."""

    def __init__(
        self,
        reconciler: Reconciler,
        queue: WorkQueue[ObjectKey],
        *,
        worker_count: int,
    ) -> None:
        self._reconciler = reconciler
        self._queue = queue
        self._worker_count = worker_count
        self._shutdown_event = asyncio.Event()

    @property
    def queue(self) -> WorkQueue[ObjectKey]:
        return self._queue

    def enqueue(self, key: ObjectKey) -> None:
        """Notify the scheduler that key changed."""
        self._queue.add(key)

    async def run(self) -> None:
        """Run workers until shutdown() is called."""
        logger.info("Starting workers", extra={"worker_count": self._worker_count})
        workers = [
            asyncio.create_task(self._worker(i), name=f"reconcile-worker-{i}")
            for i in range(self._worker_count)
        ]
        try:
            await self._shutdown_event.wait()
        finally:
            self._queue.shut_down()
            # Workers finish their current reconciliation, then see None
            await asyncio.gather(*workers, return_exceptions=True)
        logger.info("Scheduler shutdown complete")

    def shutdown(self) -> None:
        """Signal the workers to stop after their current reconciliation."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def process_next(self) -> bool:
        """Process a single key. Returns False once the queue is shut down.

        Raises:
            asyncio.CancelledError: If the worker was cancelled. The key is
                requeued with backoff first.
        """
        key = await self._queue.get()
        if key is None:
            return False
        try:
            result = await self._reconciler.reconcile(key)
            self.apply(result)
        except Exception:
            # reconcile() maps failures to results; this guards the worker
            logger.exception("Reconciler raised unexpectedly", extra={"key": str(key)})
            self._queue.add_rate_limited(key)
        finally:
            self._queue.done(key)
        task = asyncio.current_task()
        if task is not None and task.cancelling():
            # The cancelled pass was requeued as a retry; stop this worker
            raise asyncio.CancelledError
        return True

    def apply(self, result: ReconcileResult) -> None:
        """Turn a reconcile directive into a future invocation."""
        key = result.key
        match result.action:
            case Action.DONE:
                self._queue.forget(key)
            case Action.RETRY:
                delay = self._queue.add_rate_limited(key)
                logger.info(
                    "Retrying after error",
                    extra={
                        "key": str(key),
                        "delay_seconds": round(delay, 3),
                        "attempt": self._queue.num_requeues(key),
                    },
                )
            case Action.REQUEUE:
                self._queue.forget(key)
                self._queue.add_after(key, result.requeue_after)

    async def _worker(self, index: int) -> None:
        logger.debug("Worker started", extra={"worker": index})
        while await self.process_next():
            pass
        logger.debug("Worker stopped", extra={"worker": index})
