"""Core reconciliation state machine for Ec2Instance objects.

One invocation handles one object key and is level-triggered: the action is
re-derived from the current object and the provider's current report, never
from the notification that caused the invocation. Missed or duplicated
notifications are therefore harmless.

PHASES (derived, not stored):
- Absent: object gone from the store, nothing to do
- Deleting: terminate the instance, then release the finalizer
- Provisioning: attach the finalizer, then create the instance
- Synced: verify the instance against the provider, resync or self-heal

SAFETY:
- Status fields are only written after a successful provider response.
- The finalizer is persisted before any create call, and removed only after
  a successful terminate, so an instance can never be orphaned by deletion.
- Every collaborator call is bounded by a timeout; a timeout is a retry.
- Creation is idempotent per object: the provider adopts an instance already
  tagged with the object uid, and the launch token only changes once a
  status write has landed.
- Cancellation mid-pass is reported as a retry, not propagated.
- Correctness relies on per-key serialization by the caller (work queue).
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from .config import Config
from .interfaces import CloudProvider, ObjectStore
from .models import FINALIZER, Ec2Instance, InstanceState, ObjectKey, Phase

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Action(str, Enum):
    """What the scheduler should do after an invocation."""

    DONE = "Done"
    RETRY = "Retry"  # requeue with per-key exponential backoff
    REQUEUE = "Requeue"  # requeue after requeue_after seconds


class OperationTimeout(Exception):
    """Raised when a store or provider call exceeds its timeout."""

    pass


class ReconcileCancelled(Exception):
    """Recorded as the error of a pass that was cancelled before finishing."""

    pass


@dataclass
class ReconcileResult:
    """Result of a single reconciliation, doubling as the requeue directive."""

    key: ObjectKey
    phase: Phase | None = None
    action: Action = Action.DONE
    requeue_after: float = 0.0
    error: Exception | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if reconciliation succeeded."""
        return self.error is None and self.action != Action.RETRY

    def done(self) -> ReconcileResult:
        self.action = Action.DONE
        self.requeue_after = 0.0
        return self

    def retry(self, error: Exception) -> ReconcileResult:
        self.action = Action.RETRY
        self.requeue_after = 0.0
        self.error = error
        return self

    def requeue(self, after: float = 0.0) -> ReconcileResult:
        self.action = Action.REQUEUE
        self.requeue_after = after
        return self


class Reconciler:
    """Drives one Ec2Instance toward its desired state per invocation.

    The store and provider are injected; the reconciler holds no state
    between invocations; everything lives in the persisted object.
    """

    def __init__(self, config: Config, store: ObjectStore, provider: CloudProvider) -> None:
        self._config = config
        self._store = store
        self._provider = provider

    @property
    def config(self) -> Config:
        """Get the reconciler configuration."""
        return self._config

    async def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """Run one reconciliation for key and return the requeue directive.

        Never raises: every failure, cancellation included, is logged and
        mapped to a retry.
        """
        result = ReconcileResult(key=key)

        try:
            instance = await self._call_store(self._store.get, key)
            if instance is None:
                result.phase = Phase.ABSENT
                logger.info("Ec2Instance not found, nothing to reconcile", extra={"key": str(key)})
                result.done()
            else:
                result.phase = instance.phase
                match result.phase:
                    case Phase.DELETING:
                        await self._reconcile_deleting(instance, result)
                    case Phase.PROVISIONING:
                        await self._reconcile_provisioning(instance, result)
                    case Phase.SYNCED:
                        await self._reconcile_synced(instance, result)
        except asyncio.CancelledError:
            # Whatever the interrupted call does is re-observed on the retry
            logger.warning(
                "Reconciliation cancelled",
                extra={"key": str(key), "phase": result.phase.value if result.phase else None},
            )
            result.retry(ReconcileCancelled(f"reconciliation of {key} was cancelled"))
        except Exception as e:
            logger.exception(
                "Unexpected error during reconciliation",
                extra={"key": str(key), "phase": result.phase.value if result.phase else None},
            )
            result.retry(e)

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    async def _reconcile_deleting(self, instance: Ec2Instance, result: ReconcileResult) -> None:
        """Terminate the instance, then release the cleanup obligation."""
        key = instance.key
        if not instance.has_finalizer:
            # Not ours (anymore); the store finishes removal on its own
            result.done()
            return

        instance_id = instance.status.instance_id
        if instance_id:
            logger.info(
                "Deletion requested, terminating instance",
                extra={"key": str(key), "instance_id": instance_id},
            )
            try:
                await self._call_provider(
                    self._provider.terminate, instance.spec.region, instance_id
                )
            except Exception as e:
                # The finalizer stays so the object cannot vanish while the
                # instance might still exist
                logger.error(
                    "Failed to terminate instance",
                    extra={"key": str(key), "instance_id": instance_id, "error": str(e)},
                )
                result.retry(e)
                return

        try:
            await self._call_store(self._store.remove_finalizer, key, FINALIZER)
        except Exception as e:
            logger.error("Failed to remove finalizer", extra={"key": str(key), "error": str(e)})
            result.retry(e)
            return

        logger.info(
            "Finalizer removed, object released for deletion",
            extra={"key": str(key), "instance_id": instance_id},
        )
        result.done()

    async def _reconcile_provisioning(
        self, instance: Ec2Instance, result: ReconcileResult
    ) -> None:
        """Attach the finalizer, and once it is persisted create the instance."""
        key = instance.key

        if not instance.has_finalizer:
            try:
                await self._call_store(self._store.add_finalizer, key, FINALIZER)
            except Exception as e:
                logger.error("Failed to add finalizer", extra={"key": str(key), "error": str(e)})
                result.retry(e)
                return
            logger.info("Finalizer attached", extra={"key": str(key)})
            # Creation happens on the next pass, which reads the persisted
            # finalizer back from the store
            result.requeue()
            return

        logger.info(
            "Creating EC2 instance",
            extra={
                "key": str(key),
                "image_id": instance.spec.image_id,
                "instance_type": instance.spec.instance_type,
            },
        )
        try:
            created = await self._call_provider(
                self._provider.create,
                instance.spec,
                key,
                uid=instance.metadata.uid,
                client_token=instance.launch_token,
            )
        except Exception as e:
            logger.error("Failed to create instance", extra={"key": str(key), "error": str(e)})
            result.retry(e)
            return

        logger.info(
            "EC2 instance created",
            extra={"key": str(key), "instance_id": created.instance_id, "state": created.state},
        )

        try:
            await self._call_store(self._store.update_status, key, created.to_status())
        except Exception as e:
            # The instance exists but is not recorded; the next create
            # adopts it by its owner and uid tags
            logger.error(
                "Failed to record created instance in status",
                extra={"key": str(key), "instance_id": created.instance_id, "error": str(e)},
            )
            result.retry(e)
            return

        result.requeue(self._config.post_create_requeue_seconds)

    async def _reconcile_synced(self, instance: Ec2Instance, result: ReconcileResult) -> None:
        """Verify the recorded instance against the provider."""
        key = instance.key
        status = instance.status
        instance_id = status.instance_id

        if not instance.has_finalizer:
            # Repair the invariant: a recorded instance is always guarded
            try:
                await self._call_store(self._store.add_finalizer, key, FINALIZER)
            except Exception as e:
                logger.error("Failed to add finalizer", extra={"key": str(key), "error": str(e)})
                result.retry(e)
                return
            logger.warning(
                "Finalizer was missing for a recorded instance, re-attached",
                extra={"key": str(key), "instance_id": instance_id},
            )

        try:
            observed = await self._call_provider(
                self._provider.describe, instance.spec.region, instance_id
            )
        except Exception as e:
            logger.error(
                "Failed to describe instance",
                extra={"key": str(key), "instance_id": instance_id, "error": str(e)},
            )
            result.retry(e)
            return

        if observed is None or observed.is_terminated:
            # Drift: removed out-of-band. Reset so the next pass recreates it.
            logger.warning(
                "Instance missing or terminated at provider, resetting for recreation",
                extra={
                    "key": str(key),
                    "instance_id": instance_id,
                    "observed_state": observed.state if observed else None,
                },
            )
            reset = status.model_copy(
                update={"instance_id": "", "state": InstanceState.TERMINATED.value}
            )
            try:
                await self._call_store(self._store.update_status, key, reset)
            except Exception as e:
                logger.error(
                    "Failed to reset status for recreation",
                    extra={"key": str(key), "error": str(e)},
                )
                result.retry(e)
                return
            result.requeue()
            return

        synced = observed.apply_to(status)
        if synced != status:
            logger.info(
                "Updating instance state",
                extra={
                    "key": str(key),
                    "instance_id": instance_id,
                    "old_state": status.state,
                    "new_state": synced.state,
                },
            )
            try:
                await self._call_store(self._store.update_status, key, synced)
            except Exception as e:
                logger.error(
                    "Failed to update status", extra={"key": str(key), "error": str(e)}
                )
                result.retry(e)
                return

        result.requeue(self._config.steady_state_interval_seconds)

    # -------------------------------------------------------------------------
    # Bounded collaborator calls
    # -------------------------------------------------------------------------

    async def _call_store(self, fn: Callable[..., T], *args: Any) -> T:
        return await self._execute_with_timeout(
            functools.partial(fn, *args),
            self._config.store_timeout_seconds,
            f"store.{fn.__name__}",
        )

    async def _call_provider(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await self._execute_with_timeout(
            functools.partial(fn, *args, **kwargs),
            self._config.provider_timeout_seconds,
            f"provider.{fn.__name__}",
        )

    async def _execute_with_timeout(
        self,
        call: Callable[[], T],
        timeout_seconds: float,
        operation_name: str,
    ) -> T:
        """Run a blocking call in the default executor, bounded by a timeout.

        Raises:
            OperationTimeout: If the call exceeds timeout_seconds. The
                underlying thread is not interrupted; whatever it eventually
                does is re-observed by a later invocation.
        """
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, call),
                timeout=timeout_seconds,
            )
        except TimeoutError as e:
            raise OperationTimeout(
                f"{operation_name} timed out after {timeout_seconds:g}s"
            ) from e

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "key": str(result.key),
            "phase": result.phase.value if result.phase else None,
            "action": result.action.value,
            "requeue_after": result.requeue_after,
            "duration_seconds": result.duration_seconds,
        }
        if result.error is not None:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            logger.warning("Reconciliation failed, will retry", extra=extra)
        else:
            logger.debug("Reconciliation result", extra=extra)
