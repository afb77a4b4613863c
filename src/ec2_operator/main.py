"""Main entry point for the EC2 instance operator.

Wires the Kubernetes store, the EC2 provider, the reconciler and the
requeue scheduler together, starts the watch in a background thread and
runs until SIGTERM or SIGINT.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
import threading
from datetime import UTC, datetime

from .config import Config, ConfigurationError
from .ec2 import Ec2Provider
from .models import ObjectKey
from .reconciler import Reconciler
from .scheduler import RequeueScheduler
from .store import KubernetesObjectStore, StoreError, load_kubernetes_config
from .watcher import InstanceWatcher
from .workqueue import WorkQueue

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(config: Config | None = None) -> None:
    """Configure structured logging with JSON output for production."""
    json_output = config.enable_json_logging if config is not None else True
    level = config.log_level_number if config is not None else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the SDKs
    for noisy in ("boto3", "botocore", "urllib3", "kubernetes"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def build_reconciler(config: Config) -> tuple[Reconciler, KubernetesObjectStore]:
    """Create the reconciler with the live Kubernetes store and EC2 provider.

    Raises:
        StoreError: If no Kubernetes configuration can be loaded.
    """
    load_kubernetes_config()
    store = KubernetesObjectStore()
    provider = Ec2Provider(
        config.default_region,
        instance_wait_seconds=config.instance_wait_seconds,
    )
    return Reconciler(config, store, provider), store


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config)
    logger = logging.getLogger(__name__)

    logger.info(
        "Starting EC2 instance operator",
        extra={
            "watch_namespace": config.watch_namespace or "*",
            "default_region": config.default_region,
            "worker_count": config.worker_count,
        },
    )

    try:
        reconciler, store = build_reconciler(config)
    except StoreError as e:
        logger.error("Failed to initialize Kubernetes client", extra={"error": str(e)})
        return 1
    except Exception as e:
        logger.error(
            "Failed to initialize reconciler",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    queue: WorkQueue[ObjectKey] = WorkQueue(
        backoff_base_seconds=config.retry_backoff_base_seconds,
        backoff_max_seconds=config.retry_backoff_max_seconds,
    )
    scheduler = RequeueScheduler(reconciler, queue, worker_count=config.worker_count)

    loop = asyncio.get_running_loop()

    def enqueue_threadsafe(key: ObjectKey) -> None:
        loop.call_soon_threadsafe(scheduler.enqueue, key)

    watcher = InstanceWatcher(
        store.api,
        enqueue_threadsafe,
        namespace=config.watch_namespace,
        timeout_seconds=config.watch_timeout_seconds,
    )

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        watcher.stop()
        scheduler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    # Daemon thread: a blocked watch stream must not delay process exit
    watch_thread = threading.Thread(target=watcher.run, name="ec2instance-watch", daemon=True)
    watch_thread.start()

    try:
        await scheduler.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        watcher.stop()

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
