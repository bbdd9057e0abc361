"""
Process entry point: wires the engine to the cluster and runs it
"""
import asyncio
import signal
import threading

import structlog

from log_watcher.classifiers.pattern_cache import PatternCache
from log_watcher.config import settings
from log_watcher.controller.reconciler import Reconciler
from log_watcher.controller.scheduler import ReconcileScheduler
from log_watcher.controller.watch_store import KubernetesWatchStore
from log_watcher.instrumentation import setup_opentelemetry
from log_watcher.logging_config import setup_logging
from log_watcher.main import create_app
from log_watcher.notifiers.alert_notifier import AlertNotifier
from log_watcher.remediators.action_dispatcher import ActionDispatcher
from log_watcher.remediators.k8s_runtime import KubernetesRuntime, load_cluster_config

logger = structlog.get_logger()


async def run() -> None:
    load_cluster_config()

    runtime = KubernetesRuntime(dry_run=settings.dry_run, request_timeout=settings.action_timeout)
    store = KubernetesWatchStore(
        group=settings.crd_group,
        version=settings.crd_version,
        plural=settings.crd_plural,
        namespace=settings.watch_namespace,
        max_write_attempts=settings.status_write_retries
    )
    dispatcher = ActionDispatcher(
        runtime,
        default_cooldown=settings.default_cooldown,
        backoff_base=settings.backoff_base,
        backoff_cap=settings.backoff_cap,
        action_timeout=settings.action_timeout,
        grace_period=settings.pod_grace_period
    )
    notifier = AlertNotifier(timeout=settings.alert_timeout)
    reconciler = Reconciler(
        runtime,
        store,
        dispatcher,
        notifier,
        patterns=PatternCache(),
        default_tail_lines=settings.default_tail_lines,
        fetch_timeout=settings.fetch_timeout,
        call_timeout=settings.action_timeout,
        max_excerpt=settings.max_excerpt_length
    )
    scheduler = ReconcileScheduler(
        reconciler,
        max_concurrency=settings.max_concurrent_cycles,
        default_interval=settings.default_reconcile_interval,
        scaling_window=settings.scaling_window
    )

    app = create_app(scheduler, dispatcher, notifier, dry_run=settings.dry_run)
    threading.Thread(
        target=app.run,
        kwargs={"host": "0.0.0.0", "port": settings.health_port},
        daemon=True,
        name="health-api"
    ).start()

    loop = asyncio.get_running_loop()
    stop = threading.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    def forward(event_type, obj):
        loop.call_soon_threadsafe(scheduler.on_store_event, event_type, obj)

    logger.info(
        "Starting Log Watcher",
        port=settings.health_port,
        dry_run=settings.dry_run,
        namespace=settings.watch_namespace or "*"
    )
    try:
        await asyncio.to_thread(store.watch, forward, stop)
    finally:
        stop.set()
        await scheduler.shutdown()
        logger.info("Log Watcher stopped")


def main() -> None:
    setup_logging(settings.log_level, settings.log_format)
    setup_opentelemetry(settings.service_name, settings.otel_endpoint, enabled=settings.otel_enabled)
    asyncio.run(run())


if __name__ == "__main__":
    main()
