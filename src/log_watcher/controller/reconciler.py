"""
Reconciler - one cycle of the control loop for one LogWatcher

Workflow:
1. Compile the pattern (an invalid one ends the cycle with PatternInvalid)
2. Run cleanups that have come due
3. List pods and, concurrently per pod: fetch, evaluate, dispatch, alert
4. Scale the target deployment from the match window
5. Commit the merged status once
"""
import asyncio
import time
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from log_watcher.classifiers.match_evaluator import evaluate
from log_watcher.classifiers.pattern_cache import PatternCache
from log_watcher.controller import scaling as scaling_evaluator
from log_watcher.controller.log_fetcher import LogFetcher
from log_watcher.controller.state import WatcherState
from log_watcher.controller.status import aggregate
from log_watcher.errors import (
    ActionFailed,
    FetchError,
    InstanceNotFound,
    InvalidPattern,
    LogWatcherError,
    StatusWriteConflict,
)
from log_watcher.models.events import CycleCounters, CycleResult, Instance, InstanceReport
from log_watcher.models.schemas import WatchResource, WatcherStatus, WatchSpec
from log_watcher.notifiers.alert_notifier import AlertNotifier
from log_watcher.remediators.action_dispatcher import ActionDispatcher

logger = structlog.get_logger()

LAST_MATCH_ANNOTATION = "log-watcher.io/last-match"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


class Reconciler:
    """
    Runs reconcile cycles against the runtime and the resource store

    Per-pod failures end up in the cycle's reports. Only a failed status
    commit makes the cycle itself fail; its counters are then kept on the
    watcher state and added to the next successful commit.
    """

    def __init__(
        self,
        runtime,
        store,
        dispatcher: ActionDispatcher,
        notifier: AlertNotifier,
        patterns: Optional[PatternCache] = None,
        fetcher: Optional[LogFetcher] = None,
        default_tail_lines: int = 100,
        fetch_timeout: float = 10.0,
        call_timeout: float = 30.0,
        max_excerpt: int = 256,
        clock: Callable[[], float] = time.monotonic
    ):
        self.runtime = runtime
        self.store = store
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.patterns = patterns or PatternCache()
        self.fetcher = fetcher or LogFetcher(runtime)
        self.default_tail_lines = default_tail_lines
        self.fetch_timeout = fetch_timeout
        self.call_timeout = call_timeout
        self.max_excerpt = max_excerpt
        self._clock = clock

    async def run_cycle(self, resource: WatchResource, state: WatcherState) -> CycleResult:
        """
        Execute one full cycle and commit its status

        Raises:
            StatusWriteConflict, WatchSpecUnavailable: the status commit failed
        """
        key = resource.key
        spec = resource.spec
        cycle = CycleResult(
            key=key,
            generation=resource.metadata.generation,
            carried=state.uncommitted,
            carried_write_conflict=state.write_conflict
        )

        log = logger.bind(watcher=key)
        log.info("Reconcile cycle started", generation=resource.metadata.generation)

        try:
            pattern = self.patterns.compile(key, spec.match_pattern)
        except InvalidPattern as e:
            log.error("Invalid regex pattern", pattern=spec.match_pattern, error=e.reason)
            cycle.pattern_error = str(e)
            await self._commit(resource, cycle, state)
            return cycle

        for pending in state.take_due_cleanups(self._clock()):
            cycle.cleanup_outcomes.append(await self.dispatcher.run_cleanup(key, pending))

        instances = await self._list_instances(spec, cycle)

        reports = await asyncio.gather(*(
            self._process_instance(key, spec, instance, pattern, state)
            for instance in instances
        ))
        cycle.reports = [report for report in reports if report is not None]

        if spec.scaling is not None:
            await self._scale(spec, cycle, state)

        await self._commit(resource, cycle, state)

        counters = cycle.counters()
        log.info(
            "Reconcile cycle finished",
            pods=len(cycle.reports),
            matches=counters.matches,
            restarts=counters.restarts,
            jobs=counters.jobs,
            alerts=counters.alerts,
            scaled=cycle.scaling_applied
        )
        return cycle

    async def _list_instances(self, spec: WatchSpec, cycle: CycleResult):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.runtime.list_instances, spec.pod_namespace, spec.pod_label_selector),
                timeout=self.call_timeout
            )
        except FetchError as e:
            cycle.list_error = str(e)
        except asyncio.TimeoutError:
            cycle.list_error = f"pod list in {spec.pod_namespace} timed out"

        logger.error("Could not list pods", watcher=cycle.key, error=cycle.list_error)
        return []

    async def _process_instance(
        self,
        key: str,
        spec: WatchSpec,
        instance: Instance,
        pattern,
        state: WatcherState
    ) -> Optional[InstanceReport]:
        tail_lines = spec.tail_line_count(self.default_tail_lines)
        try:
            lines = await self.fetcher.fetch(instance, tail_lines, self.fetch_timeout)
        except InstanceNotFound:
            logger.debug("Pod disappeared before log fetch", watcher=key, pod=instance.key)
            return None
        except FetchError as e:
            logger.warning("Could not fetch logs", watcher=key, pod=instance.key, reason=e.reason, error=str(e))
            return InstanceReport(instance=instance, error=f"{e.reason}: {e}")

        event = evaluate(pattern, lines, instance, utcnow(), self.max_excerpt)
        report = InstanceReport(instance=instance, event=event)
        if not event.matched:
            return report

        logger.info("Pattern matched", watcher=key, pod=instance.key, excerpt=event.excerpt)

        if spec.annotations:
            await self._annotate(key, spec, instance, event.timestamp)

        report.outcomes = await self.dispatcher.dispatch(
            key, instance, event, spec.actions, state.debounce, state.cleanups
        )
        report.alerts = await self.notifier.notify(key, spec.alerting, event, report.outcomes)
        return report

    async def _annotate(self, key: str, spec: WatchSpec, instance: Instance, matched_at: datetime) -> None:
        """Best-effort: stamp the configured annotations on a matched pod"""
        if self.runtime.dry_run:
            return
        annotations = dict(spec.annotations)
        annotations[LAST_MATCH_ANNOTATION] = matched_at.isoformat()
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self.runtime.annotate_pod, instance, annotations),
                timeout=self.call_timeout
            )
        except (ActionFailed, asyncio.TimeoutError) as e:
            logger.warning("Could not annotate pod", watcher=key, pod=instance.key, error=str(e))

    async def _scale(self, spec: WatchSpec, cycle: CycleResult, state: WatcherState) -> None:
        scaling = spec.scaling
        matches = sum(1 for report in cycle.reports if report.matched)
        now = self._clock()

        try:
            current = await asyncio.wait_for(
                asyncio.to_thread(self.runtime.get_replicas, spec.pod_namespace, scaling.deployment_name),
                timeout=self.call_timeout
            )
        except (ActionFailed, asyncio.TimeoutError) as e:
            state.window.record(now, matches)
            cycle.scaling_error = f"replica read for {scaling.deployment_name} failed: {e}"
            logger.error("Scaling skipped", watcher=cycle.key, error=cycle.scaling_error)
            return

        decision = scaling_evaluator.evaluate(scaling, state.window, matches, current, now)
        cycle.scaling = decision
        if decision is None:
            return

        logger.info(
            "Scaling decision",
            watcher=cycle.key,
            deployment=decision.deployment,
            direction=decision.direction,
            current=decision.current_replicas,
            desired=decision.desired_replicas,
            window_total=decision.window_total
        )
        if self.runtime.dry_run:
            return

        try:
            await asyncio.wait_for(
                asyncio.to_thread(
                    self.runtime.scale_deployment,
                    spec.pod_namespace,
                    decision.deployment,
                    decision.desired_replicas
                ),
                timeout=self.call_timeout
            )
            cycle.scaling_applied = True
        except (ActionFailed, asyncio.TimeoutError) as e:
            cycle.scaling_error = f"scale of {decision.deployment} failed: {e}"
            logger.error("Scaling failed", watcher=cycle.key, error=cycle.scaling_error)

    async def _commit(self, resource: WatchResource, cycle: CycleResult, state: WatcherState) -> WatcherStatus:
        now = utcnow()
        try:
            status = await asyncio.to_thread(
                self.store.update_status,
                resource.metadata.namespace,
                resource.metadata.name,
                lambda previous: aggregate(previous, cycle, now)
            )
        except LogWatcherError as e:
            state.uncommitted = cycle.counters()
            state.write_conflict = isinstance(e, StatusWriteConflict)
            logger.error("Status commit failed", watcher=cycle.key, error=str(e))
            raise

        state.uncommitted = CycleCounters()
        state.write_conflict = False
        return status
