"""
Action Dispatcher - decides and executes remediations for a matched pod
Handles: restart, job creation, rolling update, deferred cleanup
"""
import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from opentelemetry import trace

from log_watcher.errors import ActionFailed
from log_watcher.models.events import (
    ACTION_PRIORITY,
    ActionKind,
    ActionOutcome,
    ActionResult,
    Instance,
    MatchEvent,
    PendingCleanup,
    SkipReason,
)
from log_watcher.models.schemas import ActionsConfig
from log_watcher.remediators.job_template import render_job
from log_watcher.utils.retry import backoff_delay

logger = structlog.get_logger()
tracer = trace.get_tracer(__name__)

SUPERSEDED_BY_CLEANUP = (ActionKind.RESTART, ActionKind.ROLLING_UPDATE)


class DebounceRecord:
    """Last-fired time per (target, action kind) for one watcher"""

    def __init__(self):
        self._fired: Dict[Tuple[str, ActionKind], float] = {}

    def is_cooling(self, target: str, kind: ActionKind, cooldown: float, now: float) -> bool:
        last = self._fired.get((target, kind))
        return last is not None and now - last < cooldown

    def stamp(self, target: str, kind: ActionKind, now: float) -> None:
        self._fired[(target, kind)] = now

    def prune(self, older_than: float) -> int:
        """
        Forget records fired before ``older_than``

        Returns:
            Number of records removed
        """
        stale = [key for key, fired in self._fired.items() if fired < older_than]
        for key in stale:
            del self._fired[key]
        return len(stale)


@dataclass
class _Plan:
    kind: ActionKind
    target: str
    cooldown: float
    retries: int
    config: Any


class ActionDispatcher:
    """
    Run the configured actions for one matched instance

    Safety features:
    - Fixed priority order: restart, job, rolling update, cleanup
    - Per-target cool-down, stamped when an action is claimed
    - Cleanup supersedes restart and rolling update
    - Bounded retries with exponential backoff
    """

    def __init__(
        self,
        runtime,
        default_cooldown: float = 300.0,
        backoff_base: float = 1.0,
        backoff_cap: float = 30.0,
        action_timeout: float = 30.0,
        grace_period: int = 30,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable = asyncio.sleep
    ):
        self.runtime = runtime
        self.default_cooldown = default_cooldown
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.action_timeout = action_timeout
        self.grace_period = grace_period
        self._clock = clock
        self._sleep = sleep

        # Statistics
        self.actions_taken: Dict[str, Dict[str, int]] = {
            kind.value: {result.value: 0 for result in ActionResult} for kind in ActionKind
        }

    def _plan(self, instance: Instance, actions: ActionsConfig) -> List[_Plan]:
        plans = []
        for kind in ACTION_PRIORITY:
            if kind == ActionKind.RESTART and actions.restart_pod:
                plans.append(_Plan(kind, instance.key, self.default_cooldown, 0, None))

            elif kind == ActionKind.CREATE_JOB and actions.create_job:
                job = actions.create_job
                plans.append(_Plan(
                    kind, instance.key, job.timeout or self.default_cooldown, job.retries, job
                ))

            elif kind == ActionKind.ROLLING_UPDATE and actions.rolling_update:
                rolling = actions.rolling_update
                target = f"{instance.namespace}/deployment/{rolling.deployment_name}"
                plans.append(_Plan(kind, target, self.default_cooldown, 0, rolling))

            elif kind == ActionKind.CLEANUP and actions.cleanup:
                cleanup = actions.cleanup
                plans.append(_Plan(
                    kind, instance.key, cleanup.timeout or self.default_cooldown, 0, cleanup
                ))
        return plans

    async def dispatch(
        self,
        watcher: str,
        instance: Instance,
        event: MatchEvent,
        actions: ActionsConfig,
        debounce: DebounceRecord,
        cleanups: List[PendingCleanup]
    ) -> List[ActionOutcome]:
        """
        Decide and execute every configured action for a matched instance

        All debounce claims happen before the first await, so concurrent
        dispatches for pods of the same deployment cannot both claim a
        rolling update.

        Returns:
            One ActionOutcome per configured action, in priority order
        """
        if not event.matched:
            return []

        now = self._clock()
        plans = self._plan(instance, actions)

        # Replaced pods come back under new names; their old records only expire here
        longest = max([plan.cooldown for plan in plans] + [self.default_cooldown])
        pruned = debounce.prune(now - longest)
        if pruned:
            logger.debug("Pruned debounce records", watcher=watcher, pruned=pruned)

        eligible = {
            plan.kind: not debounce.is_cooling(plan.target, plan.kind, plan.cooldown, now)
            for plan in plans
        }
        cleanup_fires = eligible.get(ActionKind.CLEANUP, False)

        decisions: List[Tuple[_Plan, Optional[SkipReason]]] = []
        for plan in plans:
            if not eligible[plan.kind]:
                decisions.append((plan, SkipReason.DEBOUNCED))
            elif cleanup_fires and plan.kind in SUPERSEDED_BY_CLEANUP:
                decisions.append((plan, SkipReason.SUPERSEDED))
            else:
                debounce.stamp(plan.target, plan.kind, now)
                skip = SkipReason.DRY_RUN if self.runtime.dry_run else None
                decisions.append((plan, skip))

        outcomes = []
        for plan, skip in decisions:
            if skip is not None:
                logger.info(
                    "Action skipped",
                    watcher=watcher,
                    pod=instance.key,
                    action=plan.kind.value,
                    reason=skip.value
                )
                outcome = self._outcome(plan.kind, instance, ActionResult.SKIPPED, reason=skip)
            else:
                outcome = await self._execute(plan, watcher, instance, event, cleanups)
            self.actions_taken[plan.kind.value][outcome.result.value] += 1
            outcomes.append(outcome)

        return outcomes

    async def _execute(
        self,
        plan: _Plan,
        watcher: str,
        instance: Instance,
        event: MatchEvent,
        cleanups: List[PendingCleanup]
    ) -> ActionOutcome:
        logger.info("Executing action", watcher=watcher, pod=instance.key, action=plan.kind.value)

        if plan.kind == ActionKind.CLEANUP:
            due_at = self._clock() + plan.config.timeout
            cleanups.append(PendingCleanup(
                instance=instance,
                resources=list(plan.config.resources),
                due_at=due_at
            ))
            return self._outcome(
                plan.kind, instance, ActionResult.SUCCEEDED,
                message=f"scheduled in {plan.config.timeout}s"
            )

        if plan.kind == ActionKind.RESTART:
            call = lambda: self.runtime.delete_pod(instance, self.grace_period)
        elif plan.kind == ActionKind.CREATE_JOB:
            call = lambda: self.runtime.create_job(
                instance.namespace,
                render_job(plan.config.job_template, watcher, instance, event, plan.config.timeout)
            )
        else:
            call = lambda: self.runtime.roll_deployment(
                instance.namespace,
                plan.config.deployment_name,
                plan.config.max_unavailable,
                plan.config.max_surge
            )

        cap = plan.config.timeout if getattr(plan.config, "timeout", 0) else self.backoff_cap
        return await self._with_retries(plan.kind, instance, call, plan.retries, cap)

    async def run_cleanup(self, watcher: str, pending: PendingCleanup) -> ActionOutcome:
        """Delete the pod and every listed resource of a due cleanup"""
        instance = pending.instance
        logger.info("Running cleanup", watcher=watcher, pod=instance.key, resources=pending.resources)

        if self.runtime.dry_run:
            return self._outcome(ActionKind.CLEANUP, instance, ActionResult.SKIPPED, reason=SkipReason.DRY_RUN)

        targets = [("pod", instance.name)]
        for resource in pending.resources:
            kind, _, name = resource.rpartition("/")
            targets.append((kind or "pod", name))

        def call():
            removed = [
                f"{kind}/{name}" for kind, name in targets
                if self.runtime.delete_resource(instance.namespace, kind, name)
            ]
            return f"removed {', '.join(removed) or 'nothing'}"

        outcome = await self._with_retries(ActionKind.CLEANUP, instance, call, 0, self.backoff_cap)
        self.actions_taken[ActionKind.CLEANUP.value][outcome.result.value] += 1
        return outcome

    async def _with_retries(
        self,
        kind: ActionKind,
        instance: Instance,
        call: Callable,
        retries: int,
        backoff_cap: float
    ) -> ActionOutcome:
        attempts = retries + 1
        error = None
        attempt = 0

        with tracer.start_as_current_span("dispatcher.execute") as span:
            span.set_attribute("action.kind", kind.value)
            span.set_attribute("pod.name", instance.key)

            for attempt in range(attempts):
                try:
                    result = await asyncio.wait_for(asyncio.to_thread(call), timeout=self.action_timeout)
                    logger.info("Action succeeded", pod=instance.key, action=kind.value, attempt=attempt + 1)
                    message = result if isinstance(result, str) else ""
                    return self._outcome(kind, instance, ActionResult.SUCCEEDED, retries=attempt, message=message)

                except ActionFailed as e:
                    if e.status == 404:
                        return self._outcome(
                            kind, instance, ActionResult.SKIPPED,
                            retries=attempt, reason=SkipReason.NOT_FOUND, message=str(e)
                        )
                    error = e
                    if not e.retryable:
                        break

                except asyncio.TimeoutError:
                    error = ActionFailed(f"{kind.value} timed out after {self.action_timeout}s")

                logger.warning(
                    "Action attempt failed",
                    pod=instance.key,
                    action=kind.value,
                    attempt=attempt + 1,
                    attempts=attempts,
                    error=str(error)
                )
                if attempt < attempts - 1:
                    await self._sleep(backoff_delay(attempt, self.backoff_base, backoff_cap))

            span.record_exception(error)

        logger.error("Action failed", pod=instance.key, action=kind.value, error=str(error))
        return self._outcome(kind, instance, ActionResult.FAILED, retries=attempt, message=str(error))

    @staticmethod
    def _outcome(
        kind: ActionKind,
        instance: Instance,
        result: ActionResult,
        retries: int = 0,
        reason: Optional[SkipReason] = None,
        message: str = ""
    ) -> ActionOutcome:
        return ActionOutcome(
            kind=kind,
            instance=instance,
            result=result,
            timestamp=datetime.now(timezone.utc),
            retries=retries,
            reason=reason,
            message=message
        )

    def get_stats(self) -> Dict:
        """Get remediation statistics"""
        return {
            "actions_by_type": self.actions_taken,
            "dry_run_mode": self.runtime.dry_run
        }
