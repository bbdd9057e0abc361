"""
Status Aggregator - folds one cycle into the persisted watcher status
"""
from datetime import datetime
from typing import List, Optional, Tuple

from log_watcher.models.events import ActionResult, CycleResult
from log_watcher.models.schemas import Condition, WatcherStatus

READY = "Ready"
PATTERN_INVALID = "PatternInvalid"
RECONCILE_FAILED = "ReconcileFailed"
DEGRADED = "Degraded"

CONDITION_ORDER = [READY, PATTERN_INVALID, RECONCILE_FAILED, DEGRADED]


def _reconcile_failure(cycle: CycleResult) -> Optional[Tuple[str, str]]:
    if cycle.list_error:
        return "InstanceListFailed", cycle.list_error
    if cycle.carried_write_conflict:
        return "StatusWriteConflict", "previous cycle's status could not be written"
    return None


def _degradation(cycle: CycleResult) -> Optional[Tuple[str, str]]:
    unreachable = [r.instance.key for r in cycle.reports if r.error]
    failed = [o for o in cycle.outcomes() if o.result == ActionResult.FAILED]
    undelivered = [a for r in cycle.reports for a in r.alerts if not a.delivered]

    if unreachable:
        return "InstanceUnobserved", f"no log from {len(unreachable)} pod(s): {', '.join(sorted(unreachable)[:5])}"
    if failed:
        return "ActionFailed", "; ".join(f"{o.kind.value} on {o.instance.key}: {o.message}" for o in failed[:5])
    if undelivered:
        return "AlertDeliveryFailed", ", ".join(sorted({a.channel for a in undelivered}))
    if cycle.scaling_error:
        return "ScalingFailed", cycle.scaling_error
    return None


def build_conditions(cycle: CycleResult) -> List[Tuple[str, bool, str, str]]:
    """(type, status, reason, message) for every condition, in fixed order"""
    failure = _reconcile_failure(cycle)
    degraded = _degradation(cycle)

    if cycle.pattern_error:
        pattern = (PATTERN_INVALID, True, "CompileFailed", cycle.pattern_error)
    else:
        pattern = (PATTERN_INVALID, False, "PatternCompiled", "")

    if failure:
        reconcile = (RECONCILE_FAILED, True, failure[0], failure[1])
    else:
        reconcile = (RECONCILE_FAILED, False, "ReconcileSucceeded", "")

    if degraded:
        degraded_condition = (DEGRADED, True, degraded[0], degraded[1])
    else:
        degraded_condition = (DEGRADED, False, "AllHealthy", "")

    healthy = not cycle.pattern_error and not failure
    if healthy:
        ready = (READY, True, "Reconciled", f"{len(cycle.reports)} pod(s) observed")
    elif cycle.pattern_error:
        ready = (READY, False, "PatternInvalid", cycle.pattern_error)
    else:
        ready = (READY, False, failure[0], failure[1])

    return [ready, pattern, reconcile, degraded_condition]


def aggregate(previous: WatcherStatus, cycle: CycleResult, now: datetime) -> WatcherStatus:
    """
    Merge a finished cycle into the previous status

    Counters only grow. Conditions are rebuilt every cycle; a condition keeps
    its lastTransitionTime while its status stays the same.
    """
    delta = cycle.counters()

    conditions = []
    for condition_type, status, reason, message in build_conditions(cycle):
        status_text = "True" if status else "False"
        prior = previous.condition(condition_type)
        if prior is not None and prior.status == status_text:
            transitioned = prior.last_transition_time
        else:
            transitioned = now
        conditions.append(Condition(
            type=condition_type,
            status=status_text,
            reason=reason,
            message=message,
            last_transition_time=transitioned
        ))

    return WatcherStatus(
        conditions=conditions,
        last_reconcile_time=now,
        observed_generation=cycle.generation,
        matches_count=previous.matches_count + delta.matches,
        pods_restarted=previous.pods_restarted + delta.restarts,
        alerts_sent=previous.alerts_sent + delta.alerts,
        jobs_created=previous.jobs_created + delta.jobs,
        scaling_events=previous.scaling_events + delta.scaling_events,
    )
