"""
Per-cycle records produced by the reconcile engine
None of these are persisted; they feed the status aggregator
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class ActionKind(str, Enum):
    """Action kinds in dispatch priority order"""
    RESTART = "restart"
    CREATE_JOB = "create_job"
    ROLLING_UPDATE = "rolling_update"
    CLEANUP = "cleanup"


ACTION_PRIORITY = [
    ActionKind.RESTART,
    ActionKind.CREATE_JOB,
    ActionKind.ROLLING_UPDATE,
    ActionKind.CLEANUP,
]


class ActionResult(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    DEBOUNCED = "debounced"
    SUPERSEDED = "superseded"
    NOT_FOUND = "not_found"
    DRY_RUN = "dry_run"


@dataclass(frozen=True)
class Instance:
    """One pod selected by a watcher"""
    namespace: str
    name: str
    uid: str = ""
    deployment: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class MatchEvent:
    instance: Instance
    timestamp: datetime
    matched: bool
    excerpt: str = ""


@dataclass
class ActionOutcome:
    kind: ActionKind
    instance: Instance
    result: ActionResult
    timestamp: datetime
    retries: int = 0
    reason: Optional[SkipReason] = None
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.result == ActionResult.SUCCEEDED


@dataclass
class ChannelResult:
    """Delivery result for one alert channel"""
    channel: str
    delivered: bool
    attempts: int = 1
    error: Optional[str] = None


@dataclass
class ScalingDecision:
    deployment: str
    current_replicas: int
    desired_replicas: int
    direction: str  # "up" / "down"
    window_total: int


@dataclass
class PendingCleanup:
    """Cleanup claimed in one cycle and executed once due"""
    instance: Instance
    resources: List[str]
    due_at: float


@dataclass
class InstanceReport:
    """Everything that happened to one instance during a cycle"""
    instance: Instance
    event: Optional[MatchEvent] = None
    error: Optional[str] = None
    outcomes: List[ActionOutcome] = field(default_factory=list)
    alerts: List[ChannelResult] = field(default_factory=list)

    @property
    def matched(self) -> bool:
        return self.event is not None and self.event.matched


@dataclass
class CycleCounters:
    """Counter increments contributed by one cycle"""
    matches: int = 0
    restarts: int = 0
    jobs: int = 0
    alerts: int = 0
    scaling_events: int = 0

    def merge(self, other: "CycleCounters") -> "CycleCounters":
        return CycleCounters(
            matches=self.matches + other.matches,
            restarts=self.restarts + other.restarts,
            jobs=self.jobs + other.jobs,
            alerts=self.alerts + other.alerts,
            scaling_events=self.scaling_events + other.scaling_events,
        )

    def is_empty(self) -> bool:
        return not (self.matches or self.restarts or self.jobs or self.alerts or self.scaling_events)


@dataclass
class CycleResult:
    """Joined result of one reconcile cycle for one watcher"""
    key: str
    generation: int = 0
    pattern_error: Optional[str] = None
    list_error: Optional[str] = None
    reports: List[InstanceReport] = field(default_factory=list)
    cleanup_outcomes: List[ActionOutcome] = field(default_factory=list)
    scaling: Optional[ScalingDecision] = None
    scaling_applied: bool = False
    scaling_error: Optional[str] = None
    carried: CycleCounters = field(default_factory=CycleCounters)
    carried_write_conflict: bool = False

    def outcomes(self) -> List[ActionOutcome]:
        found = [o for report in self.reports for o in report.outcomes]
        return found + list(self.cleanup_outcomes)

    def counters(self) -> CycleCounters:
        """This cycle's increments, including any carried from an unwritten cycle"""
        outcomes = self.outcomes()
        own = CycleCounters(
            matches=sum(1 for r in self.reports if r.matched),
            restarts=sum(1 for o in outcomes if o.kind == ActionKind.RESTART and o.succeeded),
            jobs=sum(1 for o in outcomes if o.kind == ActionKind.CREATE_JOB and o.succeeded),
            alerts=sum(1 for r in self.reports for a in r.alerts if a.delivered),
            scaling_events=1 if self.scaling_applied else 0,
        )
        return own.merge(self.carried)
