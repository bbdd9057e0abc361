"""
Per-watcher state that outlives a single cycle
"""
from dataclasses import dataclass, field
from typing import List, Optional

from log_watcher.controller.scaling import ScalingWindow
from log_watcher.models.events import CycleCounters, PendingCleanup
from log_watcher.remediators.action_dispatcher import DebounceRecord


@dataclass
class WatcherState:
    """
    Everything the engine remembers about one watcher between cycles

    Owned by the scheduler entry for the watcher and thrown away whenever the
    watcher's uid or generation changes.
    """
    version: tuple
    debounce: DebounceRecord = field(default_factory=DebounceRecord)
    window: ScalingWindow = field(default_factory=ScalingWindow)
    cleanups: List[PendingCleanup] = field(default_factory=list)
    # Counters of a cycle whose status write was lost
    uncommitted: CycleCounters = field(default_factory=CycleCounters)
    write_conflict: bool = False

    def take_due_cleanups(self, now: float) -> List[PendingCleanup]:
        due = [c for c in self.cleanups if c.due_at <= now]
        self.cleanups = [c for c in self.cleanups if c.due_at > now]
        return due

    def next_cleanup_due(self) -> Optional[float]:
        if not self.cleanups:
            return None
        return min(c.due_at for c in self.cleanups)
