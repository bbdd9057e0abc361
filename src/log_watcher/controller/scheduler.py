"""
Reconcile Scheduler - owns the control loop of every LogWatcher

Each watcher moves Idle -> Running -> Idle and ends in Suspended when its
resource is deleted. Cycles of one watcher never overlap; cycles of
different watchers share a bounded number of slots.
"""
import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

import structlog

from log_watcher.controller.reconciler import Reconciler
from log_watcher.controller.scaling import ScalingWindow
from log_watcher.controller.state import WatcherState
from log_watcher.controller.watch_store import DELETED, parse_resource
from log_watcher.errors import LogWatcherError
from log_watcher.models.events import CycleResult
from log_watcher.models.schemas import WatchResource

logger = structlog.get_logger()


class Phase(str, Enum):
    IDLE = "Idle"
    RUNNING = "Running"
    SUSPENDED = "Suspended"


class Trigger(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    TIMER = "timer"
    CLEANUP_DUE = "cleanup_due"


@dataclass
class WatchEntry:
    resource: WatchResource
    state: Optional[WatcherState]
    phase: Phase = Phase.IDLE
    task: Optional[asyncio.Task] = None
    timer: Optional[asyncio.TimerHandle] = None
    cleanup_timer: Optional[asyncio.TimerHandle] = None
    last_result: Optional[CycleResult] = None
    last_error: Optional[str] = None
    cycles: int = 0
    ignored_triggers: int = 0

    def cancel_timers(self) -> None:
        for handle in (self.timer, self.cleanup_timer):
            if handle is not None:
                handle.cancel()
        self.timer = None
        self.cleanup_timer = None


class ReconcileScheduler:
    """
    Event- and timer-driven scheduling of reconcile cycles

    Triggers:
    - created / updated: the store reported a new uid or generation
    - timer: the watcher's reconcile interval expired after its last cycle
    - cleanup_due: a deferred cleanup is ready to run

    Must be driven from a single event loop; store events arriving on other
    threads go through ``loop.call_soon_threadsafe(scheduler.on_store_event, ...)``.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        max_concurrency: int = 4,
        default_interval: int = 60,
        scaling_window: float = 300.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.reconciler = reconciler
        self.default_interval = default_interval
        self.scaling_window = scaling_window
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._clock = clock
        self._entries: Dict[str, WatchEntry] = {}

    def _new_state(self, resource: WatchResource) -> WatcherState:
        return WatcherState(version=resource.version, window=ScalingWindow(self.scaling_window))

    def entry(self, key: str) -> Optional[WatchEntry]:
        return self._entries.get(key)

    # ------------------------------------------------------------------
    # Store events
    # ------------------------------------------------------------------

    def on_store_event(self, event_type: str, obj: Dict) -> None:
        """Route a raw ADDED/MODIFIED/DELETED event from the resource store"""
        metadata = obj.get("metadata") or {}
        key = f"{metadata.get('namespace')}/{metadata.get('name')}"

        if event_type == DELETED:
            self.remove(key)
            return

        try:
            resource = parse_resource(obj)
        except LogWatcherError as e:
            logger.error("Ignoring LogWatcher with invalid spec", watcher=key, error=str(e))
            return
        self.upsert(resource)

    def upsert(self, resource: WatchResource) -> None:
        """Register a new watcher or take a newer snapshot of a known one"""
        key = resource.key
        entry = self._entries.get(key)

        if entry is None or entry.phase == Phase.SUSPENDED:
            self._entries[key] = WatchEntry(resource=resource, state=self._new_state(resource))
            logger.info("Watcher registered", watcher=key, generation=resource.metadata.generation)
            self.trigger(key, Trigger.CREATED)
            return

        changed = resource.version != entry.state.version
        entry.resource = resource
        if not changed:
            # Status writes come back as MODIFIED events with the same generation
            return

        logger.info("Watcher spec changed, resetting state", watcher=key, generation=resource.metadata.generation)
        entry.state = self._new_state(resource)
        self.trigger(key, Trigger.UPDATED)

    def remove(self, key: str) -> None:
        """Suspend a deleted watcher: cancel its cycle and timers, drop its state"""
        entry = self._entries.get(key)
        if entry is None or entry.phase == Phase.SUSPENDED:
            return

        entry.phase = Phase.SUSPENDED
        entry.cancel_timers()
        if entry.task is not None and not entry.task.done():
            entry.task.cancel()
        entry.state = None
        self.reconciler.patterns.invalidate(key)
        logger.info("Watcher suspended", watcher=key)

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def trigger(self, key: str, reason: Trigger) -> bool:
        """
        Start a cycle for an idle watcher

        Returns:
            False when the watcher is unknown, suspended or already running
        """
        entry = self._entries.get(key)
        if entry is None or entry.phase == Phase.SUSPENDED:
            return False
        if entry.phase == Phase.RUNNING:
            entry.ignored_triggers += 1
            logger.debug("Cycle already running, trigger ignored", watcher=key, trigger=reason.value)
            return False

        entry.cancel_timers()
        entry.phase = Phase.RUNNING
        entry.task = asyncio.get_running_loop().create_task(self._run(key, entry, reason))
        return True

    async def _run(self, key: str, entry: WatchEntry, reason: Trigger) -> None:
        state = entry.state
        try:
            async with self._semaphore:
                logger.debug("Cycle starting", watcher=key, trigger=reason.value)
                entry.last_result = await self.reconciler.run_cycle(entry.resource, state)
                entry.last_error = None
        except LogWatcherError as e:
            entry.last_error = str(e)
            logger.error("Reconcile cycle failed, retrying on next trigger", watcher=key, error=str(e))
        except Exception as e:
            # Keep the control loop alive for every other watcher
            entry.last_error = str(e)
            logger.exception("Reconcile cycle crashed", watcher=key)
        finally:
            entry.cycles += 1
            if entry.phase != Phase.SUSPENDED:
                entry.phase = Phase.IDLE
                self._arm_timers(key, entry)

    def _arm_timers(self, key: str, entry: WatchEntry) -> None:
        loop = asyncio.get_running_loop()
        interval = entry.resource.spec.interval_seconds(self.default_interval)
        entry.timer = loop.call_later(interval, self.trigger, key, Trigger.TIMER)

        due = entry.state.next_cleanup_due() if entry.state is not None else None
        if due is not None:
            delay = max(0.0, due - self._clock())
            entry.cleanup_timer = loop.call_later(delay, self.trigger, key, Trigger.CLEANUP_DUE)

    async def wait_idle(self) -> None:
        """Wait until no cycle is in flight"""
        while True:
            running = [e.task for e in self._entries.values() if e.task is not None and not e.task.done()]
            if not running:
                return
            await asyncio.gather(*running, return_exceptions=True)

    async def shutdown(self) -> None:
        for key in list(self._entries):
            self.remove(key)
        await self.wait_idle()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def snapshot(self) -> List[Dict]:
        """
        Per-watcher view for the health API

        Called from the API thread while the loop mutates entries, so it only
        reads from copies.
        """
        watchers = []
        for key, entry in sorted(list(self._entries.items())):
            result = entry.last_result
            state = entry.state
            watchers.append({
                "watcher": key,
                "phase": entry.phase.value,
                "generation": entry.resource.metadata.generation,
                "cycles": entry.cycles,
                "ignored_triggers": entry.ignored_triggers,
                "last_error": entry.last_error,
                "last_cycle": {
                    "pods": len(result.reports),
                    "matches": sum(1 for r in list(result.reports) if r.matched),
                    "pattern_error": result.pattern_error,
                    "list_error": result.list_error,
                } if result is not None else None,
                "pending_cleanups": len(state.cleanups) if state is not None else 0,
            })
        return watchers

    def get_stats(self) -> Dict:
        entries = list(self._entries.values())
        phases = {phase.value: 0 for phase in Phase}
        for entry in entries:
            phases[entry.phase.value] += 1
        return {
            "watchers": len(entries),
            "by_phase": phases,
            "max_concurrency": self.max_concurrency,
            "cycles": sum(e.cycles for e in entries),
        }
