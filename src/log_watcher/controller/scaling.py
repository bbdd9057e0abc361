"""
Scaling Evaluator - replica adjustment from match frequency
"""
from collections import deque
from typing import Deque, Optional, Tuple

from log_watcher.models.events import ScalingDecision
from log_watcher.models.schemas import ScalingConfig


class ScalingWindow:
    """Sliding window of per-cycle match counts for one watcher"""

    def __init__(self, horizon: float = 300.0):
        self.horizon = horizon
        self._samples: Deque[Tuple[float, int]] = deque()

    def record(self, now: float, count: int) -> None:
        self._samples.append((now, count))
        self.trim(now)

    def trim(self, now: float) -> None:
        cutoff = now - self.horizon
        while self._samples and self._samples[0][0] <= cutoff:
            self._samples.popleft()

    def total(self) -> int:
        return sum(count for _, count in self._samples)

    def __len__(self) -> int:
        return len(self._samples)


def evaluate(
    scaling: ScalingConfig,
    window: ScalingWindow,
    match_count: int,
    current_replicas: int,
    now: float
) -> Optional[ScalingDecision]:
    """
    Record this cycle's matches and propose at most one replica change

    The window total at or above scaleUpThreshold adds ``step`` replicas up to
    maxReplicas; a total below scaleDownThreshold removes ``step`` down to
    minReplicas. A proposal that would not change the count returns None.
    """
    window.record(now, match_count)
    total = window.total()

    if scaling.scale_up_threshold > 0 and total >= scaling.scale_up_threshold:
        desired = min(current_replicas + scaling.step, scaling.max_replicas)
        if desired > current_replicas:
            return ScalingDecision(
                deployment=scaling.deployment_name,
                current_replicas=current_replicas,
                desired_replicas=desired,
                direction="up",
                window_total=total
            )
        return None

    if total < scaling.scale_down_threshold:
        desired = max(current_replicas - scaling.step, scaling.min_replicas)
        if desired < current_replicas:
            return ScalingDecision(
                deployment=scaling.deployment_name,
                current_replicas=current_replicas,
                desired_replicas=desired,
                direction="down",
                window_total=total
            )

    return None
