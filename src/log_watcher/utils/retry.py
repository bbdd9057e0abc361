"""
Backoff helpers for remote calls
"""


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """
    Exponential delay before retry number ``attempt + 1``

    attempt 0 -> base, 1 -> 2*base, 2 -> 4*base ... never above cap
    """
    if base <= 0:
        return 0.0
    delay = base * (2 ** attempt)
    if cap > 0:
        delay = min(delay, cap)
    return delay
