"""
Match Evaluator - applies a watcher pattern to fetched log text
"""
from datetime import datetime
from typing import List, Pattern

from log_watcher.models.events import Instance, MatchEvent

DEFAULT_EXCERPT_LENGTH = 256


def evaluate(
    pattern: Pattern,
    lines: List[str],
    instance: Instance,
    now: datetime,
    max_excerpt: int = DEFAULT_EXCERPT_LENGTH
) -> MatchEvent:
    """
    Search the joined tail of an instance's log

    The lines are joined with newlines and searched as one text, so a pattern
    may span lines of the same fetch. The first match wins.
    """
    text = "\n".join(lines)
    match = pattern.search(text)
    if match is None:
        return MatchEvent(instance=instance, timestamp=now, matched=False)

    return MatchEvent(
        instance=instance,
        timestamp=now,
        matched=True,
        excerpt=truncate(match.group(0), max_excerpt)
    )


def truncate(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[:limit - 3] + "..."
