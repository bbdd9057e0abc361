"""
Pattern Cache - compiled regular expressions per watcher
Entries are keyed by (watcher key, pattern source) so an edited pattern misses
and replaces the stale entry on its next lookup
"""
import re
import threading
from typing import Dict, Pattern, Tuple, Union

import structlog

from log_watcher.errors import InvalidPattern

logger = structlog.get_logger()


class PatternCache:
    """
    Compile-once cache for watcher patterns

    A pattern that fails to compile is remembered as a failure, so it is
    reported again without recompiling until the source is edited.
    """

    def __init__(self):
        self._entries: Dict[Tuple[str, str], Union[Pattern, InvalidPattern]] = {}
        self._lock = threading.Lock()
        self.compilations = 0

    def compile(self, spec_id: str, source: str) -> Pattern:
        """
        Return the compiled pattern for a watcher

        Raises:
            InvalidPattern: the source is not a valid regular expression
        """
        with self._lock:
            entry = self._entries.get((spec_id, source))
            if entry is None:
                self._evict(spec_id)
                entry = self._compile(source)
                self._entries[(spec_id, source)] = entry
                self.compilations += 1
                logger.info(
                    "Pattern compiled",
                    watcher=spec_id,
                    valid=not isinstance(entry, InvalidPattern)
                )

        if isinstance(entry, InvalidPattern):
            raise entry
        return entry

    def invalidate(self, spec_id: str) -> None:
        """Drop every entry owned by a watcher"""
        with self._lock:
            self._evict(spec_id)

    def _evict(self, spec_id: str) -> None:
        stale = [key for key in self._entries if key[0] == spec_id]
        for key in stale:
            del self._entries[key]

    @staticmethod
    def _compile(source: str) -> Union[Pattern, InvalidPattern]:
        if not source:
            return InvalidPattern(source, "pattern is empty")
        try:
            return re.compile(source)
        except re.error as e:
            return InvalidPattern(source, str(e))

    def __len__(self) -> int:
        return len(self._entries)
