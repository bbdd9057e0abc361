"""
Error taxonomy for the reconcile engine

Instance, action and channel failures are caught and turned into outcomes.
Only WatchSpecUnavailable and an exhausted StatusWriteConflict end a cycle.
"""
from typing import Optional


class LogWatcherError(Exception):
    """Base class for all watcher errors"""


class InvalidPattern(LogWatcherError):
    """The watcher's matchPattern does not compile"""

    def __init__(self, source: str, reason: str):
        super().__init__(f"invalid pattern {source!r}: {reason}")
        self.source = source
        self.reason = reason


class FetchError(LogWatcherError):
    """Log fetch failed for one instance"""

    reason = "FetchFailed"


class Unreachable(FetchError):
    reason = "Unreachable"


class FetchTimeout(FetchError):
    reason = "Timeout"


class InstanceNotFound(FetchError):
    """The pod disappeared between enumeration and fetch"""

    reason = "NotFound"


class ActionFailed(LogWatcherError):
    """A remediation action failed against the workload runtime"""

    def __init__(self, message: str, retryable: bool = True, status: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status = status


class AlertDeliveryFailed(LogWatcherError):
    """An alert channel rejected or never received the message"""

    def __init__(self, channel: str, message: str, transient: bool = True):
        super().__init__(f"{channel}: {message}")
        self.channel = channel
        self.transient = transient


class StatusWriteConflict(LogWatcherError):
    """Status write kept losing the resourceVersion race"""

    def __init__(self, key: str, attempts: int):
        super().__init__(f"status update for {key} conflicted {attempts} times")
        self.key = key
        self.attempts = attempts


class WatchSpecUnavailable(LogWatcherError):
    """The LogWatcher resource could not be read"""
