"""
Log Fetcher - tail of a pod's log under a hard deadline
"""
import asyncio
from typing import List

import structlog
from opentelemetry import trace

from log_watcher.errors import FetchTimeout
from log_watcher.models.events import Instance

logger = structlog.get_logger()
tracer = trace.get_tracer(__name__)


class LogFetcher:
    """
    Fetch recent log lines through the workload runtime

    The runtime call gets the timeout as its request timeout and the await is
    cut off at the same deadline, so a hung pod only costs its own slot.
    """

    def __init__(self, runtime):
        self.runtime = runtime

    async def fetch(self, instance: Instance, tail_lines: int, timeout: float) -> List[str]:
        """
        Raises:
            InstanceNotFound: pod is gone; callers skip it silently
            FetchTimeout: no answer within ``timeout`` seconds
            Unreachable: API or transport failure
        """
        with tracer.start_as_current_span("log_fetcher.fetch") as span:
            span.set_attribute("pod.name", instance.key)
            span.set_attribute("log.tail_lines", tail_lines)

            try:
                lines = await asyncio.wait_for(
                    asyncio.to_thread(self.runtime.read_log, instance, tail_lines, timeout),
                    timeout=timeout
                )
            except asyncio.TimeoutError as e:
                raise FetchTimeout(f"{instance.key}: no log within {timeout}s") from e

            span.set_attribute("log.lines", len(lines))
            return lines
