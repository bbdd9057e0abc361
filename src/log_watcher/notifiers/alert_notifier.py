"""
Alert Notifier - fans one alert out to every configured channel
Each channel runs on its own deadline and fails on its own
"""
import asyncio
from typing import Dict, List, Optional

import structlog
from opentelemetry import trace

from log_watcher.errors import AlertDeliveryFailed
from log_watcher.models.events import ActionOutcome, ChannelResult, MatchEvent
from log_watcher.models.schemas import AlertingConfig
from log_watcher.notifiers.email_notifier import EmailNotifier
from log_watcher.notifiers.message import AlertContext
from log_watcher.notifiers.slack_notifier import SlackNotifier
from log_watcher.notifiers.webhook_notifier import WebhookNotifier

logger = structlog.get_logger()
tracer = trace.get_tracer(__name__)


class AlertNotifier:
    """
    Deliver match alerts to Slack, Email and Webhook channels

    Every configured channel is attempted. A transient failure is retried
    once; a permanent one (bad URL, rejected credentials) is not.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

        # Statistics
        self.notifications_sent = 0
        self.notifications_failed = 0

    def channels(self, alerting: Optional[AlertingConfig]) -> List:
        if alerting is None:
            return []
        channels = []
        if alerting.slack is not None:
            channels.append(SlackNotifier(alerting.slack, timeout=self.timeout))
        if alerting.email is not None:
            channels.append(EmailNotifier(alerting.email, timeout=self.timeout))
        if alerting.webhook is not None:
            channels.append(WebhookNotifier(alerting.webhook, timeout=self.timeout))
        return channels

    async def notify(
        self,
        watcher: str,
        alerting: Optional[AlertingConfig],
        event: MatchEvent,
        outcomes: List[ActionOutcome]
    ) -> List[ChannelResult]:
        """
        Send the alert on every configured channel

        Returns:
            One ChannelResult per configured channel
        """
        channels = self.channels(alerting)
        if not channels or not event.matched:
            return []

        context = AlertContext(watcher=watcher, event=event, outcomes=outcomes)
        return list(await asyncio.gather(*(self._deliver(channel, context) for channel in channels)))

    async def _deliver(self, channel, context: AlertContext) -> ChannelResult:
        name = channel.channel_name
        attempts = 0

        with tracer.start_as_current_span("notifier.deliver") as span:
            span.set_attribute("alert.channel", name)

            while True:
                attempts += 1
                try:
                    # Give the transport its own timeout a little room before cutting it off
                    await asyncio.wait_for(asyncio.to_thread(channel.send, context), timeout=self.timeout * 2)
                    self.notifications_sent += 1
                    return ChannelResult(channel=name, delivered=True, attempts=attempts)

                except AlertDeliveryFailed as e:
                    error = e
                except asyncio.TimeoutError:
                    error = AlertDeliveryFailed(name, "delivery timed out", transient=True)

                if error.transient and attempts < 2:
                    logger.warning("Alert delivery failed, retrying", channel=name, error=str(error))
                    continue

                self.notifications_failed += 1
                span.record_exception(error)
                logger.error(
                    "Alert delivery failed",
                    channel=name,
                    watcher=context.watcher,
                    transient=error.transient,
                    error=str(error)
                )
                return ChannelResult(channel=name, delivered=False, attempts=attempts, error=str(error))

    def get_stats(self) -> Dict:
        """Get notification statistics"""
        total = self.notifications_sent + self.notifications_failed
        return {
            "notifications_sent": self.notifications_sent,
            "notifications_failed": self.notifications_failed,
            "success_rate": (self.notifications_sent / total if total > 0 else 0) * 100
        }
