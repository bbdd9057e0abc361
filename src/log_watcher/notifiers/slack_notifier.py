"""
Slack Notifier - Send rich notifications to Slack
Keeps humans informed of log matches and the actions taken
"""
from typing import Dict

import structlog

from log_watcher.models.events import ActionResult
from log_watcher.models.schemas import SlackConfig
from log_watcher.notifiers.message import RESULT_EMOJI, AlertContext, post_json

logger = structlog.get_logger()


class SlackNotifier:
    """
    Send formatted notifications to a Slack incoming webhook

    Features:
    - Rich message formatting
    - Color-coded by action result
    """

    channel_name = "slack"

    def __init__(self, config: SlackConfig, timeout: float = 5.0):
        self.config = config
        self.timeout = timeout

    def send(self, context: AlertContext) -> None:
        """Post the alert; raises AlertDeliveryFailed"""
        post_json(
            self.channel_name,
            "POST",
            self.config.webhook_url,
            self._build_alert_message(context),
            {},
            self.timeout
        )
        logger.info("Slack notification sent successfully", watcher=context.watcher)

    def _build_alert_message(self, context: AlertContext) -> Dict:
        """Build formatted Slack message for a match"""

        event = context.event
        instance = event.instance

        # Color based on what the actions did
        results = {o.result for o in context.outcomes}
        if ActionResult.FAILED in results:
            color = "#dc3545"  # Red
        elif ActionResult.SUCCEEDED in results:
            color = "#28a745"  # Green
        else:
            color = "#ffc107"  # Yellow

        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"🔎 Log match: {context.watcher}",
                    "emoji": True
                }
            },
            {
                "type": "section",
                "fields": [
                    {
                        "type": "mrkdwn",
                        "text": f"*Pod:*\n{instance.name}"
                    },
                    {
                        "type": "mrkdwn",
                        "text": f"*Namespace:*\n{instance.namespace}"
                    },
                    {
                        "type": "mrkdwn",
                        "text": f"*Time:*\n{event.timestamp.strftime('%Y-%m-%d %H:%M:%S')}"
                    }
                ]
            },
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"*Matched:*\n```{event.excerpt}```"
                }
            }
        ]

        if context.outcomes:
            lines = [
                f"{RESULT_EMOJI[o.result]} {context.describe_outcome(o)}"
                for o in context.outcomes
            ]
            blocks.extend([
                {
                    "type": "divider"
                },
                {
                    "type": "section",
                    "text": {
                        "type": "mrkdwn",
                        "text": "*Actions:*\n" + "\n".join(lines)
                    }
                }
            ])

        message = {
            "text": context.title,
            "attachments": [
                {
                    "color": color,
                    "blocks": blocks
                }
            ]
        }
        if self.config.channel:
            message["channel"] = self.config.channel
        if self.config.username:
            message["username"] = self.config.username
        return message
