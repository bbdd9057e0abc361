"""
Webhook Notifier - generic JSON webhook
"""
import structlog

from log_watcher.models.schemas import WebhookConfig
from log_watcher.notifiers.message import AlertContext, post_json

logger = structlog.get_logger()


class WebhookNotifier:
    channel_name = "webhook"

    def __init__(self, config: WebhookConfig, timeout: float = 5.0):
        self.config = config
        self.timeout = timeout

    def send(self, context: AlertContext) -> None:
        payload = dict(context.as_dict(), title=context.title)
        post_json(
            self.channel_name,
            (self.config.method or "POST").upper(),
            self.config.url,
            payload,
            self.config.headers,
            self.timeout
        )
        logger.info("Webhook notification sent", watcher=context.watcher, url=self.config.url)
