"""
Email Notifier - plain-text alerts over SMTP
"""
import smtplib
from email.message import EmailMessage

import structlog

from log_watcher.errors import AlertDeliveryFailed
from log_watcher.models.schemas import EmailConfig
from log_watcher.notifiers.message import AlertContext

logger = structlog.get_logger()

SMTP_SSL_PORT = 465
SMTP_SUBMISSION_PORT = 587


class EmailNotifier:
    channel_name = "email"

    def __init__(self, config: EmailConfig, timeout: float = 5.0):
        self.config = config
        self.timeout = timeout

    def build_message(self, context: AlertContext) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.config.from_address
        message["To"] = self.config.to
        message["Subject"] = self.config.subject or f"[log-watcher] {context.title}"
        message.set_content(context.as_text())
        return message

    def send(self, context: AlertContext) -> None:
        """Submit the alert; raises AlertDeliveryFailed"""
        message = self.build_message(context)
        try:
            if self.config.smtp_port == SMTP_SSL_PORT:
                server = smtplib.SMTP_SSL(self.config.smtp_host, self.config.smtp_port, timeout=self.timeout)
            else:
                server = smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=self.timeout)

            with server:
                if self.config.smtp_port == SMTP_SUBMISSION_PORT:
                    server.starttls()
                if self.config.username:
                    server.login(self.config.username, self.config.password or "")
                server.send_message(message)

        except smtplib.SMTPAuthenticationError as e:
            raise AlertDeliveryFailed(self.channel_name, f"authentication failed: {e}", transient=False) from e
        except smtplib.SMTPResponseException as e:
            # 4xx replies are temporary by definition
            raise AlertDeliveryFailed(
                self.channel_name, f"SMTP {e.smtp_code}: {e.smtp_error!r}", transient=400 <= e.smtp_code < 500
            ) from e
        except smtplib.SMTPRecipientsRefused as e:
            raise AlertDeliveryFailed(self.channel_name, f"recipients refused: {e}", transient=False) from e
        except smtplib.SMTPNotSupportedError as e:
            raise AlertDeliveryFailed(self.channel_name, f"STARTTLS not supported: {e}", transient=False) from e
        except OSError as e:
            raise AlertDeliveryFailed(self.channel_name, str(e), transient=True) from e

        logger.info("Email notification sent", watcher=context.watcher, to=self.config.to)
