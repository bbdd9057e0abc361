"""
Alert content shared by every channel
"""
from dataclasses import dataclass, field
from typing import Dict, List

import requests

from log_watcher.errors import AlertDeliveryFailed
from log_watcher.models.events import ActionOutcome, ActionResult, MatchEvent

RESULT_EMOJI = {
    ActionResult.SUCCEEDED: "✅",
    ActionResult.FAILED: "❌",
    ActionResult.SKIPPED: "⏭️",
}


@dataclass
class AlertContext:
    """What an alert reports: the match and what was done about it"""
    watcher: str
    event: MatchEvent
    outcomes: List[ActionOutcome] = field(default_factory=list)

    @property
    def title(self) -> str:
        return f"Log pattern matched in {self.event.instance.key}"

    def describe_outcome(self, outcome: ActionOutcome) -> str:
        text = f"{outcome.kind.value}: {outcome.result.value}"
        if outcome.reason is not None:
            text += f" ({outcome.reason.value})"
        if outcome.message:
            text += f" - {outcome.message}"
        return text

    def as_text(self) -> str:
        lines = [
            self.title,
            "",
            f"Watcher: {self.watcher}",
            f"Pod: {self.event.instance.key}",
            f"Time: {self.event.timestamp.isoformat()}",
            f"Match: {self.event.excerpt}",
        ]
        if self.outcomes:
            lines.append("")
            lines.append("Actions:")
            lines.extend(f"  - {self.describe_outcome(o)}" for o in self.outcomes)
        return "\n".join(lines)

    def as_dict(self) -> Dict:
        instance = self.event.instance
        return {
            "watcher": self.watcher,
            "pod": instance.name,
            "namespace": instance.namespace,
            "uid": instance.uid,
            "timestamp": self.event.timestamp.isoformat(),
            "match": self.event.excerpt,
            "actions": [
                {
                    "kind": o.kind.value,
                    "result": o.result.value,
                    "reason": o.reason.value if o.reason else None,
                    "retries": o.retries,
                    "message": o.message,
                }
                for o in self.outcomes
            ],
        }


def check_http_response(channel: str, response: requests.Response) -> None:
    """Raise AlertDeliveryFailed for a non-2xx answer; 429 and 5xx are transient"""
    if 200 <= response.status_code < 300:
        return
    transient = response.status_code == 429 or response.status_code >= 500
    raise AlertDeliveryFailed(
        channel,
        f"HTTP {response.status_code}: {response.text[:200]}",
        transient=transient
    )


def post_json(channel: str, method: str, url: str, payload: Dict, headers: Dict, timeout: float) -> None:
    """Send a JSON payload, mapping requests errors onto AlertDeliveryFailed"""
    try:
        response = requests.request(method, url, json=payload, headers=headers or None, timeout=timeout)
    except (requests.exceptions.MissingSchema,
            requests.exceptions.InvalidSchema,
            requests.exceptions.InvalidURL) as e:
        raise AlertDeliveryFailed(channel, f"malformed URL: {e}", transient=False) from e
    except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
        raise AlertDeliveryFailed(channel, str(e), transient=True) from e
    except requests.exceptions.RequestException as e:
        raise AlertDeliveryFailed(channel, str(e), transient=False) from e

    check_http_response(channel, response)
