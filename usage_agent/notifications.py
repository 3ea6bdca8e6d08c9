"""Alert sinks for low-usage notifications."""

import logging

from usage_agent.messaging import get_message


class AlertSink:
    """Fire-and-forget receiver of low-usage alerts."""

    def alert(self, account_id: str, display_label: str, remaining_percent: float) -> None:
        raise NotImplementedError


class LoggingAlertSink(AlertSink):
    """Writes the alert to the agent log using the message templates."""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    def alert(self, account_id: str, display_label: str, remaining_percent: float) -> None:
        title = get_message("alerts.low_usage_title", default="Claude Usage Low")
        body = get_message(
            "alerts.low_usage_body",
            default="{label}: weekly quota is at {remaining:.0f}% remaining.",
            label=display_label,
            remaining=remaining_percent,
        )
        self.logger.warning(f"{title} - {body} (account {account_id})")
