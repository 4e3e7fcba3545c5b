"""Alert dispatchers for newly created blocks."""

import json
import urllib.error
import urllib.request
from datetime import datetime

from const import APP_NAME, APP_VERSION
from models import AlertSummary, Outcome
from utils.formatters import format_duration
from utils.logger import get_logger

from .base import AlertDispatcher

logger = get_logger("alerts")


def format_alert(summary: AlertSummary) -> str:
    """Render a one-line alert message."""
    if summary.permanent:
        lifetime = "permanently"
    else:
        until = datetime.fromtimestamp(summary.expires_at).strftime("%Y-%m-%d %H:%M:%S")
        lifetime = f"until {until}"
    ports = ",".join(str(p) for p in summary.ports) if summary.ports else "all ports"
    text = (
        f"{summary.reason} {summary.address} ({summary.classification}): "
        f"{summary.count} failures, blocked {lifetime} on {ports}"
    )
    if summary.blocklist_detail:
        text += f" [{summary.blocklist_detail}]"
    return text


class LogAlertDispatcher(AlertDispatcher):
    """Writes alerts to the application log."""

    def notify(self, summary: AlertSummary) -> Outcome:
        logger.warning(f"ALERT: {format_alert(summary)}")
        return Outcome.success()


class WebhookAlertDispatcher(AlertDispatcher):
    """
    POSTs alerts as JSON to a webhook.

    Usage:
        alerts = WebhookAlertDispatcher("https://hooks.example.net/bastion", timeout=5)
        alerts.notify(summary)
    """

    def __init__(self, url: str, timeout: float = 5.0):
        """
        Initialize dispatcher.

        Args:
            url: Webhook endpoint
            timeout: Request timeout in seconds
        """
        self.url = url
        self.timeout = timeout

    def notify(self, summary: AlertSummary) -> Outcome:
        payload = {
            "source": APP_NAME,
            "version": APP_VERSION,
            "text": format_alert(summary),
            "event": summary.to_dict(),
        }
        request = urllib.request.Request(
            self.url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json", "User-Agent": f"{APP_NAME}/{APP_VERSION}"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                status = getattr(response, "status", 200)
        except (urllib.error.URLError, OSError, ValueError) as e:
            return Outcome.recoverable(f"Webhook delivery failed: {e}")

        if status >= 400:
            return Outcome.recoverable(f"Webhook returned HTTP {status}")
        return Outcome.success()


class MultiAlertDispatcher(AlertDispatcher):
    """Fans an alert out to several dispatchers; failures are collected."""

    def __init__(self, dispatchers):
        self.dispatchers = list(dispatchers)

    def notify(self, summary: AlertSummary) -> Outcome:
        failures = []
        for dispatcher in self.dispatchers:
            try:
                outcome = dispatcher.notify(summary)
            except Exception as e:
                outcome = Outcome.recoverable(f"{dispatcher.__class__.__name__}: {e}")
            if not outcome.ok:
                failures.append(outcome.detail)
        if failures:
            return Outcome.recoverable("; ".join(failures))
        return Outcome.success()
