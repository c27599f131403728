"""Operator and school notifications.

The engine only ever talks to a :class:`NotificationSink`.  Two sinks ship
with the package:

- :class:`LoggingNotificationSink` writes alerts to the log.
- :class:`WebhookNotificationSink` POSTs a signed JSON document to an HTTP
  endpoint (for chat-ops bridges, paging services and the like).

Delivery is best-effort: a sink never raises into the caller.  Failed
webhook deliveries are logged and fall through to the log.
"""

from __future__ import annotations

import enum
import hashlib
import hmac
import json
import logging
import time
import urllib.parse
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import requests

if TYPE_CHECKING:
    from edulicense.config import Settings
    from edulicense.models import License

logger = logging.getLogger(__name__)


class AlertSeverity(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


_LOG_LEVELS: dict[AlertSeverity, int] = {
    AlertSeverity.LOW: logging.INFO,
    AlertSeverity.MEDIUM: logging.WARNING,
    AlertSeverity.HIGH: logging.ERROR,
}


class NotificationSink(ABC):
    """Destination for operator alerts and license notifications.

    Subclasses implement :meth:`send_admin_alert`.  The license-specific
    notifications default to an alert with a suitable severity and can be
    overridden by sinks that reach schools directly.
    """

    @abstractmethod
    def send_admin_alert(self, message: str, severity: AlertSeverity = AlertSeverity.MEDIUM) -> None:
        """Deliver an operator alert."""

    def notify_license_expired(self, license: License) -> None:
        self.send_admin_alert(
            f"License {license.id} for {license.school_name} ({license.school_id}) has expired",
            AlertSeverity.LOW,
        )

    def notify_license_expiring_soon(self, license: License, days_left: int) -> None:
        self.send_admin_alert(
            f"License {license.id} for {license.school_name} expires in {days_left} day(s)",
            AlertSeverity.LOW,
        )

    def notify_license_revoked(self, license: License) -> None:
        self.send_admin_alert(
            f"License {license.id} for {license.school_name} ({license.school_id}) was revoked",
            AlertSeverity.MEDIUM,
        )

    def notify_license_transferred(self, license: License, old_school_id: str, old_school_name: str) -> None:
        self.send_admin_alert(
            f"License {license.id} transferred from {old_school_name} ({old_school_id}) "
            f"to {license.school_name} ({license.school_id})",
            AlertSeverity.LOW,
        )


class LoggingNotificationSink(NotificationSink):
    """Writes every alert to the ``edulicense.notifications`` logger."""

    def send_admin_alert(self, message: str, severity: AlertSeverity = AlertSeverity.MEDIUM) -> None:
        logger.log(_LOG_LEVELS[severity], "ADMIN ALERT [%s]: %s", severity.name, message)


class WebhookNotificationSink(NotificationSink):
    """POSTs alerts as JSON to a webhook URL.

    When *secret* is set, the body is signed with HMAC-SHA256 and the
    signature sent as ``X-EduLicense-Signature: sha256=<hex>``.  Redirects
    are not followed.

    :param url: ``http`` or ``https`` endpoint.
    :param secret: Optional signing secret.
    :param timeout: Request timeout in seconds.
    :param fallback: Sink used when delivery fails.
    """

    def __init__(
        self,
        url: str,
        *,
        secret: str | None = None,
        timeout: float = 10.0,
        fallback: NotificationSink | None = None,
    ) -> None:
        parsed = urllib.parse.urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Webhook URL must be http(s) with a host: {url!r}")
        self._url = url
        self._secret = secret
        self._timeout = timeout
        self._fallback = fallback or LoggingNotificationSink()

    @staticmethod
    def compute_signature(secret: str, payload: str) -> str:
        """Compute HMAC-SHA256 signature for verification."""
        return "sha256=" + hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()

    def send_admin_alert(self, message: str, severity: AlertSeverity = AlertSeverity.MEDIUM) -> None:
        payload = json.dumps(
            {
                "type": "admin_alert",
                "severity": severity.value,
                "message": message,
                "timestamp": time.time(),
            }
        )
        headers = {"Content-Type": "application/json", "User-Agent": "edulicense-alerts/1"}
        if self._secret:
            headers["X-EduLicense-Signature"] = self.compute_signature(self._secret, payload)

        try:
            resp = requests.post(
                self._url,
                data=payload,
                headers=headers,
                timeout=self._timeout,
                allow_redirects=False,
            )
        except requests.RequestException as exc:
            logger.warning("Alert webhook delivery to %s failed: %s", self._url, exc)
            self._fallback.send_admin_alert(message, severity)
            return

        if not 200 <= resp.status_code < 300:
            logger.warning("Alert webhook %s returned HTTP %d", self._url, resp.status_code)
            self._fallback.send_admin_alert(message, severity)


def build_notification_sink(settings: Settings) -> NotificationSink:
    """Return the sink configured by *settings*."""
    if settings.alert_webhook_url:
        return WebhookNotificationSink(
            settings.alert_webhook_url,
            secret=settings.alert_webhook_secret,
        )
    return LoggingNotificationSink()
