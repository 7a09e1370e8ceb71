"""
Notification delivery channels.

Each channel decides whether it applies to a notification for a given
author preference, and delivers it. Channels may raise; the dispatcher
counts any exception as a failed delivery for that channel only.

Channels:
    in_app   Always applies when in-app notifications are enabled; the
             author's queue is the delivery.
    email    Only for large payments, monthly summaries and system alerts.
    push     Only for authors on immediate delivery.
    webhook  Authors with a registered URL; signed JSON POST.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from urllib.parse import urlparse

import requests

from models import DeliveryFrequency, Notification, NotificationPreference, NotificationType
from signing import HMACAuthenticator
from ssrf_protection import validate_url_for_ssrf

logger = logging.getLogger(__name__)

EMAIL_TYPES = frozenset(
    {
        NotificationType.LARGE_PAYMENT,
        NotificationType.MONTHLY_SUMMARY,
        NotificationType.SYSTEM_ALERT,
    }
)

DEFAULT_WEBHOOK_TIMEOUT = 10.0

# (notification, preference) -> delivered
Sender = Callable[[Notification, NotificationPreference], bool]


def log_sender(channel: str) -> Sender:
    """Sender for deployments without a provider: logs the message and reports it delivered."""

    def send(notification: Notification, preference: NotificationPreference) -> bool:
        logger.info(
            f"[{channel}] {notification.title} -> {preference.author_address}: {notification.message}"
        )
        return True

    return send


class DeliveryChannel(ABC):
    """A way of getting a notification in front of an author."""

    name: str = ""

    @abstractmethod
    def applies_to(self, notification: Notification, preference: NotificationPreference) -> bool:
        pass

    @abstractmethod
    def deliver(self, notification: Notification, preference: NotificationPreference) -> bool:
        pass


class InAppChannel(DeliveryChannel):
    name = "in_app"

    def applies_to(self, notification, preference):
        return preference.in_app_enabled

    def deliver(self, notification, preference):
        return True


class EmailChannel(DeliveryChannel):
    name = "email"

    def __init__(self, sender: Sender | None = None):
        self.sender = sender or log_sender(self.name)

    def applies_to(self, notification, preference):
        return preference.email_enabled and notification.type in EMAIL_TYPES

    def deliver(self, notification, preference):
        return bool(self.sender(notification, preference))


class PushChannel(DeliveryChannel):
    name = "push"

    def __init__(self, sender: Sender | None = None):
        self.sender = sender or log_sender(self.name)

    def applies_to(self, notification, preference):
        return preference.push_enabled and preference.frequency == DeliveryFrequency.IMMEDIATE

    def deliver(self, notification, preference):
        return bool(self.sender(notification, preference))


class WebhookChannel(DeliveryChannel):
    """
    POSTs the notification as JSON to the author's webhook URL.

    When a secret is configured the request carries X-Royalty-Signature,
    X-Royalty-Timestamp and X-Royalty-Nonce headers (HMAC-SHA256 over
    method, path, timestamp, nonce and body), so receivers can verify it
    with the same shared secret.
    """

    name = "webhook"

    def __init__(
        self,
        secret: str | None = None,
        timeout: float = DEFAULT_WEBHOOK_TIMEOUT,
        session: requests.Session | None = None,
        url_validator: Callable[[str], tuple[bool, str | None]] = validate_url_for_ssrf,
        clock: Callable[[], float] = time.time,
    ):
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        self.url_validator = url_validator
        self.authenticator = HMACAuthenticator(secret, clock=clock) if secret else None

    def applies_to(self, notification, preference):
        return bool(preference.webhook_url)

    def build_body(self, notification: Notification) -> str:
        return json.dumps(
            {"event": notification.type.value, "notification": notification.to_dict()},
            sort_keys=True,
            separators=(",", ":"),
        )

    def deliver(self, notification, preference):
        url = preference.webhook_url
        # Re-checked at send time; DNS can change after registration
        is_safe, reason = self.url_validator(url)
        if not is_safe:
            logger.warning(f"Webhook for {preference.author_address} refused: {reason}")
            return False

        body = self.build_body(notification)
        headers = {}
        if self.authenticator:
            headers = self.authenticator.sign_request("POST", urlparse(url).path or "/", body)

        response = self.session.post(url, data=body, headers=headers, timeout=self.timeout)
        if not response.ok:
            logger.warning(
                f"Webhook delivery of {notification.id} returned HTTP {response.status_code}"
            )
        return response.ok
