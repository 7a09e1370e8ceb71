"""
Tests for notification delivery channels.
"""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from channels import EmailChannel, InAppChannel, PushChannel, WebhookChannel, log_sender
from conftest import AUTHOR
from models import (
    DeliveryFrequency,
    Notification,
    NotificationPreference,
    NotificationPriority,
    NotificationType,
)
from signing import HMAC_HEADER, NONCE_HEADER, TIMESTAMP_HEADER, HMACAuthenticator

WEBHOOK_URL = "https://hooks.example.com/royalty"


def make_notification(ntype=NotificationType.LARGE_PAYMENT):
    return Notification(
        id="notif_1",
        author_address=AUTHOR,
        type=ntype,
        title="Large Payment Received",
        message="Congratulations!",
        priority=NotificationPriority.HIGH,
        timestamp=datetime(2026, 1, 1, tzinfo=timezone.utc),
        amount=10**18,
    )


def allow_all_urls(url):
    return True, None


@pytest.fixture
def preference():
    return NotificationPreference(author_address=AUTHOR, webhook_url=WEBHOOK_URL)


class TestInAppChannel:
    def test_follows_preference(self, preference):
        channel = InAppChannel()
        assert channel.applies_to(make_notification(), preference) is True
        preference.in_app_enabled = False
        assert channel.applies_to(make_notification(), preference) is False
        assert channel.deliver(make_notification(), preference) is True


class TestEmailChannel:
    """Tests for the email channel's type filter."""

    @pytest.mark.parametrize(
        "ntype, expected",
        [
            (NotificationType.LARGE_PAYMENT, True),
            (NotificationType.MONTHLY_SUMMARY, True),
            (NotificationType.SYSTEM_ALERT, True),
            (NotificationType.NEW_ROYALTY, False),
            (NotificationType.CLAIM_SUCCESS, False),
        ],
    )
    def test_applies_to_types(self, preference, ntype, expected):
        assert EmailChannel().applies_to(make_notification(ntype), preference) is expected

    def test_disabled(self, preference):
        preference.email_enabled = False
        assert EmailChannel().applies_to(make_notification(), preference) is False

    def test_uses_sender(self, preference):
        sender = MagicMock(return_value=True)
        assert EmailChannel(sender).deliver(make_notification(), preference) is True
        sender.assert_called_once()

    def test_log_sender_reports_delivered(self, preference):
        assert log_sender("email")(make_notification(), preference) is True


class TestPushChannel:
    def test_only_immediate(self, preference):
        channel = PushChannel()
        assert channel.applies_to(make_notification(), preference) is True
        preference.frequency = DeliveryFrequency.DAILY
        assert channel.applies_to(make_notification(), preference) is False

    def test_disabled(self, preference):
        preference.push_enabled = False
        assert PushChannel().applies_to(make_notification(), preference) is False


class TestWebhookChannel:
    """Tests for webhook delivery against a mocked session."""

    @pytest.fixture
    def session(self):
        session = MagicMock()
        session.post.return_value = MagicMock(ok=True, status_code=200)
        return session

    def test_applies_with_url(self, preference):
        channel = WebhookChannel(session=MagicMock())
        assert channel.applies_to(make_notification(), preference) is True
        preference.webhook_url = None
        assert channel.applies_to(make_notification(), preference) is False

    def test_posts_json_body(self, preference, session):
        channel = WebhookChannel(session=session, url_validator=allow_all_urls, timeout=3)

        assert channel.deliver(make_notification(), preference) is True

        args, kwargs = session.post.call_args
        assert args[0] == WEBHOOK_URL
        assert kwargs["timeout"] == 3
        body = json.loads(kwargs["data"])
        assert body["event"] == "large_payment"
        assert body["notification"]["id"] == "notif_1"
        assert kwargs["headers"] == {}

    def test_signed_when_secret_set(self, preference, session, clock):
        channel = WebhookChannel(
            secret="s3cret", session=session, url_validator=allow_all_urls, clock=clock
        )

        channel.deliver(make_notification(), preference)

        kwargs = session.post.call_args.kwargs
        headers = kwargs["headers"]
        receiver = HMACAuthenticator("s3cret", clock=clock)
        valid, _ = receiver.verify_request(
            "POST",
            "/royalty",
            kwargs["data"],
            headers[HMAC_HEADER],
            headers[TIMESTAMP_HEADER],
            headers[NONCE_HEADER],
        )
        assert valid is True

    def test_unsafe_url_not_posted(self, preference, session):
        channel = WebhookChannel(
            session=session, url_validator=lambda url: (False, "blocked")
        )
        assert channel.deliver(make_notification(), preference) is False
        session.post.assert_not_called()

    def test_error_status(self, preference, session):
        session.post.return_value = MagicMock(ok=False, status_code=500)
        channel = WebhookChannel(session=session, url_validator=allow_all_urls)
        assert channel.deliver(make_notification(), preference) is False
