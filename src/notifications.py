"""
Royalty Engine - Notification Dispatcher

Renders typed notifications, keeps each author's bounded notification queue
and fans deliveries out to the enabled channels.

Send pipeline:
1. Per-(author, type) rate limit, peeked only
2. Subscription check; unsubscribed types are skipped without using quota
3. Reserve one unit of quota atomically; it is kept whatever the delivery outcome
4. Render the template for the type
5. Prepend to the author's queue (100 most recent kept)
6. Pick channels from the author's preference
7. Deliver on all channels concurrently and wait for every one to settle
8. Record the delivery outcome

A send succeeds when at least one channel delivered.

Usage:
    dispatcher = NotificationDispatcher(MemoryNotificationStore(), MemoryPreferenceStore())
    dispatcher.trigger_royalty_available(author, "ch-1", "The Long Road", 2 * ONE_TOKEN)

Environment Variables:
    ROYALTY_NOTIFICATIONS_PER_HOUR=10
    ROYALTY_NOTIFICATION_QUEUE_SIZE=100
    ROYALTY_WEBHOOK_SECRET=...
    ROYALTY_WEBHOOK_TIMEOUT=10
"""

import logging
import os
import re
import threading
import time
import uuid
from collections import Counter
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from channels import DeliveryChannel, EmailChannel, InAppChannel, PushChannel, WebhookChannel
from errors import RateLimitedError, RoyaltyEngineError, ValidationError
from models import (
    DeliveryFrequency,
    DeliveryRecord,
    Notification,
    NotificationPreference,
    NotificationPriority,
    NotificationType,
    isoformat,
    utc_from_timestamp,
    validate_address,
)
from monitoring.metrics import (
    CHANNEL_DELIVERY_FAILURES,
    NOTIFICATIONS_RATE_LIMITED,
    NOTIFICATIONS_SENT,
    metrics,
)
from rate_limiter import FixedWindowRateLimiter, MemoryRateLimitStore, RateLimitResult
from ssrf_protection import validate_url_for_ssrf
from storage.base import NotificationStore, PreferenceStore
from token_units import ONE_TOKEN, format_token_amount, parse_base_units

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 100
STATS_ACTIVITY_DAYS = 7


# =============================================================================
# Payloads
# =============================================================================


def _text(data: dict[str, Any], key: str, required: bool = True, default: str = "") -> str:
    value = data.get(key)
    if value is None:
        if required:
            raise ValidationError(f"{key} is required", details={"field": key})
        return default
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string", details={"field": key})
    return value


def _amount(data: dict[str, Any], key: str) -> int:
    if data.get(key) is None:
        raise ValidationError(f"{key} is required", details={"field": key})
    return parse_base_units(data[key])


def _score(data: dict[str, Any], key: str) -> float:
    try:
        value = float(data[key])
    except KeyError:
        raise ValidationError(f"{key} is required", details={"field": key}) from None
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a number", details={"field": key}) from None
    if not 0 <= value <= 1:
        raise ValidationError(f"{key} must be between 0 and 1", details={"field": key})
    return value


def _percent(score: float) -> int:
    return round(score * 100)


class NotificationPayload:
    """
    Base for the per-type payloads. Subclasses are dataclasses; those that
    carry an ``amount`` or ``subject_id`` have it copied onto the notification.
    """

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "NotificationPayload":
        raise NotImplementedError

    def template_fields(self) -> dict[str, Any]:
        raise NotImplementedError

    def metadata(self) -> dict[str, Any]:
        return {k: v for k, v in self.template_fields().items() if v is not None}


@dataclass
class RoyaltyPayload(NotificationPayload):
    amount: int
    subject_id: str | None = None
    chapter_title: str = ""

    @classmethod
    def from_mapping(cls, data):
        return cls(
            amount=_amount(data, "amount"),
            subject_id=_text(data, "chapterId", required=False) or None,
            chapter_title=_text(data, "chapterTitle", required=False),
        )

    def template_fields(self):
        return {
            "amount": format_token_amount(self.amount),
            "chapterId": self.subject_id,
            "chapterTitle": self.chapter_title or None,
        }


@dataclass
class ClaimFailedPayload(NotificationPayload):
    subject_id: str
    chapter_title: str
    error: str
    amount: int | None = None

    @classmethod
    def from_mapping(cls, data):
        return cls(
            subject_id=_text(data, "chapterId"),
            chapter_title=_text(data, "chapterTitle"),
            error=_text(data, "error"),
            amount=_amount(data, "amount") if data.get("amount") is not None else None,
        )

    def template_fields(self):
        return {
            "chapterId": self.subject_id,
            "chapterTitle": self.chapter_title,
            "error": self.error,
            "amount": format_token_amount(self.amount) if self.amount is not None else None,
        }


@dataclass
class MonthlySummaryPayload(NotificationPayload):
    total_amount: int
    chapter_count: int
    month: str = ""

    @classmethod
    def from_mapping(cls, data):
        count = data.get("chapterCount")
        if not isinstance(count, int) or isinstance(count, bool) or count < 0:
            raise ValidationError(
                "chapterCount must be a non-negative integer", details={"field": "chapterCount"}
            )
        return cls(
            total_amount=_amount(data, "totalAmount"),
            chapter_count=count,
            month=_text(data, "month", required=False),
        )

    @property
    def amount(self) -> int:
        return self.total_amount

    def template_fields(self):
        return {
            "totalAmount": format_token_amount(self.total_amount),
            "chapterCount": self.chapter_count,
            "month": self.month or None,
        }


@dataclass
class SystemAlertPayload(NotificationPayload):
    message: str

    @classmethod
    def from_mapping(cls, data):
        return cls(message=_text(data, "message"))

    def template_fields(self):
        return {"message": self.message}


@dataclass
class DerivativePayload(NotificationPayload):
    original_title: str
    similarity_score: float
    subject_id: str | None = None
    derivative_id: str | None = None

    @classmethod
    def from_mapping(cls, data):
        return cls(
            original_title=_text(data, "originalTitle"),
            similarity_score=_score(data, "similarityScore"),
            subject_id=_text(data, "storyId", required=False) or None,
            derivative_id=_text(data, "derivativeId", required=False) or None,
        )

    def template_fields(self):
        return {
            "originalTitle": self.original_title,
            "similarityScore": _percent(self.similarity_score),
            "storyId": self.subject_id,
            "derivativeId": self.derivative_id,
        }


@dataclass
class QualityPayload(NotificationPayload):
    story_title: str
    improvement: str
    quality_score: float
    subject_id: str | None = None

    @classmethod
    def from_mapping(cls, data):
        return cls(
            story_title=_text(data, "storyTitle"),
            improvement=_text(data, "improvement"),
            quality_score=_score(data, "qualityScore"),
            subject_id=_text(data, "storyId", required=False) or None,
        )

    def template_fields(self):
        return {
            "storyTitle": self.story_title,
            "improvement": self.improvement,
            "qualityScore": _percent(self.quality_score),
            "storyId": self.subject_id,
        }


@dataclass
class CollaborationPayload(NotificationPayload):
    story_title: str
    collaborator_count: int
    top_match: str | None = None
    subject_id: str | None = None

    @classmethod
    def from_mapping(cls, data):
        count = data.get("collaboratorCount")
        if not isinstance(count, int) or isinstance(count, bool) or count < 1:
            raise ValidationError(
                "collaboratorCount must be a positive integer",
                details={"field": "collaboratorCount"},
            )
        return cls(
            story_title=_text(data, "storyTitle"),
            collaborator_count=count,
            top_match=_text(data, "topMatch", required=False) or None,
            subject_id=_text(data, "storyId", required=False) or None,
        )

    def template_fields(self):
        return {
            "storyTitle": self.story_title,
            "collaboratorCount": self.collaborator_count,
            "topMatch": self.top_match,
            "storyId": self.subject_id,
        }


@dataclass
class ContentOpportunityPayload(NotificationPayload):
    opportunity: str
    engagement_score: float

    @classmethod
    def from_mapping(cls, data):
        return cls(
            opportunity=_text(data, "opportunity"),
            engagement_score=_score(data, "engagementScore"),
        )

    def template_fields(self):
        return {
            "opportunity": self.opportunity,
            "engagementScore": _percent(self.engagement_score),
        }


PAYLOAD_TYPES: dict[NotificationType, type[NotificationPayload]] = {
    NotificationType.NEW_ROYALTY: RoyaltyPayload,
    NotificationType.CLAIM_SUCCESS: RoyaltyPayload,
    NotificationType.LARGE_PAYMENT: RoyaltyPayload,
    NotificationType.THRESHOLD_REACHED: RoyaltyPayload,
    NotificationType.CLAIM_FAILED: ClaimFailedPayload,
    NotificationType.MONTHLY_SUMMARY: MonthlySummaryPayload,
    NotificationType.SYSTEM_ALERT: SystemAlertPayload,
    NotificationType.DERIVATIVE_DETECTED: DerivativePayload,
    NotificationType.QUALITY_IMPROVEMENT: QualityPayload,
    NotificationType.COLLABORATION_OPPORTUNITY: CollaborationPayload,
    NotificationType.CONTENT_OPPORTUNITY: ContentOpportunityPayload,
}


def coerce_payload(
    notification_type: NotificationType, payload: "NotificationPayload | dict[str, Any]"
) -> NotificationPayload:
    """Parse an API mapping into the payload for a type, or check a typed payload matches it."""
    expected = PAYLOAD_TYPES[notification_type]
    if isinstance(payload, dict):
        return expected.from_mapping(payload)
    if not isinstance(payload, expected):
        raise ValidationError(
            f"{notification_type.value} notifications take {expected.__name__}, "
            f"got {type(payload).__name__}"
        )
    return payload


# =============================================================================
# Templates
# =============================================================================


@dataclass(frozen=True)
class NotificationTemplate:
    title: str
    message: str
    priority: NotificationPriority
    action_url: str | None = None


TEMPLATES: dict[NotificationType, NotificationTemplate] = {
    NotificationType.NEW_ROYALTY: NotificationTemplate(
        "New Royalties Available",
        'You have {amount} TIP tokens available to claim from chapter "{chapterTitle}"',
        NotificationPriority.MEDIUM,
        "/creator/royalties",
    ),
    NotificationType.CLAIM_SUCCESS: NotificationTemplate(
        "Royalties Claimed",
        'Successfully claimed {amount} TIP tokens from chapter "{chapterTitle}"',
        NotificationPriority.LOW,
        "/creator/royalties",
    ),
    NotificationType.CLAIM_FAILED: NotificationTemplate(
        "Claim Failed",
        'Failed to claim royalties from chapter "{chapterTitle}": {error}',
        NotificationPriority.HIGH,
        "/creator/royalties",
    ),
    NotificationType.LARGE_PAYMENT: NotificationTemplate(
        "Large Payment Received",
        "Congratulations! You received a large payment of {amount} TIP tokens "
        'from chapter "{chapterTitle}"',
        NotificationPriority.HIGH,
        "/creator/royalties",
    ),
    NotificationType.MONTHLY_SUMMARY: NotificationTemplate(
        "Monthly Royalty Summary",
        "Your monthly royalty summary: {totalAmount} TIP tokens from {chapterCount} chapters",
        NotificationPriority.LOW,
        "/creator/analytics",
    ),
    NotificationType.THRESHOLD_REACHED: NotificationTemplate(
        "Claim Threshold Reached",
        "Your royalties have reached {amount} TIP tokens - optimal time to claim!",
        NotificationPriority.MEDIUM,
        "/creator/royalties",
    ),
    NotificationType.SYSTEM_ALERT: NotificationTemplate(
        "System Alert",
        "Important system notification: {message}",
        NotificationPriority.URGENT,
        "/creator/support",
    ),
    NotificationType.DERIVATIVE_DETECTED: NotificationTemplate(
        "Potential Derivative Detected",
        'A story similar to "{originalTitle}" was detected ({similarityScore}% similarity)',
        NotificationPriority.HIGH,
        "/creator/derivatives",
    ),
    NotificationType.QUALITY_IMPROVEMENT: NotificationTemplate(
        "Quality Improvement Suggestion",
        '"{storyTitle}" scored {qualityScore}%: {improvement}',
        NotificationPriority.MEDIUM,
        "/creator/insights",
    ),
    NotificationType.COLLABORATION_OPPORTUNITY: NotificationTemplate(
        "Collaboration Opportunity",
        '{collaboratorCount} potential collaborators match "{storyTitle}"',
        NotificationPriority.MEDIUM,
        "/creator/collaborations",
    ),
    NotificationType.CONTENT_OPPORTUNITY: NotificationTemplate(
        "Content Opportunity",
        "Trending opportunity: {opportunity}",
        NotificationPriority.LOW,
        "/creator/trends",
    ),
}

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def render_template(template: str, fields: dict[str, Any]) -> str:
    """Substitute {name} placeholders; unknown or empty ones are left as written."""

    def replace(match: re.Match) -> str:
        value = fields.get(match.group(1))
        return match.group(0) if value is None else str(value)

    return _PLACEHOLDER.sub(replace, template)


# =============================================================================
# Configuration and results
# =============================================================================


@dataclass
class NotificationConfig:
    notifications_per_window: int = 10
    window_seconds: int = 3600
    queue_capacity: int = 100
    default_list_limit: int = 50
    large_payment_threshold: int = ONE_TOKEN
    delivery_retention_days: int = 30
    channel_timeout: float = 15.0
    channel_workers: int = 8
    webhook_secret: str | None = None
    webhook_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> "NotificationConfig":
        return cls(
            notifications_per_window=int(os.getenv("ROYALTY_NOTIFICATIONS_PER_HOUR", "10")),
            queue_capacity=int(os.getenv("ROYALTY_NOTIFICATION_QUEUE_SIZE", "100")),
            webhook_secret=os.getenv("ROYALTY_WEBHOOK_SECRET") or None,
            webhook_timeout=float(os.getenv("ROYALTY_WEBHOOK_TIMEOUT", "10")),
        )


@dataclass
class SendResult:
    success: bool
    notification_id: str | None = None
    delivery_channels: list[str] = field(default_factory=list)
    skipped: bool = False
    error: dict[str, Any] | None = None
    http_status: int = 200
    rate_limit: RateLimitResult | None = None

    @classmethod
    def failed(cls, error: RoyaltyEngineError, **kwargs) -> "SendResult":
        return cls(success=False, error=error.to_dict(), http_status=error.http_status, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        result = {
            "success": self.success,
            "notificationId": self.notification_id,
            "deliveryChannels": list(self.delivery_channels),
            "skipped": self.skipped,
        }
        if self.error:
            result["error"] = dict(self.error)
        return result


# Preference keys accepted from the API and the attribute each one sets
_BOOLEAN_PREFERENCES = {
    "emailNotifications": "email_enabled",
    "pushNotifications": "push_enabled",
    "inAppNotifications": "in_app_enabled",
}
_PREFERENCE_KEYS = set(_BOOLEAN_PREFERENCES) | {
    "notificationTypes",
    "minimumAmountThreshold",
    "frequency",
    "webhookUrl",
}


def default_channels(config: NotificationConfig) -> list[DeliveryChannel]:
    return [
        InAppChannel(),
        EmailChannel(),
        PushChannel(),
        WebhookChannel(secret=config.webhook_secret, timeout=config.webhook_timeout),
    ]


# =============================================================================
# Dispatcher
# =============================================================================


class NotificationDispatcher:
    """
    Sends notifications and owns the notification queues, preferences,
    delivery records and per-(author, type) rate counters.
    """

    def __init__(
        self,
        store: NotificationStore,
        preferences: PreferenceStore,
        channels: list[DeliveryChannel] | None = None,
        config: NotificationConfig | None = None,
        rate_limiter: FixedWindowRateLimiter | None = None,
        url_validator: Callable[[str], tuple[bool, str | None]] = validate_url_for_ssrf,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.preferences = preferences
        self.config = config or NotificationConfig()
        self.channels = channels if channels is not None else default_channels(self.config)
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter(
            MemoryRateLimitStore(),
            limit=self.config.notifications_per_window,
            window_seconds=self.config.window_seconds,
            clock=clock,
            name="notifications",
        )
        self.url_validator = url_validator
        self.clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.channel_workers, thread_name_prefix="notify"
        )
        self._preference_lock = threading.Lock()

    def _now(self) -> datetime:
        return utc_from_timestamp(self.clock())

    def _new_id(self) -> str:
        return f"notif_{int(self.clock() * 1000)}_{uuid.uuid4().hex[:8]}"

    @staticmethod
    def rate_key(author_address: str, notification_type: NotificationType) -> str:
        return f"notify:{author_address}:{notification_type.value}"

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    def render(
        self,
        author_address: str,
        notification_type: NotificationType,
        payload: NotificationPayload,
    ) -> Notification:
        template = TEMPLATES[notification_type]
        fields = payload.template_fields()
        return Notification(
            id=self._new_id(),
            author_address=author_address,
            type=notification_type,
            title=template.title,
            message=render_template(template.message, fields),
            priority=template.priority,
            timestamp=self._now(),
            amount=getattr(payload, "amount", None),
            subject_id=getattr(payload, "subject_id", None),
            metadata=payload.metadata(),
            action_url=template.action_url,
        )

    def send(
        self,
        author_address: str,
        notification_type: NotificationType | str,
        payload: NotificationPayload | dict[str, Any],
    ) -> SendResult:
        """
        Render and deliver one notification.

        Raises:
            ValidationError: Bad address, unknown type or a payload that does
                not fit the type
        """
        author = validate_address(author_address)
        ntype = NotificationType.parse(notification_type)
        payload = coerce_payload(ntype, payload)
        key = self.rate_key(author, ntype)

        limit = self.rate_limiter.peek(key)
        if limit.exceeded:
            return self._rate_limited(author, ntype, limit)

        preference = self.get_preferences(author)
        if not preference.is_subscribed(ntype):
            logger.debug(f"{author} is not subscribed to {ntype.value}; skipped")
            return SendResult(success=True, skipped=True)

        # Reserved before delivery so concurrent sends cannot share one unit
        limit = self.rate_limiter.check_and_hit(key)
        if limit.exceeded:
            return self._rate_limited(author, ntype, limit)

        notification = self.render(author, ntype, payload)
        self.store.add(notification, self.config.queue_capacity)

        selected = [c for c in self.channels if c.applies_to(notification, preference)]
        outcomes = self._fan_out(selected, notification, preference)
        delivered = [name for name, ok in outcomes.items() if ok]

        self.store.add_delivery_record(
            DeliveryRecord(
                notification_id=notification.id,
                author_address=author,
                attempts=len(selected),
                success=bool(delivered),
                last_attempt=self._now(),
                channels=outcomes,
            )
        )
        metrics.increment(
            NOTIFICATIONS_SENT,
            labels={"type": ntype.value, "delivered": str(bool(delivered)).lower()},
        )

        if not delivered:
            logger.warning(f"Notification {notification.id} was not delivered on any channel")
            return SendResult(
                success=False,
                notification_id=notification.id,
                error={
                    "code": "DELIVERY_FAILED",
                    "message": "Notification could not be delivered on any channel",
                    "details": {"channels": outcomes},
                },
                http_status=502,
                rate_limit=limit,
            )
        return SendResult(
            success=True,
            notification_id=notification.id,
            delivery_channels=delivered,
            rate_limit=limit,
        )

    def _rate_limited(
        self, author: str, ntype: NotificationType, limit: RateLimitResult
    ) -> SendResult:
        metrics.increment(NOTIFICATIONS_RATE_LIMITED, labels={"type": ntype.value})
        logger.info(f"Notification rate limit reached for {author} ({ntype.value})")
        return SendResult.failed(
            RateLimitedError(
                "Notification rate limit exceeded",
                reset_time=limit.reset_at,
                retry_after=limit.retry_after,
            ),
            rate_limit=limit,
        )

    def _fan_out(
        self,
        channels: list[DeliveryChannel],
        notification: Notification,
        preference: NotificationPreference,
    ) -> dict[str, bool]:
        """Deliver on every channel concurrently; waits until all have settled."""
        if not channels:
            return {}
        futures = {
            self._executor.submit(channel.deliver, notification, preference): channel
            for channel in channels
        }
        wait(futures, timeout=self.config.channel_timeout)

        outcomes: dict[str, bool] = {}
        for future, channel in futures.items():
            ok = False
            if not future.done():
                future.cancel()
                logger.warning(f"{channel.name} delivery of {notification.id} timed out")
            elif future.exception() is not None:
                logger.warning(
                    f"{channel.name} delivery of {notification.id} failed: {future.exception()}"
                )
            else:
                ok = bool(future.result())
            if not ok:
                metrics.increment(CHANNEL_DELIVERY_FAILURES, labels={"channel": channel.name})
            outcomes[channel.name] = ok
        return outcomes

    def send_batch(
        self, items: Iterable[tuple[str, NotificationType | str, Any] | dict[str, Any]]
    ) -> dict[str, Any]:
        """
        Send many notifications; one bad item does not stop the rest.

        Items are (author, type, payload) tuples or API mappings with
        authorAddress, type and data.
        """
        results = []
        for item in items:
            if isinstance(item, dict):
                author, ntype, payload = item.get("authorAddress"), item.get("type"), item.get("data")
            else:
                author, ntype, payload = item
            try:
                if payload is None:
                    raise ValidationError("data is required", details={"field": "data"})
                results.append(self.send(author, ntype, payload))
            except ValidationError as e:
                results.append(SendResult.failed(e))

        successful = sum(1 for r in results if r.success)
        return {
            "successful": successful,
            "failed": len(results) - successful,
            "results": results,
        }

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    def trigger_royalty_available(
        self, author_address: str, subject_id: str, chapter_title: str, amount: int
    ) -> SendResult:
        author = validate_address(author_address)
        preference = self.get_preferences(author)
        if amount < preference.minimum_amount_threshold:
            return SendResult(success=True, skipped=True)
        ntype = (
            NotificationType.LARGE_PAYMENT
            if amount >= self.config.large_payment_threshold
            else NotificationType.NEW_ROYALTY
        )
        return self.send(author, ntype, RoyaltyPayload(amount, subject_id, chapter_title))

    def trigger_claim_result(
        self,
        author_address: str,
        subject_id: str,
        chapter_title: str,
        amount: int,
        success: bool,
        error: str | None = None,
    ) -> SendResult:
        if success:
            return self.send(
                author_address,
                NotificationType.CLAIM_SUCCESS,
                RoyaltyPayload(amount, subject_id, chapter_title),
            )
        return self.send(
            author_address,
            NotificationType.CLAIM_FAILED,
            ClaimFailedPayload(subject_id, chapter_title, error or "Unknown error", amount or None),
        )

    def trigger_monthly_summary(
        self, author_address: str, total_amount: int, chapter_count: int, month: str = ""
    ) -> SendResult:
        return self.send(
            author_address,
            NotificationType.MONTHLY_SUMMARY,
            MonthlySummaryPayload(total_amount, chapter_count, month),
        )

    def trigger_threshold_reached(self, author_address: str, amount: int) -> SendResult:
        return self.send(author_address, NotificationType.THRESHOLD_REACHED, RoyaltyPayload(amount))

    def trigger_system_alert(self, author_addresses: Iterable[str], message: str) -> dict[str, Any]:
        payload = SystemAlertPayload(message)
        return self.send_batch(
            (author, NotificationType.SYSTEM_ALERT, payload) for author in author_addresses
        )

    # -------------------------------------------------------------------------
    # Queue
    # -------------------------------------------------------------------------

    def get_notifications(
        self,
        author_address: str,
        unread_only: bool = False,
        limit: int | None = None,
        types: Iterable[NotificationType | str] | None = None,
        since: datetime | None = None,
    ) -> list[Notification]:
        author = validate_address(author_address)
        limit = self.config.default_list_limit if limit is None else limit
        if not 1 <= limit <= MAX_LIST_LIMIT:
            raise ValidationError(
                f"limit must be between 1 and {MAX_LIST_LIMIT}", details={"field": "limit"}
            )
        wanted = {NotificationType.parse(t) for t in types} if types else None

        selected = []
        for notification in self.store.list_for_author(author):
            if unread_only and notification.read:
                continue
            if wanted and notification.type not in wanted:
                continue
            if since and notification.timestamp < since:
                continue
            selected.append(notification)
            if len(selected) >= limit:
                break
        return selected

    def mark_as_read(self, author_address: str, notification_ids: list[str]) -> dict[str, int]:
        author = validate_address(author_address)
        if not isinstance(notification_ids, list) or not all(
            isinstance(i, str) for i in notification_ids
        ):
            raise ValidationError(
                "notificationIds must be a list of strings", details={"field": "notificationIds"}
            )
        marked, not_found = self.store.mark_read(author, notification_ids)
        return {"marked": marked, "notFound": not_found}

    # -------------------------------------------------------------------------
    # Preferences
    # -------------------------------------------------------------------------

    def get_preferences(self, author_address: str) -> NotificationPreference:
        """The author's preference, created with defaults on first use."""
        author = validate_address(author_address)
        with self._preference_lock:
            preference = self.preferences.get(author)
            if preference is None:
                preference = NotificationPreference(author_address=author, updated_at=self._now())
                self.preferences.save(preference)
            return preference

    def update_preferences(
        self, author_address: str, updates: dict[str, Any]
    ) -> NotificationPreference:
        """Apply API-shaped preference updates; all fields are validated before any is applied."""
        if not isinstance(updates, dict):
            raise ValidationError("Preferences must be a JSON object")
        unknown = set(updates) - _PREFERENCE_KEYS
        if unknown:
            raise ValidationError(
                f"Unknown preference fields: {', '.join(sorted(unknown))}",
                details={"allowed": sorted(_PREFERENCE_KEYS)},
            )

        preference = self.get_preferences(author_address)
        changes: dict[str, Any] = {}

        for key, attr in _BOOLEAN_PREFERENCES.items():
            if key in updates:
                if not isinstance(updates[key], bool):
                    raise ValidationError(f"{key} must be a boolean", details={"field": key})
                changes[attr] = updates[key]

        if "notificationTypes" in updates:
            types = updates["notificationTypes"]
            if not isinstance(types, list):
                raise ValidationError(
                    "notificationTypes must be a list", details={"field": "notificationTypes"}
                )
            changes["subscribed_types"] = {NotificationType.parse(t) for t in types}

        if "minimumAmountThreshold" in updates:
            changes["minimum_amount_threshold"] = parse_base_units(updates["minimumAmountThreshold"])

        if "frequency" in updates:
            try:
                changes["frequency"] = DeliveryFrequency(updates["frequency"])
            except ValueError:
                raise ValidationError(
                    f"Unknown frequency: {updates['frequency']}",
                    details={"validFrequencies": [f.value for f in DeliveryFrequency]},
                ) from None

        if "webhookUrl" in updates:
            url = updates["webhookUrl"]
            changes["webhook_url"] = self._validated_webhook(url) if url else None

        for attr, value in changes.items():
            setattr(preference, attr, value)
        preference.updated_at = self._now()
        self.preferences.save(preference)
        logger.info(f"Updated notification preferences for {preference.author_address}")
        return preference

    def _validated_webhook(self, url: Any) -> str:
        if not isinstance(url, str):
            raise ValidationError("webhookUrl must be a string", details={"field": "webhookUrl"})
        is_safe, reason = self.url_validator(url)
        if not is_safe:
            raise ValidationError(f"Webhook URL rejected: {reason}", details={"field": "webhookUrl"})
        return url

    def register_webhook(self, author_address: str, url: str) -> NotificationPreference:
        return self.update_preferences(author_address, {"webhookUrl": url})

    def remove_webhook(self, author_address: str) -> NotificationPreference:
        return self.update_preferences(author_address, {"webhookUrl": None})

    def list_webhooks(self) -> list[dict[str, Any]]:
        return [
            {
                "authorAddress": p.author_address,
                "webhookUrl": p.webhook_url,
                "updatedAt": isoformat(p.updated_at),
            }
            for p in self.preferences.list_all()
            if p.webhook_url
        ]

    # -------------------------------------------------------------------------
    # Stats and maintenance
    # -------------------------------------------------------------------------

    def get_stats(self, author_address: str | None = None) -> dict[str, Any]:
        author = validate_address(author_address) if author_address else None
        notifications = (
            self.store.list_for_author(author) if author else self.store.list_all()
        )
        records = self.store.list_delivery_records(author)
        delivered = sum(1 for r in records if r.success)
        since = self._now() - timedelta(days=STATS_ACTIVITY_DAYS)

        return {
            "totalNotifications": len(notifications),
            "unreadNotifications": sum(1 for n in notifications if not n.read),
            "deliverySuccessRate": round(delivered / len(records) * 100, 2) if records else 100.0,
            "recentActivity": sum(1 for n in notifications if n.timestamp >= since),
            "notificationsByType": dict(Counter(n.type.value for n in notifications)),
            "notificationsByPriority": dict(Counter(n.priority.value for n in notifications)),
        }

    def cleanup(self) -> dict[str, int]:
        """Drop expired rate counters and old delivery records."""
        cutoff = self._now() - timedelta(days=self.config.delivery_retention_days)
        result = {
            "rateCountersRemoved": self.rate_limiter.cleanup_expired(),
            "deliveryRecordsRemoved": self.store.purge_delivery_records(cutoff),
        }
        logger.debug(f"Notification cleanup: {result}")
        return result

    def health(self) -> dict[str, Any]:
        return {
            "status": "healthy",
            "channels": [c.name for c in self.channels],
            "queueCapacity": self.config.queue_capacity,
            "notificationsPerHour": self.config.notifications_per_window,
        }

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True, cancel_futures=True)
