"""
Records owned by the engine's repositories.

Claim history entries, notifications, notification preferences, delivery
records and detected events. Each record converts to the camelCase dict
shape used by the API and by JSON persistence.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from errors import ValidationError
from oracle import CollaborationMatch, ContentOpportunity, DerivativeMatch
from token_units import ONE_TOKEN, format_token_amount

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")


def validate_address(address: Any, field_name: str = "authorAddress") -> str:
    """
    Validate a 0x-prefixed 20-byte hex address.

    Returns:
        The address lower-cased, so one author maps to one key
    """
    if not isinstance(address, str) or not ADDRESS_PATTERN.match(address.strip()):
        raise ValidationError(
            f"Invalid {field_name} format",
            details={"field": field_name, "value": address if isinstance(address, str) else None},
        )
    return address.strip().lower()


def utc_from_timestamp(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, timezone.utc)


def isoformat(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.isoformat().replace("+00:00", "Z")


def parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _amount_fields(name: str, value: int | None) -> dict[str, Any]:
    if value is None:
        return {name: None}
    return {name: str(value), f"{name}Formatted": format_token_amount(value)}


# =============================================================================
# Claims
# =============================================================================


class ClaimStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not ClaimStatus.PENDING


@dataclass
class ClaimHistoryEntry:
    """One claim attempt. Only pending entries may change status."""

    id: str
    subject_id: str
    author_address: str
    amount: int
    platform_fee: int
    net_amount: int
    status: ClaimStatus
    timestamp: datetime
    license_tier: str | None = None
    license_terms_id: str | None = None
    transfer_reference: str | None = None
    transaction_hash: str | None = None
    fee_transaction_hash: str | None = None
    error: str | None = None
    fee_transfer_error: str | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        result = {
            "id": self.id,
            "chapterId": self.subject_id,
            "authorAddress": self.author_address,
            "licenseTier": self.license_tier,
            "licenseTermsId": self.license_terms_id,
            "status": self.status.value,
            "timestamp": isoformat(self.timestamp),
            "completedAt": isoformat(self.completed_at),
            "transferReference": self.transfer_reference,
            "transactionHash": self.transaction_hash,
            "feeTransactionHash": self.fee_transaction_hash,
            "error": self.error,
            "feeTransferError": self.fee_transfer_error,
        }
        result.update(_amount_fields("amount", self.amount))
        result.update(_amount_fields("platformFee", self.platform_fee))
        result.update(_amount_fields("netAmount", self.net_amount))
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClaimHistoryEntry":
        return cls(
            id=data["id"],
            subject_id=data["chapterId"],
            author_address=data["authorAddress"],
            amount=int(data["amount"]),
            platform_fee=int(data["platformFee"]),
            net_amount=int(data["netAmount"]),
            status=ClaimStatus(data["status"]),
            timestamp=parse_datetime(data["timestamp"]),
            license_tier=data.get("licenseTier"),
            license_terms_id=data.get("licenseTermsId"),
            transfer_reference=data.get("transferReference"),
            transaction_hash=data.get("transactionHash"),
            fee_transaction_hash=data.get("feeTransactionHash"),
            error=data.get("error"),
            fee_transfer_error=data.get("feeTransferError"),
            completed_at=parse_datetime(data.get("completedAt")),
        )


# =============================================================================
# Notifications
# =============================================================================


class NotificationType(Enum):
    NEW_ROYALTY = "new_royalty"
    CLAIM_SUCCESS = "claim_success"
    CLAIM_FAILED = "claim_failed"
    LARGE_PAYMENT = "large_payment"
    MONTHLY_SUMMARY = "monthly_summary"
    THRESHOLD_REACHED = "threshold_reached"
    SYSTEM_ALERT = "system_alert"
    DERIVATIVE_DETECTED = "derivative_detected"
    QUALITY_IMPROVEMENT = "quality_improvement"
    COLLABORATION_OPPORTUNITY = "collaboration_opportunity"
    CONTENT_OPPORTUNITY = "content_opportunity"

    @classmethod
    def parse(cls, value: "NotificationType | str") -> "NotificationType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            raise ValidationError(
                f"Unknown notification type: {value}",
                details={"validTypes": [t.value for t in cls]},
            ) from None


class NotificationPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class DeliveryFrequency(Enum):
    IMMEDIATE = "immediate"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


DEFAULT_SUBSCRIBED_TYPES = frozenset(
    {
        NotificationType.NEW_ROYALTY,
        NotificationType.CLAIM_SUCCESS,
        NotificationType.CLAIM_FAILED,
        NotificationType.LARGE_PAYMENT,
        NotificationType.MONTHLY_SUMMARY,
    }
)

DEFAULT_MINIMUM_THRESHOLD = ONE_TOKEN // 10  # 0.1


@dataclass
class NotificationPreference:
    """Per-author delivery settings."""

    author_address: str
    email_enabled: bool = True
    push_enabled: bool = True
    in_app_enabled: bool = True
    webhook_url: str | None = None
    subscribed_types: set[NotificationType] = field(
        default_factory=lambda: set(DEFAULT_SUBSCRIBED_TYPES)
    )
    minimum_amount_threshold: int = DEFAULT_MINIMUM_THRESHOLD
    frequency: DeliveryFrequency = DeliveryFrequency.IMMEDIATE
    updated_at: datetime | None = None

    def is_subscribed(self, notification_type: NotificationType) -> bool:
        return notification_type in self.subscribed_types

    def to_dict(self) -> dict[str, Any]:
        return {
            "authorAddress": self.author_address,
            "emailNotifications": self.email_enabled,
            "pushNotifications": self.push_enabled,
            "inAppNotifications": self.in_app_enabled,
            "webhookUrl": self.webhook_url,
            "notificationTypes": sorted(t.value for t in self.subscribed_types),
            "minimumAmountThreshold": str(self.minimum_amount_threshold),
            "minimumAmountThresholdFormatted": format_token_amount(self.minimum_amount_threshold),
            "frequency": self.frequency.value,
            "updatedAt": isoformat(self.updated_at),
        }


@dataclass
class Notification:
    """A rendered notification in an author's queue."""

    id: str
    author_address: str
    type: NotificationType
    title: str
    message: str
    priority: NotificationPriority
    timestamp: datetime
    amount: int | None = None
    subject_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    read: bool = False
    action_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result = {
            "id": self.id,
            "authorAddress": self.author_address,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "priority": self.priority.value,
            "timestamp": isoformat(self.timestamp),
            "chapterId": self.subject_id,
            "metadata": dict(self.metadata),
            "read": self.read,
            "actionUrl": self.action_url,
        }
        result.update(_amount_fields("amount", self.amount))
        return result


@dataclass
class DeliveryRecord:
    """Outcome of delivering one notification."""

    notification_id: str
    author_address: str
    attempts: int
    success: bool
    last_attempt: datetime
    channels: dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "notificationId": self.notification_id,
            "attempts": self.attempts,
            "success": self.success,
            "lastAttempt": isoformat(self.last_attempt),
            "channels": dict(self.channels),
        }


# =============================================================================
# Detected events
# =============================================================================


class EventType(Enum):
    DERIVATIVE = "derivative"
    QUALITY = "quality"
    COLLABORATION = "collaboration"
    TREND = "trend"
    ENGAGEMENT = "engagement"

    @classmethod
    def parse(cls, value: "EventType | str") -> "EventType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            raise ValidationError(
                f"Unknown event type: {value}",
                details={"validTypes": [t.value for t in cls]},
            ) from None


@dataclass
class DerivativeEventData:
    matches: list[DerivativeMatch]

    @property
    def top_match(self) -> DerivativeMatch | None:
        return max(self.matches, key=lambda m: m.similarity_score, default=None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "derivativesFound": len(self.matches),
            "potentialDerivatives": [m.to_dict() for m in self.matches],
        }


@dataclass
class QualityEventData:
    quality_score: float
    improvements: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "qualityScore": self.quality_score,
            "improvementsFound": len(self.improvements),
            "improvements": list(self.improvements),
        }


@dataclass
class CollaborationEventData:
    matches: list[CollaborationMatch]

    def to_dict(self) -> dict[str, Any]:
        return {
            "opportunitiesFound": len(self.matches),
            "collaborators": [m.to_dict() for m in self.matches],
        }


@dataclass
class TrendEventData:
    opportunities: list[ContentOpportunity]

    def to_dict(self) -> dict[str, Any]:
        return {
            "opportunitiesFound": len(self.opportunities),
            "opportunities": [o.to_dict() for o in self.opportunities],
        }


@dataclass
class EngagementMetrics:
    reads: int
    completion: float  # percent, 0-100
    rating: float  # 0-5
    time_spent: float  # seconds

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "EngagementMetrics":
        try:
            metrics = cls(
                reads=int(data["reads"]),
                completion=float(data["completion"]),
                rating=float(data["rating"]),
                time_spent=float(data["timeSpent"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(
                "engagementData requires numeric reads, completion, rating and timeSpent"
            ) from e
        if metrics.reads < 0 or metrics.time_spent < 0:
            raise ValidationError("Engagement counts cannot be negative")
        if not 0 <= metrics.completion <= 100 or not 0 <= metrics.rating <= 5:
            raise ValidationError("completion must be 0-100 and rating 0-5")
        return metrics

    def to_dict(self) -> dict[str, Any]:
        return {
            "reads": self.reads,
            "completion": self.completion,
            "rating": self.rating,
            "timeSpent": self.time_spent,
        }


@dataclass
class EngagementEventData:
    engagement_score: float
    metrics: EngagementMetrics
    suggestions: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "engagementScore": self.engagement_score,
            "engagementData": self.metrics.to_dict(),
            "suggestedOptimizations": list(self.suggestions),
        }


EventData = (
    DerivativeEventData
    | QualityEventData
    | CollaborationEventData
    | TrendEventData
    | EngagementEventData
)

EVENT_DATA_TYPES: dict[EventType, type] = {
    EventType.DERIVATIVE: DerivativeEventData,
    EventType.QUALITY: QualityEventData,
    EventType.COLLABORATION: CollaborationEventData,
    EventType.TREND: TrendEventData,
    EventType.ENGAGEMENT: EngagementEventData,
}


@dataclass
class DetectedEvent:
    """A signal surfaced by background analysis."""

    id: str
    type: EventType
    author_address: str
    subject_id: str
    confidence: float
    data: EventData
    timestamp: datetime
    notification_sent: bool = False
    action_required: bool = True

    def __post_init__(self):
        expected = EVENT_DATA_TYPES[self.type]
        if not isinstance(self.data, expected):
            raise TypeError(
                f"{self.type.value} events carry {expected.__name__}, "
                f"got {type(self.data).__name__}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "authorAddress": self.author_address,
            "storyId": self.subject_id,
            "confidence": self.confidence,
            "data": self.data.to_dict(),
            "notificationSent": self.notification_sent,
            "actionRequired": self.action_required,
            "timestamp": isoformat(self.timestamp),
        }
