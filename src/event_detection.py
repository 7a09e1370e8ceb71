"""
Royalty Engine - Event Detection

Background monitors that ask the content similarity oracle about published
content and turn what it finds into DetectedEvents and author notifications.

Monitors (defaults):
    derivative     every 6h, similarity >= 0.4, 10 items per tick, 1s between calls
    quality        every 7d, flags quality < 0.6,  5 items per tick, 2s between calls
    collaboration  every 3d, compatibility >= 0.7, 3 items, 2 per author per week
    trend          every 1d, engagement >= 0.6, 10 creators, 3 per author per week

Each monitor moves Idle -> Scanning -> Analyzing -> Recording -> Notifying
-> Idle. A tick that finds its monitor busy is skipped. Results are cached
for 6 hours per (monitor, subject); a cached subject is not re-analyzed,
recorded or notified again. On-demand detection returns the cached event,
while a monitor tick reports only the events it records itself.

Environment Variables:
    ROYALTY_DETECTION_ENABLED=true
    ROYALTY_DETECTION_AUTO_NOTIFY=true
    ROYALTY_DETECTION_AUTO_SUGGEST=true
    ROYALTY_DETECTION_CALL_DELAY=     # overrides every monitor's inter-call delay
"""

import logging
import os
import threading
import time
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from cache import TTLCache
from errors import NotFoundError, OracleUnavailableError, ValidationError
from models import (
    CollaborationEventData,
    DerivativeEventData,
    DetectedEvent,
    EngagementEventData,
    EngagementMetrics,
    EventData,
    EventType,
    NotificationType,
    QualityEventData,
    TrendEventData,
    isoformat,
    utc_from_timestamp,
    validate_address,
)
from monitoring.logging import LoggingContext
from monitoring.metrics import (
    DETECTION_CACHE_HITS,
    DETECTION_EVENTS,
    DETECTION_TICKS_SKIPPED,
    metrics,
)
from notifications import (
    CollaborationPayload,
    ContentOpportunityPayload,
    DerivativePayload,
    NotificationDispatcher,
    QualityPayload,
)
from oracle import ContentItem, ContentSimilarityOracle
from rate_limiter import FixedWindowRateLimiter, MemoryRateLimitStore
from scheduler import Scheduler
from storage.base import EventStore
from tracing import add_span_attribute, traced

logger = logging.getLogger(__name__)

HOUR = 3600
DAY = 24 * HOUR
WEEK = 7 * DAY

MAX_EVENT_LIMIT = 100
ACCURACY_CONFIDENCE = 0.7
STATS_ACTIVITY_DAYS = 7


class MonitorType(Enum):
    DERIVATIVE = "derivative"
    QUALITY = "quality"
    COLLABORATION = "collaboration"
    TREND = "trend"

    @classmethod
    def parse(cls, value: "MonitorType | str") -> "MonitorType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            raise ValidationError(
                f"Unknown monitor: {value}",
                details={"validMonitors": [m.value for m in cls]},
            ) from None


class MonitorState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    ANALYZING = "analyzing"
    RECORDING = "recording"
    NOTIFYING = "notifying"


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class MonitorConfig:
    interval_seconds: float
    threshold: float
    batch_size: int
    call_delay: float
    confidence: float
    weekly_cap: int | None = None
    enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "intervalSeconds": self.interval_seconds,
            "threshold": self.threshold,
            "batchSize": self.batch_size,
            "callDelaySeconds": self.call_delay,
            "confidence": self.confidence,
            "weeklyCap": self.weekly_cap,
        }


def default_monitors() -> dict[MonitorType, MonitorConfig]:
    return {
        MonitorType.DERIVATIVE: MonitorConfig(6 * HOUR, 0.4, 10, 1.0, 0.9),
        MonitorType.QUALITY: MonitorConfig(WEEK, 0.6, 5, 2.0, 0.85),
        MonitorType.COLLABORATION: MonitorConfig(3 * DAY, 0.7, 3, 3.0, 0.75, weekly_cap=2),
        MonitorType.TREND: MonitorConfig(DAY, 0.6, 10, 1.0, 0.7, weekly_cap=3),
    }


@dataclass
class DetectionConfig:
    enabled: bool = True
    auto_notify: bool = True
    auto_suggest_improvements: bool = True
    cache_ttl: float = 6 * HOUR
    event_retention_days: int = 30
    cleanup_interval: float = DAY
    engagement_threshold: float = 0.6
    engagement_confidence: float = 0.8
    # Content items listed per trend tick to find distinct creators
    trend_scan_limit: int = 100
    collaborator_limit: int = 5
    monitors: dict[MonitorType, MonitorConfig] = field(default_factory=default_monitors)

    @classmethod
    def from_env(cls) -> "DetectionConfig":
        def flag(name: str, default: str = "true") -> bool:
            return os.getenv(name, default).lower() == "true"

        config = cls(
            enabled=flag("ROYALTY_DETECTION_ENABLED"),
            auto_notify=flag("ROYALTY_DETECTION_AUTO_NOTIFY"),
            auto_suggest_improvements=flag("ROYALTY_DETECTION_AUTO_SUGGEST"),
        )
        delay = os.getenv("ROYALTY_DETECTION_CALL_DELAY")
        if delay:
            config.monitors = {
                m: replace(c, call_delay=float(delay)) for m, c in config.monitors.items()
            }
        return config

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "autoNotify": self.auto_notify,
            "autoSuggestImprovements": self.auto_suggest_improvements,
            "cacheTtlSeconds": self.cache_ttl,
            "eventRetentionDays": self.event_retention_days,
            "engagementThreshold": self.engagement_threshold,
            "monitors": {m.value: c.to_dict() for m, c in self.monitors.items()},
        }


@dataclass
class MonitorStatus:
    state: MonitorState = MonitorState.IDLE
    runs: int = 0
    skipped: int = 0
    errors: int = 0
    events_detected: int = 0
    last_run_at: datetime | None = None
    last_duration_ms: float | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "runs": self.runs,
            "skipped": self.skipped,
            "errors": self.errors,
            "eventsDetected": self.events_detected,
            "lastRunAt": isoformat(self.last_run_at),
            "lastDurationMs": self.last_duration_ms,
            "lastError": self.last_error,
        }


# =============================================================================
# Detection scheduler
# =============================================================================


class EventDetectionScheduler:
    """
    Runs the content monitors and owns detected events and the result cache.

    Oracle failures during a scan abort that tick; a failure analyzing one
    candidate is logged and the rest of the batch continues.
    """

    def __init__(
        self,
        oracle: ContentSimilarityOracle,
        events: EventStore,
        dispatcher: NotificationDispatcher | None = None,
        scheduler: Scheduler | None = None,
        config: DetectionConfig | None = None,
        cache: TTLCache | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.oracle = oracle
        self.events = events
        self.dispatcher = dispatcher
        self.scheduler = scheduler or Scheduler(clock=clock)
        self.config = config or DetectionConfig()
        self.clock = clock
        self.sleep = sleep
        self.cache = cache or TTLCache(default_ttl=self.config.cache_ttl, clock=clock)

        cap_store = MemoryRateLimitStore()
        self.weekly_caps: dict[MonitorType, FixedWindowRateLimiter] = {
            m: FixedWindowRateLimiter(
                cap_store, limit=c.weekly_cap, window_seconds=WEEK, clock=clock, name=f"{m.value}-cap"
            )
            for m, c in self.config.monitors.items()
            if c.weekly_cap
        }

        self._status = {m: MonitorStatus() for m in MonitorType}
        self._state_lock = threading.Lock()
        self._id_lock = threading.Lock()
        self._event_counter = 0
        self._started = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Register every enabled monitor and the daily cleanup on the scheduler."""
        if self._started:
            return
        if not self.config.enabled:
            logger.info("Event detection is disabled")
            return
        for monitor, monitor_config in self.config.monitors.items():
            if monitor_config.enabled:
                self.scheduler.register_periodic_task(
                    f"detection-{monitor.value}",
                    monitor_config.interval_seconds,
                    lambda m=monitor: self.run_monitor(m),
                )
        self.scheduler.register_periodic_task(
            "detection-cleanup", self.config.cleanup_interval, self.cleanup_expired_events
        )
        self._started = True
        if not self.scheduler.is_running:
            self.scheduler.start()
        logger.info("Event detection monitors registered")

    def stop(self, timeout: float = 10.0) -> None:
        if not self._started:
            return
        for monitor in MonitorType:
            self.scheduler.unregister(f"detection-{monitor.value}")
        self.scheduler.unregister("detection-cleanup")
        self.scheduler.stop(timeout)
        self._started = False
        logger.info("Event detection stopped")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _now(self) -> datetime:
        return utc_from_timestamp(self.clock())

    def _next_event_id(self) -> str:
        with self._id_lock:
            self._event_counter += 1
            return f"event_{int(self.clock() * 1000)}_{self._event_counter}"

    def _set_state(self, monitor: MonitorType | None, state: MonitorState) -> None:
        # On-demand detections run outside any monitor's state machine
        if monitor is not None:
            self._status[monitor].state = state

    def _cached(
        self, kind: MonitorType, subject: str, monitor: MonitorType | None
    ) -> tuple[bool, DetectedEvent | None]:
        """
        Look up the outcome cached for a subject as ``(hit, event)``.

        On a hit, on-demand callers get the event recorded for the subject
        (None when nothing was found). Monitor ticks get None, so a tick
        reports only the events it recorded itself.
        """
        entry = self.cache.get_entry(f"{kind.value}:{subject}")
        if entry is None:
            return False, None
        metrics.increment(DETECTION_CACHE_HITS, labels={"monitor": kind.value})
        logger.debug(f"{kind.value} result for {subject} is cached; skipping")
        if monitor is not None or entry.value is None:
            return True, None
        return True, self.events.get(entry.value)

    def _remember(self, kind: MonitorType, subject: str, event: DetectedEvent | None) -> None:
        self.cache.set(f"{kind.value}:{subject}", event.id if event is not None else None)

    def _title(self, item: ContentItem | None, subject_id: str) -> str:
        if item is not None and item.title:
            return item.title
        try:
            return self.oracle.get_title(subject_id)
        except OracleUnavailableError:
            return f"Story {subject_id}"

    def _record(
        self,
        event_type: EventType,
        author: str,
        subject_id: str,
        confidence: float,
        data: EventData,
        action_required: bool = True,
    ) -> DetectedEvent:
        event = DetectedEvent(
            id=self._next_event_id(),
            type=event_type,
            author_address=author,
            subject_id=subject_id,
            confidence=confidence,
            data=data,
            timestamp=self._now(),
            action_required=action_required,
        )
        self.events.add(event)
        metrics.increment(DETECTION_EVENTS, labels={"type": event_type.value})
        logger.info(f"Detected {event_type.value} event {event.id} for {subject_id}")
        return event

    def _notify(self, event: DetectedEvent, notification_type: NotificationType, payload) -> None:
        if self.dispatcher is None:
            return
        try:
            result = self.dispatcher.send(event.author_address, notification_type, payload)
        except Exception:
            logger.exception(f"Notification for event {event.id} failed")
            return
        if result.success and not result.skipped:
            event.notification_sent = True
            self.events.update(event)

    # -------------------------------------------------------------------------
    # Detections
    # -------------------------------------------------------------------------

    def detect_derivatives(
        self,
        author: str,
        subject_id: str,
        item: ContentItem | None = None,
        monitor: MonitorType | None = None,
    ) -> DetectedEvent | None:
        hit, cached = self._cached(MonitorType.DERIVATIVE, subject_id, monitor)
        if hit:
            return cached
        settings = self.config.monitors[MonitorType.DERIVATIVE]

        self._set_state(monitor, MonitorState.ANALYZING)
        matches = [
            m
            for m in self.oracle.find_derivatives(subject_id, settings.threshold)
            if m.similarity_score >= settings.threshold
        ]
        if not matches:
            self._remember(MonitorType.DERIVATIVE, subject_id, None)
            return None

        self._set_state(monitor, MonitorState.RECORDING)
        data = DerivativeEventData(sorted(matches, key=lambda m: m.similarity_score, reverse=True))
        event = self._record(EventType.DERIVATIVE, author, subject_id, settings.confidence, data)
        self._remember(MonitorType.DERIVATIVE, subject_id, event)

        if self.config.auto_notify:
            self._set_state(monitor, MonitorState.NOTIFYING)
            top = data.top_match
            self._notify(
                event,
                NotificationType.DERIVATIVE_DETECTED,
                DerivativePayload(
                    original_title=self._title(item, subject_id),
                    similarity_score=top.similarity_score,
                    subject_id=subject_id,
                    derivative_id=top.derivative_id,
                ),
            )
        return event

    def detect_quality(
        self,
        author: str,
        subject_id: str,
        item: ContentItem | None = None,
        monitor: MonitorType | None = None,
    ) -> DetectedEvent | None:
        hit, cached = self._cached(MonitorType.QUALITY, subject_id, monitor)
        if hit:
            return cached
        settings = self.config.monitors[MonitorType.QUALITY]

        self._set_state(monitor, MonitorState.ANALYZING)
        assessment = self.oracle.assess_quality(subject_id)
        if assessment.score >= settings.threshold and not assessment.improvements:
            self._remember(MonitorType.QUALITY, subject_id, None)
            return None

        self._set_state(monitor, MonitorState.RECORDING)
        event = self._record(
            EventType.QUALITY,
            author,
            subject_id,
            settings.confidence,
            QualityEventData(assessment.score, list(assessment.improvements)),
            action_required=bool(assessment.improvements),
        )
        self._remember(MonitorType.QUALITY, subject_id, event)

        if self.config.auto_suggest_improvements:
            self._set_state(monitor, MonitorState.NOTIFYING)
            improvement = (
                assessment.improvements[0] if assessment.improvements else "Review your content strategy"
            )
            self._notify(
                event,
                NotificationType.QUALITY_IMPROVEMENT,
                QualityPayload(
                    story_title=self._title(item, subject_id),
                    improvement=improvement,
                    quality_score=assessment.score,
                    subject_id=subject_id,
                ),
            )
        return event

    def detect_collaborations(
        self,
        author: str,
        subject_id: str,
        item: ContentItem | None = None,
        monitor: MonitorType | None = None,
    ) -> DetectedEvent | None:
        hit, cached = self._cached(MonitorType.COLLABORATION, subject_id, monitor)
        if hit:
            return cached
        settings = self.config.monitors[MonitorType.COLLABORATION]
        cap = self.weekly_caps.get(MonitorType.COLLABORATION)
        cap_key = f"collaboration:{author}"
        if cap is not None and cap.peek(cap_key).exceeded:
            logger.debug(f"Weekly collaboration cap reached for {author}")
            return None

        self._set_state(monitor, MonitorState.ANALYZING)
        matches = [
            m
            for m in self.oracle.find_collaborators(
                author, subject_id, settings.threshold, self.config.collaborator_limit
            )
            if m.compatibility_score >= settings.threshold
        ]
        if not matches or (cap is not None and cap.check_and_hit(cap_key).exceeded):
            self._remember(MonitorType.COLLABORATION, subject_id, None)
            return None

        self._set_state(monitor, MonitorState.RECORDING)
        matches.sort(key=lambda m: m.compatibility_score, reverse=True)
        event = self._record(
            EventType.COLLABORATION,
            author,
            subject_id,
            settings.confidence,
            CollaborationEventData(matches),
        )
        self._remember(MonitorType.COLLABORATION, subject_id, event)

        self._set_state(monitor, MonitorState.NOTIFYING)
        self._notify(
            event,
            NotificationType.COLLABORATION_OPPORTUNITY,
            CollaborationPayload(
                story_title=self._title(item, subject_id),
                collaborator_count=len(matches),
                top_match=matches[0].collaborator_address,
                subject_id=subject_id,
            ),
        )
        return event

    def detect_trends(
        self, author: str, subject_id: str, monitor: MonitorType | None = None
    ) -> DetectedEvent | None:
        """Content opportunities for one creator, within the weekly cap."""
        hit, cached = self._cached(MonitorType.TREND, author, monitor)
        if hit:
            return cached
        settings = self.config.monitors[MonitorType.TREND]
        cap = self.weekly_caps.get(MonitorType.TREND)
        cap_key = f"trend:{author}"
        if cap is not None and cap.peek(cap_key).exceeded:
            logger.debug(f"Weekly trend cap reached for {author}")
            return None

        self._set_state(monitor, MonitorState.ANALYZING)
        found = [
            o
            for o in self.oracle.identify_opportunities(author, settings.threshold)
            if o.engagement_score >= settings.threshold
        ]
        found.sort(key=lambda o: o.engagement_score, reverse=True)

        opportunities = []
        for opportunity in found:
            if cap is not None and cap.check_and_hit(cap_key).exceeded:
                break
            opportunities.append(opportunity)
        if not opportunities:
            self._remember(MonitorType.TREND, author, None)
            return None

        self._set_state(monitor, MonitorState.RECORDING)
        event = self._record(
            EventType.TREND, author, subject_id, settings.confidence, TrendEventData(opportunities)
        )
        self._remember(MonitorType.TREND, author, event)

        self._set_state(monitor, MonitorState.NOTIFYING)
        top = opportunities[0]
        self._notify(
            event,
            NotificationType.CONTENT_OPPORTUNITY,
            ContentOpportunityPayload(
                opportunity=top.description or top.topic,
                engagement_score=top.engagement_score,
            ),
        )
        return event

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    def monitor_content_upload(self, author_address: str, subject_id: str) -> list[DetectedEvent]:
        """
        Run derivative, quality and collaboration detection for new content.

        Raises:
            ValidationError: Bad address or subject
            OracleUnavailableError: The oracle could not be reached
        """
        author = validate_address(author_address)
        if not isinstance(subject_id, str) or not subject_id.strip():
            raise ValidationError("storyId is required", details={"field": "storyId"})

        with LoggingContext(detection="upload", subject_id=subject_id):
            detected = [
                self.detect_derivatives(author, subject_id),
                self.detect_quality(author, subject_id),
                self.detect_collaborations(author, subject_id),
            ]
        return [event for event in detected if event is not None]

    @staticmethod
    def engagement_score(engagement: EngagementMetrics) -> float:
        return (
            min(engagement.reads / 100, 1.0)
            + engagement.completion / 100
            + engagement.rating / 5
            + min(engagement.time_spent / 3600, 1.0)
        ) / 4

    @staticmethod
    def optimization_suggestions(engagement: EngagementMetrics) -> list[str]:
        suggestions = []
        if engagement.completion < 50:
            suggestions.append("Consider shorter chapters or more engaging hooks")
        if engagement.rating < 3:
            suggestions.append("Focus on character development and plot pacing")
        if engagement.time_spent < 600:
            suggestions.append("Add more descriptive content to increase reading time")
        return suggestions

    def monitor_engagement(
        self,
        author_address: str,
        subject_id: str,
        engagement: EngagementMetrics | dict[str, Any],
    ) -> DetectedEvent | None:
        """Record an engagement event when the score falls below the threshold."""
        author = validate_address(author_address)
        if isinstance(engagement, dict):
            engagement = EngagementMetrics.from_mapping(engagement)

        score = self.engagement_score(engagement)
        if score >= self.config.engagement_threshold:
            return None

        suggestions = self.optimization_suggestions(engagement)
        event = self._record(
            EventType.ENGAGEMENT,
            author,
            subject_id,
            self.config.engagement_confidence,
            EngagementEventData(round(score, 4), engagement, suggestions),
        )
        logger.info(f"Low engagement for {subject_id}: {round(score * 100)}%")

        if self.config.auto_suggest_improvements:
            self._notify(
                event,
                NotificationType.QUALITY_IMPROVEMENT,
                QualityPayload(
                    story_title=self._title(None, subject_id),
                    improvement=suggestions[0] if suggestions else "Review your content strategy",
                    quality_score=score,
                    subject_id=subject_id,
                ),
            )
        return event

    @traced("detection.run_monitor", attributes={"component": "detection"})
    def run_monitor(self, monitor_type: MonitorType | str) -> list[DetectedEvent]:
        """
        Run one tick of a monitor.

        Returns the events recorded by this tick; an empty list when the
        tick was skipped or aborted.
        """
        monitor = MonitorType.parse(monitor_type)
        status = self._status[monitor]
        with self._state_lock:
            if status.state != MonitorState.IDLE:
                status.skipped += 1
                metrics.increment(DETECTION_TICKS_SKIPPED, labels={"monitor": monitor.value})
                logger.info(f"{monitor.value} monitor busy ({status.state.value}); tick skipped")
                return []
            status.state = MonitorState.SCANNING
        add_span_attribute("detection.monitor", monitor.value)

        started = time.perf_counter()
        settings = self.config.monitors[monitor]
        events: list[DetectedEvent] = []
        try:
            with LoggingContext(monitor=monitor.value):
                try:
                    candidates = self._scan(monitor, settings)
                except OracleUnavailableError as e:
                    status.errors += 1
                    status.last_error = e.message
                    logger.warning(f"{monitor.value} scan aborted: {e.message}")
                    return []

                for index, item in enumerate(candidates):
                    if index and settings.call_delay > 0:
                        self.sleep(settings.call_delay)
                    self._set_state(monitor, MonitorState.ANALYZING)
                    try:
                        event = self._analyze(monitor, item)
                    except Exception as e:
                        status.errors += 1
                        status.last_error = str(e)
                        logger.warning(f"{monitor.value} analysis of {item.subject_id} failed: {e}")
                        continue
                    if event is not None:
                        events.append(event)
        finally:
            status.runs += 1
            status.events_detected += len(events)
            status.last_run_at = self._now()
            status.last_duration_ms = round((time.perf_counter() - started) * 1000, 2)
            with self._state_lock:
                status.state = MonitorState.IDLE

        logger.info(f"{monitor.value} tick finished: {len(events)} events from {len(candidates)} items")
        return events

    def _scan(self, monitor: MonitorType, settings: MonitorConfig) -> list[ContentItem]:
        if monitor != MonitorType.TREND:
            return self.oracle.list_content(settings.batch_size)
        # One candidate per creator, first listed item
        creators: dict[str, ContentItem] = {}
        for item in self.oracle.list_content(self.config.trend_scan_limit):
            creators.setdefault(item.author_address.lower(), item)
            if len(creators) >= settings.batch_size:
                break
        return list(creators.values())

    def _analyze(self, monitor: MonitorType, item: ContentItem) -> DetectedEvent | None:
        author = validate_address(item.author_address)
        if monitor == MonitorType.DERIVATIVE:
            return self.detect_derivatives(author, item.subject_id, item, monitor)
        if monitor == MonitorType.QUALITY:
            return self.detect_quality(author, item.subject_id, item, monitor)
        if monitor == MonitorType.COLLABORATION:
            return self.detect_collaborations(author, item.subject_id, item, monitor)
        return self.detect_trends(author, item.subject_id, monitor)

    def get_events_for_author(
        self,
        author_address: str,
        types: Iterable[EventType | str] | None = None,
        limit: int = 50,
        since: datetime | None = None,
        unprocessed_only: bool = False,
    ) -> list[DetectedEvent]:
        author = validate_address(author_address)
        if not 1 <= limit <= MAX_EVENT_LIMIT:
            raise ValidationError(
                f"limit must be between 1 and {MAX_EVENT_LIMIT}", details={"field": "limit"}
            )
        wanted = {EventType.parse(t) for t in types} if types else None

        selected = []
        for event in self.events.list_for_author(author):
            if wanted and event.type not in wanted:
                continue
            if since and event.timestamp < since:
                continue
            if unprocessed_only and event.notification_sent:
                continue
            selected.append(event)
            if len(selected) >= limit:
                break
        return selected

    def mark_event_processed(self, event_id: str) -> DetectedEvent:
        """
        Raises:
            NotFoundError: Unknown event id
        """
        event = self.events.get(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found", details={"eventId": event_id})
        event.notification_sent = True
        event.action_required = False
        self.events.update(event)
        return event

    def update_config(self, updates: dict[str, Any]) -> DetectionConfig:
        """
        Apply API-shaped config updates.

        Accepts autoNotify, autoSuggestImprovements and a ``monitors`` mapping
        of monitor name to {enabled, threshold, batchSize, callDelaySeconds}.
        Interval changes take effect the next time the monitors are started.
        """
        if not isinstance(updates, dict):
            raise ValidationError("Config must be a JSON object")
        allowed = {"autoNotify", "autoSuggestImprovements", "monitors"}
        unknown = set(updates) - allowed
        if unknown:
            raise ValidationError(f"Unknown config fields: {', '.join(sorted(unknown))}")

        new_monitors = dict(self.config.monitors)
        for name, changes in (updates.get("monitors") or {}).items():
            monitor = MonitorType.parse(name)
            if not isinstance(changes, dict):
                raise ValidationError(f"monitors.{name} must be an object")
            new_monitors[monitor] = self._updated_monitor(new_monitors[monitor], name, changes)

        for key in ("autoNotify", "autoSuggestImprovements"):
            if key in updates and not isinstance(updates[key], bool):
                raise ValidationError(f"{key} must be a boolean", details={"field": key})

        self.config.monitors = new_monitors
        if "autoNotify" in updates:
            self.config.auto_notify = updates["autoNotify"]
        if "autoSuggestImprovements" in updates:
            self.config.auto_suggest_improvements = updates["autoSuggestImprovements"]
        logger.info(f"Detection config updated: {updates}")
        return self.config

    @staticmethod
    def _updated_monitor(current: MonitorConfig, name: str, changes: dict[str, Any]) -> MonitorConfig:
        fields: dict[str, Any] = {}
        if "enabled" in changes:
            if not isinstance(changes["enabled"], bool):
                raise ValidationError(f"monitors.{name}.enabled must be a boolean")
            fields["enabled"] = changes["enabled"]
        if "threshold" in changes:
            threshold = changes["threshold"]
            if not isinstance(threshold, (int, float)) or not 0 <= threshold <= 1:
                raise ValidationError(f"monitors.{name}.threshold must be between 0 and 1")
            fields["threshold"] = float(threshold)
        if "batchSize" in changes:
            size = changes["batchSize"]
            if not isinstance(size, int) or isinstance(size, bool) or size < 1:
                raise ValidationError(f"monitors.{name}.batchSize must be a positive integer")
            fields["batch_size"] = size
        if "callDelaySeconds" in changes:
            delay = changes["callDelaySeconds"]
            if not isinstance(delay, (int, float)) or delay < 0:
                raise ValidationError(f"monitors.{name}.callDelaySeconds must be non-negative")
            fields["call_delay"] = float(delay)
        return replace(current, **fields)

    def get_stats(self) -> dict[str, Any]:
        events = self.events.list_all()
        now = self._now()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)

        activity = []
        for days_ago in range(STATS_ACTIVITY_DAYS - 1, -1, -1):
            day_start = today - timedelta(days=days_ago)
            day_end = day_start + timedelta(days=1)
            day_events = [e for e in events if day_start <= e.timestamp < day_end]
            activity.append(
                {
                    "date": day_start.date().isoformat(),
                    "eventsDetected": len(day_events),
                    "notificationsSent": sum(1 for e in day_events if e.notification_sent),
                }
            )

        confident = sum(1 for e in events if e.confidence > ACCURACY_CONFIDENCE)
        accuracy = round(confident / len(events) * 100, 2) if events else 100.0
        return {
            "totalEventsDetected": len(events),
            "eventsByType": dict(Counter(e.type.value for e in events)),
            "notificationsSent": sum(1 for e in events if e.notification_sent),
            "recentActivity": activity,
            "detectionAccuracy": accuracy,
        }

    def get_monitor_status(self) -> dict[str, Any]:
        return {
            "enabled": self.config.enabled,
            "started": self._started,
            "monitors": {
                m.value: {**self._status[m].to_dict(), "config": self.config.monitors[m].to_dict()}
                for m in MonitorType
            },
            "cache": self.cache.get_stats(),
        }

    def cleanup_expired_events(self) -> int:
        cutoff = self._now() - timedelta(days=self.config.event_retention_days)
        removed = self.events.purge_before(cutoff)
        self.cache.cleanup_expired()
        for limiter in self.weekly_caps.values():
            limiter.cleanup_expired()
        if removed:
            logger.info(f"Purged {removed} detected events older than {cutoff.date()}")
        return removed
