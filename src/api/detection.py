"""
Royalty Engine - Event Detection API Blueprint

Trigger and query detected events: potential derivatives, content and
collaboration opportunities, quality and engagement signals. Also exposes
monitor status and configuration for operators.
"""

from flask import Blueprint, request

from errors import ValidationError
from event_detection import MonitorType
from models import EventType, parse_datetime, validate_address

from .state import get_detection
from .utils import (
    arg_bool,
    arg_int,
    envelope,
    get_json_body,
    require_api_key,
    validate_json_schema,
)

detection_bp = Blueprint("detection", __name__)

DEFAULT_EVENT_LIMIT = 50

OPPORTUNITY_TYPES = (EventType.TREND, EventType.COLLABORATION)
QUALITY_TYPES = (EventType.QUALITY, EventType.ENGAGEMENT)


def _list_events(types: tuple[EventType, ...]):
    author = request.args.get("authorAddress")
    if not author:
        raise ValidationError("authorAddress is required", details={"field": "authorAddress"})
    try:
        since = parse_datetime(request.args.get("since"))
    except ValueError:
        raise ValidationError("since must be an ISO-8601 date", details={"field": "since"}) from None

    events = get_detection().get_events_for_author(
        author,
        types=types,
        limit=arg_int("limit", DEFAULT_EVENT_LIMIT),
        since=since,
        unprocessed_only=arg_bool("unprocessedOnly"),
    )
    return envelope({"events": [e.to_dict() for e in events], "count": len(events)})


def _subject_body() -> tuple[str, str, dict]:
    data = get_json_body()
    validate_json_schema(
        data,
        required_fields={"authorAddress": str, "storyId": str},
        max_lengths={"storyId": 256},
    )
    return validate_address(data["authorAddress"]), data["storyId"], data


def _event_response(event, status: int = 201):
    if event is None:
        return envelope({"detected": False, "event": None})
    return envelope({"detected": True, "event": event.to_dict()}, status=status)


# =============================================================================
# Derivatives
# =============================================================================


@detection_bp.route("/notifications/derivatives", methods=["GET"])
def list_derivatives():
    """
    Derivative events for an author.

    Query params:
        authorAddress (required), limit, since, unprocessedOnly
    """
    return _list_events((EventType.DERIVATIVE,))


@detection_bp.route("/notifications/derivatives", methods=["POST"])
@require_api_key
def detect_derivatives():
    """
    Check one story for potential derivatives now.

    Request body:
        {"authorAddress": "0x...", "storyId": "story-1"}
    """
    author, subject_id, _ = _subject_body()
    return _event_response(get_detection().detect_derivatives(author, subject_id))


# =============================================================================
# Opportunities
# =============================================================================


@detection_bp.route("/notifications/opportunities", methods=["GET"])
def list_opportunities():
    """Trend and collaboration events for an author."""
    return _list_events(OPPORTUNITY_TYPES)


@detection_bp.route("/notifications/opportunities", methods=["POST"])
@require_api_key
def detect_opportunities():
    """
    Look for content and collaboration opportunities for one story.

    Request body:
        {"authorAddress": "0x...", "storyId": "story-1"}

    Both detections respect the per-author weekly caps.
    """
    author, subject_id, _ = _subject_body()
    detection = get_detection()
    events = [
        detection.detect_trends(author, subject_id),
        detection.detect_collaborations(author, subject_id),
    ]
    found = [e.to_dict() for e in events if e is not None]
    return envelope({"detected": bool(found), "events": found}, status=201 if found else 200)


# =============================================================================
# Quality and engagement
# =============================================================================


@detection_bp.route("/notifications/quality", methods=["GET"])
def list_quality():
    """Quality and engagement events for an author."""
    return _list_events(QUALITY_TYPES)


@detection_bp.route("/notifications/quality", methods=["POST"])
@require_api_key
def detect_quality():
    """
    Assess a story's quality, or score reader engagement when metrics are given.

    Request body:
        {
            "authorAddress": "0x...",
            "storyId": "story-1",
            "engagement": {                    // Optional
                "reads": 40,
                "completion": 35.0,
                "rating": 2.5,
                "timeSpent": 420
            }
        }
    """
    author, subject_id, data = _subject_body()
    engagement = data.get("engagement")
    if engagement is not None:
        if not isinstance(engagement, dict):
            raise ValidationError("engagement must be an object", details={"field": "engagement"})
        event = get_detection().monitor_engagement(author, subject_id, engagement)
    else:
        event = get_detection().detect_quality(author, subject_id)
    return _event_response(event)


# =============================================================================
# Uploads, events and operations
# =============================================================================


@detection_bp.route("/detection/uploads", methods=["POST"])
@require_api_key
def content_uploaded():
    """
    Run derivative, quality and collaboration detection for new content.

    Request body:
        {"authorAddress": "0x...", "storyId": "story-1"}
    """
    author, subject_id, _ = _subject_body()
    events = get_detection().monitor_content_upload(author, subject_id)
    return envelope({"events": [e.to_dict() for e in events], "count": len(events)})


@detection_bp.route("/detection/events/<event_id>/processed", methods=["POST"])
@require_api_key
def mark_processed(event_id):
    """Mark a detected event as handled."""
    return envelope(get_detection().mark_event_processed(event_id).to_dict())


@detection_bp.route("/detection/status", methods=["GET"])
def monitor_status():
    """State, counters and settings of every monitor."""
    return envelope(get_detection().get_monitor_status())


@detection_bp.route("/detection/stats", methods=["GET"])
def detection_stats():
    """Detection totals, seven days of activity and accuracy."""
    return envelope(get_detection().get_stats())


@detection_bp.route("/detection/run/<monitor>", methods=["POST"])
@require_api_key
def run_monitor(monitor):
    """
    Run one tick of a monitor now.

    A monitor that is already running skips the tick and returns no events.
    """
    events = get_detection().run_monitor(MonitorType.parse(monitor))
    return envelope({"monitor": monitor, "events": [e.to_dict() for e in events]})


@detection_bp.route("/detection/config", methods=["GET"])
def get_config():
    return envelope(get_detection().config.to_dict())


@detection_bp.route("/detection/config", methods=["PUT"])
@require_api_key
def update_config():
    """
    Update detection settings.

    Request body (all optional):
        {
            "autoNotify": true,
            "autoSuggestImprovements": false,
            "monitors": {"derivative": {"threshold": 0.5, "batchSize": 20}}
        }
    """
    return envelope(get_detection().update_config(get_json_body()).to_dict())
