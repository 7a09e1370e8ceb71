"""
Royalty Engine - Notifications API Blueprint

Provides access to:
- An author's notification queue (list, send, mark read)
- Notification preferences
- Webhook registration
- Batch sends and system alerts
- Per-author delivery statistics
"""

from flask import Blueprint, request

from errors import ValidationError
from models import parse_datetime

from .state import get_dispatcher
from .utils import (
    MAX_BATCH_SIZE,
    arg_bool,
    arg_int,
    arg_list,
    envelope,
    get_json_body,
    require_api_key,
    validate_json_schema,
)

notifications_bp = Blueprint("notifications", __name__)


def _send_response(result):
    return envelope(
        data=result.to_dict(),
        error=result.error,
        success=result.success,
        status=result.http_status,
        headers=result.rate_limit.to_headers() if result.rate_limit else None,
    )


# =============================================================================
# Webhooks and batch operations
# =============================================================================


@notifications_bp.route("/notifications/webhooks", methods=["GET"])
@require_api_key
def list_webhooks():
    """List every author with a registered webhook."""
    return envelope({"webhooks": get_dispatcher().list_webhooks()})


@notifications_bp.route("/notifications/webhooks", methods=["POST"])
@require_api_key
def register_webhook():
    """
    Register or remove an author's webhook.

    Request body:
        {
            "authorAddress": "0x...",
            "webhookUrl": "https://example.com/hooks/royalty"   // null removes it
        }
    """
    data = get_json_body()
    validate_json_schema(
        data,
        required_fields={"authorAddress": str},
        optional_fields={"webhookUrl": str},
        max_lengths={"webhookUrl": 2048},
    )
    dispatcher = get_dispatcher()
    if data.get("webhookUrl"):
        preference = dispatcher.register_webhook(data["authorAddress"], data["webhookUrl"])
        status = 201
    else:
        preference = dispatcher.remove_webhook(data["authorAddress"])
        status = 200
    return envelope(preference.to_dict(), status=status)


@notifications_bp.route("/notifications/batch", methods=["POST"])
@require_api_key
def send_batch():
    """
    Send many notifications; a bad item is reported without stopping the rest.

    Request body:
        {
            "notifications": [
                {"authorAddress": "0x...", "type": "new_royalty", "data": {"amount": "100"}}
            ]
        }
    """
    data = get_json_body()
    validate_json_schema(data, required_fields={"notifications": list})
    items = data["notifications"]
    if len(items) > MAX_BATCH_SIZE:
        raise ValidationError(f"At most {MAX_BATCH_SIZE} notifications per batch")
    if not all(isinstance(item, dict) for item in items):
        raise ValidationError("Every notification must be a JSON object")

    result = get_dispatcher().send_batch(items)
    return envelope(
        {
            "successful": result["successful"],
            "failed": result["failed"],
            "results": [r.to_dict() for r in result["results"]],
        }
    )


@notifications_bp.route("/notifications/system-alert", methods=["POST"])
@require_api_key
def send_system_alert():
    """
    Send a system alert to a list of authors.

    Request body:
        {"authorAddresses": ["0x...", "0x..."], "message": "Scheduled maintenance at 02:00 UTC"}
    """
    data = get_json_body()
    validate_json_schema(
        data,
        required_fields={"authorAddresses": list, "message": str},
        max_lengths={"message": 1000},
    )
    if len(data["authorAddresses"]) > MAX_BATCH_SIZE:
        raise ValidationError(f"At most {MAX_BATCH_SIZE} recipients per alert")

    result = get_dispatcher().trigger_system_alert(data["authorAddresses"], data["message"])
    return envelope(
        {
            "successful": result["successful"],
            "failed": result["failed"],
            "results": [r.to_dict() for r in result["results"]],
        }
    )


# =============================================================================
# Per-author queue
# =============================================================================


@notifications_bp.route("/notifications/<author_address>", methods=["GET"])
def get_notifications(author_address):
    """
    List an author's notifications, newest first.

    Query params:
        unreadOnly: true to hide read notifications
        limit: 1-100 (default 50)
        types: Comma-separated notification types
        since: ISO-8601 timestamp
    """
    try:
        since = parse_datetime(request.args.get("since"))
    except ValueError:
        raise ValidationError("since must be an ISO-8601 date", details={"field": "since"}) from None

    dispatcher = get_dispatcher()
    notifications = dispatcher.get_notifications(
        author_address,
        unread_only=arg_bool("unreadOnly"),
        limit=arg_int("limit", dispatcher.config.default_list_limit),
        types=arg_list("types"),
        since=since,
    )
    return envelope(
        {
            "notifications": [n.to_dict() for n in notifications],
            "count": len(notifications),
        }
    )


@notifications_bp.route("/notifications/<author_address>", methods=["POST"])
@require_api_key
def send_notification(author_address):
    """
    Send a notification to an author.

    Request body:
        {
            "type": "new_royalty",
            "data": {"amount": "5000000000", "chapterId": "chapter-1", "chapterTitle": "..."}
        }

    Returns:
        Send result; 429 when the per-type hourly limit is reached, 502 when
        no channel delivered it.
    """
    data = get_json_body()
    validate_json_schema(data, required_fields={"type": str, "data": dict})
    result = get_dispatcher().send(author_address, data["type"], data["data"])
    return _send_response(result)


@notifications_bp.route("/notifications/<author_address>/preferences", methods=["GET"])
def get_preferences(author_address):
    """The author's notification preferences (defaults on first access)."""
    return envelope(get_dispatcher().get_preferences(author_address).to_dict())


@notifications_bp.route("/notifications/<author_address>/preferences", methods=["PUT"])
@require_api_key
def update_preferences(author_address):
    """
    Update notification preferences.

    Request body (all optional):
        {
            "emailNotifications": true,
            "pushNotifications": false,
            "inAppNotifications": true,
            "notificationTypes": ["new_royalty", "claim_success"],
            "minimumAmountThreshold": "1000000000000000",
            "frequency": "immediate",          // immediate, daily, weekly
            "webhookUrl": "https://..."
        }
    """
    preference = get_dispatcher().update_preferences(author_address, get_json_body())
    return envelope(preference.to_dict())


@notifications_bp.route("/notifications/<author_address>/mark-read", methods=["POST"])
@require_api_key
def mark_read(author_address):
    """
    Mark notifications as read.

    Request body:
        {"notificationIds": ["notif_..."]}
    """
    data = get_json_body()
    validate_json_schema(data, required_fields={"notificationIds": list})
    return envelope(get_dispatcher().mark_as_read(author_address, data["notificationIds"]))


@notifications_bp.route("/notifications/<author_address>/stats", methods=["GET"])
def get_stats(author_address):
    """Notification counts and delivery success rate for an author."""
    return envelope(get_dispatcher().get_stats(author_address))
