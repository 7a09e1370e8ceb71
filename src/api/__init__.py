"""
Royalty Engine API Package.

This package contains the modular Flask blueprints for the royalty engine.

Blueprints:
- royalties: Claims, claimable balances, history, previews and tiers
- notifications: Author queues, preferences, webhooks and batch sends
- detection: Derivative, opportunity and quality events; monitor operations
- monitoring: Health probes and metrics

Usage:
    from api import create_app
    from engine import build_engine

    app = create_app(build_engine())
"""

from flask import Flask

from api.detection import detection_bp
from api.monitoring import monitoring_bp
from api.notifications import notifications_bp
from api.royalties import royalties_bp
from api.state import ENGINE_EXTENSION
from api.utils import register_error_handlers
from engine import RoyaltyEngine
from monitoring.middleware import setup_request_logging

# List of all blueprints for registration
# Tuple format: (blueprint, url_prefix)
ALL_BLUEPRINTS = [
    (royalties_bp, ""),
    (notifications_bp, ""),
    (detection_bp, ""),
    (monitoring_bp, ""),
]


def register_blueprints(app: Flask) -> None:
    """Register all blueprints with the Flask app."""
    for blueprint, url_prefix in ALL_BLUEPRINTS:
        app.register_blueprint(blueprint, url_prefix=url_prefix)


def create_app(engine: RoyaltyEngine) -> Flask:
    """
    Build the Flask app around an assembled engine.

    Args:
        engine: Engine from build_engine(); started separately

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)
    app.config["JSON_SORT_KEYS"] = False
    # SECURITY: bound request bodies
    app.config["MAX_CONTENT_LENGTH"] = 1024 * 1024
    app.extensions[ENGINE_EXTENSION] = engine

    setup_request_logging(app)
    register_error_handlers(app, include_trace=not engine.config.is_production)
    register_blueprints(app)
    return app
