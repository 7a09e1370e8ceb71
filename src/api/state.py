"""
Shared state for the royalty engine API.

The engine is created by the composition root and attached to the Flask
app by create_app(); blueprints reach it through these accessors so that
nothing is constructed at import time.
"""

from flask import current_app

from engine import RoyaltyEngine

ENGINE_EXTENSION = "royalty_engine"


def get_engine() -> RoyaltyEngine:
    """The engine bound to the current app."""
    return current_app.extensions[ENGINE_EXTENSION]


def get_claims():
    return get_engine().claims


def get_dispatcher():
    return get_engine().dispatcher


def get_detection():
    return get_engine().detection
