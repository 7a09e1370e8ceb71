"""
Pytest configuration and shared fixtures for the royalty engine tests.

This module provides:
- A controllable clock and a no-op sleep so nothing in the suite waits
- The in-memory ledger and static oracle with a funded royalty pool
- A recording delivery channel with failure injection
- Claim processor, dispatcher and detection scheduler wired to the above
- A Flask test client around a fully built engine
"""

import os
import sys
from dataclasses import replace

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

# Authentication and file-backed history stay off unless a test enables them
os.environ.pop("ROYALTY_API_KEY", None)
os.environ.pop("ROYALTY_HISTORY_FILE", None)
os.environ.pop("ROYALTY_HISTORY_BACKEND", None)
os.environ["ROYALTY_REQUIRE_AUTH"] = "false"

from channels import DeliveryChannel, InAppChannel  # noqa: E402
from claims import DEFAULT_POOL_ADDRESS, ClaimConfig, ClaimProcessor  # noqa: E402
from event_detection import DetectionConfig, EventDetectionScheduler  # noqa: E402
from ledger import InMemoryTokenLedger  # noqa: E402
from notifications import NotificationDispatcher  # noqa: E402
from oracle import StaticContentOracle  # noqa: E402
from retry_policy import RetryConfig  # noqa: E402
from storage import (  # noqa: E402
    MemoryClaimHistoryRepository,
    MemoryEventStore,
    MemoryNotificationStore,
    MemoryPreferenceStore,
)
from token_units import ONE_TOKEN  # noqa: E402

AUTHOR = "0x" + "a" * 40
OTHER_AUTHOR = "0x" + "b" * 40
START_TIME = 1_700_000_000.0
POOL_FUNDS = 1_000 * ONE_TOKEN


class FakeClock:
    """Clock returning a fixed time until advanced."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingChannel(DeliveryChannel):
    """Delivery channel that records what it was given."""

    def __init__(self, name: str = "recording"):
        self.name = name
        self.delivered = []
        self.fail = False
        self.raise_error = False

    def applies_to(self, notification, preference):
        return True

    def deliver(self, notification, preference):
        if self.raise_error:
            raise ConnectionError("channel down")
        if self.fail:
            return False
        self.delivered.append(notification)
        return True


def no_sleep(seconds: float) -> None:
    pass


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    """In-memory ledger with a funded royalty pool."""
    ledger = InMemoryTokenLedger(clock=clock)
    ledger.set_balance(DEFAULT_POOL_ADDRESS, POOL_FUNDS)
    return ledger


@pytest.fixture
def oracle():
    return StaticContentOracle()


@pytest.fixture
def fast_retry():
    """Retry policy with no waiting between attempts."""
    return RetryConfig(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=0.0)


@pytest.fixture
def claim_config(fast_retry):
    return ClaimConfig(retry=fast_retry, transfer_timeout=10.0, ledger_call_timeout=10.0)


@pytest.fixture
def detection_config():
    """Detection defaults with the inter-call delay removed."""
    config = DetectionConfig()
    config.monitors = {m: replace(c, call_delay=0.0) for m, c in config.monitors.items()}
    return config


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def dispatcher(channel, clock):
    dispatcher = NotificationDispatcher(
        MemoryNotificationStore(),
        MemoryPreferenceStore(),
        channels=[InAppChannel(), channel],
        clock=clock,
    )
    yield dispatcher
    dispatcher.shutdown()


@pytest.fixture
def history():
    return MemoryClaimHistoryRepository()


@pytest.fixture
def processor(ledger, history, claim_config, dispatcher, clock):
    processor = ClaimProcessor(
        ledger=ledger,
        history=history,
        config=claim_config,
        notifier=dispatcher,
        clock=clock,
        sleep=no_sleep,
    )
    yield processor
    processor.shutdown()


@pytest.fixture
def detection(oracle, dispatcher, detection_config, clock):
    return EventDetectionScheduler(
        oracle=oracle,
        events=MemoryEventStore(),
        dispatcher=dispatcher,
        config=detection_config,
        clock=clock,
        sleep=no_sleep,
    )


@pytest.fixture
def engine(ledger, oracle, claim_config, detection_config, clock):
    """Fully built engine on the in-memory collaborators; never started."""
    from engine import EngineConfig, build_engine

    config = EngineConfig(claims=claim_config, detection=detection_config)
    engine = build_engine(config, ledger=ledger, oracle=oracle, clock=clock, sleep=no_sleep)
    yield engine
    engine.stop()


@pytest.fixture
def flask_app(engine):
    from api import create_app

    app = create_app(engine)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def flask_client(flask_app):
    """Create Flask test client."""
    return flask_app.test_client()
