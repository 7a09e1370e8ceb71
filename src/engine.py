"""
Royalty Engine - Composition Root

Builds every component explicitly and wires collaborators by injection.
Nothing is constructed at import time.

Usage:
    from engine import EngineConfig, build_engine

    engine = build_engine(EngineConfig.from_env())
    engine.start()          # background monitors and cleanup
    ...
    engine.stop()

Without ROYALTY_LEDGER_URL / ROYALTY_ORACLE_URL the engine runs against the
in-memory ledger and the static oracle, which is what local development and
the test suite use.
"""

import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from claims import ClaimConfig, ClaimProcessor
from event_detection import DetectionConfig, EventDetectionScheduler
from ledger import HTTPTokenLedger, InMemoryTokenLedger, LedgerConfig, TokenLedgerAdapter
from locking import LocalLockManager, LockManager, RedisLockManager
from notifications import NotificationConfig, NotificationDispatcher
from oracle import ContentSimilarityOracle, HTTPContentOracle, OracleConfig, StaticContentOracle
from rate_limiter import FixedWindowRateLimiter, RateLimitConfig
from royalty_calculator import RoyaltyCalculator
from scheduler import Scheduler
from storage import (
    ClaimHistoryRepository,
    MemoryEventStore,
    MemoryNotificationStore,
    MemoryPreferenceStore,
    get_claim_history_repository,
)
from tracing import TracingConfig, init_tracing, shutdown_tracing

logger = logging.getLogger(__name__)

API_VERSION = "2.1.3"


@dataclass
class EngineConfig:
    environment: str = "development"
    claims: ClaimConfig = field(default_factory=ClaimConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    tracing: TracingConfig = field(default_factory=TracingConfig)
    notification_cleanup_interval: float = 3600.0
    scheduler_workers: int = 4

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            environment=os.getenv("ROYALTY_ENVIRONMENT", "development"),
            claims=ClaimConfig.from_env(),
            notifications=NotificationConfig.from_env(),
            detection=DetectionConfig.from_env(),
            rate_limits=RateLimitConfig.from_env(),
            ledger=LedgerConfig.from_env(),
            oracle=OracleConfig.from_env(),
            tracing=TracingConfig.from_env(),
        )


@dataclass
class RoyaltyEngine:
    """The assembled engine. Components talk to each other only through these references."""

    config: EngineConfig
    calculator: RoyaltyCalculator
    ledger: TokenLedgerAdapter
    oracle: ContentSimilarityOracle
    claims: ClaimProcessor
    dispatcher: NotificationDispatcher
    detection: EventDetectionScheduler
    scheduler: Scheduler
    started: bool = False

    def start(self) -> None:
        """Start the notification cleanup and, when enabled, the detection monitors."""
        if self.started:
            return
        self.scheduler.register_periodic_task(
            "notifications-cleanup",
            self.config.notification_cleanup_interval,
            self.dispatcher.cleanup,
        )
        self.scheduler.register_periodic_task(
            "claims-cleanup", self.config.notification_cleanup_interval, self.claims.cleanup
        )
        self.detection.start()
        if not self.scheduler.is_running:
            self.scheduler.start()
        self.started = True
        logger.info("Royalty engine started")

    def stop(self, timeout: float = 10.0) -> None:
        """Stop background work, then drain the worker pools."""
        if self.started:
            self.detection.stop(timeout)
            self.scheduler.unregister("notifications-cleanup")
            self.scheduler.unregister("claims-cleanup")
            self.scheduler.stop(timeout)
            self.started = False
        self.claims.shutdown()
        self.dispatcher.shutdown()
        shutdown_tracing()
        logger.info("Royalty engine stopped")

    def health(self) -> dict[str, Any]:
        try:
            ledger_ok = self.ledger.is_available()
        except Exception as e:
            logger.warning(f"Ledger health check failed: {e}")
            ledger_ok = False
        claims = self.claims.health()
        status = "healthy" if ledger_ok and claims["status"] == "healthy" else "degraded"
        return {
            "status": status,
            "version": API_VERSION,
            "environment": self.config.environment,
            "ledgerAvailable": ledger_ok,
            "claims": claims,
            "notifications": self.dispatcher.health(),
            "detection": self.detection.get_monitor_status(),
            "scheduler": self.scheduler.get_status(),
        }


def _build_locks(config: EngineConfig) -> LockManager:
    # Claim leases must be shared wherever rate limits are
    if config.rate_limits.backend.lower() == "redis":
        return RedisLockManager(config.rate_limits.redis_url)
    return LocalLockManager()


def build_engine(
    config: EngineConfig | None = None,
    ledger: TokenLedgerAdapter | None = None,
    oracle: ContentSimilarityOracle | None = None,
    history: ClaimHistoryRepository | None = None,
    dispatcher: NotificationDispatcher | None = None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], None] = time.sleep,
) -> RoyaltyEngine:
    """
    Assemble the engine.

    Any collaborator passed in is used as-is; the rest are built from config.
    """
    config = config or EngineConfig()
    if config.tracing.enabled:
        init_tracing(config.tracing)

    if ledger is None:
        if config.ledger.base_url:
            ledger = HTTPTokenLedger(config.ledger)
        else:
            logger.warning("ROYALTY_LEDGER_URL not set; using the in-memory ledger")
            ledger = InMemoryTokenLedger(clock=clock)

    if oracle is None:
        if config.oracle.base_url:
            oracle = HTTPContentOracle(config.oracle)
        else:
            logger.warning("ROYALTY_ORACLE_URL not set; using the static content oracle")
            oracle = StaticContentOracle()

    calculator = RoyaltyCalculator()
    store = config.rate_limits.create_store()
    window = config.rate_limits.window_seconds

    if dispatcher is None:
        dispatcher = NotificationDispatcher(
            MemoryNotificationStore(),
            MemoryPreferenceStore(),
            config=config.notifications,
            rate_limiter=FixedWindowRateLimiter(
                store,
                limit=config.rate_limits.notifications_per_window,
                window_seconds=window,
                clock=clock,
                name="notifications",
            ),
            clock=clock,
        )

    claims = ClaimProcessor(
        ledger=ledger,
        history=history or get_claim_history_repository(),
        calculator=calculator,
        config=config.claims,
        notifier=dispatcher,
        rate_limiter=FixedWindowRateLimiter(
            store,
            limit=config.rate_limits.claims_per_window,
            window_seconds=window,
            clock=clock,
            name="claims",
        ),
        locks=_build_locks(config),
        title_resolver=oracle.get_title,
        clock=clock,
        sleep=sleep,
    )

    scheduler = Scheduler(max_workers=config.scheduler_workers, clock=clock)
    detection = EventDetectionScheduler(
        oracle=oracle,
        events=MemoryEventStore(),
        dispatcher=dispatcher,
        scheduler=scheduler,
        config=config.detection,
        clock=clock,
        sleep=sleep,
    )

    return RoyaltyEngine(
        config=config,
        calculator=calculator,
        ledger=ledger,
        oracle=oracle,
        claims=claims,
        dispatcher=dispatcher,
        detection=detection,
        scheduler=scheduler,
    )
