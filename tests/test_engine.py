"""
Tests for engine assembly and lifecycle.
"""

from claims import ClaimRequest
from conftest import AUTHOR
from engine import API_VERSION, EngineConfig, build_engine
from ledger import InMemoryTokenLedger
from models import NotificationType
from oracle import StaticContentOracle
from token_units import ONE_TOKEN


class TestBuildEngine:
    """Tests for the composition root."""

    def test_defaults_to_in_memory_collaborators(self, monkeypatch):
        monkeypatch.delenv("ROYALTY_HISTORY_FILE", raising=False)
        monkeypatch.delenv("ROYALTY_HISTORY_BACKEND", raising=False)
        engine = build_engine()
        try:
            assert isinstance(engine.ledger, InMemoryTokenLedger)
            assert isinstance(engine.oracle, StaticContentOracle)
            assert engine.started is False
        finally:
            engine.stop()

    def test_claims_notify_through_dispatcher(self, engine, ledger):
        """A claim lands in the author's in-app queue."""
        ledger.set_claimable("ch-1", AUTHOR, 10 * ONE_TOKEN)

        result = engine.claims.process_claim(ClaimRequest("ch-1", AUTHOR))

        assert result.success is True
        types = [n.type for n in engine.dispatcher.get_notifications(AUTHOR)]
        assert NotificationType.CLAIM_SUCCESS in types

    def test_production_flag(self):
        assert EngineConfig(environment="production").is_production is True
        assert EngineConfig().is_production is False


class TestLifecycle:
    def test_start_registers_background_tasks(self, engine):
        engine.start()
        try:
            tasks = engine.scheduler.get_status()["tasks"]
            assert "notifications-cleanup" in tasks
            assert "claims-cleanup" in tasks
            assert "detection-derivative" in tasks
            assert "detection-cleanup" in tasks
            assert engine.scheduler.is_running is True
        finally:
            engine.stop(timeout=5)
        assert engine.started is False
        assert engine.scheduler.is_running is False

    def test_start_is_idempotent(self, engine):
        engine.start()
        try:
            engine.start()
            assert engine.started is True
        finally:
            engine.stop(timeout=5)

    def test_restart_after_stop(self, engine):
        engine.start()
        engine.stop(timeout=5)
        assert engine.scheduler.get_status()["tasks"] == {}

        engine.start()
        try:
            tasks = engine.scheduler.get_status()["tasks"]
            assert "notifications-cleanup" in tasks
            assert "claims-cleanup" in tasks
            assert "detection-derivative" in tasks
            assert engine.scheduler.is_running is True
        finally:
            engine.stop(timeout=5)

    def test_detection_disabled(self, engine):
        engine.detection.config.enabled = False
        engine.start()
        try:
            tasks = engine.scheduler.get_status()["tasks"]
            assert "detection-derivative" not in tasks
            assert "notifications-cleanup" in tasks
        finally:
            engine.stop(timeout=5)


class TestHealth:
    def test_healthy(self, engine):
        report = engine.health()
        assert report["status"] == "healthy"
        assert report["version"] == API_VERSION
        assert report["ledgerAvailable"] is True

    def test_degraded_when_ledger_unavailable(self, engine, monkeypatch):
        monkeypatch.setattr(engine.ledger, "is_available", lambda: False)
        report = engine.health()
        assert report["status"] == "degraded"
        assert report["ledgerAvailable"] is False
