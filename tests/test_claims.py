"""
Tests for claim processing.

Covers:
- The happy path: transfers, history, ledger bookkeeping, notification
- Retries, fee-only failures and author transfer failures
- Funding checks, leases and the per-author rate limit
- Claimable checks and their cache
- History queries, summaries and statistics
"""

import threading

import pytest

from claims import (
    DEFAULT_FEE_COLLECTOR_ADDRESS,
    DEFAULT_POOL_ADDRESS,
    ClaimConfig,
    ClaimProcessor,
    ClaimRequest,
    HistoryQuery,
)
from conftest import AUTHOR, POOL_FUNDS, no_sleep
from errors import ValidationError
from ledger import InMemoryTokenLedger
from models import ClaimStatus, NotificationType
from token_units import ONE_TOKEN

CLAIMABLE = 10 * ONE_TOKEN
# premium: 10% royalty, 5% platform fee, 0.002 gas estimate
ROYALTY = ONE_TOKEN
FEE = ONE_TOKEN // 2
NET = ROYALTY - FEE - 2 * ONE_TOKEN // 1000


def claim(processor, subject_id="ch-1", author=AUTHOR, **kwargs):
    return processor.process_claim(ClaimRequest(subject_id, author, **kwargs))


def delivered_types(channel):
    return [n.type for n in channel.delivered]


class GatedLedger(InMemoryTokenLedger):
    """In-memory ledger whose ``method`` waits until ``gate`` is set."""

    def __init__(self, method, recipient=None, **kwargs):
        super().__init__(**kwargs)
        self.method = method
        self.recipient = recipient
        self.gate = threading.Event()

    def _hold(self, method, recipient=None):
        if method == self.method and self.recipient in (None, recipient):
            self.gate.wait(5)

    def get_claimable(self, subject_id, author_address):
        self._hold("get_claimable")
        return super().get_claimable(subject_id, author_address)

    def transfer(self, sender, recipient, amount, reference):
        self._hold("transfer", recipient)
        return super().transfer(sender, recipient, amount, reference)


class TestSuccessfulClaim:
    """Tests for a claim that pays out."""

    def test_result_amounts(self, processor, ledger):
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE)

        result = claim(processor)

        assert result.success is True
        assert result.http_status == 200
        assert result.claimed_amount == CLAIMABLE
        assert result.platform_fee == FEE
        assert result.net_amount == NET
        assert result.license_tier == "premium"
        assert result.transaction_hash.startswith("0x")
        assert result.fee_transaction_hash.startswith("0x")
        assert result.transfer_reference == f"{result.history_entry_id}:author"
        assert result.warnings == []

    def test_funds_move(self, processor, ledger):
        """Net goes to the author and the fee to the collector, both from the pool."""
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE)

        claim(processor)

        assert ledger.get_balance(AUTHOR) == NET
        assert ledger.get_balance(DEFAULT_FEE_COLLECTOR_ADDRESS) == FEE
        assert ledger.get_balance(DEFAULT_POOL_ADDRESS) == POOL_FUNDS - NET - FEE

    def test_history_entry_completed(self, processor, ledger, history):
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE)

        result = claim(processor)

        entry = history.get(result.history_entry_id)
        assert entry.status is ClaimStatus.COMPLETED
        assert entry.amount == CLAIMABLE
        assert entry.net_amount == NET
        assert entry.transaction_hash == result.transaction_hash
        assert entry.completed_at is not None

    def test_ledger_balance_marked_claimed(self, processor, ledger):
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE)
        claim(processor)
        assert ledger.get_claimable("ch-1", AUTHOR).amount == 0

    def test_author_notified(self, processor, ledger, channel):
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE)
        claim(processor)
        assert delivered_types(channel) == [NotificationType.CLAIM_SUCCESS]
        assert channel.delivered[0].amount == NET

    def test_address_is_normalized(self, processor, ledger, history):
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE)

        result = claim(processor, author="0x" + "A" * 40)

        assert result.success is True
        assert history.get(result.history_entry_id).author_address == AUTHOR

    def test_expected_amount_mismatch_uses_ledger_amount(self, processor, ledger):
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE)
        result = claim(processor, expected_amount=1)
        assert result.claimed_amount == CLAIMABLE

    def test_exclusive_tier(self, processor, ledger):
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE, license_tier="exclusive")
        result = claim(processor)
        assert result.net_amount == 25 * ONE_TOKEN // 10 - FEE - 2 * ONE_TOKEN // 1000


class TestTransferFailures:
    """Tests for retries and failed transfers."""

    def test_transient_author_failure_is_retried(self, processor, ledger):
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE)
        ledger.fail_next_transfers(2, recipient=AUTHOR)

        result = claim(processor)

        assert result.success is True
        assert ledger.get_balance(AUTHOR) == NET
        # Three author attempts and one fee transfer
        assert ledger.call_count("transfer") == 4

    def test_fee_failure_does_not_fail_claim(self, processor, ledger, history):
        """A failed fee transfer is a warning on an otherwise completed claim."""
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE)
        ledger.fail_next_transfers(3, recipient=DEFAULT_FEE_COLLECTOR_ADDRESS)

        result = claim(processor)

        assert result.success is True
        assert result.fee_transaction_hash is None
        assert len(result.warnings) == 1
        assert result.warnings[0].startswith("Platform fee transfer failed")
        entry = history.get(result.history_entry_id)
        assert entry.status is ClaimStatus.COMPLETED
        assert entry.fee_transfer_error is not None
        assert ledger.get_balance(DEFAULT_FEE_COLLECTOR_ADDRESS) == 0

    def test_author_failure_fails_claim(self, processor, ledger, history, channel):
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE)
        ledger.fail_next_transfers(1, transient=False, recipient=AUTHOR)

        result = claim(processor)

        assert result.success is False
        assert result.http_status == 500
        assert result.error["code"] == "BLOCKCHAIN_ERROR"
        entry = history.get(result.history_entry_id)
        assert entry.status is ClaimStatus.FAILED
        assert entry.error
        # Nothing was marked claimed, so the author can try again
        assert ledger.get_claimable("ch-1", AUTHOR).amount == CLAIMABLE
        assert delivered_types(channel) == [NotificationType.CLAIM_FAILED]

    def test_exhausted_retries_fail_claim(self, processor, ledger, history):
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE)
        ledger.fail_next_transfers(3, recipient=AUTHOR)

        result = claim(processor)

        assert result.success is False
        assert history.get(result.history_entry_id).status is ClaimStatus.FAILED


class TestLedgerTimeouts:
    """Tests for ledger calls that outlive their timeout."""

    @pytest.fixture
    def gated(self, history, dispatcher, fast_retry, clock):
        built = []

        def build(method, recipient=None):
            ledger = GatedLedger(method, recipient, clock=clock)
            ledger.set_balance(DEFAULT_POOL_ADDRESS, POOL_FUNDS)
            ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE)
            config = ClaimConfig(retry=fast_retry, transfer_timeout=0.05, ledger_call_timeout=0.05)
            processor = ClaimProcessor(
                ledger, history, config=config, notifier=dispatcher, clock=clock, sleep=no_sleep
            )
            built.append((ledger, processor))
            return ledger, processor

        yield build
        for ledger, processor in built:
            ledger.gate.set()
            processor.shutdown()

    def test_author_transfer_timeout_fails_claim(self, gated, history, channel):
        ledger, processor = gated("transfer", recipient=AUTHOR)

        result = claim(processor)

        assert result.success is False
        assert result.http_status == 500
        assert result.error["code"] == "BLOCKCHAIN_ERROR"
        entry = history.get(result.history_entry_id)
        assert entry.status is ClaimStatus.FAILED
        assert "did not complete" in entry.error
        assert delivered_types(channel) == [NotificationType.CLAIM_FAILED]
        assert not processor.locks.is_locked(ClaimProcessor.lease_name("ch-1", AUTHOR))

    def test_claimable_read_timeout_fails_claim(self, gated, history, channel):
        ledger, processor = gated("get_claimable")

        result = claim(processor)

        assert result.success is False
        assert result.error["code"] == "BLOCKCHAIN_ERROR"
        assert "timed out" in result.error["message"]
        assert result.history_entry_id is None
        assert history.list_for_author(AUTHOR) == []
        assert ledger.call_count("transfer") == 0
        assert delivered_types(channel) == [NotificationType.CLAIM_FAILED]
        assert not processor.locks.is_locked(ClaimProcessor.lease_name("ch-1", AUTHOR))


class TestFundingChecks:
    """Tests for pool balance and operator allowance checks."""

    def test_insufficient_pool_balance(self, processor, ledger, history):
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE)
        ledger.set_balance(DEFAULT_POOL_ADDRESS, NET)

        result = claim(processor)

        assert result.success is False
        assert result.http_status == 500
        assert result.error["code"] == "INSUFFICIENT_BALANCE"
        assert history.get(result.history_entry_id).status is ClaimStatus.CANCELLED
        assert ledger.call_count("transfer") == 0

    def test_operator_allowance(self, ledger, history, fast_retry, clock):
        operator = "0x" + "c" * 40
        config = ClaimConfig(operator_address=operator, retry=fast_retry)
        processor = ClaimProcessor(ledger, history, config=config, clock=clock, sleep=no_sleep)
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE)
        try:
            result = claim(processor)
            assert result.error["code"] == "INSUFFICIENT_BALANCE"
            assert "allowance" in result.error["details"]

            ledger.set_allowance(DEFAULT_POOL_ADDRESS, operator, POOL_FUNDS)
            assert claim(processor).success is True
        finally:
            processor.shutdown()


class TestRejections:
    """Tests for claims rejected before any transfer."""

    def test_invalid_address(self, processor, ledger):
        result = claim(processor, author="not-an-address")
        assert result.http_status == 400
        assert result.error["code"] == "VALIDATION_ERROR"
        assert ledger.call_count() == 0

    def test_missing_chapter(self, processor):
        result = claim(processor, subject_id="  ")
        assert result.error["code"] == "VALIDATION_ERROR"

    def test_nothing_to_claim(self, processor, history):
        result = claim(processor)
        assert result.http_status == 400
        assert result.error["code"] == "NO_CLAIMABLE_ROYALTIES"
        assert history.list_for_author(AUTHOR) == []

    def test_below_minimum(self, processor, ledger):
        ledger.set_claimable("ch-1", AUTHOR, ONE_TOKEN // 10_000)
        result = claim(processor)
        assert result.error["code"] == "NO_CLAIMABLE_ROYALTIES"
        assert "minimum" in result.error["message"]

    def test_free_tier_has_no_net(self, processor, ledger, history):
        """The free tier pays no royalty, so there is never anything to transfer."""
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE, license_tier="free")
        result = claim(processor)
        assert result.error["code"] == "NO_CLAIMABLE_ROYALTIES"
        assert history.list_for_author(AUTHOR) == []

    def test_claim_in_progress(self, processor, ledger):
        """A held lease rejects the claim without reading the ledger."""
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE)
        processor.locks.acquire(ClaimProcessor.lease_name("ch-1", AUTHOR))

        result = claim(processor)

        assert result.http_status == 409
        assert result.error["code"] == "CLAIM_IN_PROGRESS"
        assert ledger.call_count("get_claimable") == 0

    def test_lease_released_after_claim(self, processor, ledger):
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE)
        claim(processor)
        assert not processor.locks.is_locked(ClaimProcessor.lease_name("ch-1", AUTHOR))

    def test_rate_limited(self, ledger, history, fast_retry, clock):
        config = ClaimConfig(claims_per_window=2, retry=fast_retry)
        processor = ClaimProcessor(ledger, history, config=config, clock=clock, sleep=no_sleep)
        try:
            claim(processor, "ch-1")
            claim(processor, "ch-2")
            calls_before = ledger.call_count()

            result = claim(processor, "ch-3")

            assert result.http_status == 429
            assert result.error["code"] == "RATE_LIMITED"
            assert result.error["details"]["retryAfter"] == 3600
            assert ledger.call_count() == calls_before

            clock.advance(3601)
            assert claim(processor, "ch-3").error["code"] == "NO_CLAIMABLE_ROYALTIES"
        finally:
            processor.shutdown()


class TestClaimRequest:
    def test_from_dict(self):
        request = ClaimRequest.from_dict(
            {"chapterId": "ch-1", "authorAddress": AUTHOR, "expectedAmount": "1500"}
        )
        assert request.subject_id == "ch-1"
        assert request.expected_amount == 1500

    def test_from_dict_requires_object(self):
        with pytest.raises(ValidationError):
            ClaimRequest.from_dict(["ch-1"])


class TestCheckClaimable:
    """Tests for the claimable royalty check."""

    def test_claimable(self, processor, ledger):
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE)

        check = processor.check_claimable("ch-1", AUTHOR)

        assert check.can_claim is True
        assert check.blocking_reasons == []
        assert check.claimable_amount == CLAIMABLE
        assert check.estimated_net_amount == NET
        assert check.license_tier == "premium"

    def test_nothing_to_claim(self, processor):
        check = processor.check_claimable("ch-1", AUTHOR)
        assert check.can_claim is False
        assert check.blocking_reasons == ["No royalties available to claim"]

    def test_fees_exceed_royalty(self, processor, ledger):
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE, license_tier="free")
        check = processor.check_claimable("ch-1", AUTHOR)
        assert check.blocking_reasons == ["Estimated fees exceed the claimable royalty"]

    def test_claim_in_progress(self, processor, ledger):
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE)
        processor.locks.acquire(ClaimProcessor.lease_name("ch-1", AUTHOR))
        check = processor.check_claimable("ch-1", AUTHOR)
        assert "A claim for this chapter is already in progress" in check.blocking_reasons

    def test_cached_until_ttl(self, processor, ledger, clock):
        """Checks are served from cache for 30 seconds unless refreshed."""
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE)
        processor.check_claimable("ch-1", AUTHOR)
        ledger.set_claimable("ch-1", AUTHOR, 2 * CLAIMABLE)

        assert processor.check_claimable("ch-1", AUTHOR).claimable_amount == CLAIMABLE
        assert processor.check_claimable("ch-1", AUTHOR, refresh=True).claimable_amount == 2 * CLAIMABLE

        ledger.set_claimable("ch-1", AUTHOR, 3 * CLAIMABLE)
        clock.advance(30)
        assert processor.check_claimable("ch-1", AUTHOR).claimable_amount == 3 * CLAIMABLE

    def test_claim_invalidates_cache(self, processor, ledger):
        ledger.set_claimable("ch-1", AUTHOR, CLAIMABLE)
        processor.check_claimable("ch-1", AUTHOR)
        claim(processor)
        assert processor.check_claimable("ch-1", AUTHOR).claimable_amount == 0

    def test_invalid_address(self, processor):
        with pytest.raises(ValidationError):
            processor.check_claimable("ch-1", "0x123")


class TestHistory:
    """Tests for history queries and statistics."""

    @pytest.fixture
    def claimed(self, processor, ledger, clock):
        """Two completed claims and one failed claim, a minute apart."""
        results = []
        for subject_id in ("ch-1", "ch-2", "ch-3"):
            ledger.set_claimable(subject_id, AUTHOR, CLAIMABLE)
            if subject_id == "ch-3":
                ledger.fail_next_transfers(1, transient=False, recipient=AUTHOR)
            results.append(claim(processor, subject_id))
            clock.advance(60)
        return results

    def test_newest_first(self, processor, claimed):
        page = processor.get_history(AUTHOR)
        assert [e.subject_id for e in page.entries] == ["ch-3", "ch-2", "ch-1"]
        assert page.total == 3
        assert page.has_more is False

    def test_summary(self, processor, claimed):
        summary = processor.get_history(AUTHOR).summary
        assert summary["claimCount"] == 2
        assert summary["totalClaimed"] == str(2 * CLAIMABLE)
        assert summary["totalFeesPaid"] == str(2 * FEE)
        assert summary["successRate"] == pytest.approx(66.67)
        assert summary["averageClaimAmount"] == str(CLAIMABLE)
        assert summary["lastClaimDate"] is not None

    def test_pagination(self, processor, claimed):
        page = processor.get_history(AUTHOR, HistoryQuery(page=2, limit=1))
        assert [e.subject_id for e in page.entries] == ["ch-2"]
        assert page.has_more is True
        # Summary covers every matching entry, not just the page
        assert page.summary["claimCount"] == 2

    def test_status_filter(self, processor, claimed):
        page = processor.get_history(AUTHOR, HistoryQuery(status=ClaimStatus.FAILED))
        assert [e.subject_id for e in page.entries] == ["ch-3"]
        assert page.summary["successRate"] == 0.0

    def test_analytics(self, processor, claimed):
        page = processor.get_history(AUTHOR, HistoryQuery(include_analytics=True))
        analytics = page.analytics
        assert analytics["periodDays"] == 30
        assert analytics["tierBreakdown"]["premium"]["count"] == 2
        assert analytics["growthRate"] == 100.0
        assert analytics["largestClaim"]["amount"] == str(CLAIMABLE)

    def test_empty_history(self, processor):
        page = processor.get_history(AUTHOR)
        assert page.entries == []
        assert page.summary["claimCount"] == 0
        assert page.summary["lastClaimDate"] is None

    def test_statistics(self, processor, claimed):
        stats = processor.get_statistics(AUTHOR)
        assert stats["totalClaims"] == 2
        assert stats["failedClaims"] == 1
        assert stats["cancelledClaims"] == 0
        assert stats["chaptersClaimed"] == 2
        assert stats["totalNetReceived"] == str(2 * NET)
        assert stats["amountByTier"] == {"premium": str(2 * CLAIMABLE)}


class TestHistoryQuery:
    """Tests for query-string parsing."""

    def test_defaults(self):
        query = HistoryQuery.from_args({})
        assert (query.page, query.limit, query.status) == (1, 50, None)

    def test_parses_filters(self):
        query = HistoryQuery.from_args(
            {
                "page": "2",
                "limit": "10",
                "status": "completed",
                "licenseTier": "Premium",
                "startDate": "2026-01-01T00:00:00Z",
                "includeAnalytics": "true",
            }
        )
        assert query.page == 2
        assert query.status is ClaimStatus.COMPLETED
        assert query.license_tier.value == "premium"
        assert query.start_date.year == 2026
        assert query.include_analytics is True

    @pytest.mark.parametrize(
        "args",
        [
            {"page": "0"},
            {"limit": "101"},
            {"limit": "many"},
            {"status": "refunded"},
            {"startDate": "yesterday"},
            {"startDate": "2026-02-01", "endDate": "2026-01-01"},
        ],
    )
    def test_invalid(self, args):
        with pytest.raises(ValidationError):
            HistoryQuery.from_args(args)


class TestMaintenance:
    def test_health(self, processor):
        health = processor.health()
        assert health["status"] == "healthy"
        assert health["claimsByStatus"]["completed"] == 0
        assert health["circuitBreaker"]["state"] == "closed"

    def test_cleanup(self, processor, ledger, clock):
        processor.check_claimable("ch-2", AUTHOR)
        claim(processor)
        clock.advance(3601)
        # One cached check and one rate counter
        assert processor.cleanup() == 2
