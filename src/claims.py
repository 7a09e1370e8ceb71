"""
Royalty Engine - Claim Processing

Turns an author's claim request into ledger transfers and a history entry.

Claim flow:
1. Validate the request shape
2. Per-author rate limit (rejections consume no quota and touch nothing)
3. Per-(chapter, author) claim lease, so concurrent claims cannot both
   pay out the same balance
4. Read the claimable amount from the ledger
5. Compute the royalty breakdown for the ledger-reported tier
6. Record a pending history entry
7. Check the pool balance (and operator allowance) covers net + fee
8. Transfer net -> author and fee -> collector concurrently, each with
   retries for transient failures and a deadline
9. Complete or fail the entry; a fee failure alone does not fail the claim
10. Notify the author and drop the cached claimable check

Errors from step 3 on are captured into the ClaimResult and reported to the
author as a claim_failed notification; they never propagate to the caller.

Environment Variables:
    ROYALTY_POOL_ADDRESS=0x...
    ROYALTY_FEE_COLLECTOR_ADDRESS=0x...
    ROYALTY_OPERATOR_ADDRESS=0x...      # optional spender of the pool
    ROYALTY_LEDGER_CALL_TIMEOUT=30
    ROYALTY_TRANSFER_TIMEOUT=120
    ROYALTY_CLAIM_LEASE_TIMEOUT=0
    ROYALTY_CLAIMABLE_CACHE_TTL=30
"""

import logging
import os
import threading
import time
import uuid
from collections import defaultdict
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

from cache import TTLCache
from errors import (
    ClaimInProgressError,
    InsufficientBalanceError,
    LedgerTransferError,
    NoClaimableFundsError,
    RateLimitedError,
    RoyaltyEngineError,
    ValidationError,
    to_engine_error,
)
from ledger import ClaimableBalance, TokenLedgerAdapter, TransferReceipt
from locking import LocalLockManager, LockManager
from models import (
    ClaimHistoryEntry,
    ClaimStatus,
    isoformat,
    parse_datetime,
    utc_from_timestamp,
    validate_address,
)
from monitoring.metrics import CLAIM_DURATION_MS, CLAIMS_FAILED, CLAIMS_PROCESSED, metrics
from rate_limiter import FixedWindowRateLimiter, MemoryRateLimitStore
from retry_policy import CircuitBreaker, RetryConfig, RetryStats, retry_call
from royalty_calculator import LicenseTier, RoyaltyBreakdown, RoyaltyCalculator
from storage.base import ClaimHistoryRepository
from token_units import format_token_amount, parse_base_units
from tracing import add_span_attribute, traced

logger = logging.getLogger(__name__)

MAX_SUBJECT_ID_LENGTH = 128
MAX_HISTORY_LIMIT = 100
DEFAULT_HISTORY_LIMIT = 50
ANALYTICS_PERIOD_DAYS = 30

DEFAULT_POOL_ADDRESS = "0x0000000000000000000000000000000000000001"
DEFAULT_FEE_COLLECTOR_ADDRESS = "0x0000000000000000000000000000000000000002"


class ClaimNotifier(Protocol):
    """What the claim processor needs from the notification dispatcher."""

    def trigger_claim_result(
        self,
        author_address: str,
        subject_id: str,
        chapter_title: str,
        amount: int,
        success: bool,
        error: str | None = None,
    ) -> Any: ...


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class ClaimConfig:
    pool_address: str = DEFAULT_POOL_ADDRESS
    fee_collector_address: str = DEFAULT_FEE_COLLECTOR_ADDRESS
    operator_address: str | None = None

    claims_per_window: int = 10
    window_seconds: int = 3600

    ledger_call_timeout: float = 30.0
    # Covers every retry of one transfer
    transfer_timeout: float = 120.0
    lease_timeout: float = 0.0
    lease_ttl: float = 300.0
    claimable_cache_ttl: float = 30.0
    transfer_workers: int = 8

    include_error_trace: bool = False
    retry: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_env(cls) -> "ClaimConfig":
        return cls(
            pool_address=os.getenv("ROYALTY_POOL_ADDRESS", DEFAULT_POOL_ADDRESS),
            fee_collector_address=os.getenv(
                "ROYALTY_FEE_COLLECTOR_ADDRESS", DEFAULT_FEE_COLLECTOR_ADDRESS
            ),
            operator_address=os.getenv("ROYALTY_OPERATOR_ADDRESS") or None,
            claims_per_window=int(os.getenv("ROYALTY_CLAIMS_PER_HOUR", "10")),
            ledger_call_timeout=float(os.getenv("ROYALTY_LEDGER_CALL_TIMEOUT", "30")),
            transfer_timeout=float(os.getenv("ROYALTY_TRANSFER_TIMEOUT", "120")),
            lease_timeout=float(os.getenv("ROYALTY_CLAIM_LEASE_TIMEOUT", "0")),
            claimable_cache_ttl=float(os.getenv("ROYALTY_CLAIMABLE_CACHE_TTL", "30")),
            include_error_trace=os.getenv("ROYALTY_ENVIRONMENT", "development") != "production",
            retry=RetryConfig.from_env(),
        )


# =============================================================================
# Request / result types
# =============================================================================


@dataclass
class ClaimRequest:
    subject_id: str
    author_address: str
    license_terms_id: str | None = None
    expected_amount: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClaimRequest":
        """Build from an API body ({chapterId, authorAddress, licenseTermsId?, expectedAmount?})."""
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        expected = data.get("expectedAmount")
        return cls(
            subject_id=data.get("chapterId"),
            author_address=data.get("authorAddress"),
            license_terms_id=data.get("licenseTermsId"),
            expected_amount=parse_base_units(expected) if expected is not None else None,
        )

    def validated(self) -> "ClaimRequest":
        """
        Check the request shape.

        Returns:
            A copy with the author address normalized

        Raises:
            ValidationError: On any malformed field
        """
        if not isinstance(self.subject_id, str) or not self.subject_id.strip():
            raise ValidationError("chapterId is required", details={"field": "chapterId"})
        if len(self.subject_id) > MAX_SUBJECT_ID_LENGTH:
            raise ValidationError(
                f"chapterId must be at most {MAX_SUBJECT_ID_LENGTH} characters",
                details={"field": "chapterId"},
            )
        author = validate_address(self.author_address)
        if self.license_terms_id is not None and not isinstance(self.license_terms_id, str):
            raise ValidationError(
                "licenseTermsId must be a string", details={"field": "licenseTermsId"}
            )
        if self.expected_amount is not None and (
            not isinstance(self.expected_amount, int)
            or isinstance(self.expected_amount, bool)
            or self.expected_amount < 0
        ):
            raise ValidationError(
                "expectedAmount must be a non-negative integer amount",
                details={"field": "expectedAmount"},
            )
        return ClaimRequest(
            subject_id=self.subject_id.strip(),
            author_address=author,
            license_terms_id=self.license_terms_id,
            expected_amount=self.expected_amount,
        )


@dataclass
class ClaimResult:
    """Terminal outcome of one claim attempt."""

    success: bool
    timestamp: datetime
    claimed_amount: int = 0
    platform_fee: int = 0
    net_amount: int = 0
    transfer_reference: str | None = None
    transaction_hash: str | None = None
    fee_transaction_hash: str | None = None
    history_entry_id: str | None = None
    license_tier: str | None = None
    warnings: list[str] = field(default_factory=list)
    error: dict[str, Any] | None = None
    http_status: int = 200

    @classmethod
    def rejected(cls, error: RoyaltyEngineError, timestamp: datetime) -> "ClaimResult":
        return cls(
            success=False,
            timestamp=timestamp,
            error=error.to_dict(),
            http_status=error.http_status,
        )

    def to_dict(self) -> dict[str, Any]:
        result = {
            "success": self.success,
            "claimedAmount": str(self.claimed_amount),
            "claimedAmountFormatted": format_token_amount(self.claimed_amount),
            "platformFee": str(self.platform_fee),
            "platformFeeFormatted": format_token_amount(self.platform_fee),
            "netAmount": str(self.net_amount),
            "netAmountFormatted": format_token_amount(self.net_amount),
            "transferReference": self.transfer_reference,
            "transactionHash": self.transaction_hash,
            "feeTransactionHash": self.fee_transaction_hash,
            "historyEntryId": self.history_entry_id,
            "licenseTier": self.license_tier,
            "timestamp": isoformat(self.timestamp),
        }
        if self.warnings:
            result["warnings"] = list(self.warnings)
        if self.error:
            result["error"] = dict(self.error)
        return result


@dataclass
class ClaimableRoyaltyCheck:
    subject_id: str
    author_address: str
    claimable_amount: int
    license_tier: str
    license_terms_id: str | None
    last_claim_date: datetime | None
    estimated_gas_fee: int
    estimated_net_amount: int
    can_claim: bool
    blocking_reasons: list[str]
    checked_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "chapterId": self.subject_id,
            "authorAddress": self.author_address,
            "claimableAmount": str(self.claimable_amount),
            "claimableAmountFormatted": format_token_amount(self.claimable_amount),
            "licenseTier": self.license_tier,
            "licenseTermsId": self.license_terms_id,
            "lastClaimDate": isoformat(self.last_claim_date),
            "estimatedGasFee": str(self.estimated_gas_fee),
            "estimatedNetAmount": str(self.estimated_net_amount),
            "estimatedNetAmountFormatted": format_token_amount(self.estimated_net_amount),
            "canClaim": self.can_claim,
            "blockingReasons": list(self.blocking_reasons),
            "checkedAt": isoformat(self.checked_at),
        }


@dataclass
class HistoryQuery:
    page: int = 1
    limit: int = DEFAULT_HISTORY_LIMIT
    status: ClaimStatus | None = None
    subject_id: str | None = None
    license_tier: LicenseTier | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    include_analytics: bool = False

    @classmethod
    def from_args(cls, args: dict[str, Any]) -> "HistoryQuery":
        """Parse query-string arguments."""

        def as_int(name: str, default: int) -> int:
            value = args.get(name)
            if value in (None, ""):
                return default
            try:
                return int(value)
            except (TypeError, ValueError):
                raise ValidationError(f"{name} must be an integer", details={"field": name}) from None

        def as_date(name: str) -> datetime | None:
            try:
                return parse_datetime(args.get(name))
            except ValueError:
                raise ValidationError(
                    f"{name} must be an ISO-8601 date", details={"field": name}
                ) from None

        status = args.get("status")
        if status:
            try:
                status = ClaimStatus(status)
            except ValueError:
                raise ValidationError(
                    f"Unknown status: {status}",
                    details={"validStatuses": [s.value for s in ClaimStatus]},
                ) from None

        tier = args.get("licenseTier")
        query = cls(
            page=as_int("page", 1),
            limit=as_int("limit", DEFAULT_HISTORY_LIMIT),
            status=status or None,
            subject_id=args.get("chapterId") or None,
            license_tier=LicenseTier.parse(tier) if tier else None,
            start_date=as_date("startDate"),
            end_date=as_date("endDate"),
            include_analytics=str(args.get("includeAnalytics", "")).lower() == "true",
        )
        query.validate()
        return query

    def validate(self) -> None:
        if self.page < 1:
            raise ValidationError("page must be at least 1", details={"field": "page"})
        if not 1 <= self.limit <= MAX_HISTORY_LIMIT:
            raise ValidationError(
                f"limit must be between 1 and {MAX_HISTORY_LIMIT}", details={"field": "limit"}
            )
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValidationError("startDate must not be after endDate")

    def matches(self, entry: ClaimHistoryEntry) -> bool:
        if self.status and entry.status != self.status:
            return False
        if self.subject_id and entry.subject_id != self.subject_id:
            return False
        if self.license_tier and entry.license_tier != self.license_tier.value:
            return False
        if self.start_date and entry.timestamp < self.start_date:
            return False
        if self.end_date and entry.timestamp > self.end_date:
            return False
        return True


@dataclass
class HistoryPage:
    entries: list[ClaimHistoryEntry]
    page: int
    limit: int
    total: int
    summary: dict[str, Any]
    analytics: dict[str, Any] | None = None

    @property
    def has_more(self) -> bool:
        return self.page * self.limit < self.total

    def to_dict(self) -> dict[str, Any]:
        result = {
            "entries": [e.to_dict() for e in self.entries],
            "pagination": {
                "page": self.page,
                "limit": self.limit,
                "total": self.total,
                "hasMore": self.has_more,
            },
            "summary": self.summary,
        }
        if self.analytics is not None:
            result["analytics"] = self.analytics
        return result


# =============================================================================
# Processor
# =============================================================================


class ClaimProcessor:
    """
    Validates claims, executes transfers and records claim history.

    The processor owns its history repository, claimable cache and claim
    rate limiter; other components reach them only through its methods.
    """

    def __init__(
        self,
        ledger: TokenLedgerAdapter,
        history: ClaimHistoryRepository,
        calculator: RoyaltyCalculator | None = None,
        config: ClaimConfig | None = None,
        notifier: ClaimNotifier | None = None,
        rate_limiter: FixedWindowRateLimiter | None = None,
        locks: LockManager | None = None,
        title_resolver: Callable[[str], str] | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ledger = ledger
        self.history = history
        self.calculator = calculator or RoyaltyCalculator()
        self.config = config or ClaimConfig()
        self.notifier = notifier
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter(
            MemoryRateLimitStore(),
            limit=self.config.claims_per_window,
            window_seconds=self.config.window_seconds,
            clock=clock,
            name="claims",
        )
        self.locks = locks or LocalLockManager()
        self.title_resolver = title_resolver or (lambda subject_id: f"Chapter {subject_id}")
        self.clock = clock
        self.sleep = sleep

        self.pool_address = validate_address(self.config.pool_address, "poolAddress")
        self.fee_collector_address = validate_address(
            self.config.fee_collector_address, "feeCollectorAddress"
        )
        self.operator_address = (
            validate_address(self.config.operator_address, "operatorAddress")
            if self.config.operator_address
            else None
        )

        self.claimable_cache: TTLCache[ClaimableRoyaltyCheck] = TTLCache(
            default_ttl=self.config.claimable_cache_ttl, clock=clock
        )
        self.circuit_breaker = CircuitBreaker("ledger-transfers", clock=clock)
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.transfer_workers, thread_name_prefix="claim-ledger"
        )
        self._id_lock = threading.Lock()
        self._id_counter = 0

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _now(self) -> datetime:
        return utc_from_timestamp(self.clock())

    def _next_entry_id(self) -> str:
        with self._id_lock:
            self._id_counter += 1
            counter = self._id_counter
        return f"claim_{int(self.clock() * 1000)}_{counter}_{uuid.uuid4().hex[:6]}"

    @staticmethod
    def cache_key(subject_id: str, author_address: str) -> str:
        return f"{subject_id}_{author_address}"

    @staticmethod
    def lease_name(subject_id: str, author_address: str) -> str:
        return f"claim:{subject_id}:{author_address}"

    def _ledger_call(self, func: Callable, *args) -> Any:
        """Run a ledger read on the worker pool, bounded by the ledger timeout."""
        future = self._executor.submit(func, *args)
        try:
            return future.result(timeout=self.config.ledger_call_timeout)
        except FutureTimeoutError:
            future.cancel()
            raise LedgerTransferError(
                f"Ledger call {getattr(func, '__name__', 'call')} timed out after "
                f"{self.config.ledger_call_timeout}s",
                transient=True,
            ) from None

    def _chapter_title(self, subject_id: str) -> str:
        try:
            return self.title_resolver(subject_id)
        except Exception as e:
            logger.warning(f"Could not resolve title for {subject_id}: {e}")
            return f"Chapter {subject_id}"

    def _notify(
        self, request: ClaimRequest, amount: int, success: bool, error: str | None = None
    ) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.trigger_claim_result(
                request.author_address,
                request.subject_id,
                self._chapter_title(request.subject_id),
                amount,
                success,
                error,
            )
        except Exception:
            # The claim outcome is already final; a notification failure must not change it
            logger.exception(f"Claim notification failed for {request.author_address}")

    # -------------------------------------------------------------------------
    # Claim processing
    # -------------------------------------------------------------------------

    @traced("claims.process_claim", attributes={"component": "claims"})
    def process_claim(self, request: ClaimRequest) -> ClaimResult:
        """
        Process one claim end to end.

        Never raises for business or collaborator failures; inspect
        ``success`` and ``error`` on the result.
        """
        started = time.perf_counter()

        try:
            request = request.validated()
        except ValidationError as e:
            logger.info(f"Claim rejected: {e.message}")
            return ClaimResult.rejected(e, self._now())

        limit = self.rate_limiter.check_and_hit(f"claim:{request.author_address}")
        if limit.exceeded:
            error = RateLimitedError(
                "Too many claim attempts. Please try again later.",
                reset_time=limit.reset_at,
                retry_after=limit.retry_after,
            )
            logger.warning(f"Claim rate limit exceeded for {request.author_address}")
            return ClaimResult.rejected(error, self._now())

        add_span_attribute("claim.subject_id", request.subject_id)
        lease = self.lease_name(request.subject_id, request.author_address)

        if not self.locks.acquire(lease, timeout=self.config.lease_timeout, ttl=self.config.lease_ttl):
            error = ClaimInProgressError(
                "A claim for this chapter is already being processed",
                details={"chapterId": request.subject_id},
            )
            result = ClaimResult.rejected(error, self._now())
            self._notify(request, 0, False, error.message)
            metrics.increment(CLAIMS_FAILED, labels={"code": error.code})
            return result

        try:
            result = self._execute(request)
        finally:
            self.locks.release(lease)

        metrics.increment(CLAIMS_PROCESSED, labels={"success": str(result.success).lower()})
        if not result.success:
            metrics.increment(CLAIMS_FAILED, labels={"code": result.error["code"]})
        metrics.timing(CLAIM_DURATION_MS, (time.perf_counter() - started) * 1000)
        return result

    def _execute(self, request: ClaimRequest) -> ClaimResult:
        entry: ClaimHistoryEntry | None = None
        breakdown: RoyaltyBreakdown | None = None
        claimable: ClaimableBalance | None = None

        try:
            claimable = self._ledger_call(
                self.ledger.get_claimable, request.subject_id, request.author_address
            )
            if claimable.amount <= 0:
                raise NoClaimableFundsError(
                    "No royalties available to claim", details={"chapterId": request.subject_id}
                )
            if claimable.amount < self.calculator.minimum_claim:
                raise NoClaimableFundsError(
                    f"Claimable amount is below the minimum of "
                    f"{format_token_amount(self.calculator.minimum_claim)} TIP",
                    details={"claimableAmount": str(claimable.amount)},
                )
            if (
                request.expected_amount is not None
                and request.expected_amount != claimable.amount
            ):
                logger.warning(
                    f"Expected amount {request.expected_amount} differs from claimable "
                    f"{claimable.amount} for {request.subject_id}; using claimable amount"
                )

            breakdown = self.calculator.compute_breakdown(claimable.amount, claimable.license_tier)
            if breakdown.net_amount <= 0:
                raise NoClaimableFundsError(
                    "Claimable royalty does not cover fees",
                    details={
                        "claimableAmount": str(claimable.amount),
                        "royaltyAmount": str(breakdown.royalty_amount),
                    },
                )

            entry = ClaimHistoryEntry(
                id=self._next_entry_id(),
                subject_id=request.subject_id,
                author_address=request.author_address,
                amount=claimable.amount,
                platform_fee=breakdown.platform_fee,
                net_amount=breakdown.net_amount,
                status=ClaimStatus.PENDING,
                timestamp=self._now(),
                license_tier=breakdown.tier.value,
                license_terms_id=request.license_terms_id or claimable.license_terms_id,
            )
            self.history.append(entry)

            try:
                self._check_funding(breakdown)
            except InsufficientBalanceError as e:
                entry.status = ClaimStatus.CANCELLED
                entry.error = e.message
                entry.completed_at = self._now()
                self.history.update(entry)
                raise

            return self._transfer(request, entry, claimable, breakdown)

        except Exception as e:
            error = to_engine_error(e, include_trace=self.config.include_error_trace)
            if error is not e:
                logger.exception(f"Unexpected error processing claim for {request.subject_id}")
            else:
                logger.warning(f"Claim failed for {request.subject_id}: [{error.code}] {error.message}")

            if entry is not None and entry.status == ClaimStatus.PENDING:
                entry.status = ClaimStatus.FAILED
                entry.error = error.message
                entry.completed_at = self._now()
                self.history.update(entry)

            self._notify(request, breakdown.net_amount if breakdown else 0, False, error.message)
            self.claimable_cache.delete(self.cache_key(request.subject_id, request.author_address))

            return ClaimResult(
                success=False,
                timestamp=self._now(),
                claimed_amount=claimable.amount if claimable else 0,
                platform_fee=breakdown.platform_fee if breakdown else 0,
                net_amount=breakdown.net_amount if breakdown else 0,
                history_entry_id=entry.id if entry else None,
                license_tier=breakdown.tier.value if breakdown else None,
                error=error.to_dict(),
                http_status=error.http_status,
            )

    def _check_funding(self, breakdown: RoyaltyBreakdown) -> None:
        required = breakdown.net_amount + breakdown.platform_fee
        balance = self._ledger_call(self.ledger.get_balance, self.pool_address)
        if balance < required:
            raise InsufficientBalanceError(
                "Royalty pool balance is insufficient for this claim",
                details={"required": str(required), "available": str(balance)},
            )
        if self.operator_address:
            allowance = self._ledger_call(
                self.ledger.get_allowance, self.pool_address, self.operator_address
            )
            if allowance < required:
                raise InsufficientBalanceError(
                    "Operator allowance is insufficient for this claim",
                    details={"required": str(required), "allowance": str(allowance)},
                )

    def _submit_transfer(self, recipient: str, amount: int, reference: str) -> Future:
        return self._executor.submit(
            retry_call,
            self.ledger.transfer,
            args=(self.pool_address, recipient, amount, reference),
            config=self.config.retry,
            circuit_breaker=self.circuit_breaker,
            sleep=self.sleep,
            stats=RetryStats(),
        )

    def _await_transfer(self, future: Future, reference: str) -> TransferReceipt:
        try:
            return future.result(timeout=self.config.transfer_timeout)
        except FutureTimeoutError:
            raise LedgerTransferError(
                f"Transfer {reference} did not complete within {self.config.transfer_timeout}s",
                transient=True,
                details={"reference": reference},
            ) from None

    def _transfer(
        self,
        request: ClaimRequest,
        entry: ClaimHistoryEntry,
        claimable: ClaimableBalance,
        breakdown: RoyaltyBreakdown,
    ) -> ClaimResult:
        author_ref = f"{entry.id}:author"
        fee_ref = f"{entry.id}:fee"
        warnings: list[str] = []

        author_future = self._submit_transfer(request.author_address, breakdown.net_amount, author_ref)
        fee_future = (
            self._submit_transfer(self.fee_collector_address, breakdown.platform_fee, fee_ref)
            if breakdown.platform_fee > 0
            else None
        )

        # Both transfers settle before the entry is finalized
        author_error: Exception | None = None
        author_receipt = None
        try:
            author_receipt = self._await_transfer(author_future, author_ref)
        except Exception as e:
            author_error = e

        fee_receipt = None
        if fee_future is not None:
            try:
                fee_receipt = self._await_transfer(fee_future, fee_ref)
            except Exception as e:
                entry.fee_transfer_error = str(e)
                warnings.append(f"Platform fee transfer failed: {e}")
                logger.error(f"Fee transfer {fee_ref} failed: {e}")

        entry.transfer_reference = author_ref
        entry.fee_transaction_hash = fee_receipt.transaction_hash if fee_receipt else None

        if author_error is not None:
            raise author_error

        entry.transaction_hash = author_receipt.transaction_hash
        entry.status = ClaimStatus.COMPLETED
        entry.completed_at = self._now()
        self.history.update(entry)

        try:
            self._ledger_call(
                self.ledger.mark_claimed,
                request.subject_id,
                request.author_address,
                claimable.amount,
                f"{entry.id}:claim",
            )
        except Exception as e:
            warnings.append(f"Claim was paid but not recorded on the ledger: {e}")
            logger.error(f"mark_claimed failed for {entry.id}: {e}")

        logger.info(
            f"Claim completed for {request.author_address}: "
            f"{format_token_amount(breakdown.net_amount)} TIP from {request.subject_id}"
        )
        self._notify(request, breakdown.net_amount, True)
        self.claimable_cache.delete(self.cache_key(request.subject_id, request.author_address))

        return ClaimResult(
            success=True,
            timestamp=self._now(),
            claimed_amount=claimable.amount,
            platform_fee=breakdown.platform_fee,
            net_amount=breakdown.net_amount,
            transfer_reference=author_ref,
            transaction_hash=author_receipt.transaction_hash,
            fee_transaction_hash=entry.fee_transaction_hash,
            history_entry_id=entry.id,
            license_tier=breakdown.tier.value,
            warnings=warnings,
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def check_claimable(
        self, subject_id: str, author_address: str, refresh: bool = False
    ) -> ClaimableRoyaltyCheck:
        """
        Report what an author could claim right now.

        Cached for the configured TTL (30s) per (chapter, author) unless
        ``refresh`` is set.
        """
        if not isinstance(subject_id, str) or not subject_id.strip():
            raise ValidationError("chapterId is required", details={"field": "chapterId"})
        author = validate_address(author_address)
        key = self.cache_key(subject_id, author)

        if not refresh:
            cached = self.claimable_cache.get(key)
            if cached is not None:
                return cached

        claimable = self._ledger_call(self.ledger.get_claimable, subject_id, author)
        tier = LicenseTier.parse(claimable.license_tier)
        reasons: list[str] = []
        net = 0
        if claimable.amount <= 0:
            reasons.append("No royalties available to claim")
        elif claimable.amount < self.calculator.minimum_claim:
            reasons.append(
                f"Claimable amount is below the minimum of "
                f"{format_token_amount(self.calculator.minimum_claim)} TIP"
            )
        else:
            net = self.calculator.compute_breakdown(claimable.amount, tier).net_amount
            if net <= 0:
                reasons.append("Estimated fees exceed the claimable royalty")
        if self.locks.is_locked(self.lease_name(subject_id, author)):
            reasons.append("A claim for this chapter is already in progress")

        check = ClaimableRoyaltyCheck(
            subject_id=subject_id,
            author_address=author,
            claimable_amount=claimable.amount,
            license_tier=tier.value,
            license_terms_id=claimable.license_terms_id,
            last_claim_date=claimable.last_claimed_at,
            estimated_gas_fee=self.calculator.gas_fee_estimate,
            estimated_net_amount=net,
            can_claim=not reasons,
            blocking_reasons=reasons,
            checked_at=self._now(),
        )
        self.claimable_cache.set(key, check)
        return check

    def get_history(self, author_address: str, query: HistoryQuery | None = None) -> HistoryPage:
        """Paginated, filtered claim history for an author, newest first."""
        author = validate_address(author_address)
        query = query or HistoryQuery()
        query.validate()

        entries = [e for e in self.history.list_for_author(author) if query.matches(e)]
        start = (query.page - 1) * query.limit
        page_entries = entries[start:start + query.limit]

        return HistoryPage(
            entries=page_entries,
            page=query.page,
            limit=query.limit,
            total=len(entries),
            summary=self._summarize(entries),
            analytics=self._analytics(entries) if query.include_analytics else None,
        )

    @staticmethod
    def _summarize(entries: list[ClaimHistoryEntry]) -> dict[str, Any]:
        completed = [e for e in entries if e.status == ClaimStatus.COMPLETED]
        total_claimed = sum(e.amount for e in completed)
        total_fees = sum(e.platform_fee for e in completed)
        average = total_claimed // len(completed) if completed else 0
        success_rate = len(completed) / len(entries) * 100 if entries else 0.0
        last = max((e.timestamp for e in completed), default=None)
        return {
            "totalClaimed": str(total_claimed),
            "totalClaimedFormatted": format_token_amount(total_claimed),
            "totalFeesPaid": str(total_fees),
            "totalFeesPaidFormatted": format_token_amount(total_fees),
            "claimCount": len(completed),
            "successRate": round(success_rate, 2),
            "averageClaimAmount": str(average),
            "averageClaimAmountFormatted": format_token_amount(average),
            "lastClaimDate": isoformat(last),
        }

    def _analytics(self, entries: list[ClaimHistoryEntry]) -> dict[str, Any]:
        now = self._now()
        period = timedelta(days=ANALYTICS_PERIOD_DAYS)
        completed = [e for e in entries if e.status == ClaimStatus.COMPLETED]
        current = [e for e in completed if e.timestamp >= now - period]
        previous = [e for e in completed if now - 2 * period <= e.timestamp < now - period]

        current_total = sum(e.amount for e in current)
        previous_total = sum(e.amount for e in previous)
        if previous_total:
            growth = (current_total - previous_total) / previous_total * 100
        else:
            growth = 100.0 if current_total else 0.0

        by_tier: dict[str, dict[str, int]] = defaultdict(lambda: {"count": 0, "amount": 0})
        for e in current:
            bucket = by_tier[e.license_tier or "unknown"]
            bucket["count"] += 1
            bucket["amount"] += e.amount

        largest = max(completed, key=lambda e: e.amount, default=None)
        return {
            "periodDays": ANALYTICS_PERIOD_DAYS,
            "tierBreakdown": {
                tier: {
                    "count": v["count"],
                    "amount": str(v["amount"]),
                    "amountFormatted": format_token_amount(v["amount"]),
                }
                for tier, v in by_tier.items()
            },
            "growthRate": round(growth, 2),
            # Straight-line projection of the last period
            "projectedNextPeriod": str(current_total),
            "projectedNextPeriodFormatted": format_token_amount(current_total),
            "largestClaim": largest.to_dict() if largest else None,
        }

    def get_statistics(self, author_address: str) -> dict[str, Any]:
        """Lifetime totals for an author."""
        author = validate_address(author_address)
        entries = self.history.list_for_author(author)
        completed = [e for e in entries if e.status == ClaimStatus.COMPLETED]
        total_net = sum(e.net_amount for e in completed)
        by_tier: dict[str, int] = defaultdict(int)
        for e in completed:
            by_tier[e.license_tier or "unknown"] += e.amount

        return {
            "authorAddress": author,
            "totalClaims": len(completed),
            "failedClaims": sum(1 for e in entries if e.status == ClaimStatus.FAILED),
            "cancelledClaims": sum(1 for e in entries if e.status == ClaimStatus.CANCELLED),
            "chaptersClaimed": len({e.subject_id for e in completed}),
            "totalNetReceived": str(total_net),
            "totalNetReceivedFormatted": format_token_amount(total_net),
            "firstClaimDate": isoformat(min((e.timestamp for e in completed), default=None)),
            "lastClaimDate": isoformat(max((e.timestamp for e in completed), default=None)),
            "amountByTier": {tier: str(amount) for tier, amount in by_tier.items()},
            **self._summarize(entries),
        }

    def health(self) -> dict[str, Any]:
        counts = self.history.count_by_status()
        return {
            "status": "healthy" if self.circuit_breaker.is_allowed() else "degraded",
            "claimsByStatus": {status.value: n for status, n in counts.items()},
            "platformFeeRates": {
                tier.value: rates.platform_fee_rate
                for tier, rates in self.calculator.tier_rates.items()
            },
            "tierCount": len(self.calculator.tier_rates),
            "circuitBreaker": self.circuit_breaker.to_dict(),
            "claimableCache": self.claimable_cache.get_stats(),
        }

    def cleanup(self) -> int:
        """Drop expired cache entries and rate counters."""
        return self.claimable_cache.cleanup_expired() + self.rate_limiter.cleanup_expired()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True, cancel_futures=True)
