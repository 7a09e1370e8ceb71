"""
Royalty Engine - Token Ledger Adapter

Interface to the external token ledger that holds royalty balances and
executes transfers.

- TokenLedgerAdapter: abstract interface used by the claim processor
- HTTPTokenLedger: requests-based client for a ledger gateway service
- InMemoryTokenLedger: deterministic in-process ledger with explicit fault
  injection, used by tests and the local development server

Every transfer carries a caller-chosen reference. A ledger that sees the
same reference twice returns the first receipt instead of moving funds
again, which makes transfer retries safe.

Environment Variables:
    ROYALTY_LEDGER_URL=http://localhost:8545
    ROYALTY_LEDGER_API_KEY=...
    ROYALTY_LEDGER_TIMEOUT=30
    ROYALTY_LEDGER_CONNECT_TIMEOUT=10
    ROYALTY_LEDGER_SECRET=...   # optional HMAC signing of requests
"""

import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from errors import InsufficientBalanceError, LedgerTransferError
from models import parse_datetime, utc_from_timestamp
from signing import HMACAuthenticator
from token_units import format_token_amount

logger = logging.getLogger(__name__)

DEFAULT_LEDGER_TIMEOUT = 30
CONNECT_TIMEOUT = 10

# GET retries only; transfers are retried by the claim processor with
# the same reference
GET_RETRIES = 3
GET_BACKOFF_FACTOR = 0.5


# =============================================================================
# Types
# =============================================================================


class TransferStatus(Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    FAILED = "failed"


@dataclass
class ClaimableBalance:
    """Royalty a ledger reports as claimable for one content unit and author."""

    amount: int
    license_tier: str = "free"
    license_terms_id: str | None = None
    last_claimed_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClaimableBalance":
        return cls(
            amount=int(data.get("amount", 0)),
            license_tier=str(data.get("licenseTier", "free")),
            license_terms_id=data.get("licenseTermsId"),
            last_claimed_at=parse_datetime(data.get("lastClaimedAt")),
        )


@dataclass
class TransferReceipt:
    reference: str
    transaction_hash: str
    status: TransferStatus
    amount: int
    sender: str = ""
    recipient: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "reference": self.reference,
            "transactionHash": self.transaction_hash,
            "status": self.status.value,
            "amount": str(self.amount),
            "amountFormatted": format_token_amount(self.amount),
            "sender": self.sender,
            "recipient": self.recipient,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransferReceipt":
        return cls(
            reference=str(data["reference"]),
            transaction_hash=str(data["transactionHash"]),
            status=TransferStatus(data.get("status", "confirmed")),
            amount=int(data["amount"]),
            sender=str(data.get("sender", "")),
            recipient=str(data.get("recipient", "")),
        )


# =============================================================================
# Interface
# =============================================================================


class TokenLedgerAdapter(ABC):
    """External token ledger. Every call is I/O-bound and timeout-bound."""

    @abstractmethod
    def get_claimable(self, subject_id: str, author_address: str) -> ClaimableBalance:
        pass

    @abstractmethod
    def get_balance(self, address: str) -> int:
        pass

    @abstractmethod
    def get_allowance(self, owner: str, spender: str) -> int:
        pass

    @abstractmethod
    def transfer(
        self, sender: str, recipient: str, amount: int, reference: str
    ) -> TransferReceipt:
        """
        Move ``amount`` from sender to recipient.

        Raises:
            InsufficientBalanceError: Sender cannot cover the amount
            LedgerTransferError: Transfer failed (``transient`` if retryable)
        """
        pass

    @abstractmethod
    def mark_claimed(
        self, subject_id: str, author_address: str, amount: int, reference: str
    ) -> None:
        """Record that the claimable balance for (subject, author) was paid out."""
        pass

    def is_available(self) -> bool:
        return True


# =============================================================================
# HTTP client
# =============================================================================


@dataclass
class LedgerConfig:
    base_url: str = ""
    api_key: str | None = None
    secret_key: str | None = None
    timeout: float = DEFAULT_LEDGER_TIMEOUT
    connect_timeout: float = CONNECT_TIMEOUT
    verify_ssl: bool = True

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        return cls(
            base_url=os.getenv("ROYALTY_LEDGER_URL", ""),
            api_key=os.getenv("ROYALTY_LEDGER_API_KEY"),
            secret_key=os.getenv("ROYALTY_LEDGER_SECRET"),
            timeout=float(os.getenv("ROYALTY_LEDGER_TIMEOUT", str(DEFAULT_LEDGER_TIMEOUT))),
            connect_timeout=float(
                os.getenv("ROYALTY_LEDGER_CONNECT_TIMEOUT", str(CONNECT_TIMEOUT))
            ),
            verify_ssl=os.getenv("ROYALTY_LEDGER_VERIFY_SSL", "true").lower() == "true",
        )


class HTTPTokenLedger(TokenLedgerAdapter):
    """
    Client for a ledger gateway exposing a small JSON API.

    Error mapping:
    - timeouts, connection errors and 5xx -> transient LedgerTransferError
    - 402 or an INSUFFICIENT_BALANCE body -> InsufficientBalanceError
    - other 4xx -> terminal LedgerTransferError
    """

    def __init__(self, config: LedgerConfig, session: requests.Session | None = None):
        if not config.base_url:
            raise ValueError("Ledger base_url is required")
        self.base_url = config.base_url.rstrip("/")
        self.config = config
        self.authenticator = HMACAuthenticator(config.secret_key) if config.secret_key else None
        self.session = session or self._create_session()
        self.session.headers.update(
            {
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": "royalty-engine/1.0",
            }
        )
        if config.api_key:
            self.session.headers["Authorization"] = f"Bearer {config.api_key}"

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        retry_strategy = Retry(
            total=GET_RETRIES,
            backoff_factor=GET_BACKOFF_FACTOR,
            status_forcelist=[502, 503, 504],
            allowed_methods=["GET", "HEAD"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        body_str = json.dumps(body) if body is not None else None
        headers = {}
        if self.authenticator:
            headers.update(self.authenticator.sign_request(method, path, body_str))

        try:
            response = self.session.request(
                method=method,
                url=url,
                data=body_str,
                params=params,
                headers=headers,
                timeout=(self.config.connect_timeout, self.config.timeout),
                verify=self.config.verify_ssl,
            )
        except requests.exceptions.Timeout as e:
            raise LedgerTransferError(
                f"Ledger request timed out: {method} {path}",
                transient=True,
                details={"path": path},
                cause=e,
            ) from e
        except requests.exceptions.ConnectionError as e:
            raise LedgerTransferError(
                f"Ledger connection error: {e}",
                transient=True,
                details={"path": path},
                cause=e,
            ) from e

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}
        if not isinstance(data, dict):
            data = {"data": data}

        if response.ok:
            return data

        error_code = str(data.get("code") or data.get("error") or "")
        message = data.get("message") or f"HTTP {response.status_code}"
        details = {"path": path, "status": response.status_code}
        if response.status_code == 402 or error_code == "INSUFFICIENT_BALANCE":
            raise InsufficientBalanceError(message, details=details)
        raise LedgerTransferError(
            f"Ledger error: {message}",
            transient=response.status_code >= 500,
            details=details,
        )

    def get_claimable(self, subject_id: str, author_address: str) -> ClaimableBalance:
        data = self._request("GET", f"/claimable/{subject_id}", params={"author": author_address})
        return ClaimableBalance.from_dict(data)

    def get_balance(self, address: str) -> int:
        return int(self._request("GET", f"/balances/{address}").get("balance", 0))

    def get_allowance(self, owner: str, spender: str) -> int:
        return int(self._request("GET", f"/allowances/{owner}/{spender}").get("allowance", 0))

    def transfer(
        self, sender: str, recipient: str, amount: int, reference: str
    ) -> TransferReceipt:
        data = self._request(
            "POST",
            "/transfers",
            body={
                "sender": sender,
                "recipient": recipient,
                "amount": str(amount),
                "reference": reference,
            },
        )
        receipt = TransferReceipt.from_dict(data)
        if receipt.status == TransferStatus.FAILED:
            raise LedgerTransferError(
                f"Transfer {reference} failed on ledger",
                details={"transactionHash": receipt.transaction_hash},
            )
        return receipt

    def mark_claimed(
        self, subject_id: str, author_address: str, amount: int, reference: str
    ) -> None:
        self._request(
            "POST",
            f"/claimable/{subject_id}/claims",
            body={"author": author_address, "amount": str(amount), "reference": reference},
        )

    def is_available(self) -> bool:
        try:
            self._request("GET", "/health")
            return True
        except (LedgerTransferError, InsufficientBalanceError) as e:
            logger.warning(f"Ledger health check failed: {e}")
            return False


# =============================================================================
# In-process ledger
# =============================================================================


@dataclass
class _InjectedFault:
    remaining: int
    transient: bool
    recipient: str | None


@dataclass
class _ClaimableRecord:
    amount: int
    license_tier: str
    license_terms_id: str | None
    last_claimed_at: datetime | None = None
    claims: list[str] = field(default_factory=list)


class InMemoryTokenLedger(TokenLedgerAdapter):
    """
    Deterministic in-process ledger.

    Faults are injected explicitly with ``fail_next_transfers``; nothing
    fails at random. Every call is appended to ``calls``.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._balances: dict[str, int] = defaultdict(int)
        self._allowances: dict[tuple[str, str], int] = {}
        self._claimables: dict[tuple[str, str], _ClaimableRecord] = {}
        self._receipts: dict[str, TransferReceipt] = {}
        self._faults: list[_InjectedFault] = []
        self._tx_counter = 0
        self._clock = clock
        self._lock = threading.RLock()
        self.calls: list[tuple[str, tuple]] = []

    # Setup helpers

    def set_balance(self, address: str, amount: int) -> None:
        with self._lock:
            self._balances[address.lower()] = amount

    def set_allowance(self, owner: str, spender: str, amount: int) -> None:
        with self._lock:
            self._allowances[(owner.lower(), spender.lower())] = amount

    def set_claimable(
        self,
        subject_id: str,
        author_address: str,
        amount: int,
        license_tier: str = "premium",
        license_terms_id: str | None = None,
    ) -> None:
        with self._lock:
            self._claimables[(subject_id, author_address.lower())] = _ClaimableRecord(
                amount=amount,
                license_tier=license_tier,
                license_terms_id=license_terms_id,
            )

    def fail_next_transfers(
        self, count: int = 1, transient: bool = True, recipient: str | None = None
    ) -> None:
        """Make the next ``count`` transfers (optionally only to ``recipient``) fail."""
        with self._lock:
            self._faults.append(
                _InjectedFault(count, transient, recipient.lower() if recipient else None)
            )

    def call_count(self, method: str | None = None) -> int:
        with self._lock:
            if method is None:
                return len(self.calls)
            return sum(1 for name, _ in self.calls if name == method)

    def receipts(self) -> list[TransferReceipt]:
        with self._lock:
            return list(self._receipts.values())

    # Interface

    def _record(self, method: str, *args) -> None:
        self.calls.append((method, args))

    def get_claimable(self, subject_id: str, author_address: str) -> ClaimableBalance:
        with self._lock:
            self._record("get_claimable", subject_id, author_address)
            record = self._claimables.get((subject_id, author_address.lower()))
            if record is None:
                return ClaimableBalance(amount=0)
            return ClaimableBalance(
                amount=record.amount,
                license_tier=record.license_tier,
                license_terms_id=record.license_terms_id,
                last_claimed_at=record.last_claimed_at,
            )

    def get_balance(self, address: str) -> int:
        with self._lock:
            self._record("get_balance", address)
            return self._balances[address.lower()]

    def get_allowance(self, owner: str, spender: str) -> int:
        with self._lock:
            self._record("get_allowance", owner, spender)
            return self._allowances.get((owner.lower(), spender.lower()), 0)

    def _take_fault(self, recipient: str) -> _InjectedFault | None:
        for fault in self._faults:
            if fault.remaining > 0 and fault.recipient in (None, recipient):
                fault.remaining -= 1
                if fault.remaining == 0:
                    self._faults.remove(fault)
                return fault
        return None

    def transfer(
        self, sender: str, recipient: str, amount: int, reference: str
    ) -> TransferReceipt:
        sender_key, recipient_key = sender.lower(), recipient.lower()
        with self._lock:
            self._record("transfer", sender, recipient, amount, reference)

            existing = self._receipts.get(reference)
            if existing is not None:
                logger.info(f"Duplicate transfer reference {reference}, returning first receipt")
                return existing

            fault = self._take_fault(recipient_key)
            if fault is not None:
                raise LedgerTransferError(
                    f"Injected {'transient' if fault.transient else 'terminal'} "
                    f"transfer failure for {reference}",
                    transient=fault.transient,
                    details={"reference": reference},
                )

            if amount <= 0:
                raise LedgerTransferError(
                    "Transfer amount must be positive", details={"reference": reference}
                )
            if self._balances[sender_key] < amount:
                raise InsufficientBalanceError(
                    "Sender balance too low",
                    details={
                        "required": str(amount),
                        "available": str(self._balances[sender_key]),
                    },
                )

            self._balances[sender_key] -= amount
            self._balances[recipient_key] += amount
            self._tx_counter += 1
            receipt = TransferReceipt(
                reference=reference,
                transaction_hash=f"0x{self._tx_counter:064x}",
                status=TransferStatus.CONFIRMED,
                amount=amount,
                sender=sender,
                recipient=recipient,
            )
            self._receipts[reference] = receipt
            return receipt

    def mark_claimed(
        self, subject_id: str, author_address: str, amount: int, reference: str
    ) -> None:
        with self._lock:
            self._record("mark_claimed", subject_id, author_address, amount, reference)
            record = self._claimables.get((subject_id, author_address.lower()))
            if record is None or reference in record.claims:
                return
            record.amount = max(0, record.amount - amount)
            record.claims.append(reference)
            record.last_claimed_at = utc_from_timestamp(self._clock())
