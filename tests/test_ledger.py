"""
Tests for the token ledger adapters.
"""

import json
from unittest.mock import MagicMock

import pytest
import requests

from conftest import AUTHOR, OTHER_AUTHOR
from errors import InsufficientBalanceError, LedgerTransferError
from ledger import (
    HTTPTokenLedger,
    InMemoryTokenLedger,
    LedgerConfig,
    TransferStatus,
)
from token_units import ONE_TOKEN

POOL = "0x" + "1" * 40


def make_response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.json.return_value = payload if payload is not None else {}
    return response


class TestInMemoryLedger:
    """Tests for the in-process ledger."""

    def test_transfer_moves_funds(self, clock):
        ledger = InMemoryTokenLedger(clock)
        ledger.set_balance(POOL, 10 * ONE_TOKEN)

        receipt = ledger.transfer(POOL, AUTHOR, 3 * ONE_TOKEN, "ref-1")

        assert receipt.status is TransferStatus.CONFIRMED
        assert receipt.transaction_hash.startswith("0x")
        assert ledger.get_balance(POOL) == 7 * ONE_TOKEN
        assert ledger.get_balance(AUTHOR) == 3 * ONE_TOKEN

    def test_duplicate_reference_is_idempotent(self, clock):
        """A repeated reference returns the first receipt without moving funds."""
        ledger = InMemoryTokenLedger(clock)
        ledger.set_balance(POOL, 10 * ONE_TOKEN)

        first = ledger.transfer(POOL, AUTHOR, ONE_TOKEN, "ref-1")
        second = ledger.transfer(POOL, AUTHOR, ONE_TOKEN, "ref-1")

        assert second is first
        assert ledger.get_balance(AUTHOR) == ONE_TOKEN
        assert len(ledger.receipts()) == 1
        assert ledger.call_count("transfer") == 2

    def test_insufficient_balance(self, clock):
        ledger = InMemoryTokenLedger(clock)
        ledger.set_balance(POOL, 1)
        with pytest.raises(InsufficientBalanceError):
            ledger.transfer(POOL, AUTHOR, 2, "ref-1")

    def test_non_positive_amount(self, clock):
        ledger = InMemoryTokenLedger(clock)
        with pytest.raises(LedgerTransferError):
            ledger.transfer(POOL, AUTHOR, 0, "ref-1")

    def test_injected_faults(self, clock):
        ledger = InMemoryTokenLedger(clock)
        ledger.set_balance(POOL, 10)
        ledger.fail_next_transfers(1, transient=False)

        with pytest.raises(LedgerTransferError) as exc_info:
            ledger.transfer(POOL, AUTHOR, 1, "ref-1")
        assert exc_info.value.retryable is False

        # The fault is used up
        assert ledger.transfer(POOL, AUTHOR, 1, "ref-1").amount == 1

    def test_fault_scoped_to_recipient(self, clock):
        ledger = InMemoryTokenLedger(clock)
        ledger.set_balance(POOL, 10)
        ledger.fail_next_transfers(1, recipient=OTHER_AUTHOR)

        ledger.transfer(POOL, AUTHOR, 1, "ref-1")
        with pytest.raises(LedgerTransferError) as exc_info:
            ledger.transfer(POOL, OTHER_AUTHOR, 1, "ref-2")
        assert exc_info.value.retryable is True

    def test_claimable_and_mark_claimed(self, clock):
        ledger = InMemoryTokenLedger(clock)
        assert ledger.get_claimable("ch-1", AUTHOR).amount == 0

        ledger.set_claimable("ch-1", AUTHOR.upper().replace("0X", "0x"), 5 * ONE_TOKEN)
        balance = ledger.get_claimable("ch-1", AUTHOR)
        assert balance.amount == 5 * ONE_TOKEN
        assert balance.license_tier == "premium"

        ledger.mark_claimed("ch-1", AUTHOR, 2 * ONE_TOKEN, "ref-1")
        ledger.mark_claimed("ch-1", AUTHOR, 2 * ONE_TOKEN, "ref-1")
        balance = ledger.get_claimable("ch-1", AUTHOR)
        assert balance.amount == 3 * ONE_TOKEN
        assert balance.last_claimed_at is not None

    def test_allowance(self, clock):
        ledger = InMemoryTokenLedger(clock)
        assert ledger.get_allowance(POOL, AUTHOR) == 0
        ledger.set_allowance(POOL, AUTHOR, 9)
        assert ledger.get_allowance(POOL, AUTHOR) == 9


class TestHTTPTokenLedger:
    """Tests for the gateway client against a mocked session."""

    @pytest.fixture
    def session(self):
        session = MagicMock()
        session.headers = {}
        return session

    @pytest.fixture
    def client(self, session):
        return HTTPTokenLedger(
            LedgerConfig(base_url="https://ledger.example/", api_key="k"), session=session
        )

    def test_requires_base_url(self):
        with pytest.raises(ValueError):
            HTTPTokenLedger(LedgerConfig())

    def test_sets_auth_header(self, client, session):
        assert session.headers["Authorization"] == "Bearer k"
        assert client.base_url == "https://ledger.example"

    def test_get_claimable(self, client, session):
        session.request.return_value = make_response(
            payload={"amount": "1500", "licenseTier": "exclusive"}
        )

        balance = client.get_claimable("ch-1", AUTHOR)

        assert balance.amount == 1500
        assert balance.license_tier == "exclusive"
        kwargs = session.request.call_args.kwargs
        assert kwargs["url"] == "https://ledger.example/claimable/ch-1"
        assert kwargs["params"] == {"author": AUTHOR}

    def test_transfer_posts_reference(self, client, session):
        session.request.return_value = make_response(
            payload={"reference": "ref-1", "transactionHash": "0xabc", "amount": "10"}
        )

        receipt = client.transfer(POOL, AUTHOR, 10, "ref-1")

        assert receipt.transaction_hash == "0xabc"
        body = json.loads(session.request.call_args.kwargs["data"])
        assert body == {"sender": POOL, "recipient": AUTHOR, "amount": "10", "reference": "ref-1"}

    def test_failed_receipt_raises(self, client, session):
        session.request.return_value = make_response(
            payload={
                "reference": "ref-1",
                "transactionHash": "0xabc",
                "amount": "10",
                "status": "failed",
            }
        )
        with pytest.raises(LedgerTransferError):
            client.transfer(POOL, AUTHOR, 10, "ref-1")

    def test_timeout_is_transient(self, client, session):
        session.request.side_effect = requests.exceptions.Timeout()
        with pytest.raises(LedgerTransferError) as exc_info:
            client.get_balance(POOL)
        assert exc_info.value.retryable is True

    def test_server_error_is_transient(self, client, session):
        session.request.return_value = make_response(503, {"message": "down"})
        with pytest.raises(LedgerTransferError) as exc_info:
            client.get_balance(POOL)
        assert exc_info.value.retryable is True

    def test_client_error_is_terminal(self, client, session):
        session.request.return_value = make_response(400, {"message": "bad"})
        with pytest.raises(LedgerTransferError) as exc_info:
            client.get_balance(POOL)
        assert exc_info.value.retryable is False

    def test_payment_required(self, client, session):
        session.request.return_value = make_response(402, {"message": "no funds"})
        with pytest.raises(InsufficientBalanceError):
            client.transfer(POOL, AUTHOR, 10, "ref-1")

    def test_is_available(self, client, session):
        session.request.return_value = make_response(200, {"status": "ok"})
        assert client.is_available() is True
        session.request.side_effect = requests.exceptions.ConnectionError("refused")
        assert client.is_available() is False
