"""
HMAC request signing.

Signs outbound webhook and ledger requests so receivers can verify that a
request came from this engine and was not replayed:
- HMAC-SHA256 over method, path, timestamp, nonce and body
- Timestamp window for replay prevention
- Nonce tracking on the verifying side
"""

import hashlib
import hmac
import secrets
import threading
import time
from collections.abc import Callable

HMAC_HEADER = "X-Royalty-Signature"
TIMESTAMP_HEADER = "X-Royalty-Timestamp"
NONCE_HEADER = "X-Royalty-Nonce"

# Timestamp window (seconds) for replay attack prevention
TIMESTAMP_WINDOW = 300


class HMACAuthenticator:
    """
    HMAC-based request authentication.

    Provides:
    - Request signing with HMAC-SHA256
    - Timestamp validation for replay prevention
    - Nonce tracking for uniqueness
    """

    def __init__(self, secret_key: str, clock: Callable[[], float] = time.time):
        """
        Initialize authenticator.

        Args:
            secret_key: Shared secret for HMAC signing
            clock: Time source, injectable for tests
        """
        if not secret_key:
            raise ValueError("HMAC secret key must not be empty")
        self.secret_key = secret_key.encode("utf-8")
        self._clock = clock
        self._used_nonces: dict[str, int] = {}
        self._nonce_lock = threading.Lock()

    def compute_signature(
        self, method: str, path: str, timestamp: int, nonce: str, body: str | None = None
    ) -> str:
        sign_string = f"{method.upper()}\n{path}\n{timestamp}\n{nonce}\n{body or ''}"
        return hmac.new(self.secret_key, sign_string.encode("utf-8"), hashlib.sha256).hexdigest()

    def sign_request(
        self, method: str, path: str, body: str | None = None, timestamp: int | None = None
    ) -> dict[str, str]:
        """
        Sign a request and return authentication headers.

        Args:
            method: HTTP method
            path: Request path
            body: Request body (JSON string)
            timestamp: Optional timestamp (uses current time if not provided)

        Returns:
            Dictionary of authentication headers
        """
        if timestamp is None:
            timestamp = int(self._clock())

        nonce = secrets.token_hex(16)
        signature = self.compute_signature(method, path, timestamp, nonce, body)

        return {HMAC_HEADER: signature, TIMESTAMP_HEADER: str(timestamp), NONCE_HEADER: nonce}

    def verify_request(
        self, method: str, path: str, body: str | None, signature: str, timestamp: str, nonce: str
    ) -> tuple[bool, str]:
        """
        Verify a signed request.

        Returns:
            Tuple of (is_valid, error_message)
        """
        try:
            ts = int(timestamp)
        except ValueError:
            return False, "Invalid timestamp format"

        current_time = int(self._clock())
        if abs(current_time - ts) > TIMESTAMP_WINDOW:
            return False, "Timestamp outside acceptable window"

        with self._nonce_lock:
            cutoff = current_time - TIMESTAMP_WINDOW
            self._used_nonces = {n: t for n, t in self._used_nonces.items() if t > cutoff}
            if nonce in self._used_nonces:
                return False, "Nonce already used (replay attack detected)"
            self._used_nonces[nonce] = ts

        expected_signature = self.compute_signature(method, path, ts, nonce, body)
        if not hmac.compare_digest(signature, expected_signature):
            return False, "Invalid signature"

        return True, "OK"
