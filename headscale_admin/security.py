from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import time
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Deque, Dict, Optional, Tuple

from argon2 import PasswordHasher
from argon2 import exceptions as argon2_exceptions

SESSION_COOKIE_NAME = "headscale_admin_session"
MIN_PASSWORD_LENGTH = 6

_PASSWORD_HASHER = PasswordHasher(
    time_cost=3,
    memory_cost=65536,
    parallelism=1,
    hash_len=32,
    salt_len=16,
)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _sign(payload_b64: str, secret_key: str) -> bytes:
    return hmac.new(secret_key.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).digest()


def hash_password(password: str) -> str:
    return _PASSWORD_HASHER.hash(password)


def verify_password(password: str, encoded_hash: str) -> bool:
    if not encoded_hash or not encoded_hash.startswith("$argon2"):
        return False
    try:
        return _PASSWORD_HASHER.verify(encoded_hash, password)
    except (argon2_exceptions.VerificationError, argon2_exceptions.InvalidHashError):
        return False


def create_session_token(
    username: str,
    secret_key: str,
    *,
    ttl_seconds: int,
    now: Optional[int] = None,
) -> str:
    issued_at = now if now is not None else int(time.time())
    payload = {"u": username, "iat": issued_at, "exp": issued_at + ttl_seconds}
    payload_b64 = _b64url_encode(
        json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    )
    return f"{payload_b64}.{_b64url_encode(_sign(payload_b64, secret_key))}"


def decode_session_token(
    token: str, secret_key: str, *, now: Optional[int] = None
) -> Optional[str]:
    """Return the principal name carried by a valid, unexpired token."""
    try:
        payload_b64, signature_b64 = token.split(".", 1)
        actual_signature = _b64url_decode(signature_b64)
    except (ValueError, TypeError):
        return None

    try:
        expected_signature = _sign(payload_b64, secret_key)
    except UnicodeEncodeError:
        return None
    if not hmac.compare_digest(actual_signature, expected_signature):
        return None

    try:
        payload = json.loads(_b64url_decode(payload_b64))
        username = payload["u"]
        expires_at = int(payload["exp"])
    except (KeyError, ValueError, TypeError, json.JSONDecodeError):
        return None

    if not isinstance(username, str) or not username:
        return None
    current = now if now is not None else int(time.time())
    if expires_at < current:
        return None
    return username


def sanitize_next_path(next_path: Optional[str], *, fallback: str = "/") -> str:
    if not next_path:
        return fallback
    if not next_path.startswith("/") or next_path.startswith("//"):
        return fallback
    if next_path.startswith("/auth/"):
        return fallback
    return next_path


def validate_new_password(current: str, new: str, confirm: str) -> Optional[str]:
    if not current or not new or not confirm:
        return "All fields are required."
    if new != confirm:
        return "New passwords do not match."
    if len(new) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters long."
    return None


@dataclass
class _RateBucket:
    failures: Deque[float] = field(default_factory=deque)
    blocked_until: float = 0.0


class LoginRateLimiter:
    def __init__(
        self, *, max_failures: int = 5, window_seconds: int = 60, lockout_seconds: int = 300
    ) -> None:
        self._max_failures = max_failures
        self._window_seconds = window_seconds
        self._lockout_seconds = lockout_seconds
        self._buckets: Dict[str, _RateBucket] = {}
        self._lock = Lock()

    def check(self, key: str) -> Tuple[bool, int]:
        """Return ``(allowed, retry_after_seconds)`` for a login attempt."""
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                return True, 0
            self._prune(bucket, now)
            if bucket.blocked_until > now:
                return False, max(1, math.ceil(bucket.blocked_until - now))
            return True, 0

    def record_failure(self, key: str) -> None:
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.setdefault(key, _RateBucket())
            self._prune(bucket, now)
            bucket.failures.append(now)
            if len(bucket.failures) >= self._max_failures:
                bucket.blocked_until = now + self._lockout_seconds
                bucket.failures.clear()

    def record_success(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)

    def _prune(self, bucket: _RateBucket, now: float) -> None:
        threshold = now - self._window_seconds
        while bucket.failures and bucket.failures[0] < threshold:
            bucket.failures.popleft()
