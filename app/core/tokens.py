"""
StudioSign - Token & credential helpers.

Magic-link tokens, signing-session ids, OTP codes and the SHA-256 digests
used for document hashes, stored OTPs and signature tamper detection.
Randomness comes from a ``RandomSource`` so tests can pin the output.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Iterable, Iterator, Optional, Protocol

MAGIC_TOKEN_BYTES = 32  # 256 bits, 64 hex chars
SESSION_ID_BYTES = 16  # 128 bits, 32 hex chars
OTP_LENGTH = 6


# ─── Random source ────────────────────────────────────────────────────────────


class RandomSource(Protocol):
    def token_hex(self, nbytes: int) -> str: ...

    def randbelow(self, upper: int) -> int: ...


class SecretsRandomSource:
    """Production source backed by the OS CSPRNG."""

    def token_hex(self, nbytes: int) -> str:
        return secrets.token_hex(nbytes)

    def randbelow(self, upper: int) -> int:
        return secrets.randbelow(upper)


class SequenceRandomSource:
    """
    Deterministic source for tests: hands out the given tokens and numbers
    in order. Token values are returned verbatim, so callers supply strings
    of the expected length.
    """

    def __init__(
        self,
        tokens: Iterable[str] = (),
        numbers: Iterable[int] = (),
    ) -> None:
        self._tokens: Iterator[str] = iter(tokens)
        self._numbers: Iterator[int] = iter(numbers)

    def token_hex(self, nbytes: int) -> str:
        try:
            return next(self._tokens)
        except StopIteration:
            raise RuntimeError("SequenceRandomSource ran out of tokens") from None

    def randbelow(self, upper: int) -> int:
        try:
            value = next(self._numbers)
        except StopIteration:
            raise RuntimeError("SequenceRandomSource ran out of numbers") from None
        if not 0 <= value < upper:
            raise ValueError(f"{value} outside [0, {upper})")
        return value


# ─── Clock ────────────────────────────────────────────────────────────────────


class Clock(Protocol):
    def now(self) -> datetime: ...


def utc_now() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise client-supplied timestamps; naive input is taken as UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class SystemClock:
    def now(self) -> datetime:
        return utc_now()


class FrozenClock:
    """Manually driven clock used by the test-suite."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or utc_now().replace(microsecond=0)

    def now(self) -> datetime:
        return self._now

    def set(self, when: datetime) -> None:
        self._now = when

    def advance(self, **delta: float) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now


# ─── Generators ───────────────────────────────────────────────────────────────


def generate_magic_token(rng: RandomSource) -> str:
    return rng.token_hex(MAGIC_TOKEN_BYTES)


def generate_session_id(rng: RandomSource) -> str:
    return rng.token_hex(SESSION_ID_BYTES)


def generate_otp_code(rng: RandomSource) -> str:
    """Uniform 6-digit code, zero padded (000000-999999)."""
    return str(rng.randbelow(10**OTP_LENGTH)).zfill(OTP_LENGTH)


def normalize_otp(code: str) -> str:
    """Accept '123-456' / '123 456' style input and keep the digits only."""
    return "".join(ch for ch in code if ch.isdigit())


def format_otp(code: str) -> str:
    if len(code) == OTP_LENGTH:
        return f"{code[:3]}-{code[3:]}"
    return code


# ─── Digests ──────────────────────────────────────────────────────────────────


def sha256_hex(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def hash_otp(code: str) -> str:
    return sha256_hex(normalize_otp(code))


def secure_compare(a: Optional[str], b: Optional[str]) -> bool:
    """Constant-time string equality; None never matches."""
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def is_expired(expires_at: Optional[datetime], now: datetime) -> bool:
    """Expired means strictly before now; a missing expiry counts as expired."""
    if expires_at is None:
        return True
    return expires_at < now
