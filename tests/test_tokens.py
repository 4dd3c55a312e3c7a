"""
StudioSign - Token, digest, clock and logging helper tests.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone

import pytest

from app.core.logging import fingerprint
from app.core.tokens import (
    FrozenClock,
    SecretsRandomSource,
    SequenceRandomSource,
    format_otp,
    generate_magic_token,
    generate_otp_code,
    generate_session_id,
    hash_otp,
    is_expired,
    normalize_otp,
    secure_compare,
    sha256_hex,
    to_naive_utc,
)

# ─── Generators ───────────────────────────────────────────────────────────────


def test_magic_token_is_256_bit_hex():
    token = generate_magic_token(SecretsRandomSource())
    assert len(token) == 64
    int(token, 16)


def test_session_id_is_128_bit_hex():
    session_id = generate_session_id(SecretsRandomSource())
    assert len(session_id) == 32
    int(session_id, 16)


def test_tokens_do_not_repeat():
    rng = SecretsRandomSource()
    assert len({generate_magic_token(rng) for _ in range(50)}) == 50


def test_otp_code_is_zero_padded():
    rng = SequenceRandomSource(numbers=[7, 999999, 0])
    assert generate_otp_code(rng) == "000007"
    assert generate_otp_code(rng) == "999999"
    assert generate_otp_code(rng) == "000000"


def test_otp_code_from_secrets_is_six_digits():
    for _ in range(20):
        code = generate_otp_code(SecretsRandomSource())
        assert len(code) == 6 and code.isdigit()


def test_sequence_source_runs_out():
    rng = SequenceRandomSource(tokens=["a" * 64])
    assert generate_magic_token(rng) == "a" * 64
    with pytest.raises(RuntimeError):
        generate_magic_token(rng)


def test_sequence_source_rejects_out_of_range_numbers():
    rng = SequenceRandomSource(numbers=[1_000_000])
    with pytest.raises(ValueError):
        generate_otp_code(rng)


# ─── OTP formatting & digests ─────────────────────────────────────────────────


def test_normalize_and_format_otp():
    assert normalize_otp("123-456") == "123456"
    assert normalize_otp(" 123 456 ") == "123456"
    assert format_otp("123456") == "123-456"
    assert format_otp("12345") == "12345"


def test_hash_otp_ignores_separators():
    assert hash_otp("123-456") == hash_otp("123456")
    assert hash_otp("123456") == hashlib.sha256(b"123456").hexdigest()


def test_sha256_hex_accepts_str_and_bytes():
    assert sha256_hex("abc") == sha256_hex(b"abc")
    assert sha256_hex("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


def test_secure_compare():
    assert secure_compare("abc", "abc")
    assert not secure_compare("abc", "abd")
    assert not secure_compare(None, "abc")
    assert not secure_compare("abc", None)
    assert not secure_compare(None, None)


# ─── Expiry & clock ───────────────────────────────────────────────────────────


def test_expiry_is_strict():
    now = datetime(2026, 1, 1, 12, 0, 0)
    assert not is_expired(now, now)
    assert not is_expired(now + timedelta(seconds=1), now)
    assert is_expired(now - timedelta(microseconds=1), now)


def test_missing_expiry_counts_as_expired():
    assert is_expired(None, datetime(2026, 1, 1))


def test_frozen_clock_advances_only_when_told():
    clock = FrozenClock(datetime(2026, 1, 1, 9, 0))
    assert clock.now() == datetime(2026, 1, 1, 9, 0)
    assert clock.advance(hours=2, minutes=30) == datetime(2026, 1, 1, 11, 30)
    clock.set(datetime(2027, 1, 1))
    assert clock.now() == datetime(2027, 1, 1)


def test_to_naive_utc():
    aware = datetime(2026, 6, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
    assert to_naive_utc(aware) == datetime(2026, 6, 1, 12, 0)
    naive = datetime(2026, 6, 1, 14, 0)
    assert to_naive_utc(naive) == naive
    assert to_naive_utc(None) is None


def test_fingerprint_hides_value():
    fp = fingerprint("bride@example.com")
    assert len(fp) == 8
    assert "bride" not in fp
    assert fingerprint(None) == "none"
    assert fingerprint("") == "none"
