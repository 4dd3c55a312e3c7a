"""
StudioSign - Signing-order gate tests (pure, no database).
"""

from __future__ import annotations

import pytest

from app.core.exceptions import SignerNotFoundError
from app.services.signing_order import (
    ALLOWED_IN_TURN,
    ALLOWED_PARALLEL,
    DENIED_MISSING_SEQUENCE,
    DENIED_PREDECESSORS_PENDING,
    DENIED_UNKNOWN_WORKFLOW,
    SignerSlot,
    can_sign,
    evaluate,
    next_in_turn,
)


def _slots(*statuses, sequences=None):
    sequences = sequences or list(range(1, len(statuses) + 1))
    return [
        SignerSlot(signer_id=f"s{i + 1}", sequence_number=seq, signature_status=status)
        for i, (seq, status) in enumerate(zip(sequences, statuses))
    ]


# ─── Sequential ───────────────────────────────────────────────────────────────


def test_sequential_first_signer_may_sign():
    decision = evaluate("SEQUENTIAL", _slots("PENDING", "PENDING", "PENDING"), "s1")
    assert decision.allowed
    assert decision.reason == ALLOWED_IN_TURN


def test_sequential_later_signer_blocked_until_predecessors_sign():
    slots = _slots("PENDING", "PENDING", "PENDING")
    decision = evaluate("SEQUENTIAL", slots, "s3")
    assert not decision
    assert decision.reason == DENIED_PREDECESSORS_PENDING
    assert decision.blocking_signer_ids == ["s1", "s2"]


def test_sequential_progression():
    slots = _slots("SIGNED", "PENDING", "PENDING")
    assert can_sign("SEQUENTIAL", slots, "s2")
    assert not can_sign("SEQUENTIAL", slots, "s3")

    slots = _slots("SIGNED", "SIGNED", "PENDING")
    assert can_sign("SEQUENTIAL", slots, "s3")


def test_sequential_declined_predecessor_blocks():
    slots = _slots("DECLINED", "PENDING")
    decision = evaluate("SEQUENTIAL", slots, "s2")
    assert not decision.allowed
    assert decision.blocking_signer_ids == ["s1"]


def test_sequential_gaps_in_numbering_are_fine():
    slots = _slots("SIGNED", "PENDING", sequences=[10, 20])
    assert can_sign("SEQUENTIAL", slots, "s2")


def test_sequential_missing_sequence_is_denied():
    slots = _slots("PENDING", "PENDING", sequences=[None, 1])
    decision = evaluate("SEQUENTIAL", slots, "s1")
    assert not decision.allowed
    assert decision.reason == DENIED_MISSING_SEQUENCE


def test_sequential_signer_without_sequence_does_not_block_others():
    slots = _slots("PENDING", "PENDING", sequences=[1, None])
    assert can_sign("SEQUENTIAL", slots, "s1")


# ─── Parallel ─────────────────────────────────────────────────────────────────


def test_parallel_allows_everyone_in_any_order():
    slots = _slots("PENDING", "PENDING", "PENDING", sequences=[None, None, None])
    for signer_id in ("s3", "s1", "s2"):
        decision = evaluate("PARALLEL", slots, signer_id)
        assert decision.allowed
        assert decision.reason == ALLOWED_PARALLEL


# ─── Misc ─────────────────────────────────────────────────────────────────────


def test_unknown_workflow_denied():
    decision = evaluate("ROUND_ROBIN", _slots("PENDING"), "s1")
    assert not decision.allowed
    assert decision.reason == DENIED_UNKNOWN_WORKFLOW


def test_unknown_signer_raises():
    with pytest.raises(SignerNotFoundError):
        evaluate("PARALLEL", _slots("PENDING"), "nobody")


def test_next_in_turn():
    slots = _slots("SIGNED", "PENDING", "PENDING")
    assert next_in_turn("SEQUENTIAL", slots) == ["s2"]
    assert next_in_turn("PARALLEL", slots) == ["s2", "s3"]


def test_evaluate_does_not_mutate_input():
    slots = _slots("SIGNED", "PENDING")
    before = list(slots)
    evaluate("SEQUENTIAL", slots, "s2")
    assert slots == before
