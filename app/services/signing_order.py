"""
StudioSign - Signing-Order Gate
Decides whether a signer may sign right now. Pure: no I/O, no mutation, so it
serves both "can I act?" UI queries and the final check before a capture.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from app.core.exceptions import SignerNotFoundError

# Gate reasons
ALLOWED_PARALLEL = "PARALLEL"
ALLOWED_IN_TURN = "IN_TURN"
DENIED_MISSING_SEQUENCE = "MISSING_SEQUENCE"
DENIED_PREDECESSORS_PENDING = "PREDECESSORS_PENDING"
DENIED_UNKNOWN_WORKFLOW = "UNKNOWN_WORKFLOW"


@dataclass(frozen=True)
class SignerSlot:
    """What the gate needs to know about one signer of an envelope."""

    signer_id: str
    sequence_number: Optional[int]
    signature_status: Optional[str]  # None when the signature row is missing


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: str
    blocking_signer_ids: List[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.allowed


def evaluate(workflow: str, slots: Sequence[SignerSlot], signer_id: str) -> GateDecision:
    """
    PARALLEL: always allowed.
    SEQUENTIAL: allowed only when every signer with a strictly smaller
    sequence number has a SIGNED signature. A signer without a sequence
    number is a configuration error and is always denied.
    """
    target = _find(slots, signer_id)

    if workflow == "PARALLEL":
        return GateDecision(True, ALLOWED_PARALLEL)

    if workflow != "SEQUENTIAL":
        return GateDecision(False, DENIED_UNKNOWN_WORKFLOW)

    if target.sequence_number is None:
        return GateDecision(False, DENIED_MISSING_SEQUENCE)

    blocking = [
        s.signer_id
        for s in _predecessors(slots, target.sequence_number)
        if s.signature_status != "SIGNED"
    ]
    if blocking:
        return GateDecision(False, DENIED_PREDECESSORS_PENDING, blocking)
    return GateDecision(True, ALLOWED_IN_TURN)


def can_sign(workflow: str, slots: Sequence[SignerSlot], signer_id: str) -> bool:
    return evaluate(workflow, slots, signer_id).allowed


def next_in_turn(workflow: str, slots: Sequence[SignerSlot]) -> List[str]:
    """Signers who are allowed to sign now and have not signed or declined."""
    return [
        s.signer_id
        for s in slots
        if s.signature_status == "PENDING" and can_sign(workflow, slots, s.signer_id)
    ]


def _find(slots: Iterable[SignerSlot], signer_id: str) -> SignerSlot:
    for slot in slots:
        if slot.signer_id == signer_id:
            return slot
    raise SignerNotFoundError(signer_id)


def _predecessors(slots: Iterable[SignerSlot], sequence_number: int) -> List[SignerSlot]:
    return [
        s
        for s in slots
        if s.sequence_number is not None and s.sequence_number < sequence_number
    ]
