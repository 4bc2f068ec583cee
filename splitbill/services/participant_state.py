"""
Participant state machine - invitation and payment lifecycle of one share.

Every transition is planned here as a ``Transition``: the field values the
row must still hold at the store (``expected``) and the values to write
(``changes``). The coordinator hands both to a conditional store update, so
a plan computed from a stale read can never overwrite a newer state.

    invitation: pending -> accepted | rejected   (rejected is terminal)
    payment:    pending | failed -> paid | failed (paid is terminal,
                                                   requires accepted)
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Collection, Dict, Optional

from splitbill.core.errors import StateConflictError
from splitbill.models.participant import (
    IdentifierType,
    InvitationStatus,
    Participant,
    PaymentStatus,
)
from splitbill.services.payment_gateway import PaymentOutcome, PaymentResult


PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.FAILED: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.PAID: set(),
}


@dataclass
class Transition:
    expected: Dict[str, Collection] = field(default_factory=dict)
    changes: dict = field(default_factory=dict)
    note: str = ""
    already_terminal: bool = False

    @property
    def is_noop(self) -> bool:
        return not self.changes

    @classmethod
    def noop(cls, note: str, already_terminal: bool = False) -> "Transition":
        return cls(note=note, already_terminal=already_terminal)


def invite(
    identifier: str,
    amount_due_cents: int,
    identifier_type: IdentifierType = IdentifierType.EMAIL,
    is_initiator: bool = False,
) -> Participant:
    """New row in (pending, pending); the initiator's own row starts accepted."""
    return Participant(
        identifier=identifier.strip(),
        identifier_type=identifier_type,
        amount_due_cents=amount_due_cents,
        is_initiator=is_initiator,
        invitation_status=InvitationStatus.ACCEPTED if is_initiator else InvitationStatus.PENDING,
    )


def accept(participant: Participant, now: datetime) -> Transition:
    status = participant.invitation_status
    if status == InvitationStatus.ACCEPTED:
        return Transition.noop("Invitation already accepted")
    if status == InvitationStatus.REJECTED:
        raise StateConflictError(
            "Invitation was rejected and can no longer be accepted",
            already_terminal=True
        )
    return Transition(
        expected={"invitation_status": [InvitationStatus.PENDING]},
        changes={"invitation_status": InvitationStatus.ACCEPTED, "responded_at": now},
        note="Invitation accepted",
    )


def reject(participant: Participant, now: datetime) -> Transition:
    if participant.is_initiator:
        raise StateConflictError("The initiator cannot reject their own split bill")
    status = participant.invitation_status
    if status == InvitationStatus.REJECTED:
        return Transition.noop("Invitation already rejected", already_terminal=True)
    if status == InvitationStatus.ACCEPTED:
        raise StateConflictError("Invitation was already accepted")
    return Transition(
        expected={"invitation_status": [InvitationStatus.PENDING]},
        changes={"invitation_status": InvitationStatus.REJECTED, "responded_at": now},
        note="Invitation rejected",
    )


def check_can_pay(participant: Participant) -> Optional[Transition]:
    """
    None when the share may be charged now.

    Returns a no-op Transition when the share is already paid and raises
    when the invitation has not been accepted.
    """
    if participant.payment_status == PaymentStatus.PAID:
        return Transition.noop("Share already paid", already_terminal=True)
    if participant.invitation_status != InvitationStatus.ACCEPTED:
        raise StateConflictError("Please accept the invitation before paying")
    return None


def record_payment(
    participant: Participant,
    result: PaymentResult,
    method_ref: str,
    now: datetime,
) -> Transition:
    """Plan the write for a gateway outcome on an accepted, unpaid share."""
    check_can_pay(participant)
    new_status = PaymentStatus.PAID if result.outcome == PaymentOutcome.PAID else PaymentStatus.FAILED
    _assert_transition(participant.payment_status, new_status)
    expected = {
        "invitation_status": [InvitationStatus.ACCEPTED],
        "payment_status": [PaymentStatus.PENDING, PaymentStatus.FAILED],
    }
    if new_status == PaymentStatus.PAID:
        return Transition(
            expected=expected,
            changes={
                "payment_status": PaymentStatus.PAID,
                "paid_at": now,
                "payment_method_ref": method_ref,
            },
            note="Payment successful",
        )
    return Transition(
        expected=expected,
        changes={"payment_status": PaymentStatus.FAILED},
        note=f"Payment failed: {result.reason}",
    )


def satisfies_invariant(participant: Participant) -> bool:
    """paid implies accepted."""
    return (
        participant.payment_status != PaymentStatus.PAID
        or participant.invitation_status == InvitationStatus.ACCEPTED
    )


def _assert_transition(old: PaymentStatus, new: PaymentStatus) -> None:
    if new not in PAYMENT_TRANSITIONS.get(old, set()):
        raise StateConflictError(f"Illegal payment transition: {old.value} -> {new.value}")
