from datetime import datetime, timezone

import pytest

from splitbill.core.errors import StateConflictError
from splitbill.models.participant import InvitationStatus, PaymentStatus
from splitbill.services import participant_state
from splitbill.services.payment_gateway import PaymentOutcome, PaymentResult

NOW = datetime(2026, 3, 2, 4, 0, tzinfo=timezone.utc)

APPROVED = PaymentResult(PaymentOutcome.PAID, "Approved")
DECLINED = PaymentResult(PaymentOutcome.FAILED, "Declined by issuer")


def invited(**changes):
    participant = participant_state.invite("bob@utm.my", 533)
    return participant.model_copy(update=changes)


class TestInvitation:
    """Invitation lifecycle: pending -> accepted | rejected."""

    def test_invite_starts_pending(self):
        participant = participant_state.invite("  bob@utm.my ", 533)

        assert participant.identifier == "bob@utm.my"
        assert participant.invitation_status == InvitationStatus.PENDING
        assert participant.payment_status == PaymentStatus.PENDING
        assert participant.paid_at is None

    def test_initiator_row_starts_accepted(self):
        participant = participant_state.invite("alice@utm.my", 534, is_initiator=True)

        assert participant.is_initiator is True
        assert participant.invitation_status == InvitationStatus.ACCEPTED

    def test_accept_pending(self):
        transition = participant_state.accept(invited(), NOW)

        assert transition.expected == {"invitation_status": [InvitationStatus.PENDING]}
        assert transition.changes["invitation_status"] == InvitationStatus.ACCEPTED
        assert transition.changes["responded_at"] == NOW

    def test_accept_twice_is_noop(self):
        transition = participant_state.accept(invited(invitation_status=InvitationStatus.ACCEPTED), NOW)

        assert transition.is_noop
        assert transition.already_terminal is False

    def test_accept_after_reject_conflicts(self):
        with pytest.raises(StateConflictError) as exc_info:
            participant_state.accept(invited(invitation_status=InvitationStatus.REJECTED), NOW)

        assert exc_info.value.already_terminal is True

    def test_reject_twice_is_terminal_noop(self):
        transition = participant_state.reject(invited(invitation_status=InvitationStatus.REJECTED), NOW)

        assert transition.is_noop
        assert transition.already_terminal is True

    def test_reject_after_accept_conflicts(self):
        with pytest.raises(StateConflictError):
            participant_state.reject(invited(invitation_status=InvitationStatus.ACCEPTED), NOW)

    def test_initiator_cannot_reject(self):
        initiator = participant_state.invite("alice@utm.my", 534, is_initiator=True)

        with pytest.raises(StateConflictError):
            participant_state.reject(initiator, NOW)


class TestPayment:
    """Payment lifecycle: pending | failed -> paid | failed."""

    def test_pay_requires_acceptance(self):
        with pytest.raises(StateConflictError):
            participant_state.check_can_pay(invited())

        with pytest.raises(StateConflictError):
            participant_state.record_payment(invited(), APPROVED, "card-1", NOW)

    def test_accepted_unpaid_share_may_be_charged(self):
        assert participant_state.check_can_pay(invited(invitation_status=InvitationStatus.ACCEPTED)) is None
        assert participant_state.check_can_pay(invited(
            invitation_status=InvitationStatus.ACCEPTED,
            payment_status=PaymentStatus.FAILED,
        )) is None

    def test_successful_payment_sets_paid_fields(self):
        participant = invited(invitation_status=InvitationStatus.ACCEPTED)

        transition = participant_state.record_payment(participant, APPROVED, "card-1", NOW)

        assert transition.changes == {
            "payment_status": PaymentStatus.PAID,
            "paid_at": NOW,
            "payment_method_ref": "card-1",
        }
        assert transition.expected["invitation_status"] == [InvitationStatus.ACCEPTED]
        assert PaymentStatus.PAID not in transition.expected["payment_status"]

    def test_failed_payment_leaves_paid_fields_unset(self):
        participant = invited(invitation_status=InvitationStatus.ACCEPTED)

        transition = participant_state.record_payment(participant, DECLINED, "card-1", NOW)

        assert transition.changes == {"payment_status": PaymentStatus.FAILED}
        assert "Declined by issuer" in transition.note

    def test_retry_after_failure_allowed(self):
        participant = invited(
            invitation_status=InvitationStatus.ACCEPTED,
            payment_status=PaymentStatus.FAILED,
        )

        transition = participant_state.record_payment(participant, APPROVED, "card-2", NOW)

        assert transition.changes["payment_status"] == PaymentStatus.PAID

    def test_paying_twice_is_terminal_noop(self):
        participant = invited(
            invitation_status=InvitationStatus.ACCEPTED,
            payment_status=PaymentStatus.PAID,
        )

        check = participant_state.check_can_pay(participant)

        assert check.is_noop
        assert check.already_terminal is True

    def test_paid_implies_accepted(self):
        assert participant_state.satisfies_invariant(invited())
        assert participant_state.satisfies_invariant(invited(
            invitation_status=InvitationStatus.ACCEPTED,
            payment_status=PaymentStatus.PAID,
        ))
        assert not participant_state.satisfies_invariant(invited(payment_status=PaymentStatus.PAID))
