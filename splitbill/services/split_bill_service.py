import logging
from datetime import datetime
from typing import Callable, Iterable, List

from pydantic import EmailStr, TypeAdapter, ValidationError

from splitbill.core.config import settings
from splitbill.core.errors import (
    SessionNotFoundError,
    SplitValidationError,
    StateConflictError,
)
from splitbill.models.base import utcnow
from splitbill.models.participant import IdentifierType, Participant
from splitbill.models.split_session import SessionStatus, SplitMethod, SplitSession
from splitbill.repositories.settlement_repo import SettlementStore
from splitbill.schemas.split_bill import InvitationResponse, ParticipantAdd, SplitBillCreate
from splitbill.services import participant_state
from splitbill.utils.money import allocate_equal, format_rm

logger = logging.getLogger(__name__)

_email_adapter = TypeAdapter(EmailStr)


class SplitBillService:
    """Initiation and participant-set management for split sessions."""

    def __init__(
        self,
        store: SettlementStore,
        clock: Callable[[], datetime] = utcnow,
        timeout_minutes: int = settings.SESSION_TIMEOUT_MINUTES,
        epsilon_cents: int = settings.AMOUNT_EPSILON_CENTS,
    ):
        self.store = store
        self.clock = clock
        self.timeout_minutes = timeout_minutes
        self.epsilon_cents = epsilon_cents

    async def initiate(self, split_in: SplitBillCreate, initiator_id: str) -> SplitSession:
        """
        Validate a split request and create the session with its participants.

        Raises SplitValidationError before anything is written; the store
        raises StateConflictError if the cart already has an active session.
        """
        initiator_id = (initiator_id or "").strip()
        if not initiator_id:
            raise SplitValidationError("Initiator identity is required")

        if split_in.split_method == SplitMethod.ITEMS:
            raise SplitValidationError("Splitting by items is not supported")

        if not split_in.participants:
            raise SplitValidationError("Please add at least one participant to continue")

        identifiers = [invitee.identifier for invitee in split_in.participants]
        self._validate_identifiers(
            identifiers,
            [invitee.identifier_type for invitee in split_in.participants],
            existing=[initiator_id],
            initiator_id=initiator_id,
        )

        for item in split_in.cart_items:
            if item.quantity <= 0:
                raise SplitValidationError(f"Item '{item.name}' has non-positive quantity")
            if item.unit_price_cents < 0:
                raise SplitValidationError(f"Item '{item.name}' has negative price")

        subtotal_cents = sum(item.line_total_cents() for item in split_in.cart_items)
        service_fee_cents = (
            settings.SERVICE_FEE_CENTS
            if split_in.service_fee_cents is None
            else split_in.service_fee_cents
        )
        if service_fee_cents < 0:
            raise SplitValidationError("Service fee cannot be negative")
        total_cents = subtotal_cents + service_fee_cents
        if total_cents <= 0:
            raise SplitValidationError("Order total must be positive to split")

        if split_in.split_method == SplitMethod.EQUAL:
            participants = self._equal_rows(split_in, initiator_id, total_cents)
        else:
            participants = self._custom_rows(split_in, initiator_id, total_cents)

        now = self.clock()
        session = SplitSession(
            initiator_id=initiator_id,
            cart_ref=split_in.cart_ref,
            split_method=split_in.split_method,
            total_cents=total_cents,
            subtotal_cents=subtotal_cents,
            service_fee_cents=service_fee_cents,
            cafeteria=split_in.cafeteria,
            cart_snapshot=split_in.cart_items,
            pickup_time_preference=split_in.pickup_time or "asap",
            participants=participants,
            expires_at=SplitSession.deadline_from(now, self.timeout_minutes),
            created_at=now,
            updated_at=now,
        )
        await self.store.create_session(session)
        logger.info(
            "Split session %s created by %s: %s %s across %d rows",
            session.id, initiator_id, split_in.split_method.value,
            format_rm(total_cents), len(participants)
        )
        return session

    async def add_participant(
        self, session_id: str, actor: str, participant_in: ParticipantAdd
    ) -> SplitSession:
        """Append an invitee to an equal split before anyone has paid."""
        session = await self.store.read_session(session_id)
        if session is None:
            raise SessionNotFoundError("Split bill not found")
        if session.status != SessionStatus.ACTIVE:
            raise StateConflictError(f"Split bill session is {session.status.value}")
        if not session.is_initiator(actor):
            raise StateConflictError("Only the initiator can add participants")
        if session.split_method != SplitMethod.EQUAL:
            raise SplitValidationError("Custom split shares are fixed at initiation")
        if session.settlement_started():
            raise StateConflictError("Participants cannot be added after payments have started")

        self._validate_identifiers(
            [participant_in.identifier],
            [participant_in.identifier_type],
            existing=[p.identifier for p in session.participants] + [session.initiator_id],
            initiator_id=session.initiator_id,
        )

        rows = list(session.participants) + [
            participant_state.invite(
                participant_in.identifier, 0, participant_in.identifier_type
            )
        ]
        shares = allocate_equal(session.total_cents, len(rows))
        rebalanced = [
            row.model_copy(update={"amount_due_cents": share})
            for row, share in zip(rows, shares)
        ]

        updated = await self.store.replace_participants(session_id, rebalanced, session.version)
        if updated is None:
            raise StateConflictError("Split bill changed while adding the participant, please retry")
        logger.info("Participant %s added to split session %s", participant_in.identifier, session_id)
        return updated

    async def list_invitations(self, identifier: str) -> List[InvitationResponse]:
        """Invitations addressed to `identifier`, excluding sessions it initiated."""
        invitations = []
        for session in await self.store.list_invitations(identifier):
            participant = session.find_participant(identifier)
            if participant is None or participant.is_initiator:
                continue
            invitations.append(InvitationResponse(
                session_id=session.id,
                participant_id=participant.id,
                initiator_id=session.initiator_id,
                cafeteria_name=session.cafeteria.name,
                total_cents=session.total_cents,
                amount_due_cents=participant.amount_due_cents,
                split_method=session.split_method,
                invitation_status=participant.invitation_status,
                payment_status=participant.payment_status,
                session_status=session.status,
                expires_at=session.expires_at,
                created_at=session.created_at,
            ))
        return invitations

    # ===== PRIVATE HELPERS =====

    def _equal_rows(
        self, split_in: SplitBillCreate, initiator_id: str, total_cents: int
    ) -> List[Participant]:
        if any(invitee.amount_cents is not None for invitee in split_in.participants):
            raise SplitValidationError("Per-participant amounts are only allowed for custom split")

        # +1 for the initiator, whose row takes the first share
        shares = allocate_equal(total_cents, len(split_in.participants) + 1)
        rows = [participant_state.invite(initiator_id, shares[0], _identifier_type_of(initiator_id), is_initiator=True)]
        for invitee, share in zip(split_in.participants, shares[1:]):
            rows.append(participant_state.invite(invitee.identifier, share, invitee.identifier_type))
        return rows

    def _custom_rows(
        self, split_in: SplitBillCreate, initiator_id: str, total_cents: int
    ) -> List[Participant]:
        for invitee in split_in.participants:
            if invitee.amount_cents is None:
                raise SplitValidationError(f"Missing amount for {invitee.identifier}")
            if invitee.amount_cents <= 0:
                raise SplitValidationError(f"Amount for {invitee.identifier} must be positive")
        if split_in.initiator_share_cents < 0:
            raise SplitValidationError("Initiator share cannot be negative")

        assigned = sum(invitee.amount_cents for invitee in split_in.participants)
        assigned += split_in.initiator_share_cents
        if abs(assigned - total_cents) > self.epsilon_cents:
            raise SplitValidationError(
                f"Custom amounts ({format_rm(assigned)}) must sum up to the total amount ({format_rm(total_cents)})"
            )

        rows = []
        if split_in.initiator_share_cents > 0:
            rows.append(participant_state.invite(
                initiator_id, split_in.initiator_share_cents,
                _identifier_type_of(initiator_id), is_initiator=True
            ))
        for invitee in split_in.participants:
            rows.append(participant_state.invite(
                invitee.identifier, invitee.amount_cents, invitee.identifier_type
            ))
        return rows

    def _validate_identifiers(
        self,
        identifiers: Iterable[str],
        identifier_types: Iterable[IdentifierType],
        existing: Iterable[str],
        initiator_id: str,
    ) -> None:
        seen = {value.strip().lower() for value in existing}
        initiator = initiator_id.strip().lower()
        for identifier, identifier_type in zip(identifiers, identifier_types):
            value = (identifier or "").strip()
            if not value:
                raise SplitValidationError("Please enter a valid identifier")
            if value.lower() == initiator:
                raise SplitValidationError("You cannot invite yourself to your own split bill")
            if value.lower() in seen:
                raise SplitValidationError(f"{value} has already been added")
            if identifier_type == IdentifierType.EMAIL:
                try:
                    _email_adapter.validate_python(value)
                except ValidationError as exc:
                    raise SplitValidationError(f"{value} is not a valid email address") from exc
            seen.add(value.lower())


def _identifier_type_of(identifier: str) -> IdentifierType:
    return IdentifierType.EMAIL if "@" in identifier else IdentifierType.USERNAME
