"""
Settlement coordinator - drives one split session to completion.

Synchronization model:
- every client (browser tab, API worker) runs its own coordinator against
  the shared Settlement Store; there is no push channel and no lock;
- a poll loop re-reads the session every ``poll_interval`` seconds and
  recomputes the SettlementView, so observers are at most one interval
  stale;
- mutating operations write to the store directly (conditional updates)
  and update the local snapshot optimistically; other observers see the
  change on their next tick;
- when a tick finds the session all-paid and still active, the order is
  materialized exactly once and only then is the session completed.

Transient store failures on the poll path are logged and retried on the
next tick; on direct actions they propagate to the caller.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from splitbill.core.config import settings
from splitbill.core.errors import (
    ParticipantNotFoundError,
    PaymentDeclined,
    SessionNotFoundError,
    StateConflictError,
    TransientStoreError,
)
from splitbill.models.base import utcnow
from splitbill.models.order import Order, OrderReceipt
from splitbill.models.participant import Participant
from splitbill.models.split_session import SessionStatus, SplitSession
from splitbill.repositories.settlement_repo import (
    GUARD_ALL_PAID,
    GUARD_ANY_UNPAID,
    SettlementStore,
)
from splitbill.schemas.settlement import SettlementView
from splitbill.services import participant_state
from splitbill.services.expiry_monitor import SessionExpiryMonitor
from splitbill.services.order_materializer import OrderMaterializer, materialization_key
from splitbill.services.payment_gateway import PaymentGateway
from splitbill.services.settlement_view import compute_settlement_view
from splitbill.utils.money import format_rm

logger = logging.getLogger(__name__)


@dataclass
class SettlementSnapshot:
    session: SplitSession
    view: SettlementView
    order: Optional[Order] = None
    receipt: Optional[OrderReceipt] = None


@dataclass
class ActionResult:
    """Outcome of a caller action. ``changed`` is False for benign repeats."""
    changed: bool
    message: str
    snapshot: SettlementSnapshot
    already_terminal: bool = False


Listener = Callable[[SettlementSnapshot], Awaitable[None]]


class SettlementCoordinator:

    def __init__(
        self,
        session_id: str,
        store: SettlementStore,
        gateway: PaymentGateway,
        materializer: Optional[OrderMaterializer] = None,
        expiry_monitor: Optional[SessionExpiryMonitor] = None,
        poll_interval: float = settings.POLL_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_id = session_id
        self.store = store
        self.gateway = gateway
        self.materializer = materializer or OrderMaterializer(store, clock=clock)
        self.expiry_monitor = expiry_monitor or SessionExpiryMonitor(
            store, clock=clock, retry_seconds=poll_interval
        )
        self.poll_interval = poll_interval
        self.clock = clock

        self.snapshot: Optional[SettlementSnapshot] = None
        self._listeners: List[Listener] = []
        self._task: Optional[asyncio.Task] = None
        self._payment_locks: Dict[str, asyncio.Lock] = {}

        # One-shot materialization guard, owned by this instance
        self._materializing = False
        self._order: Optional[Order] = None
        self._receipt: Optional[OrderReceipt] = None

    # ===== POLL LOOP =====

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> SettlementSnapshot:
        """Take a first reading, arm the expiry timer and start polling."""
        snapshot = await self.refresh()
        if not snapshot.session.is_terminal():
            self.expiry_monitor.start(snapshot.session)
        if not self.running:
            self._task = asyncio.create_task(self._poll_loop())
        return snapshot

    async def stop(self) -> None:
        """Tear down: stop polling and timers, clear the one-shot guard."""
        if self.running:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        await self.expiry_monitor.stop()
        self._materializing = False
        self._order = None
        self._receipt = None
        self._payment_locks.clear()

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                snapshot = await self.refresh()
            except TransientStoreError as exc:
                logger.warning("Poll of split session %s failed, retrying: %s", self.session_id, exc)
                continue
            except SessionNotFoundError:
                logger.warning("Split session %s disappeared, stopping poll loop", self.session_id)
                return
            if snapshot.session.is_terminal():
                logger.info(
                    "Split session %s reached %s, stopping poll loop",
                    self.session_id, snapshot.session.status.value
                )
                return

    async def refresh(self) -> SettlementSnapshot:
        """
        One poll cycle: re-read, recompute, then expire or materialize.

        Raises TransientStoreError only if the read itself fails;
        materialization failures are retried on the next cycle.
        """
        session = await self._load()
        view = compute_settlement_view(session.participants, session.total_cents)

        if session.status == SessionStatus.ACTIVE:
            if view.all_paid:
                session = await self._complete(session)
            else:
                expired = await self.expiry_monitor.check(session, view)
                if expired is not None:
                    session = expired
        elif session.status == SessionStatus.COMPLETED and self._order is None:
            self._order = await self.store.find_order_by_materialization_key(
                materialization_key(session.id)
            )
            if self._order is not None:
                self._receipt = await self.store.find_receipt_by_order(self._order.id)

        return await self._publish(session, view)

    async def _complete(self, session: SplitSession) -> SplitSession:
        if self._materializing:
            return session
        self._materializing = True
        try:
            if self._order is None:
                result = await self.materializer.materialize(session)
                self._order, self._receipt = result.order, result.receipt

            completed = await self.store.update_session_status(
                session.id, SessionStatus.COMPLETED,
                guard=GUARD_ALL_PAID, order_id=self._order.id
            )
            if completed is not None:
                logger.info("Split session %s completed with order %s", session.id, self._order.id)
                return completed
            # Another observer completed it first
            return await self._load()
        except TransientStoreError as exc:
            logger.warning(
                "Materialization for split session %s failed, retrying next tick: %s",
                session.id, exc
            )
            return session
        finally:
            self._materializing = False

    async def _publish(self, session: SplitSession, view: Optional[SettlementView] = None) -> SettlementSnapshot:
        if view is None:
            view = compute_settlement_view(session.participants, session.total_cents)
        self.snapshot = SettlementSnapshot(
            session=session, view=view, order=self._order, receipt=self._receipt
        )
        for listener in self._listeners:
            await listener(self.snapshot)
        return self.snapshot

    # ===== CALLER ACTIONS =====

    async def view_as(self, actor: str) -> SettlementSnapshot:
        """One poll cycle, visible only to the initiator and the participants."""
        snapshot = await self.refresh()
        session = snapshot.session
        if not session.is_initiator(actor) and session.find_participant(actor) is None:
            raise ParticipantNotFoundError("You are not a participant of this split bill")
        return snapshot

    async def accept_invitation(self, actor: str) -> ActionResult:
        return await self._respond(actor, participant_state.accept)

    async def reject_invitation(self, actor: str) -> ActionResult:
        return await self._respond(actor, participant_state.reject)

    async def pay_my_share(self, actor: str, method_ref: str, credentials: str) -> ActionResult:
        """
        Charge the actor's own share through the gateway.

        Raises PaymentDeclined after recording the failed attempt; the share
        stays payable and may be retried.
        """
        session = await self._open_session()
        participant = self._participant_for(session, actor)

        already_paid = participant_state.check_can_pay(participant)
        if already_paid is not None:
            return await self._noop(session, already_paid)

        lock = self._payment_locks.setdefault(participant.id, asyncio.Lock())
        if lock.locked():
            raise StateConflictError("A payment for this share is already being processed")

        async with lock:
            result = await self.gateway.attempt_payment(
                participant.id, method_ref, credentials,
                amount_cents=participant.amount_due_cents
            )
            transition = participant_state.record_payment(participant, result, method_ref, self.clock())
            updated = await self.store.update_participant_status(
                session.id, participant.id, transition.expected, transition.changes
            )

        if updated is None:
            logger.error(
                "Payment outcome %s for participant %s could not be recorded, session %s changed",
                result.outcome.value, participant.id, session.id
            )
            raise StateConflictError("Split bill changed while the payment was processing")

        snapshot = await self._publish(updated)
        logger.info(
            "Participant %s payment %s for %s in session %s",
            participant.id, result.outcome.value,
            format_rm(participant.amount_due_cents), session.id
        )
        if not result.succeeded:
            raise PaymentDeclined("Payment failed. Please retry.", reason=result.reason)
        return ActionResult(True, transition.note, snapshot)

    async def cover_remaining_balance(self, actor: str, method_ref: str, credentials: str) -> ActionResult:
        """Initiator pays every unpaid share, rejected invitees included."""
        session = await self._open_session()
        if not session.is_initiator(actor):
            raise StateConflictError("Only the initiator can cover the remaining balance")

        participants = await self.store.read_participants(session.id)
        view = compute_settlement_view(participants, session.total_cents)
        if view.all_paid:
            raise StateConflictError("All payments have been completed")

        unpaid = [p for p in participants if not p.is_paid()]
        payer_ref = self._initiator_payment_ref(session)

        lock = self._payment_locks.setdefault(payer_ref, asyncio.Lock())
        if lock.locked():
            raise StateConflictError("A payment for this share is already being processed")

        async with lock:
            result = await self.gateway.attempt_payment(
                payer_ref, method_ref, credentials, amount_cents=view.unpaid_cents
            )
            if not result.succeeded:
                logger.info("Initiator cover of %s declined for session %s", format_rm(view.unpaid_cents), session.id)
                raise PaymentDeclined("Payment failed. Please try again.", reason=result.reason)

            updated = await self.store.mark_participants_covered(
                session.id, [p.id for p in unpaid], self.clock()
            )

        if updated is None:
            fresh = await self._load()
            await self._publish(fresh)
            logger.error(
                "Cover payment of %s for session %s could not be recorded, shares changed meanwhile",
                format_rm(view.unpaid_cents), session.id
            )
            if fresh.status != SessionStatus.ACTIVE:
                raise StateConflictError("Split bill is no longer active")
            raise StateConflictError(
                "Outstanding shares changed while the cover payment was processing"
            )

        logger.info(
            "Initiator covered %s for %d shares in session %s",
            format_rm(view.unpaid_cents), len(unpaid), session.id
        )
        return ActionResult(True, "Remaining balance covered", await self._publish(updated))

    async def cancel_session(self, actor: str) -> ActionResult:
        """Cancel while not all paid; the guard is re-checked by the store write."""
        session = await self._load()
        if not session.is_initiator(actor):
            raise StateConflictError("Only the initiator can cancel the split bill")
        if session.status == SessionStatus.CANCELLED:
            return await self._noop(session, participant_state.Transition.noop(
                "Split bill already cancelled", already_terminal=True
            ))
        session = await self._open_session(session)

        view = compute_settlement_view(session.participants, session.total_cents)
        if view.all_paid:
            raise StateConflictError("All shares are paid; the split bill can no longer be cancelled")

        updated = await self.store.update_session_status(
            session.id, SessionStatus.CANCELLED, guard=GUARD_ANY_UNPAID
        )
        if updated is None:
            fresh = await self._load()
            if fresh.status == SessionStatus.CANCELLED:
                return await self._noop(fresh, participant_state.Transition.noop(
                    "Split bill already cancelled", already_terminal=True
                ))
            await self._publish(fresh)
            if fresh.status == SessionStatus.ACTIVE:
                raise StateConflictError("All shares are paid; the split bill can no longer be cancelled")
            raise StateConflictError(f"Split bill session is {fresh.status.value}")

        logger.info("Split session %s cancelled by %s", session.id, actor)
        return ActionResult(True, "Split bill cancelled", await self._publish(updated))

    # ===== PRIVATE HELPERS =====

    async def _respond(self, actor: str, plan) -> ActionResult:
        session = await self._open_session()
        participant = self._participant_for(session, actor)
        transition = plan(participant, self.clock())
        if transition.is_noop:
            return await self._noop(session, transition)

        updated = await self.store.update_participant_status(
            session.id, participant.id, transition.expected, transition.changes
        )
        if updated is None:
            # Stale read: re-plan once against the current row
            session = await self._open_session()
            transition = plan(self._participant_for(session, actor), self.clock())
            if transition.is_noop:
                return await self._noop(session, transition)
            raise StateConflictError("Split bill changed concurrently, please retry")

        logger.info("Participant %s in session %s: %s", participant.id, session.id, transition.note)
        return ActionResult(True, transition.note, await self._publish(updated))

    async def _noop(self, session: SplitSession, transition) -> ActionResult:
        return ActionResult(
            changed=False,
            message=transition.note,
            snapshot=await self._publish(session),
            already_terminal=transition.already_terminal,
        )

    async def _load(self) -> SplitSession:
        session = await self.store.read_session(self.session_id)
        if session is None:
            raise SessionNotFoundError("Split bill not found")
        return session

    async def _open_session(self, session: Optional[SplitSession] = None) -> SplitSession:
        """The session, if it still accepts actions; expires it when overdue."""
        if session is None:
            session = await self._load()
        if session.status != SessionStatus.ACTIVE:
            await self._publish(session)
            raise StateConflictError(
                f"This split bill session is {session.status.value} and no longer accepts changes"
            )
        expired = await self.expiry_monitor.check(session)
        if expired is not None:
            await self._publish(expired)
            raise StateConflictError("This split bill session has expired")
        return session

    @staticmethod
    def _participant_for(session: SplitSession, actor: str) -> Participant:
        participant = session.find_participant(actor)
        if participant is None:
            raise ParticipantNotFoundError("You are not a participant of this split bill")
        return participant

    @staticmethod
    def _initiator_payment_ref(session: SplitSession) -> str:
        participant = session.find_participant(session.initiator_id)
        if participant is not None:
            return participant.id
        return f"initiator:{session.id}"
