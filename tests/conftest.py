import asyncio
from datetime import datetime, timedelta, timezone
from typing import Collection, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from splitbill.core.auth import create_access_token
from splitbill.core.errors import MaterializationConflict, StateConflictError, TransientStoreError
from splitbill.models.order import Order, OrderReceipt
from splitbill.models.participant import (
    COVERED_BY_INITIATOR,
    InvitationStatus,
    Participant,
    PaymentStatus,
)
from splitbill.models.split_session import CafeteriaRef, CartItem, SessionStatus, SplitMethod, SplitSession
from splitbill.repositories.settlement_repo import GUARD_ALL_PAID, GUARD_ANY_UNPAID, SettlementStore
from splitbill.schemas.split_bill import InviteeIn, SplitBillCreate
from splitbill.services.coordinator_registry import CoordinatorRegistry
from splitbill.services.payment_gateway import PaymentGateway, PaymentOutcome, PaymentResult
from splitbill.services.settlement_coordinator import SettlementCoordinator
from splitbill.services.split_bill_service import SplitBillService

INITIATOR = "alice@utm.my"
BOB = "bob@utm.my"
CAROL = "carol@utm.my"


class InMemorySettlementStore(SettlementStore):
    """
    Settlement Store kept in dicts.

    Each call yields to the event loop before touching state, so concurrent
    coordinators interleave the way independent clients would. The
    check-and-write inside a call never yields, like a single Mongo
    find_one_and_update.
    """

    def __init__(self):
        self.sessions: Dict[str, SplitSession] = {}
        self.orders: Dict[str, Order] = {}
        self.receipts: Dict[str, OrderReceipt] = {}
        self.failures: Dict[str, int] = {}
        self.insert_order_calls = 0

    def fail(self, operation: str, times: int = 1):
        """Make the next `times` calls of `operation` raise TransientStoreError."""
        self.failures[operation] = times

    async def _enter(self, operation: str):
        await asyncio.sleep(0)
        if self.failures.get(operation):
            self.failures[operation] -= 1
            raise TransientStoreError(f"store unavailable during {operation}")

    def _active(self, session_id: str) -> Optional[SplitSession]:
        session = self.sessions.get(session_id)
        if session is None or session.status != SessionStatus.ACTIVE:
            return None
        return session

    def _save(self, session: SplitSession, **changes) -> SplitSession:
        changes.setdefault("participants", session.participants)
        saved = session.model_copy(update={**changes, "version": session.version + 1}, deep=True)
        self.sessions[session.id] = saved
        return saved.model_copy(deep=True)

    async def create_session(self, session):
        await self._enter("create_session")
        for existing in self.sessions.values():
            if existing.cart_ref == session.cart_ref and existing.status == SessionStatus.ACTIVE:
                raise StateConflictError("An active split bill already exists for this cart")
        self.sessions[session.id] = session.model_copy(deep=True)
        return session

    async def read_session(self, session_id):
        await self._enter("read_session")
        session = self.sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def read_participants(self, session_id):
        await self._enter("read_participants")
        session = self.sessions.get(session_id)
        return [p.model_copy() for p in session.participants] if session else []

    async def list_invitations(self, identifier):
        await self._enter("list_invitations")
        found = [
            s.model_copy(deep=True) for s in self.sessions.values()
            if s.find_participant(identifier) is not None
        ]
        return sorted(found, key=lambda s: s.created_at, reverse=True)

    async def update_participant_status(
        self, session_id: str, participant_id: str,
        expected: Dict[str, Collection], changes: dict
    ):
        await self._enter("update_participant_status")
        session = self._active(session_id)
        if session is None:
            return None
        rows = []
        matched = False
        for p in session.participants:
            if p.id == participant_id:
                if any(getattr(p, field) not in allowed for field, allowed in expected.items()):
                    return None
                p = p.model_copy(update=changes)
                matched = True
            rows.append(p)
        if not matched:
            return None
        return self._save(session, participants=rows)

    async def replace_participants(self, session_id, participants, expected_version):
        await self._enter("replace_participants")
        session = self._active(session_id)
        if session is None or session.version != expected_version or session.settlement_started():
            return None
        return self._save(session, participants=list(participants))

    async def mark_participants_covered(self, session_id, participant_ids, paid_at):
        await self._enter("mark_participants_covered")
        session = self._active(session_id)
        if session is None:
            return None
        by_id = {p.id: p for p in session.participants}
        if any(pid not in by_id or by_id[pid].is_paid() for pid in participant_ids):
            return None
        rows = []
        for p in session.participants:
            if p.id in participant_ids and not p.is_paid():
                p = p.model_copy(update={
                    "payment_status": PaymentStatus.PAID,
                    "invitation_status": InvitationStatus.ACCEPTED,
                    "payment_method_ref": COVERED_BY_INITIATOR,
                    "covered_by_initiator": True,
                    "paid_at": paid_at,
                })
            rows.append(p)
        return self._save(session, participants=rows)

    async def update_session_status(self, session_id, status, guard=None, order_id=None):
        await self._enter("update_session_status")
        session = self._active(session_id)
        if session is None:
            return None
        any_unpaid = any(not p.is_paid() for p in session.participants)
        if guard == GUARD_ANY_UNPAID and not any_unpaid:
            return None
        if guard == GUARD_ALL_PAID and (any_unpaid or not session.participants):
            return None
        changes = {"status": status}
        if order_id is not None:
            changes["order_id"] = order_id
        return self._save(session, **changes)

    async def find_order_by_materialization_key(self, key):
        await self._enter("find_order_by_materialization_key")
        for order in self.orders.values():
            if order.materialization_key == key:
                return order.model_copy(deep=True)
        return None

    async def insert_order(self, order):
        await self._enter("insert_order")
        self.insert_order_calls += 1
        if any(o.materialization_key == order.materialization_key for o in self.orders.values()):
            raise MaterializationConflict(order.materialization_key)
        self.orders[order.id] = order.model_copy(deep=True)
        return order

    async def count_orders_since(self, cafeteria_id, since):
        await self._enter("count_orders_since")
        return sum(
            1 for o in self.orders.values()
            if o.created_at >= since and (not cafeteria_id or o.cafeteria_id == cafeteria_id)
        )

    async def insert_receipt(self, receipt):
        await self._enter("insert_receipt")
        self.receipts.setdefault(receipt.order_id, receipt.model_copy(deep=True))
        return receipt

    async def find_receipt_by_order(self, order_id):
        await self._enter("find_receipt_by_order")
        receipt = self.receipts.get(order_id)
        return receipt.model_copy(deep=True) if receipt else None


class ScriptedPaymentGateway(PaymentGateway):
    """Returns queued outcomes in order, then approves everything."""

    def __init__(self, outcomes: Optional[List[PaymentOutcome]] = None):
        self.outcomes = list(outcomes or [])
        self.calls = []

    def queue(self, *outcomes: PaymentOutcome):
        self.outcomes.extend(outcomes)

    async def attempt_payment(self, participant_id, method_ref, credentials, amount_cents=0):
        self.calls.append((participant_id, amount_cents))
        await asyncio.sleep(0)
        outcome = self.outcomes.pop(0) if self.outcomes else PaymentOutcome.PAID
        if outcome == PaymentOutcome.PAID:
            return PaymentResult(PaymentOutcome.PAID, "Approved", reference=f"TEST-{len(self.calls)}")
        return PaymentResult(PaymentOutcome.FAILED, "Declined by issuer")


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def build_split_request(method=SplitMethod.EQUAL, invitees=(BOB, CAROL), amounts=None, **overrides):
    """Cart of RM 15.50 plus the RM 0.50 service fee: RM 16.00 total."""
    participants = [
        InviteeIn(identifier=identifier, amount_cents=(amounts or {}).get(identifier))
        for identifier in invitees
    ]
    data = dict(
        cart_ref="cart-001",
        cafeteria=CafeteriaRef(id="caf-1", name="Arked Meranti"),
        cart_items=[
            CartItem(item_id="nl", name="Nasi Lemak", unit_price_cents=650, quantity=2),
            CartItem(item_id="tt", name="Teh Tarik", unit_price_cents=250, quantity=1),
        ],
        pickup_time="30min",
        split_method=method,
        participants=participants,
    )
    data.update(overrides)
    return SplitBillCreate(**data)


@pytest.fixture
def store():
    return InMemorySettlementStore()


@pytest.fixture
def gateway():
    return ScriptedPaymentGateway()


@pytest.fixture
def clock():
    # 12:00 in Malaysia
    return FakeClock(datetime(2026, 3, 2, 4, 0, tzinfo=timezone.utc))


@pytest.fixture
def split_service(store, clock):
    return SplitBillService(store, clock=clock)


@pytest_asyncio.fixture
async def equal_session(split_service):
    """Alice, Bob and Carol splitting RM 16.00 equally."""
    return await split_service.initiate(build_split_request(), INITIATOR)


@pytest_asyncio.fixture
async def make_coordinator(store, gateway, clock):
    created = []

    def factory(session_id: str, poll_interval: float = 0.01) -> SettlementCoordinator:
        coordinator = SettlementCoordinator(
            session_id, store, gateway, poll_interval=poll_interval, clock=clock
        )
        created.append(coordinator)
        return coordinator

    yield factory

    for coordinator in created:
        await coordinator.stop()


@pytest.fixture
def mock_db():
    """Motor database double: db[name] returns one AsyncMock-backed collection per name."""
    db = MagicMock()
    collections = {}

    def collection(name):
        if name not in collections:
            coll = MagicMock()
            coll.insert_one = AsyncMock()
            coll.find_one = AsyncMock(return_value=None)
            coll.find_one_and_update = AsyncMock(return_value=None)
            coll.update_one = AsyncMock()
            coll.count_documents = AsyncMock(return_value=0)
            coll.create_index = AsyncMock()
            collections[name] = coll
        return collections[name]

    db.__getitem__.side_effect = collection
    return db


@pytest.fixture
def registry(store, gateway, clock):
    return CoordinatorRegistry(store, gateway, autostart=False, clock=clock)


@pytest.fixture
def client(registry):
    """TestClient wired to the in-memory store; startup hooks (Mongo) are not run."""
    from splitbill.main import app

    app.state.registry = registry
    yield TestClient(app)
    del app.state.registry


@pytest.fixture
def split_request():
    return build_split_request


@pytest.fixture
def auth_headers():
    def headers(identifier: str) -> dict:
        return {"Authorization": f"Bearer {create_access_token(identifier)}"}
    return headers
