"""
Settlement Store - durable record of split sessions, orders and receipts.

Participants are embedded in their session document, so every conditional
write below is a single-document ``find_one_and_update`` whose filter
encodes the precondition. Mongo applies it atomically, which is what lets
cancel/expire re-verify "not all paid" at the moment of the write without
multi-row transactions.

Error mapping:
- DuplicateKeyError on the active-cart index -> StateConflictError
- DuplicateKeyError on orders.materialization_key -> MaterializationConflict
- any other PyMongoError -> TransientStoreError
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Collection, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from splitbill.core.errors import (
    MaterializationConflict,
    StateConflictError,
    TransientStoreError,
)
from splitbill.models.base import utcnow
from splitbill.models.order import Order, OrderReceipt
from splitbill.models.participant import (
    COVERED_BY_INITIATOR,
    InvitationStatus,
    Participant,
    PaymentStatus,
)
from splitbill.models.split_session import SessionStatus, SplitSession


# Session guards for update_session_status
GUARD_ANY_UNPAID = "any_unpaid"
GUARD_ALL_PAID = "all_paid"


class SettlementStore(ABC):
    """Operations the settlement core consumes from the shared store."""

    @abstractmethod
    async def create_session(self, session: SplitSession) -> SplitSession: ...

    @abstractmethod
    async def read_session(self, session_id: str) -> Optional[SplitSession]: ...

    @abstractmethod
    async def read_participants(self, session_id: str) -> List[Participant]: ...

    @abstractmethod
    async def list_invitations(self, identifier: str) -> List[SplitSession]: ...

    @abstractmethod
    async def update_participant_status(
        self,
        session_id: str,
        participant_id: str,
        expected: Dict[str, Collection[str]],
        changes: dict,
    ) -> Optional[SplitSession]:
        """
        Apply `changes` to one participant iff the session is active and the
        participant's fields currently hold one of the `expected` values.
        Returns the updated session, or None when the precondition failed.
        """

    @abstractmethod
    async def replace_participants(
        self, session_id: str, participants: List[Participant], expected_version: int
    ) -> Optional[SplitSession]:
        """Swap the participant list while the session is active, unpaid and unchanged."""

    @abstractmethod
    async def mark_participants_covered(
        self, session_id: str, participant_ids: Collection[str], paid_at: datetime
    ) -> Optional[SplitSession]: ...

    @abstractmethod
    async def update_session_status(
        self,
        session_id: str,
        status: SessionStatus,
        guard: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> Optional[SplitSession]:
        """Move an active session to `status`; None if it was not active or the guard failed."""

    @abstractmethod
    async def find_order_by_materialization_key(self, key: str) -> Optional[Order]: ...

    @abstractmethod
    async def insert_order(self, order: Order) -> Order: ...

    @abstractmethod
    async def count_orders_since(self, cafeteria_id: Optional[str], since: datetime) -> int: ...

    @abstractmethod
    async def insert_receipt(self, receipt: OrderReceipt) -> OrderReceipt: ...

    @abstractmethod
    async def find_receipt_by_order(self, order_id: str) -> Optional[OrderReceipt]: ...


class SettlementRepository(SettlementStore):
    """MongoDB implementation of the Settlement Store."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.sessions = db["split_sessions"]
        self.orders = db["orders"]
        self.receipts = db["order_receipts"]

    @contextmanager
    def _store_call(self, operation: str):
        try:
            yield
        except DuplicateKeyError:
            raise
        except PyMongoError as exc:
            raise TransientStoreError(f"Settlement store unavailable during {operation}: {exc}") from exc

    # ===== SESSIONS =====

    async def create_session(self, session: SplitSession) -> SplitSession:
        """Insert a session with its participants in one document."""
        with self._store_call("create_session"):
            try:
                await self.sessions.insert_one(session.to_document())
            except DuplicateKeyError as exc:
                raise StateConflictError(
                    "An active split bill already exists for this cart"
                ) from exc
        return session

    async def read_session(self, session_id: str) -> Optional[SplitSession]:
        with self._store_call("read_session"):
            doc = await self.sessions.find_one({"_id": session_id})
        if doc:
            return SplitSession(**doc)
        return None

    async def read_participants(self, session_id: str) -> List[Participant]:
        with self._store_call("read_participants"):
            doc = await self.sessions.find_one(
                {"_id": session_id},
                {"participants": 1}
            )
        if not doc:
            return []
        return [Participant(**p) for p in doc.get("participants", [])]

    async def list_invitations(self, identifier: str) -> List[SplitSession]:
        """Sessions where `identifier` holds a participant row, newest first."""
        with self._store_call("list_invitations"):
            cursor = self.sessions.find({
                "participants.identifier_lower": identifier.strip().lower()
            }).sort("created_at", -1)
            docs = await cursor.to_list(None)
        return [SplitSession(**doc) for doc in docs]

    # ===== PARTICIPANTS =====

    async def update_participant_status(
        self,
        session_id: str,
        participant_id: str,
        expected: Dict[str, Collection[str]],
        changes: dict,
    ) -> Optional[SplitSession]:
        elem_match: dict = {"id": participant_id}
        for field, allowed in expected.items():
            elem_match[field] = {"$in": [_plain(value) for value in allowed]}

        update = {f"participants.$.{field}": _plain(value) for field, value in changes.items()}
        update["updated_at"] = utcnow()

        with self._store_call("update_participant_status"):
            doc = await self.sessions.find_one_and_update(
                {
                    "_id": session_id,
                    "status": SessionStatus.ACTIVE.value,
                    "participants": {"$elemMatch": elem_match},
                },
                {"$set": update, "$inc": {"version": 1}},
                return_document=ReturnDocument.AFTER
            )
        if doc:
            return SplitSession(**doc)
        return None

    async def replace_participants(
        self, session_id: str, participants: List[Participant], expected_version: int
    ) -> Optional[SplitSession]:
        with self._store_call("replace_participants"):
            doc = await self.sessions.find_one_and_update(
                {
                    "_id": session_id,
                    "status": SessionStatus.ACTIVE.value,
                    "version": expected_version,
                    # no element is paid
                    "participants.payment_status": {"$ne": PaymentStatus.PAID.value},
                },
                {
                    "$set": {
                        "participants": [p.to_document() for p in participants],
                        "updated_at": utcnow(),
                    },
                    "$inc": {"version": 1},
                },
                return_document=ReturnDocument.AFTER
            )
        if doc:
            return SplitSession(**doc)
        return None

    async def mark_participants_covered(
        self, session_id: str, participant_ids: Collection[str], paid_at: datetime
    ) -> Optional[SplitSession]:
        """
        Flip the listed participants to paid by the initiator.

        Applies only if every listed participant is still unpaid, so the
        rows match the amount that was charged; otherwise returns None.
        """
        still_unpaid = [
            {"$elemMatch": {"id": participant_id, "payment_status": {"$ne": PaymentStatus.PAID.value}}}
            for participant_id in participant_ids
        ]
        with self._store_call("mark_participants_covered"):
            doc = await self.sessions.find_one_and_update(
                {
                    "_id": session_id,
                    "status": SessionStatus.ACTIVE.value,
                    "participants": {"$all": still_unpaid},
                },
                {
                    "$set": {
                        "participants.$[p].payment_status": PaymentStatus.PAID.value,
                        "participants.$[p].invitation_status": InvitationStatus.ACCEPTED.value,
                        "participants.$[p].payment_method_ref": COVERED_BY_INITIATOR,
                        "participants.$[p].covered_by_initiator": True,
                        "participants.$[p].paid_at": paid_at,
                        "updated_at": utcnow(),
                    },
                    "$inc": {"version": 1},
                },
                array_filters=[{
                    "p.id": {"$in": list(participant_ids)},
                    "p.payment_status": {"$ne": PaymentStatus.PAID.value},
                }],
                return_document=ReturnDocument.AFTER
            )
        if doc:
            return SplitSession(**doc)
        return None

    async def update_session_status(
        self,
        session_id: str,
        status: SessionStatus,
        guard: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> Optional[SplitSession]:
        query: dict = {"_id": session_id, "status": SessionStatus.ACTIVE.value}
        unpaid_element = {"$elemMatch": {"payment_status": {"$ne": PaymentStatus.PAID.value}}}
        if guard == GUARD_ANY_UNPAID:
            query["participants"] = unpaid_element
        elif guard == GUARD_ALL_PAID:
            query["participants"] = {"$not": unpaid_element, "$ne": []}

        update: dict = {"status": status.value, "updated_at": utcnow()}
        if order_id is not None:
            update["order_id"] = order_id

        with self._store_call("update_session_status"):
            doc = await self.sessions.find_one_and_update(
                query,
                {"$set": update, "$inc": {"version": 1}},
                return_document=ReturnDocument.AFTER
            )
        if doc:
            return SplitSession(**doc)
        return None

    # ===== ORDERS =====

    async def find_order_by_materialization_key(self, key: str) -> Optional[Order]:
        with self._store_call("find_order_by_materialization_key"):
            doc = await self.orders.find_one({"materialization_key": key})
        if doc:
            return Order(**doc)
        return None

    async def insert_order(self, order: Order) -> Order:
        with self._store_call("insert_order"):
            try:
                await self.orders.insert_one(order.to_document())
            except DuplicateKeyError as exc:
                raise MaterializationConflict(order.materialization_key) from exc
        return order

    async def count_orders_since(self, cafeteria_id: Optional[str], since: datetime) -> int:
        query: dict = {"created_at": {"$gte": since}}
        if cafeteria_id:
            query["cafeteria_id"] = cafeteria_id
        with self._store_call("count_orders_since"):
            return await self.orders.count_documents(query)

    async def insert_receipt(self, receipt: OrderReceipt) -> OrderReceipt:
        """Upsert keyed on order_id, so a retried write keeps the first snapshot."""
        with self._store_call("insert_receipt"):
            await self.receipts.update_one(
                {"order_id": receipt.order_id},
                {"$setOnInsert": receipt.to_document()},
                upsert=True
            )
        return receipt

    async def find_receipt_by_order(self, order_id: str) -> Optional[OrderReceipt]:
        with self._store_call("find_receipt_by_order"):
            doc = await self.receipts.find_one({"order_id": order_id})
        if doc:
            return OrderReceipt(**doc)
        return None


def _plain(value):
    """Unwrap enums for query documents."""
    return getattr(value, "value", value)
