from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from splitbill.models.base import MongoModel
from splitbill.models.participant import Participant


class SessionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({
    SessionStatus.CANCELLED,
    SessionStatus.COMPLETED,
    SessionStatus.EXPIRED,
})


class SplitMethod(str, Enum):
    EQUAL = "equal"
    CUSTOM = "custom"
    ITEMS = "items"  # accepted by the schema, rejected at initiation


class CartItem(BaseModel):
    item_id: Optional[str] = None
    name: str
    unit_price_cents: int
    quantity: int = 1

    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


class CafeteriaRef(BaseModel):
    id: Optional[str] = None
    name: str
    location: str = "UTM"


class SplitSession(MongoModel):
    """
    One bill-splitting instance tied to a single cart.

    total_cents, cafeteria, cart_snapshot and pickup_time_preference are
    copied at creation and never change; they are what the order is
    materialized from.
    """
    initiator_id: str
    cart_ref: str
    split_method: SplitMethod = SplitMethod.EQUAL

    total_cents: int
    subtotal_cents: int
    service_fee_cents: int = 0

    status: SessionStatus = SessionStatus.ACTIVE

    cafeteria: CafeteriaRef
    cart_snapshot: List[CartItem] = []
    pickup_time_preference: str = "asap"

    participants: List[Participant] = []
    version: int = 1

    expires_at: datetime
    order_id: Optional[str] = None

    @classmethod
    def deadline_from(cls, created_at: datetime, timeout_minutes: int) -> datetime:
        return created_at + timedelta(minutes=timeout_minutes)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def find_participant(self, identifier: str) -> Optional[Participant]:
        for participant in self.participants:
            if participant.matches(identifier):
                return participant
        return None

    def is_initiator(self, identifier: str) -> bool:
        return self.initiator_id.strip().lower() == identifier.strip().lower()

    def settlement_started(self) -> bool:
        return any(p.is_paid() for p in self.participants)
