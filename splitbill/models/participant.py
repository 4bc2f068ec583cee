"""
Participant model - one invited share of a split session.

Invariants:
- payment_status == paid implies invitation_status == accepted
- paid_at / payment_method_ref are set only on a successful payment
- rows are never deleted, only transitioned
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict, computed_field

from splitbill.models.base import new_id, plain_document


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class IdentifierType(str, Enum):
    USERNAME = "username"
    STUDENT_ID = "studentid"
    EMAIL = "email"


COVERED_BY_INITIATOR = "covered by initiator"


class Participant(BaseModel):
    """Embedded in SplitSession.participants (no separate collection)."""
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: str = Field(default_factory=new_id)
    identifier: str  # username, student id or email; may not resolve to an account
    identifier_type: IdentifierType = IdentifierType.EMAIL
    is_initiator: bool = False

    amount_due_cents: int

    invitation_status: InvitationStatus = InvitationStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING

    paid_at: Optional[datetime] = None
    payment_method_ref: Optional[str] = None
    covered_by_initiator: bool = False
    responded_at: Optional[datetime] = None

    @computed_field
    @property
    def identifier_lower(self) -> str:
        """Stored alongside the row so handle lookups are case-insensitive."""
        return self.identifier.strip().lower()

    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    def matches(self, identifier: str) -> bool:
        return self.identifier_lower == identifier.strip().lower()

    def to_document(self) -> dict:
        return plain_document(self.model_dump(mode="python"))
