from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from splitbill.models.participant import IdentifierType, InvitationStatus, PaymentStatus
from splitbill.models.split_session import CafeteriaRef, CartItem, SessionStatus, SplitMethod
from splitbill.schemas.settlement import SettlementView


class InviteeIn(BaseModel):
    identifier: str
    identifier_type: IdentifierType = IdentifierType.EMAIL
    amount_cents: Optional[int] = None  # custom split only


class SplitBillCreate(BaseModel):
    cart_ref: str = Field(..., min_length=1)
    cafeteria: CafeteriaRef
    cart_items: List[CartItem] = []
    pickup_time: str = "asap"
    split_method: SplitMethod = SplitMethod.EQUAL
    participants: List[InviteeIn] = []
    initiator_share_cents: int = 0  # custom split only
    service_fee_cents: Optional[int] = None  # defaults to settings.SERVICE_FEE_CENTS


class ParticipantAdd(BaseModel):
    identifier: str
    identifier_type: IdentifierType = IdentifierType.EMAIL


class PaymentRequest(BaseModel):
    payment_method_ref: str = Field(..., min_length=1)
    credentials: str = ""


class ParticipantResponse(BaseModel):
    id: str
    identifier: str
    identifier_type: IdentifierType
    is_initiator: bool
    amount_due_cents: int
    invitation_status: InvitationStatus
    payment_status: PaymentStatus
    paid_at: Optional[datetime] = None
    payment_method_ref: Optional[str] = None

    model_config = {"from_attributes": True}


class OrderResponse(BaseModel):
    id: str
    queue_number: str
    total_cents: int
    status: str
    payment_method: str
    created_at: datetime

    model_config = {"from_attributes": True}


class SessionResponse(BaseModel):
    id: str
    initiator_id: str
    cart_ref: str
    split_method: SplitMethod
    status: SessionStatus
    total_cents: int
    subtotal_cents: int
    service_fee_cents: int
    cafeteria: CafeteriaRef
    cart_snapshot: List[CartItem]
    pickup_time_preference: str
    pickup_time_label: str
    expires_at: datetime
    created_at: datetime
    participants: List[ParticipantResponse]


class SettlementSnapshotResponse(BaseModel):
    session: SessionResponse
    view: SettlementView
    order: Optional[OrderResponse] = None


class InvitationResponse(BaseModel):
    session_id: str
    participant_id: str
    initiator_id: str
    cafeteria_name: str
    total_cents: int
    amount_due_cents: int
    split_method: SplitMethod
    invitation_status: InvitationStatus
    payment_status: PaymentStatus
    session_status: SessionStatus
    expires_at: datetime
    created_at: datetime


class ActionResponse(BaseModel):
    changed: bool
    message: str
    already_terminal: bool = False
    settlement: SettlementSnapshotResponse
