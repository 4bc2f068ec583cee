from typing import List
from fastapi import APIRouter, Depends, Request, status
from splitbill.core.auth import get_current_identity
from splitbill.models.split_session import SplitSession
from splitbill.schemas.split_bill import (
    ActionResponse,
    InvitationResponse,
    OrderResponse,
    ParticipantAdd,
    ParticipantResponse,
    PaymentRequest,
    SessionResponse,
    SettlementSnapshotResponse,
    SplitBillCreate,
)
from splitbill.services.coordinator_registry import CoordinatorRegistry
from splitbill.services.settlement_coordinator import ActionResult, SettlementSnapshot
from splitbill.services.settlement_view import compute_settlement_view
from splitbill.utils.queue import pickup_time_label

router = APIRouter()


def get_registry(request: Request) -> CoordinatorRegistry:
    return request.app.state.registry


@router.post("/", response_model=SettlementSnapshotResponse, status_code=status.HTTP_201_CREATED)
async def initiate_split_bill(
    split_in: SplitBillCreate,
    identity: str = Depends(get_current_identity),
    registry: CoordinatorRegistry = Depends(get_registry)
):
    """Create a split bill session and invite participants"""
    session = await registry.split_bills().initiate(split_in, identity)
    coordinator = await registry.get(session.id)
    return _snapshot_response(coordinator.snapshot or await coordinator.refresh())


@router.get("/invitations", response_model=List[InvitationResponse])
async def list_invitations(
    identity: str = Depends(get_current_identity),
    registry: CoordinatorRegistry = Depends(get_registry)
):
    """List split bill invitations addressed to the current user"""
    return await registry.split_bills().list_invitations(identity)


@router.get("/{session_id}", response_model=SettlementSnapshotResponse)
async def get_split_bill(
    session_id: str,
    identity: str = Depends(get_current_identity),
    registry: CoordinatorRegistry = Depends(get_registry)
):
    """Current settlement state (one poll cycle)"""
    coordinator = await registry.get(session_id)
    return _snapshot_response(await coordinator.view_as(identity))


@router.post("/{session_id}/participants", response_model=SettlementSnapshotResponse)
async def add_participant(
    session_id: str,
    participant_in: ParticipantAdd,
    identity: str = Depends(get_current_identity),
    registry: CoordinatorRegistry = Depends(get_registry)
):
    """Invite one more participant before anyone has paid"""
    session = await registry.split_bills().add_participant(session_id, identity, participant_in)
    return _snapshot_response(SettlementSnapshot(
        session=session,
        view=compute_settlement_view(session.participants, session.total_cents)
    ))


@router.post("/{session_id}/accept", response_model=ActionResponse)
async def accept_invitation(
    session_id: str,
    identity: str = Depends(get_current_identity),
    registry: CoordinatorRegistry = Depends(get_registry)
):
    coordinator = await registry.get(session_id)
    return _action_response(await coordinator.accept_invitation(identity))


@router.post("/{session_id}/reject", response_model=ActionResponse)
async def reject_invitation(
    session_id: str,
    identity: str = Depends(get_current_identity),
    registry: CoordinatorRegistry = Depends(get_registry)
):
    coordinator = await registry.get(session_id)
    return _action_response(await coordinator.reject_invitation(identity))


@router.post("/{session_id}/pay", response_model=ActionResponse)
async def pay_my_share(
    session_id: str,
    payment_in: PaymentRequest,
    identity: str = Depends(get_current_identity),
    registry: CoordinatorRegistry = Depends(get_registry)
):
    coordinator = await registry.get(session_id)
    return _action_response(await coordinator.pay_my_share(
        identity, payment_in.payment_method_ref, payment_in.credentials
    ))


@router.post("/{session_id}/cover", response_model=ActionResponse)
async def cover_remaining_balance(
    session_id: str,
    payment_in: PaymentRequest,
    identity: str = Depends(get_current_identity),
    registry: CoordinatorRegistry = Depends(get_registry)
):
    """Initiator pays every outstanding share"""
    coordinator = await registry.get(session_id)
    return _action_response(await coordinator.cover_remaining_balance(
        identity, payment_in.payment_method_ref, payment_in.credentials
    ))


@router.post("/{session_id}/cancel", response_model=ActionResponse)
async def cancel_split_bill(
    session_id: str,
    identity: str = Depends(get_current_identity),
    registry: CoordinatorRegistry = Depends(get_registry)
):
    coordinator = await registry.get(session_id)
    return _action_response(await coordinator.cancel_session(identity))


def _session_response(session: SplitSession) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        initiator_id=session.initiator_id,
        cart_ref=session.cart_ref,
        split_method=session.split_method,
        status=session.status,
        total_cents=session.total_cents,
        subtotal_cents=session.subtotal_cents,
        service_fee_cents=session.service_fee_cents,
        cafeteria=session.cafeteria,
        cart_snapshot=session.cart_snapshot,
        pickup_time_preference=session.pickup_time_preference,
        pickup_time_label=pickup_time_label(session.pickup_time_preference),
        expires_at=session.expires_at,
        created_at=session.created_at,
        participants=[ParticipantResponse.model_validate(p) for p in session.participants],
    )


def _snapshot_response(snapshot: SettlementSnapshot) -> SettlementSnapshotResponse:
    return SettlementSnapshotResponse(
        session=_session_response(snapshot.session),
        view=snapshot.view,
        order=OrderResponse.model_validate(snapshot.order) if snapshot.order else None,
    )


def _action_response(result: ActionResult) -> ActionResponse:
    return ActionResponse(
        changed=result.changed,
        message=result.message,
        already_terminal=result.already_terminal,
        settlement=_snapshot_response(result.snapshot),
    )
