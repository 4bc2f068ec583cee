import asyncio

import pytest

from splitbill.core.errors import SessionNotFoundError, StateConflictError
from splitbill.models.participant import PaymentStatus
from splitbill.models.split_session import SessionStatus
from splitbill.services.coordinator_registry import CoordinatorRegistry


@pytest.mark.asyncio
async def test_one_coordinator_per_session(registry, equal_session):
    first = await registry.get(equal_session.id)
    second = await registry.get(equal_session.id)

    assert first is second
    assert len(registry) == 1


@pytest.mark.asyncio
async def test_autostart_polls_and_close_stops(store, gateway, clock, equal_session):
    registry = CoordinatorRegistry(store, gateway, poll_interval=0.01, clock=clock)

    coordinator = await registry.get(equal_session.id)
    assert coordinator.running

    await registry.close()

    assert not coordinator.running
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_finished_sessions_are_pruned(registry, equal_session):
    coordinator = await registry.get(equal_session.id)
    await coordinator.cancel_session("alice@utm.my")
    assert coordinator.snapshot.session.status == SessionStatus.CANCELLED

    replacement = await registry.get(equal_session.id)

    assert replacement is not coordinator
    assert len(registry) == 1


def test_split_bill_service_shares_store(registry, store):
    assert registry.split_bills().store is store


@pytest.mark.asyncio
async def test_concurrent_lookups_share_one_coordinator(store, gateway, clock, equal_session):
    registry = CoordinatorRegistry(store, gateway, poll_interval=0.01, clock=clock)

    first, second = await asyncio.gather(registry.get(equal_session.id), registry.get(equal_session.id))

    assert first is second
    assert len(registry) == 1
    await registry.close()
    assert not first.running


@pytest.mark.asyncio
async def test_double_submitted_payment_charges_once(store, gateway, clock, equal_session):
    registry = CoordinatorRegistry(store, gateway, poll_interval=0.01, clock=clock)
    coordinator = await registry.get(equal_session.id)
    await coordinator.accept_invitation("bob@utm.my")

    async def submit():
        return await (await registry.get(equal_session.id)).pay_my_share("bob@utm.my", "card-1", "4111")

    results = await asyncio.gather(submit(), submit(), return_exceptions=True)

    assert len(gateway.calls) == 1
    assert sum(1 for r in results if isinstance(r, StateConflictError)) == 1
    assert store.sessions[equal_session.id].find_participant("bob@utm.my").payment_status == PaymentStatus.PAID
    await registry.close()


@pytest.mark.asyncio
async def test_unknown_session_not_registered(store, gateway, clock):
    registry = CoordinatorRegistry(store, gateway, poll_interval=0.01, clock=clock)

    with pytest.raises(SessionNotFoundError):
        await registry.get("missing")

    assert len(registry) == 0
