import logging
from datetime import datetime
from typing import Callable, Dict

from splitbill.core.config import settings
from splitbill.models.base import utcnow
from splitbill.repositories.settlement_repo import SettlementStore
from splitbill.services.payment_gateway import PaymentGateway
from splitbill.services.settlement_coordinator import SettlementCoordinator
from splitbill.services.split_bill_service import SplitBillService

logger = logging.getLogger(__name__)


class CoordinatorRegistry:
    """
    One coordinator per session for the lifetime of the process.

    Sharing the instance shares its one-shot materialization guard across
    concurrent requests; with ``autostart`` each coordinator also polls in
    the background so settlement progresses without a reader.
    """

    def __init__(
        self,
        store: SettlementStore,
        gateway: PaymentGateway,
        poll_interval: float = settings.POLL_INTERVAL_SECONDS,
        autostart: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.poll_interval = poll_interval
        self.autostart = autostart
        self.clock = clock
        self._coordinators: Dict[str, SettlementCoordinator] = {}

    def split_bills(self) -> SplitBillService:
        return SplitBillService(self.store, clock=self.clock)

    async def get(self, session_id: str) -> SettlementCoordinator:
        await self._prune()
        coordinator = self._coordinators.get(session_id)
        if coordinator is None:
            coordinator = SettlementCoordinator(
                session_id,
                self.store,
                self.gateway,
                poll_interval=self.poll_interval,
                clock=self.clock,
            )
            # Registered before the first await so concurrent callers share it
            self._coordinators[session_id] = coordinator
            if self.autostart:
                try:
                    await coordinator.start()
                except Exception:
                    if self._coordinators.get(session_id) is coordinator:
                        del self._coordinators[session_id]
                    await coordinator.stop()
                    raise
        return coordinator

    async def close(self) -> None:
        for coordinator in self._coordinators.values():
            await coordinator.stop()
        self._coordinators.clear()
        logger.info("Settlement coordinators stopped")

    def __len__(self) -> int:
        return len(self._coordinators)

    async def _prune(self) -> None:
        """Tear down coordinators whose sessions reached a terminal state."""
        finished = [
            session_id
            for session_id, coordinator in self._coordinators.items()
            if coordinator.snapshot is not None and coordinator.snapshot.session.is_terminal()
        ]
        for session_id in finished:
            await self._coordinators.pop(session_id).stop()
