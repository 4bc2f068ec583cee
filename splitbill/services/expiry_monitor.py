import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from splitbill.core.config import settings
from splitbill.core.errors import TransientStoreError
from splitbill.models.base import utcnow
from splitbill.models.split_session import SessionStatus, SplitSession
from splitbill.repositories.settlement_repo import GUARD_ANY_UNPAID, SettlementStore
from splitbill.schemas.settlement import SettlementView
from splitbill.services.settlement_view import compute_settlement_view

logger = logging.getLogger(__name__)


class SessionExpiryMonitor:
    """
    Fails a session to ``expired`` once its deadline passes unsettled.

    The deadline (``expires_at``) is fixed at creation. The transition is a
    guarded store write, so a session that became all-paid in the meantime
    is never expired.
    """

    def __init__(
        self,
        store: SettlementStore,
        clock: Callable[[], datetime] = utcnow,
        retry_seconds: float = settings.POLL_INTERVAL_SECONDS,
    ):
        self.store = store
        self.clock = clock
        self.retry_seconds = retry_seconds
        self._timer: Optional[asyncio.Task] = None

    def is_due(self, session: SplitSession, view: SettlementView) -> bool:
        return (
            session.status == SessionStatus.ACTIVE
            and not view.all_paid
            and self.clock() >= session.expires_at
        )

    async def check(
        self, session: SplitSession, view: Optional[SettlementView] = None
    ) -> Optional[SplitSession]:
        """Expire `session` if due. Returns the expired session, else None."""
        if view is None:
            view = compute_settlement_view(session.participants, session.total_cents)
        if not self.is_due(session, view):
            return None

        expired = await self.store.update_session_status(
            session.id, SessionStatus.EXPIRED, guard=GUARD_ANY_UNPAID
        )
        if expired is not None:
            logger.info("Split session %s expired unsettled at %s", session.id, session.expires_at)
        return expired

    def start(self, session: SplitSession) -> None:
        """Arm a one-shot timer for the session's deadline."""
        if self._timer is None or self._timer.done():
            self._timer = asyncio.create_task(self._wait_and_expire(session.id, session.expires_at))

    async def stop(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
        self._timer = None

    async def _wait_and_expire(self, session_id: str, deadline: datetime) -> None:
        delay = (deadline - self.clock()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        while True:
            try:
                session = await self.store.read_session(session_id)
                if session is not None:
                    await self.check(session)
                return
            except TransientStoreError as exc:
                logger.warning("Expiry check for %s failed, retrying: %s", session_id, exc)
                await asyncio.sleep(self.retry_seconds)
