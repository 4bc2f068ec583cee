"""
Order materialization - turn a fully paid split session into one order.

Several observers (tabs, participants, API workers) can see the session
become all-paid on the same poll tick. Duplicates are prevented in two
layers:

1. the store's unique index on ``orders.materialization_key`` decides the
   cross-client race; the loser gets ``MaterializationConflict`` and adopts
   the winner's order;
2. the coordinator's one-shot guard keeps a single client from issuing a
   second insert while the first is still awaiting the store.

Receipts are upserted by order id, so an observer adopting an order whose
creator died before writing the receipt fills it in exactly once.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from splitbill.core.config import settings
from splitbill.core.errors import MaterializationConflict, TransientStoreError
from splitbill.models.base import new_id, utcnow
from splitbill.models.order import Order, OrderLine, OrderReceipt
from splitbill.models.split_session import SplitSession
from splitbill.repositories.settlement_repo import SettlementStore
from splitbill.utils.queue import generate_queue_number

logger = logging.getLogger(__name__)

KEY_PREFIX = "split-settlement:"


def materialization_key(session_id: str) -> str:
    return f"{KEY_PREFIX}{session_id}"


@dataclass
class MaterializedOrder:
    order: Order
    receipt: Optional[OrderReceipt]
    created: bool  # False when an existing order was adopted


class OrderMaterializer:

    def __init__(
        self,
        store: SettlementStore,
        clock: Callable[[], datetime] = utcnow,
        day_offset_hours: int = settings.QUEUE_DAY_UTC_OFFSET_HOURS,
    ):
        self.store = store
        self.clock = clock
        self.day_offset = timedelta(hours=day_offset_hours)

    async def materialize(self, session: SplitSession) -> MaterializedOrder:
        """
        Create (or adopt) the order for an all-paid session.

        Raises TransientStoreError when the store is unreachable; the caller
        retries on its next poll tick.
        """
        key = materialization_key(session.id)

        existing = await self.store.find_order_by_materialization_key(key)
        if existing is not None:
            return await self._adopt(session, existing)

        order = await self._build_order(session, key)
        try:
            await self.store.insert_order(order)
        except MaterializationConflict:
            logger.info("Lost materialization race for %s, adopting existing order", key)
            winner = await self.store.find_order_by_materialization_key(key)
            if winner is None:
                # Conflict reported but not yet visible to this reader
                raise TransientStoreError(f"Order for {key} not readable yet")
            return await self._adopt(session, winner)

        receipt = await self.store.insert_receipt(self._build_receipt(session, order))
        logger.info(
            "Materialized order %s queue=%s total_cents=%s for session %s",
            order.id, order.queue_number, order.total_cents, session.id
        )
        return MaterializedOrder(order=order, receipt=receipt, created=True)

    async def _adopt(self, session: SplitSession, order: Order) -> MaterializedOrder:
        receipt = await self.store.find_receipt_by_order(order.id)
        if receipt is None:
            receipt = await self.store.insert_receipt(self._build_receipt(session, order))
        logger.info("Adopted order %s for session %s", order.id, session.id)
        return MaterializedOrder(order=order, receipt=receipt, created=False)

    async def _build_order(self, session: SplitSession, key: str) -> Order:
        # Not synchronized: concurrent orders of one cafeteria may share a number
        daily_count = await self.store.count_orders_since(
            session.cafeteria.id, self._start_of_day()
        )
        now = self.clock()
        return Order(
            user_id=session.initiator_id,
            cafeteria_id=session.cafeteria.id,
            split_session_id=session.id,
            materialization_key=key,
            items=_order_lines(session),
            subtotal_cents=session.subtotal_cents,
            tax_cents=0,
            service_fee_cents=session.service_fee_cents,
            total_cents=session.total_cents,
            queue_number=generate_queue_number(session.cafeteria.name, daily_count),
            pickup_time=session.pickup_time_preference,
            paid_at=now,
            created_at=now,
            updated_at=now,
        )

    def _build_receipt(self, session: SplitSession, order: Order) -> OrderReceipt:
        initiator = session.initiator_id
        return OrderReceipt(
            id=new_id(),
            order_id=order.id,
            transaction_id=f"TXN-{order.id[:8].upper()}",
            user_id=initiator,
            cafeteria_id=session.cafeteria.id,
            cafeteria_name=session.cafeteria.name,
            cafeteria_location=session.cafeteria.location or "UTM",
            queue_number=order.queue_number,
            items=order.items,
            subtotal_cents=order.subtotal_cents,
            tax_cents=order.tax_cents,
            service_fee_cents=order.service_fee_cents,
            total_cents=order.total_cents,
            customer_name=initiator,
            customer_email=initiator if "@" in initiator else "",
        )

    def _start_of_day(self) -> datetime:
        local = self.clock().astimezone(timezone(self.day_offset))
        midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
        return midnight.astimezone(timezone.utc)


def _order_lines(session: SplitSession) -> List[OrderLine]:
    return [
        OrderLine(
            name=item.name,
            quantity=item.quantity,
            unit_price_cents=item.unit_price_cents,
            subtotal_cents=item.line_total_cents(),
        )
        for item in session.cart_snapshot
    ]
