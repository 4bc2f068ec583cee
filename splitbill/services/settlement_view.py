from typing import Iterable

from splitbill.models.participant import Participant
from splitbill.schemas.settlement import SettlementView


def compute_settlement_view(participants: Iterable[Participant], total_cents: int) -> SettlementView:
    """
    Recompute the session's derived state from its participant rows.

    Pure: no caching, no I/O, independent of the order in which rows were
    paid. An empty participant list is never all-paid.
    """
    rows = list(participants)
    paid = [p for p in rows if p.is_paid()]
    unpaid = [p for p in rows if not p.is_paid()]

    total_paid_cents = sum(p.amount_due_cents for p in paid)
    unpaid_cents = sum(p.amount_due_cents for p in unpaid)

    return SettlementView(
        participant_count=len(rows),
        paid_count=len(paid),
        total_cents=total_cents,
        total_paid_cents=total_paid_cents,
        unpaid_cents=unpaid_cents,
        all_paid=bool(rows) and not unpaid,
        progress_ratio=(total_paid_cents / total_cents) if total_cents > 0 else 0.0,
    )
