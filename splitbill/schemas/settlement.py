from pydantic import BaseModel


class SettlementView(BaseModel):
    """Derived per poll cycle from the participant rows; never persisted."""
    participant_count: int
    paid_count: int
    total_cents: int
    total_paid_cents: int
    unpaid_cents: int
    all_paid: bool
    progress_ratio: float
