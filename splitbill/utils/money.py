"""Money helpers. Amounts are integer cents throughout."""

from decimal import Decimal
from typing import List


def format_rm(cents: int) -> str:
    return f"RM {Decimal(cents) / 100:.2f}"


def allocate_equal(total_cents: int, shares: int) -> List[int]:
    """
    Split total_cents into `shares` parts that sum exactly to the total.

    The remainder is handed out one cent at a time to the first shares.
    """
    if shares <= 0:
        raise ValueError("shares must be positive")
    per_share = total_cents // shares
    remainder = total_cents % shares
    return [per_share + (1 if index < remainder else 0) for index in range(shares)]
