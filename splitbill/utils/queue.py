"""Queue number and pickup-time helpers for materialized orders."""

PICKUP_TIME_LABELS = {
    "asap": "ASAP",
    "30min": "In 30 minutes",
    "1hour": "In 1 hour",
    "1.5hour": "In 1.5 hours",
    "2hour": "In 2 hours",
}


def pickup_time_label(value: str | None) -> str:
    if not value:
        return "ASAP"
    return PICKUP_TIME_LABELS.get(value, value)


def generate_queue_number(cafeteria_name: str | None, daily_order_count: int) -> str:
    """
    Format a human-facing queue number, e.g. A01, B12.

    The prefix is the first letter of the cafeteria name ('A' if missing);
    the number is the day's order count plus one, zero padded to two digits.
    Counting is not synchronized, so concurrent orders can share a number.
    """
    name = (cafeteria_name or "").strip()
    prefix = name[0].upper() if name else "A"
    return f"{prefix}{daily_order_count + 1:02d}"
