"""
Payment gateway boundary.

``SimulatedPaymentGateway`` stands in for a real provider: it approves a
fixed share of attempts at random. A production client implements the same
``attempt_payment`` contract (settled or declined, both with a reason) and
is injected into the coordinator in its place.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Set

from splitbill.core.config import settings
from splitbill.core.errors import StateConflictError
from splitbill.models.base import new_id

logger = logging.getLogger(__name__)


class PaymentOutcome(str, Enum):
    PAID = "paid"
    FAILED = "failed"


@dataclass(frozen=True)
class PaymentResult:
    outcome: PaymentOutcome
    reason: str = ""
    reference: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == PaymentOutcome.PAID


class PaymentGateway(ABC):

    @abstractmethod
    async def attempt_payment(
        self,
        participant_id: str,
        method_ref: str,
        credentials: str,
        amount_cents: int = 0,
    ) -> PaymentResult:
        """Charge one share. Callers must not overlap calls for one participant."""


class SimulatedPaymentGateway(PaymentGateway):
    """Mock gateway: success with probability `success_rate`."""

    def __init__(
        self,
        success_rate: float = settings.PAYMENT_SUCCESS_RATE,
        latency_seconds: float = settings.PAYMENT_LATENCY_SECONDS,
        rng: Optional[random.Random] = None,
    ):
        if not 0.0 <= success_rate <= 1.0:
            raise ValueError("success_rate must be between 0 and 1")
        self.success_rate = success_rate
        self.latency_seconds = latency_seconds
        self.rng = rng or random.Random()
        self._in_flight: Set[str] = set()

    async def attempt_payment(
        self,
        participant_id: str,
        method_ref: str,
        credentials: str,
        amount_cents: int = 0,
    ) -> PaymentResult:
        if participant_id in self._in_flight:
            raise StateConflictError("A payment for this share is already being processed")

        self._in_flight.add(participant_id)
        try:
            if self.latency_seconds > 0:
                await asyncio.sleep(self.latency_seconds)

            if not method_ref or not credentials:
                result = PaymentResult(PaymentOutcome.FAILED, "Invalid payment details")
            elif amount_cents < 0:
                result = PaymentResult(PaymentOutcome.FAILED, "Invalid amount")
            elif self.rng.random() < self.success_rate:
                result = PaymentResult(PaymentOutcome.PAID, "Approved", reference=f"SIM-{new_id()}")
            else:
                result = PaymentResult(PaymentOutcome.FAILED, "Declined by issuer")
        finally:
            self._in_flight.discard(participant_id)

        logger.info(
            "Simulated payment participant=%s method=%s amount_cents=%s outcome=%s",
            participant_id, method_ref, amount_cents, result.outcome.value
        )
        return result
