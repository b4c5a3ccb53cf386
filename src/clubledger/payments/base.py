"""Payment processor contract and payment status types.

The ledger needs only three things from a processor: retrieve an intent,
cancel an intent, and create one.  :class:`PaymentProcessor` is that
contract; :class:`~clubledger.payments.stripe_processor.StripeProcessor`
implements it.
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Optional


class SnapshotStatus(str, enum.Enum):
    """Lifecycle of a fee snapshot.  Only ``PENDING`` may transition."""

    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class ParticipantPaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"


# Processor-side intent statuses the ledger reacts to.
INTENT_SUCCEEDED = "succeeded"
INTENT_CANCELED = "canceled"
INTENT_REFUNDED = "refunded"

# Intent statuses that mean "the member has not paid yet".
PENDING_LIKE_STATUSES: tuple[str, ...] = (
    "pending",
    "requires_payment_method",
    "requires_action",
    "requires_confirmation",
)


@dataclass
class ProcessorIntent:
    """A payment intent as reported by the processor."""

    id: str
    status: str
    amount_cents: int = 0
    currency: str = "usd"
    client_secret: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("client_secret", None)
        return data


class PaymentProcessor(ABC):
    """Abstract external payment processor."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Short identifier, e.g. ``"stripe"``."""

    @abstractmethod
    def retrieve_payment_intent(self, intent_id: str) -> ProcessorIntent:
        """Fetch the processor's view of *intent_id*.

        Raises:
            ExternalProcessorError: ``code="resource_missing"`` if the
                processor has no such intent.
        """

    @abstractmethod
    def cancel_payment_intent(self, intent_id: str) -> ProcessorIntent:
        """Cancel *intent_id* at the processor.

        Raises:
            ExternalProcessorError: ``code="resource_missing"`` or
                ``code="payment_intent_unexpected_state"`` (already
                terminal) among others.
        """

    @abstractmethod
    def create_payment_intent(
        self,
        amount_cents: int,
        *,
        customer_email: str,
        description: str,
        metadata: dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> ProcessorIntent:
        """Create a new payment intent for *amount_cents*."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r}>"
