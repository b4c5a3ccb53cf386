"""Stripe implementation of :class:`~clubledger.payments.base.PaymentProcessor`.

Uses `Stripe's Payment Intents API <https://stripe.com/docs/api/payment_intents>`_.
Stripe's ``InvalidRequestError`` codes are carried through on
:class:`~clubledger.errors.ExternalProcessorError` so callers can tell a
missing intent (``resource_missing``) from one that is already terminal
(``payment_intent_unexpected_state``).

Environment variables
---------------------
``CLUBLEDGER_STRIPE_SECRET_KEY``
    Stripe secret key (``sk_live_...`` or ``sk_test_...``).
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from clubledger.errors import ExternalProcessorError
from clubledger.payments.base import PaymentProcessor, ProcessorIntent

logger = logging.getLogger(__name__)


class StripeProcessor(PaymentProcessor):
    """Payment processor backed by the Stripe API.

    Args:
        secret_key: Stripe secret key.  Falls back to
            ``CLUBLEDGER_STRIPE_SECRET_KEY`` if not provided.
        max_network_retries: Passed to the SDK for idempotent retries.

    Raises:
        ExternalProcessorError: If no secret key is available.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        *,
        max_network_retries: int = 2,
    ) -> None:
        self._secret_key = secret_key or os.environ.get("CLUBLEDGER_STRIPE_SECRET_KEY", "")
        if not self._secret_key:
            raise ExternalProcessorError(
                "Stripe secret key required. "
                "Set CLUBLEDGER_STRIPE_SECRET_KEY or pass secret_key.",
                code="MISSING_KEY",
            )
        self._max_network_retries = max_network_retries

    @property
    def name(self) -> str:
        return "stripe"

    def __repr__(self) -> str:
        return f"<StripeProcessor key=...{self._secret_key[-4:]}>"

    # -- Lazy import helper ----------------------------------------------------

    def _import_stripe(self) -> Any:
        """Import and configure the ``stripe`` SDK.

        Raises:
            ExternalProcessorError: If the ``stripe`` package is not installed.
        """
        try:
            import stripe  # type: ignore[import-untyped]
        except ImportError as exc:
            raise ExternalProcessorError(
                "stripe package not installed. Install it with: pip install stripe",
                code="MISSING_DEPENDENCY",
            ) from exc

        stripe.api_key = self._secret_key
        stripe.max_network_retries = self._max_network_retries
        return stripe

    @staticmethod
    def _wrap(exc: Exception, action: str, intent_id: str) -> ExternalProcessorError:
        code = getattr(exc, "code", None) or "STRIPE_ERROR"
        return ExternalProcessorError(f"Failed to {action} {intent_id}: {exc}", code=code)

    @staticmethod
    def _to_intent(intent: Any) -> ProcessorIntent:
        metadata = getattr(intent, "metadata", None) or {}
        return ProcessorIntent(
            id=intent.id,
            status=intent.status,
            amount_cents=int(getattr(intent, "amount", 0) or 0),
            currency=getattr(intent, "currency", "usd") or "usd",
            client_secret=getattr(intent, "client_secret", None),
            metadata=dict(metadata),
        )

    # -- PaymentProcessor methods ----------------------------------------------

    def retrieve_payment_intent(self, intent_id: str) -> ProcessorIntent:
        stripe = self._import_stripe()
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id)
        except stripe.error.StripeError as exc:
            raise self._wrap(exc, "retrieve payment intent", intent_id) from exc
        return self._to_intent(intent)

    def cancel_payment_intent(self, intent_id: str) -> ProcessorIntent:
        stripe = self._import_stripe()
        try:
            intent = stripe.PaymentIntent.cancel(intent_id)
        except stripe.error.StripeError as exc:
            raise self._wrap(exc, "cancel payment intent", intent_id) from exc
        logger.info("Cancelled PaymentIntent %s at Stripe", intent_id)
        return self._to_intent(intent)

    def create_payment_intent(
        self,
        amount_cents: int,
        *,
        customer_email: str,
        description: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> ProcessorIntent:
        stripe = self._import_stripe()
        kwargs: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": "usd",
            "receipt_email": customer_email,
            "description": description,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if idempotency_key:
            kwargs["idempotency_key"] = idempotency_key
        try:
            intent = stripe.PaymentIntent.create(**kwargs)
        except stripe.error.StripeError as exc:
            raise ExternalProcessorError(
                f"Failed to create payment intent for {customer_email}: {exc}",
                code=getattr(exc, "code", None) or "STRIPE_CREATE_ERROR",
            ) from exc
        logger.info(
            "Created PaymentIntent %s for %s (%d cents)", intent.id, customer_email, amount_cents
        )
        return self._to_intent(intent)
