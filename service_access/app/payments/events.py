"""
Normalization of payment provider webhook payloads.

Each provider posts a different JSON shape; these functions reduce them to a
``PaymentEvent``. Payload signatures are not checked here.
"""

from enum import Enum
from typing import Dict, Any, Optional

from pydantic import BaseModel, Field

from shared.errors import ValidationError
from ..records.models import ExamCategory, PaymentProvider


class PaymentStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


class PaymentEvent(BaseModel):
    """Provider-neutral payment notification."""
    transaction_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    amount: float = Field(..., ge=0)
    currency: str = "NGN"
    status: PaymentStatus
    provider: PaymentProvider
    exam_category: ExamCategory = ExamCategory.RM
    user_email: Optional[str] = None
    provider_reference: Optional[str] = None
    validity_days: Optional[int] = Field(None, ge=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


def _metadata_value(metadata: Dict[str, Any], *names: str) -> Optional[Any]:
    for name in names:
        value = metadata.get(name)
        if value not in (None, ""):
            return value
    return None


def _build_event(provider: PaymentProvider,
                 transaction_id: Optional[str],
                 amount: Optional[float],
                 currency: Optional[str],
                 status: PaymentStatus,
                 metadata: Dict[str, Any],
                 email: Optional[str],
                 provider_reference: Optional[str] = None) -> PaymentEvent:
    user_id = _metadata_value(metadata, "userId", "user_id")
    if not transaction_id or not user_id:
        raise ValidationError(
            "Payment notification is missing a transaction or user id",
            details={"provider": provider.value, "has_transaction_id": bool(transaction_id)}
        )

    category = _metadata_value(metadata, "examCategory", "exam_category") or ExamCategory.RM.value
    try:
        exam_category = ExamCategory(str(category).upper())
    except ValueError as e:
        raise ValidationError(
            "Unknown exam category in payment metadata",
            details={"provider": provider.value, "exam_category": category}
        ) from e

    validity = _metadata_value(metadata, "validityDays", "validity_days")

    return PaymentEvent(
        transaction_id=str(transaction_id),
        user_id=str(user_id),
        amount=float(amount or 0),
        currency=(currency or "NGN").upper(),
        status=status,
        provider=provider,
        exam_category=exam_category,
        user_email=email or _metadata_value(metadata, "userEmail", "email"),
        provider_reference=str(provider_reference) if provider_reference is not None else None,
        validity_days=int(validity) if validity is not None else None,
        metadata=metadata,
    )


def parse_paystack(payload: Dict[str, Any]) -> Optional[PaymentEvent]:
    """Paystack ``charge.success`` / ``charge.failed``; amounts are in kobo."""
    event = payload.get("event")
    if event not in ("charge.success", "charge.failed"):
        return None

    data = payload.get("data") or {}
    status = PaymentStatus.SUCCESS if (
        event == "charge.success" and data.get("status", "success") == "success"
    ) else PaymentStatus.FAILED

    return _build_event(
        PaymentProvider.PAYSTACK,
        transaction_id=data.get("reference"),
        amount=(data.get("amount") or 0) / 100,
        currency=data.get("currency"),
        status=status,
        metadata=data.get("metadata") or {},
        email=(data.get("customer") or {}).get("email"),
        provider_reference=data.get("reference"),
    )


def parse_flutterwave(payload: Dict[str, Any]) -> Optional[PaymentEvent]:
    """Flutterwave ``charge.completed``; ``tx_ref`` is the merchant reference."""
    event = payload.get("event")
    if event not in ("charge.completed", "charge.failed"):
        return None

    data = payload.get("data") or {}
    raw_status = (data.get("status") or "").lower()
    if raw_status == "successful" and event == "charge.completed":
        status = PaymentStatus.SUCCESS
    elif raw_status == "pending":
        status = PaymentStatus.PENDING
    else:
        status = PaymentStatus.FAILED

    metadata = payload.get("meta_data") or data.get("meta") or {}

    return _build_event(
        PaymentProvider.FLUTTERWAVE,
        transaction_id=data.get("tx_ref"),
        amount=data.get("amount"),
        currency=data.get("currency"),
        status=status,
        metadata=metadata,
        email=(data.get("customer") or {}).get("email"),
        provider_reference=data.get("id"),
    )


def parse_stripe(payload: Dict[str, Any]) -> Optional[PaymentEvent]:
    """Stripe checkout session events; amounts are in minor units."""
    event_type = payload.get("type")
    if event_type not in (
        "checkout.session.completed",
        "checkout.session.async_payment_succeeded",
        "checkout.session.async_payment_failed",
    ):
        return None

    session = (payload.get("data") or {}).get("object") or {}
    paid = session.get("payment_status") == "paid" and event_type != "checkout.session.async_payment_failed"

    return _build_event(
        PaymentProvider.STRIPE,
        transaction_id=session.get("id"),
        amount=(session.get("amount_total") or 0) / 100,
        currency=session.get("currency"),
        status=PaymentStatus.SUCCESS if paid else PaymentStatus.FAILED,
        metadata=session.get("metadata") or {},
        email=(session.get("customer_details") or {}).get("email"),
        provider_reference=session.get("payment_intent"),
    )


PARSERS = {
    PaymentProvider.PAYSTACK: parse_paystack,
    PaymentProvider.FLUTTERWAVE: parse_flutterwave,
    PaymentProvider.STRIPE: parse_stripe,
}


def parse_webhook(provider: str, payload: Dict[str, Any]) -> Optional[PaymentEvent]:
    """Dispatch to the provider parser. Returns None for events we do not act on."""
    try:
        parser = PARSERS[PaymentProvider(provider)]
    except (ValueError, KeyError) as e:
        raise ValidationError("Unsupported payment provider", details={"provider": provider}) from e
    return parser(payload)
