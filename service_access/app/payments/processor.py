"""
Payment webhook processing.

A confirmed payment becomes a grant keyed by its transaction id, so gateway
redeliveries collapse into one grant. When the grant cannot be persisted the
result is ``unconfirmed`` and the gateway is asked to redeliver.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

from shared.errors import ConcurrentModification, ExternalServiceError, PersistenceUnavailable, ValidationError
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_call

from ..records.models import Grant, PaymentEvidence, PaymentProvider, utcnow
from ..resolver.resolver import EntitlementResolver
from .events import PaymentEvent, PaymentStatus
from .verifier import PaymentVerifier


class WebhookStatus(str, Enum):
    GRANTED = "granted"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNCONFIRMED = "unconfirmed"


@dataclass
class WebhookResult:
    status: WebhookStatus
    transaction_id: Optional[str] = None
    user_id: Optional[str] = None
    exam_category: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "transaction_id": self.transaction_id,
            "user_id": self.user_id,
            "exam_category": self.exam_category,
            "reason": self.reason,
        }


class WebhookProcessor:
    """Turns normalized payment events into access grants."""

    def __init__(self,
                 resolver: EntitlementResolver,
                 verifier: Optional[PaymentVerifier] = None,
                 payment_access_days: int = 90,
                 retry_config: Optional[RetryConfig] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.resolver = resolver
        self.verifier = verifier
        self.payment_access_days = payment_access_days
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.2, max_delay=2.0)
        self.clock = clock
        self.logger = get_logger("access.payments.processor")

    def _grant_for(self, event: PaymentEvent) -> Grant:
        days = event.validity_days or self.payment_access_days
        return Grant(
            evidence=PaymentEvidence(
                transaction_id=event.transaction_id,
                amount=event.amount,
                currency=event.currency,
                provider=event.provider,
            ),
            expires_at=self.clock() + timedelta(days=days),
            user_email=event.user_email,
        )

    async def process(self, event: PaymentEvent, verified: bool = False) -> WebhookResult:
        """Grant access for a successful payment.

        ``verified`` skips the provider check for events that were built from
        the provider's own transaction record.
        """
        result = WebhookResult(
            status=WebhookStatus.IGNORED,
            transaction_id=event.transaction_id,
            user_id=event.user_id,
            exam_category=event.exam_category.value,
        )

        if event.status != PaymentStatus.SUCCESS:
            self.logger.info(
                "Ignoring non-successful payment",
                transaction_id=event.transaction_id,
                provider=event.provider.value,
                status=event.status.value
            )
            result.reason = f"payment_{event.status.value}"
            return result

        if self.verifier is not None and not verified:
            try:
                confirmed = await self.verifier.verify(event)
            except ExternalServiceError as e:
                result.status = WebhookStatus.UNCONFIRMED
                result.reason = "verification_unavailable"
                self.logger.warning(
                    "Payment could not be verified, asking for redelivery",
                    transaction_id=event.transaction_id,
                    error=e.message
                )
                return result
            if not confirmed:
                result.reason = "verification_failed"
                self.logger.warning(
                    "Provider did not confirm payment",
                    transaction_id=event.transaction_id,
                    provider=event.provider.value
                )
                return result

        try:
            outcome = await retry_call(
                self.resolver.grant_access,
                event.user_id,
                event.exam_category,
                self._grant_for(event),
                exceptions=(PersistenceUnavailable, ConcurrentModification),
                config=self.retry_config,
            )
        except RetryError as e:
            result.status = WebhookStatus.UNCONFIRMED
            result.reason = "grant_not_persisted"
            self.logger.error(
                "Payment grant not persisted",
                transaction_id=event.transaction_id,
                user_id=event.user_id,
                attempts=e.attempts,
                error=str(e.last_exception)
            )
            return result

        result.status = WebhookStatus.GRANTED if outcome.persisted else WebhookStatus.DUPLICATE
        self.logger.info(
            "Payment webhook processed",
            transaction_id=event.transaction_id,
            user_id=event.user_id,
            exam_category=event.exam_category.value,
            status=result.status.value
        )
        return result

    async def verify_and_grant(self, provider: PaymentProvider, reference: str,
                               user_id: Optional[str] = None) -> WebhookResult:
        """Grant from a client-reported transaction after checking it with the provider.

        The grant is built from the provider's record, never from the client,
        and shares the webhook's idempotency key, so a payment confirmed both
        ways is granted once.
        """
        provider = PaymentProvider(provider)
        if self.verifier is None or not self.verifier.enabled_for(provider):
            raise ValidationError(
                "Payment verification is not available for this provider",
                details={"provider": provider.value}
            )

        result = WebhookResult(status=WebhookStatus.IGNORED, transaction_id=reference, user_id=user_id)
        try:
            event = await self.verifier.lookup(provider, reference)
        except ExternalServiceError as e:
            result.status = WebhookStatus.UNCONFIRMED
            result.reason = "verification_unavailable"
            self.logger.warning("Payment lookup failed", provider=provider.value, reference=reference, error=e.message)
            return result
        except ValidationError as e:
            result.reason = "unusable_transaction"
            self.logger.warning(
                "Provider transaction cannot be granted",
                provider=provider.value,
                reference=reference,
                error=e.message
            )
            return result

        if event is None:
            result.reason = "verification_failed"
            return result

        if user_id and event.user_id != user_id:
            result.transaction_id = event.transaction_id
            result.reason = "user_mismatch"
            self.logger.warning(
                "Client verification for another user's payment",
                transaction_id=event.transaction_id,
                claimed_user_id=user_id,
                paying_user_id=event.user_id
            )
            return result

        return await self.process(event, verified=True)
