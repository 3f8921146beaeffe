"""
Server-side confirmation of payments against the provider APIs.
"""

from typing import Any, Dict, Optional

import httpx

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import ExternalServiceError, ValidationError
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_call

from ..records.models import PaymentProvider
from .events import PaymentEvent, parse_flutterwave, parse_paystack


PAYSTACK_VERIFY_URL = "https://api.paystack.co/transaction/verify/{reference}"
FLUTTERWAVE_VERIFY_URL = "https://api.flutterwave.com/v3/transactions/{transaction_id}/verify"


class PaymentVerifier:
    """Re-checks a webhook's transaction with the provider that sent it.

    Providers without a configured secret key are not verified.
    """

    def __init__(self,
                 paystack_secret_key: Optional[str] = None,
                 flutterwave_secret_key: Optional[str] = None,
                 timeout: float = 10.0,
                 retry_config: Optional[RetryConfig] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.secret_keys = {
            PaymentProvider.PAYSTACK: paystack_secret_key,
            PaymentProvider.FLUTTERWAVE: flutterwave_secret_key,
        }
        self.timeout = timeout
        self.transport = transport
        self.logger = get_logger("access.payments.verifier")

        self.retry_config = retry_config or RetryConfig(
            max_attempts=3,
            base_delay=0.5,
            max_delay=5.0,
        )
        self.circuit_breakers = {
            provider: CircuitBreaker(failure_threshold=5, recovery_timeout=30.0, name=f"{provider.value}_verify")
            for provider in self.secret_keys
        }

    def enabled_for(self, provider: PaymentProvider) -> bool:
        return bool(self.secret_keys.get(provider))

    @staticmethod
    def _url(provider: PaymentProvider, reference: str) -> str:
        if provider == PaymentProvider.PAYSTACK:
            return PAYSTACK_VERIFY_URL.format(reference=reference)
        return FLUTTERWAVE_VERIFY_URL.format(transaction_id=reference)

    async def verify(self, event: PaymentEvent) -> bool:
        """True when the provider reports the transaction as successful.

        Raises ``ExternalServiceError`` when the provider cannot be reached.
        """
        if not self.enabled_for(event.provider):
            return True

        reference = event.transaction_id
        if event.provider == PaymentProvider.FLUTTERWAVE:
            reference = event.provider_reference or event.transaction_id

        data = await self._request(event.provider, reference)
        confirmed = self._is_successful(event.provider, data)
        self.logger.info(
            "Payment verified",
            provider=event.provider.value,
            transaction_id=event.transaction_id,
            confirmed=confirmed
        )
        return confirmed

    async def lookup(self, provider: PaymentProvider, reference: str) -> Optional[PaymentEvent]:
        """Build a payment event from the provider's own transaction record.

        ``reference`` is the Paystack reference or the Flutterwave transaction
        id. Returns None when the provider does not know the transaction.
        Raises ``ValidationError`` for providers that cannot be looked up or
        transactions without a user id, and ``ExternalServiceError`` when the
        provider cannot be reached.
        """
        if not self.enabled_for(provider):
            raise ValidationError(
                "Payment verification is not available for this provider",
                details={"provider": provider.value}
            )

        data = await self._request(provider, reference)
        body = data.get("data")
        if not isinstance(body, dict) or not body:
            self.logger.info("Provider has no such transaction", provider=provider.value, reference=reference)
            return None

        if provider == PaymentProvider.PAYSTACK:
            return parse_paystack({"event": "charge.success", "data": body})
        return parse_flutterwave({"event": "charge.completed", "data": body})

    async def _request(self, provider: PaymentProvider, reference: str) -> Dict[str, Any]:
        breaker = self.circuit_breakers[provider]
        try:
            return await breaker.call(
                retry_call,
                self._fetch,
                self._url(provider, reference),
                self.secret_keys[provider],
                exceptions=(httpx.TransportError, httpx.HTTPStatusError),
                config=self.retry_config,
            )
        except CircuitBreakerOpenException as e:
            self.logger.warning("Payment verification skipped, breaker open", provider=provider.value)
            raise ExternalServiceError(
                provider.value,
                "payment provider temporarily unavailable",
                details={"provider": provider.value}
            ) from e
        except RetryError as e:
            self.logger.error(
                "Payment verification failed",
                provider=provider.value,
                reference=reference,
                error=str(e.last_exception)
            )
            raise ExternalServiceError(
                provider.value,
                "payment provider could not be reached",
                details={"provider": provider.value, "attempts": e.attempts}
            ) from e

    async def _fetch(self, url: str, secret_key: str) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.get(url, headers={"Authorization": f"Bearer {secret_key}"})

        if response.status_code >= 500:
            response.raise_for_status()
        # 4xx: provider does not know the transaction
        if response.status_code >= 400:
            return {}

        try:
            data = response.json()
        except ValueError as e:
            raise ExternalServiceError(
                "payment_provider",
                "response was not JSON",
                details={"url": url, "status_code": response.status_code}
            ) from e
        if not isinstance(data, dict):
            raise ExternalServiceError(
                "payment_provider",
                "unexpected response shape",
                details={"url": url, "status_code": response.status_code}
            )
        return data

    @staticmethod
    def _is_successful(provider: PaymentProvider, data: Dict[str, Any]) -> bool:
        body = data.get("data") or {}
        if provider == PaymentProvider.PAYSTACK:
            return bool(data.get("status")) and body.get("status") == "success"
        return data.get("status") == "success" and body.get("status") == "successful"
