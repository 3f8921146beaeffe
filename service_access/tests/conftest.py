"""
Shared fixtures for Access Service tests.
"""

import asyncio
from datetime import timedelta

import pytest

from shared.test_helpers import DataFactory, FixedClock

from service_access.app.codes.manager import AccessCodeManager, CodeRedemptionService
from service_access.app.exams.attempts import ExamAttemptService
from service_access.app.exams.catalog import ExamCatalog, ExamDefinition
from service_access.app.exams.gate import ExamAttemptGate
from service_access.app.persistence.store import InMemoryDocumentStore
from service_access.app.records.models import Grant, PaymentEvidence, PaymentProvider
from service_access.app.resolver.resolver import EntitlementResolver


class InterleavingStore(InMemoryDocumentStore):
    """In-memory store that yields to the loop on every read.

    Concurrent read-modify-write cycles then actually interleave, so
    conditional puts are exercised.
    """

    async def get(self, collection, key):
        await asyncio.sleep(0)
        return await super().get(collection, key)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def payment_grant(clock):
    """Build a payment grant expiring `days` from the clock's now."""
    def _make(transaction_id: str, days: int = 90, amount: float = 2000) -> Grant:
        return Grant(
            evidence=PaymentEvidence(transaction_id=transaction_id, amount=amount, provider=PaymentProvider.PAYSTACK),
            expires_at=clock() + timedelta(days=days),
        )
    return _make


@pytest.fixture
def store():
    return InterleavingStore()


@pytest.fixture
def resolver(store, clock):
    return EntitlementResolver(store, default_max_attempts=1, max_merge_retries=10, clock=clock)


@pytest.fixture
def catalog():
    return ExamCatalog([ExamDefinition.model_validate(e) for e in DataFactory.create_exams()])


@pytest.fixture
def codes(store, clock):
    return AccessCodeManager(store, clock=clock, max_cas_retries=10)


@pytest.fixture
def redemptions(codes, resolver):
    return CodeRedemptionService(codes, resolver)


@pytest.fixture
def gate(resolver, catalog):
    return ExamAttemptGate(resolver, catalog)


@pytest.fixture
def attempts(store, resolver, catalog, gate):
    return ExamAttemptService(store, resolver, catalog, gate, max_cas_retries=10)
