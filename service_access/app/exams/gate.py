"""
Attempt gate: decides whether a user may start an exam and reserves the slot.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Optional

from shared.errors import PersistenceUnavailable
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..records.models import AccessRecord, ExamUsage
from ..resolver.resolver import EntitlementResolver
from .catalog import ExamCatalog


class StartReason:
    ALLOWED = "allowed"
    NO_ACCESS = "no_access"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"


@dataclass
class StartDecision:
    can_start: bool
    reason: str
    attempts_used: int = 0
    max_attempts: int = 0

    @property
    def remaining_attempts(self) -> int:
        return max(0, self.max_attempts - self.attempts_used)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["remaining_attempts"] = self.remaining_attempts
        return data


class ExamAttemptGate:
    """Checks access and attempt limits before an exam starts."""

    def __init__(self,
                 resolver: EntitlementResolver,
                 catalog: ExamCatalog,
                 metrics: Optional[MetricsCollector] = None):
        self.resolver = resolver
        self.catalog = catalog
        self.metrics = metrics
        self.logger = get_logger("access.exams.gate")

    def _decide(self, record: Optional[AccessRecord], exam_id: str, now: datetime) -> StartDecision:
        if record is None or not record.is_active(now):
            return StartDecision(can_start=False, reason=StartReason.NO_ACCESS)

        used = record.usage_for(exam_id).count
        limit = record.max_attempts_for(exam_id, self.resolver.default_max_attempts)
        if used >= limit:
            return StartDecision(
                can_start=False, reason=StartReason.ATTEMPTS_EXHAUSTED, attempts_used=used, max_attempts=limit
            )
        return StartDecision(can_start=True, reason=StartReason.ALLOWED, attempts_used=used, max_attempts=limit)

    async def can_start_exam(self, user_id: str, exam_id: str) -> StartDecision:
        """Read-only check; does not consume an attempt."""
        exam = self.catalog.get(exam_id)
        try:
            record = await self.resolver.get_record(user_id, exam.exam_category)
        except PersistenceUnavailable as e:
            self.logger.warning("Eligibility read failed, denying", user_id=user_id, exam_id=exam_id, error=e.message)
            return StartDecision(can_start=False, reason=StartReason.NO_ACCESS)
        return self._decide(record, exam_id, self.resolver.clock())

    async def reserve_attempt(self, user_id: str, exam_id: str) -> StartDecision:
        """Check and consume one attempt in a single compare-and-swap.

        Concurrent reservations re-read the record on conflict, so the used
        count never passes the limit.
        """
        exam = self.catalog.get(exam_id)
        decision = StartDecision(can_start=False, reason=StartReason.NO_ACCESS)

        def reserve(record: Optional[AccessRecord], now: datetime) -> Optional[AccessRecord]:
            nonlocal decision
            decision = self._decide(record, exam_id, now)
            if not decision.can_start:
                return None

            usage = record.usage_for(exam_id)
            attempts = dict(record.attempts_by_exam)
            attempts[exam_id] = ExamUsage(
                count=usage.count + 1,
                extra_attempts=usage.extra_attempts,
                completed_attempt_ids=list(usage.completed_attempt_ids),
                best_score=usage.best_score,
                best_percentage=usage.best_percentage,
                last_attempt_at=now,
            )
            return record.model_copy(update={"attempts_by_exam": attempts, "updated_at": now})

        try:
            await self.resolver.update_record(user_id, exam.exam_category, reserve)
        except PersistenceUnavailable as e:
            self.logger.warning("Attempt reservation failed, denying", user_id=user_id, exam_id=exam_id, error=e.message)
            decision = StartDecision(can_start=False, reason=StartReason.NO_ACCESS)

        if decision.can_start:
            decision.attempts_used += 1

        if self.metrics:
            self.metrics.increment_counter("attempt_reservations_total", outcome=decision.reason)
        self.logger.info(
            "Attempt reservation",
            user_id=user_id,
            exam_id=exam_id,
            reason=decision.reason,
            attempts_used=decision.attempts_used,
            max_attempts=decision.max_attempts
        )
        return decision

    async def release_attempt(self, user_id: str, exam_id: str):
        """Give back a slot whose attempt was never persisted."""
        exam = self.catalog.get(exam_id)

        def release(record: Optional[AccessRecord], now: datetime) -> Optional[AccessRecord]:
            if record is None:
                return None
            usage = record.usage_for(exam_id)
            if usage.count == 0:
                return None
            attempts = dict(record.attempts_by_exam)
            attempts[exam_id] = usage.model_copy(update={"count": usage.count - 1})
            return record.model_copy(update={"attempts_by_exam": attempts, "updated_at": now})

        await self.resolver.update_record(user_id, exam.exam_category, release)
        if self.metrics:
            self.metrics.increment_counter("attempt_reservations_total", outcome="released")
        self.logger.info("Attempt reservation released", user_id=user_id, exam_id=exam_id)
