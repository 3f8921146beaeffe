"""
Exam attempt lifecycle.

An attempt moves ``in_progress -> submitted | auto_submitted | abandoned``.
Terminal states are final; every transition is a compare-and-swap on the
attempt document so a late save cannot overwrite a submission.
"""

import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shared.errors import (
    AccessDenied, AccessExpired, AccessRevoked, AttemptClosed, AttemptsExhausted, ConcurrentModification, NotFound,
    PersistenceUnavailable, ValidationError,
)
from shared.logging import get_logger

from ..persistence.store import EXAM_ATTEMPTS, DocumentStore
from ..records.models import ExamCategory, ensure_utc
from ..resolver.resolver import AccessReason, EntitlementResolver
from .catalog import ExamCatalog, ExamDefinition
from .gate import ExamAttemptGate, StartReason


PASS_MARK_PERCENTAGE = 70.0


class AttemptStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    AUTO_SUBMITTED = "auto_submitted"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in (AttemptStatus.SUBMITTED, AttemptStatus.AUTO_SUBMITTED, AttemptStatus.ABANDONED)


class ExamAttempt(BaseModel):
    """A single sitting of an exam by a user."""
    model_config = ConfigDict(extra="forbid")

    attempt_id: str
    user_id: str
    exam_id: str
    exam_category: ExamCategory
    status: AttemptStatus = AttemptStatus.NOT_STARTED
    answers: Dict[int, str] = Field(default_factory=dict)
    flagged: List[int] = Field(default_factory=list)
    started_at: datetime
    deadline: datetime
    ended_at: Optional[datetime] = None
    time_spent_seconds: int = 0
    score: Optional[int] = None
    percentage: Optional[float] = None
    correct_answers: int = 0
    wrong_answers: int = 0
    unanswered: int = 0
    missed_questions: List[int] = Field(default_factory=list)
    version: int = Field(0, exclude=True)

    @field_validator("started_at", "deadline", "ended_at")
    @classmethod
    def normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_overdue(self, now: datetime) -> bool:
        return self.status == AttemptStatus.IN_PROGRESS and now >= self.deadline

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_stored(cls, body: Dict[str, Any], version: int) -> "ExamAttempt":
        attempt = cls.model_validate(body)
        attempt.version = version
        return attempt


def score_answers(answer_key: List[str], answers: Dict[int, str]) -> Dict[str, Any]:
    """Mark ``answers`` against ``answer_key``; indices are zero-based."""
    correct = wrong = unanswered = 0
    missed: List[int] = []

    for index, expected in enumerate(answer_key):
        given = answers.get(index)
        if given is None or given == "":
            unanswered += 1
            missed.append(index)
        elif given.strip().upper() == expected.strip().upper():
            correct += 1
        else:
            wrong += 1
            missed.append(index)

    total = len(answer_key)
    return {
        "score": correct,
        "percentage": round(correct / total * 100, 2) if total else 0.0,
        "correct_answers": correct,
        "wrong_answers": wrong,
        "unanswered": unanswered,
        "missed_questions": missed,
    }


# Returns the replacement attempt, or None to keep the stored one.
Transition = Callable[[ExamAttempt, datetime], Optional[ExamAttempt]]


class ExamAttemptService:
    """Starts, saves, submits and reports on exam attempts."""

    def __init__(self,
                 store: DocumentStore,
                 resolver: EntitlementResolver,
                 catalog: ExamCatalog,
                 gate: ExamAttemptGate,
                 max_cas_retries: int = 5):
        self.store = store
        self.resolver = resolver
        self.catalog = catalog
        self.gate = gate
        self.max_cas_retries = max_cas_retries
        self.logger = get_logger("access.exams.attempts")

    @property
    def clock(self) -> Callable[[], datetime]:
        return self.resolver.clock

    async def _load(self, attempt_id: str) -> ExamAttempt:
        stored = await self.store.get(EXAM_ATTEMPTS, attempt_id)
        if stored is None:
            raise NotFound("Attempt not found", details={"attempt_id": attempt_id})
        return ExamAttempt.from_stored(stored.body, stored.version)

    async def _transition(self, attempt_id: str, transition: Transition) -> Tuple[ExamAttempt, bool]:
        for _ in range(self.max_cas_retries):
            attempt = await self._load(attempt_id)
            updated = transition(attempt, self.clock())
            if updated is None:
                return attempt, False
            try:
                updated.version = await self.store.put(
                    EXAM_ATTEMPTS, attempt_id, updated.to_document(), expected_version=attempt.version
                )
            except ConcurrentModification:
                continue
            return updated, True

        raise ConcurrentModification("Attempt kept changing", details={"attempt_id": attempt_id})

    def _finish(self, attempt: ExamAttempt, exam: ExamDefinition, status: AttemptStatus,
                now: datetime, answers: Optional[Dict[int, str]] = None) -> ExamAttempt:
        ended_at = min(now, attempt.deadline)
        update: Dict[str, Any] = {
            "status": status,
            "ended_at": ended_at,
            "time_spent_seconds": max(0, int((ended_at - attempt.started_at).total_seconds())),
        }
        if answers is not None:
            update["answers"] = answers
        if status != AttemptStatus.ABANDONED:
            update.update(score_answers(exam.answer_key, update.get("answers", attempt.answers)))
        return attempt.model_copy(update=update)

    async def _record_completion(self, attempt: ExamAttempt):
        try:
            await self.resolver.record_attempt_completion(
                attempt.user_id,
                attempt.exam_category,
                attempt.exam_id,
                attempt.attempt_id,
                score=attempt.score or 0,
                percentage=attempt.percentage or 0.0,
            )
        except (PersistenceUnavailable, ConcurrentModification) as e:
            # Completion is re-recorded on the next read of this attempt
            self.logger.warning(
                "Attempt completion not recorded on access record",
                attempt_id=attempt.attempt_id,
                error=e.message
            )

    async def start_attempt(self, user_id: str, exam_id: str) -> ExamAttempt:
        exam = self.catalog.get(exam_id)
        decision = await self.gate.reserve_attempt(user_id, exam_id)
        if not decision.can_start:
            details = {"exam_id": exam_id, **decision.to_dict()}
            if decision.reason == StartReason.ATTEMPTS_EXHAUSTED:
                raise AttemptsExhausted(details=details)
            await self._raise_no_access(user_id, exam.exam_category, details)

        now = self.clock()
        attempt = ExamAttempt(
            attempt_id=str(uuid.uuid4()),
            user_id=user_id,
            exam_id=exam_id,
            exam_category=exam.exam_category,
            status=AttemptStatus.IN_PROGRESS,
            started_at=now,
            deadline=now + timedelta(minutes=exam.duration_minutes),
        )
        try:
            attempt.version = await self.store.put(
                EXAM_ATTEMPTS, attempt.attempt_id, attempt.to_document(), expected_version=0
            )
        except (PersistenceUnavailable, ConcurrentModification) as e:
            self.logger.warning(
                "Attempt not persisted, releasing reserved slot",
                attempt_id=attempt.attempt_id,
                user_id=user_id,
                exam_id=exam_id,
                error=e.message
            )
            await self._release_slot(user_id, exam_id)
            raise
        self.logger.info(
            "Attempt started",
            attempt_id=attempt.attempt_id,
            user_id=user_id,
            exam_id=exam_id,
            deadline=attempt.deadline.isoformat()
        )
        return attempt

    async def _release_slot(self, user_id: str, exam_id: str):
        try:
            await self.gate.release_attempt(user_id, exam_id)
        except (PersistenceUnavailable, ConcurrentModification) as e:
            # An admin reset is the only way back from here
            self.logger.error(
                "Reserved slot could not be released",
                user_id=user_id,
                exam_id=exam_id,
                error=e.message
            )

    async def _raise_no_access(self, user_id: str, exam_category: ExamCategory, details: Dict[str, Any]):
        status = await self.resolver.resolve_access(user_id, exam_category)
        if status.reason == AccessReason.REVOKED:
            raise AccessRevoked(details=details)
        if status.reason == AccessReason.EXPIRED:
            raise AccessExpired(details={**details, "expired_at": status.expires_at.isoformat()})
        raise AccessDenied(details=details)

    async def get_attempt(self, attempt_id: str) -> ExamAttempt:
        """Load an attempt, closing it first if its deadline has passed."""
        attempt = await self._load(attempt_id)
        if attempt.is_overdue(self.clock()):
            attempt = await self._auto_submit(attempt_id)
        elif attempt.is_terminal:
            await self._record_completion(attempt)
        return attempt

    async def _auto_submit(self, attempt_id: str, at: Optional[datetime] = None) -> ExamAttempt:
        exam: Optional[ExamDefinition] = None

        def close(attempt: ExamAttempt, now: datetime) -> Optional[ExamAttempt]:
            nonlocal exam
            now = at or now
            if not attempt.is_overdue(now):
                return None
            exam = exam or self.catalog.get(attempt.exam_id)
            return self._finish(attempt, exam, AttemptStatus.AUTO_SUBMITTED, now)

        attempt, written = await self._transition(attempt_id, close)
        if written:
            self.logger.info("Attempt auto-submitted", attempt_id=attempt_id, score=attempt.score)
        if attempt.is_terminal:
            await self._record_completion(attempt)
        return attempt

    async def save_progress(self, attempt_id: str, answers: Dict[int, str],
                            flagged: Optional[List[int]] = None) -> ExamAttempt:
        """Store in-flight answers. Late saves close the attempt instead."""
        exam = self.catalog.get((await self._load(attempt_id)).exam_id)
        self._check_indices(exam, answers)

        def save(attempt: ExamAttempt, now: datetime) -> Optional[ExamAttempt]:
            if attempt.status != AttemptStatus.IN_PROGRESS or attempt.is_overdue(now):
                return None
            update: Dict[str, Any] = {"answers": {**attempt.answers, **answers}}
            if flagged is not None:
                update["flagged"] = sorted(set(flagged))
            return attempt.model_copy(update=update)

        attempt, written = await self._transition(attempt_id, save)
        if written:
            return attempt

        if attempt.is_overdue(self.clock()):
            attempt = await self._auto_submit(attempt_id)
        raise AttemptClosed(details={"attempt_id": attempt_id, "status": attempt.status.value})

    async def submit_attempt(self, attempt_id: str, answers: Optional[Dict[int, str]] = None) -> ExamAttempt:
        """Score and close an attempt. Re-submitting returns the stored result."""
        exam = self.catalog.get((await self._load(attempt_id)).exam_id)
        if answers:
            self._check_indices(exam, answers)

        def submit(attempt: ExamAttempt, now: datetime) -> Optional[ExamAttempt]:
            if attempt.is_terminal:
                return None
            if attempt.is_overdue(now):
                # Answers sent after the deadline are not accepted
                return self._finish(attempt, exam, AttemptStatus.AUTO_SUBMITTED, now)
            merged = {**attempt.answers, **(answers or {})}
            return self._finish(attempt, exam, AttemptStatus.SUBMITTED, now, answers=merged)

        attempt, written = await self._transition(attempt_id, submit)
        if written:
            self.logger.info(
                "Attempt submitted",
                attempt_id=attempt_id,
                user_id=attempt.user_id,
                status=attempt.status.value,
                score=attempt.score,
                percentage=attempt.percentage
            )
        await self._record_completion(attempt)
        return attempt

    async def abandon_attempt(self, attempt_id: str) -> ExamAttempt:
        """Close an attempt without scoring; the used slot is not returned."""
        exam = self.catalog.get((await self._load(attempt_id)).exam_id)

        def abandon(attempt: ExamAttempt, now: datetime) -> Optional[ExamAttempt]:
            if attempt.is_terminal:
                return None
            if attempt.is_overdue(now):
                return self._finish(attempt, exam, AttemptStatus.AUTO_SUBMITTED, now)
            return self._finish(attempt, exam, AttemptStatus.ABANDONED, now)

        attempt, written = await self._transition(attempt_id, abandon)
        if written:
            self.logger.info("Attempt closed", attempt_id=attempt_id, status=attempt.status.value)
        await self._record_completion(attempt)
        return attempt

    async def auto_submit_expired(self, now: Optional[datetime] = None) -> List[ExamAttempt]:
        """Close every in-progress attempt whose deadline has passed."""
        now = now or self.clock()
        closed = []
        for doc in await self.store.list(EXAM_ATTEMPTS):
            attempt = ExamAttempt.from_stored(doc.body, doc.version)
            if not attempt.is_overdue(now):
                continue
            attempt = await self._auto_submit(attempt.attempt_id, at=now)
            if attempt.status == AttemptStatus.AUTO_SUBMITTED:
                closed.append(attempt)

        if closed:
            self.logger.info("Expired attempts auto-submitted", count=len(closed))
        return closed

    async def get_attempt_for_review(self, attempt_id: str, user_id: str) -> Dict[str, Any]:
        """Attempt with its answer key, for the owner once it is closed."""
        attempt = await self.get_attempt(attempt_id)
        if attempt.user_id != user_id:
            raise AccessDenied("Attempt belongs to another user", details={"attempt_id": attempt_id})
        if not attempt.is_terminal:
            raise ValidationError("Attempt is still in progress", details={"attempt_id": attempt_id})

        exam = self.catalog.get(attempt.exam_id)
        return {
            "attempt": attempt.model_dump(mode="json"),
            "exam": exam.model_dump(mode="json"),
        }

    async def _all_attempts(self) -> List[ExamAttempt]:
        return [ExamAttempt.from_stored(doc.body, doc.version) for doc in await self.store.list(EXAM_ATTEMPTS)]

    async def list_user_attempts(self, user_id: str) -> List[ExamAttempt]:
        attempts = [a for a in await self._all_attempts() if a.user_id == user_id]
        return sorted(attempts, key=lambda a: a.started_at, reverse=True)

    async def exam_statistics(self, exam_id: str) -> Dict[str, Any]:
        self.catalog.get(exam_id)
        attempts = [a for a in await self._all_attempts() if a.exam_id == exam_id]
        scored = [
            a for a in attempts
            if a.status in (AttemptStatus.SUBMITTED, AttemptStatus.AUTO_SUBMITTED)
        ]

        stats: Dict[str, Any] = {
            "exam_id": exam_id,
            "total_attempts": len(attempts),
            "completed_attempts": len(scored),
            "abandoned_attempts": sum(1 for a in attempts if a.status == AttemptStatus.ABANDONED),
            "unique_users": len({a.user_id for a in attempts}),
            "average_percentage": 0.0,
            "highest_percentage": 0.0,
            "pass_rate": 0.0,
            "average_time_spent_seconds": 0,
        }
        if scored:
            percentages = [a.percentage or 0.0 for a in scored]
            stats["average_percentage"] = round(sum(percentages) / len(scored), 2)
            stats["highest_percentage"] = max(percentages)
            stats["pass_rate"] = round(
                sum(1 for p in percentages if p >= PASS_MARK_PERCENTAGE) / len(scored) * 100, 2
            )
            stats["average_time_spent_seconds"] = int(sum(a.time_spent_seconds for a in scored) / len(scored))
        return stats

    async def leaderboard(self, exam_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Best scored attempt per user, highest percentage then fastest."""
        self.catalog.get(exam_id)
        best: Dict[str, ExamAttempt] = {}
        for attempt in await self._all_attempts():
            if attempt.exam_id != exam_id or attempt.status not in (
                AttemptStatus.SUBMITTED, AttemptStatus.AUTO_SUBMITTED
            ):
                continue
            current = best.get(attempt.user_id)
            if current is None or self._rank_key(attempt) < self._rank_key(current):
                best[attempt.user_id] = attempt

        ranked = sorted(best.values(), key=self._rank_key)[:limit]
        return [
            {
                "rank": position,
                "user_id": attempt.user_id,
                "attempt_id": attempt.attempt_id,
                "score": attempt.score,
                "percentage": attempt.percentage,
                "time_spent_seconds": attempt.time_spent_seconds,
            }
            for position, attempt in enumerate(ranked, start=1)
        ]

    @staticmethod
    def _rank_key(attempt: ExamAttempt):
        return (-(attempt.percentage or 0.0), attempt.time_spent_seconds, attempt.ended_at)

    @staticmethod
    def _check_indices(exam: ExamDefinition, answers: Dict[int, str]):
        bad = [i for i in answers if i < 0 or i >= exam.question_count]
        if bad:
            raise ValidationError("Answer index out of range", details={"indices": sorted(bad)})
