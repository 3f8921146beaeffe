"""
Entitlement resolver for the Access Service.

Every access-granting path (payment webhooks, code redemption, admin grants)
funnels through ``grant_access``. Writes are compare-and-swap against the
version last read, so concurrent grants for the same user are merged rather
than overwritten.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from shared.errors import ConcurrentModification, NotFound, PersistenceUnavailable
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.observability import add_span_event

from ..persistence.store import ACCESS_RECORDS, DocumentStore
from ..records.models import (
    AccessMethod, AccessRecord, AdminSettings, ExamCategory, ExamUsage, Grant, GrantEntry, utcnow,
)


class AccessReason(str, Enum):
    """Why access was or was not granted on a read."""
    ACTIVE = "active"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    REVOKED = "revoked"
    PERSISTENCE_UNAVAILABLE = "persistence_unavailable"


class GrantStatus(str, Enum):
    PERSISTED = "persisted"
    DUPLICATE = "duplicate"


@dataclass
class AccessStatus:
    """Authoritative access answer for one user and category."""
    has_access: bool
    reason: AccessReason
    expires_at: Optional[datetime] = None
    access_method: Optional[AccessMethod] = None
    max_attempts: Optional[int] = None
    attempts_used: Optional[int] = None
    remaining_attempts: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["reason"] = self.reason.value
        data["access_method"] = self.access_method.value if self.access_method else None
        data["expires_at"] = self.expires_at.isoformat() if self.expires_at else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccessStatus":
        return cls(
            has_access=data["has_access"],
            reason=AccessReason(data["reason"]),
            expires_at=datetime.fromisoformat(data["expires_at"]) if data.get("expires_at") else None,
            access_method=AccessMethod(data["access_method"]) if data.get("access_method") else None,
            max_attempts=data.get("max_attempts"),
            attempts_used=data.get("attempts_used"),
            remaining_attempts=data.get("remaining_attempts"),
        )


@dataclass
class GrantOutcome:
    """Result of a grant: the merged record and whether anything was written."""
    status: GrantStatus
    record: AccessRecord

    @property
    def persisted(self) -> bool:
        return self.status == GrantStatus.PERSISTED


# A mutation receives the current record (or None) and the clock reading and
# returns the replacement record, or None to leave the document untouched.
Mutation = Callable[[Optional[AccessRecord], datetime], Optional[AccessRecord]]


def later_expiry(current: Optional[datetime], new: Optional[datetime]) -> Optional[datetime]:
    """Later of two expiries, where None means no expiry."""
    if current is None or new is None:
        return None
    return max(current, new)


class EntitlementResolver:
    """Reads, merges and revokes access records."""

    def __init__(self,
                 store: DocumentStore,
                 default_max_attempts: int = 1,
                 max_merge_retries: int = 5,
                 clock: Callable[[], datetime] = utcnow,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.default_max_attempts = default_max_attempts
        self.max_merge_retries = max_merge_retries
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("access.resolver")

    def _count(self, metric: str, **labels):
        if self.metrics:
            self.metrics.increment_counter(metric, **labels)

    async def load(self, user_id: str, exam_category: ExamCategory) -> Optional[Tuple[AccessRecord, int]]:
        """Read and validate a record with its version.

        Raises ``PersistenceUnavailable`` (or ``MalformedRecord``) on failure.
        """
        key = AccessRecord.document_key(user_id, exam_category)
        stored = await self.store.get(ACCESS_RECORDS, key)
        if stored is None:
            return None
        return AccessRecord.from_document(stored.body), stored.version

    async def get_record(self, user_id: str, exam_category: ExamCategory) -> Optional[AccessRecord]:
        loaded = await self.load(user_id, exam_category)
        return loaded[0] if loaded else None

    def status_for(self, record: Optional[AccessRecord], now: datetime,
                   exam_id: Optional[str] = None) -> AccessStatus:
        """Derive access from a record at ``now``."""
        if record is None:
            return AccessStatus(has_access=False, reason=AccessReason.NOT_FOUND)

        status = AccessStatus(
            has_access=False,
            reason=AccessReason.ACTIVE,
            expires_at=record.access_expires_at,
            access_method=record.access_method,
        )
        if exam_id is not None:
            used = record.usage_for(exam_id).count
            limit = record.max_attempts_for(exam_id, self.default_max_attempts)
            status.attempts_used = used
            status.max_attempts = limit
            status.remaining_attempts = max(0, limit - used)

        if record.is_revoked:
            status.reason = AccessReason.REVOKED
        elif record.is_expired(now):
            status.reason = AccessReason.EXPIRED
        else:
            status.has_access = record.is_active(now)
        return status

    async def resolve_access(self, user_id: str, exam_category: ExamCategory,
                             exam_id: Optional[str] = None) -> AccessStatus:
        """Authoritative access answer. Fails closed on storage errors."""
        status, _ = await self.resolve_access_versioned(user_id, exam_category, exam_id)
        return status

    async def resolve_access_versioned(self, user_id: str, exam_category: ExamCategory,
                                       exam_id: Optional[str] = None) -> Tuple[AccessStatus, Optional[int]]:
        """Access answer plus the record version it was derived from.

        The version is 0 when there is no record and None when the store
        could not be read.
        """
        try:
            loaded = await self.load(user_id, exam_category)
        except PersistenceUnavailable as e:
            self.logger.warning(
                "Access read failed, denying",
                user_id=user_id,
                exam_category=ExamCategory(exam_category).value,
                code=e.code,
                error=e.message
            )
            self._count("access_checks_total", outcome=AccessReason.PERSISTENCE_UNAVAILABLE.value)
            return AccessStatus(has_access=False, reason=AccessReason.PERSISTENCE_UNAVAILABLE), None

        record, version = loaded if loaded else (None, 0)
        status = self.status_for(record, self.clock(), exam_id)
        self._count("access_checks_total", outcome=status.reason.value)
        return status, version

    async def record_version(self, user_id: str, exam_category: ExamCategory) -> Optional[int]:
        """Current version of the record, 0 if absent, None if unreadable."""
        key = AccessRecord.document_key(user_id, exam_category)
        try:
            stored = await self.store.get(ACCESS_RECORDS, key)
        except PersistenceUnavailable:
            return None
        return stored.version if stored else 0

    async def update_record(self, user_id: str, exam_category: ExamCategory,
                            mutation: Mutation) -> Tuple[Optional[AccessRecord], bool]:
        """Apply ``mutation`` as a compare-and-swap, re-reading on conflict.

        Returns the resulting record and whether a write happened.
        """
        key = AccessRecord.document_key(user_id, exam_category)

        for attempt in range(1, self.max_merge_retries + 1):
            loaded = await self.load(user_id, exam_category)
            current, version = loaded if loaded else (None, 0)

            updated = mutation(current, self.clock())
            if updated is None:
                return current, False

            try:
                await self.store.put(ACCESS_RECORDS, key, updated.to_document(), expected_version=version)
                return updated, True
            except ConcurrentModification:
                add_span_event("access_record_conflict", key=key, attempt=attempt)
                self.logger.info(
                    "Access record changed underneath, re-merging",
                    user_id=user_id,
                    exam_category=ExamCategory(exam_category).value,
                    attempt=attempt
                )

        self.logger.error(
            "Giving up on access record update after repeated conflicts",
            user_id=user_id,
            exam_category=ExamCategory(exam_category).value,
            attempts=self.max_merge_retries
        )
        raise ConcurrentModification(
            "Access record kept changing during update",
            details={"user_id": user_id, "exam_category": ExamCategory(exam_category).value}
        )

    async def grant_access(self, user_id: str, exam_category: ExamCategory, grant: Grant) -> GrantOutcome:
        """Merge a grant into the user's record, creating it if needed.

        Re-applying evidence that is already in the record's history is a
        no-op. Storage failures propagate so the caller can retry.
        """
        exam_category = ExamCategory(exam_category)
        key = grant.evidence.idempotency_key

        def merge(record: Optional[AccessRecord], now: datetime) -> Optional[AccessRecord]:
            entry = GrantEntry(evidence=grant.evidence, granted_at=now, expires_at=grant.expires_at)
            method = AccessMethod(grant.evidence.method)

            if record is None:
                return AccessRecord(
                    user_id=user_id,
                    user_email=grant.user_email,
                    exam_category=exam_category,
                    has_access=True,
                    access_method=method,
                    access_granted_at=now,
                    access_expires_at=grant.expires_at,
                    grants=[entry],
                    admin_settings=AdminSettings(max_attempts=grant.max_attempts),
                    created_at=now,
                    updated_at=now,
                )

            if record.has_grant(key):
                return None

            if record.is_revoked:
                # Revoked grants no longer confer time
                expires_at = grant.expires_at
            else:
                expires_at = later_expiry(record.access_expires_at, grant.expires_at)

            settings = record.admin_settings.model_copy()
            if grant.max_attempts is not None:
                settings.max_attempts = max(settings.max_attempts or 0, grant.max_attempts)

            return record.model_copy(update={
                "user_email": record.user_email or grant.user_email,
                "has_access": True,
                "access_method": method,
                "access_granted_at": now,
                "access_expires_at": expires_at,
                "revoked_at": None,
                "grants": record.grants + [entry],
                "admin_settings": settings,
                "updated_at": now,
            })

        record, written = await self.update_record(user_id, exam_category, merge)
        status = GrantStatus.PERSISTED if written else GrantStatus.DUPLICATE
        self._count("access_grants_total", method=grant.evidence.method, outcome=status.value)

        if written:
            self.logger.info(
                "Access granted",
                user_id=user_id,
                exam_category=exam_category.value,
                method=grant.evidence.method,
                grant_key=key,
                expires_at=record.access_expires_at.isoformat() if record.access_expires_at else None
            )
        else:
            self.logger.info(
                "Duplicate grant ignored",
                user_id=user_id,
                exam_category=exam_category.value,
                grant_key=key
            )
        return GrantOutcome(status=status, record=record)

    async def revoke_access(self, user_id: str, exam_category: ExamCategory,
                            revoked_by: Optional[str] = None) -> AccessRecord:
        """Withdraw access until a new grant arrives."""
        exam_category = ExamCategory(exam_category)

        def revoke(record: Optional[AccessRecord], now: datetime) -> Optional[AccessRecord]:
            if record is None:
                raise NotFound(
                    "No access record to revoke",
                    details={"user_id": user_id, "exam_category": exam_category.value}
                )
            if record.is_revoked:
                return None
            return record.model_copy(update={
                "has_access": False,
                "revoked_at": now,
                "revocations": record.revocations + [now],
                "updated_at": now,
            })

        record, written = await self.update_record(user_id, exam_category, revoke)
        if written:
            self.logger.info(
                "Access revoked",
                user_id=user_id,
                exam_category=exam_category.value,
                revoked_by=revoked_by
            )
        return record

    async def update_admin_settings(self, user_id: str, exam_category: ExamCategory,
                                    max_attempts: Optional[int] = None,
                                    notes: Optional[str] = None) -> AccessRecord:
        exam_category = ExamCategory(exam_category)

        def apply(record: Optional[AccessRecord], now: datetime) -> Optional[AccessRecord]:
            if record is None:
                raise NotFound(
                    "No access record to update",
                    details={"user_id": user_id, "exam_category": exam_category.value}
                )
            settings = record.admin_settings.model_copy()
            if max_attempts is not None:
                settings.max_attempts = max_attempts
            if notes is not None:
                settings.notes = notes
            return record.model_copy(update={"admin_settings": settings, "updated_at": now})

        record, _ = await self.update_record(user_id, exam_category, apply)
        self.logger.info(
            "Admin settings updated",
            user_id=user_id,
            exam_category=exam_category.value,
            max_attempts=max_attempts
        )
        return record

    async def allow_retry(self, user_id: str, exam_category: ExamCategory, exam_id: str) -> AccessRecord:
        """Grant one more attempt at ``exam_id`` without touching the used count."""
        exam_category = ExamCategory(exam_category)

        def apply(record: Optional[AccessRecord], now: datetime) -> Optional[AccessRecord]:
            if record is None:
                raise NotFound(
                    "No access record to update",
                    details={"user_id": user_id, "exam_category": exam_category.value}
                )
            usage = record.usage_for(exam_id).model_copy()
            usage.extra_attempts += 1
            attempts = dict(record.attempts_by_exam)
            attempts[exam_id] = usage
            return record.model_copy(update={"attempts_by_exam": attempts, "updated_at": now})

        record, _ = await self.update_record(user_id, exam_category, apply)
        self.logger.info("Extra attempt allowed", user_id=user_id, exam_id=exam_id)
        return record

    async def record_attempt_completion(self, user_id: str, exam_category: ExamCategory, exam_id: str,
                                        attempt_id: str, score: int, percentage: float) -> Optional[AccessRecord]:
        """Record a finished attempt once; repeats are no-ops."""
        exam_category = ExamCategory(exam_category)

        def apply(record: Optional[AccessRecord], now: datetime) -> Optional[AccessRecord]:
            if record is None:
                self.logger.warning(
                    "Completed attempt has no access record",
                    user_id=user_id,
                    attempt_id=attempt_id
                )
                return None
            usage = record.usage_for(exam_id)
            if attempt_id in usage.completed_attempt_ids:
                return None

            usage = ExamUsage(
                count=usage.count,
                extra_attempts=usage.extra_attempts,
                completed_attempt_ids=usage.completed_attempt_ids + [attempt_id],
                best_score=max(score, usage.best_score) if usage.best_score is not None else score,
                best_percentage=(
                    max(percentage, usage.best_percentage) if usage.best_percentage is not None else percentage
                ),
                last_attempt_at=now,
            )
            attempts = dict(record.attempts_by_exam)
            attempts[exam_id] = usage
            return record.model_copy(update={"attempts_by_exam": attempts, "updated_at": now})

        record, _ = await self.update_record(user_id, exam_category, apply)
        return record

    async def list_records(self, exam_category: Optional[ExamCategory] = None) -> List[AccessRecord]:
        records = [AccessRecord.from_document(doc.body) for doc in await self.store.list(ACCESS_RECORDS)]
        if exam_category is not None:
            records = [r for r in records if r.exam_category == ExamCategory(exam_category)]
        return records
