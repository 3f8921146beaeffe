"""
Access record data models for the Access Service.
"""

from typing import Dict, Any, Optional, List, Union, Literal, Annotated
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from shared.errors import MalformedRecord


def utcnow() -> datetime:
    """Timezone-aware current time; the default clock."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ExamCategory(str, Enum):
    """Exam categories sold separately."""
    RM = "RM"
    RN = "RN"
    RPHN = "RPHN"


class AccessMethod(str, Enum):
    """How access was granted."""
    PAYMENT = "payment"
    ACCESS_CODE = "access_code"
    ADMIN_GRANT = "admin_grant"


class PaymentProvider(str, Enum):
    """Payment processors that deliver webhooks."""
    PAYSTACK = "paystack"
    FLUTTERWAVE = "flutterwave"
    STRIPE = "stripe"
    MANUAL = "manual"


class CodeType(str, Enum):
    """Access code usage type."""
    SINGLE_USE = "single_use"
    MULTI_USE = "multi_use"


class _Evidence(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def idempotency_key(self) -> str:
        raise NotImplementedError


class PaymentEvidence(_Evidence):
    """A confirmed payment."""
    method: Literal["payment"] = "payment"
    transaction_id: str = Field(..., min_length=1)
    amount: float = Field(..., ge=0)
    currency: str = "NGN"
    provider: PaymentProvider = PaymentProvider.MANUAL
    status: str = "completed"

    @property
    def idempotency_key(self) -> str:
        return f"payment:{self.transaction_id}"


class AccessCodeEvidence(_Evidence):
    """A redeemed access code."""
    method: Literal["access_code"] = "access_code"
    code: str = Field(..., min_length=1)
    code_type: CodeType = CodeType.SINGLE_USE

    @property
    def idempotency_key(self) -> str:
        return f"access_code:{self.code}"


class AdminGrantEvidence(_Evidence):
    """A manual grant by an administrator."""
    method: Literal["admin_grant"] = "admin_grant"
    grant_id: str = Field(..., min_length=1)
    granted_by: str = Field(..., min_length=1)
    note: Optional[str] = None

    @property
    def idempotency_key(self) -> str:
        return f"admin_grant:{self.grant_id}"


GrantEvidence = Annotated[
    Union[PaymentEvidence, AccessCodeEvidence, AdminGrantEvidence],
    Field(discriminator="method")
]


class Grant(BaseModel):
    """A grant event as submitted to the resolver."""
    evidence: GrantEvidence
    expires_at: Optional[datetime] = None
    max_attempts: Optional[int] = Field(None, ge=0)
    user_email: Optional[str] = None

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class GrantEntry(BaseModel):
    """One applied grant in a record's history."""
    model_config = ConfigDict(extra="forbid")

    evidence: GrantEvidence
    granted_at: datetime
    expires_at: Optional[datetime] = None

    @field_validator("granted_at", "expires_at")
    @classmethod
    def normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class ExamUsage(BaseModel):
    """Attempt usage for one exam."""
    model_config = ConfigDict(extra="forbid")

    count: int = Field(0, ge=0)
    extra_attempts: int = Field(0, ge=0)
    completed_attempt_ids: List[str] = Field(default_factory=list)
    best_score: Optional[int] = None
    best_percentage: Optional[float] = None
    last_attempt_at: Optional[datetime] = None

    @field_validator("last_attempt_at")
    @classmethod
    def normalize_last_attempt(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def completed(self) -> bool:
        return bool(self.completed_attempt_ids)


class AdminSettings(BaseModel):
    """Administrator overrides."""
    model_config = ConfigDict(extra="forbid")

    max_attempts: Optional[int] = Field(None, ge=0)
    notes: Optional[str] = None


class AccessRecord(BaseModel):
    """Entitlement state for one user and exam category."""
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(..., min_length=1)
    user_email: Optional[str] = None
    exam_category: ExamCategory
    has_access: bool
    access_method: AccessMethod
    access_granted_at: datetime
    access_expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revocations: List[datetime] = Field(default_factory=list)
    grants: List[GrantEntry] = Field(..., min_length=1)
    attempts_by_exam: Dict[str, ExamUsage] = Field(default_factory=dict)
    admin_settings: AdminSettings = Field(default_factory=AdminSettings)
    created_at: datetime
    updated_at: datetime

    @field_validator(
        "access_granted_at", "access_expires_at", "revoked_at", "created_at", "updated_at"
    )
    @classmethod
    def normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @field_validator("revocations")
    @classmethod
    def normalize_revocations(cls, value: List[datetime]) -> List[datetime]:
        return [ensure_utc(v) for v in value]

    @model_validator(mode="after")
    def check_revocation_flag(self) -> "AccessRecord":
        if self.has_access and self.revoked_at is not None:
            raise ValueError("record cannot hold access while revoked")
        if not self.has_access and self.revoked_at is None:
            raise ValueError("access can only be withdrawn by a revocation")
        return self

    @staticmethod
    def document_key(user_id: str, exam_category: ExamCategory) -> str:
        return f"{user_id}:{ExamCategory(exam_category).value}"

    @property
    def key(self) -> str:
        return self.document_key(self.user_id, self.exam_category)

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime) -> bool:
        return self.access_expires_at is not None and self.access_expires_at <= now

    def is_active(self, now: datetime) -> bool:
        """Access check evaluated at read time, never from the stored flag alone."""
        return self.has_access and not self.is_revoked and not self.is_expired(now)

    def has_grant(self, idempotency_key: str) -> bool:
        return any(entry.evidence.idempotency_key == idempotency_key for entry in self.grants)

    def usage_for(self, exam_id: str) -> ExamUsage:
        return self.attempts_by_exam.get(exam_id) or ExamUsage()

    def max_attempts_for(self, exam_id: str, default_max_attempts: int) -> int:
        base = self.admin_settings.max_attempts
        if base is None:
            base = default_max_attempts
        return base + self.usage_for(exam_id).extra_attempts

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, body: Dict[str, Any]) -> "AccessRecord":
        """Validate a stored document; malformed documents raise loudly."""
        try:
            return cls.model_validate(body)
        except PydanticValidationError as e:
            raise MalformedRecord(
                "Stored access record failed validation",
                details={"errors": e.errors(include_url=False, include_input=False, include_context=False)}
            ) from e
