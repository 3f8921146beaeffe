"""
Access code data models.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Dict, Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from shared.errors import MalformedRecord
from ..records.models import CodeType, ExamCategory, ensure_utc


class AccessCode(BaseModel):
    """An issued access code."""
    model_config = ConfigDict(extra="forbid")

    code: str = Field(..., min_length=4, max_length=32)
    exam_category: ExamCategory
    valid_for_days: int = Field(90, ge=1)
    max_uses: int = Field(1, ge=1)
    current_uses: int = Field(0, ge=0)
    is_active: bool = True
    expires_at: datetime
    created_by: str = "admin"
    description: Optional[str] = None
    redeemed_by: List[str] = Field(default_factory=list)
    created_at: datetime

    @field_validator("expires_at", "created_at")
    @classmethod
    def normalize_timestamps(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def code_type(self) -> CodeType:
        return CodeType.SINGLE_USE if self.max_uses == 1 else CodeType.MULTI_USE

    @property
    def remaining_uses(self) -> int:
        return max(0, self.max_uses - self.current_uses)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, body: Dict[str, Any]) -> "AccessCode":
        try:
            return cls.model_validate(body)
        except PydanticValidationError as e:
            raise MalformedRecord(
                "Stored access code failed validation",
                details={"errors": e.errors(include_url=False, include_input=False, include_context=False)}
            ) from e


class RedemptionReason:
    """Reason codes for redemption outcomes."""
    VALID = "valid"
    REDEEMED = "redeemed"
    ALREADY_REDEEMED = "already_redeemed"
    INVALID_CODE = "invalid_code"
    CODE_INACTIVE = "code_inactive"
    CODE_EXPIRED = "code_expired"
    CODE_EXHAUSTED = "code_exhausted"
    ACCESS_REVOKED = "access_revoked"
    ACCESS_EXPIRED = "access_expired"


@dataclass
class RedemptionResult:
    """Outcome of redeeming a code."""
    success: bool
    reason: str
    code: str
    granted_category: Optional[ExamCategory] = None
    remaining_uses: Optional[int] = None
    code_type: Optional[CodeType] = None
    valid_for_days: Optional[int] = None
    already_redeemed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["granted_category"] = self.granted_category.value if self.granted_category else None
        data["code_type"] = self.code_type.value if self.code_type else None
        return data
