"""
Request and response bodies for the Access Service HTTP API.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .records.models import AccessRecord, ExamCategory, PaymentProvider


class AccessStatusResponse(BaseModel):
    user_id: str
    exam_category: ExamCategory
    has_access: bool
    reason: str
    expires_at: Optional[datetime] = None
    access_method: Optional[str] = None
    max_attempts: Optional[int] = None
    attempts_used: Optional[int] = None
    remaining_attempts: Optional[int] = None
    cached: bool = False


class RedeemCodeRequest(BaseModel):
    code: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    user_email: Optional[str] = None


class ValidateCodeRequest(BaseModel):
    code: str = Field(..., min_length=1)
    user_id: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    """Client report of a completed checkout.

    ``reference`` is the Paystack reference or the Flutterwave transaction id.
    """
    provider: PaymentProvider
    reference: str = Field(..., min_length=1)
    user_id: Optional[str] = None


class StartAttemptRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    exam_id: str = Field(..., min_length=1)


class SaveProgressRequest(BaseModel):
    answers: Dict[int, str] = Field(default_factory=dict)
    flagged: Optional[List[int]] = None


class SubmitAttemptRequest(BaseModel):
    answers: Optional[Dict[int, str]] = None


class AdminGrantRequest(BaseModel):
    """Manual grant. Re-sending the same ``grant_id`` is a no-op."""
    user_id: str = Field(..., min_length=1)
    exam_category: ExamCategory
    granted_by: str = Field("admin", min_length=1)
    grant_id: Optional[str] = None
    user_email: Optional[str] = None
    valid_for_days: Optional[int] = Field(None, ge=1)
    max_attempts: Optional[int] = Field(None, ge=0)
    note: Optional[str] = None


class AdminRevokeRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    exam_category: ExamCategory
    revoked_by: Optional[str] = None


class AdminSettingsRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    exam_category: ExamCategory
    max_attempts: Optional[int] = Field(None, ge=0)
    notes: Optional[str] = None


class ResetAttemptsRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    exam_category: ExamCategory
    exam_id: str = Field(..., min_length=1)


class CreateCodesRequest(BaseModel):
    exam_category: ExamCategory = ExamCategory.RM
    count: int = Field(1, ge=1, le=500)
    valid_for_days: int = Field(90, ge=1)
    max_uses: int = Field(1, ge=1)
    expires_in_days: int = Field(90, ge=1)
    description: Optional[str] = None
    created_by: str = "admin"


class AccessRecordListResponse(BaseModel):
    records: List[AccessRecord]
    total: int


class GrantResponse(BaseModel):
    status: str
    record: AccessRecord


class RedeemCodeResponse(BaseModel):
    success: bool
    reason: str
    code: str
    exam_category: Optional[ExamCategory] = None
    remaining_uses: Optional[int] = None
    already_redeemed: bool = False
    grant_status: Optional[str] = None
    access_expires_at: Optional[datetime] = None


class ValidateCodeResponse(BaseModel):
    valid: bool
    reason: str
    code: str
    exam_category: Optional[ExamCategory] = None
    remaining_uses: Optional[int] = None
    valid_for_days: Optional[int] = None
    already_redeemed: bool = False


class AutoSubmitResponse(BaseModel):
    closed: int
    attempt_ids: List[str]


class WebhookResponse(BaseModel):
    status: str
    transaction_id: Optional[str] = None
    user_id: Optional[str] = None
    exam_category: Optional[str] = None
    reason: Optional[str] = None


class EligibilityResponse(BaseModel):
    user_id: str
    exam_id: str
    can_start: bool
    reason: str
    attempts_used: int
    max_attempts: int
    remaining_attempts: int


class StatisticsResponse(BaseModel):
    exam_id: str
    total_attempts: int
    completed_attempts: int
    abandoned_attempts: int
    unique_users: int
    average_percentage: float
    highest_percentage: float
    pass_rate: float
    average_time_spent_seconds: int


class ReviewResponse(BaseModel):
    attempt: Dict[str, Any]
    exam: Dict[str, Any]
