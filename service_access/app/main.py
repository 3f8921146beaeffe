"""
Access service for the Exam Access Layer.

Serves entitlement reads, code redemption, payment webhooks, the attempt
gate and the admin surface over one versioned document store.
"""

import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from fastapi import Body, Depends, Header, Query
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import AccessLayerException, AuthorizationError, ValidationError
from shared.observability import get_observability_manager
from shared.retry import RetryConfig

from .cache.redis_cache import StatusCache
from .codes.manager import AccessCodeManager, CodeRedemptionService
from .exams.attempts import ExamAttemptService
from .exams.catalog import ExamCatalog
from .exams.gate import ExamAttemptGate
from .payments.events import parse_webhook
from .payments.processor import WebhookProcessor, WebhookStatus
from .payments.verifier import PaymentVerifier
from .persistence.postgres import PostgresDocumentStore
from .persistence.store import DocumentStore, InMemoryDocumentStore
from .records.models import AdminGrantEvidence, ExamCategory, Grant, utcnow
from .resolver.resolver import EntitlementResolver
from .schemas import (
    AccessRecordListResponse, AccessStatusResponse, AdminGrantRequest, AdminRevokeRequest,
    AdminSettingsRequest, AutoSubmitResponse, CreateCodesRequest, EligibilityResponse, GrantResponse,
    RedeemCodeRequest, RedeemCodeResponse, ResetAttemptsRequest, ReviewResponse, SaveProgressRequest,
    StartAttemptRequest, StatisticsResponse, SubmitAttemptRequest, ValidateCodeRequest, ValidateCodeResponse,
    VerifyPaymentRequest, WebhookResponse,
)


def parse_category(value: str) -> ExamCategory:
    try:
        return ExamCategory(value.upper())
    except ValueError as e:
        raise ValidationError("Unknown exam category", details={"exam_category": value}) from e


class AccessService(BaseService):
    """Access service implementation."""

    def __init__(self,
                 config: Optional[ServiceConfig] = None,
                 store: Optional[DocumentStore] = None,
                 cache: Optional[StatusCache] = None,
                 catalog: Optional[ExamCatalog] = None,
                 verifier: Optional[PaymentVerifier] = None,
                 clock: Callable[[], datetime] = utcnow):
        super().__init__("access", 8010, config)

        self.observability = get_observability_manager("access", self.metrics)
        self.clock = clock

        self.store = store or self._create_store()
        self.cache = cache
        if self.cache is None and self.config.redis_url:
            self.cache = StatusCache(self.config.redis_url, ttl_seconds=self.config.status_cache_ttl_seconds)

        if catalog is None:
            catalog = (
                ExamCatalog.load_file(self.config.exam_catalog_path)
                if self.config.exam_catalog_path else ExamCatalog()
            )
        self.catalog = catalog

        self.resolver = EntitlementResolver(
            self.store,
            default_max_attempts=self.config.default_max_attempts,
            max_merge_retries=self.config.max_merge_retries,
            clock=clock,
            metrics=self.metrics
        )
        self.codes = AccessCodeManager(self.store, clock=clock, max_cas_retries=self.config.max_merge_retries)
        self.redemptions = CodeRedemptionService(self.codes, self.resolver)
        self.gate = ExamAttemptGate(self.resolver, self.catalog, metrics=self.metrics)
        self.attempts = ExamAttemptService(
            self.store, self.resolver, self.catalog, self.gate, max_cas_retries=self.config.max_merge_retries
        )

        self.verifier = verifier
        if self.verifier is None and (self.config.paystack_secret_key or self.config.flutterwave_secret_key):
            self.verifier = PaymentVerifier(
                paystack_secret_key=self.config.paystack_secret_key,
                flutterwave_secret_key=self.config.flutterwave_secret_key,
                timeout=self.config.payment_verify_timeout_seconds
            )
        self.webhooks = WebhookProcessor(
            self.resolver,
            verifier=self.verifier,
            payment_access_days=self.config.payment_access_days,
            retry_config=RetryConfig(
                max_attempts=self.config.grant_retry_attempts,
                base_delay=self.config.grant_retry_base_delay,
                max_delay=5.0
            ),
            clock=clock
        )

        self._setup_access_routes()
        self._setup_admin_routes()

    def _create_store(self) -> DocumentStore:
        if self.config.store_backend == "postgres":
            return PostgresDocumentStore(self.config.postgres_dsn, timeout_seconds=self.config.store_timeout_seconds)
        return InMemoryDocumentStore()

    async def _invalidate(self, user_id: str, exam_category: ExamCategory):
        if self.cache:
            await self.cache.invalidate(user_id, exam_category)

    async def require_admin(self, x_admin_token: Optional[str] = Header(None)):
        """Reject admin calls without the configured token."""
        expected = self.config.admin_token
        if not expected or not x_admin_token or not secrets.compare_digest(x_admin_token, expected):
            raise AuthorizationError("Admin token missing or invalid")

    def _setup_access_routes(self):
        """Set up user-facing routes."""

        @self.app.on_event("startup")
        async def startup():
            await self.start()

        @self.app.on_event("shutdown")
        async def shutdown():
            await self.stop()

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "access",
                "message": "Exam Access Layer - Access Service",
                "version": "1.0.0",
                "capabilities": ["entitlements", "access_codes", "payment_webhooks", "payment_verification", "attempt_gate"],
                "exam_categories": [c.value for c in ExamCategory]
            }

        @self.app.get("/access/{user_id}/{exam_category}", response_model=AccessStatusResponse)
        async def get_access(user_id: str,
                             exam_category: str,
                             cached: bool = Query(False),
                             exam_id: Optional[str] = Query(None)):
            """Resolve a user's access to an exam category."""
            category = parse_category(exam_category)
            self.observability.trace_request(user_id=user_id, exam_category=category.value)

            if cached and self.cache:
                status = await self.cache.get(user_id, category, exam_id)
                if status is not None:
                    return AccessStatusResponse(user_id=user_id, exam_category=category, cached=True, **status.to_dict())

            status, version = await self.resolver.resolve_access_versioned(user_id, category, exam_id)
            if self.cache and version is not None:
                await self.cache.set(user_id, category, status, exam_id)
                # A write between our read and the set would otherwise stay cached
                if await self.resolver.record_version(user_id, category) != version:
                    await self._invalidate(user_id, category)

            return AccessStatusResponse(user_id=user_id, exam_category=category, **status.to_dict())

        @self.app.post("/access-codes/redeem", response_model=RedeemCodeResponse)
        async def redeem_code(request: RedeemCodeRequest):
            """Redeem an access code and grant the category it unlocks."""
            self.observability.trace_request(user_id=request.user_id)

            result, outcome = await self.redemptions.redeem_and_grant(
                request.code, request.user_id, request.user_email
            )
            response = RedeemCodeResponse(
                success=result.success,
                reason=result.reason,
                code=result.code,
                exam_category=result.granted_category,
                remaining_uses=result.remaining_uses,
                already_redeemed=result.already_redeemed
            )
            if outcome is not None:
                response.grant_status = outcome.status.value
                response.access_expires_at = outcome.record.access_expires_at
                await self._invalidate(request.user_id, result.granted_category)
                self.observability.log_business_event(
                    "access_code_redeemed",
                    user_id=request.user_id,
                    code=result.code,
                    grant_status=outcome.status.value
                )

            if not result.success:
                return JSONResponse(status_code=400, content=response.model_dump(mode="json"))
            return response

        @self.app.post("/access-codes/validate", response_model=ValidateCodeResponse)
        async def validate_code(request: ValidateCodeRequest):
            """Check a code before redeeming it. Consumes nothing."""
            result = await self.codes.validate(request.code, request.user_id)
            return ValidateCodeResponse(
                valid=result.success,
                reason=result.reason,
                code=result.code,
                exam_category=result.granted_category,
                remaining_uses=result.remaining_uses,
                valid_for_days=result.valid_for_days,
                already_redeemed=result.already_redeemed
            )

        @self.app.post("/webhooks/{provider}", response_model=WebhookResponse)
        async def payment_webhook(provider: str, payload: Dict[str, Any] = Body(...)):
            """Receive a payment provider notification."""
            event = parse_webhook(provider.lower(), payload)
            if event is None:
                self.logger.info("Ignoring unhandled webhook event", provider=provider)
                return WebhookResponse(status=WebhookStatus.IGNORED.value, reason="unhandled_event")

            self.observability.trace_request(user_id=event.user_id, exam_category=event.exam_category.value)
            result = await self.webhooks.process(event)

            if result.status == WebhookStatus.GRANTED:
                await self._invalidate(event.user_id, event.exam_category)
                self.observability.log_business_event(
                    "payment_access_granted",
                    user_id=event.user_id,
                    transaction_id=event.transaction_id,
                    provider=event.provider.value
                )
            if result.status == WebhookStatus.UNCONFIRMED:
                self.observability.log_error(
                    "WEBHOOK_UNCONFIRMED",
                    result.reason,
                    transaction_id=event.transaction_id,
                    provider=event.provider.value
                )
                # Non-2xx so the gateway redelivers
                return JSONResponse(status_code=503, content=result.to_dict())
            return WebhookResponse(**result.to_dict())

        @self.app.post("/payments/verify", response_model=WebhookResponse)
        async def verify_payment(request: VerifyPaymentRequest):
            """Confirm a payment the client reports, then grant from the provider's record."""
            self.observability.trace_request(user_id=request.user_id)
            result = await self.webhooks.verify_and_grant(request.provider, request.reference, request.user_id)

            if result.status == WebhookStatus.GRANTED:
                await self._invalidate(result.user_id, parse_category(result.exam_category))
                self.observability.log_business_event(
                    "payment_access_granted",
                    user_id=result.user_id,
                    transaction_id=result.transaction_id,
                    provider=request.provider.value
                )
            if result.status == WebhookStatus.UNCONFIRMED:
                self.observability.log_error(
                    "PAYMENT_VERIFY_UNCONFIRMED",
                    result.reason,
                    transaction_id=request.reference,
                    provider=request.provider.value
                )
                return JSONResponse(status_code=503, content=result.to_dict())
            if result.status == WebhookStatus.IGNORED:
                return JSONResponse(status_code=400, content=result.to_dict())
            return WebhookResponse(**result.to_dict())

        @self.app.get("/exams/{exam_id}/eligibility/{user_id}", response_model=EligibilityResponse)
        async def check_eligibility(exam_id: str, user_id: str):
            """Whether the user could start the exam now. Consumes nothing."""
            self.observability.trace_request(user_id=user_id)
            decision = await self.gate.can_start_exam(user_id, exam_id)
            return EligibilityResponse(user_id=user_id, exam_id=exam_id, **decision.to_dict())

        @self.app.post("/attempts", status_code=201)
        async def start_attempt(request: StartAttemptRequest):
            """Reserve an attempt slot and open the attempt."""
            self.observability.trace_request(user_id=request.user_id)
            attempt = await self.attempts.start_attempt(request.user_id, request.exam_id)
            await self._invalidate(request.user_id, attempt.exam_category)
            self.observability.log_business_event(
                "attempt_started",
                user_id=request.user_id,
                exam_id=request.exam_id,
                attempt_id=attempt.attempt_id
            )
            return attempt.model_dump(mode="json")

        @self.app.get("/attempts/{attempt_id}")
        async def get_attempt(attempt_id: str):
            attempt = await self.attempts.get_attempt(attempt_id)
            return attempt.model_dump(mode="json")

        @self.app.put("/attempts/{attempt_id}/progress")
        async def save_progress(attempt_id: str, request: SaveProgressRequest):
            attempt = await self.attempts.save_progress(attempt_id, request.answers, request.flagged)
            return attempt.model_dump(mode="json")

        @self.app.post("/attempts/{attempt_id}/submit")
        async def submit_attempt(attempt_id: str, request: Optional[SubmitAttemptRequest] = None):
            answers = request.answers if request else None
            attempt = await self.attempts.submit_attempt(attempt_id, answers)
            await self._invalidate(attempt.user_id, attempt.exam_category)
            return attempt.model_dump(mode="json")

        @self.app.post("/attempts/{attempt_id}/abandon")
        async def abandon_attempt(attempt_id: str):
            attempt = await self.attempts.abandon_attempt(attempt_id)
            return attempt.model_dump(mode="json")

        @self.app.get("/attempts/{attempt_id}/review", response_model=ReviewResponse)
        async def review_attempt(attempt_id: str, user_id: str = Query(...)):
            """Closed attempt with the answer key, for its owner."""
            return await self.attempts.get_attempt_for_review(attempt_id, user_id)

        @self.app.get("/users/{user_id}/attempts")
        async def list_user_attempts(user_id: str):
            attempts = await self.attempts.list_user_attempts(user_id)
            return {
                "user_id": user_id,
                "attempts": [a.model_dump(mode="json") for a in attempts],
                "total": len(attempts)
            }

        @self.app.get("/exams/{exam_id}/leaderboard")
        async def leaderboard(exam_id: str, limit: int = Query(10, ge=1, le=100)):
            return {"exam_id": exam_id, "entries": await self.attempts.leaderboard(exam_id, limit)}

    def _setup_admin_routes(self):
        """Set up admin routes, all behind the admin token."""
        admin = [Depends(self.require_admin)]

        @self.app.post("/admin/access/grant", response_model=GrantResponse, dependencies=admin)
        async def admin_grant(request: AdminGrantRequest):
            """Grant access manually."""
            expires_at = None
            if request.valid_for_days:
                expires_at = self.clock() + timedelta(days=request.valid_for_days)

            grant = Grant(
                evidence=AdminGrantEvidence(
                    grant_id=request.grant_id or str(uuid.uuid4()),
                    granted_by=request.granted_by,
                    note=request.note
                ),
                expires_at=expires_at,
                max_attempts=request.max_attempts,
                user_email=request.user_email
            )
            outcome = await self.resolver.grant_access(request.user_id, request.exam_category, grant)
            await self._invalidate(request.user_id, request.exam_category)
            self.observability.log_business_event(
                "admin_access_granted",
                user_id=request.user_id,
                exam_category=request.exam_category.value,
                granted_by=request.granted_by,
                status=outcome.status.value
            )
            return GrantResponse(status=outcome.status.value, record=outcome.record)

        @self.app.post("/admin/access/revoke", dependencies=admin)
        async def admin_revoke(request: AdminRevokeRequest):
            """Revoke access until a new grant arrives."""
            record = await self.resolver.revoke_access(request.user_id, request.exam_category, request.revoked_by)
            await self._invalidate(request.user_id, request.exam_category)
            self.observability.log_business_event(
                "admin_access_revoked",
                user_id=request.user_id,
                exam_category=request.exam_category.value,
                revoked_by=request.revoked_by
            )
            return {"success": True, "record": record.to_document()}

        @self.app.put("/admin/access/settings", dependencies=admin)
        async def admin_settings(request: AdminSettingsRequest):
            record = await self.resolver.update_admin_settings(
                request.user_id, request.exam_category, request.max_attempts, request.notes
            )
            await self._invalidate(request.user_id, request.exam_category)
            return {"success": True, "record": record.to_document()}

        @self.app.post("/admin/access/reset-attempts", dependencies=admin)
        async def admin_reset_attempts(request: ResetAttemptsRequest):
            """Allow one more attempt at an exam."""
            record = await self.resolver.allow_retry(request.user_id, request.exam_category, request.exam_id)
            await self._invalidate(request.user_id, request.exam_category)
            return {"success": True, "record": record.to_document()}

        @self.app.get("/admin/access", response_model=AccessRecordListResponse, dependencies=admin)
        async def admin_list_access(exam_category: Optional[str] = Query(None)):
            category = parse_category(exam_category) if exam_category else None
            records = await self.resolver.list_records(category)
            return AccessRecordListResponse(records=records, total=len(records))

        @self.app.post("/admin/access-codes", status_code=201, dependencies=admin)
        async def admin_create_codes(request: CreateCodesRequest):
            """Generate a batch of access codes."""
            codes = []
            for _ in range(request.count):
                codes.append(await self.codes.create_code(
                    request.exam_category,
                    valid_for_days=request.valid_for_days,
                    max_uses=request.max_uses,
                    expires_in_days=request.expires_in_days,
                    description=request.description,
                    created_by=request.created_by
                ))
            self.observability.log_business_event(
                "access_codes_generated",
                count=len(codes),
                exam_category=request.exam_category.value
            )
            return {
                "message": f"Generated {len(codes)} access codes",
                "codes": [c.to_document() for c in codes]
            }

        @self.app.get("/admin/access-codes", dependencies=admin)
        async def admin_list_codes():
            codes = await self.codes.list_codes()
            return {
                "codes": [c.to_document() for c in codes],
                "total": len(codes),
                "active": sum(1 for c in codes if c.is_active and c.remaining_uses > 0),
                "used": sum(1 for c in codes if c.current_uses > 0)
            }

        @self.app.post("/admin/access-codes/{code}/deactivate", dependencies=admin)
        async def admin_deactivate_code(code: str):
            access_code = await self.codes.deactivate(code)
            return access_code.to_document()

        @self.app.get("/admin/exams/{exam_id}/statistics", response_model=StatisticsResponse, dependencies=admin)
        async def admin_exam_statistics(exam_id: str):
            return await self.attempts.exam_statistics(exam_id)

        @self.app.post("/admin/attempts/auto-submit", response_model=AutoSubmitResponse, dependencies=admin)
        async def admin_auto_submit():
            """Close every in-progress attempt past its deadline."""
            closed = await self.attempts.auto_submit_expired()
            return AutoSubmitResponse(closed=len(closed), attempt_ids=[a.attempt_id for a in closed])

    async def _check_dependencies(self):
        """Check access service dependencies."""
        dependencies = {
            "store": "ok" if await self.store.health_check() else "error",
            "exam_catalog": f"{len(self.catalog)} exams",
        }
        if self.cache:
            dependencies["redis"] = "ok" if await self.cache.health_check() else "error"
        if self.verifier:
            for provider, breaker in self.verifier.circuit_breakers.items():
                if self.verifier.enabled_for(provider):
                    dependencies[f"{provider.value}_verify"] = breaker.get_state()["state"]
        return dependencies

    async def start(self):
        """Start access service components."""
        await self.store.start()
        if self.cache:
            try:
                await self.cache.start()
            except AccessLayerException as e:
                self.logger.warning("Status cache unavailable, continuing without it", error=e.message)
                self.cache = None

        self.logger.info("Access service started", store=type(self.store).__name__, exams=len(self.catalog))

    async def stop(self):
        """Stop access service components."""
        await self.store.stop()
        if self.cache:
            await self.cache.stop()

        self.logger.info("Access service stopped")


def create_app():
    """Create access service application."""
    service = AccessService()
    return service.app


if __name__ == "__main__":
    service = AccessService()
    service.run()
