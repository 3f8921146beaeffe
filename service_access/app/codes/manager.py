"""
Access code issuing and redemption.
"""

import re
import secrets
import string
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from shared.errors import ConcurrentModification, NotFound, ValidationError
from shared.logging import get_logger

from ..persistence.store import ACCESS_CODES, DocumentStore
from ..records.models import AccessCodeEvidence, ExamCategory, Grant, utcnow
from ..resolver.resolver import EntitlementResolver, GrantOutcome
from .models import AccessCode, RedemptionReason, RedemptionResult


CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 8


def normalize_code(code: str) -> str:
    """Strip whitespace and upper-case a user-entered code."""
    return re.sub(r"\s+", "", code or "").upper()


class AccessCodeManager:
    """Creates, lists, deactivates and redeems access codes."""

    def __init__(self,
                 store: DocumentStore,
                 clock: Callable[[], datetime] = utcnow,
                 max_cas_retries: int = 5):
        self.store = store
        self.clock = clock
        self.max_cas_retries = max_cas_retries
        self.logger = get_logger("access.codes")

    @staticmethod
    def generate_code() -> str:
        return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))

    async def create_code(self,
                          exam_category: ExamCategory,
                          valid_for_days: int = 90,
                          max_uses: int = 1,
                          expires_in_days: int = 90,
                          description: Optional[str] = None,
                          created_by: str = "admin") -> AccessCode:
        """Issue a new code; regenerates on the rare collision."""
        if expires_in_days < 1:
            raise ValidationError("expires_in_days must be at least 1")

        now = self.clock()
        for _ in range(self.max_cas_retries):
            access_code = AccessCode(
                code=self.generate_code(),
                exam_category=exam_category,
                valid_for_days=valid_for_days,
                max_uses=max_uses,
                expires_at=now + timedelta(days=expires_in_days),
                created_by=created_by,
                description=description,
                created_at=now,
            )
            try:
                await self.store.put(ACCESS_CODES, access_code.code, access_code.to_document(), expected_version=0)
            except ConcurrentModification:
                continue

            self.logger.info(
                "Access code created",
                code=access_code.code,
                exam_category=access_code.exam_category.value,
                max_uses=max_uses,
                created_by=created_by
            )
            return access_code

        raise ConcurrentModification("Could not allocate a unique access code")

    async def get_code(self, code: str) -> AccessCode:
        stored = await self.store.get(ACCESS_CODES, normalize_code(code))
        if stored is None:
            raise NotFound("Access code not found", details={"code": normalize_code(code)})
        return AccessCode.from_document(stored.body)

    async def list_codes(self) -> List[AccessCode]:
        codes = [AccessCode.from_document(doc.body) for doc in await self.store.list(ACCESS_CODES)]
        return sorted(codes, key=lambda c: c.created_at, reverse=True)

    async def deactivate(self, code: str) -> AccessCode:
        code = normalize_code(code)
        for _ in range(self.max_cas_retries):
            stored = await self.store.get(ACCESS_CODES, code)
            if stored is None:
                raise NotFound("Access code not found", details={"code": code})
            access_code = AccessCode.from_document(stored.body)
            if not access_code.is_active:
                return access_code

            access_code.is_active = False
            try:
                await self.store.put(ACCESS_CODES, code, access_code.to_document(), expected_version=stored.version)
            except ConcurrentModification:
                continue
            self.logger.info("Access code deactivated", code=code)
            return access_code

        raise ConcurrentModification("Access code kept changing", details={"code": code})

    def _rejection(self, access_code: AccessCode) -> Optional[str]:
        """Why the code cannot take another redemption, or None."""
        if not access_code.is_active:
            return RedemptionReason.CODE_INACTIVE
        if self.clock() > access_code.expires_at:
            return RedemptionReason.CODE_EXPIRED
        if access_code.remaining_uses == 0:
            return RedemptionReason.CODE_EXHAUSTED
        return None

    async def validate(self, code: str, user_id: Optional[str] = None) -> RedemptionResult:
        """Check a code the way ``redeem`` would, without consuming a use."""
        code = normalize_code(code)
        stored = await self.store.get(ACCESS_CODES, code) if code else None
        if stored is None:
            return RedemptionResult(success=False, reason=RedemptionReason.INVALID_CODE, code=code)

        access_code = AccessCode.from_document(stored.body)
        result = RedemptionResult(
            success=True,
            reason=RedemptionReason.VALID,
            code=code,
            granted_category=access_code.exam_category,
            remaining_uses=access_code.remaining_uses,
            code_type=access_code.code_type,
            valid_for_days=access_code.valid_for_days,
        )
        if user_id and user_id in access_code.redeemed_by:
            result.reason = RedemptionReason.ALREADY_REDEEMED
            result.already_redeemed = True
            return result

        rejection = self._rejection(access_code)
        if rejection:
            result.success = False
            result.reason = rejection
        return result

    async def redeem(self, code: str, user_id: str) -> RedemptionResult:
        """Consume one use of ``code`` for ``user_id``.

        A user who already redeemed the code gets a successful result without
        consuming another use, so an interrupted redemption can be resumed.
        """
        code = normalize_code(code)
        if not code:
            return RedemptionResult(success=False, reason=RedemptionReason.INVALID_CODE, code=code)

        for _ in range(self.max_cas_retries):
            stored = await self.store.get(ACCESS_CODES, code)
            if stored is None:
                return RedemptionResult(success=False, reason=RedemptionReason.INVALID_CODE, code=code)

            access_code = AccessCode.from_document(stored.body)
            result = RedemptionResult(
                success=False,
                reason=RedemptionReason.REDEEMED,
                code=code,
                granted_category=access_code.exam_category,
                remaining_uses=access_code.remaining_uses,
                code_type=access_code.code_type,
                valid_for_days=access_code.valid_for_days,
            )

            if user_id in access_code.redeemed_by:
                result.success = True
                result.reason = RedemptionReason.ALREADY_REDEEMED
                result.already_redeemed = True
                return result
            rejection = self._rejection(access_code)
            if rejection:
                result.reason = rejection
                return result

            access_code.current_uses += 1
            access_code.redeemed_by.append(user_id)
            try:
                await self.store.put(ACCESS_CODES, code, access_code.to_document(), expected_version=stored.version)
            except ConcurrentModification:
                continue

            result.success = True
            result.remaining_uses = access_code.remaining_uses
            self.logger.info(
                "Access code redeemed",
                code=code,
                user_id=user_id,
                remaining_uses=access_code.remaining_uses
            )
            return result

        raise ConcurrentModification("Access code kept changing during redemption", details={"code": code})


class CodeRedemptionService:
    """Redeems a code and turns it into a grant on the user's record."""

    def __init__(self, codes: AccessCodeManager, resolver: EntitlementResolver):
        self.codes = codes
        self.resolver = resolver
        self.logger = get_logger("access.codes.redemption")

    async def redeem_and_grant(self, code: str, user_id: str,
                               user_email: Optional[str] = None) -> Tuple[RedemptionResult, Optional[GrantOutcome]]:
        result = await self.codes.redeem(code, user_id)
        if not result.success:
            self.logger.info("Access code rejected", code=result.code, user_id=user_id, reason=result.reason)
            return result, None

        grant = Grant(
            evidence=AccessCodeEvidence(code=result.code, code_type=result.code_type),
            expires_at=self.codes.clock() + timedelta(days=result.valid_for_days),
            user_email=user_email,
        )
        outcome = await self.resolver.grant_access(user_id, result.granted_category, grant)

        record = outcome.record
        if not outcome.persisted and not record.is_active(self.codes.clock()):
            # The grant from this code was already used up or withdrawn
            result.success = False
            result.reason = RedemptionReason.ACCESS_REVOKED if record.is_revoked else RedemptionReason.ACCESS_EXPIRED
            self.logger.info(
                "Redeemed code no longer confers access",
                code=result.code,
                user_id=user_id,
                reason=result.reason
            )
        return result, outcome
