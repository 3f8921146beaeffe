"""
Unit tests for access code issuing and redemption.
"""

import asyncio
from datetime import timedelta
from unittest.mock import patch

import pytest

from shared.errors import NotFound

from service_access.app.codes.manager import CODE_ALPHABET, AccessCodeManager, normalize_code
from service_access.app.codes.models import RedemptionReason
from service_access.app.records.models import AccessMethod, CodeType, ExamCategory
from service_access.app.resolver.resolver import GrantStatus


class TestAccessCodeManager:
    """Test cases for AccessCodeManager."""

    @pytest.mark.asyncio
    async def test_create_code(self, codes, clock):
        code = await codes.create_code(ExamCategory.RM, description="batch-1")

        assert len(code.code) == 8
        assert all(ch in CODE_ALPHABET for ch in code.code)
        assert code.max_uses == 1
        assert code.valid_for_days == 90
        assert code.code_type == CodeType.SINGLE_USE
        assert code.expires_at == clock() + timedelta(days=90)

        stored = await codes.get_code(code.code)
        assert stored.description == "batch-1"

    @pytest.mark.asyncio
    async def test_create_code_retries_collisions(self, codes):
        with patch.object(AccessCodeManager, "generate_code", side_effect=["DUPL1234", "DUPL1234", "FRESH123"]):
            first = await codes.create_code(ExamCategory.RM)
            second = await codes.create_code(ExamCategory.RM)

        assert first.code == "DUPL1234"
        assert second.code == "FRESH123"

    @pytest.mark.asyncio
    async def test_get_missing_code(self, codes):
        with pytest.raises(NotFound):
            await codes.get_code("NOPE0000")

    @pytest.mark.asyncio
    async def test_list_codes_newest_first(self, codes, clock):
        older = await codes.create_code(ExamCategory.RM)
        clock.advance(minutes=5)
        newer = await codes.create_code(ExamCategory.RN)

        listed = await codes.list_codes()

        assert [c.code for c in listed] == [newer.code, older.code]

    @pytest.mark.asyncio
    async def test_redeem_consumes_a_use(self, codes):
        code = await codes.create_code(ExamCategory.RM)

        result = await codes.redeem(code.code, "u1")

        assert result.success is True
        assert result.reason == RedemptionReason.REDEEMED
        assert result.granted_category == ExamCategory.RM
        assert result.remaining_uses == 0
        stored = await codes.get_code(code.code)
        assert stored.current_uses == 1
        assert stored.redeemed_by == ["u1"]

    @pytest.mark.asyncio
    async def test_redeem_normalizes_input(self, codes):
        code = await codes.create_code(ExamCategory.RM)
        messy = f"  {code.code[:4].lower()} {code.code[4:].lower()} "

        result = await codes.redeem(messy, "u1")

        assert normalize_code(messy) == code.code
        assert result.success is True

    @pytest.mark.asyncio
    async def test_same_user_redeeming_again(self, codes):
        code = await codes.create_code(ExamCategory.RM)
        await codes.redeem(code.code, "u1")

        again = await codes.redeem(code.code, "u1")

        assert again.success is True
        assert again.already_redeemed is True
        assert again.reason == RedemptionReason.ALREADY_REDEEMED
        assert (await codes.get_code(code.code)).current_uses == 1

    @pytest.mark.asyncio
    async def test_single_use_code_exhausted(self, codes):
        code = await codes.create_code(ExamCategory.RM)
        await codes.redeem(code.code, "u1")

        result = await codes.redeem(code.code, "u2")

        assert result.success is False
        assert result.reason == RedemptionReason.CODE_EXHAUSTED

    @pytest.mark.asyncio
    async def test_unknown_code(self, codes):
        assert (await codes.redeem("ZZZZ9999", "u1")).reason == RedemptionReason.INVALID_CODE
        assert (await codes.redeem("   ", "u1")).reason == RedemptionReason.INVALID_CODE

    @pytest.mark.asyncio
    async def test_expired_code(self, codes, clock):
        code = await codes.create_code(ExamCategory.RM, expires_in_days=10)

        clock.advance(days=11)
        result = await codes.redeem(code.code, "u1")

        assert result.success is False
        assert result.reason == RedemptionReason.CODE_EXPIRED

    @pytest.mark.asyncio
    async def test_deactivated_code(self, codes):
        code = await codes.create_code(ExamCategory.RM)

        deactivated = await codes.deactivate(code.code.lower())
        result = await codes.redeem(code.code, "u1")

        assert deactivated.is_active is False
        assert result.reason == RedemptionReason.CODE_INACTIVE

    @pytest.mark.asyncio
    async def test_validate_does_not_consume(self, codes):
        code = await codes.create_code(ExamCategory.RN, valid_for_days=30, max_uses=2)

        result = await codes.validate(code.code.lower())

        assert result.success is True
        assert result.reason == RedemptionReason.VALID
        assert result.granted_category == ExamCategory.RN
        assert result.remaining_uses == 2
        assert result.valid_for_days == 30
        assert (await codes.get_code(code.code)).current_uses == 0

    @pytest.mark.asyncio
    async def test_validate_uses_redemption_reasons(self, codes, clock):
        exhausted = await codes.create_code(ExamCategory.RM)
        await codes.redeem(exhausted.code, "u1")
        inactive = await codes.create_code(ExamCategory.RM)
        await codes.deactivate(inactive.code)
        expiring = await codes.create_code(ExamCategory.RM, expires_in_days=1)
        clock.advance(days=2)

        assert (await codes.validate("ZZZZ9999")).reason == RedemptionReason.INVALID_CODE
        assert (await codes.validate("")).reason == RedemptionReason.INVALID_CODE
        assert (await codes.validate(exhausted.code)).reason == RedemptionReason.CODE_EXHAUSTED
        assert (await codes.validate(inactive.code)).reason == RedemptionReason.CODE_INACTIVE
        assert (await codes.validate(expiring.code)).reason == RedemptionReason.CODE_EXPIRED

    @pytest.mark.asyncio
    async def test_validate_for_user_who_redeemed(self, codes):
        code = await codes.create_code(ExamCategory.RM)
        await codes.redeem(code.code, "u1")

        mine = await codes.validate(code.code, "u1")
        theirs = await codes.validate(code.code, "u2")

        assert mine.success is True
        assert mine.already_redeemed is True
        assert theirs.success is False
        assert theirs.reason == RedemptionReason.CODE_EXHAUSTED

    @pytest.mark.asyncio
    async def test_deactivate_missing_code(self, codes):
        with pytest.raises(NotFound):
            await codes.deactivate("NOPE0000")

    @pytest.mark.asyncio
    async def test_concurrent_redemptions_respect_max_uses(self, codes):
        code = await codes.create_code(ExamCategory.RM, max_uses=2)

        results = await asyncio.gather(*[codes.redeem(code.code, f"user-{i}") for i in range(3)])

        assert sum(1 for r in results if r.success) == 2
        assert [r.reason for r in results].count(RedemptionReason.CODE_EXHAUSTED) == 1
        stored = await codes.get_code(code.code)
        assert stored.current_uses == 2
        assert stored.code_type == CodeType.MULTI_USE


class TestCodeRedemptionService:
    """Redemption turned into grants."""

    @pytest.mark.asyncio
    async def test_redeem_and_grant(self, codes, redemptions, resolver, clock):
        code = await codes.create_code(ExamCategory.RN, valid_for_days=30)

        result, outcome = await redemptions.redeem_and_grant(code.code, "u1", "u1@example.com")

        assert result.success is True
        assert outcome.status == GrantStatus.PERSISTED
        assert outcome.record.access_method == AccessMethod.ACCESS_CODE
        assert outcome.record.access_expires_at == clock() + timedelta(days=30)
        assert outcome.record.user_email == "u1@example.com"
        assert (await resolver.resolve_access("u1", ExamCategory.RN)).has_access is True

    @pytest.mark.asyncio
    async def test_retried_redemption_does_not_grant_twice(self, codes, redemptions):
        code = await codes.create_code(ExamCategory.RM)
        await redemptions.redeem_and_grant(code.code, "u1")

        result, outcome = await redemptions.redeem_and_grant(code.code, "u1")

        assert result.already_redeemed is True
        assert outcome.status == GrantStatus.DUPLICATE
        assert len(outcome.record.grants) == 1

    @pytest.mark.asyncio
    async def test_rejected_code_grants_nothing(self, redemptions, resolver):
        result, outcome = await redemptions.redeem_and_grant("BADCODE1", "u1")

        assert result.success is False
        assert outcome is None
        assert await resolver.get_record("u1", ExamCategory.RM) is None

    @pytest.mark.asyncio
    async def test_redeeming_again_after_revoke_reports_revoked(self, codes, redemptions, resolver):
        code = await codes.create_code(ExamCategory.RM)
        await redemptions.redeem_and_grant(code.code, "u1")
        await resolver.revoke_access("u1", ExamCategory.RM)

        result, outcome = await redemptions.redeem_and_grant(code.code, "u1")

        assert result.success is False
        assert result.reason == RedemptionReason.ACCESS_REVOKED
        assert outcome.status == GrantStatus.DUPLICATE
        assert (await resolver.resolve_access("u1", ExamCategory.RM)).has_access is False

    @pytest.mark.asyncio
    async def test_redeeming_again_after_expiry_reports_expired(self, codes, redemptions, clock):
        code = await codes.create_code(ExamCategory.RM, valid_for_days=5, expires_in_days=30)
        await redemptions.redeem_and_grant(code.code, "u1")

        clock.advance(days=6)
        result, _ = await redemptions.redeem_and_grant(code.code, "u1")

        assert result.success is False
        assert result.reason == RedemptionReason.ACCESS_EXPIRED
