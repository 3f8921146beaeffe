"""
Unit tests for access record models and the exam catalog.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from shared.errors import MalformedRecord, NotFound, ValidationError
from shared.test_helpers import DataFactory

from service_access.app.exams.catalog import ExamCatalog, ExamDefinition
from service_access.app.records.models import (
    AccessCodeEvidence, AccessMethod, AccessRecord, AdminGrantEvidence, AdminSettings, ExamCategory,
    ExamUsage, GrantEntry, PaymentEvidence,
)


NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def make_record(**overrides) -> AccessRecord:
    fields = dict(
        user_id="u1",
        exam_category=ExamCategory.RM,
        has_access=True,
        access_method=AccessMethod.PAYMENT,
        access_granted_at=NOW,
        access_expires_at=NOW + timedelta(days=90),
        grants=[GrantEntry(evidence=PaymentEvidence(transaction_id="t1", amount=2000), granted_at=NOW)],
        created_at=NOW,
        updated_at=NOW,
    )
    fields.update(overrides)
    return AccessRecord(**fields)


class TestEvidence:
    """Idempotency keys per grant source."""

    def test_idempotency_keys(self):
        assert PaymentEvidence(transaction_id="t1", amount=2000).idempotency_key == "payment:t1"
        assert AccessCodeEvidence(code="ABCD1234").idempotency_key == "access_code:ABCD1234"
        assert AdminGrantEvidence(grant_id="g1", granted_by="ops").idempotency_key == "admin_grant:g1"

    def test_evidence_is_immutable(self):
        evidence = PaymentEvidence(transaction_id="t1", amount=2000)

        with pytest.raises(PydanticValidationError):
            evidence.transaction_id = "t2"

    def test_discriminated_round_trip(self):
        entry = GrantEntry(evidence=AccessCodeEvidence(code="ABCD1234"), granted_at=NOW)

        restored = GrantEntry.model_validate(json.loads(entry.model_dump_json()))

        assert isinstance(restored.evidence, AccessCodeEvidence)


class TestAccessRecord:
    """Record invariants and derived access."""

    def test_document_key(self):
        assert AccessRecord.document_key("u1", ExamCategory.RN) == "u1:RN"
        assert make_record().key == "u1:RM"

    def test_active_until_expiry(self):
        record = make_record()

        assert record.is_active(NOW) is True
        assert record.is_active(NOW + timedelta(days=90)) is False
        assert record.is_expired(NOW + timedelta(days=90)) is True

    def test_no_expiry_never_expires(self):
        record = make_record(access_expires_at=None)

        assert record.is_active(NOW + timedelta(days=3650)) is True

    def test_access_flag_must_match_revocation(self):
        with pytest.raises(PydanticValidationError):
            make_record(has_access=True, revoked_at=NOW)
        with pytest.raises(PydanticValidationError):
            make_record(has_access=False)

        revoked = make_record(has_access=False, revoked_at=NOW, revocations=[NOW])
        assert revoked.is_revoked is True
        assert revoked.is_active(NOW) is False

    def test_record_needs_grant_history(self):
        with pytest.raises(PydanticValidationError):
            make_record(grants=[])

    def test_naive_timestamps_become_utc(self):
        record = make_record(access_granted_at=datetime(2025, 1, 1))

        assert record.access_granted_at.tzinfo is not None

    def test_attempt_limit_includes_extra_attempts(self):
        record = make_record(
            admin_settings=AdminSettings(max_attempts=2),
            attempts_by_exam={"rm-paper-1": ExamUsage(count=2, extra_attempts=1)},
        )

        assert record.max_attempts_for("rm-paper-1", 1) == 3
        assert record.max_attempts_for("rm-paper-2", 1) == 2
        assert make_record().max_attempts_for("rm-paper-1", 1) == 1

    def test_document_round_trip(self):
        record = make_record(attempts_by_exam={"rm-paper-1": ExamUsage(count=1)})

        restored = AccessRecord.from_document(json.loads(json.dumps(record.to_document())))

        assert restored.to_document() == record.to_document()
        assert restored.has_grant("payment:t1") is True

    def test_malformed_document(self):
        body = make_record().to_document()
        body["grants"] = "not-a-list"

        with pytest.raises(MalformedRecord) as exc_info:
            AccessRecord.from_document(body)

        assert exc_info.value.code == "MALFORMED_RECORD"
        assert exc_info.value.status_code == 503


class TestExamCatalog:
    """Exam definitions."""

    def test_question_count_from_answer_key(self):
        exam = ExamDefinition(
            exam_id="e1", exam_category=ExamCategory.RM, title="E1", duration_minutes=10, answer_key=["A", "B"]
        )

        assert exam.question_count == 2

    def test_mismatched_answer_key(self):
        with pytest.raises(PydanticValidationError):
            ExamDefinition(
                exam_id="e1", exam_category=ExamCategory.RM, title="E1", duration_minutes=10,
                question_count=3, answer_key=["A"]
            )

    def test_lookup(self):
        catalog = ExamCatalog([ExamDefinition.model_validate(e) for e in DataFactory.create_exams()])

        assert catalog.get("rn-paper-1").exam_category == ExamCategory.RN
        assert [e.exam_id for e in catalog.list(ExamCategory.RM)] == ["rm-paper-1", "rm-paper-2"]
        with pytest.raises(NotFound):
            catalog.get("missing")

    def test_load_file(self, tmp_path):
        path = tmp_path / "exams.json"
        path.write_text(json.dumps({"exams": DataFactory.create_exams()}))

        catalog = ExamCatalog.load_file(path)

        assert len(catalog) == 3

    def test_load_bad_file(self, tmp_path):
        path = tmp_path / "exams.json"
        path.write_text(json.dumps([{"exam_id": "broken"}]))

        with pytest.raises(ValidationError):
            ExamCatalog.load_file(path)
        with pytest.raises(ValidationError):
            ExamCatalog.load_file(tmp_path / "missing.json")
