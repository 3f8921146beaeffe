"""
Exam definitions available to the attempt gate.
"""

import json
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from shared.errors import NotFound, ValidationError
from shared.logging import get_logger

from ..records.models import ExamCategory


class ExamDefinition(BaseModel):
    """One sittable exam paper."""
    exam_id: str = Field(..., min_length=1)
    exam_category: ExamCategory
    title: str
    paper: int = Field(1, ge=1)
    duration_minutes: int = Field(..., ge=1)
    question_count: int = Field(0, ge=0)
    answer_key: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def fill_question_count(self) -> "ExamDefinition":
        if not self.question_count:
            self.question_count = len(self.answer_key)
        elif self.answer_key and len(self.answer_key) != self.question_count:
            raise ValueError("answer_key length must match question_count")
        return self


class ExamCatalog:
    """In-process lookup of exam definitions."""

    def __init__(self, exams: Optional[List[ExamDefinition]] = None):
        self._exams: Dict[str, ExamDefinition] = {}
        self.logger = get_logger("access.exams.catalog")
        for exam in exams or []:
            self.register(exam)

    @classmethod
    def load_file(cls, path: Union[str, Path]) -> "ExamCatalog":
        """Load a JSON list of exams, or an object with an ``exams`` list."""
        try:
            raw = json.loads(Path(path).read_text())
            entries = raw.get("exams", []) if isinstance(raw, dict) else raw
            catalog = cls([ExamDefinition.model_validate(entry) for entry in entries])
        except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
            raise ValidationError("Exam catalog could not be read", details={"path": str(path), "error": str(e)}) from e

        catalog.logger.info("Exam catalog loaded", path=str(path), exams=len(catalog))
        return catalog

    def register(self, exam: ExamDefinition):
        self._exams[exam.exam_id] = exam

    def get(self, exam_id: str) -> ExamDefinition:
        exam = self._exams.get(exam_id)
        if exam is None:
            raise NotFound("Exam not found", details={"exam_id": exam_id})
        return exam

    def list(self, exam_category: Optional[ExamCategory] = None) -> List[ExamDefinition]:
        exams = list(self._exams.values())
        if exam_category is not None:
            exams = [e for e in exams if e.exam_category == ExamCategory(exam_category)]
        return sorted(exams, key=lambda e: (e.exam_category.value, e.paper, e.exam_id))

    def __len__(self) -> int:
        return len(self._exams)
