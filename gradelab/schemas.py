"""
GradeLab - Request schemas
Pydantic models for every JSON body the API accepts. Field names follow the
database columns, except the extract-text, evaluate-answer, analysis and
question-generation bodies which keep the camelCase names their callers send.
"""

import re
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from prompts.evaluation_prompts import RUBRIC_CRITERIA

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
GENDERS = ("Male", "Female", "Other")


def _check_date(v: Optional[str]) -> Optional[str]:
    if v is not None and v != "" and not _DATE_RE.match(v):
        raise ValueError("date must be in YYYY-MM-DD format")
    return v


# ─────────────────────────────────────────────────────────
# Classes / Subjects
# ─────────────────────────────────────────────────────────

class ClassCreate(BaseModel):
    name: str = Field(min_length=1)
    year: str = Field(min_length=1)
    grade: Optional[str] = None
    department: Optional[str] = None
    user_id: Optional[str] = None


class ClassUpdate(BaseModel):
    name: Optional[str] = None
    year: Optional[str] = None
    grade: Optional[str] = None
    department: Optional[str] = None


class SubjectCreate(BaseModel):
    name: str = Field(min_length=1)
    code: str = Field(min_length=1)
    class_id: Optional[str] = None
    semester: Optional[str] = None
    information: Optional[str] = None
    user_id: Optional[str] = None


class SubjectUpdate(BaseModel):
    name: Optional[str] = None
    code: Optional[str] = None
    class_id: Optional[str] = None
    semester: Optional[str] = None
    information: Optional[str] = None


class ClassSubjectLink(BaseModel):
    class_id: str
    subject_id: str
    user_id: Optional[str] = None


# ─────────────────────────────────────────────────────────
# Students
# ─────────────────────────────────────────────────────────

class StudentBase(BaseModel):
    year: Optional[str] = None
    gender: Optional[str] = None
    date_of_birth: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    parent_name: Optional[str] = None
    parent_contact: Optional[str] = None
    notes: Optional[str] = None
    department: Optional[str] = None
    class_id: Optional[str] = None

    @field_validator("gender")
    @classmethod
    def validate_gender(cls, v):
        if v and v not in GENDERS:
            raise ValueError(f"gender must be one of: {', '.join(GENDERS)}")
        return v

    @field_validator("date_of_birth")
    @classmethod
    def validate_date_of_birth(cls, v):
        return _check_date(v)


class StudentCreate(StudentBase):
    name: str = Field(min_length=1)
    roll_number: str = Field(min_length=1)
    gr_number: str = Field(min_length=1)
    user_id: Optional[str] = None


class StudentUpdate(StudentBase):
    name: Optional[str] = None
    roll_number: Optional[str] = None
    gr_number: Optional[str] = None


class AssignClassRequest(BaseModel):
    class_id: Optional[str] = None


class EnrollmentCreate(BaseModel):
    student_id: str
    subject_id: str
    user_id: Optional[str] = None


# ─────────────────────────────────────────────────────────
# Tests / Results
# ─────────────────────────────────────────────────────────

class TestCreate(BaseModel):
    title: str = Field(min_length=1)
    date: str
    max_marks: float = Field(default=100.0, gt=0)
    subject_id: str
    class_id: str
    user_id: Optional[str] = None

    @field_validator("date")
    @classmethod
    def validate_date(cls, v):
        return _check_date(v)


class TestUpdate(BaseModel):
    title: Optional[str] = None
    date: Optional[str] = None
    max_marks: Optional[float] = Field(default=None, gt=0)
    subject_id: Optional[str] = None
    class_id: Optional[str] = None

    @field_validator("date")
    @classmethod
    def validate_date(cls, v):
        return _check_date(v)


class ResultCreate(BaseModel):
    test_id: str
    student_id: str
    marks_obtained: float = Field(ge=0)


class ResultUpdate(BaseModel):
    marks_obtained: float = Field(ge=0)


class ResultItem(BaseModel):
    student_id: str
    marks_obtained: float = Field(ge=0)


class BulkResultsRequest(BaseModel):
    results: List[ResultItem]


# ─────────────────────────────────────────────────────────
# Papers / extraction
# ─────────────────────────────────────────────────────────

class PaperLinkRequest(BaseModel):
    test_id: str


class ExtractTextRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_type: str = Field(default="question", alias="documentType")
    image_urls: Optional[List[str]] = Field(default=None, alias="imageUrls")
    base64_images: Optional[List[str]] = Field(default=None, alias="base64Images")
    sheet_id: Optional[str] = Field(default=None, alias="sheetId")
    paper_id: Optional[str] = Field(default=None, alias="paperId")
    prompt: Optional[str] = None


class GenerateAnswerKeyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    paper_id: str = Field(alias="paperId", min_length=1)


# ─────────────────────────────────────────────────────────
# Grading
# ─────────────────────────────────────────────────────────

class RubricIn(BaseModel):
    accuracy: int = 3
    relevance: int = 3
    clarity: int = 3
    structure: int = 3
    language: int = 3

    @field_validator(*RUBRIC_CRITERIA)
    @classmethod
    def validate_level(cls, v):
        if not 1 <= v <= 5:
            raise ValueError("strictness level must be between 1 and 5")
        return v


class StudentInfoIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = "Unknown Student"
    roll_number: str = Field(default="N/A", alias="rollNumber")
    class_name: str = Field(default="N/A", alias="class")
    subject: str = "N/A"


class EvaluateAnswerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question_paper: str = Field(alias="questionPaper")
    answer_key: str = Field(alias="answerKey")
    student_answer_sheet: str = Field(alias="studentAnswerSheet")
    student_info: StudentInfoIn = Field(default_factory=StudentInfoIn, alias="studentInfo")
    rubric: Optional[RubricIn] = None


# ─────────────────────────────────────────────────────────
# Paper analysis / question bank
# ─────────────────────────────────────────────────────────

class CourseOutcomeIn(BaseModel):
    description: str = Field(min_length=1)
    user_id: Optional[str] = None


class AnalyzePaperRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(default=None, alias="userId")


class AnalyzeTextRequest(BaseModel):
    """Analyse text that is not stored as a paper; course outcomes are given inline."""
    model_config = ConfigDict(populate_by_name=True)

    extracted_text: str = Field(alias="extractedText", min_length=1)
    course_outcomes: List[str] = Field(default_factory=list, alias="courseOutcomes")


class TheoryDistribution(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mark1: int = Field(default=0, ge=0, alias="mark1Questions")
    mark2: int = Field(default=0, ge=0, alias="mark2Questions")
    mark4: int = Field(default=0, ge=0, alias="mark4Questions")
    mark8: int = Field(default=0, ge=0, alias="mark8Questions")

    def by_marks(self) -> dict:
        return {1: self.mark1, 2: self.mark2, 4: self.mark4, 8: self.mark8}


class GenerateQuestionsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject_id: str = Field(alias="subjectId", min_length=1)
    topic: str = Field(min_length=1)
    question_type: str = Field(default="mcq", alias="questionType")
    mcq_count: int = Field(default=10, ge=0, alias="mcqCount")
    theory: TheoryDistribution = Field(default_factory=TheoryDistribution, alias="theoryDistribution")
    difficulty: int = Field(default=50, ge=0, le=100)
    blooms_taxonomy: Optional[dict] = Field(default=None, alias="bloomsTaxonomy")
    material_ids: List[str] = Field(default_factory=list, alias="materialIds")
    save: bool = True
    user_id: Optional[str] = Field(default=None, alias="userId")

    @field_validator("question_type")
    @classmethod
    def validate_question_type(cls, v):
        v = v.lower()
        if v not in ("mcq", "theory", "mixed"):
            raise ValueError("questionType must be mcq, theory or mixed")
        return v


class QuestionUpdate(BaseModel):
    question_text: Optional[str] = None
    answer_text: Optional[str] = None
    bloom_level: Optional[str] = None
    difficulty: Optional[int] = Field(default=None, ge=0, le=100)
    marks: Optional[int] = None
    course_outcome_id: Optional[str] = None
    options: Optional[List[dict]] = None

    @field_validator("marks")
    @classmethod
    def validate_marks(cls, v):
        if v is not None and v not in (1, 2, 4, 8):
            raise ValueError("marks must be 1, 2, 4 or 8")
        return v


class DeleteQuestionsRequest(BaseModel):
    ids: List[str] = Field(min_length=1)
