"""
GradeLab - Database Models
SQLAlchemy ORM models mirroring the Supabase schema.

Ids are string UUIDs so rows copied between projects keep their identity.
JSON columns (evaluation_result, paper metadata) hold the raw grading output.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Float, Text, DateTime, ForeignKey, Boolean, JSON,
    UniqueConstraint, create_engine, inspect,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from gradelab.config import DATABASE_URL

Base = declarative_base()

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if "sqlite" in DATABASE_URL else {}
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    id         = Column(String(36), primary_key=True, default=_uuid)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


# ─────────────────────────────────────────────────────────
# Academics
# ─────────────────────────────────────────────────────────

class SchoolClass(TimestampMixin, Base):
    __tablename__ = "classes"

    name       = Column(String(200), nullable=False)
    year       = Column(String(20), nullable=False)
    grade      = Column(String(50))
    department = Column(String(200))
    user_id    = Column(String(36), index=True)

    students = relationship("Student", back_populates="school_class")
    subjects = relationship("Subject", back_populates="school_class")


class Subject(TimestampMixin, Base):
    __tablename__ = "subjects"

    name        = Column(String(200), nullable=False)
    code        = Column(String(50), nullable=False)
    class_id    = Column(String(36), ForeignKey("classes.id"), nullable=True)
    semester    = Column(String(20))
    information = Column(Text)
    user_id     = Column(String(36), index=True)

    school_class = relationship("SchoolClass", back_populates="subjects")


class ClassSubject(TimestampMixin, Base):
    __tablename__ = "class_subjects"
    __table_args__ = (UniqueConstraint("class_id", "subject_id"),)

    class_id   = Column(String(36), ForeignKey("classes.id"), nullable=False)
    subject_id = Column(String(36), ForeignKey("subjects.id"), nullable=False)
    user_id    = Column(String(36))

    subject = relationship("Subject")


class Student(TimestampMixin, Base):
    __tablename__ = "students"

    name           = Column(String(200), nullable=False)
    roll_number    = Column(String(50), nullable=False)
    gr_number      = Column(String(50), unique=True, index=True, nullable=False)
    year           = Column(String(20))
    gender         = Column(String(20))
    date_of_birth  = Column(String(10))
    address        = Column(Text)
    phone          = Column(String(50))
    email          = Column(String(200))
    parent_name    = Column(String(200))
    parent_contact = Column(String(50))
    notes          = Column(Text)
    department     = Column(String(200))
    class_id       = Column(String(36), ForeignKey("classes.id"), nullable=True)
    user_id        = Column(String(36), index=True)

    school_class = relationship("SchoolClass", back_populates="students")


class SubjectEnrollment(TimestampMixin, Base):
    __tablename__ = "subject_enrollments"
    __table_args__ = (UniqueConstraint("student_id", "subject_id"),)

    student_id = Column(String(36), ForeignKey("students.id"), nullable=False)
    subject_id = Column(String(36), ForeignKey("subjects.id"), nullable=False)
    user_id    = Column(String(36))

    student = relationship("Student")
    subject = relationship("Subject")


class Test(TimestampMixin, Base):
    __tablename__ = "tests"

    title      = Column(String(300), nullable=False)
    date       = Column(String(10), nullable=False)
    max_marks  = Column(Float, default=100.0)
    subject_id = Column(String(36), ForeignKey("subjects.id"), nullable=False)
    class_id   = Column(String(36), ForeignKey("classes.id"), nullable=False)
    user_id    = Column(String(36), index=True)

    subject      = relationship("Subject")
    school_class = relationship("SchoolClass")


class TestResult(TimestampMixin, Base):
    __tablename__ = "test_results"
    __table_args__ = (UniqueConstraint("test_id", "student_id"),)

    test_id        = Column(String(36), ForeignKey("tests.id"), nullable=False)
    student_id     = Column(String(36), ForeignKey("students.id"), nullable=False)
    marks_obtained = Column(Float, default=0.0)

    student = relationship("Student")


# ─────────────────────────────────────────────────────────
# Documents
# ─────────────────────────────────────────────────────────

class TestPaper(TimestampMixin, Base):
    __tablename__ = "test_papers"

    test_id              = Column(String(36), ForeignKey("tests.id"), nullable=True)
    subject_id           = Column(String(36), ForeignKey("subjects.id"), nullable=True)
    title                = Column(String(300), nullable=False)
    file_url             = Column(String(1000), default="")
    storage_path         = Column(String(500))
    appwrite_file_id     = Column(String(100))
    paper_type           = Column(String(20), default="question")   # question | answer
    has_extracted_text   = Column(Boolean, default=False)
    extracted_text       = Column(Text)
    status               = Column(String(20), default="pending")
    generated_answer_key = Column(Text)
    paper_metadata       = Column("metadata", JSON, default=dict)
    user_id              = Column(String(36), index=True)


class StudentAnswerSheet(TimestampMixin, Base):
    __tablename__ = "student_answer_sheets"
    __table_args__ = (UniqueConstraint("student_id", "test_id"),)

    student_id         = Column(String(36), ForeignKey("students.id"), nullable=False)
    test_id            = Column(String(36), ForeignKey("tests.id"), nullable=False)
    file_url           = Column(String(1000), default="")
    storage_path       = Column(String(500))
    appwrite_file_id   = Column(String(100))
    has_extracted_text = Column(Boolean, default=False)
    extracted_text     = Column(Text)
    status             = Column(String(20), default="pending")

    student = relationship("Student")


class ChapterMaterial(TimestampMixin, Base):
    __tablename__ = "chapter_materials"

    subject_id         = Column(String(36), ForeignKey("subjects.id"), nullable=True)
    title              = Column(String(300), nullable=False)
    file_url           = Column(String(1000), default="")
    storage_path       = Column(String(500))
    appwrite_file_id   = Column(String(100))
    has_extracted_text = Column(Boolean, default=False)
    text_content       = Column(Text)
    status             = Column(String(20), default="pending")
    extraction_status  = Column(String(20), default="pending")
    user_id            = Column(String(36), index=True)


# ─────────────────────────────────────────────────────────
# Grading
# ─────────────────────────────────────────────────────────

class AutoGradeStatus(TimestampMixin, Base):
    __tablename__ = "auto_grade_status"
    __table_args__ = (UniqueConstraint("student_id", "test_id"),)

    student_id        = Column(String(36), ForeignKey("students.id"), nullable=False)
    test_id           = Column(String(36), ForeignKey("tests.id"), nullable=False)
    answer_sheet_id   = Column(String(36), ForeignKey("student_answer_sheets.id"), nullable=True)
    status            = Column(String(20), default="pending")
    score             = Column(Float, nullable=True)
    feedback          = Column(Text)
    evaluation_result = Column(JSON, nullable=True)

    student = relationship("Student")

    @classmethod
    def upsert(cls, db, student_id: str, test_id: str, **fields):
        """
        Insert or update the single status row for (student, test).
        Commits before returning.
        """
        row = db.query(cls).filter_by(student_id=student_id, test_id=test_id).first()
        if row is None:
            row = cls(student_id=student_id, test_id=test_id)
            db.add(row)
        for key, value in fields.items():
            setattr(row, key, value)
        db.commit()
        db.refresh(row)
        return row


class Rubric(TimestampMixin, Base):
    __tablename__ = "rubrics"

    test_id   = Column(String(36), ForeignKey("tests.id"), unique=True, nullable=False)
    accuracy  = Column(Integer, default=3)
    relevance = Column(Integer, default=3)
    clarity   = Column(Integer, default=3)
    structure = Column(Integer, default=3)
    language  = Column(Integer, default=3)


# ─────────────────────────────────────────────────────────
# Paper analysis / question bank
# ─────────────────────────────────────────────────────────

class CourseOutcome(TimestampMixin, Base):
    """Labelled CO1..COn per subject in created_at order."""
    __tablename__ = "course_outcomes"

    subject_id  = Column(String(36), ForeignKey("subjects.id"), nullable=False, index=True)
    description = Column(Text, nullable=False)
    user_id     = Column(String(36))


class PaperAnalysis(TimestampMixin, Base):
    __tablename__ = "analysis_history"

    title         = Column(String(300), nullable=False)
    paper_id      = Column(String(36), ForeignKey("test_papers.id"), nullable=True, index=True)
    subject_id    = Column(String(36), ForeignKey("subjects.id"), nullable=True)
    status        = Column(String(20), default="processing")   # processing | completed | failed
    analysis_data = Column(JSON, nullable=True)
    error         = Column(Text)
    completed_at  = Column(DateTime, nullable=True)
    user_id       = Column(String(36), index=True)


class GeneratedQuestion(TimestampMixin, Base):
    __tablename__ = "generated_questions"

    subject_id        = Column(String(36), ForeignKey("subjects.id"), nullable=False, index=True)
    topic             = Column(String(300), nullable=False)
    question_text     = Column(Text, nullable=False)
    question_type     = Column(String(10), nullable=False)   # MCQ | Theory
    difficulty        = Column(Integer, default=50)          # 0-100
    bloom_level       = Column(String(20))
    course_outcome_id = Column(String(36), ForeignKey("course_outcomes.id"), nullable=True)
    options           = Column(JSON, nullable=True)          # [{"text": ..., "is_correct": ...}]
    answer_text       = Column(Text)
    marks             = Column(Integer, nullable=True)       # Theory only: 1, 2, 4 or 8
    paper_id          = Column(String(36), ForeignKey("test_papers.id"), nullable=True)
    user_id           = Column(String(36), index=True)


# ─────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────

def to_dict(row) -> dict:
    """Column values keyed by column name (paper_metadata comes out as "metadata")."""
    out = {}
    for attr in inspect(row).mapper.column_attrs:
        value = getattr(row, attr.key)
        if isinstance(value, datetime):
            value = value.isoformat()
        out[attr.columns[0].name] = value
    return out


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)
