"""
GradeLab - Auto-Grade Workflow
Ties answer sheets, test papers and the evaluation engine together and keeps
auto_grade_status (and test_results) in step with each run.

Status lifecycle per (student, test):
  pending ──upload──▶ pending ──evaluate──▶ processing ──▶ completed | failed
"""

import logging
from typing import Optional, List

from sqlalchemy.orm import Session

from gradelab.database import (
    AutoGradeStatus, Rubric, Student, StudentAnswerSheet, Test, TestPaper, TestResult,
)
from gradelab.evaluator import EvaluationEngine, score_totals, format_marks
from gradelab.exceptions import NotFoundError, ValidationError
from gradelab.llm_evaluator import LLMEvaluator, StudentInfo
from prompts.evaluation_prompts import RUBRIC_CRITERIA

logger = logging.getLogger(__name__)


def rubric_to_dict(rubric: Optional[Rubric]) -> Optional[dict]:
    if rubric is None:
        return None
    return {c: getattr(rubric, c) for c in RUBRIC_CRITERIA}


def status_to_dict(row: AutoGradeStatus) -> dict:
    return {
        "id": row.id,
        "student_id": row.student_id,
        "test_id": row.test_id,
        "answer_sheet_id": row.answer_sheet_id,
        "status": row.status,
        "score": row.score,
        "feedback": row.feedback,
        "evaluation_result": row.evaluation_result,
    }


class GradingService:

    def __init__(self, db: Session, engine: Optional[EvaluationEngine] = None,
                 llm_evaluator: Optional[LLMEvaluator] = None):
        self.db = db
        self.llm_evaluator = llm_evaluator or (engine.llm_evaluator if engine else LLMEvaluator())
        self.engine = engine or EvaluationEngine(llm_evaluator=self.llm_evaluator)

    # ─────────────────────────────────────────────────────
    # Lookups
    # ─────────────────────────────────────────────────────

    def _get_test(self, test_id: str) -> Test:
        test = self.db.get(Test, test_id)
        if test is None:
            raise NotFoundError("Test", test_id)
        return test

    def _paper(self, test_id: str, paper_type: str) -> Optional[TestPaper]:
        return (
            self.db.query(TestPaper)
            .filter_by(test_id=test_id, paper_type=paper_type)
            .order_by(TestPaper.created_at.desc())
            .first()
        )

    def question_paper_text(self, test_id: str) -> str:
        paper = self._paper(test_id, "question")
        if paper is None or not paper.extracted_text or not paper.has_extracted_text:
            raise ValidationError("Question paper not found or text extraction failed")
        return paper.extracted_text

    def answer_key_text(self, test_id: str) -> str:
        """Extracted answer key paper first, then a generated key on either paper."""
        answer = self._paper(test_id, "answer")
        if answer is not None and answer.has_extracted_text and answer.extracted_text:
            return answer.extracted_text
        for paper in (answer, self._paper(test_id, "question")):
            if paper is not None and paper.generated_answer_key:
                return paper.generated_answer_key
        raise ValidationError("Answer key not found or text extraction failed")

    # ─────────────────────────────────────────────────────
    # Answer keys
    # ─────────────────────────────────────────────────────

    def generate_answer_key(self, paper_id: str) -> str:
        paper = self.db.get(TestPaper, paper_id)
        if paper is None:
            raise NotFoundError("Question paper", paper_id)
        if not paper.extracted_text:
            raise ValidationError("No extracted text found for this question paper")

        answer_key = self.llm_evaluator.generate_answer_key(paper.extracted_text)
        paper.generated_answer_key = answer_key
        self.db.commit()
        logger.info("Stored generated answer key for paper %s (%d chars)", paper_id, len(answer_key))
        return answer_key

    # ─────────────────────────────────────────────────────
    # Evaluation
    # ─────────────────────────────────────────────────────

    def evaluate_student(self, test_id: str, student_id: str) -> dict:
        test = self._get_test(test_id)
        student = self.db.get(Student, student_id)
        if student is None:
            raise NotFoundError("Student", student_id)

        sheet = self.db.query(StudentAnswerSheet).filter_by(test_id=test_id, student_id=student_id).first()
        if sheet is None:
            raise ValidationError("No answer sheet uploaded for this student")

        question_paper = self.question_paper_text(test_id)
        answer_key = self.answer_key_text(test_id)

        AutoGradeStatus.upsert(self.db, student_id, test_id,
                               status="processing", answer_sheet_id=sheet.id)
        try:
            if not sheet.extracted_text or not sheet.has_extracted_text:
                raise ValidationError("No extracted text found for this answer sheet. Please extract text first.")

            info = StudentInfo(
                name=student.name or "Unknown Student",
                roll_number=student.roll_number or "N/A",
                class_name=test.school_class.name if test.school_class else "N/A",
                subject=test.subject.name if test.subject else "N/A",
            )
            rubric = rubric_to_dict(self.db.query(Rubric).filter_by(test_id=test_id).first())
            evaluation = self.engine.evaluate(question_paper, answer_key, sheet.extracted_text, info, rubric)
        except Exception as e:
            logger.error("Evaluation failed for student %s on test %s: %s", student_id, test_id, e)
            self.db.rollback()
            AutoGradeStatus.upsert(self.db, student_id, test_id, status="failed", feedback=str(e))
            raise

        total_score, total_possible = score_totals(evaluation)
        row = AutoGradeStatus.upsert(
            self.db, student_id, test_id,
            status="completed",
            score=total_score,
            feedback=f"Scored {format_marks(total_score)} out of {format_marks(total_possible)}",
            evaluation_result=evaluation,
            answer_sheet_id=sheet.id,
        )
        self._sync_result(test, student_id, total_score)
        logger.info("Student %s scored %s/%s on test %s", student_id, total_score, total_possible, test_id)
        return status_to_dict(row)

    def _sync_result(self, test: Test, student_id: str, marks: float):
        """Copy the AI total into test_results, clamped to 0..test.max_marks."""
        test_id = test.id
        if test.max_marks is not None and marks > test.max_marks:
            logger.warning("AI total %s exceeds max_marks %s on test %s; storing %s",
                           format_marks(marks), format_marks(test.max_marks), test_id,
                           format_marks(test.max_marks))
            marks = float(test.max_marks)
        marks = max(marks, 0.0)

        result = self.db.query(TestResult).filter_by(test_id=test_id, student_id=student_id).first()
        if result is None:
            self.db.add(TestResult(test_id=test_id, student_id=student_id, marks_obtained=marks))
        else:
            result.marks_obtained = marks
        self.db.commit()

    def grading_status(self, test_id: str) -> List[dict]:
        """One entry per student in the test's class, with sheet and status."""
        test = self._get_test(test_id)
        students = (
            self.db.query(Student)
            .filter_by(class_id=test.class_id)
            .order_by(Student.name)
            .all()
        )
        sheets = {s.student_id: s for s in self.db.query(StudentAnswerSheet).filter_by(test_id=test_id)}
        statuses = {s.student_id: s for s in self.db.query(AutoGradeStatus).filter_by(test_id=test_id)}

        out = []
        for student in students:
            sheet = sheets.get(student.id)
            status = statuses.get(student.id)
            out.append({
                "student_id": student.id,
                "student_name": student.name,
                "roll_number": student.roll_number,
                "answer_sheet_id": sheet.id if sheet else None,
                "sheet_status": sheet.status if sheet else None,
                "has_extracted_text": bool(sheet and sheet.has_extracted_text),
                "status": status.status if status else "pending",
                "score": status.score if status else None,
                "feedback": status.feedback if status else None,
            })
        return out

    def replace_answer_sheet(self, test_id: str, student_id: str, file_url: str, storage_path: str,
                             appwrite_file_id: Optional[str] = None) -> StudentAnswerSheet:
        """
        Drop any earlier sheet for (student, test), reset grading to pending and
        link the new sheet. The caller removes the old file from storage.
        """
        old = self.db.query(StudentAnswerSheet).filter_by(test_id=test_id, student_id=student_id).first()
        if old is not None:
            AutoGradeStatus.upsert(self.db, student_id, test_id, status="pending", answer_sheet_id=None)
            self.db.delete(old)
            self.db.commit()

        sheet = StudentAnswerSheet(
            student_id=student_id,
            test_id=test_id,
            file_url=file_url,
            storage_path=storage_path,
            appwrite_file_id=appwrite_file_id,
            status="pending",
        )
        self.db.add(sheet)
        self.db.commit()
        self.db.refresh(sheet)
        AutoGradeStatus.upsert(self.db, student_id, test_id, status="pending", answer_sheet_id=sheet.id,
                               score=None, feedback=None, evaluation_result=None)
        return sheet
