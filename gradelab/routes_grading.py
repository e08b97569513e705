"""
GradeLab - Grading
Rubrics, answer keys, evaluate-answer, per-student auto-grading, reports.
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session

from gradelab.database import (
    get_db, to_dict, SessionLocal, AutoGradeStatus, Rubric, SchoolClass, Student, StudentAnswerSheet,
    Test, TestPaper, TestResult,
)
from gradelab.evaluator import EvaluationEngine
from gradelab.exceptions import GradeLabError
from gradelab.grading_service import GradingService, rubric_to_dict
from gradelab.llm_evaluator import LLMEvaluator, StudentInfo
from gradelab.metrics import class_overview, question_analysis, compute_metrics
from gradelab.schemas import EvaluateAnswerRequest, GenerateAnswerKeyRequest, RubricIn
from gradelab.workers import run_blocking

logger = logging.getLogger(__name__)

router = APIRouter(tags=["grading"])

_llm_evaluator: Optional[LLMEvaluator] = None


def get_llm_evaluator() -> LLMEvaluator:
    global _llm_evaluator
    if _llm_evaluator is None:
        _llm_evaluator = LLMEvaluator()
    return _llm_evaluator


def _get_test(db: Session, test_id: str) -> Test:
    test = db.get(Test, test_id)
    if test is None:
        raise HTTPException(404, "Test not found.")
    return test


# ─────────────────────────────────────────────────────────
# Rubrics
# ─────────────────────────────────────────────────────────

@router.get("/tests/{test_id}/rubric", summary="Strictness rubric for a test")
def get_rubric(test_id: str, db: Session = Depends(get_db)):
    _get_test(db, test_id)
    rubric = db.query(Rubric).filter_by(test_id=test_id).first()
    if rubric is None:
        return {"test_id": test_id, **RubricIn().model_dump(), "is_default": True}
    return {"test_id": test_id, **rubric_to_dict(rubric), "is_default": False}


@router.put("/tests/{test_id}/rubric", summary="Create or update the rubric for a test")
def save_rubric(test_id: str, payload: RubricIn, db: Session = Depends(get_db)):
    _get_test(db, test_id)
    rubric = db.query(Rubric).filter_by(test_id=test_id).first()
    if rubric is None:
        rubric = Rubric(test_id=test_id)
        db.add(rubric)
    for key, value in payload.model_dump().items():
        setattr(rubric, key, value)
    db.commit()
    return {"test_id": test_id, **rubric_to_dict(rubric), "is_default": False}


# ─────────────────────────────────────────────────────────
# Answer keys / evaluate-answer
# ─────────────────────────────────────────────────────────

@router.post("/generate-answer-key", summary="Generate an answer key from a question paper")
async def generate_answer_key(
    request: GenerateAnswerKeyRequest,
    db: Session = Depends(get_db),
    llm_evaluator: LLMEvaluator = Depends(get_llm_evaluator),
):
    service = GradingService(db, llm_evaluator=llm_evaluator)
    answer_key = await run_blocking(service.generate_answer_key, request.paper_id)
    return {"success": True, "answerKey": answer_key}


@router.post("/evaluate-answer", summary="Grade answer-sheet text against a paper and key")
async def evaluate_answer(
    request: EvaluateAnswerRequest,
    llm_evaluator: LLMEvaluator = Depends(get_llm_evaluator),
):
    info = request.student_info
    student = StudentInfo(name=info.name, roll_number=info.roll_number,
                          class_name=info.class_name, subject=info.subject)
    engine = EvaluationEngine(llm_evaluator=llm_evaluator)
    return await run_blocking(
        engine.evaluate,
        request.question_paper,
        request.answer_key,
        request.student_answer_sheet,
        student,
        request.rubric.model_dump() if request.rubric else None,
    )


# ─────────────────────────────────────────────────────────
# Auto-grade
# ─────────────────────────────────────────────────────────

@router.post("/tests/{test_id}/students/{student_id}/evaluate", summary="Auto-grade one student")
async def evaluate_student(
    test_id: str,
    student_id: str,
    db: Session = Depends(get_db),
    llm_evaluator: LLMEvaluator = Depends(get_llm_evaluator),
):
    service = GradingService(db, llm_evaluator=llm_evaluator)
    return await run_blocking(service.evaluate_student, test_id, student_id)


def _evaluate_all_background(test_id: str, student_ids: list, llm_evaluator: LLMEvaluator):
    """Grade each student in turn with its own session. One failure doesn't stop the rest."""
    db: Session = SessionLocal()
    try:
        service = GradingService(db, llm_evaluator=llm_evaluator)
        done = 0
        for student_id in student_ids:
            try:
                service.evaluate_student(test_id, student_id)
                done += 1
            except GradeLabError as e:
                logger.warning("Skipping student %s on test %s: %s", student_id, test_id, e.message)
            except Exception as e:
                logger.error("Evaluation crashed for student %s: %s", student_id, e, exc_info=True)
        logger.info("Batch grading for test %s finished: %d/%d graded", test_id, done, len(student_ids))
    finally:
        db.close()


@router.post("/tests/{test_id}/evaluate-all", status_code=202,
             summary="Queue auto-grading for every student with an extracted sheet")
def evaluate_all(
    test_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    llm_evaluator: LLMEvaluator = Depends(get_llm_evaluator),
):
    _get_test(db, test_id)
    llm_evaluator.ensure_configured()
    student_ids = [
        s.student_id for s in db.query(StudentAnswerSheet).filter_by(test_id=test_id, has_extracted_text=True)
    ]
    background_tasks.add_task(_evaluate_all_background, test_id, student_ids, llm_evaluator)
    return {"success": True, "queued": len(student_ids)}


@router.get("/tests/{test_id}/grading-status", summary="Per-student grading status for a test")
def grading_status(test_id: str, db: Session = Depends(get_db)):
    return GradingService(db).grading_status(test_id)


@router.get("/tests/{test_id}/students/{student_id}/evaluation", summary="Stored evaluation for a student")
def get_evaluation(test_id: str, student_id: str, db: Session = Depends(get_db)):
    row = db.query(AutoGradeStatus).filter_by(test_id=test_id, student_id=student_id).first()
    if row is None:
        raise HTTPException(404, "No grading status for this student.")
    return to_dict(row)


# ─────────────────────────────────────────────────────────
# Reports
# ─────────────────────────────────────────────────────────

def _agreement(rows: list, max_marks: float) -> Optional[dict]:
    """AI score vs the teacher-entered marks for the same students."""
    if len(rows) < 2:
        return None
    ai, teacher = zip(*rows)
    report = compute_metrics(list(ai), list(teacher), max_marks=max_marks)
    return {
        "n_samples": report.n_samples,
        "mae": report.mae,
        "pearson_r": report.pearson_r,
        "cohen_kappa": report.cohen_kappa,
        "accuracy_within_1_mark": report.accuracy_within_1,
        "accuracy_within_0_5_mark": report.accuracy_within_0_5,
        "mean_ai_score": report.mean_ai_score,
        "mean_teacher_score": report.mean_teacher_score,
    }


def _score_pairs(db: Session, test_id: Optional[str] = None) -> list:
    q = (
        db.query(AutoGradeStatus.score, TestResult.marks_obtained)
        .join(TestResult, (TestResult.test_id == AutoGradeStatus.test_id)
              & (TestResult.student_id == AutoGradeStatus.student_id))
        .filter(AutoGradeStatus.status == "completed", AutoGradeStatus.score.isnot(None))
    )
    if test_id:
        q = q.filter(AutoGradeStatus.test_id == test_id)
    return [(float(a), float(t)) for a, t in q.all()]


@router.get("/tests/{test_id}/report", summary="Class overview and question analysis for a test")
def test_report(test_id: str, db: Session = Depends(get_db)):
    test = _get_test(db, test_id)
    completed = db.query(AutoGradeStatus).filter_by(test_id=test_id, status="completed").all()
    evaluations = [row.evaluation_result for row in completed if row.evaluation_result]
    return {
        "test_id": test_id,
        "title": test.title,
        "max_marks": test.max_marks,
        "overview": class_overview(evaluations),
        "questions": question_analysis(evaluations),
        "agreement": _agreement(_score_pairs(db, test_id), test.max_marks or 100),
    }


@router.get("/stats", summary="Overall system statistics")
def get_stats(db: Session = Depends(get_db)):
    completed = db.query(AutoGradeStatus).filter_by(status="completed").all()
    overview = class_overview([r.evaluation_result for r in completed if r.evaluation_result])
    by_status = {}
    for (status,) in db.query(AutoGradeStatus.status).all():
        by_status[status] = by_status.get(status, 0) + 1

    return {
        "classes": db.query(SchoolClass).count(),
        "students": db.query(Student).count(),
        "tests": db.query(Test).count(),
        "papers": db.query(TestPaper).count(),
        "answer_sheets": db.query(StudentAnswerSheet).count(),
        "grading_status": by_status,
        "graded": overview["graded"],
        "average_percentage": overview["average_percentage"],
        "agreement": _agreement(_score_pairs(db), 100),
    }


@router.get("/metrics/compute", summary="Compute agreement metrics from provided score lists")
def compute_metrics_adhoc(ai_scores: str, teacher_scores: str, max_marks: float = 10.0):
    try:
        ai = [float(x.strip()) for x in ai_scores.split(",") if x.strip()]
        gt = [float(x.strip()) for x in teacher_scores.split(",") if x.strip()]
    except ValueError:
        raise HTTPException(400, "Scores must be comma-separated floats, e.g. 7.5,8.0,6.0")

    if len(ai) != len(gt):
        raise HTTPException(400, f"Length mismatch: ai_scores has {len(ai)}, teacher_scores has {len(gt)}")
    if len(ai) < 2:
        raise HTTPException(400, "At least 2 score pairs are required.")
    return _agreement(list(zip(ai, gt)), max_marks)
