"""
GradeLab - Paper analysis and question bank
Course outcomes, Bloom's / difficulty / CO analysis of question papers with a
PDF report, and LLM question generation into the question bank.
"""

import logging
import re
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session

from gradelab.analysis import (
    PaperAnalyzer, QuestionGenerator, course_outcomes_for, group_sessions, outcome_labels, render_analysis_pdf,
)
from gradelab.database import (
    get_db, to_dict, CourseOutcome, GeneratedQuestion, PaperAnalysis, Subject, TestPaper,
)
from gradelab.llm_provider import get_llm_client
from gradelab.schemas import (
    AnalyzePaperRequest, AnalyzeTextRequest, CourseOutcomeIn, DeleteQuestionsRequest,
    GenerateQuestionsRequest, QuestionUpdate,
)
from gradelab.workers import run_blocking

logger = logging.getLogger(__name__)

router = APIRouter(tags=["analysis"])


def get_llm():
    return get_llm_client()


def _get_or_404(db: Session, model, row_id: str, label: str):
    row = db.get(model, row_id)
    if row is None:
        raise HTTPException(404, f"{label} not found.")
    return row


# ─────────────────────────────────────────────────────────
# Course outcomes
# ─────────────────────────────────────────────────────────

@router.get("/subjects/{subject_id}/course-outcomes", summary="Course outcomes of a subject as CO1..COn")
def list_course_outcomes(subject_id: str, db: Session = Depends(get_db)):
    _get_or_404(db, Subject, subject_id, "Subject")
    labels = outcome_labels(course_outcomes_for(db, subject_id))
    return [{**to_dict(co), "label": label} for label, co in labels.items()]


@router.post("/subjects/{subject_id}/course-outcomes", status_code=201, summary="Add a course outcome")
def create_course_outcome(subject_id: str, payload: CourseOutcomeIn, db: Session = Depends(get_db)):
    _get_or_404(db, Subject, subject_id, "Subject")
    row = CourseOutcome(subject_id=subject_id, description=payload.description.strip(), user_id=payload.user_id)
    db.add(row)
    db.commit()
    db.refresh(row)
    return to_dict(row)


@router.put("/course-outcomes/{outcome_id}", summary="Edit a course outcome")
def update_course_outcome(outcome_id: str, payload: CourseOutcomeIn, db: Session = Depends(get_db)):
    row = _get_or_404(db, CourseOutcome, outcome_id, "Course outcome")
    row.description = payload.description.strip()
    db.commit()
    return to_dict(row)


@router.delete("/course-outcomes/{outcome_id}", summary="Delete a course outcome")
def delete_course_outcome(outcome_id: str, db: Session = Depends(get_db)):
    row = _get_or_404(db, CourseOutcome, outcome_id, "Course outcome")
    db.query(GeneratedQuestion).filter_by(course_outcome_id=outcome_id).update({"course_outcome_id": None})
    db.delete(row)
    db.commit()
    return {"success": True}


# ─────────────────────────────────────────────────────────
# Paper analysis
# ─────────────────────────────────────────────────────────

@router.post("/papers/{paper_id}/analyze", summary="Bloom's, difficulty and CO analysis of a question paper")
async def analyze_paper(
    paper_id: str,
    request: Optional[AnalyzePaperRequest] = None,
    db: Session = Depends(get_db),
    llm=Depends(get_llm),
):
    analyzer = PaperAnalyzer(db, llm_client=llm)
    record = await run_blocking(analyzer.analyze_paper, paper_id, request.user_id if request else None)
    return {"success": True, "analysisId": record.id, "analysis": record.analysis_data}


@router.post("/analyze-paper", summary="Analyse pasted question paper text without storing it")
async def analyze_text(request: AnalyzeTextRequest, db: Session = Depends(get_db), llm=Depends(get_llm)):
    outcomes = [CourseOutcome(description=d) for d in request.course_outcomes if d.strip()]
    analyzer = PaperAnalyzer(db, llm_client=llm)
    analysis = await run_blocking(analyzer.analyze_text, request.extracted_text, outcome_labels(outcomes))
    return {"success": True, "analysis": analysis}


@router.get("/papers/{paper_id}/analyses", summary="Analysis history of a paper, newest first")
def list_paper_analyses(paper_id: str, db: Session = Depends(get_db)):
    _get_or_404(db, TestPaper, paper_id, "Paper")
    rows = (
        db.query(PaperAnalysis)
        .filter_by(paper_id=paper_id)
        .order_by(PaperAnalysis.created_at.desc())
        .all()
    )
    return [to_dict(r) for r in rows]


@router.get("/analyses", summary="All analyses, newest first")
def list_analyses(user_id: Optional[str] = None, db: Session = Depends(get_db)):
    q = db.query(PaperAnalysis)
    if user_id:
        q = q.filter_by(user_id=user_id)
    return [to_dict(r) for r in q.order_by(PaperAnalysis.created_at.desc()).all()]


@router.get("/analyses/{analysis_id}", summary="One stored analysis")
def get_analysis(analysis_id: str, db: Session = Depends(get_db)):
    return to_dict(_get_or_404(db, PaperAnalysis, analysis_id, "Analysis"))


@router.delete("/analyses/{analysis_id}", summary="Delete a stored analysis")
def delete_analysis(analysis_id: str, db: Session = Depends(get_db)):
    db.delete(_get_or_404(db, PaperAnalysis, analysis_id, "Analysis"))
    db.commit()
    return {"success": True}


@router.get("/analyses/{analysis_id}/report.pdf", summary="Analysis report as PDF")
async def analysis_report(analysis_id: str, db: Session = Depends(get_db)):
    record = _get_or_404(db, PaperAnalysis, analysis_id, "Analysis")
    if record.status != "completed" or not record.analysis_data:
        raise HTTPException(400, "Analysis is not completed.")
    title = record.title
    if record.paper_id:
        paper = db.get(TestPaper, record.paper_id)
        title = paper.title if paper else title

    pdf = await run_blocking(render_analysis_pdf, record.analysis_data, title)
    filename = re.sub(r"[^A-Za-z0-9_-]+", "_", title).strip("_") or "paper"
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}_analysis.pdf"'},
    )


# ─────────────────────────────────────────────────────────
# Question generation / bank
# ─────────────────────────────────────────────────────────

@router.post("/generate-questions", summary="Generate MCQ and theory questions for a topic")
async def generate_questions(
    request: GenerateQuestionsRequest,
    db: Session = Depends(get_db),
    llm=Depends(get_llm),
):
    generator = QuestionGenerator(db, llm_client=llm)
    questions = await run_blocking(
        generator.generate,
        request.subject_id,
        request.topic.strip(),
        question_type=request.question_type,
        mcq_count=request.mcq_count,
        theory_marks=request.theory.by_marks(),
        difficulty=request.difficulty,
        blooms_taxonomy=request.blooms_taxonomy,
        material_ids=request.material_ids,
        save=request.save,
        user_id=request.user_id,
    )
    return {"success": True, "questions": questions}


@router.get("/questions", summary="Question bank, newest first")
def list_questions(
    subject_id: Optional[str] = None,
    topic: Optional[str] = None,
    question_type: Optional[str] = None,
    db: Session = Depends(get_db),
):
    q = db.query(GeneratedQuestion)
    if subject_id:
        q = q.filter_by(subject_id=subject_id)
    if topic:
        q = q.filter_by(topic=topic)
    if question_type:
        q = q.filter(GeneratedQuestion.question_type.ilike(question_type))
    return [to_dict(r) for r in q.order_by(GeneratedQuestion.created_at.desc()).all()]


@router.get("/questions/sessions", summary="Question bank grouped by topic and subject")
def question_sessions(db: Session = Depends(get_db)):
    questions = db.query(GeneratedQuestion).all()
    names = {s.id: s.name for s in db.query(Subject).all()}
    return group_sessions(questions, names)


@router.put("/questions/{question_id}", summary="Edit a bank question")
def update_question(question_id: str, payload: QuestionUpdate, db: Session = Depends(get_db)):
    row = _get_or_404(db, GeneratedQuestion, question_id, "Question")
    fields = payload.model_dump(exclude_unset=True)
    if "marks" in fields and row.question_type != "Theory":
        raise HTTPException(400, "Only theory questions carry marks.")
    if "options" in fields and row.question_type != "MCQ":
        raise HTTPException(400, "Only MCQ questions carry options.")
    for key, value in fields.items():
        setattr(row, key, value)
    db.commit()
    return to_dict(row)


@router.delete("/questions/{question_id}", summary="Delete a bank question")
def delete_question(question_id: str, db: Session = Depends(get_db)):
    db.delete(_get_or_404(db, GeneratedQuestion, question_id, "Question"))
    db.commit()
    return {"success": True}


@router.post("/questions/delete", summary="Delete several bank questions")
def delete_questions(payload: DeleteQuestionsRequest, db: Session = Depends(get_db)):
    deleted = (
        db.query(GeneratedQuestion)
        .filter(GeneratedQuestion.id.in_(payload.ids))
        .delete(synchronize_session=False)
    )
    db.commit()
    return {"success": True, "deleted": deleted}
