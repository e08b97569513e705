"""
GradeLab - Paper Analysis and Question Generation

PaperAnalyzer
  Classifies every question of an extracted question paper by Bloom's level,
  difficulty and course outcome with one LLM call, then computes the
  distributions locally so the percentages always come from the question
  list. Runs are kept in analysis_history; render_analysis_pdf() turns a
  completed run into a downloadable report.

QuestionGenerator
  Writes MCQ and/or theory questions for a topic, grounded in extracted
  chapter materials when given. Requests are split into chunks of
  QUESTIONS_PER_CHUNK; a chunk that comes back short or malformed is retried
  with exponential backoff. Accepted questions go to generated_questions.

Course outcomes are labelled CO1..COn per subject in creation order.
"""

import logging
import math
import textwrap
import time
from collections import Counter
from datetime import datetime, timezone
from typing import Optional, List, Dict, Callable

from sqlalchemy.orm import Session

from gradelab.database import (
    ChapterMaterial, CourseOutcome, GeneratedQuestion, PaperAnalysis, Subject, Test, TestPaper, to_dict,
)
from gradelab.exceptions import ConfigurationError, EvaluationError, NotFoundError, ValidationError
from prompts.evaluation_prompts import (
    BLOOMS_LEVELS,
    BLOOM_TARGET_SECTION,
    CHAPTER_CONTENT_SECTION,
    COMMON_KNOWLEDGE_SECTION,
    COURSE_OUTCOME_SECTION,
    DIFFICULTY_LEVELS,
    MCQ_INSTRUCTIONS,
    NO_COURSE_OUTCOMES,
    PAPER_ANALYSIS_PROMPT,
    PAPER_ANALYSIS_SYSTEM,
    QUESTION_GENERATION_PROMPT,
    QUESTION_GENERATION_SYSTEM,
    THEORY_INSTRUCTIONS,
)

logger = logging.getLogger(__name__)

MAX_PAPER_CHARS     = 8000
MAX_CHAPTER_CHARS   = 30000
QUESTIONS_PER_CHUNK = 25
MAX_CHUNK_ATTEMPTS  = 3
THEORY_MARKS        = (1, 2, 4, 8)
QUESTION_TYPES      = ("mcq", "theory", "mixed")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def truncate(text: str, limit: int, note: str) -> str:
    return text if len(text) <= limit else text[:limit] + note


# ─────────────────────────────────────────────────────────
# Course outcomes
# ─────────────────────────────────────────────────────────

def course_outcomes_for(db: Session, subject_id: Optional[str]) -> List[CourseOutcome]:
    if not subject_id:
        return []
    return (
        db.query(CourseOutcome)
        .filter_by(subject_id=subject_id)
        .order_by(CourseOutcome.created_at, CourseOutcome.id)
        .all()
    )


def outcome_labels(outcomes: List[CourseOutcome]) -> Dict[str, CourseOutcome]:
    return {f"CO{i}": co for i, co in enumerate(outcomes, start=1)}


def outcomes_text(labels: Dict[str, CourseOutcome]) -> str:
    if not labels:
        return NO_COURSE_OUTCOMES
    return "\n".join(f"{label}: {co.description}" for label, co in labels.items())


def _label(value) -> Optional[str]:
    label = str(value or "").strip().upper().replace(" ", "")
    if label.isdigit():
        label = f"CO{label}"
    return label or None


def _level(value, allowed) -> Optional[str]:
    value = str(value or "").strip().lower()
    return value if value in allowed else None


# ─────────────────────────────────────────────────────────
# Paper analysis
# ─────────────────────────────────────────────────────────

def normalize_analysis_question(raw: dict, index: int, labels: Dict[str, CourseOutcome]) -> dict:
    try:
        number = int(raw.get("questionNumber", raw.get("number")))
    except (TypeError, ValueError):
        number = index
    label = _label(raw.get("courseOutcome"))
    return {
        "number": number,
        "text": str(raw.get("questionText") or raw.get("text") or "")[:200],
        "difficulty": _level(raw.get("difficulty"), DIFFICULTY_LEVELS) or "medium",
        "bloomsLevel": _level(raw.get("bloomsLevel"), BLOOMS_LEVELS) or "remember",
        "courseOutcome": label if label in labels else None,
    }


def percentages(values: list, keys) -> Dict[str, float]:
    """Share of `values` per key, in percent of all values (unmatched values count toward the total)."""
    counts = Counter(values)
    total = len(values)
    return {k: round(counts.get(k, 0) / total * 100, 1) if total else 0.0 for k in keys}


def _suggestions(raw) -> List[dict]:
    out = []
    for item in raw or []:
        if isinstance(item, dict) and (item.get("title") or item.get("description")):
            out.append({"title": str(item.get("title") or ""), "description": str(item.get("description") or "")})
        elif isinstance(item, str) and item.strip():
            out.append({"title": item.strip(), "description": ""})
    return out


def build_analysis(raw, labels: Dict[str, CourseOutcome]) -> dict:
    """Normalise the model's classification and compute every distribution from it."""
    if isinstance(raw, list):
        raw = {"questionAnalysis": raw}
    if not isinstance(raw, dict):
        raise EvaluationError("Paper analysis response is not a JSON object")

    items = raw.get("questionAnalysis") or raw.get("questions") or []
    questions = [
        normalize_analysis_question(item, i, labels)
        for i, item in enumerate(items, start=1) if isinstance(item, dict)
    ]
    questions.sort(key=lambda q: q["number"])

    blooms = [q["bloomsLevel"] for q in questions]
    mapped = {q["courseOutcome"] for q in questions if q["courseOutcome"]}
    details = raw.get("analysisDetails") or raw.get("summary") or {}

    return {
        "totalQuestions": len(questions),
        "questions": questions,
        "bloomsDistribution": percentages(blooms, BLOOMS_LEVELS),
        "difficultyDistribution": percentages([q["difficulty"] for q in questions], DIFFICULTY_LEVELS),
        "courseOutcomeDistribution": percentages([q["courseOutcome"] for q in questions], list(labels)),
        "bloomsLevelsCovered": len(set(blooms)),
        "totalBloomsLevels": len(BLOOMS_LEVELS),
        "courseOutcomesCovered": len(mapped),
        "totalCourseOutcomes": len(labels),
        "summary": {
            "bloomsAnalysis": str(details.get("bloomsAnalysis") or ""),
            "courseOutcomeCoverage": str(details.get("courseOutcomeCoverage") or ""),
            "difficultyDistribution": str(details.get("difficultyDistribution") or ""),
        },
        "suggestions": _suggestions(raw.get("improvementSuggestions") or raw.get("suggestions")),
    }


class PaperAnalyzer:

    def __init__(self, db: Session, llm_client=None):
        self.db = db
        self._client = llm_client

    def _get_client(self):
        if self._client is None:
            from gradelab.llm_provider import get_llm_client
            self._client = get_llm_client()
        return self._client

    def _ensure_configured(self):
        if not self._get_client().is_configured:
            raise ConfigurationError("No LLM provider configured for paper analysis.")

    def analyze_text(self, paper_text: str, labels: Dict[str, CourseOutcome]) -> dict:
        if not (paper_text or "").strip():
            raise ValidationError("Extracted text is required")
        self._ensure_configured()
        prompt = PAPER_ANALYSIS_PROMPT.format(
            paper_text=truncate(paper_text, MAX_PAPER_CHARS, "...(truncated for length)"),
            course_outcomes=outcomes_text(labels),
        )
        raw = self._get_client().generate_json(prompt, system=PAPER_ANALYSIS_SYSTEM,
                                               max_tokens=3000, temperature=0.3)
        analysis = build_analysis(raw, labels)
        if not analysis["questions"]:
            raise EvaluationError("No questions were identified in the paper text")
        return analysis

    def analyze_paper(self, paper_id: str, user_id: Optional[str] = None) -> PaperAnalysis:
        """Analyse a stored paper and record the run in analysis_history."""
        paper = self.db.get(TestPaper, paper_id)
        if paper is None:
            raise NotFoundError("Test paper", paper_id)
        if not paper.has_extracted_text or not paper.extracted_text:
            raise ValidationError("Extract the paper text before analysing it")
        self._ensure_configured()

        subject_id = paper.subject_id
        if not subject_id and paper.test_id:
            test = self.db.get(Test, paper.test_id)
            subject_id = test.subject_id if test else None
        labels = outcome_labels(course_outcomes_for(self.db, subject_id))

        record = PaperAnalysis(title=f"Analysis of {paper.title}", paper_id=paper.id, subject_id=subject_id,
                               status="processing", user_id=user_id or paper.user_id)
        self.db.add(record)
        self.db.commit()
        logger.info("Starting analysis %s for paper %s (%d course outcomes)", record.id, paper.id, len(labels))

        try:
            analysis = self.analyze_text(paper.extracted_text, labels)
        except Exception as e:
            logger.error("Analysis %s failed: %s", record.id, e)
            self.db.rollback()
            record.status = "failed"
            record.error = getattr(e, "message", str(e))
            self.db.commit()
            raise

        record.status = "completed"
        record.analysis_data = analysis
        record.completed_at = _utcnow()
        self.db.commit()
        self.db.refresh(record)
        logger.info("✅ Analysis %s: %d questions, %d/%d Bloom's levels, %d/%d course outcomes",
                    record.id, analysis["totalQuestions"], analysis["bloomsLevelsCovered"],
                    analysis["totalBloomsLevels"], analysis["courseOutcomesCovered"],
                    analysis["totalCourseOutcomes"])
        return record


# ─────────────────────────────────────────────────────────
# PDF report
# ─────────────────────────────────────────────────────────

def analysis_report_lines(analysis: dict, paper_title: str) -> List[tuple]:
    """(text, font_size) pairs in reading order; a None text is vertical space."""
    lines = [("Paper Analysis Report", 20), (paper_title, 13), (None, 12)]

    lines += [("Summary Statistics", 15),
              (f"Total Questions: {analysis.get('totalQuestions', 0)}", 11),
              (f"Bloom's Taxonomy Levels Covered: {analysis.get('bloomsLevelsCovered', 0)}/"
               f"{analysis.get('totalBloomsLevels', len(BLOOMS_LEVELS))}", 11),
              (f"Course Outcomes Mapped: {analysis.get('courseOutcomesCovered', 0)}/"
               f"{analysis.get('totalCourseOutcomes', 0)}", 11),
              (None, 11)]

    for heading, key in (("Bloom's Taxonomy Distribution", "bloomsDistribution"),
                         ("Difficulty Distribution", "difficultyDistribution"),
                         ("Course Outcome Distribution", "courseOutcomeDistribution")):
        lines.append((heading, 15))
        lines += [(f"{name.capitalize() if key != 'courseOutcomeDistribution' else name}: {pct:g}%", 11)
                  for name, pct in (analysis.get(key) or {}).items()]
        lines.append((None, 11))

    lines.append(("Question Analysis", 15))
    for q in analysis.get("questions", []):
        lines += [(f"Question {q['number']}: {q.get('text', '')}", 11),
                  (f"Difficulty: {q['difficulty']}   Bloom's Level: {q['bloomsLevel']}   "
                   f"Course Outcome: {q.get('courseOutcome') or '-'}", 10),
                  (None, 6)]

    summary = analysis.get("summary") or {}
    lines.append(("Analysis Details", 15))
    for heading, key in (("Bloom's Taxonomy Analysis", "bloomsAnalysis"),
                         ("Course Outcome Coverage", "courseOutcomeCoverage"),
                         ("Difficulty Distribution", "difficultyDistribution")):
        if summary.get(key):
            lines += [(heading, 12), (summary[key], 11), (None, 8)]

    suggestions = analysis.get("suggestions") or []
    if suggestions:
        lines.append(("Improvement Suggestions", 15))
        for i, s in enumerate(suggestions, start=1):
            text = f"{i}. {s['title']}" + (f": {s['description']}" if s.get("description") else "")
            lines.append((text, 11))
    return lines


def render_analysis_pdf(analysis: dict, paper_title: str) -> bytes:
    import fitz  # PyMuPDF

    width, height = fitz.paper_size("a4")
    margin = 50
    doc = fitz.open()
    page, y = None, height

    for text, size in analysis_report_lines(analysis, paper_title):
        if text is None:
            y += size
            continue
        # Helvetica averages about half an em per character.
        chars = max(int((width - 2 * margin) / (size * 0.5)), 20)
        for chunk in textwrap.wrap(text, chars) or [""]:
            if page is None or y + size > height - margin:
                page, y = doc.new_page(width=width, height=height), margin
            page.insert_text((margin, y + size), chunk, fontsize=size, fontname="helv")
            y += size * 1.4

    doc.set_metadata({"title": f"Analysis Report - {paper_title}", "author": "GradeLab"})
    data = doc.tobytes()
    doc.close()
    return data


# ─────────────────────────────────────────────────────────
# Question generation
# ─────────────────────────────────────────────────────────

def plan_chunks(question_type: str, mcq_count: int, theory_marks: Dict[int, int]) -> List[tuple]:
    """
    [(kind, count, marks_split)] with at most QUESTIONS_PER_CHUNK questions each.
    MCQ chunks come first for "mixed"; theory marks are handed out smallest first.
    """
    if question_type not in QUESTION_TYPES:
        raise ValidationError(f"questionType must be one of: {', '.join(QUESTION_TYPES)}")

    chunks = []
    if question_type in ("mcq", "mixed") and mcq_count > 0:
        for start in range(0, mcq_count, QUESTIONS_PER_CHUNK):
            chunks.append(("mcq", min(QUESTIONS_PER_CHUNK, mcq_count - start), {}))

    if question_type in ("theory", "mixed"):
        marks = [m for m in THEORY_MARKS for _ in range(max(int(theory_marks.get(m, 0)), 0))]
        for start in range(0, len(marks), QUESTIONS_PER_CHUNK):
            part = marks[start:start + QUESTIONS_PER_CHUNK]
            chunks.append(("theory", len(part), dict(Counter(part))))

    if not chunks:
        raise ValidationError("Ask for at least one question")
    return chunks


def parse_generated_questions(raw, kind: str, expected: int, topic: str, difficulty: int,
                              labels: Dict[str, CourseOutcome]) -> List[dict]:
    """
    Validate one chunk of model output. Invalid questions are dropped, extras
    are cut off, and fewer than `expected` valid questions raises ValueError.
    """
    items = raw.get("questions") if isinstance(raw, dict) else raw
    if not isinstance(items, list):
        raise ValueError("Response does not contain a questions array")

    questions = []
    for item in items:
        if not isinstance(item, dict):
            continue
        text = item.get("question_text") or item.get("question")
        if not isinstance(text, str) or not text.strip():
            continue
        answer = item.get("answer_text") or item.get("answer") or item.get("correct_answer")
        label = _label(item.get("course_outcome"))
        question = {
            "question_text": text.strip(),
            "question_type": "MCQ" if kind == "mcq" else "Theory",
            "topic": topic,
            "difficulty": difficulty,
            "bloom_level": _level(item.get("bloom_level"), BLOOMS_LEVELS) or "remember",
            "course_outcome_id": labels[label].id if label in labels else None,
            "options": None,
            "answer_text": answer if isinstance(answer, str) else None,
            "marks": None,
        }

        if kind == "mcq":
            options = item.get("options")
            if not isinstance(options, list) or len(options) != 4 or not all(isinstance(o, str) for o in options):
                logger.warning("Skipping MCQ with invalid options: %s", text[:60])
                continue
            if answer not in options:
                logger.warning("Skipping MCQ whose answer is not an option: %s", text[:60])
                continue
            question["options"] = [{"text": o, "is_correct": o == answer} for o in options]
        else:
            try:
                marks = int(item.get("marks"))
            except (TypeError, ValueError):
                marks = None
            if marks not in THEORY_MARKS or float(item.get("marks")) != marks:
                logger.warning("Skipping theory question with marks %r", item.get("marks"))
                continue
            question["marks"] = marks

        questions.append(question)

    if len(questions) < expected:
        raise ValueError(f"Expected {expected} questions but got {len(questions)}")
    return questions[:expected]


class QuestionGenerator:

    def __init__(self, db: Session, llm_client=None, sleep: Callable[[float], None] = time.sleep):
        self.db = db
        self._client = llm_client
        self._sleep = sleep

    def _get_client(self):
        if self._client is None:
            from gradelab.llm_provider import get_llm_client
            self._client = get_llm_client()
        return self._client

    def chapter_content(self, material_ids: List[str]) -> str:
        if not material_ids:
            return ""
        materials = self.db.query(ChapterMaterial).filter(ChapterMaterial.id.in_(material_ids)).all()
        found = {m.id: m for m in materials}
        missing = [m for m in material_ids if m not in found]
        if missing:
            raise NotFoundError("Chapter material", missing[0])
        not_ready = [found[m].title for m in material_ids if not found[m].has_extracted_text]
        if not_ready:
            raise ValidationError(f"Extract text from these materials first: {', '.join(not_ready)}")
        return "\n\n".join(f"## {found[m].title}\n\n{found[m].text_content}" for m in material_ids)

    def build_prompt(self, kind: str, count: int, marks_split: Dict[int, int], subject_name: str, topic: str,
                     difficulty: int, chunk: int, total_chunks: int, labels: Dict[str, CourseOutcome],
                     blooms_taxonomy: Optional[Dict[str, float]], content: str) -> str:
        if kind == "mcq":
            instructions = MCQ_INSTRUCTIONS.format(count=count)
        else:
            instructions = THEORY_INSTRUCTIONS.format(count=count, **{f"mark{m}": marks_split.get(m, 0)
                                                                      for m in THEORY_MARKS})
        bloom_section = ""
        if blooms_taxonomy:
            levels = "\n".join(f"- {k.capitalize()}: {v:g}%" for k, v in blooms_taxonomy.items() if v)
            bloom_section = BLOOM_TARGET_SECTION.format(levels=levels) if levels else ""
        outcome_section = COURSE_OUTCOME_SECTION.format(outcomes=outcomes_text(labels)) if labels else ""
        if content:
            content_section = CHAPTER_CONTENT_SECTION.format(
                content=truncate(content, MAX_CHAPTER_CHARS, "... [content truncated due to length]"))
        else:
            content_section = COMMON_KNOWLEDGE_SECTION.format(topic=topic, subject=subject_name)

        return QUESTION_GENERATION_PROMPT.format(
            count=count, question_type=kind.upper(), topic=topic, subject=subject_name,
            difficulty=difficulty, chunk=chunk, total_chunks=total_chunks, instructions=instructions,
            bloom_section=bloom_section, outcome_section=outcome_section, content_section=content_section,
        )

    def _generate_chunk(self, prompt: str, kind: str, count: int, topic: str, difficulty: int,
                        labels: Dict[str, CourseOutcome], chunk: int) -> List[dict]:
        last_error = None
        for attempt in range(1, MAX_CHUNK_ATTEMPTS + 1):
            try:
                raw = self._get_client().generate_json(prompt, system=QUESTION_GENERATION_SYSTEM,
                                                       max_tokens=4000, temperature=0.7, max_retries=0)
                questions = parse_generated_questions(raw, kind, count, topic, difficulty, labels)
                logger.info("Chunk %d: %d %s questions on attempt %d", chunk, len(questions), kind, attempt)
                return questions
            except ConfigurationError:
                raise
            except (ValueError, EvaluationError) as e:
                last_error = e
                logger.warning("Chunk %d attempt %d/%d failed: %s", chunk, attempt, MAX_CHUNK_ATTEMPTS, e)
                if attempt < MAX_CHUNK_ATTEMPTS:
                    self._sleep(2 ** attempt)
        raise EvaluationError(f"Failed to generate questions after {MAX_CHUNK_ATTEMPTS} attempts: {last_error}")

    def generate(
        self,
        subject_id: str,
        topic: str,
        question_type: str = "mcq",
        mcq_count: int = 10,
        theory_marks: Optional[Dict[int, int]] = None,
        difficulty: int = 50,
        blooms_taxonomy: Optional[Dict[str, float]] = None,
        material_ids: Optional[List[str]] = None,
        save: bool = True,
        user_id: Optional[str] = None,
    ) -> List[dict]:
        subject = self.db.get(Subject, subject_id)
        if subject is None:
            raise NotFoundError("Subject", subject_id)
        if not (topic or "").strip():
            raise ValidationError("topic is required")
        if not 0 <= difficulty <= 100:
            raise ValidationError("difficulty must be between 0 and 100")

        chunks = plan_chunks(question_type, mcq_count, theory_marks or {})
        if not self._get_client().is_configured:
            raise ConfigurationError("No LLM provider configured for question generation.")
        content = self.chapter_content(material_ids or [])
        labels = outcome_labels(course_outcomes_for(self.db, subject_id))
        logger.info("Generating %d questions on '%s' for %s in %d chunk(s), content %d chars",
                    sum(c[1] for c in chunks), topic, subject.name, len(chunks), len(content))

        questions = []
        for i, (kind, count, marks_split) in enumerate(chunks, start=1):
            prompt = self.build_prompt(kind, count, marks_split, subject.name, topic, difficulty,
                                       i, len(chunks), labels, blooms_taxonomy, content)
            questions.extend(self._generate_chunk(prompt, kind, count, topic, difficulty, labels, i))

        if not save:
            return questions
        rows = [GeneratedQuestion(subject_id=subject_id, user_id=user_id, **q) for q in questions]
        self.db.add_all(rows)
        self.db.commit()
        logger.info("✅ Stored %d generated questions for topic '%s'", len(rows), topic)
        return [to_dict(r) for r in rows]


# ─────────────────────────────────────────────────────────
# Question bank
# ─────────────────────────────────────────────────────────

def group_sessions(questions: List[GeneratedQuestion], subject_names: Dict[str, str]) -> List[dict]:
    """Group bank questions by (topic, subject), newest session first."""
    sessions: Dict[tuple, dict] = {}
    for q in questions:
        key = (q.topic or "Unnamed Topic", q.subject_id)
        session = sessions.get(key)
        if session is None:
            session = sessions[key] = {
                "id": f"{key[0]}_{q.subject_id}",
                "topic": key[0],
                "subject_id": q.subject_id,
                "subject": subject_names.get(q.subject_id, "Unassigned"),
                "count": 0,
                "last_generated": q.created_at,
                "question_ids": [],
            }
        session["count"] += 1
        session["question_ids"].append(q.id)
        if q.created_at and (session["last_generated"] is None or q.created_at > session["last_generated"]):
            session["last_generated"] = q.created_at

    out = sorted(sessions.values(), key=lambda s: s["last_generated"] or datetime.min, reverse=True)
    for s in out:
        s["last_generated"] = s["last_generated"].isoformat() if s["last_generated"] else None
    return out
