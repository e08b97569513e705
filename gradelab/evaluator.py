"""
GradeLab - Evaluation Engine
Grades a whole answer sheet against a question paper and answer key.

Pipeline:
  1. analyze_question_paper()  - estimate question count and sections from the paper text
  2. batch_config()            - pick batch size / concurrency from the question count
  3. LLMEvaluator.grade_batch  - one LLM call per batch, run in a thread pool
  4. combine_batch_results()   - merge, de-duplicate, total, summarise

  ┌──────────────┬────────────┬────────────────┐
  │ Questions    │ Batch size │ Max concurrent │
  ├──────────────┼────────────┼────────────────┤
  │ ≤ 50         │ 25         │ 10             │
  │ ≤ 100        │ 20         │ 8              │
  │ ≤ 200        │ 15         │ 6              │
  │ > 200        │ 10         │ 5              │
  └──────────────┴────────────┴────────────────┘
"""

import math
import re
import time
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Callable

from gradelab import config
from gradelab.llm_evaluator import LLMEvaluator, StudentInfo

logger = logging.getLogger(__name__)

DEFAULT_QUESTION_COUNT = 50
# Larger numbers on a paper are years, marks or codes, not question numbers.
MAX_QUESTION_NUMBER = 300

_QUESTION_RE = re.compile(r"(?:Q|Question|Q\.|Question\.)\s*(\d+)", re.IGNORECASE)
_LINE_NUMBER_RE = re.compile(r"^\d+\.|^\d+\)|^\d+\s", re.MULTILINE)
_SECTION_LABEL_RE = re.compile(r"[A-Z]\.\s*\d+|[A-Z]\)\s*\d+")
_TYPE_NUMBER_RE = re.compile(r"(?:MCQ|Multiple Choice|Objective|Subjective)\s*(\d+)", re.IGNORECASE)
# The letter must be a capital on its own, so "sections" or "Second" never match.
_SECTION_RE = re.compile(r"\b(?:Section|SECTION|Sec\.?|SEC\.?)\s+([A-Z])\b")
_NUMBER_RE = re.compile(r"\d+")

STUDY_RECOMMENDATIONS = [
    "Review questions with low scores",
    "Practice similar question types",
    "Focus on weak concepts identified",
]


@dataclass
class QuestionAnalysis:
    total_questions: int
    questions_by_section: Dict[str, int] = field(default_factory=dict)


def analyze_question_paper(question_paper: str) -> QuestionAnalysis:
    """
    Estimate how many questions a paper has and how they split into sections.

    The count is the highest question-like number found (ignoring anything
    above MAX_QUESTION_NUMBER), or the number of "Q<n>" labels if that is
    larger, or DEFAULT_QUESTION_COUNT when nothing matches.

    Sections are the letters actually named on the paper ("Section A",
    "SEC. B"), in order of first appearance, not a fixed A-F list. The count
    is split evenly with the ceiling going to every section but the last,
    which takes the remainder (at least 1). A paper without section
    headings gets a single "Main Section".
    """
    text = question_paper or ""
    question_matches = [m.group(0) for m in _QUESTION_RE.finditer(text)]
    patterns = [
        question_matches,
        [m.group(0) for m in _LINE_NUMBER_RE.finditer(text)],
        [m.group(0) for m in _SECTION_LABEL_RE.finditer(text)],
        [m.group(0) for m in _TYPE_NUMBER_RE.finditer(text)],
    ]

    max_number = 0
    for matches in patterns:
        for match in matches:
            number = _NUMBER_RE.search(match)
            if number:
                value = int(number.group(0))
                if value <= MAX_QUESTION_NUMBER:
                    max_number = max(max_number, value)

    total = max(max_number, len(question_matches)) or DEFAULT_QUESTION_COUNT

    sections = []
    for m in _SECTION_RE.finditer(text):
        letter = m.group(1).upper()
        if letter not in sections:
            sections.append(letter)

    by_section: Dict[str, int] = {}
    if sections:
        per_section = math.ceil(total / len(sections))
        for i, letter in enumerate(sections):
            if i < len(sections) - 1:
                by_section[f"Section {letter}"] = per_section
            else:
                by_section[f"Section {letter}"] = max(total - per_section * (len(sections) - 1), 1)
    else:
        by_section["Main Section"] = total

    logger.info("Question analysis: detected %d questions across %d sections", total, len(by_section))
    return QuestionAnalysis(total_questions=total, questions_by_section=by_section)


def batch_config(total_questions: int) -> tuple:
    """(batch_size, max_concurrent_batches) for a paper of this size."""
    if total_questions <= 50:
        return 25, 10
    if total_questions <= 100:
        return 20, 8
    if total_questions <= 200:
        return 15, 6
    return 10, 5


def make_question_batches(total_questions: int, batch_size: int) -> List[List[int]]:
    return [
        list(range(start + 1, min(start + batch_size, total_questions) + 1))
        for start in range(0, total_questions, batch_size)
    ]


def combine_batch_results(
    batch_results: List[List[dict]],
    student: StudentInfo,
    total_questions: int,
    questions_by_section: Dict[str, int],
) -> dict:
    all_answers = sorted(
        (a for batch in batch_results for a in batch),
        key=lambda a: a["question_no"],
    )

    seen, answers = set(), []
    for answer in all_answers:
        if answer["question_no"] in seen:
            continue
        seen.add(answer["question_no"])
        answers.append(answer)

    total_score = sum(a["score"][0] for a in answers)
    total_possible = sum(a["score"][1] for a in answers)
    pct = (total_score / total_possible * 100) if total_possible > 0 else 0.0

    def _topic(answer, fallback):
        concepts = answer.get("concepts") or []
        return concepts[0] if concepts else f"{fallback} {answer['question_no']}"

    strengths = [
        f"Strong performance in {_topic(a, 'question')}"
        for a in answers if a["score"][0] > a["score"][1] * 0.7
    ][:3]
    areas = [
        f"Improve {_topic(a, 'understanding in question')}"
        for a in answers if a["score"][0] < a["score"][1] * 0.5
    ][:3]

    verdict = "Good performance overall." if pct >= 70 else "Areas for improvement identified."
    summary = f"{student.name} scored {format_marks(total_score)}/{format_marks(total_possible)} ({pct:.1f}%). {verdict}"

    return {
        "student_name": student.name,
        "roll_no": student.roll_number,
        "class": student.class_name,
        "subject": student.subject,
        "total_questions_detected": total_questions,
        "questions_by_section": questions_by_section,
        "overall_performance": {
            "strengths": strengths or ["Continue working on core concepts"],
            "areas_for_improvement": areas or ["Review all topics covered"],
            "study_recommendations": list(STUDY_RECOMMENDATIONS),
            "personalized_summary": summary,
        },
        "answers": answers,
    }


def format_marks(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


def score_totals(evaluation: dict) -> tuple:
    """(awarded, possible) summed over an evaluation's answers."""
    answers = (evaluation or {}).get("answers", [])
    return (
        sum(float(a["score"][0]) for a in answers),
        sum(float(a["score"][1]) for a in answers),
    )


# ─────────────────────────────────────────────────────────
# Evaluation Engine
# ─────────────────────────────────────────────────────────

class EvaluationEngine:
    """
    Main grading pipeline. The LLM evaluator and the pause between chunks are
    injectable so tests can run it without network or sleeps.
    """

    def __init__(
        self,
        llm_evaluator: Optional[LLMEvaluator] = None,
        chunk_delay_sec: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.llm_evaluator = llm_evaluator or LLMEvaluator()
        self.chunk_delay_sec = config.EVAL_CHUNK_DELAY_SEC if chunk_delay_sec is None else chunk_delay_sec
        self._sleep = sleep

    def evaluate(
        self,
        question_paper: str,
        answer_key: str,
        student_sheet: str,
        student: StudentInfo,
        rubric: Optional[dict] = None,
    ) -> dict:
        """
        Grade every detected question and return the combined evaluation dict.
        Raises ConfigurationError when no LLM is configured.
        """
        self.llm_evaluator.ensure_configured()
        start = time.time()
        logger.info("Processing evaluation for student: %s", student.name)
        logger.info("Input lengths - question paper: %d, answer key: %d, student sheet: %d",
                    len(question_paper or ""), len(answer_key or ""), len(student_sheet or ""))

        analysis = analyze_question_paper(question_paper)
        batch_size, max_concurrent = batch_config(analysis.total_questions)
        batches = make_question_batches(analysis.total_questions, batch_size)
        logger.info("Created %d batches of up to %d questions (max %d concurrent)",
                    len(batches), batch_size, max_concurrent)

        def _grade(index_and_batch):
            index, numbers = index_and_batch
            return self.llm_evaluator.grade_batch(
                numbers, question_paper, answer_key, student_sheet, student,
                rubric=rubric, batch_number=index + 1,
            )

        batch_results: List[List[dict]] = []
        with ThreadPoolExecutor(max_workers=max_concurrent, thread_name_prefix="grade") as pool:
            for chunk_start in range(0, len(batches), max_concurrent):
                chunk = list(enumerate(batches))[chunk_start:chunk_start + max_concurrent]
                batch_results.extend(pool.map(_grade, chunk))
                if chunk_start + max_concurrent < len(batches) and self.chunk_delay_sec:
                    self._sleep(self.chunk_delay_sec)

        result = combine_batch_results(batch_results, student, analysis.total_questions,
                                       analysis.questions_by_section)
        logger.info("Combined result: %d questions graded in %.2fs",
                    len(result["answers"]), time.time() - start)
        return result
