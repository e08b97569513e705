"""
GradeLab - LLM Evaluator Module
Builds grading and answer-key prompts and turns LLM output into per-question
answer dicts.

A batch asks the model for a fixed list of question numbers and expects
{"answers": [...]} (a bare array is accepted too). A batch that fails or
returns junk contributes no answers; the caller decides what that means.
"""

import logging
from dataclasses import dataclass
from typing import Optional, List, Dict, Any

from gradelab.exceptions import ConfigurationError, EvaluationError
from gradelab.llm_provider import parse_json_text
from prompts.evaluation_prompts import (
    ANSWER_KEY_PROMPT,
    ANSWER_KEY_SYSTEM,
    BATCH_GRADING_PROMPT,
    BATCH_GRADING_SYSTEM,
    RUBRIC_CRITERIA,
    RUBRIC_LEVELS,
    RUBRIC_SECTION,
)

logger = logging.getLogger(__name__)

ANSWER_FIELDS = {
    "question_no": 0,
    "section": "Main Section",
    "question": "",
    "expected_answer": "",
    "answer": "",
    "raw_extracted_text": "",
    "score": [0.0, 0.0],
    "remarks": "",
    "confidence": 0.0,
    "concepts": [],
    "missing_elements": [],
    "answer_matches": False,
    "personalized_feedback": "",
    "alignment_notes": "",
}


@dataclass
class StudentInfo:
    name: str
    roll_number: str = ""
    class_name: str = ""
    subject: str = ""


def max_tokens_for(question_count: int) -> int:
    if question_count <= 10:
        return 4096
    if question_count <= 20:
        return 8192
    if question_count <= 30:
        return 16384
    return 32768


def rubric_level_text(criterion: str, level: int) -> str:
    label, description = RUBRIC_LEVELS.get(int(level), RUBRIC_LEVELS[3])
    return f"- {criterion.capitalize()}: {level} ({label}) - {description}"


def _to_float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def normalize_answer(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Fill missing fields and coerce types. Returns None when question_no is unusable."""
    try:
        question_no = int(raw.get("question_no"))
    except (TypeError, ValueError):
        return None

    answer = {key: raw.get(key, default) for key, default in ANSWER_FIELDS.items()}
    answer["question_no"] = question_no

    score = raw.get("score")
    if isinstance(score, (list, tuple)) and len(score) >= 2:
        got, total = _to_float(score[0]), _to_float(score[1])
    else:
        got, total = _to_float(score), 0.0
    answer["score"] = [got, total]
    answer["confidence"] = _to_float(answer["confidence"])

    for key in ("concepts", "missing_elements"):
        if not isinstance(answer[key], list):
            answer[key] = [answer[key]] if answer[key] else []
    answer["answer_matches"] = bool(answer["answer_matches"])
    return answer


class LLMEvaluator:
    """
    Grades question batches and writes answer keys through the multi-provider client.
    """

    def __init__(self, llm_client=None):
        self._client = llm_client

    def _get_client(self):
        if self._client is None:
            from gradelab.llm_provider import get_llm_client
            self._client = get_llm_client()
            logger.info("LLMEvaluator using: %s", self._client.active_provider)
        return self._client

    def ensure_configured(self):
        if not self._get_client().is_configured:
            raise ConfigurationError(
                "LLM credentials are not configured. Please set AZURE_OPENAI_API_KEY, "
                "AZURE_OPENAI_ENDPOINT and AZURE_OPENAI_DEPLOYMENT (or OPENAI_API_KEY)."
            )

    # ─────────────────────────────────────────────────────
    # Prompt Builders
    # ─────────────────────────────────────────────────────

    def _rubric_section(self, rubric: Optional[dict]) -> str:
        if not rubric:
            return ""
        levels = "\n".join(
            rubric_level_text(c, rubric[c]) for c in RUBRIC_CRITERIA if rubric.get(c) is not None
        )
        return RUBRIC_SECTION.format(levels=levels) if levels else ""

    def build_batch_prompt(
        self,
        question_numbers: List[int],
        question_paper: str,
        answer_key: str,
        student_sheet: str,
        student: StudentInfo,
        rubric: Optional[dict] = None,
    ) -> str:
        return BATCH_GRADING_PROMPT.format(
            question_numbers=", ".join(str(n) for n in question_numbers),
            question_paper=question_paper,
            answer_key=answer_key,
            student_sheet=student_sheet,
            name=student.name,
            roll_number=student.roll_number,
            class_name=student.class_name,
            subject=student.subject,
            rubric_section=self._rubric_section(rubric),
        )

    # ─────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────

    def grade_batch(
        self,
        question_numbers: List[int],
        question_paper: str,
        answer_key: str,
        student_sheet: str,
        student: StudentInfo,
        rubric: Optional[dict] = None,
        batch_number: int = 1,
    ) -> List[Dict[str, Any]]:
        prompt = self.build_batch_prompt(question_numbers, question_paper, answer_key,
                                         student_sheet, student, rubric)
        try:
            response = self._get_client().generate(
                prompt,
                system=BATCH_GRADING_SYSTEM,
                max_tokens=max_tokens_for(len(question_numbers)),
                json_mode=True,
                temperature=0.1,
            )
            answers = self.parse_batch_response(response.text)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.error("Batch %d failed: %s", batch_number, e)
            return []

        logger.info("Batch %d: processed %d questions (%d expected)",
                    batch_number, len(answers), len(question_numbers))
        return answers

    @staticmethod
    def parse_batch_response(raw: str) -> List[Dict[str, Any]]:
        parsed = parse_json_text(raw)
        if isinstance(parsed, dict):
            parsed = parsed.get("answers", [])
        if not isinstance(parsed, list):
            raise ValueError("answers is not a list")
        answers = []
        for item in parsed:
            if isinstance(item, dict):
                normalized = normalize_answer(item)
                if normalized is not None:
                    answers.append(normalized)
        return answers

    def generate_answer_key(self, question_paper: str) -> str:
        self.ensure_configured()
        response = self._get_client().generate(
            ANSWER_KEY_PROMPT.format(question_paper=question_paper),
            system=ANSWER_KEY_SYSTEM,
            max_tokens=2048,
            temperature=0.2,
        )
        answer_key = (response.text or "").strip()
        if not answer_key:
            raise EvaluationError("The model returned an empty answer key")
        return answer_key
