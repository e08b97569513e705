"""
GradeLab - Reports and Agreement Metrics

  class_overview()     : graded count, average/high/low %, pass rate, grade bands
  question_analysis()  : per-question average %, attempts, full-mark count
  compute_metrics()    : AI totals vs teacher-entered marks (MAE, Pearson r,
                         Cohen's Kappa, accuracy within ±N marks)
"""

import numpy as np
from dataclasses import dataclass
from typing import List, Dict, Iterable

from gradelab import config

GRADE_BANDS = [
    ("A", 90.0),
    ("B", 75.0),
    ("C", 60.0),
    ("D", 40.0),
    ("F", 0.0),
]


# ─────────────────────────────────────────────────────────
# Class reports
# ─────────────────────────────────────────────────────────

def _percentage(evaluation: dict) -> float:
    answers = (evaluation or {}).get("answers", [])
    got = sum(float(a["score"][0]) for a in answers)
    possible = sum(float(a["score"][1]) for a in answers)
    return got / possible * 100 if possible > 0 else 0.0


def grade_for(percentage: float) -> str:
    for grade, floor in GRADE_BANDS:
        if percentage >= floor:
            return grade
    return "F"


def class_overview(evaluations: Iterable[dict], pass_percentage: float = None) -> dict:
    """
    evaluations : evaluation_result dicts of completed students.
    """
    pass_mark = config.PASS_PERCENTAGE if pass_percentage is None else pass_percentage
    pcts = np.array([_percentage(e) for e in evaluations if e], dtype=float)
    distribution = {grade: 0 for grade, _ in GRADE_BANDS}

    if len(pcts) == 0:
        return {
            "graded": 0, "average_percentage": 0.0, "highest_percentage": 0.0,
            "lowest_percentage": 0.0, "pass_rate": 0.0, "grade_distribution": distribution,
        }

    for p in pcts:
        distribution[grade_for(p)] += 1

    return {
        "graded": int(len(pcts)),
        "average_percentage": round(float(np.mean(pcts)), 2),
        "highest_percentage": round(float(np.max(pcts)), 2),
        "lowest_percentage": round(float(np.min(pcts)), 2),
        "pass_rate": round(float(np.mean(pcts >= pass_mark)) * 100, 2),
        "grade_distribution": distribution,
    }


def question_analysis(evaluations: Iterable[dict]) -> List[Dict]:
    """Per question number: average score %, attempts and full-mark answers."""
    by_question: Dict[int, List[tuple]] = {}
    for evaluation in evaluations:
        for answer in (evaluation or {}).get("answers", []):
            by_question.setdefault(int(answer["question_no"]), []).append(
                (float(answer["score"][0]), float(answer["score"][1]))
            )

    rows = []
    for number in sorted(by_question):
        scores = by_question[number]
        pcts = [got / total * 100 for got, total in scores if total > 0]
        rows.append({
            "question_no": number,
            "attempts": len(scores),
            "average_percentage": round(float(np.mean(pcts)), 2) if pcts else 0.0,
            "full_marks": sum(1 for got, total in scores if total > 0 and got >= total),
        })
    return rows


# ─────────────────────────────────────────────────────────
# AI vs teacher agreement
# ─────────────────────────────────────────────────────────

@dataclass
class MetricsReport:
    n_samples: int
    mae: float = 0.0
    pearson_r: float = 0.0
    cohen_kappa: float = 0.0
    accuracy_within_1: float = 0.0
    accuracy_within_0_5: float = 0.0
    mean_ai_score: float = 0.0
    mean_teacher_score: float = 0.0


def compute_metrics(
    ai_scores: List[float],
    teacher_scores: List[float],
    max_marks: float = 10.0,
) -> MetricsReport:
    """
    Compare AI-assigned totals with the marks a teacher entered.

    Parameters
    ----------
    ai_scores      : AI totals (auto_grade_status.score)
    teacher_scores : teacher marks (test_results.marks_obtained)
    max_marks      : the test's maximum marks, used for the kappa label range
    """
    if len(ai_scores) != len(teacher_scores):
        raise ValueError("Lists must be same length")
    ai = np.array(ai_scores, dtype=float)
    gt = np.array(teacher_scores, dtype=float)
    n  = len(ai)
    if n == 0:
        return MetricsReport(n_samples=0)

    mae = float(np.mean(np.abs(ai - gt)))

    pearson_r = 0.0
    if np.std(ai) > 0 and np.std(gt) > 0:
        pearson_r = float(np.corrcoef(ai, gt)[0, 1])

    kappa  = _cohen_kappa(ai.round().astype(int), gt.round().astype(int), int(max_marks))
    acc_1  = float(np.mean(np.abs(ai - gt) <= 1.0))
    acc_05 = float(np.mean(np.abs(ai - gt) <= 0.5))

    return MetricsReport(
        n_samples=n,
        mae=round(mae, 4),
        pearson_r=round(pearson_r, 4),
        cohen_kappa=round(kappa, 4),
        accuracy_within_1=round(acc_1, 4),
        accuracy_within_0_5=round(acc_05, 4),
        mean_ai_score=round(float(np.mean(ai)), 4),
        mean_teacher_score=round(float(np.mean(gt)), 4),
    )


def _cohen_kappa(pred: np.ndarray, true: np.ndarray, max_marks: int) -> float:
    from sklearn.metrics import cohen_kappa_score
    labels = list(range(max(max_marks, int(pred.max(initial=0)), int(true.max(initial=0))) + 1))
    kappa = cohen_kappa_score(true, pred, labels=labels, weights="linear")
    return 0.0 if np.isnan(kappa) else float(kappa)
