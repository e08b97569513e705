"""
GradeLab - Student CSV import and results CSV export.
"""

import csv
import io
import re
import logging
from typing import List, Dict, Tuple

logger = logging.getLogger(__name__)

STUDENT_CSV_HEADERS = [
    "name", "gr_number", "roll_number", "year", "email",
    "phone", "gender", "date_of_birth", "class_id", "address",
]
REQUIRED_STUDENT_FIELDS = [
    "name", "gr_number", "roll_number", "year", "email", "phone", "gender", "date_of_birth",
]
GENDERS = ("Male", "Female", "Other")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_DATE_RE  = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_csv(content: str, headers: bool = True) -> List[Dict[str, str]]:
    """
    Parse comma-separated text into row dicts. Quoted fields may contain
    commas, quotes ("") and newlines. Blank lines are skipped, values trimmed
    and missing cells become "". Without a header row the columns are named
    column1..n after the first row's width.
    """
    records = [
        [v.strip() for v in record]
        for record in csv.reader(io.StringIO(content.lstrip("﻿"), newline=""), skipinitialspace=True)
        if any(v.strip() for v in record)
    ]
    if not records:
        return []

    first = records[0]
    columns = first if headers else [f"column{i + 1}" for i in range(len(first))]

    rows = []
    for values in records[1 if headers else 0:]:
        rows.append({col: (values[i] if i < len(values) else "") for i, col in enumerate(columns)})
    return rows


def student_csv_template() -> str:
    return "\n".join([
        ",".join(STUDENT_CSV_HEADERS),
        "John Doe,GR12345,101,2023,john@example.com,1234567890,Male,2000-01-01,,123 Main St",
        "Jane Smith,GR12346,102,2023,jane@example.com,9876543210,Female,2001-02-15,,456 Oak Ave",
    ])


def validate_student_csv(rows: List[Dict[str, str]]) -> Tuple[bool, List[str]]:
    """Returns (valid, errors). Row numbers in messages are 1-based data rows."""
    if not rows:
        return False, ["CSV file is empty"]

    errors = []
    missing = [f for f in REQUIRED_STUDENT_FIELDS if f not in rows[0]]
    if missing:
        errors.append(f"Missing required headers: {', '.join(missing)}")

    for n, row in enumerate(rows, start=1):
        for field in REQUIRED_STUDENT_FIELDS:
            if not row.get(field):
                errors.append(f"Row {n}: Missing value for {field}")
        if row.get("email") and not _EMAIL_RE.match(row["email"]):
            errors.append(f"Row {n}: Invalid email format")
        if row.get("date_of_birth") and not _DATE_RE.match(row["date_of_birth"]):
            errors.append(f"Row {n}: Date of birth must be in YYYY-MM-DD format")
        if row.get("gender") and row["gender"] not in GENDERS:
            errors.append(f"Row {n}: Gender must be one of: {', '.join(GENDERS)}")

    return not errors, errors


def student_fields(row: Dict[str, str]) -> dict:
    """Keep the known student columns, with empty class_id meaning unassigned."""
    fields = {k: row.get(k, "") for k in STUDENT_CSV_HEADERS}
    fields["class_id"] = fields["class_id"] or None
    return fields


def results_to_csv(rows: List[dict]) -> str:
    """
    rows : dicts with name, gr_number, roll_number, marks_obtained
    """
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=["name", "gr_number", "roll_number", "marks_obtained"],
                            extrasaction="ignore", lineterminator="\n")
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    logger.info("Exported %d result rows to CSV", len(rows))
    return buf.getvalue()
