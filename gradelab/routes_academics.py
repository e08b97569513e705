"""
GradeLab - Academic records
Classes, subjects, students, enrollments, tests and test results.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, UploadFile, File, Query, Response
from fastapi.responses import PlainTextResponse
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gradelab.csv_import import (
    parse_csv, student_csv_template, validate_student_csv, student_fields, results_to_csv,
)
from gradelab.database import (
    get_db, to_dict, SchoolClass, Subject, ClassSubject, Student, SubjectEnrollment, Test,
    TestResult, TestPaper, StudentAnswerSheet, AutoGradeStatus, Rubric, CourseOutcome, GeneratedQuestion,
    PaperAnalysis,
)
from gradelab import schemas

logger = logging.getLogger(__name__)

router = APIRouter(tags=["academics"])


def _get_or_404(db: Session, model, row_id: str, label: str):
    row = db.get(model, row_id)
    if row is None:
        raise HTTPException(404, f"{label} not found.")
    return row


def _apply(row, payload) -> None:
    for key, value in payload.model_dump(exclude_unset=True).items():
        setattr(row, key, value)


def _commit(db: Session, what: str) -> None:
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning("Integrity error while saving %s: %s", what, e.orig)
        raise HTTPException(409, f"{what} conflicts with an existing record.")


# ─────────────────────────────────────────────────────────
# Classes
# ─────────────────────────────────────────────────────────

def _class_subjects(db: Session, class_id: str) -> list:
    linked = select(ClassSubject.subject_id).where(ClassSubject.class_id == class_id)
    return (
        db.query(Subject)
        .filter(or_(Subject.class_id == class_id, Subject.id.in_(linked)))
        .order_by(Subject.name)
        .all()
    )


@router.get("/classes", summary="List classes")
def list_classes(db: Session = Depends(get_db)):
    return [to_dict(c) for c in db.query(SchoolClass).order_by(SchoolClass.name).all()]


@router.post("/classes", status_code=201, summary="Create a class")
def create_class(payload: schemas.ClassCreate, db: Session = Depends(get_db)):
    row = SchoolClass(**payload.model_dump())
    db.add(row)
    _commit(db, "Class")
    db.refresh(row)
    return to_dict(row)


@router.get("/classes/{class_id}", summary="Get a class with its subjects")
def get_class(class_id: str, db: Session = Depends(get_db)):
    row = _get_or_404(db, SchoolClass, class_id, "Class")
    out = to_dict(row)
    out["subjects"] = [to_dict(s) for s in _class_subjects(db, class_id)]
    return out


@router.put("/classes/{class_id}", summary="Update a class")
def update_class(class_id: str, payload: schemas.ClassUpdate, db: Session = Depends(get_db)):
    row = _get_or_404(db, SchoolClass, class_id, "Class")
    _apply(row, payload)
    _commit(db, "Class")
    db.refresh(row)
    return to_dict(row)


@router.delete("/classes/{class_id}", summary="Delete a class (students become unassigned)")
def delete_class(class_id: str, db: Session = Depends(get_db)):
    row = _get_or_404(db, SchoolClass, class_id, "Class")
    unassigned = db.query(Student).filter_by(class_id=class_id).update({"class_id": None})
    db.query(Subject).filter_by(class_id=class_id).update({"class_id": None})
    db.query(ClassSubject).filter_by(class_id=class_id).delete()
    db.delete(row)
    _commit(db, "Class")
    logger.info("Deleted class %s (%d students unassigned)", class_id, unassigned)
    return {"success": True, "unassigned_students": unassigned}


@router.get("/classes/{class_id}/subjects", summary="Subjects taught in a class")
def list_class_subjects(class_id: str, db: Session = Depends(get_db)):
    _get_or_404(db, SchoolClass, class_id, "Class")
    return [to_dict(s) for s in _class_subjects(db, class_id)]


# ─────────────────────────────────────────────────────────
# Subjects
# ─────────────────────────────────────────────────────────

@router.get("/subjects", summary="List subjects")
def list_subjects(db: Session = Depends(get_db)):
    return [to_dict(s) for s in db.query(Subject).order_by(Subject.name).all()]


@router.post("/subjects", status_code=201, summary="Create a subject")
def create_subject(payload: schemas.SubjectCreate, db: Session = Depends(get_db)):
    if payload.class_id:
        _get_or_404(db, SchoolClass, payload.class_id, "Class")
    row = Subject(**payload.model_dump())
    db.add(row)
    _commit(db, "Subject")
    db.refresh(row)
    return to_dict(row)


@router.get("/subjects/{subject_id}", summary="Get a subject")
def get_subject(subject_id: str, db: Session = Depends(get_db)):
    return to_dict(_get_or_404(db, Subject, subject_id, "Subject"))


@router.put("/subjects/{subject_id}", summary="Update a subject")
def update_subject(subject_id: str, payload: schemas.SubjectUpdate, db: Session = Depends(get_db)):
    row = _get_or_404(db, Subject, subject_id, "Subject")
    _apply(row, payload)
    _commit(db, "Subject")
    db.refresh(row)
    return to_dict(row)


@router.delete("/subjects/{subject_id}", summary="Delete a subject")
def delete_subject(subject_id: str, db: Session = Depends(get_db)):
    row = _get_or_404(db, Subject, subject_id, "Subject")
    db.query(ClassSubject).filter_by(subject_id=subject_id).delete()
    db.query(SubjectEnrollment).filter_by(subject_id=subject_id).delete()
    db.query(GeneratedQuestion).filter_by(subject_id=subject_id).delete()
    db.query(CourseOutcome).filter_by(subject_id=subject_id).delete()
    db.query(PaperAnalysis).filter_by(subject_id=subject_id).update({"subject_id": None})
    db.delete(row)
    _commit(db, "Subject")
    return {"success": True}


@router.get("/subjects/{subject_id}/students", summary="Students enrolled in a subject")
def list_subject_students(subject_id: str, db: Session = Depends(get_db)):
    _get_or_404(db, Subject, subject_id, "Subject")
    enrolled = select(SubjectEnrollment.student_id).where(SubjectEnrollment.subject_id == subject_id)
    students = db.query(Student).filter(Student.id.in_(enrolled)).order_by(Student.name).all()
    return [to_dict(s) for s in students]


@router.get("/subjects/{subject_id}/class", summary="Class a subject belongs to")
def get_subject_class(subject_id: str, db: Session = Depends(get_db)):
    subject = _get_or_404(db, Subject, subject_id, "Subject")
    class_id = subject.class_id
    if class_id is None:
        link = db.query(ClassSubject).filter_by(subject_id=subject_id).first()
        class_id = link.class_id if link else None
    if class_id is None:
        return None
    return to_dict(_get_or_404(db, SchoolClass, class_id, "Class"))


@router.post("/class-subjects", status_code=201, summary="Link a subject to a class")
def link_subject(payload: schemas.ClassSubjectLink, db: Session = Depends(get_db)):
    _get_or_404(db, SchoolClass, payload.class_id, "Class")
    _get_or_404(db, Subject, payload.subject_id, "Subject")
    existing = db.query(ClassSubject).filter_by(class_id=payload.class_id, subject_id=payload.subject_id).first()
    if existing:
        return to_dict(existing)
    row = ClassSubject(**payload.model_dump())
    db.add(row)
    _commit(db, "Class subject")
    db.refresh(row)
    return to_dict(row)


@router.delete("/class-subjects", summary="Unlink a subject from a class")
def unlink_subject(class_id: str, subject_id: str, db: Session = Depends(get_db)):
    removed = db.query(ClassSubject).filter_by(class_id=class_id, subject_id=subject_id).delete()
    db.commit()
    return {"success": True, "removed": removed}


# ─────────────────────────────────────────────────────────
# Students
# ─────────────────────────────────────────────────────────

@router.get("/students", summary="List students, optionally for one class")
def list_students(class_id: Optional[str] = None, db: Session = Depends(get_db)):
    q = db.query(Student)
    if class_id:
        q = q.filter_by(class_id=class_id)
    return [to_dict(s) for s in q.order_by(Student.name).all()]


@router.get("/students/unassigned", summary="Students without a class")
def list_unassigned_students(db: Session = Depends(get_db)):
    rows = db.query(Student).filter(Student.class_id.is_(None)).order_by(Student.name).all()
    return [to_dict(s) for s in rows]


@router.get("/students/template", response_class=PlainTextResponse, summary="Sample student CSV")
def student_template():
    return PlainTextResponse(student_csv_template(), media_type="text/csv")


@router.post("/students/import", summary="Import students from a CSV file")
async def import_students(
    file: UploadFile = File(...),
    user_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    content = (await file.read()).decode("utf-8-sig", errors="replace")
    rows = parse_csv(content)
    valid, errors = validate_student_csv(rows)
    if not valid:
        raise HTTPException(400, {"message": "CSV validation failed", "errors": errors})

    created, row_errors = 0, []
    for n, row in enumerate(rows, start=1):
        db.add(Student(**student_fields(row), user_id=user_id))
        try:
            db.commit()
            created += 1
        except IntegrityError as e:
            db.rollback()
            row_errors.append(f"Row {n}: {e.orig}")

    logger.info("Imported %d of %d students from %s", created, len(rows), file.filename)
    return {"created": created, "errors": row_errors}


@router.post("/students", status_code=201, summary="Create a student")
def create_student(payload: schemas.StudentCreate, db: Session = Depends(get_db)):
    if payload.class_id:
        _get_or_404(db, SchoolClass, payload.class_id, "Class")
    row = Student(**payload.model_dump())
    db.add(row)
    _commit(db, "Student")
    db.refresh(row)
    return to_dict(row)


@router.get("/students/{student_id}", summary="Get a student")
def get_student(student_id: str, db: Session = Depends(get_db)):
    return to_dict(_get_or_404(db, Student, student_id, "Student"))


@router.put("/students/{student_id}", summary="Update a student")
def update_student(student_id: str, payload: schemas.StudentUpdate, db: Session = Depends(get_db)):
    row = _get_or_404(db, Student, student_id, "Student")
    _apply(row, payload)
    _commit(db, "Student")
    db.refresh(row)
    return to_dict(row)


@router.put("/students/{student_id}/class", summary="Assign a student to a class")
def assign_student(student_id: str, payload: schemas.AssignClassRequest, db: Session = Depends(get_db)):
    row = _get_or_404(db, Student, student_id, "Student")
    if payload.class_id:
        _get_or_404(db, SchoolClass, payload.class_id, "Class")
    row.class_id = payload.class_id
    db.commit()
    db.refresh(row)
    return to_dict(row)


@router.delete("/students/{student_id}", summary="Delete a student")
def delete_student(student_id: str, db: Session = Depends(get_db)):
    row = _get_or_404(db, Student, student_id, "Student")
    for model in (AutoGradeStatus, StudentAnswerSheet, TestResult, SubjectEnrollment):
        db.query(model).filter_by(student_id=student_id).delete()
    db.delete(row)
    db.commit()
    return {"success": True}


@router.get("/students/{student_id}/subjects", summary="Subjects a student is enrolled in")
def list_student_subjects(student_id: str, db: Session = Depends(get_db)):
    _get_or_404(db, Student, student_id, "Student")
    enrolled = select(SubjectEnrollment.subject_id).where(SubjectEnrollment.student_id == student_id)
    return [to_dict(s) for s in db.query(Subject).filter(Subject.id.in_(enrolled)).order_by(Subject.name)]


# ─────────────────────────────────────────────────────────
# Enrollments
# ─────────────────────────────────────────────────────────

@router.post("/enrollments", status_code=201, summary="Enroll a student in a subject")
def enroll(payload: schemas.EnrollmentCreate, db: Session = Depends(get_db)):
    _get_or_404(db, Student, payload.student_id, "Student")
    _get_or_404(db, Subject, payload.subject_id, "Subject")
    existing = (
        db.query(SubjectEnrollment)
        .filter_by(student_id=payload.student_id, subject_id=payload.subject_id)
        .first()
    )
    if existing:
        return to_dict(existing)
    row = SubjectEnrollment(**payload.model_dump())
    db.add(row)
    _commit(db, "Enrollment")
    db.refresh(row)
    return to_dict(row)


@router.delete("/enrollments", summary="Unenroll a student from a subject")
def unenroll(student_id: str, subject_id: str, db: Session = Depends(get_db)):
    removed = db.query(SubjectEnrollment).filter_by(student_id=student_id, subject_id=subject_id).delete()
    db.commit()
    return {"success": True, "removed": removed}


# ─────────────────────────────────────────────────────────
# Tests
# ─────────────────────────────────────────────────────────

def _test_out(test: Test) -> dict:
    out = to_dict(test)
    out["subject"] = {"id": test.subject.id, "name": test.subject.name, "code": test.subject.code} \
        if test.subject else None
    out["class"] = {"id": test.school_class.id, "name": test.school_class.name} \
        if test.school_class else None
    return out


@router.get("/tests", summary="List tests, newest first")
def list_tests(
    subject_id: Optional[str] = None,
    class_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    q = db.query(Test)
    if subject_id:
        q = q.filter_by(subject_id=subject_id)
    if class_id:
        q = q.filter_by(class_id=class_id)
    return [_test_out(t) for t in q.order_by(Test.date.desc(), Test.created_at.desc()).all()]


@router.post("/tests", status_code=201, summary="Create a test")
def create_test(payload: schemas.TestCreate, db: Session = Depends(get_db)):
    _get_or_404(db, Subject, payload.subject_id, "Subject")
    _get_or_404(db, SchoolClass, payload.class_id, "Class")
    row = Test(**payload.model_dump())
    db.add(row)
    _commit(db, "Test")
    db.refresh(row)
    return _test_out(row)


@router.get("/tests/{test_id}", summary="Get a test with subject and class")
def get_test(test_id: str, db: Session = Depends(get_db)):
    return _test_out(_get_or_404(db, Test, test_id, "Test"))


@router.put("/tests/{test_id}", summary="Update a test")
def update_test(test_id: str, payload: schemas.TestUpdate, db: Session = Depends(get_db)):
    row = _get_or_404(db, Test, test_id, "Test")
    _apply(row, payload)
    _commit(db, "Test")
    db.refresh(row)
    return _test_out(row)


@router.delete("/tests/{test_id}", summary="Delete a test and its grading records")
def delete_test(test_id: str, db: Session = Depends(get_db)):
    row = _get_or_404(db, Test, test_id, "Test")
    db.query(TestPaper).filter_by(test_id=test_id).update({"test_id": None})
    for model in (AutoGradeStatus, StudentAnswerSheet, TestResult, Rubric):
        db.query(model).filter_by(test_id=test_id).delete()
    db.delete(row)
    db.commit()
    logger.info("Deleted test %s", test_id)
    return {"success": True}


# ─────────────────────────────────────────────────────────
# Results
# ─────────────────────────────────────────────────────────

def _result_out(result: TestResult) -> dict:
    out = to_dict(result)
    s = result.student
    out["student"] = {"id": s.id, "name": s.name, "gr_number": s.gr_number, "roll_number": s.roll_number} \
        if s else None
    return out


def _check_marks(test: Test, marks: float):
    if test.max_marks is not None and marks > test.max_marks:
        raise HTTPException(400, f"marks_obtained cannot exceed max_marks ({test.max_marks:g}).")


@router.get("/tests/{test_id}/results", summary="Results for a test")
def list_results(test_id: str, db: Session = Depends(get_db)):
    _get_or_404(db, Test, test_id, "Test")
    return [_result_out(r) for r in db.query(TestResult).filter_by(test_id=test_id).all()]


@router.post("/tests/{test_id}/results/bulk", summary="Create or update many results for a test")
def bulk_results(test_id: str, payload: schemas.BulkResultsRequest, db: Session = Depends(get_db)):
    test = _get_or_404(db, Test, test_id, "Test")
    existing = {r.student_id: r for r in db.query(TestResult).filter_by(test_id=test_id)}
    for item in payload.results:
        _check_marks(test, item.marks_obtained)
        _get_or_404(db, Student, item.student_id, "Student")
        row = existing.get(item.student_id)
        if row is None:
            row = TestResult(test_id=test_id, student_id=item.student_id)
            db.add(row)
            existing[item.student_id] = row
        row.marks_obtained = item.marks_obtained
    _commit(db, "Test result")
    return {"success": True, "saved": len(payload.results)}


@router.get("/tests/{test_id}/results/export", summary="Download a test's results as CSV")
def export_results(test_id: str, db: Session = Depends(get_db)):
    test = _get_or_404(db, Test, test_id, "Test")
    rows = []
    for r in db.query(TestResult).filter_by(test_id=test_id).all():
        rows.append({
            "name": r.student.name if r.student else "",
            "gr_number": r.student.gr_number if r.student else "",
            "roll_number": r.student.roll_number if r.student else "",
            "marks_obtained": r.marks_obtained,
        })
    filename = f"{test.title.replace(' ', '_')}_results.csv"
    return Response(
        content=results_to_csv(rows),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/results", status_code=201, summary="Record a student's marks")
def create_result(payload: schemas.ResultCreate, db: Session = Depends(get_db)):
    test = _get_or_404(db, Test, payload.test_id, "Test")
    _get_or_404(db, Student, payload.student_id, "Student")
    _check_marks(test, payload.marks_obtained)
    row = TestResult(**payload.model_dump())
    db.add(row)
    _commit(db, "Test result")
    db.refresh(row)
    return _result_out(row)


@router.put("/results/{result_id}", summary="Update marks")
def update_result(result_id: str, payload: schemas.ResultUpdate, db: Session = Depends(get_db)):
    row = _get_or_404(db, TestResult, result_id, "Result")
    test = db.get(Test, row.test_id)
    if test is not None:
        _check_marks(test, payload.marks_obtained)
    row.marks_obtained = payload.marks_obtained
    db.commit()
    db.refresh(row)
    return _result_out(row)


@router.delete("/results/{result_id}", summary="Delete a result")
def delete_result(result_id: str, db: Session = Depends(get_db)):
    db.delete(_get_or_404(db, TestResult, result_id, "Result"))
    db.commit()
    return {"success": True}
