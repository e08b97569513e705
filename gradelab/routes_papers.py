"""
GradeLab - Documents
Test papers, student answer sheets, chapter materials and text extraction.

Files go to dual storage (Supabase, mirrored to Appwrite); rows keep the
Supabase public URL, the object path and the Appwrite file id so either copy
can be removed later.
"""

import logging
import re
import time
import uuid
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, UploadFile, File, Form
from sqlalchemy.orm import Session

from gradelab import config
from gradelab.database import (
    get_db, to_dict, Test, Subject, Student, TestPaper, StudentAnswerSheet, ChapterMaterial,
    GeneratedQuestion, PaperAnalysis,
)
from gradelab.exceptions import StorageError
from gradelab.extraction import ExtractionService
from gradelab.grading_service import GradingService
from gradelab.ocr_module import get_ocr_engine
from gradelab.schemas import ExtractTextRequest, PaperLinkRequest
from gradelab.storage import DualStorage, get_storage, delete_quietly
from gradelab.workers import run_blocking

logger = logging.getLogger(__name__)

router = APIRouter(tags=["documents"])

ALLOWED_TYPES = {"image/jpeg", "image/png", "image/webp", "application/pdf"}
_SUFFIX_TYPES = {".pdf": "application/pdf", ".jpg": "image/jpeg", ".jpeg": "image/jpeg",
                 ".png": "image/png", ".webp": "image/webp"}
_PAPER_SUFFIX_RE = re.compile(r" - (Question Paper|Answer Key)$", re.IGNORECASE)

PAPERS_BUCKET    = config.SUPABASE_BUCKETS["TEST_PAPERS"]
SHEETS_BUCKET    = config.SUPABASE_BUCKETS["STUDENT_SHEETS"]
MATERIALS_BUCKET = config.SUPABASE_BUCKETS["CHAPTER_MATERIALS"]


def get_ocr():
    return get_ocr_engine()


# ─────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────

async def _read_upload(file: UploadFile) -> tuple:
    """(bytes, content_type, extension) after type and size checks."""
    content_type = file.content_type or ""
    suffix = Path(file.filename or "").suffix.lower()
    if content_type not in ALLOWED_TYPES:
        content_type = _SUFFIX_TYPES.get(suffix)
        if content_type is None:
            raise HTTPException(415, f"Unsupported file type: {file.content_type}")

    data = await file.read()
    if len(data) > config.MAX_FILE_MB * 1024 * 1024:
        raise HTTPException(413, f"File too large. Max {config.MAX_FILE_MB} MB.")
    if not data:
        raise HTTPException(400, "Uploaded file is empty.")

    ext = suffix or {v: k for k, v in _SUFFIX_TYPES.items()}[content_type]
    return data, content_type, ext


def _random_name(ext: str) -> str:
    return f"{uuid.uuid4().hex[:13]}_{int(time.time() * 1000)}{ext}"


def paper_path(test_id: Optional[str], subject_id: Optional[str], ext: str) -> str:
    if test_id:
        prefix = f"test-papers/{test_id}"
    elif subject_id:
        prefix = f"subject-papers/{subject_id}"
    else:
        prefix = "general-papers"
    return f"{prefix}/{_random_name(ext)}"


def sheet_path(test_id: str, student_id: str, ext: str) -> str:
    return f"student-sheets/{test_id}/{student_id}_{test_id}_{int(time.time() * 1000)}{ext}"


def base_title(title: str) -> str:
    return _PAPER_SUFFIX_RE.sub("", title or "").strip().lower()


async def _store(storage: DualStorage, bucket: str, path: str, data: bytes, content_type: str):
    result = await run_blocking(storage.upload, bucket, path, data, content_type)
    if not result.ok:
        raise StorageError(f"Error uploading file: {result.error}")
    return result


def _get_or_404(db: Session, model, row_id: str, label: str):
    row = db.get(model, row_id)
    if row is None:
        raise HTTPException(404, f"{label} not found.")
    return row


# ─────────────────────────────────────────────────────────
# Test papers
# ─────────────────────────────────────────────────────────

@router.post("/papers", status_code=201, summary="Upload a question paper or answer key")
async def upload_paper(
    file: UploadFile = File(...),
    title: str = Form(...),
    paper_type: str = Form("question"),
    test_id: Optional[str] = Form(None),
    subject_id: Optional[str] = Form(None),
    user_id: Optional[str] = Form(None),
    db: Session = Depends(get_db),
    storage: DualStorage = Depends(get_storage),
):
    if paper_type not in ("question", "answer"):
        raise HTTPException(400, "paper_type must be 'question' or 'answer'.")
    test_id = (test_id or "").strip() or None
    if test_id:
        test = _get_or_404(db, Test, test_id, "Test")
        subject_id = subject_id or test.subject_id

    data, content_type, ext = await _read_upload(file)
    path = paper_path(test_id, subject_id, ext)
    result = await _store(storage, PAPERS_BUCKET, path, data, content_type)

    paper = TestPaper(
        title=title,
        paper_type=paper_type,
        test_id=test_id,
        subject_id=subject_id,
        file_url=result.public_url,
        storage_path=path,
        appwrite_file_id=result.appwrite_file_id,
        has_extracted_text=False,
        user_id=user_id,
        paper_metadata={"original_filename": file.filename, "content_type": content_type, "size": len(data)},
    )
    db.add(paper)
    db.commit()
    db.refresh(paper)
    logger.info("Uploaded %s paper %s to %s/%s", paper_type, paper.id, PAPERS_BUCKET, path)
    return to_dict(paper)


@router.get("/papers", summary="List papers for a test or subject")
def list_papers(
    test_id: Optional[str] = None,
    subject_id: Optional[str] = None,
    paper_type: Optional[str] = None,
    db: Session = Depends(get_db),
):
    q = db.query(TestPaper)
    if test_id:
        q = q.filter_by(test_id=test_id)
    if subject_id:
        q = q.filter_by(subject_id=subject_id)
    if paper_type:
        q = q.filter_by(paper_type=paper_type)
    return [to_dict(p) for p in q.order_by(TestPaper.created_at.desc()).all()]


@router.get("/papers/{paper_id}", summary="Get a paper")
def get_paper(paper_id: str, db: Session = Depends(get_db)):
    return to_dict(_get_or_404(db, TestPaper, paper_id, "Paper"))


@router.put("/papers/{paper_id}/test", summary="Link a paper to a test")
def link_paper(paper_id: str, payload: PaperLinkRequest, db: Session = Depends(get_db)):
    paper = _get_or_404(db, TestPaper, paper_id, "Paper")
    test = _get_or_404(db, Test, payload.test_id, "Test")
    paper.test_id = test.id
    paper.subject_id = paper.subject_id or test.subject_id
    db.commit()
    db.refresh(paper)
    return to_dict(paper)


@router.delete("/papers/{paper_id}/test", summary="Unlink a paper from its test")
def unlink_paper(paper_id: str, db: Session = Depends(get_db)):
    paper = _get_or_404(db, TestPaper, paper_id, "Paper")
    paper.test_id = None
    db.commit()
    db.refresh(paper)
    return to_dict(paper)


def _related_paper(db: Session, paper: TestPaper) -> Optional[TestPaper]:
    """The opposite-type paper whose title matches once the type suffix is stripped."""
    if not paper.subject_id and not paper.test_id:
        return None
    q = db.query(TestPaper).filter(TestPaper.id != paper.id, TestPaper.paper_type != paper.paper_type)
    q = q.filter_by(subject_id=paper.subject_id) if paper.subject_id else q.filter_by(test_id=paper.test_id)
    wanted = base_title(paper.title)
    return next((p for p in q.all() if base_title(p.title) == wanted), None)


@router.delete("/papers/{paper_id}", summary="Delete a paper (and optionally its pair)")
async def delete_paper(
    paper_id: str,
    delete_related: bool = False,
    db: Session = Depends(get_db),
    storage: DualStorage = Depends(get_storage),
):
    paper = _get_or_404(db, TestPaper, paper_id, "Paper")
    targets = [paper]
    if delete_related:
        related = _related_paper(db, paper)
        if related is not None:
            logger.info("Found related paper %s, deleting", related.id)
            targets.append(related)

    storage_errors = []
    for p in targets:
        _, errors = await run_blocking(delete_quietly, storage, PAPERS_BUCKET, p.storage_path, p.appwrite_file_id)
        storage_errors.extend(errors)

    deleted = [to_dict(p) for p in targets]
    for p in targets:
        db.query(PaperAnalysis).filter_by(paper_id=p.id).delete()
        db.query(GeneratedQuestion).filter_by(paper_id=p.id).update({"paper_id": None})
        db.delete(p)
    db.commit()
    return {"success": True, "deleted": deleted, "storage_errors": storage_errors}


@router.post("/papers/{paper_id}/extract", summary="Extract text from a stored paper")
async def extract_paper(
    paper_id: str,
    db: Session = Depends(get_db),
    storage: DualStorage = Depends(get_storage),
    ocr=Depends(get_ocr),
):
    service = ExtractionService(db, ocr_engine=ocr, storage=storage)
    return await run_blocking(service.extract_paper, paper_id)


# ─────────────────────────────────────────────────────────
# Student answer sheets
# ─────────────────────────────────────────────────────────

@router.post("/tests/{test_id}/students/{student_id}/answer-sheet", status_code=201,
             summary="Upload (or replace) a student's answer sheet")
async def upload_answer_sheet(
    test_id: str,
    student_id: str,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    storage: DualStorage = Depends(get_storage),
):
    _get_or_404(db, Test, test_id, "Test")
    _get_or_404(db, Student, student_id, "Student")

    data, content_type, ext = await _read_upload(file)
    path = sheet_path(test_id, student_id, ext)
    result = await _store(storage, SHEETS_BUCKET, path, data, content_type)

    old = db.query(StudentAnswerSheet).filter_by(test_id=test_id, student_id=student_id).first()
    old_path, old_appwrite_id = (old.storage_path, old.appwrite_file_id) if old else (None, None)

    sheet = GradingService(db).replace_answer_sheet(
        test_id, student_id, result.public_url, path, result.appwrite_file_id,
    )
    if old_path:
        await run_blocking(delete_quietly, storage, SHEETS_BUCKET, old_path, old_appwrite_id)

    logger.info("Stored answer sheet %s for student %s on test %s", sheet.id, student_id, test_id)
    return to_dict(sheet)


@router.get("/tests/{test_id}/students/{student_id}/answer-sheet", summary="A student's answer sheet for a test")
def get_student_sheet(test_id: str, student_id: str, db: Session = Depends(get_db)):
    sheet = db.query(StudentAnswerSheet).filter_by(test_id=test_id, student_id=student_id).first()
    if sheet is None:
        raise HTTPException(404, "Answer sheet not found.")
    return to_dict(sheet)


@router.get("/answer-sheets/{sheet_id}", summary="Get an answer sheet")
def get_sheet(sheet_id: str, db: Session = Depends(get_db)):
    return to_dict(_get_or_404(db, StudentAnswerSheet, sheet_id, "Answer sheet"))


@router.post("/answer-sheets/{sheet_id}/extract", summary="Extract text from an answer sheet")
async def extract_sheet(
    sheet_id: str,
    db: Session = Depends(get_db),
    storage: DualStorage = Depends(get_storage),
    ocr=Depends(get_ocr),
):
    service = ExtractionService(db, ocr_engine=ocr, storage=storage)
    return await run_blocking(service.extract_sheet, sheet_id)


# ─────────────────────────────────────────────────────────
# Chapter materials
# ─────────────────────────────────────────────────────────

@router.post("/materials", status_code=201, summary="Upload chapter material for a subject")
async def upload_material(
    file: UploadFile = File(...),
    title: str = Form(...),
    subject_id: Optional[str] = Form(None),
    user_id: Optional[str] = Form(None),
    db: Session = Depends(get_db),
    storage: DualStorage = Depends(get_storage),
):
    if subject_id:
        _get_or_404(db, Subject, subject_id, "Subject")
    data, content_type, ext = await _read_upload(file)
    path = f"{subject_id or 'general'}/{_random_name(ext)}"
    result = await _store(storage, MATERIALS_BUCKET, path, data, content_type)

    material = ChapterMaterial(
        title=title,
        subject_id=subject_id,
        file_url=result.public_url,
        storage_path=path,
        appwrite_file_id=result.appwrite_file_id,
        user_id=user_id,
    )
    db.add(material)
    db.commit()
    db.refresh(material)
    return to_dict(material)


@router.get("/subjects/{subject_id}/materials", summary="Chapter materials for a subject")
def list_materials(subject_id: str, db: Session = Depends(get_db)):
    rows = (
        db.query(ChapterMaterial)
        .filter_by(subject_id=subject_id)
        .order_by(ChapterMaterial.created_at.desc())
        .all()
    )
    return [to_dict(m) for m in rows]


@router.get("/materials/{material_id}", summary="Get a chapter material")
def get_material(material_id: str, db: Session = Depends(get_db)):
    return to_dict(_get_or_404(db, ChapterMaterial, material_id, "Chapter material"))


@router.delete("/materials/{material_id}", summary="Delete a chapter material")
async def delete_material(
    material_id: str,
    db: Session = Depends(get_db),
    storage: DualStorage = Depends(get_storage),
):
    material = _get_or_404(db, ChapterMaterial, material_id, "Chapter material")
    _, errors = await run_blocking(delete_quietly, storage, MATERIALS_BUCKET,
                                   material.storage_path, material.appwrite_file_id)
    db.delete(material)
    db.commit()
    return {"success": True, "storage_errors": errors}


@router.post("/materials/{material_id}/extract", summary="Extract text from a chapter material")
async def extract_material(
    material_id: str,
    db: Session = Depends(get_db),
    storage: DualStorage = Depends(get_storage),
    ocr=Depends(get_ocr),
):
    service = ExtractionService(db, ocr_engine=ocr, storage=storage)
    return await run_blocking(service.extract_material, material_id)


# ─────────────────────────────────────────────────────────
# Direct extraction
# ─────────────────────────────────────────────────────────

@router.post("/extract-text", summary="OCR page images and store the text on the owning row")
async def extract_text(
    request: ExtractTextRequest,
    db: Session = Depends(get_db),
    ocr=Depends(get_ocr),
):
    service = ExtractionService(db, ocr_engine=ocr)
    return await run_blocking(
        service.extract_text,
        document_type=request.document_type,
        image_urls=request.image_urls,
        base64_images=request.base64_images,
        sheet_id=request.sheet_id,
        paper_id=request.paper_id,
        prompt=request.prompt,
    )
