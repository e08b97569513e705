"""
GradeLab - Text Extraction Service
Runs page OCR for the four document types and writes the text back to the
row that owns the document:

  document_type     id field    table
  ───────────────   ─────────   ──────────────────────
  question          paper_id    test_papers
  answer            paper_id    test_papers
  student-sheet     sheet_id    student_answer_sheets
  chapter-material  sheet_id    chapter_materials

Pages are processed in batches (EXTRACT_BATCH_SIZE pages each) with up to
EXTRACT_MAX_CONCURRENT_BATCHES batches in flight. After every group of
batches the row shows "Processing... N% complete (k of n pages)".
"""

import base64
import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Optional, List, Callable

from sqlalchemy.orm import Session

from gradelab import config
from gradelab.database import TestPaper, StudentAnswerSheet, ChapterMaterial
from gradelab.exceptions import ValidationError, NotFoundError, ExtractionError
from gradelab.ocr_module import get_ocr_engine, image_url_to_base64, strip_data_url, file_to_page_images

logger = logging.getLogger(__name__)

DOCUMENT_TYPES = ("question", "answer", "student-sheet", "chapter-material")
SHEET_TYPES    = ("student-sheet", "chapter-material")
PAPER_TYPES    = ("question", "answer")


def page_block(page_number: int, text: str) -> str:
    return f"=== PAGE {page_number} ===\n\n{text}"


def error_block(page_number: int, message: str) -> str:
    return page_block(page_number, f"[Error processing page {page_number}: {message}]")


def progress_text(done: int, total: int) -> str:
    pct = round(done / total * 100) if total else 100
    return f"Processing... {pct}% complete ({done} of {total} pages)"


def make_batches(items: list, size: int) -> List[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class ExtractionService:
    """
    extract_text() is the entry point shared by the /extract-text route and the
    per-document helpers (extract_sheet, extract_paper, extract_material).
    """

    def __init__(
        self,
        db: Session,
        ocr_engine=None,
        storage=None,
        batch_size: Optional[int] = None,
        max_concurrent_batches: Optional[int] = None,
        group_delay_sec: Optional[float] = None,
        page_timeout_sec: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.ocr = ocr_engine or get_ocr_engine()
        self.storage = storage
        self.batch_size = batch_size or config.EXTRACT_BATCH_SIZE
        self.max_concurrent_batches = max_concurrent_batches or config.EXTRACT_MAX_CONCURRENT_BATCHES
        self.group_delay_sec = config.EXTRACT_GROUP_DELAY_SEC if group_delay_sec is None else group_delay_sec
        self.page_timeout_sec = page_timeout_sec or config.EXTRACT_PAGE_TIMEOUT_SEC
        self._sleep = sleep

    # ─────────────────────────────────────────────────────
    # Main Entry Point
    # ─────────────────────────────────────────────────────

    def extract_text(
        self,
        document_type: str = "question",
        image_urls: Optional[List[str]] = None,
        base64_images: Optional[List[str]] = None,
        sheet_id: Optional[str] = None,
        paper_id: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> dict:
        self._validate(document_type, image_urls, base64_images, sheet_id, paper_id)
        target = self._resolve_target(document_type, sheet_id, paper_id)

        if base64_images:
            images = [strip_data_url(b) for b in base64_images]
        else:
            images = [image_url_to_base64(u) for u in image_urls]

        self._write(target, status="processing", text="Processing...", done=False)
        try:
            pages = self._process_in_batches(images, document_type, target, prompt)
            full_text = "\n\n".join(pages)
            if not full_text.strip():
                raise ExtractionError("No text was extracted from the images. Please try again.")
        except Exception as e:
            logger.error("Extraction failed for %s %s: %s", document_type, target.id, e)
            self.db.rollback()
            self._write(target, status="failed", text=None, done=False)
            raise

        self._write(target, status="completed", text=full_text, done=True)
        logger.info("Extraction completed for %s %s: %d pages, %d chars",
                    document_type, target.id, len(pages), len(full_text))
        return {"success": True, "extracted_text": full_text}

    # ─────────────────────────────────────────────────────
    # Stored documents
    # ─────────────────────────────────────────────────────

    def extract_sheet(self, sheet_id: str) -> dict:
        sheet = self.db.get(StudentAnswerSheet, sheet_id)
        if sheet is None:
            raise NotFoundError("Answer sheet", sheet_id)
        return self._extract_stored(sheet, config.SUPABASE_BUCKETS["STUDENT_SHEETS"], "student-sheet", sheet_id=sheet_id)

    def extract_paper(self, paper_id: str) -> dict:
        paper = self.db.get(TestPaper, paper_id)
        if paper is None:
            raise NotFoundError("Test paper", paper_id)
        return self._extract_stored(paper, config.SUPABASE_BUCKETS["TEST_PAPERS"], paper.paper_type or "question",
                                    paper_id=paper_id)

    def extract_material(self, material_id: str) -> dict:
        material = self.db.get(ChapterMaterial, material_id)
        if material is None:
            raise NotFoundError("Chapter material", material_id)
        return self._extract_stored(material, config.SUPABASE_BUCKETS["CHAPTER_MATERIALS"], "chapter-material",
                                    sheet_id=material_id)

    def _extract_stored(self, row, bucket: str, document_type: str, **ids) -> dict:
        if self.storage is None:
            raise ExtractionError("Storage is required to extract stored documents")
        if not row.storage_path:
            raise ValidationError("Document has no stored file to extract")
        try:
            data = self.storage.download(bucket, row.storage_path)
            pages = file_to_page_images(data, filename=row.storage_path)
        except Exception as e:
            logger.error("Could not prepare pages for %s: %s", row.storage_path, e)
            self._write(row, status="failed", text=None, done=False)
            raise
        images = [base64.b64encode(p).decode("ascii") for p in pages]
        logger.info("Prepared %d page images from %s/%s", len(images), bucket, row.storage_path)
        return self.extract_text(document_type=document_type, base64_images=images, **ids)

    # ─────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────

    @staticmethod
    def _validate(document_type, image_urls, base64_images, sheet_id, paper_id):
        if document_type not in DOCUMENT_TYPES:
            raise ValidationError(f"Unsupported documentType: {document_type}. Expected one of {', '.join(DOCUMENT_TYPES)}")
        if image_urls is None and base64_images is None:
            raise ValidationError("Either imageUrls or base64Images must be provided")
        if image_urls is not None and not image_urls:
            raise ValidationError("imageUrls must be a non-empty array")
        if base64_images is not None and not base64_images:
            raise ValidationError("base64Images must be a non-empty array")
        if document_type in SHEET_TYPES and not sheet_id:
            raise ValidationError("sheetId is required for student-sheet and chapter-material document types")
        if document_type in PAPER_TYPES and not paper_id:
            raise ValidationError("paperId is required for question and answer document types")

    def _resolve_target(self, document_type, sheet_id, paper_id):
        if document_type == "student-sheet":
            row, label, row_id = self.db.get(StudentAnswerSheet, sheet_id), "Answer sheet", sheet_id
        elif document_type == "chapter-material":
            row, label, row_id = self.db.get(ChapterMaterial, sheet_id), "Chapter material", sheet_id
        else:
            row, label, row_id = self.db.get(TestPaper, paper_id), "Test paper", paper_id
        if row is None:
            raise NotFoundError(label, row_id)
        return row

    def _write(self, row, status: str, text: Optional[str], done: bool):
        if isinstance(row, ChapterMaterial):
            row.status = status
            row.extraction_status = status
            if text is not None:
                row.text_content = text
        else:
            row.status = status
            if text is not None:
                row.extracted_text = text
        row.has_extracted_text = done
        self.db.commit()

    def _write_progress(self, row, text: str):
        if isinstance(row, ChapterMaterial):
            row.text_content = text
        else:
            row.extracted_text = text
        self.db.commit()

    def _process_in_batches(self, images: List[str], document_type: str, target, prompt: Optional[str]) -> List[str]:
        batches = make_batches(images, self.batch_size)
        total = len(images)
        logger.info("Created %d batches of up to %d images for %s", len(batches), self.batch_size, document_type)

        results: List[str] = []
        # One worker per page of a group, so a whole group shares one deadline.
        workers = self.batch_size * self.max_concurrent_batches
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="extract")
        try:
            for g in range(0, len(batches), self.max_concurrent_batches):
                group = batches[g:g + self.max_concurrent_batches]
                futures = []
                for b_offset, batch in enumerate(group):
                    first_page = (g + b_offset) * self.batch_size
                    for idx, image_b64 in enumerate(batch):
                        page_no = first_page + idx + 1
                        futures.append((page_no, pool.submit(
                            self.ocr.recognize_b64, image_b64, document_type, prompt)))

                wait([f for _, f in futures], timeout=self.page_timeout_sec)
                for page_no, future in futures:
                    results.append(self._collect(page_no, future))

                done = min((g + len(group)) * self.batch_size, total)
                self._write_progress(target, progress_text(done, total))

                if g + self.max_concurrent_batches < len(batches) and self.group_delay_sec:
                    self._sleep(self.group_delay_sec)
        finally:
            # A page still running past the deadline is left to its client's own timeout.
            pool.shutdown(wait=False, cancel_futures=True)
        return results

    def _collect(self, page_no: int, future) -> str:
        if not future.done():
            future.cancel()
            logger.error("Page %d timed out after %.0f seconds", page_no, self.page_timeout_sec)
            return error_block(page_no, f"Request timed out after {self.page_timeout_sec:.0f} seconds")
        try:
            return page_block(page_no, future.result().text)
        except Exception as e:
            logger.error("Error processing page %d: %s", page_no, e)
            return error_block(page_no, str(e))
