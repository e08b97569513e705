"""
GradeLab - Configuration
All settings are read from the environment (a local .env is loaded first).

Set in .env:
  DATABASE_URL=postgresql://...           (default: sqlite:///./gradelab.db)
  SUPABASE_URL=https://<ref>.supabase.co
  SUPABASE_SERVICE_ROLE_KEY=...
  APPWRITE_ENDPOINT=https://cloud.appwrite.io/v1   (optional mirror)
  APPWRITE_PROJECT_ID=...
  APPWRITE_API_KEY=...
  AZURE_OPENAI_API_KEY / AZURE_OPENAI_ENDPOINT / AZURE_OPENAI_DEPLOYMENT
  OPENAI_API_KEY=...                      (used when Azure is not set)
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


# ─────────────────────────────────────────────────────────
# Database / API
# ─────────────────────────────────────────────────────────

DATABASE_URL      = os.getenv("DATABASE_URL", "sqlite:///./gradelab.db")
MAX_FILE_MB       = _int("MAX_FILE_SIZE_MB", 50)
CORS_ALLOW_ORIGINS = [o.strip() for o in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",") if o.strip()]
API_WORKERS       = _int("API_WORKERS", 4)

# ─────────────────────────────────────────────────────────
# Storage
# ─────────────────────────────────────────────────────────

SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_KEY", "")

APPWRITE_ENDPOINT   = os.getenv("APPWRITE_ENDPOINT", "")
APPWRITE_PROJECT_ID = os.getenv("APPWRITE_PROJECT_ID", "")
APPWRITE_API_KEY    = os.getenv("APPWRITE_API_KEY", "")

SUPABASE_BUCKETS = {
    "STUDENT_SHEETS":    "student-sheets",
    "TEST_PAPERS":       "test-papers",
    "CHAPTER_MATERIALS": "chapter-materials",
    "PROFILE_IMAGES":    "profile-images",
    "GRADELAB_UPLOADS":  "gradelab-uploads",
}

APPWRITE_BUCKETS = {
    **SUPABASE_BUCKETS,
    "PAPERS":          "papers",
    "OCR_IMAGES":      "ocr-images",
    "QUESTION_PAPERS": "question-papers",
}

# Supabase bucket -> Appwrite bucket. Unmapped buckets are never mirrored.
BUCKET_MAPPING = {
    "student-sheets":    "student-sheets",
    "test-papers":       "test-papers",
    "chapter-materials": "chapter-materials",
    "profile-images":    "profile-images",
    "gradelab-uploads":  "gradelab-uploads",
    "papers":            "papers",
    "ocr-images":        "ocr-images",
    "question-papers":   "question-papers",
}

BUCKET_SIZE_LIMITS = {
    "profile-images": 10 * 1024 * 1024,
}
DEFAULT_BUCKET_SIZE_LIMIT = 50 * 1024 * 1024
ALLOWED_FILE_EXTENSIONS   = ["jpg", "jpeg", "png", "gif", "pdf", "txt", "doc", "docx"]


def appwrite_configured() -> bool:
    return bool(APPWRITE_ENDPOINT and APPWRITE_PROJECT_ID)


# ─────────────────────────────────────────────────────────
# Extraction / OCR
# ─────────────────────────────────────────────────────────

EXTRACT_BATCH_SIZE             = _int("EXTRACT_BATCH_SIZE", 10)
EXTRACT_MAX_CONCURRENT_BATCHES = _int("EXTRACT_MAX_CONCURRENT_BATCHES", 3)
EXTRACT_GROUP_DELAY_SEC        = _float("EXTRACT_GROUP_DELAY_SEC", 2.0)
EXTRACT_PAGE_TIMEOUT_SEC       = _float("EXTRACT_PAGE_TIMEOUT_SEC", 120.0)
# Per-request timeout handed to every LLM SDK / HTTP client.
LLM_REQUEST_TIMEOUT_SEC        = _float("LLM_REQUEST_TIMEOUT_SEC", 120.0)
IMAGE_DOWNLOAD_TIMEOUT_SEC     = _float("IMAGE_DOWNLOAD_TIMEOUT_SEC", 60.0)

OCR_ENGINE     = os.getenv("OCR_ENGINE", "vision")   # vision | easyocr
PDF_RENDER_DPI = _int("PDF_RENDER_DPI", 150)
PDF_MAX_WIDTH  = _int("PDF_MAX_WIDTH", 2000)

# ─────────────────────────────────────────────────────────
# Grading
# ─────────────────────────────────────────────────────────

EVAL_CHUNK_DELAY_SEC = _float("EVAL_CHUNK_DELAY_SEC", 1.0)
PASS_PERCENTAGE      = _float("PASS_PERCENTAGE", 40.0)
