"""
GradeLab - FastAPI Backend
==========================
REST API for school records and AI-assisted grading.

  routes_academics : classes, subjects, students, enrollments, tests, results
  routes_papers    : test papers, answer sheets, chapter materials, /extract-text
  routes_grading   : rubrics, answer keys, /evaluate-answer, auto-grade, reports
  routes_analysis  : course outcomes, paper analysis reports, question generation and bank

Blocking work (storage, OCR, LLM calls) runs in the shared thread pool from
gradelab.workers so the event loop stays free.

Service-layer errors (GradeLabError) are returned as
{"success": false, "error": "<message>"} with the status the exception carries.
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gradelab import config
from gradelab.database import init_db
from gradelab.exceptions import GradeLabError
from gradelab.routes_academics import router as academics_router
from gradelab.routes_analysis import router as analysis_router
from gradelab.routes_grading import router as grading_router
from gradelab.routes_papers import router as papers_router
from gradelab import workers

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


# ─────────────────────────────────────────────────────────
# App setup
# ─────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("🚀 GradeLab API started. Database: %s", config.DATABASE_URL.split("@")[-1])
    if not config.SUPABASE_URL:
        logger.warning("⚠️ SUPABASE_URL is not set - uploads will fail until storage is configured.")
    if config.appwrite_configured():
        logger.info("✅ Appwrite mirror enabled (%s)", config.APPWRITE_ENDPOINT)
    yield
    logger.info("GradeLab API shutting down.")
    workers.shutdown(wait=False)

app = FastAPI(
    title="GradeLab API",
    description="School records, document extraction and AI-assisted grading.",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GradeLabError)
async def gradelab_error_handler(request: Request, exc: GradeLabError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})


app.include_router(academics_router)
app.include_router(papers_router)
app.include_router(grading_router)
app.include_router(analysis_router)


# ─────────────────────────────────────────────────────────
# Endpoints
# ─────────────────────────────────────────────────────────

@app.get("/")
async def root():
    return {
        "message": "GradeLab API is running.",
        "version": VERSION,
        "endpoints": ["/classes", "/subjects", "/students", "/tests", "/papers", "/materials",
                      "/extract-text", "/generate-answer-key", "/evaluate-answer", "/analyses",
                      "/generate-questions", "/questions", "/stats"],
    }


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "timestamp": time.time(),
        "storage": {"supabase": bool(config.SUPABASE_URL), "appwrite": config.appwrite_configured()},
    }


# ─────────────────────────────────────────────────────────
# Run
# ─────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "gradelab.api:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_excludes=["tests/*", "*.pyc"],
    )
