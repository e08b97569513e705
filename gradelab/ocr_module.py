"""
GradeLab - OCR Module
=====================
Turns page images into text. Two engines:

  vision   (DEFAULT) - sends the page to a vision-capable LLM (Azure OpenAI /
                       OpenAI / Claude / Gemini) with a document-type prompt.
                       Handles handwriting, MCQ circles, LaTeX and diagrams.
                       Set OCR_ENGINE=vision in .env

  easyocr  (LOCAL)   - EasyOCR on CPU/GPU, no network. Plain text only,
                       ~200 MB download on first run.
                       Set OCR_ENGINE=easyocr in .env  (pip install gradelab[ocr])

Also hosts the page helpers used before OCR: PDF rasterisation (PyMuPDF),
resizing/grayscale, and data-URL/base64 normalisation.
"""

import base64
import binascii
import io
import logging
import re
import threading
from dataclasses import dataclass
from typing import Optional, List

import numpy as np
import requests
from PIL import Image, ImageEnhance, ImageFilter

from gradelab import config
from gradelab.exceptions import ExtractionError, ValidationError
from prompts.evaluation_prompts import (
    DOCUMENT_LABELS, EXTRACTION_USER_PROMPT, extraction_system_prompt,
)

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:(image/[\w.+-]+);base64,(.*)$", re.DOTALL)


@dataclass
class OCRResult:
    text: str
    confidence: float   # 0.0 - 1.0
    engine: str


# ─────────────────────────────────────────────────────────────────────────────
# Page helpers
# ─────────────────────────────────────────────────────────────────────────────

def render_pdf_pages(pdf_bytes: bytes, dpi: Optional[int] = None, max_width: Optional[int] = None,
                     grayscale: bool = True) -> List[bytes]:
    """Rasterise every PDF page to PNG bytes, downscaled to max_width."""
    import fitz  # PyMuPDF

    dpi = dpi or config.PDF_RENDER_DPI
    max_width = max_width or config.PDF_MAX_WIDTH
    pages = []
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        for i, page in enumerate(doc):
            colorspace = fitz.csGRAY if grayscale else fitz.csRGB
            pix = page.get_pixmap(dpi=dpi, colorspace=colorspace)
            if pix.width > max_width:
                scale = dpi * max_width / pix.width
                pix = page.get_pixmap(dpi=int(scale), colorspace=colorspace)
            pages.append(pix.tobytes("png"))
            logger.info("Rendered PDF page %d/%d (%dx%d)", i + 1, len(doc), pix.width, pix.height)
    return pages


def normalize_image(image_bytes: bytes, max_width: Optional[int] = None, grayscale: bool = True) -> bytes:
    """Re-encode an uploaded image as PNG, grayscale and capped at max_width."""
    max_width = max_width or config.PDF_MAX_WIDTH
    image = Image.open(io.BytesIO(image_bytes))
    image = image.convert("L" if grayscale else "RGB")
    if image.width > max_width:
        ratio = max_width / image.width
        image = image.resize((max_width, int(image.height * ratio)), Image.LANCZOS)
    out = io.BytesIO()
    image.save(out, format="PNG")
    return out.getvalue()


def file_to_page_images(data: bytes, filename: str = "", content_type: str = "") -> List[bytes]:
    """PDFs become one PNG per page; images pass through normalize_image."""
    is_pdf = content_type == "application/pdf" or filename.lower().endswith(".pdf") or data[:5] == b"%PDF-"
    if is_pdf:
        return render_pdf_pages(data)
    return [normalize_image(data)]


def strip_data_url(value: str) -> str:
    match = _DATA_URL_RE.match(value.strip())
    return match.group(2) if match else value.strip()


def image_url_to_base64(url: str, timeout: Optional[float] = None) -> str:
    """data: URLs are unwrapped, http(s) URLs are downloaded."""
    url = url.strip()
    if url.startswith("data:"):
        match = _DATA_URL_RE.match(url)
        if not match:
            raise ExtractionError("Failed to convert image to base64: malformed data URL")
        return match.group(2)
    try:
        resp = requests.get(url, timeout=timeout or config.IMAGE_DOWNLOAD_TIMEOUT_SEC)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise ExtractionError(f"Failed to convert image to base64: {e}") from e
    return base64.b64encode(resp.content).decode("ascii")


def decode_base64_image(image_b64: str) -> bytes:
    try:
        return base64.b64decode(strip_data_url(image_b64), validate=False)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"Invalid base64 image: {e}") from e


def guess_mime_type(image_b64: str) -> str:
    try:
        head = base64.b64decode(strip_data_url(image_b64)[:64])
    except (binascii.Error, ValueError):
        return "image/png"
    if head.startswith(b"\xff\xd8"):
        return "image/jpeg"
    if head.startswith(b"GIF8"):
        return "image/gif"
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image/webp"
    return "image/png"


# ─────────────────────────────────────────────────────────────────────────────
# Fast PIL Preprocessor (EasyOCR path)
# ─────────────────────────────────────────────────────────────────────────────

class FastPreprocessor:
    @staticmethod
    def enhance_for_ocr(image: Image.Image, scale: float = 1.0) -> Image.Image:
        if image.mode != "RGB":
            image = image.convert("RGB")
        if scale != 1.0:
            w, h = image.size
            image = image.resize((int(w * scale), int(h * scale)), Image.LANCZOS)
        image = image.filter(ImageFilter.SHARPEN)
        image = ImageEnhance.Contrast(image).enhance(1.6)
        return image


# ─────────────────────────────────────────────────────────────────────────────
# Vision LLM Engine - DEFAULT
# ─────────────────────────────────────────────────────────────────────────────

class VisionLLMEngine:
    """Reads a page with a vision-capable LLM using the document-type prompts."""

    def __init__(self, llm_client=None):
        self._client = llm_client

    def _get_client(self):
        if self._client is None:
            from gradelab.llm_provider import get_llm_client
            self._client = get_llm_client()
        return self._client

    def recognize_b64(self, image_b64: str, document_type: str = "question",
                      extra_instructions: Optional[str] = None) -> OCRResult:
        prompt = EXTRACTION_USER_PROMPT.format(document_label=DOCUMENT_LABELS.get(document_type, document_type))
        if extra_instructions:
            prompt += "\n\n" + extra_instructions
        response = self._get_client().read_image(
            image_b64,
            prompt,
            system=extraction_system_prompt(document_type),
            mime_type=guess_mime_type(image_b64),
            temperature=0.1,
        )
        text = (response.text or "").strip()
        return OCRResult(text=text, confidence=0.9 if text else 0.0, engine=f"vision-{response.provider}")


# ─────────────────────────────────────────────────────────────────────────────
# EasyOCR Engine - LOCAL
# ─────────────────────────────────────────────────────────────────────────────

_easyocr_lock      = threading.Lock()
_easyocr_singleton = None   # easyocr.Reader instance


def _get_easyocr():
    """Load EasyOCR reader once per process (singleton)."""
    global _easyocr_singleton
    if _easyocr_singleton is not None:
        return _easyocr_singleton
    with _easyocr_lock:
        if _easyocr_singleton is not None:
            return _easyocr_singleton
        import easyocr
        import torch
        use_gpu = torch.cuda.is_available()
        logger.info("Loading EasyOCR reader (gpu=%s) - first use only...", use_gpu)
        _easyocr_singleton = easyocr.Reader(["en"], gpu=use_gpu, verbose=False)
        logger.info("✅ EasyOCR ready.")
        return _easyocr_singleton


class EasyOCREngine:

    def recognize_b64(self, image_b64: str, document_type: str = "question",
                      extra_instructions: Optional[str] = None) -> OCRResult:
        image = Image.open(io.BytesIO(decode_base64_image(image_b64)))
        return self.recognize(image)

    def recognize(self, image: Image.Image) -> OCRResult:
        reader = _get_easyocr()
        enhanced = FastPreprocessor.enhance_for_ocr(image, scale=1.5)
        results = reader.readtext(np.array(enhanced), detail=1, paragraph=False)

        # results: list of ([bbox], text, confidence)
        texts, confs = [], []
        for (_bbox, text, conf) in results:
            text = text.strip()
            if text:
                texts.append(text)
                confs.append(conf)

        return OCRResult(
            text=_post_correct("\n".join(texts)),
            confidence=round(float(np.mean(confs)), 4) if confs else 0.0,
            engine="easyocr",
        )


def get_ocr_engine(name: Optional[str] = None, llm_client=None):
    name = (name or config.OCR_ENGINE).lower()
    if name == "easyocr":
        return EasyOCREngine()
    return VisionLLMEngine(llm_client)


# ─────────────────────────────────────────────────────────────────────────────
# Post-OCR corrections
# ─────────────────────────────────────────────────────────────────────────────

def _post_correct(text: str) -> str:
    """Fix digit/letter swaps EasyOCR makes inside words and collapse runs of spaces."""
    if not text:
        return text
    text = re.sub(r'\b0([a-z])', r'o\1', text)
    text = re.sub(r'([a-z])0\b', r'\1o', text)
    return re.sub(r' {2,}', ' ', text)
