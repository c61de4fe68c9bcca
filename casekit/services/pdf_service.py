"""PDF and upload text extraction, and multi-page PDF export.

Extraction chain for a remote file:
    download -> PDF text layer (PyPDF2) -> OCR per rendered page (PyMuPDF + Tesseract)
    download -> image OCR

Export slices one tall bitmap into A4 pages with reportlab.
"""
from __future__ import annotations

import io
import logging
import math
import os
import re
import shutil
import unicodedata
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlparse

import fitz  # PyMuPDF
import PyPDF2
import pytesseract
import requests
from PIL import Image
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas as rl_canvas

from casekit.content import AttachmentKind, attachment_kind

logger = logging.getLogger(__name__)

# Ensure pytesseract can find the tesseract binary on common hosts.
if shutil.which("tesseract") is None:
    for cand in ("/usr/bin/tesseract", "/usr/local/bin/tesseract", "/opt/homebrew/bin/tesseract"):
        if os.path.exists(cand):
            pytesseract.pytesseract.tesseract_cmd = cand
            break

ProgressCallback = Optional[Callable[[int], None]]

PAGE_MARKER = "--- Page {number} ---"
OCR_SCALE = 2.0


class ExtractionError(Exception):
    pass


@dataclass
class ExtractionResult:
    text: str
    method: str  # text_layer or ocr
    pages: int


def _report(on_progress: ProgressCallback, value: float) -> None:
    if on_progress is None:
        return
    on_progress(max(0, min(100, int(round(value)))))


def ocr_ready() -> Tuple[bool, str]:
    try:
        _ = pytesseract.get_tesseract_version()
    except Exception as e:
        return False, f"tesseract not available: {e}"
    return True, ""


def download_file(url: str, timeout: int = 30) -> Tuple[bytes, str]:
    try:
        res = requests.get(url, timeout=timeout)
        res.raise_for_status()
    except requests.RequestException as e:
        raise ExtractionError(f"Could not download file: {e}") from e
    return res.content, (res.headers.get("Content-Type") or "")


def sniff_kind(url: str, content_type: str, data: bytes) -> str:
    """Return "pdf", "image" or "" for unsupported content."""
    mime = (content_type or "").split(";", 1)[0].strip().lower()
    if mime == "application/pdf":
        return "pdf"
    if mime.startswith("image/"):
        return "image"

    if url and urlparse(url).path:
        kind = attachment_kind(url)
        if kind == AttachmentKind.PDF:
            return "pdf"
        if kind == AttachmentKind.IMAGE:
            return "image"

    head = (data or b"")[:12]
    if head.startswith(b"%PDF-"):
        return "pdf"
    if head.startswith((b"\x89PNG", b"\xff\xd8\xff", b"GIF87a", b"GIF89a", b"BM")):
        return "image"
    if head.startswith(b"RIFF") and head[8:12] == b"WEBP":
        return "image"
    return ""


def join_pages(pages: List[str]) -> str:
    parts = []
    for number, text in enumerate(pages, start=1):
        body = (text or "").strip()
        if body:
            parts.append(f"{PAGE_MARKER.format(number=number)}\n\n{body}")
    return "\n\n".join(parts).strip()


def extract_pdf_pages(data: bytes) -> List[str]:
    reader = PyPDF2.PdfReader(io.BytesIO(data))
    return [page.extract_text() or "" for page in reader.pages]


def text_length(pages: List[str]) -> int:
    return sum(len((p or "").strip()) for p in pages)


def prep_image(img):
    g = img.convert("L")
    return Image.eval(g, lambda x: 0 if x < 15 else (255 if x > 240 else x))


def ocr_image(img, lang: str = "eng") -> str:
    try:
        return (pytesseract.image_to_string(prep_image(img), lang=lang) or "").strip()
    except pytesseract.TesseractError as e:
        raise ExtractionError(f"OCR failed: {e}") from e


def ocr_pdf_pages(data: bytes, lang: str = "eng", on_progress: ProgressCallback = None) -> List[str]:
    """Render every page to an image and OCR it."""
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as e:
        raise ExtractionError(f"Could not open PDF for OCR: {e}") from e

    parts: List[str] = []
    try:
        total = len(doc)
        for i in range(total):
            _report(on_progress, i / total * 100)
            page = doc.load_page(i)
            pix = page.get_pixmap(matrix=fitz.Matrix(OCR_SCALE, OCR_SCALE), alpha=False)
            img = Image.open(io.BytesIO(pix.tobytes("png")))
            parts.append(ocr_image(img, lang))
            _report(on_progress, (i + 1) / total * 100)
    finally:
        doc.close()
    return parts


def extract_text_from_bytes(
    data: bytes,
    url: str = "",
    content_type: str = "",
    min_length: int = 50,
    lang: str = "eng",
    on_progress: ProgressCallback = None,
) -> ExtractionResult:
    kind = sniff_kind(url, content_type, data)
    if not kind:
        mime = (content_type or "").split(";", 1)[0].strip() or "unknown"
        raise ExtractionError(f"Unsupported file type: {mime}")

    if kind == "pdf":
        try:
            pages = extract_pdf_pages(data)
        except Exception as e:
            logger.warning("PDF text layer unreadable, falling back to OCR: %s", e)
            pages = []

        if text_length(pages) >= min_length:
            _report(on_progress, 100)
            return ExtractionResult(join_pages(pages), "text_layer", len(pages))

        logger.info("PDF text layer too short (%d chars), running OCR", text_length(pages))
        ok, msg = ocr_ready()
        if not ok:
            raise ExtractionError(msg)
        ocr_pages = ocr_pdf_pages(data, lang=lang, on_progress=on_progress)
        text = join_pages(ocr_pages)
        if not text:
            raise ExtractionError("OCR returned no readable text")
        return ExtractionResult(text, "ocr", len(ocr_pages))

    ok, msg = ocr_ready()
    if not ok:
        raise ExtractionError(msg)
    _report(on_progress, 0)
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except Exception as e:
        raise ExtractionError(f"Could not read image: {e}") from e
    text = ocr_image(img, lang)
    _report(on_progress, 100)
    if not text:
        raise ExtractionError("OCR returned no readable text")
    return ExtractionResult(text, "ocr", 1)


def extract_text_from_url(
    url: str,
    timeout: int = 30,
    min_length: int = 50,
    lang: str = "eng",
    on_progress: ProgressCallback = None,
) -> ExtractionResult:
    _report(on_progress, 0)
    data, content_type = download_file(url, timeout=timeout)
    if not data:
        raise ExtractionError("Downloaded file is empty")
    return extract_text_from_bytes(
        data,
        url=url,
        content_type=content_type,
        min_length=min_length,
        lang=lang,
        on_progress=on_progress,
    )


# ============ Export ============

def export_filename(title: str) -> str:
    """Lowercase alphanumerics and underscores derived from ``title``."""
    s = unicodedata.normalize("NFKD", title or "").encode("ascii", "ignore").decode("ascii")
    s = re.sub(r"[^A-Za-z0-9 ]+", "", s)
    s = "_".join(s.split()).lower()
    return f"{s or 'document'}.pdf"


def page_offsets(image_height: float, page_height: float) -> List[float]:
    """Vertical shift of the image on each page: 0, P, 2P, ... for ceil(H/P) pages."""
    if page_height <= 0:
        raise ValueError("page_height must be positive")
    count = max(1, math.ceil(image_height / page_height - 1e-9))
    return [k * page_height for k in range(count)]


def image_to_pdf(image, title: str = "") -> bytes:
    """Scale ``image`` to the A4 width and slice it into as many pages as needed."""
    page_w, page_h = A4
    img_w, img_h = image.size
    if img_w <= 0 or img_h <= 0:
        raise ValueError("empty image")
    draw_h = img_h * page_w / img_w

    buf = io.BytesIO()
    c = rl_canvas.Canvas(buf, pagesize=A4)
    if title:
        c.setTitle(title)
    reader = ImageReader(image.convert("RGB"))
    for offset in page_offsets(draw_h, page_h):
        # reportlab's origin is bottom-left: shifting the image up by `offset`
        # brings the next band of the bitmap into the page.
        c.drawImage(reader, 0, page_h - draw_h + offset, width=page_w, height=draw_h)
        c.showPage()
    c.save()
    return buf.getvalue()
