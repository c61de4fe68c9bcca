"""Module facsimile rendering.

The same layout is produced twice: as HTML for the live preview panel and as
a Pillow bitmap for PDF export. Paper sizes are fixed pixel approximations of
A4 (documents, maps, lab reports) and C5 (envelopes).
"""
from __future__ import annotations

import io
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import fitz  # PyMuPDF
import requests
from PIL import Image, ImageDraw, ImageFont

from casekit.content import AttachmentKind, ContentEnvelope, attachment_name


class RenderError(Exception):
    pass


@dataclass(frozen=True)
class Paper:
    width: int
    height: int
    background: str
    ink: str
    format_label: str


A4_PAPER = Paper(500, 700, "#ffffff", "#1e293b", "A4 (210x297mm)")
PAPERS = {
    "envelope": Paper(600, 400, "#dcbfa3", "#1e293b", "C5 (162x229mm)"),
    "lab": Paper(500, 700, "#0f172a", "#4ade80", "A4 (210x297mm)"),
}

PADDING = 48
STAMP_COLOR = (153, 27, 27)


def paper_for(module_type: Optional[str]) -> Paper:
    return PAPERS.get((module_type or "").strip().lower(), A4_PAPER)


def body_mode(envelope: ContentEnvelope) -> str:
    """How the body is displayed: text, image, pdf or document."""
    kind = envelope.body_kind
    if kind is None:
        return "text"
    return kind.value


def preview_context(title: str, module_type: str, envelope: ContentEnvelope, status: str = "") -> Dict[str, Any]:
    paper = paper_for(module_type)
    mode = body_mode(envelope)
    return {
        "title": title or "",
        "module_type": (module_type or "document").lower(),
        "status": status or "",
        "paper": paper,
        "envelope": envelope,
        "body_mode": mode,
        "body_url": envelope.body.strip() if mode != "text" else "",
        "attachment_name": attachment_name(envelope.body) if mode != "text" else "",
        "stamp_label": envelope.stamp_label,
    }


# ============ Raster ============

def _font(size: int):
    return ImageFont.load_default(size=size)


def fetch_image(url: str, timeout: int = 10):
    try:
        res = requests.get(url, timeout=timeout)
        res.raise_for_status()
        img = Image.open(io.BytesIO(res.content))
        img.load()
    except Exception as e:
        raise RenderError(f"Could not load image {url}: {e}") from e
    return img.convert("RGBA")


def fetch_pdf_pages(url: str, timeout: int = 10, scale: float = 1.5) -> List[Any]:
    try:
        res = requests.get(url, timeout=timeout)
        res.raise_for_status()
        doc = fitz.open(stream=res.content, filetype="pdf")
    except Exception as e:
        raise RenderError(f"Could not load PDF {url}: {e}") from e
    pages = []
    try:
        for page in doc:
            pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
            pages.append(Image.open(io.BytesIO(pix.tobytes("png"))).convert("RGBA"))
    finally:
        doc.close()
    return pages


def wrap_text(draw, text: str, font, max_width: int) -> List[str]:
    """Wrap preformatted text: explicit line breaks and runs of spaces are kept."""
    lines: List[str] = []
    for raw in (text or "").replace("\r\n", "\n").split("\n"):
        raw = raw.replace("\t", "    ")
        current = ""
        for token in re.split(r"( +)", raw):
            if not token:
                continue
            candidate = current + token
            if draw.textlength(candidate, font=font) <= max_width:
                current = candidate
                continue
            # Spaces at a wrap point are dropped
            if token.isspace():
                lines.append(current.rstrip())
                current = ""
                continue
            if current.strip():
                lines.append(current.rstrip())
                current = ""
            elif draw.textlength(current + token[:1], font=font) > max_width:
                current = ""
            # Hard-break words wider than the line
            word = current + token
            while word and draw.textlength(word, font=font) > max_width:
                cut = len(word)
                while cut > 1 and draw.textlength(word[:cut], font=font) > max_width:
                    cut -= 1
                lines.append(word[:cut])
                word = word[cut:]
            current = word
        lines.append(current)
    return lines


def _fit(img, max_w: int, max_h: Optional[int] = None):
    w, h = img.size
    ratio = max_w / w
    if max_h is not None:
        ratio = min(ratio, max_h / h)
    return img.resize((max(1, int(w * ratio)), max(1, int(h * ratio))))


def _stamp_image(label: str, scale: int):
    font = _font(22 * scale)
    probe = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
    left, top, right, bottom = probe.textbbox((0, 0), label, font=font)
    pad = 8 * scale
    border = 4 * scale
    w = int(right - left) + 2 * (pad + border)
    h = int(bottom - top) + 2 * (pad + border)
    img = Image.new("RGBA", (w, h), (0, 0, 0, 0))
    d = ImageDraw.Draw(img)
    color = STAMP_COLOR + (210,)
    d.rectangle([0, 0, w - 1, h - 1], outline=color, width=border)
    d.text((pad + border - left, pad + border - top), label, font=font, fill=color)
    return img.rotate(5, expand=True, resample=Image.BICUBIC)


def render_raster(title: str, module_type: str, envelope: ContentEnvelope, scale: int = 2, timeout: int = 10):
    """Draw the facsimile to one bitmap.

    The bitmap is at least the paper size; a long body makes it taller so the
    exporter can page it.
    """
    paper = paper_for(module_type)
    s = max(1, int(scale))
    width = paper.width * s
    pad = PADDING * s
    content_w = width - 2 * pad

    measure = ImageDraw.Draw(Image.new("RGB", (1, 1)))
    f_header = _font(18 * s)
    f_sub = _font(12 * s)
    f_body = _font(12 * s)
    f_small = _font(10 * s)
    line_h = 18 * s

    ops = []  # (y, callable(draw, image, y)) in device pixels
    y = pad

    # Letterhead: logo + header + subtitle
    logo = fetch_image(envelope.logo, timeout) if envelope.logo.strip() else None
    head_x = pad
    head_h = 0
    if logo is not None:
        logo = _fit(logo, 64 * s, 48 * s)
        ops.append((y, lambda d, im, yy, lg=logo: im.paste(lg, (pad, yy), lg)))
        head_x = pad + logo.size[0] + 12 * s
        head_h = logo.size[1]
    text_h = 0
    if envelope.header:
        ops.append((y, lambda d, im, yy, x=head_x: d.text((x, yy), envelope.header, font=f_header, fill=paper.ink)))
        text_h += 26 * s
    if envelope.subtitle:
        sub_y = y + text_h
        ops.append((sub_y, lambda d, im, yy, x=head_x: d.text((x, yy), envelope.subtitle, font=f_sub, fill=paper.ink)))
        text_h += 18 * s
    head_h = max(head_h, text_h)
    if head_h:
        y += head_h + 10 * s
        rule_y = y
        ops.append((rule_y, lambda d, im, yy: d.line([(pad, yy), (width - pad, yy)], fill=paper.ink, width=2 * s)))
        y += 22 * s

    # Envelopes carry the module title as the addressee line
    if paper is PAPERS["envelope"] and title:
        f_title = _font(24 * s)
        tw = measure.textlength(title, font=f_title)
        ops.append((y, lambda d, im, yy, x=(width - tw) / 2: d.text((x, yy), title, font=f_title, fill=paper.ink)))
        y += 44 * s

    # Body
    mode = body_mode(envelope)
    if mode == "text":
        for line in wrap_text(measure, envelope.body, f_body, content_w):
            ops.append((y, lambda d, im, yy, ln=line: d.text((pad, yy), ln, font=f_body, fill=paper.ink)))
            y += line_h
    elif mode == AttachmentKind.IMAGE.value:
        img = _fit(fetch_image(envelope.body.strip(), timeout), content_w)
        ops.append((y, lambda d, im, yy, pic=img: im.paste(pic, (pad, yy), pic)))
        y += img.size[1]
    elif mode == AttachmentKind.PDF.value:
        for page in fetch_pdf_pages(envelope.body.strip(), timeout):
            page = _fit(page, content_w)
            ops.append((y, lambda d, im, yy, pic=page: im.paste(pic, (pad, yy), pic)))
            y += page.size[1] + 8 * s
    else:
        label = f"Attached file: {attachment_name(envelope.body)}"
        box_h = 40 * s
        ops.append((y, lambda d, im, yy: d.rectangle([pad, yy, width - pad, yy + box_h], outline=paper.ink, width=s)))
        ops.append((y + 12 * s, lambda d, im, yy, lb=label: d.text((pad + 12 * s, yy), lb, font=f_body, fill=paper.ink)))
        y += box_h

    # Signature, right aligned
    if envelope.signature:
        y += 28 * s
        sig_w = int(measure.textlength(envelope.signature, font=f_body))
        sig_x = width - pad - max(sig_w, 160 * s)
        ops.append((y, lambda d, im, yy, x=sig_x: d.line([(x, yy), (width - pad, yy)], fill=paper.ink, width=s)))
        y += 6 * s
        ops.append((y, lambda d, im, yy, x=width - pad - sig_w: d.text((x, yy), envelope.signature, font=f_body, fill=paper.ink)))
        y += line_h

    footer_h = 30 * s if envelope.footer else 0
    height = max(paper.height * s, y + footer_h + pad)

    image = Image.new("RGB", (width, height), paper.background)
    draw = ImageDraw.Draw(image)
    for op_y, op in ops:
        op(draw, image, op_y)

    if envelope.footer:
        fw = measure.textlength(envelope.footer, font=f_small)
        draw.text(((width - fw) / 2, height - pad + 8 * s), envelope.footer, font=f_small, fill=paper.ink)

    label = envelope.stamp_label
    if label:
        stamp = _stamp_image(label, s)
        image.paste(stamp, (pad, height - pad - stamp.size[1]), stamp)

    return image

