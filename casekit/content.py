"""Module content envelope.

A module stores everything that ends up on paper in one JSON string:

    {"body": "...", "header": "...", "footer": "...", "stamp": "none",
     "signature": "...", "logo": "https://...", "subtitle": "..."}

``body`` is either free text or the URL of an uploaded file. There is no
typed field for that: a body that parses as an absolute http(s) URL is an
attachment, anything else is printed verbatim.
"""
from __future__ import annotations

import enum
import json
import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional
from urllib.parse import unquote, urlparse


class Stamp(str, enum.Enum):
    NONE = "none"
    CONFIDENTIAL = "confidential"
    TOP_SECRET = "top_secret"
    EVIDENCE = "evidence"
    COPY = "copy"


STAMP_LABELS: Dict[str, str] = {
    Stamp.CONFIDENTIAL.value: "CONFIDENTIAL",
    Stamp.TOP_SECRET.value: "TOP SECRET",
    Stamp.EVIDENCE.value: "EVIDENCE",
    Stamp.COPY.value: "COPY",
}


class AttachmentKind(str, enum.Enum):
    IMAGE = "image"
    PDF = "pdf"
    DOCUMENT = "document"


IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp"}


def is_http_url(value: Optional[str]) -> bool:
    """True when ``value`` is an absolute http(s) URL with a host."""
    s = (value or "").strip()
    if not s or any(ch.isspace() for ch in s):
        return False
    try:
        parsed = urlparse(s)
    except ValueError:
        return False
    return parsed.scheme.lower() in ("http", "https") and bool(parsed.netloc)


def attachment_kind(url: str) -> AttachmentKind:
    path = unquote(urlparse(url.strip()).path or "")
    ext = os.path.splitext(path)[1].lower()
    if ext in IMAGE_EXTENSIONS:
        return AttachmentKind.IMAGE
    if ext == ".pdf":
        return AttachmentKind.PDF
    return AttachmentKind.DOCUMENT


def attachment_name(url: str) -> str:
    path = unquote(urlparse(url.strip()).path or "")
    return os.path.basename(path) or url.strip()


@dataclass
class ContentEnvelope:
    body: str = ""
    header: str = ""
    footer: str = ""
    stamp: str = Stamp.NONE.value
    signature: str = ""
    logo: str = ""
    subtitle: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContentEnvelope":
        values = {}
        for f in fields(cls):
            raw = data.get(f.name)
            values[f.name] = "" if raw is None else str(raw)
        env = cls(**values)
        env.stamp = normalize_stamp(env.stamp)
        return env

    @classmethod
    def loads(cls, raw: Optional[str]) -> "ContentEnvelope":
        """Deserialize stored content.

        Empty content gives the empty envelope; content that is not a JSON
        object is legacy plain text and becomes the body.
        """
        if raw is None or not str(raw).strip():
            return cls()
        try:
            obj = json.loads(raw)
        except (TypeError, ValueError):
            return cls(body=str(raw))
        if not isinstance(obj, dict):
            return cls(body=str(raw))
        return cls.from_dict(obj)

    def dumps(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    def merged(self, updates: Dict[str, Any]) -> "ContentEnvelope":
        """Copy with the given fields replaced (unknown keys ignored)."""
        data = self.to_dict()
        for key, value in (updates or {}).items():
            if key in data:
                data[key] = value
        return ContentEnvelope.from_dict(data)

    @property
    def body_is_attachment(self) -> bool:
        return is_http_url(self.body)

    @property
    def body_kind(self) -> Optional[AttachmentKind]:
        if not self.body_is_attachment:
            return None
        return attachment_kind(self.body)

    @property
    def stamp_label(self) -> str:
        return STAMP_LABELS.get(self.stamp, "")


def normalize_stamp(value: Optional[str]) -> str:
    s = (value or "").strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return Stamp(s).value
    except ValueError:
        return Stamp.NONE.value
