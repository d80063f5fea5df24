"""Text helpers shared by the page recognizers."""

from __future__ import annotations

import re
import unicodedata
from datetime import datetime

MONEY_RE = re.compile(r"R\$\s*[\d.,]+")
QUANTITY_RE = re.compile(r"\b(?:quantidade|qtd\.?|qtde\.?)\s*:?\s*([\d.,]+)", re.IGNORECASE)
DATETIME_RE = re.compile(
    r"(\d{2})/(\d{2})/(\d{4})(?:\s*(?:às|as|-)?\s*(\d{2}):(\d{2})(?::(\d{2}))?)?"
)
ISO_DATETIME_RE = re.compile(r"\d{4}-\d{2}-\d{2}(?:[T ]\d{2}:\d{2}(?::\d{2})?)?")

_WS_RE = re.compile(r"\s+")


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize(text: str | None) -> str:
    """Lowercase, accent-free, whitespace-collapsed form used for label matching."""
    if not text:
        return ""
    return _WS_RE.sub(" ", strip_accents(text)).strip().lower()


def clean(text: str | None) -> str:
    if not text:
        return ""
    return _WS_RE.sub(" ", text).strip()


def find_money(text: str) -> list[str]:
    return MONEY_RE.findall(text or "")


def parse_datetime(text: str | None) -> datetime | None:
    """Parse "dd/mm/yyyy[ hh:mm[:ss]]" or an ISO timestamp found in *text*."""
    if not text:
        return None
    m = DATETIME_RE.search(text)
    if m:
        day, month, year, hour, minute, second = m.groups()
        try:
            return datetime(
                int(year), int(month), int(day),
                int(hour or 0), int(minute or 0), int(second or 0),
            )
        except ValueError:
            return None
    m = ISO_DATETIME_RE.search(text)
    if m:
        try:
            return datetime.fromisoformat(m.group(0).replace(" ", "T"))
        except ValueError:
            return None
    return None


def file_extension(name: str | None) -> str | None:
    """Return the lowercased extension of a file name or URL path, if any."""
    if not name:
        return None
    path = name.split("?", 1)[0].split("#", 1)[0].rstrip("/")
    tail = path.rsplit("/", 1)[-1]
    if "." not in tail:
        return None
    ext = tail.rsplit(".", 1)[-1].lower()
    if not ext or len(ext) > 5 or not ext.isalnum():
        return None
    return ext
