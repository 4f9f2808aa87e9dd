from __future__ import annotations
from datetime import datetime
from zoneinfo import ZoneInfo
import re
import uuid


def new_id() -> str:
    return str(uuid.uuid4())


def local_now(tz_name: str | None = None) -> datetime:
    """
    Wall-clock "now" as a naive datetime.
    All stored timestamps are naive and interpreted in the configured timezone
    (system local time when none is set).
    """
    if tz_name:
        return datetime.now(ZoneInfo(tz_name)).replace(tzinfo=None)
    return datetime.now()


def first_title_line(text: str, limit: int = 80) -> str:
    """
    First non-empty line, stripped; fallback to empty string.
    """
    for line in text.splitlines():
        s = line.strip()
        if s:
            return (s[:limit]).rstrip()
    return ""


def normalize_tag(name: str) -> str:
    return name.strip().lower()


def parse_tag_input(text: str) -> list[str]:
    """
    Split free-text tag input on commas and whitespace ("work, ideas health").
    Returns normalized, de-duplicated names in input order.
    """
    out: list[str] = []
    for part in re.split(r"[,\s]+", text or ""):
        t = normalize_tag(part)
        if t and t not in out:
            out.append(t)
    return out
