# noteladder/reporters/export.py
from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Any
import json

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from noteladder.models import Note, Tag, Category, SourceType, ReviewTier
from noteladder.utils import local_now

EXPORT_VERSION = "1.0"


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat(timespec="seconds") if dt is not None else None


async def collect(session: AsyncSession, now: datetime | None = None) -> dict[str, Any]:
    """
    Snapshot every note with its review status. Category, source type and tags
    are denormalized to names; the result is not meant to be re-imported.
    """
    rows = (
        await session.execute(
            select(Note, Category.name, SourceType.name)
            .outerjoin(Category, Category.id == Note.category_id)
            .outerjoin(SourceType, SourceType.id == Note.source_type_id)
            .order_by(Note.created_at.asc(), Note.id.asc())
        )
    ).all()

    tags: dict[str, list[str]] = defaultdict(list)
    for note_id, tag in (await session.execute(select(Tag.note_id, Tag.tag))).all():
        tags[note_id].append(tag)

    notes = [
        {
            "id": note.id,
            "content": note.content,
            "createdAt": _iso(note.created_at),
            "category": category,
            "tags": sorted(tags.get(note.id, [])),
            "source": note.source,
            "sourceType": source_type,
            "status": {
                "tier": ReviewTier(note.review_tier).title,
                "archived": bool(note.archived),
                "lastReviewedAt": _iso(note.last_reviewed_at),
            },
        }
        for note, category, source_type in rows
    ]
    return {
        "version": EXPORT_VERSION,
        "exportedAt": _iso(now or local_now()),
        "notes": notes,
    }


def render_json(document: dict[str, Any]) -> str:
    return json.dumps(document, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def write_export(text: str, exports_dir: Path, exported_at: datetime) -> Path:
    """
    Write the export into exports_dir with a timestamped filename.
    Returns the Path to the written file.
    """
    exports_dir = exports_dir.expanduser()
    exports_dir.mkdir(parents=True, exist_ok=True)
    path = exports_dir / f"noteladder_export_{exported_at.strftime('%Y%m%dT%H%M%S')}.json"
    path.write_text(text, encoding="utf-8")
    return path
