from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from sqlalchemy import select, delete, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from noteladder.errors import InvalidNote
from noteladder.log import logger
from noteladder.models import (
    Note, Tag, Category, SourceType, ReviewSession, ReviewAction, ReviewTier, ReviewType, Decision,
)
from noteladder.periods import period_key
from noteladder.services.eligibility import eligible_notes
from noteladder.utils import new_id, local_now, normalize_tag


# (name, color, sort_order)
PREDEFINED_CATEGORIES = [
    ("Career", "#06b6d4", 1),
    ("Communication", "#84cc16", 2),
    ("Finance", "#f59e0b", 3),
    ("Health", "#10b981", 4),
    ("Leadership", "#8b5cf6", 5),
    ("Learning", "#fb923c", 6),
    ("Mindset", "#ef4444", 7),
    ("Productivity", "#137fec", 8),
    ("Relationships", "#ec4899", 9),
]

# (name, icon, sort_order)
PREDEFINED_SOURCE_TYPES = [
    ("Link", "link", 1),
    ("Book", "book.closed", 2),
    ("Video", "film", 3),
    ("Podcast", "mic", 4),
    ("Article", "newspaper", 5),
    ("Person", "person", 6),
    ("Other", "asterisk", 7),
]


@dataclass
class NoteQuery:
    """
    Predicate for query_notes. Unset fields do not filter; set fields are ANDed.
    created_from is inclusive, created_before exclusive. `text` matches content or
    source case-insensitively. The list fields match any of their names.
    """
    tier: ReviewTier | None = None
    tier_not: ReviewTier | None = None
    min_tier: ReviewTier | None = None
    archived: bool | None = None
    created_from: datetime | None = None
    created_before: datetime | None = None
    category: str | None = None
    tag: str | None = None
    source_type: str | None = None
    source_contains: str | None = None
    text: str | None = None
    categories: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    source_types: list[str] = field(default_factory=list)


# -------- categories / source types --------

async def seed_defaults(session: AsyncSession) -> tuple[int, int]:
    """
    Insert the predefined categories and source types when their tables are empty.
    Returns (categories_added, source_types_added).
    """
    added_c = added_s = 0
    if not (await session.execute(select(func.count()).select_from(Category))).scalar_one():
        for name, color, order in PREDEFINED_CATEGORIES:
            session.add(Category(id=new_id(), name=name, color=color, is_custom=False, sort_order=order))
            added_c += 1
    if not (await session.execute(select(func.count()).select_from(SourceType))).scalar_one():
        for name, icon, order in PREDEFINED_SOURCE_TYPES:
            session.add(SourceType(id=new_id(), name=name, icon=icon, is_custom=False, sort_order=order))
            added_s += 1
    if added_c or added_s:
        logger.info(f"[store] seeded {added_c} categories, {added_s} source types")
    return added_c, added_s


async def find_or_create_category(session: AsyncSession, name: str, color: str | None = None) -> Category:
    name = name.strip()
    row = (
        await session.execute(select(Category).where(func.lower(Category.name) == name.lower()))
    ).scalar_one_or_none()
    if row is None:
        next_order = (await session.execute(select(func.max(Category.sort_order)))).scalar() or 0
        row = Category(id=new_id(), name=name, color=color, is_custom=True, sort_order=next_order + 1)
        session.add(row)
    return row


async def find_or_create_source_type(session: AsyncSession, name: str, icon: str | None = None) -> SourceType:
    name = name.strip()
    row = (
        await session.execute(select(SourceType).where(func.lower(SourceType.name) == name.lower()))
    ).scalar_one_or_none()
    if row is None:
        next_order = (await session.execute(select(func.max(SourceType.sort_order)))).scalar() or 0
        row = SourceType(id=new_id(), name=name, icon=icon, is_custom=True, sort_order=next_order + 1)
        session.add(row)
    return row


# -------- tags --------

async def set_note_tags(session: AsyncSession, note_id: str, tags: Iterable[str]) -> list[str]:
    """Replace the note's tags with the normalized, de-duplicated `tags`."""
    names: list[str] = []
    for t in tags:
        n = normalize_tag(t)
        if n and n not in names:
            names.append(n)
    await session.execute(delete(Tag).where(Tag.note_id == note_id))
    for n in names:
        session.add(Tag(note_id=note_id, tag=n))
    return sorted(names)


async def note_tags(session: AsyncSession, note_id: str) -> list[str]:
    rows = (await session.execute(select(Tag.tag).where(Tag.note_id == note_id))).scalars().all()
    return sorted(rows)


# -------- notes --------

async def create_note(
    session: AsyncSession,
    content: str,
    *,
    category: str | None = None,
    tags: Iterable[str] = (),
    source: str | None = None,
    source_type: str | None = None,
    created_at: datetime | None = None,
) -> Note:
    """
    Add a note at the Daily tier. created_at defaults to now and never changes afterwards.
    """
    if not content or not content.strip():
        raise ValueError("note content must not be empty")
    note = Note(
        id=new_id(),
        content=content,
        created_at=created_at or local_now(),
        source=source or None,
        review_tier=int(ReviewTier.DAILY),
        archived=False,
    )
    if category:
        note.category_id = (await find_or_create_category(session, category)).id
    if source_type:
        note.source_type_id = (await find_or_create_source_type(session, source_type)).id
    session.add(note)
    await session.flush()
    await set_note_tags(session, note.id, tags)
    return note


async def get_note(session: AsyncSession, note_id: str) -> Note | None:
    return await session.get(Note, note_id)


def _names(single: str | None, many: Iterable[str]) -> list[str]:
    out = [n.strip().lower() for n in ([single] if single else []) + list(many or ()) if n and n.strip()]
    return list(dict.fromkeys(out))


async def query_notes(session: AsyncSession, q: NoteQuery | None = None) -> list[Note]:
    """Notes matching `q`, oldest first."""
    q = q or NoteQuery()
    stmt = select(Note)
    if q.tier is not None:
        stmt = stmt.where(Note.review_tier == int(q.tier))
    if q.tier_not is not None:
        stmt = stmt.where(Note.review_tier != int(q.tier_not))
    if q.min_tier is not None:
        stmt = stmt.where(Note.review_tier >= int(q.min_tier))
    if q.archived is not None:
        stmt = stmt.where(Note.archived == q.archived)
    if q.created_from is not None:
        stmt = stmt.where(Note.created_at >= q.created_from)
    if q.created_before is not None:
        stmt = stmt.where(Note.created_at < q.created_before)
    categories = _names(q.category, q.categories)
    if categories:
        stmt = stmt.join(Category, Category.id == Note.category_id).where(
            func.lower(Category.name).in_(categories)
        )
    source_types = _names(q.source_type, q.source_types)
    if source_types:
        stmt = stmt.join(SourceType, SourceType.id == Note.source_type_id).where(
            func.lower(SourceType.name).in_(source_types)
        )
    tags = [normalize_tag(t) for t in _names(q.tag, q.tags)]
    if tags:
        stmt = stmt.where(Note.id.in_(select(Tag.note_id).where(Tag.tag.in_(tags))))
    if q.source_contains:
        stmt = stmt.where(Note.source.ilike(f"%{q.source_contains}%"))
    if q.text and q.text.strip():
        pattern = f"%{q.text.strip()}%"
        stmt = stmt.where(or_(Note.content.ilike(pattern), Note.source.ilike(pattern)))
    stmt = stmt.order_by(Note.created_at.asc(), Note.id.asc())
    return list((await session.execute(stmt)).scalars().all())


_UPDATABLE = {"content", "category", "tags", "source", "source_type", "review_tier", "archived", "last_reviewed_at"}


async def update_note(session: AsyncSession, note_id: str, **fields) -> Note:
    """
    Partial update. `category`/`source_type` take names (None clears), `tags` a list of names.
    A tier decrease is refused: only the review engine reverses promotions.
    """
    unknown = set(fields) - _UPDATABLE
    if unknown:
        raise ValueError(f"cannot update note fields: {', '.join(sorted(unknown))}")
    note = await session.get(Note, note_id)
    if note is None:
        raise InvalidNote(f"note not found: {note_id}")

    if "review_tier" in fields:
        new_tier = ReviewTier(fields["review_tier"])
        if new_tier < note.review_tier:
            raise ValueError(
                f"review tier cannot decrease ({ReviewTier(note.review_tier).title} -> {new_tier.title})"
            )
        note.review_tier = int(new_tier)
    if "content" in fields:
        if not fields["content"] or not fields["content"].strip():
            raise ValueError("note content must not be empty")
        note.content = fields["content"]
    if "category" in fields:
        name = fields["category"]
        note.category_id = (await find_or_create_category(session, name)).id if name else None
    if "source_type" in fields:
        name = fields["source_type"]
        note.source_type_id = (await find_or_create_source_type(session, name)).id if name else None
    if "source" in fields:
        note.source = fields["source"] or None
    if "archived" in fields:
        note.archived = bool(fields["archived"])
    if "last_reviewed_at" in fields:
        note.last_reviewed_at = fields["last_reviewed_at"]
    if "tags" in fields:
        await set_note_tags(session, note.id, fields["tags"] or ())
    note.updated_at = local_now()
    return note


async def delete_note(
    session: AsyncSession,
    note_id: str,
    *,
    first_weekday: int = 0,
    now: datetime | None = None,
) -> bool:
    """
    Delete a note with its tags and review actions.

    Every review session the note counted towards, decided or still pending,
    loses it: a decision comes off the counters and the total shrinks to the
    remaining cohort, never below notes_reviewed. A session left with every
    note decided is completed. Returns False when the note does not exist.
    """
    note = await session.get(Note, note_id)
    if note is None:
        return False

    affected: dict[str, ReviewSession] = {}
    rows = (
        await session.execute(
            select(ReviewAction, ReviewSession)
            .join(ReviewSession, ReviewSession.id == ReviewAction.session_id)
            .where(ReviewAction.note_id == note_id)
        )
    ).all()
    for action, rs in rows:
        rs.notes_reviewed -= 1
        if action.decision == Decision.KEPT.value:
            rs.notes_kept -= 1
        else:
            rs.notes_archived -= 1
        affected[rs.id] = rs

    # Sessions where the note was still pending
    for rt in ReviewType:
        rs = (
            await session.execute(
                select(ReviewSession).where(
                    ReviewSession.review_type == rt.value,
                    ReviewSession.period_key == period_key(note.created_at, rt, first_weekday),
                )
            )
        ).scalar_one_or_none()
        if rs is not None:
            affected.setdefault(rs.id, rs)

    await session.execute(delete(ReviewAction).where(ReviewAction.note_id == note_id))
    await session.execute(delete(Tag).where(Tag.note_id == note_id))
    await session.delete(note)
    await session.flush()

    now = now or local_now()
    for rs in affected.values():
        remaining = len(await eligible_notes(session, rs.period_key, rs.review_type, first_weekday))
        rs.total_notes = max(min(rs.total_notes, remaining), rs.notes_reviewed)
        if rs.complete_if_done(now):
            logger.info(f"[store] {rs.review_type} {rs.period_key} completed after deleting {note_id}")
    if affected:
        logger.info(f"[store] deleted note {note_id}; adjusted {len(affected)} review session(s)")
    return True


async def reset_review_progress(session: AsyncSession) -> int:
    """
    Drop every review session and action and put all notes back to Daily,
    not archived, never reviewed. Returns the number of notes reset.
    """
    await session.execute(delete(ReviewAction))
    await session.execute(delete(ReviewSession))
    res = await session.execute(
        update(Note).values(review_tier=int(ReviewTier.DAILY), archived=False, last_reviewed_at=None)
    )
    logger.warning(f"[store] review progress reset for {res.rowcount} note(s)")
    return res.rowcount or 0
