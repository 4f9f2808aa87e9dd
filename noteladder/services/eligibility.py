from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from noteladder.errors import InvalidPeriod
from noteladder.log import logger
from noteladder.models import Note, ReviewAction, ReviewSession, ReviewType
from noteladder.periods import period_date_range


def is_pending_for(note: Note, review_type: ReviewType) -> bool:
    """Undecided candidate: still at the review's source tier and not archived."""
    return note.review_tier == review_type.source_tier and not note.archived


async def decided_note_ids(session: AsyncSession, period_key: str, review_type: ReviewType) -> set[str]:
    """Notes with a recorded decision in the (review_type, period_key) session."""
    rows = (
        await session.execute(
            select(ReviewAction.note_id)
            .join(ReviewSession, ReviewSession.id == ReviewAction.session_id)
            .where(
                ReviewSession.review_type == review_type.value,
                ReviewSession.period_key == period_key,
            )
        )
    ).scalars().all()
    return set(rows)


async def eligible_notes(
    session: AsyncSession,
    period_key: str,
    review_type: ReviewType | str,
    first_weekday: int = 0,
) -> list[Note]:
    """
    Notes belonging to the review of `period_key`: created inside the period and
    either already decided in that review or still pending at the source tier.
    Ordered by creation time. A malformed key yields no notes.
    """
    try:
        review_type = ReviewType(review_type)
        start, end = period_date_range(period_key, review_type, first_weekday)
    except (InvalidPeriod, ValueError) as e:
        logger.warning(f"[review] no eligible notes: {e}")
        return []

    candidates = (
        await session.execute(
            select(Note)
            .where(Note.created_at >= start, Note.created_at < end)
            .order_by(Note.created_at.asc(), Note.id.asc())
        )
    ).scalars().all()
    if not candidates:
        return []

    decided = await decided_note_ids(session, period_key, review_type)
    return [n for n in candidates if n.id in decided or is_pending_for(n, review_type)]


def is_note_eligible(
    note: Note,
    period_key: str,
    review_type: ReviewType,
    *,
    decided: bool,
    first_weekday: int = 0,
) -> bool:
    """
    Single-note form of eligible_notes(); `decided` tells whether the note already
    has an action in this review's session.
    """
    start, end = period_date_range(period_key, review_type, first_weekday)
    if not (start <= note.created_at < end):
        return False
    return decided or is_pending_for(note, review_type)
