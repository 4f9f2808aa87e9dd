from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from noteladder.errors import InvalidPeriod
from noteladder.log import logger
from noteladder.models import Note, ReviewAction, ReviewSession, ReviewType
from noteladder.periods import period_key, period_date_range, current_period_key
from noteladder.utils import local_now

_TYPE_ORDER = {ReviewType.WEEKLY: 0, ReviewType.MONTHLY: 1, ReviewType.YEARLY: 2}


@dataclass
class PeriodProgress:
    review_type: ReviewType
    period_key: str
    start: datetime
    end: datetime
    eligible: int
    decided: int

    @property
    def progress(self) -> float:
        if self.eligible == 0:
            return 1.0
        return self.decided / self.eligible

    @property
    def pending(self) -> int:
        return self.eligible - self.decided

    def to_dict(self) -> dict:
        return {
            "review_type": self.review_type.value,
            "period_key": self.period_key,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "eligible": self.eligible,
            "decided": self.decided,
            "progress": self.progress,
        }


def progress_fraction(rs: ReviewSession) -> float:
    """Share of the session's notes decided; an empty review counts as done."""
    if rs.total_notes <= 0:
        return 1.0
    return min(1.0, rs.notes_reviewed / rs.total_notes)


def is_reviewable(
    key: str,
    review_type: ReviewType | str,
    now: datetime | None = None,
    first_weekday: int = 0,
) -> bool:
    """
    True when the period has fully ended, i.e. lies before the current period.
    Malformed keys are never reviewable.
    """
    try:
        review_type = ReviewType(review_type)
        _, end = period_date_range(key, review_type, first_weekday)
    except (InvalidPeriod, ValueError) as e:
        logger.warning(f"[review] not reviewable: {e}")
        return False
    now = now or local_now()
    current_start, _ = period_date_range(current_period_key(review_type, now, first_weekday), review_type, first_weekday)
    return end <= current_start


async def period_progress(
    session: AsyncSession,
    review_type: ReviewType | str,
    now: datetime | None = None,
    first_weekday: int = 0,
) -> list[PeriodProgress]:
    """
    Derived progress of every past period holding eligible notes, oldest first.
    One pass over notes created before the current period, using the same
    membership rule as eligible_notes().
    """
    review_type = ReviewType(review_type)
    now = now or local_now()
    current_start, _ = period_date_range(current_period_key(review_type, now, first_weekday), review_type, first_weekday)
    source = int(review_type.source_tier)

    notes = (
        await session.execute(
            select(Note.id, Note.created_at, Note.review_tier, Note.archived)
            .where(Note.created_at < current_start)
        )
    ).all()
    decided = set(
        (
            await session.execute(
                select(ReviewAction.note_id, ReviewSession.period_key)
                .join(ReviewSession, ReviewSession.id == ReviewAction.session_id)
                .where(ReviewSession.review_type == review_type.value)
            )
        ).all()
    )

    groups: dict[str, list[int]] = {}
    for note_id, created_at, tier, archived in notes:
        key = period_key(created_at, review_type, first_weekday)
        if (note_id, key) in decided:
            counts = groups.setdefault(key, [0, 0])
            counts[0] += 1
            counts[1] += 1
        elif tier == source and not archived:
            groups.setdefault(key, [0, 0])[0] += 1

    out: list[PeriodProgress] = []
    for key, (eligible, n_decided) in groups.items():
        start, end = period_date_range(key, review_type, first_weekday)
        out.append(PeriodProgress(review_type, key, start, end, eligible, n_decided))
    out.sort(key=lambda p: p.start)
    return out


async def pending_review_count(
    session: AsyncSession,
    review_type: ReviewType | str,
    now: datetime | None = None,
    first_weekday: int = 0,
) -> int:
    """Number of ended periods whose review is not finished."""
    periods = await period_progress(session, review_type, now, first_weekday)
    return sum(1 for p in periods if p.progress < 1.0)


async def pending_counts(
    session: AsyncSession,
    now: datetime | None = None,
    first_weekday: int = 0,
) -> dict[str, int]:
    return {
        rt.value: await pending_review_count(session, rt, now, first_weekday)
        for rt in ReviewType
    }


async def pending_note_count(
    session: AsyncSession,
    review_type: ReviewType | str,
    now: datetime | None = None,
    first_weekday: int = 0,
) -> int:
    """Undecided notes waiting in ended periods of this review type."""
    periods = await period_progress(session, review_type, now, first_weekday)
    return sum(p.pending for p in periods)


async def next_actionable_target(
    session: AsyncSession,
    now: datetime | None = None,
    first_weekday: int = 0,
    review_types: Iterable[ReviewType | str] | None = None,
) -> PeriodProgress | None:
    """
    Oldest ended period with an unfinished review; weekly before monthly before
    yearly when periods start on the same day.
    """
    types = [ReviewType(rt) for rt in (review_types or ReviewType)]
    candidates: list[PeriodProgress] = []
    for rt in types:
        for p in await period_progress(session, rt, now, first_weekday):
            if p.progress < 1.0:
                candidates.append(p)
                break
    if not candidates:
        return None
    return min(candidates, key=lambda p: (p.start, _TYPE_ORDER[p.review_type]))
