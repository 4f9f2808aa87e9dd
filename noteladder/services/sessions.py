"""
Review session state machine.

A session exists per (review_type, period_key) and moves
not_started (no row) -> in_progress -> completed. Each write below runs as a
single transaction: the note mutation, the action upsert and the session
counters are committed together or not at all.
"""
from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from noteladder.config import Settings
from noteladder.errors import (
    InvalidDecision, InvalidNote, InvalidPeriod, PersistenceFailure, SessionClosed, SessionNotFound,
)
from noteladder.log import logger
from noteladder.models import (
    Note, ReviewAction, ReviewSession, ReviewStatus, ReviewTier, ReviewType, Decision,
)
from noteladder.periods import period_date_range
from noteladder.services import progress as _progress
from noteladder.services.eligibility import eligible_notes, is_note_eligible
from noteladder.services.navigation import ReviewCursor
from noteladder.utils import new_id, local_now


def _review_type(value: ReviewType | str) -> ReviewType:
    try:
        return ReviewType(value)
    except ValueError as e:
        raise InvalidPeriod("", str(value), "unknown review type") from e


def _decision(value: Decision | str) -> Decision:
    try:
        return Decision(value)
    except ValueError as e:
        raise InvalidDecision(f"unknown decision: {value!r} (expected kept or archived)") from e


def _undo(rs: ReviewSession, note: Note, action: ReviewAction) -> None:
    """Take back the effect of `action`, leaving notes_reviewed alone."""
    if action.decision == Decision.KEPT.value:
        rs.notes_kept -= 1
    else:
        rs.notes_archived -= 1
    note.review_tier = action.prior_tier
    note.archived = action.prior_archived


def _apply(rs: ReviewSession, note: Note, decision: Decision, now: datetime) -> None:
    if decision is Decision.KEPT:
        note.review_tier = int(ReviewTier(note.review_tier).promoted())
        note.archived = False
        rs.notes_kept += 1
    else:
        note.archived = True
        rs.notes_archived += 1
    note.last_reviewed_at = now


class ReviewSessionManager:
    """
    Creates and resumes review sessions and records decisions on their notes.

    Construct one per store (session factory) and pass it around; there is no
    module-level instance.
    """

    def __init__(self, session_factory: async_sessionmaker, settings: Settings | None = None):
        self._sf = session_factory
        self.settings = settings or Settings({})
        self._write_lock = asyncio.Lock()

    @property
    def first_weekday(self) -> int:
        return self.settings.first_weekday

    def _now(self, now: datetime | None) -> datetime:
        return now or local_now(self.settings.timezone)

    @asynccontextmanager
    async def _transaction(self):
        try:
            async with self._sf() as db:
                async with db.begin():
                    yield db
        except SQLAlchemyError as e:
            logger.error(f"[review] store error, rolled back: {e}")
            raise PersistenceFailure(str(e)) from e

    async def _load_session(self, db: AsyncSession, session_id: str) -> ReviewSession:
        rs = await db.get(ReviewSession, session_id)
        if rs is None:
            raise SessionNotFound(f"review session not found: {session_id}")
        return rs

    async def _find_action(self, db: AsyncSession, session_id: str, note_id: str) -> ReviewAction | None:
        return (
            await db.execute(
                select(ReviewAction).where(
                    ReviewAction.session_id == session_id,
                    ReviewAction.note_id == note_id,
                )
            )
        ).scalar_one_or_none()

    def _settle(self, rs: ReviewSession, now: datetime) -> None:
        if rs.complete_if_done(now):
            logger.info(f"[review] {rs.review_type} {rs.period_key} completed ({rs.notes_kept} kept, {rs.notes_archived} archived)")
        elif rs.is_completed and rs.notes_reviewed < rs.total_notes and self.settings.reopen_completed:
            rs.reopen()
            logger.info(f"[review] {rs.review_type} {rs.period_key} reopened ({rs.notes_reviewed}/{rs.total_notes})")

    async def _find_session(self, db: AsyncSession, key: str, review_type: ReviewType) -> ReviewSession | None:
        return (
            await db.execute(
                select(ReviewSession).where(
                    ReviewSession.review_type == review_type.value,
                    ReviewSession.period_key == key,
                )
            )
        ).scalar_one_or_none()

    # -----------------------------------------------------------------
    # writes
    # -----------------------------------------------------------------
    async def start_or_resume(
        self,
        period_key: str,
        review_type: ReviewType | str,
        *,
        now: datetime | None = None,
    ) -> ReviewSession:
        """
        Return the session for (review_type, period_key), creating it on first use.
        The total is recomputed from current notes every time.
        """
        review_type = _review_type(review_type)
        period_date_range(period_key, review_type, self.first_weekday)
        key = period_key.strip()
        now = self._now(now)

        try:
            return await self._start_or_resume(key, review_type, now)
        except PersistenceFailure as e:
            # Another writer created the same key first; resume theirs
            if not isinstance(e.__cause__, IntegrityError):
                raise
            logger.info(f"[review] {review_type.value} {key} created concurrently; resuming")
        return await self._start_or_resume(key, review_type, now)

    async def _start_or_resume(self, key: str, review_type: ReviewType, now: datetime) -> ReviewSession:
        async with self._write_lock:
            async with self._transaction() as db:
                rs = await self._find_session(db, key, review_type)
                total = len(await eligible_notes(db, key, review_type, self.first_weekday))
                if rs is None:
                    rs = ReviewSession(
                        id=new_id(),
                        review_type=review_type.value,
                        period_key=key,
                        status=ReviewStatus.IN_PROGRESS.value,
                        total_notes=total,
                        notes_reviewed=0,
                        notes_kept=0,
                        notes_archived=0,
                        started_at=now,
                        completed_at=None,
                    )
                    db.add(rs)
                    await db.flush()
                    logger.info(f"[review] started {review_type.value} {key} with {total} note(s)")
                else:
                    grew = total > rs.total_notes
                    rs.total_notes = max(total, rs.notes_reviewed)
                    if grew and rs.is_completed and rs.notes_reviewed < rs.total_notes:
                        # New notes joined the period after completion
                        rs.reopen()
                        logger.info(f"[review] {review_type.value} {key} reopened: cohort grew to {rs.total_notes}")
                    else:
                        self._settle(rs, now)
                    logger.info(f"[review] resumed {review_type.value} {key} at {rs.notes_reviewed}/{rs.total_notes}")
        return rs

    async def submit_decision(
        self,
        session_id: str,
        note_id: str,
        decision: Decision | str,
        *,
        now: datetime | None = None,
    ) -> ReviewSession:
        """
        Record or revise the decision on one note of a session.

        A revision first restores the note from the snapshot taken at its first
        decision, so the session counts each note once.
        """
        decision = _decision(decision)
        now = self._now(now)
        async with self._write_lock:
            async with self._transaction() as db:
                rs = await self._load_session(db, session_id)
                review_type = ReviewType(rs.review_type)
                note = await db.get(Note, note_id)
                if note is None:
                    raise InvalidNote(f"note not found: {note_id}")
                action = await self._find_action(db, session_id, note_id)
                if not is_note_eligible(
                    note, rs.period_key, review_type,
                    decided=action is not None, first_weekday=self.first_weekday,
                ):
                    raise InvalidNote(f"note {note_id} is not part of {review_type.value} review {rs.period_key}")

                if action is not None:
                    _undo(rs, note, action)
                    action.decision = decision.value
                    action.decided_at = now
                else:
                    if rs.notes_reviewed >= rs.total_notes:
                        raise SessionClosed(
                            f"{review_type.value} review {rs.period_key} already has {rs.notes_reviewed}/{rs.total_notes} decisions"
                        )
                    db.add(
                        ReviewAction(
                            id=new_id(),
                            session_id=rs.id,
                            note_id=note.id,
                            decision=decision.value,
                            decided_at=now,
                            prior_tier=note.review_tier,
                            prior_archived=note.archived,
                            prior_last_reviewed_at=note.last_reviewed_at,
                        )
                    )
                    rs.notes_reviewed += 1

                _apply(rs, note, decision, now)
                self._settle(rs, now)
                logger.debug(f"[review] {review_type.value} {rs.period_key}: {note.id} {decision.value}")
        return rs

    async def revoke_decision(
        self,
        session_id: str,
        note_id: str,
        *,
        now: datetime | None = None,
    ) -> ReviewSession:
        """
        Remove the decision on a note entirely; the note returns to the exact state
        it had before it was first decided in this session and is pending again.
        """
        now = self._now(now)
        async with self._write_lock:
            async with self._transaction() as db:
                rs = await self._load_session(db, session_id)
                note = await db.get(Note, note_id)
                action = await self._find_action(db, session_id, note_id)
                if note is None or action is None:
                    raise InvalidNote(f"no decision on note {note_id} in session {session_id}")
                _undo(rs, note, action)
                note.last_reviewed_at = action.prior_last_reviewed_at
                rs.notes_reviewed -= 1
                await db.delete(action)
                self._settle(rs, now)
                logger.info(f"[review] {rs.review_type} {rs.period_key}: revoked decision on {note.id}")
        return rs

    # -----------------------------------------------------------------
    # reads
    # -----------------------------------------------------------------
    async def get_session(self, session_id: str) -> ReviewSession:
        async with self._transaction() as db:
            return await self._load_session(db, session_id)

    async def find_session(self, period_key: str, review_type: ReviewType | str) -> ReviewSession | None:
        review_type = _review_type(review_type)
        async with self._transaction() as db:
            return await self._find_session(db, period_key.strip(), review_type)

    async def list_sessions(self, review_type: ReviewType | str | None = None) -> list[ReviewSession]:
        stmt = select(ReviewSession).order_by(ReviewSession.started_at.asc())
        if review_type is not None:
            stmt = stmt.where(ReviewSession.review_type == _review_type(review_type).value)
        async with self._transaction() as db:
            return list((await db.execute(stmt)).scalars().all())

    async def session_notes(self, session_id: str) -> list[Note]:
        """The session's notes, decided and pending, oldest first."""
        async with self._transaction() as db:
            rs = await self._load_session(db, session_id)
            return await eligible_notes(db, rs.period_key, rs.review_type, self.first_weekday)

    async def session_decisions(self, session_id: str) -> dict[str, Decision]:
        async with self._transaction() as db:
            await self._load_session(db, session_id)
            return await self._decisions(db, session_id)

    async def _decisions(self, db: AsyncSession, session_id: str) -> dict[str, Decision]:
        rows = (
            await db.execute(
                select(ReviewAction.note_id, ReviewAction.decision).where(ReviewAction.session_id == session_id)
            )
        ).all()
        return {note_id: Decision(d) for note_id, d in rows}

    async def open_cursor(self, session_id: str) -> ReviewCursor:
        """Materialize the session's notes and decisions once for client-side navigation."""
        async with self._transaction() as db:
            rs = await self._load_session(db, session_id)
            notes = await eligible_notes(db, rs.period_key, rs.review_type, self.first_weekday)
            decisions = await self._decisions(db, session_id)
        return ReviewCursor(notes, decisions)

    async def get_progress(self, session_id: str) -> float:
        rs = await self.get_session(session_id)
        return _progress.progress_fraction(rs)

    def is_reviewable(self, period_key: str, review_type: ReviewType | str, now: datetime | None = None) -> bool:
        return _progress.is_reviewable(period_key, review_type, self._now(now), self.first_weekday)

    async def pending_counts(self, now: datetime | None = None) -> dict[str, int]:
        async with self._transaction() as db:
            return await _progress.pending_counts(db, self._now(now), self.first_weekday)

    async def next_target(
        self,
        now: datetime | None = None,
        review_types=None,
    ) -> _progress.PeriodProgress | None:
        async with self._transaction() as db:
            return await _progress.next_actionable_target(db, self._now(now), self.first_weekday, review_types)
