import asyncio
import random
from datetime import datetime

import pytest
from sqlalchemy import event, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import Session

from noteladder.config import Settings
from noteladder.db import ensure_schema
from noteladder.errors import (
    InvalidDecision, InvalidNote, InvalidPeriod, PersistenceFailure, SessionClosed, SessionNotFound,
)
from noteladder.models import Note, ReviewAction, ReviewSession, ReviewTier, ReviewType, Decision
from noteladder.services.notes import create_note, update_note
from noteladder.services.sessions import ReviewSessionManager

MONDAY = datetime(2024, 11, 25, 10, 0)      # 2024-W48
TUESDAY = datetime(2024, 11, 26, 18, 30)
WEDNESDAY = datetime(2024, 11, 27, 8, 15)
AFTER_WEEK = datetime(2024, 12, 3, 12, 0)   # 2024-W49


async def _notes(sf, *created):
    async with sf() as session:
        ids = []
        for i, ts in enumerate(created):
            n = await create_note(session, f"note {i}\nbody", created_at=ts)
            ids.append(n.id)
        await session.commit()
    return ids


async def _note(sf, note_id) -> Note:
    async with sf() as session:
        return await session.get(Note, note_id)


def _assert_counters(rs: ReviewSession):
    assert rs.notes_reviewed == rs.notes_kept + rs.notes_archived
    assert 0 <= rs.notes_reviewed <= rs.total_notes


def test_scenario_keep_single_note_completes_weekly_review(run_async, store, settings):
    eng, sf = store

    async def go():
        await ensure_schema(eng)
        (nid,) = await _notes(sf, MONDAY)
        mgr = ReviewSessionManager(sf, settings)

        rs = await mgr.start_or_resume("2024-W48", ReviewType.WEEKLY, now=AFTER_WEEK)
        assert rs.status == "in_progress"
        assert [n.id for n in await mgr.session_notes(rs.id)] == [nid]

        rs = await mgr.submit_decision(rs.id, nid, Decision.KEPT, now=AFTER_WEEK)
        assert (rs.notes_kept, rs.notes_reviewed, rs.total_notes) == (1, 1, 1)
        assert rs.status == "completed"
        assert rs.completed_at == AFTER_WEEK

        note = await _note(sf, nid)
        assert note.review_tier == ReviewTier.WEEKLY
        assert note.last_reviewed_at == AFTER_WEEK
        assert await mgr.get_progress(rs.id) == 1.0
        # a completed review stays browsable
        assert [n.id for n in await mgr.session_notes(rs.id)] == [nid]
        await eng.dispose()

    run_async(go())


def test_scenario_keep_one_archive_one(run_async, store, settings):
    eng, sf = store

    async def go():
        await ensure_schema(eng)
        a, b = await _notes(sf, MONDAY, TUESDAY)
        mgr = ReviewSessionManager(sf, settings)
        rs = await mgr.start_or_resume("2024-W48", "weekly", now=AFTER_WEEK)
        await mgr.submit_decision(rs.id, a, "kept", now=AFTER_WEEK)
        rs = await mgr.submit_decision(rs.id, b, Decision.ARCHIVED, now=AFTER_WEEK)

        assert (rs.notes_kept, rs.notes_archived, rs.notes_reviewed, rs.total_notes) == (1, 1, 2, 2)
        assert rs.status == "completed"
        archived = await _note(sf, b)
        assert archived.archived is True
        assert archived.review_tier == ReviewTier.DAILY
        assert await mgr.session_decisions(rs.id) == {a: Decision.KEPT, b: Decision.ARCHIVED}
        await eng.dispose()

    run_async(go())


def test_start_twice_returns_same_session(run_async, store, settings):
    eng, sf = store

    async def go():
        await ensure_schema(eng)
        await _notes(sf, MONDAY)
        mgr = ReviewSessionManager(sf, settings)
        first = await mgr.start_or_resume("2024-W48", ReviewType.WEEKLY, now=AFTER_WEEK)
        second = await mgr.start_or_resume("2024-W48", ReviewType.WEEKLY, now=AFTER_WEEK)
        assert first.id == second.id
        assert len(await mgr.list_sessions()) == 1
        found = await mgr.find_session("2024-W48", "weekly")
        assert found is not None and found.id == first.id
        await eng.dispose()

    run_async(go())


def test_revision_restores_pre_session_state(run_async, store, settings):
    eng, sf = store

    async def go():
        await ensure_schema(eng)
        a, b = await _notes(sf, MONDAY, TUESDAY)
        mgr = ReviewSessionManager(sf, settings)
        rs = await mgr.start_or_resume("2024-W48", ReviewType.WEEKLY, now=AFTER_WEEK)

        rs = await mgr.submit_decision(rs.id, a, Decision.KEPT, now=AFTER_WEEK)
        assert rs.notes_reviewed == 1
        assert (await _note(sf, a)).review_tier == ReviewTier.WEEKLY

        rs = await mgr.submit_decision(rs.id, a, Decision.ARCHIVED, now=AFTER_WEEK)
        assert rs.notes_reviewed == 1
        assert (rs.notes_kept, rs.notes_archived) == (0, 1)
        note = await _note(sf, a)
        assert note.review_tier == ReviewTier.DAILY
        assert note.archived is True
        assert rs.status == "in_progress"

        # and back again: archived flag cleared, promoted exactly once
        rs = await mgr.submit_decision(rs.id, a, Decision.KEPT, now=AFTER_WEEK)
        note = await _note(sf, a)
        assert (note.review_tier, note.archived) == (ReviewTier.WEEKLY, False)
        assert (rs.notes_kept, rs.notes_archived, rs.notes_reviewed) == (1, 0, 1)

        async with sf() as session:
            actions = (await session.execute(select(ReviewAction))).scalars().all()
        assert len(actions) == 1
        assert actions[0].prior_tier == ReviewTier.DAILY
        assert actions[0].prior_archived is False
        await eng.dispose()

    run_async(go())


def test_completion_happens_exactly_at_last_first_decision(run_async, store, settings):
    eng, sf = store

    async def go():
        await ensure_schema(eng)
        ids = await _notes(sf, MONDAY, TUESDAY, WEDNESDAY)
        mgr = ReviewSessionManager(sf, settings)
        rs = await mgr.start_or_resume("2024-W48", ReviewType.WEEKLY, now=AFTER_WEEK)
        assert rs.total_notes == 3

        rs = await mgr.submit_decision(rs.id, ids[0], Decision.KEPT, now=AFTER_WEEK)
        rs = await mgr.submit_decision(rs.id, ids[0], Decision.ARCHIVED, now=AFTER_WEEK)
        rs = await mgr.submit_decision(rs.id, ids[1], Decision.KEPT, now=AFTER_WEEK)
        assert rs.status == "in_progress"
        assert rs.completed_at is None

        rs = await mgr.submit_decision(rs.id, ids[2], Decision.KEPT, now=AFTER_WEEK)
        assert rs.status == "completed"
        await eng.dispose()

    run_async(go())


def test_revising_completed_session_keeps_it_completed(run_async, store, settings):
    eng, sf = store

    async def go():
        await ensure_schema(eng)
        (nid,) = await _notes(sf, MONDAY)
        mgr = ReviewSessionManager(sf, settings)
        rs = await mgr.start_or_resume("2024-W48", ReviewType.WEEKLY, now=AFTER_WEEK)
        await mgr.submit_decision(rs.id, nid, Decision.KEPT, now=AFTER_WEEK)
        later = datetime(2024, 12, 5)
        rs = await mgr.submit_decision(rs.id, nid, Decision.ARCHIVED, now=later)
        assert rs.status == "completed"
        assert rs.completed_at == AFTER_WEEK
        assert (rs.notes_kept, rs.notes_archived) == (0, 1)
        await eng.dispose()

    run_async(go())


def test_invariants_hold_over_random_decisions(run_async, store, settings):
    eng, sf = store
    rng = random.Random(1234)

    async def go():
        await ensure_schema(eng)
        ids = await _notes(sf, *[datetime(2024, 11, 25 + i % 7, 9, i) for i in range(6)])
        mgr = ReviewSessionManager(sf, settings)
        rs = await mgr.start_or_resume("2024-W48", ReviewType.WEEKLY, now=AFTER_WEEK)
        decided: dict[str, Decision] = {}

        for _ in range(60):
            nid = rng.choice(ids)
            if nid in decided and rng.random() < 0.3:
                rs = await mgr.revoke_decision(rs.id, nid, now=AFTER_WEEK)
                del decided[nid]
            else:
                d = rng.choice([Decision.KEPT, Decision.ARCHIVED])
                rs = await mgr.submit_decision(rs.id, nid, d, now=AFTER_WEEK)
                decided[nid] = d
            _assert_counters(rs)
            assert rs.notes_reviewed == len(decided)
            assert rs.notes_kept == sum(1 for d in decided.values() if d is Decision.KEPT)

        for nid in ids:
            note = await _note(sf, nid)
            if decided.get(nid) is Decision.KEPT:
                assert (note.review_tier, note.archived) == (ReviewTier.WEEKLY, False)
            elif decided.get(nid) is Decision.ARCHIVED:
                assert (note.review_tier, note.archived) == (ReviewTier.DAILY, True)
            else:
                assert (note.review_tier, note.archived) == (ReviewTier.DAILY, False)
        assert len(await mgr.session_notes(rs.id)) == len(ids)
        await eng.dispose()

    run_async(go())


def test_keep_saturates_at_yearly(run_async, store, settings):
    assert ReviewTier.YEARLY.promoted() is ReviewTier.YEARLY
    assert ReviewTier.DAILY.promoted() is ReviewTier.WEEKLY
    eng, sf = store

    async def go():
        await ensure_schema(eng)
        (nid,) = await _notes(sf, datetime(2023, 6, 1))
        async with sf() as session:
            await update_note(session, nid, review_tier=ReviewTier.MONTHLY)
            await session.commit()
        mgr = ReviewSessionManager(sf, settings)
        rs = await mgr.start_or_resume("2023", ReviewType.YEARLY, now=AFTER_WEEK)
        assert rs.total_notes == 1
        for _ in range(3):
            rs = await mgr.submit_decision(rs.id, nid, Decision.KEPT, now=AFTER_WEEK)
            assert (await _note(sf, nid)).review_tier == ReviewTier.YEARLY
        assert rs.notes_reviewed == 1
        await eng.dispose()

    run_async(go())


def test_note_outside_cohort_is_rejected_without_mutation(run_async, store, settings):
    eng, sf = store

    async def go():
        await ensure_schema(eng)
        inside, outside = await _notes(sf, MONDAY, datetime(2024, 11, 18, 9, 0))
        mgr = ReviewSessionManager(sf, settings)
        rs = await mgr.start_or_resume("2024-W48", ReviewType.WEEKLY, now=AFTER_WEEK)

        with pytest.raises(InvalidNote):
            await mgr.submit_decision(rs.id, outside, Decision.KEPT, now=AFTER_WEEK)
        with pytest.raises(InvalidNote):
            await mgr.submit_decision(rs.id, "missing-note", Decision.KEPT, now=AFTER_WEEK)
        with pytest.raises(SessionNotFound):
            await mgr.submit_decision("missing-session", inside, Decision.KEPT, now=AFTER_WEEK)

        rs = await mgr.get_session(rs.id)
        assert rs.notes_reviewed == 0
        note = await _note(sf, outside)
        assert (note.review_tier, note.archived, note.last_reviewed_at) == (ReviewTier.DAILY, False, None)
        await eng.dispose()

    run_async(go())


def test_invalid_period_keys_are_reported(run_async, store, settings):
    eng, sf = store

    async def go():
        await ensure_schema(eng)
        mgr = ReviewSessionManager(sf, settings)
        with pytest.raises(InvalidPeriod):
            await mgr.start_or_resume("2024-W60", ReviewType.WEEKLY, now=AFTER_WEEK)
        with pytest.raises(InvalidPeriod):
            await mgr.start_or_resume("2024", "daily", now=AFTER_WEEK)
        assert await mgr.list_sessions() == []
        await eng.dispose()

    run_async(go())


def test_new_decision_beyond_total_is_closed_until_resumed(run_async, store, settings):
    eng, sf = store

    async def go():
        await ensure_schema(eng)
        (first,) = await _notes(sf, MONDAY)
        mgr = ReviewSessionManager(sf, settings)
        rs = await mgr.start_or_resume("2024-W48", ReviewType.WEEKLY, now=AFTER_WEEK)
        await mgr.submit_decision(rs.id, first, Decision.KEPT, now=AFTER_WEEK)

        # a backdated note joins the cohort after the review was completed
        (late,) = await _notes(sf, WEDNESDAY)
        with pytest.raises(SessionClosed):
            await mgr.submit_decision(rs.id, late, Decision.KEPT, now=AFTER_WEEK)

        # resuming picks the note up and the review is open again, whatever reopen_completed says
        rs = await mgr.start_or_resume("2024-W48", ReviewType.WEEKLY, now=AFTER_WEEK)
        assert (rs.notes_reviewed, rs.total_notes) == (1, 2)
        assert (rs.status, rs.completed_at) == ("in_progress", None)
        assert await mgr.get_progress(rs.id) == 0.5

        later = datetime(2024, 12, 4, 9, 0)
        rs = await mgr.submit_decision(rs.id, late, Decision.ARCHIVED, now=later)
        assert (rs.notes_reviewed, rs.total_notes, rs.status) == (2, 2, "completed")
        assert rs.completed_at == later
        await eng.dispose()

    run_async(go())


def test_revoke_restores_note_exactly(run_async, store, settings):
    eng, sf = store

    async def go():
        await ensure_schema(eng)
        a, b = await _notes(sf, MONDAY, TUESDAY)
        mgr = ReviewSessionManager(sf, settings)
        rs = await mgr.start_or_resume("2024-W48", ReviewType.WEEKLY, now=AFTER_WEEK)
        await mgr.submit_decision(rs.id, a, Decision.KEPT, now=AFTER_WEEK)
        rs = await mgr.revoke_decision(rs.id, a, now=AFTER_WEEK)

        assert (rs.notes_reviewed, rs.notes_kept, rs.notes_archived) == (0, 0, 0)
        note = await _note(sf, a)
        assert (note.review_tier, note.archived, note.last_reviewed_at) == (ReviewTier.DAILY, False, None)
        assert await mgr.session_decisions(rs.id) == {}
        assert len(await mgr.session_notes(rs.id)) == 2

        with pytest.raises(InvalidNote):
            await mgr.revoke_decision(rs.id, b, now=AFTER_WEEK)
        await eng.dispose()

    run_async(go())


@pytest.mark.parametrize("reopen,expected", [(False, "completed"), (True, "in_progress")])
def test_revoking_on_completed_session_follows_reopen_setting(run_async, store, settings, reopen, expected):
    eng, sf = store
    settings.reopen_completed = reopen

    async def go():
        await ensure_schema(eng)
        (nid,) = await _notes(sf, MONDAY)
        mgr = ReviewSessionManager(sf, settings)
        rs = await mgr.start_or_resume("2024-W48", ReviewType.WEEKLY, now=AFTER_WEEK)
        rs = await mgr.submit_decision(rs.id, nid, Decision.KEPT, now=AFTER_WEEK)
        assert rs.status == "completed"
        rs = await mgr.revoke_decision(rs.id, nid, now=AFTER_WEEK)
        assert rs.status == expected
        assert (rs.completed_at is None) == reopen

        # resuming without new notes leaves the status where the revoke put it
        rs = await mgr.start_or_resume("2024-W48", ReviewType.WEEKLY, now=AFTER_WEEK)
        assert (rs.notes_reviewed, rs.total_notes, rs.status) == (0, 1, expected)
        await eng.dispose()

    run_async(go())


def test_store_failure_applies_nothing(run_async, store, settings):
    eng, sf = store

    class FailingSession(Session):
        pass

    def _boom(session):
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    event.listen(FailingSession, "before_commit", _boom)
    failing_sf = async_sessionmaker(eng, expire_on_commit=False, sync_session_class=FailingSession)

    async def go():
        await ensure_schema(eng)
        (nid,) = await _notes(sf, MONDAY)
        rs = await ReviewSessionManager(sf, settings).start_or_resume("2024-W48", ReviewType.WEEKLY, now=AFTER_WEEK)

        with pytest.raises(PersistenceFailure):
            await ReviewSessionManager(failing_sf, settings).submit_decision(rs.id, nid, Decision.KEPT, now=AFTER_WEEK)

        mgr = ReviewSessionManager(sf, settings)
        rs = await mgr.get_session(rs.id)
        assert (rs.notes_reviewed, rs.notes_kept) == (0, 0)
        assert await mgr.session_decisions(rs.id) == {}
        note = await _note(sf, nid)
        assert (note.review_tier, note.last_reviewed_at) == (ReviewTier.DAILY, None)
        await eng.dispose()

    run_async(go())


def test_default_settings_manager(run_async, store):
    eng, sf = store

    async def go():
        await ensure_schema(eng)
        mgr = ReviewSessionManager(sf)
        assert mgr.settings.first_weekday == 0
        assert isinstance(mgr.settings, Settings)
        rs = await mgr.start_or_resume("2024-W48", ReviewType.WEEKLY, now=AFTER_WEEK)
        assert rs.total_notes == 0
        assert await mgr.get_progress(rs.id) == 1.0
        assert rs.status == "in_progress"
        await eng.dispose()

    run_async(go())


def test_unknown_decision_is_rejected_without_mutation(run_async, store, settings):
    eng, sf = store

    async def go():
        await ensure_schema(eng)
        (nid,) = await _notes(sf, MONDAY)
        mgr = ReviewSessionManager(sf, settings)
        rs = await mgr.start_or_resume("2024-W48", ReviewType.WEEKLY, now=AFTER_WEEK)
        with pytest.raises(InvalidDecision):
            await mgr.submit_decision(rs.id, nid, "maybe", now=AFTER_WEEK)
        rs = await mgr.get_session(rs.id)
        assert rs.notes_reviewed == 0
        assert (await _note(sf, nid)).review_tier == ReviewTier.DAILY
        await eng.dispose()

    run_async(go())


def test_two_managers_deciding_concurrently_keep_counters_in_step(run_async, store, settings):
    eng, sf = store

    async def go():
        await ensure_schema(eng)
        a, b, c = await _notes(sf, MONDAY, TUESDAY, WEDNESDAY)
        first = ReviewSessionManager(sf, settings)
        second = ReviewSessionManager(sf, settings)
        rs = await first.start_or_resume("2024-W48", ReviewType.WEEKLY, now=AFTER_WEEK)

        await asyncio.gather(
            first.submit_decision(rs.id, a, Decision.KEPT, now=AFTER_WEEK),
            second.submit_decision(rs.id, b, Decision.ARCHIVED, now=AFTER_WEEK),
        )
        rs = await first.get_session(rs.id)
        assert (rs.notes_reviewed, rs.notes_kept, rs.notes_archived) == (2, 1, 1)
        assert rs.status == "in_progress"

        await asyncio.gather(
            first.submit_decision(rs.id, c, Decision.KEPT, now=AFTER_WEEK),
            second.submit_decision(rs.id, a, Decision.ARCHIVED, now=AFTER_WEEK),
        )
        rs = await second.get_session(rs.id)
        _assert_counters(rs)
        assert (rs.notes_reviewed, rs.notes_kept, rs.notes_archived) == (3, 1, 2)
        assert rs.status == "completed"
        assert len(await first.session_decisions(rs.id)) == 3
        await eng.dispose()

    run_async(go())


def test_concurrent_start_yields_one_session(run_async, store, settings):
    eng, sf = store

    async def go():
        await ensure_schema(eng)
        await _notes(sf, MONDAY)
        managers = [ReviewSessionManager(sf, settings) for _ in range(3)]
        sessions = await asyncio.gather(
            *(m.start_or_resume("2024-W48", ReviewType.WEEKLY, now=AFTER_WEEK) for m in managers)
        )
        assert len({rs.id for rs in sessions}) == 1
        assert len(await managers[0].list_sessions()) == 1
        await eng.dispose()

    run_async(go())


def test_start_recovers_when_another_writer_created_the_session(run_async, store, settings):
    eng, sf = store

    class StaleLookupManager(ReviewSessionManager):
        # The first lookup misses a row another writer has already committed
        misses = 1

        async def _find_session(self, db, key, review_type):
            if self.misses:
                self.misses -= 1
                return None
            return await super()._find_session(db, key, review_type)

    async def go():
        await ensure_schema(eng)
        await _notes(sf, MONDAY)
        existing = await ReviewSessionManager(sf, settings).start_or_resume(
            "2024-W48", ReviewType.WEEKLY, now=AFTER_WEEK
        )
        mgr = StaleLookupManager(sf, settings)
        resumed = await mgr.start_or_resume("2024-W48", ReviewType.WEEKLY, now=AFTER_WEEK)
        assert mgr.misses == 0
        assert resumed.id == existing.id
        assert len(await mgr.list_sessions()) == 1
        await eng.dispose()

    run_async(go())
