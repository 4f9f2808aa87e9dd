from __future__ import annotations
from collections import Counter
from dataclasses import dataclass, asdict
from typing import List, Dict, Any

from sqlalchemy import inspect, select, text

from noteladder.config import Settings, load_settings
from noteladder.db import make_engine, ensure_schema
from noteladder.models import ReviewAction, ReviewSession, ReviewType, Decision
from noteladder.periods import is_valid_period_key
from noteladder.services.reminders import trigger_kwargs


@dataclass
class DoctorResult:
    ok: bool
    warnings: List[str]
    errors: List[str]
    details: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        return d


def audit_session(rs: ReviewSession, kept: int, archived: int, first_weekday: int = 0) -> List[str]:
    """
    Problems with one session's counters, given its recorded kept/archived actions.
    """
    label = f"session {rs.review_type} {rs.period_key}"
    problems: List[str] = []
    if not is_valid_period_key(rs.period_key, rs.review_type, first_weekday):
        problems.append(f"{label}: unparseable period key")
    if min(rs.total_notes, rs.notes_reviewed, rs.notes_kept, rs.notes_archived) < 0:
        problems.append(f"{label}: negative counter")
    if rs.notes_reviewed != rs.notes_kept + rs.notes_archived:
        problems.append(f"{label}: reviewed {rs.notes_reviewed} != kept {rs.notes_kept} + archived {rs.notes_archived}")
    if rs.notes_reviewed > rs.total_notes:
        problems.append(f"{label}: reviewed {rs.notes_reviewed} exceeds total {rs.total_notes}")
    if (rs.notes_kept, rs.notes_archived) != (kept, archived):
        problems.append(
            f"{label}: counters kept={rs.notes_kept} archived={rs.notes_archived} "
            f"but actions kept={kept} archived={archived}"
        )
    return problems


async def run_checks(settings: Settings | None = None) -> DoctorResult:
    s = settings or load_settings()

    warnings: List[str] = []
    errors: List[str] = []
    details: Dict[str, Any] = {}

    # Config and paths
    details["config.data_dir"] = str(s.data_dir)
    details["config.exports_dir"] = str(s.exports_dir)
    details["config.first_weekday"] = s.first_weekday
    details["config.timezone"] = s.timezone
    details["config.reopen_completed"] = s.reopen_completed
    details["config.reminder_times"] = s.reminder_times

    if not s.state_dir.exists():
        errors.append(f"Missing directory: {s.state_dir}")

    for rt in ReviewType:
        spec = s.reminder_times.get(rt.value)
        try:
            trigger_kwargs(rt, spec)
        except (AttributeError, ValueError):
            warnings.append(f"reminder_times.{rt.value} is invalid: {spec!r}")

    # DB and schema
    eng, session_factory = make_engine(s.db_path)
    try:
        await ensure_schema(eng)
        async with eng.connect() as conn:
            try:
                val = (await conn.execute(text("SELECT 1"))).scalar_one()
                details["db.ping"] = val
            except Exception as e:
                errors.append(f"DB ping failed: {e}")

        async with eng.begin() as conn:
            def _tables(sync_conn):
                return inspect(sync_conn).get_table_names()
            tables = await conn.run_sync(_tables)
        details["db.tables"] = sorted(tables)
        for t in ("notes", "tags", "review_sessions", "review_actions"):
            if t not in tables:
                errors.append(f"Missing expected table: {t}")

        # Session counters against recorded actions
        async with session_factory() as session:
            sessions = (await session.execute(select(ReviewSession))).scalars().all()
            counts = Counter(
                (sid, d) for sid, d in (
                    await session.execute(select(ReviewAction.session_id, ReviewAction.decision))
                ).all()
            )
        details["review.sessions"] = len(sessions)
        for rs in sessions:
            errors.extend(audit_session(
                rs,
                counts[(rs.id, Decision.KEPT.value)],
                counts[(rs.id, Decision.ARCHIVED.value)],
                s.first_weekday,
            ))
    finally:
        await eng.dispose()

    ok = (len(errors) == 0)
    return DoctorResult(ok=ok, warnings=warnings, errors=errors, details=details)
