from __future__ import annotations
import asyncio
from dataclasses import dataclass
from datetime import datetime
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from noteladder.config import Settings, DEFAULT_REMINDER_TIMES, load_settings
from noteladder.db import make_engine, ensure_schema
from noteladder.log import logger
from noteladder.models import ReviewType
from noteladder.services.progress import pending_note_count
from noteladder.utils import local_now


@dataclass
class Reminder:
    review_type: ReviewType
    note_count: int
    badge: int

    @property
    def title(self) -> str:
        return f"{self.review_type.title} Review Ready"

    @property
    def body(self) -> str:
        plural = "" if self.note_count == 1 else "s"
        return f"You have {self.note_count} note{plural} ready for your {self.review_type.title} Review."


async def build_reminder(
    session_factory,
    review_type: ReviewType,
    settings: Settings,
    now: datetime | None = None,
) -> Reminder | None:
    """
    Reminder for one review type, or None when nothing is waiting.
    The badge counts review types that have work, not notes.
    """
    now = now or local_now(settings.timezone)
    async with session_factory() as session:
        counts = {
            rt: await pending_note_count(session, rt, now, settings.first_weekday)
            for rt in ReviewType
        }
    if counts[review_type] == 0:
        return None
    badge = sum(1 for n in counts.values() if n > 0)
    return Reminder(review_type=review_type, note_count=counts[review_type], badge=badge)


async def job_review_reminder(review_type: ReviewType, settings: Settings | None = None) -> Reminder | None:
    s = settings or load_settings()
    eng, session_factory = make_engine(s.db_path)
    try:
        await ensure_schema(eng)
        r = await build_reminder(session_factory, review_type, s)
    finally:
        await eng.dispose()
    if r is None:
        logger.info(f"[remind] no {review_type.value} notes to review, skipping")
        return None
    logger.info(f"[remind] {r.title}: {r.body} (badge {r.badge})")
    return r


# -------- trigger parsing --------

def _parse_hm(hm: str) -> tuple[int, int]:
    h, m = hm.strip().split(":")
    h, m = int(h), int(m)
    if not (0 <= h <= 23 and 0 <= m <= 59):
        raise ValueError(f"time out of range: {hm}")
    return h, m


def trigger_kwargs(review_type: ReviewType, spec: str) -> dict:
    """
    CronTrigger fields for a reminder spec:
      weekly  "Sun 20:00"    day of week + time
      monthly "1 20:00"      day of month + time
      yearly  "01-01 20:00"  month-day + time
    Raises ValueError for malformed specs.
    """
    first, hm = spec.split()
    h, m = _parse_hm(hm)
    if review_type is ReviewType.WEEKLY:
        dow = first.strip().lower()[:3]
        if dow not in ("mon", "tue", "wed", "thu", "fri", "sat", "sun"):
            raise ValueError(f"bad day of week: {first}")
        return {"day_of_week": dow, "hour": h, "minute": m}
    if review_type is ReviewType.MONTHLY:
        day = int(first)
        if not 1 <= day <= 31:
            raise ValueError(f"bad day of month: {first}")
        return {"day": day, "hour": h, "minute": m}
    month, day = (int(x) for x in first.split("-"))
    if not (1 <= month <= 12 and 1 <= day <= 31):
        raise ValueError(f"bad month-day: {first}")
    return {"month": month, "day": day, "hour": h, "minute": m}


def build_scheduler(settings: Settings) -> AsyncIOScheduler:
    """Register one reminder job per review type from settings.reminder_times."""
    tz = ZoneInfo(settings.timezone) if settings.timezone else None
    sched = AsyncIOScheduler(timezone=tz) if tz else AsyncIOScheduler()  # system/local timezone by default

    for rt in ReviewType:
        spec = settings.reminder_times.get(rt.value, DEFAULT_REMINDER_TIMES[rt.value])
        try:
            fields = trigger_kwargs(rt, spec)
        except ValueError:
            logger.warning(
                f"[remind] invalid reminder_times.{rt.value} {spec!r}; using {DEFAULT_REMINDER_TIMES[rt.value]!r}"
            )
            fields = trigger_kwargs(rt, DEFAULT_REMINDER_TIMES[rt.value])
        sched.add_job(
            job_review_reminder,
            CronTrigger(**fields),
            args=[rt, settings],
            id=f"{rt.value}-review",
            replace_existing=True,
        )
    return sched


def run_reminders() -> None:
    s = load_settings()
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    sched = build_scheduler(s)
    sched.start()
    logger.info("[remind] started using config.reminder_times")
    try:
        loop.run_forever()
    except KeyboardInterrupt:
        pass
    finally:
        sched.shutdown(wait=False)
        loop.close()
