# noteladder/cli.py
from __future__ import annotations

import asyncio
import json
from pathlib import Path
import click

from noteladder.config import load_settings, DEFAULT_CONFIG_PATH, DEFAULT_REMINDER_TIMES
from noteladder.db import make_engine, ensure_schema
from noteladder.errors import ReviewError
from noteladder.models import ReviewTier, ReviewType, Decision
from noteladder.periods import current_period_key, previous_period_key, period_date_range
from noteladder.services.sessions import ReviewSessionManager
from noteladder.utils import first_title_line, local_now, parse_tag_input

from noteladder.log import setup_logging
setup_logging()


_DECISIONS = {"keep": Decision.KEPT, "kept": Decision.KEPT, "archive": Decision.ARCHIVED, "archived": Decision.ARCHIVED}


@click.group()
def cli():
    """noteladder CLI — capture notes, review them weekly, monthly and yearly."""


def _run(make_coro):
    """
    Run an async command body with a ready engine + manager; domain errors become ClickExceptions.
    """
    s = load_settings()

    async def go():
        eng, session_factory = make_engine(s.db_path)
        await ensure_schema(eng)
        try:
            return await make_coro(s, session_factory, ReviewSessionManager(session_factory, s))
        finally:
            await eng.dispose()

    try:
        return asyncio.run(go())
    except ReviewError as e:
        raise click.ClickException(str(e)) from e


def _note_line(note, decision: Decision | None = None) -> str:
    title = first_title_line(note.content) or "(untitled)"
    mark = {Decision.KEPT: "[kept]    ", Decision.ARCHIVED: "[archived]"}.get(decision, "[pending] ")
    return f"{mark} {note.id}  {note.created_at:%Y-%m-%d %H:%M}  {title}"


# ---------------------------------------------------------------------
# init: create default config + directories
# ---------------------------------------------------------------------
@cli.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing config.toml if present.")
def init_command(force: bool) -> None:
    """Create a default config.toml and the data/exports directories."""
    import tomli_w

    cfg_path = Path(DEFAULT_CONFIG_PATH).expanduser()
    cfg_path.parent.mkdir(parents=True, exist_ok=True)

    default = {
        "data_dir": "~/.local/share/noteladder",
        "exports_dir": "~/.local/share/noteladder/exports",
        "first_weekday": "mon",
        "reopen_completed": False,
        "reminder_times": dict(DEFAULT_REMINDER_TIMES),
    }

    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path} (use --force to overwrite).")
    else:
        with open(cfg_path, "wb") as f:
            tomli_w.dump(default, f)
        click.echo(f"Wrote default config to {cfg_path}")

    for d in (Path(default["data_dir"]).expanduser(), Path(default["exports_dir"]).expanduser()):
        d.mkdir(parents=True, exist_ok=True)
        click.echo(f"  - {d}")
    click.echo("Done.")


@cli.command()
def initdb():
    """Create the database schema and seed categories and source types."""
    from noteladder.services.notes import seed_defaults

    async def body(s, sf, mgr):
        async with sf() as session:
            added_c, added_s = await seed_defaults(session)
            await session.commit()
        click.echo(f"DB ready: {s.db_path} (seeded {added_c} categories, {added_s} source types)")

    _run(body)


# ---------------------------------------------------------------------
# notes
# ---------------------------------------------------------------------
@cli.command()
@click.argument("content", nargs=-1, required=True)
@click.option("--category", default=None, help="Category name (created if missing).")
@click.option("--tag", "tags", multiple=True, help="Tag(s); comma/space separated lists are split.")
@click.option("--source", default=None, help="Where the note came from.")
@click.option("--source-type", default=None, help="Source type name (Book, Podcast, ...).")
@click.option("--created", type=click.DateTime(), default=None, help="Backdate the note (local time).")
def add(content: tuple[str, ...], category, tags, source, source_type, created):
    """Capture a note at the Daily tier."""
    from noteladder.services.notes import create_note

    text = " ".join(content).strip()
    names: list[str] = []
    for t in tags:
        names.extend(parse_tag_input(t))

    async def body(s, sf, mgr):
        async with sf() as session:
            note = await create_note(
                session, text,
                category=category, tags=names, source=source, source_type=source_type,
                created_at=created or local_now(s.timezone),
            )
            await session.commit()
            click.echo(f"ADDED: {note.id}")

    try:
        _run(body)
    except ValueError as e:
        raise click.ClickException(str(e)) from e


@cli.command("list")
@click.option("--tier", type=click.Choice([t.name.lower() for t in ReviewTier]), default=None)
@click.option("--archived/--active", default=None, help="Only archived or only active notes.")
@click.option("--tag", default=None)
@click.option("--category", default=None)
@click.option("--text", default=None, help="Match content or source (case-insensitive).")
def list_cmd(tier, archived, tag, category, text):
    """List notes, oldest first."""
    from noteladder.services.notes import NoteQuery, query_notes

    q = NoteQuery(
        tier=ReviewTier[tier.upper()] if tier else None,
        archived=archived,
        tag=tag,
        category=category,
        text=text,
    )

    async def body(s, sf, mgr):
        async with sf() as session:
            notes = await query_notes(session, q)
        if not notes:
            click.echo("No notes.")
            return
        for n in notes:
            flag = " (archived)" if n.archived else ""
            click.echo(f"{n.id}  {n.created_at:%Y-%m-%d}  {n.tier.title:<8}{flag}  {first_title_line(n.content)}")

    _run(body)


# ---------------------------------------------------------------------
# reviews
# ---------------------------------------------------------------------
@cli.command()
@click.option("--type", "review_type", type=click.Choice([t.value for t in ReviewType]), default="weekly", show_default=True)
@click.option("--period", "period_key", default=None, help="Period key, e.g. 2024-W48, 2024-11, 2024.")
@click.option("--force", is_flag=True, help="Allow reviewing a period that has not ended yet.")
def start(review_type: str, period_key: str | None, force: bool):
    """Start or resume the review of a period (default: the oldest one still pending)."""
    rt = ReviewType(review_type)

    async def body(s, sf, mgr):
        now = local_now(s.timezone)
        key = period_key
        if key is None:
            target = await mgr.next_target(now, review_types=[rt])
            key = target.period_key if target else previous_period_key(
                current_period_key(rt, now, s.first_weekday), rt, s.first_weekday
            )
        period_date_range(key, rt, s.first_weekday)
        if not force and not mgr.is_reviewable(key, rt, now):
            raise click.ClickException(f"{rt.value} period {key} has not ended yet (use --force).")
        rs = await mgr.start_or_resume(key, rt, now=now)
        cursor = await mgr.open_cursor(rs.id)
        click.echo(f"Session {rs.id}: {rt.title} review {rs.period_key} — {rs.notes_reviewed}/{rs.total_notes} reviewed ({rs.status})")
        if cursor.current is not None and cursor.undecided:
            click.echo(f"Next ({cursor.progress_text}):")
            click.echo(_note_line(cursor.current, cursor.current_decision))

    _run(body)


@cli.command()
@click.argument("session_id")
def show(session_id: str):
    """Show a review session's progress and notes."""
    from noteladder.services.progress import progress_fraction

    async def body(s, sf, mgr):
        rs = await mgr.get_session(session_id)
        cursor = await mgr.open_cursor(session_id)
        click.echo(
            f"{ReviewType(rs.review_type).title} review {rs.period_key} [{rs.status}] "
            f"{progress_fraction(rs):.0%} — kept {rs.notes_kept}, archived {rs.notes_archived}, "
            f"{rs.notes_reviewed}/{rs.total_notes} reviewed"
        )
        for n in cursor.notes:
            click.echo(_note_line(n, cursor.decisions.get(n.id)))

    _run(body)


@cli.command()
@click.argument("session_id")
@click.argument("note_id")
@click.argument("decision", type=click.Choice(sorted(_DECISIONS), case_sensitive=False))
def decide(session_id: str, note_id: str, decision: str):
    """Keep (promote) or archive a note in a review session."""
    async def body(s, sf, mgr):
        rs = await mgr.submit_decision(session_id, note_id, _DECISIONS[decision.lower()])
        click.echo(f"{rs.notes_reviewed}/{rs.total_notes} reviewed ({rs.status})")

    _run(body)


@cli.command()
@click.argument("session_id")
@click.argument("note_id")
def revoke(session_id: str, note_id: str):
    """Undo the decision on a note; it becomes pending again."""
    async def body(s, sf, mgr):
        rs = await mgr.revoke_decision(session_id, note_id)
        click.echo(f"{rs.notes_reviewed}/{rs.total_notes} reviewed ({rs.status})")

    _run(body)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output JSON.")
def pending(as_json: bool):
    """Count unfinished past reviews per review type."""
    async def body(s, sf, mgr):
        counts = await mgr.pending_counts()
        if as_json:
            click.echo(json.dumps(counts))
            return
        for k, v in counts.items():
            click.echo(f"{k}: {v}")

    _run(body)


@cli.command("next")
def next_cmd():
    """Show the oldest review waiting to be done."""
    async def body(s, sf, mgr):
        target = await mgr.next_target()
        if target is None:
            click.echo("All caught up.")
            return
        click.echo(
            f"{target.review_type.title} review {target.period_key}: "
            f"{target.pending} of {target.eligible} note(s) pending"
        )

    _run(body)


# ---------------------------------------------------------------------
# export / maintenance
# ---------------------------------------------------------------------
@cli.command("export")
@click.option("--out", "out_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write to this file instead of exports_dir.")
def export_cmd(out_path: Path | None):
    """Export all notes with their review status as JSON."""
    from noteladder.reporters.export import collect, render_json, write_export

    async def body(s, sf, mgr):
        now = local_now(s.timezone)
        async with sf() as session:
            doc = await collect(session, now)
        text = render_json(doc)
        if out_path is not None:
            out_path.parent.mkdir(parents=True, exist_ok=True)
            out_path.write_text(text, encoding="utf-8")
            path = out_path
        else:
            path = write_export(text, s.exports_dir, now)
        click.echo(f"Exported {len(doc['notes'])} note(s) → {path}")

    _run(body)


@cli.command("doctor")
@click.option("--json", "as_json", is_flag=True, help="Output JSON summary.")
def doctor_cmd(as_json: bool) -> None:
    """Run diagnostics: config, DB schema and review counter consistency."""
    from noteladder.doctor import run_checks

    res = asyncio.run(run_checks())
    if as_json:
        click.echo(json.dumps(res.to_dict(), indent=2, default=str))
        return
    click.echo("noteladder doctor\n-----------------")
    click.echo(f"OK: {res.ok}")
    if res.errors:
        click.echo("Errors:")
        for e in res.errors:
            click.echo(f"  - {e}")
    if res.warnings:
        click.echo("Warnings:")
        for w in res.warnings:
            click.echo(f"  - {w}")
    click.echo("Details:")
    for k, v in res.details.items():
        click.echo(f"  {k}: {v}")


@cli.command()
def remind():
    """Run the reminder scheduler (weekly, monthly, yearly)."""
    from noteladder.services.reminders import run_reminders
    run_reminders()


@cli.command("reset-progress")
@click.option("--yes", is_flag=True, help="Confirm resetting every note to Daily.")
def reset_progress(yes: bool):
    """Delete all review sessions and put every note back to Daily."""
    from noteladder.services.notes import reset_review_progress

    if not yes:
        raise click.ClickException("Refusing to reset without --yes.")

    async def body(s, sf, mgr):
        async with sf() as session:
            n = await reset_review_progress(session)
            await session.commit()
        click.echo(f"Reset {n} note(s).")

    _run(body)


# allow `python -m noteladder.cli ...` and console entry point
if __name__ == "__main__":
    cli()
