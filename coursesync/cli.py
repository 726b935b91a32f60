"""
CLI (Command Line Interface).

    coursesync init-db
    coursesync session set <cookie>
    coursesync sync catalog
    coursesync sync schedule <schedule_id> [--template <id>]
    coursesync history [--limit N]
    coursesync deadlines

Settings come from the environment / .env (see coursesync.config).
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from typing import Optional

from rich import box
from rich.console import Console
from rich.table import Table

from coursesync.audit import SyncAuditLog
from coursesync.auth import AuthService
from coursesync.cache import build_session_cache
from coursesync.config import Settings
from coursesync.errors import CourseSyncError, DuplicateCourseError, RemoteFetchError
from coursesync.logger import setup_logging
from coursesync.model import SyncResult
from coursesync.scrape import PortalClient
from coursesync.storage import (
    CourseRepository,
    CourseValueRepository,
    Database,
    DeadlineRepository,
    SyncEventRepository,
    TemplateRepository,
    UserRepository,
)
from coursesync.sync import SyncService


console = Console()


@dataclass
class App:
    settings: Settings
    db: Database
    sync: SyncService
    events: SyncEventRepository
    deadlines: DeadlineRepository


def build_app(settings: Settings, portal: Optional[PortalClient] = None) -> App:
    """
    Wire repositories and services for one process.
    """
    db = Database(settings.database_path)
    db.init_schema()

    users = UserRepository(db)
    events = SyncEventRepository(db)
    audit = SyncAuditLog(
        events,
        users,
        AuthService(settings.acting_student_id),
        local_sync=settings.is_local_sync,
    )
    sync = SyncService(
        cache=build_session_cache(settings, db),
        portal=portal or PortalClient.from_settings(settings),
        courses=CourseRepository(db),
        values=CourseValueRepository(db),
        templates=TemplateRepository(db),
        audit=audit,
        session_prefix=settings.session_prefix,
    )
    return App(settings=settings, db=db, sync=sync, events=events, deadlines=DeadlineRepository(db))


def _print_result(result: SyncResult) -> None:
    rec = result.record
    if rec.status:
        console.print(f"[green]OK[/] {rec.sync_event.value}: created {result.created}, skipped {result.skipped}")
    else:
        console.print(f"[yellow]FAILED[/] {rec.sync_event.value}: {rec.fail_reason.value}")
    if result.rejected:
        console.print(f"Rejected {len(result.rejected)}: {', '.join(result.rejected)}")


def _cmd_session(args: argparse.Namespace, app: App) -> int:
    app.sync.save_session_id(args.token)
    console.print("Session ID saved.")
    return 0


def _cmd_sync(args: argparse.Namespace, app: App) -> int:
    if args.target == "catalog":
        result = app.sync.sync_catalog()
    else:
        result = app.sync.sync_schedule(args.schedule_id, template_id=args.template)
    _print_result(result)
    return 0 if result.record.status else 1


def _cmd_history(args: argparse.Namespace, app: App) -> int:
    records = app.events.list_recent(args.limit)
    if not records:
        console.print("No sync runs recorded.")
        return 0

    table = Table(title="Sync history", box=box.SIMPLE)
    table.add_column("#", justify="right")
    table.add_column("Event")
    table.add_column("Started")
    table.add_column("Finished")
    table.add_column("Status")
    table.add_column("Reason")
    for rec in records:
        table.add_row(
            str(rec.id),
            rec.sync_event.value,
            rec.start_time.isoformat(sep=" ", timespec="seconds") if rec.start_time else "",
            rec.finish_time.isoformat(sep=" ", timespec="seconds") if rec.finish_time else "",
            "[green]ok[/]" if rec.status else "[red]failed[/]",
            rec.fail_reason.value if rec.fail_reason else "",
        )
    console.print(table)
    return 0


def _cmd_deadlines(args: argparse.Namespace, app: App) -> int:
    active = app.deadlines.get_active()
    if not active:
        console.print("No active deadlines.")
        return 0
    for d in active:
        due = d.due_at.isoformat(sep=" ", timespec="minutes") if d.due_at else "(no date)"
        console.print(f"{due} | {d.title}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    """
    Build the argparse CLI parser with sub-commands.
    """
    parser = argparse.ArgumentParser(prog="coursesync", description="Course catalog / timetable sync")
    parser.add_argument("--env-file", type=str, default=None, help="Path to a .env file")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database tables")

    p_session = sub.add_parser("session", help="Manage the captured portal session")
    session_sub = p_session.add_subparsers(dest="action", required=True)
    p_set = session_sub.add_parser("set", help="Store a session cookie copied from the portal")
    p_set.add_argument("token", type=str, help="Cookie string (e.g. ASP.NET_SessionId=...)")

    p_sync = sub.add_parser("sync", help="Run a sync against the portal")
    sync_sub = p_sync.add_subparsers(dest="target", required=True)
    sync_sub.add_parser("catalog", help="Import the course catalog")
    p_sched = sync_sub.add_parser("schedule", help="Import a timetable")
    p_sched.add_argument("schedule_id", type=int, help="Portal timetable id")
    p_sched.add_argument("--template", type=int, default=None, help="Target template id")

    p_hist = sub.add_parser("history", help="Show recent sync runs")
    p_hist.add_argument("--limit", type=int, default=20)

    sub.add_parser("deadlines", help="Show active deadlines")

    return parser


def main(argv: list[str] | None = None) -> None:
    """
    CLI entry point. Parses args, dispatches to command handlers,
    and exits via SystemExit with a return code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = Settings.from_env(args.env_file)
    setup_logging(settings.log_level, settings.log_file)

    app = build_app(settings)

    if args.command == "init-db":
        console.print(f"Database ready: {settings.database_path}")
        raise SystemExit(0)

    handlers = {
        "session": _cmd_session,
        "sync": _cmd_sync,
        "history": _cmd_history,
        "deadlines": _cmd_deadlines,
    }
    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(2)

    try:
        code = handler(args, app)
    except DuplicateCourseError as e:
        console.print(f"[red]Rejected:[/] {e}")
        code = 1
    except RemoteFetchError as e:
        console.print(f"[red]Portal unreachable:[/] {e}")
        code = 1
    except CourseSyncError as e:
        console.print(f"[red]Error:[/] {e}")
        code = 1

    raise SystemExit(code)
