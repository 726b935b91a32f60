"""
Persistent storage (SQLite).

This module owns the database file and exposes one small repository per
table. The sync engine and the template service never touch SQL directly.

Transactions:
- Every repository method accepts an optional `conn`.
- Without it, the call runs in its own short transaction.
- With it, the call joins the caller's transaction, so several writes
  (e.g. course + position + value) commit or roll back together:

      with db.transaction() as conn:
          courses.create(..., conn=conn)
          positions.create(..., conn=conn)
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from coursesync.errors import DuplicateCourseError, NotFoundError, ValidationError
from coursesync.model import (
    Course,
    CoursePosition,
    CourseValue,
    Deadline,
    FailReason,
    Role,
    SyncAuditRecord,
    SyncEventKind,
    Template,
    User,
)

log = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    student_id  TEXT NOT NULL UNIQUE,
    name        TEXT NOT NULL DEFAULT '',
    email       TEXT NOT NULL DEFAULT '',
    role        TEXT NOT NULL DEFAULT 'student'
);

CREATE TABLE IF NOT EXISTS courses (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    course_code  TEXT NOT NULL UNIQUE,
    name         TEXT NOT NULL,
    credits      INTEGER NOT NULL,
    is_new       INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS scheduler_templates (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         INTEGER REFERENCES users(id) ON DELETE SET NULL,
    is_sync         INTEGER NOT NULL DEFAULT 0,
    is_main         INTEGER NOT NULL DEFAULT 0,
    last_sync_time  TEXT
);

CREATE TABLE IF NOT EXISTS course_positions (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    course_id     INTEGER NOT NULL REFERENCES courses(id) ON DELETE CASCADE,
    template_id   INTEGER NOT NULL REFERENCES scheduler_templates(id) ON DELETE CASCADE,
    days          INTEGER,
    periods       INTEGER,
    start_period  INTEGER
);

CREATE TABLE IF NOT EXISTS course_values (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    course_id         INTEGER NOT NULL REFERENCES courses(id) ON DELETE CASCADE,
    template_id       INTEGER NOT NULL REFERENCES scheduler_templates(id) ON DELETE CASCADE,
    lecture           TEXT NOT NULL,
    location          TEXT NOT NULL,
    day_of_week       TEXT,
    start_period      INTEGER,
    period_count      INTEGER,
    group_number      INTEGER,
    lab_group_number  INTEGER,
    UNIQUE (course_id, template_id, lecture, location)
);

CREATE TABLE IF NOT EXISTS deadlines (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    title            TEXT NOT NULL,
    due_at           TEXT,
    is_active        INTEGER NOT NULL DEFAULT 0,
    course_value_id  INTEGER REFERENCES course_values(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS sync_events (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    sync_event   TEXT NOT NULL,
    start_time   TEXT NOT NULL,
    finish_time  TEXT,
    status       INTEGER NOT NULL,
    fail_reason  TEXT,
    user_id      INTEGER REFERENCES users(id) ON DELETE SET NULL,
    CHECK ((status = 1 AND fail_reason IS NULL) OR (status = 0 AND fail_reason IS NOT NULL))
);

CREATE TABLE IF NOT EXISTS cache_entries (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    expires_at  REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_positions_course_template ON course_positions (course_id, template_id);
CREATE INDEX IF NOT EXISTS idx_values_template ON course_values (template_id);
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="seconds") if value is not None else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


class Database:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def init_schema(self) -> None:
        """Create all tables (idempotent)."""
        if self.path.parent and not self.path.parent.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self.connect()
        try:
            conn.executescript(SCHEMA)
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Yield a connection; commit on success, roll back on any exception.
        """
        conn = self.connect()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            log.error("Database error, rolling back: %s", e)
            conn.rollback()
            raise
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def scope(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """
        Join `conn` if given, otherwise open a fresh transaction.
        """
        if conn is not None:
            yield conn
            return
        with self.transaction() as own:
            yield own


class _Repository:
    def __init__(self, db: Database) -> None:
        self.db = db


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def _user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        student_id=row["student_id"],
        name=row["name"],
        email=row["email"],
        role=Role(row["role"]),
    )


class UserRepository(_Repository):
    def create(
        self,
        student_id: str,
        name: str = "",
        email: str = "",
        role: Role = Role.STUDENT,
        conn: Optional[sqlite3.Connection] = None,
    ) -> User:
        with self.db.scope(conn) as c:
            cur = c.execute(
                "INSERT INTO users (student_id, name, email, role) VALUES (?, ?, ?, ?)",
                (student_id, name, email, role.value),
            )
            return User(id=cur.lastrowid, student_id=student_id, name=name, email=email, role=role)

    def find(self, user_id: int) -> Optional[User]:
        with self.db.scope() as c:
            row = c.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _user(row) if row else None

    def find_by_student_id(self, student_id: str) -> Optional[User]:
        with self.db.scope() as c:
            row = c.execute("SELECT * FROM users WHERE student_id = ?", (student_id,)).fetchone()
        return _user(row) if row else None

    def find_sync_service_account(self) -> Optional[User]:
        """The (first) account holding the sync role."""
        with self.db.scope() as c:
            row = c.execute("SELECT * FROM users WHERE role = ? ORDER BY id LIMIT 1", (Role.SYNC.value,)).fetchone()
        return _user(row) if row else None


# ---------------------------------------------------------------------------
# Courses
# ---------------------------------------------------------------------------


def _course(row: sqlite3.Row) -> Course:
    return Course(
        id=row["id"],
        course_code=row["course_code"],
        name=row["name"],
        credits=row["credits"],
        is_new=bool(row["is_new"]),
    )


def _validate_course(course_code: str, name: str, credits: Any) -> None:
    if not course_code:
        raise ValidationError("Course code is required")
    if not name:
        raise ValidationError(f"Course {course_code}: name is required")
    if not isinstance(credits, int) or isinstance(credits, bool):
        raise ValidationError(f"Course {course_code}: credits must be a number, got {credits!r}")


class CourseRepository(_Repository):
    def list_all(self) -> list[Course]:
        with self.db.scope() as c:
            rows = c.execute("SELECT * FROM courses ORDER BY id").fetchall()
        return [_course(r) for r in rows]

    def list_codes(self) -> set[str]:
        with self.db.scope() as c:
            rows = c.execute("SELECT course_code FROM courses").fetchall()
        return {r["course_code"] for r in rows}

    def find_by_code(self, course_code: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Course]:
        with self.db.scope(conn) as c:
            row = c.execute("SELECT * FROM courses WHERE course_code = ?", (course_code,)).fetchone()
        return _course(row) if row else None

    def create(
        self,
        course_code: str,
        name: str,
        credits: Any,
        is_new: bool = True,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Course:
        """
        Insert a course. Raises ValidationError for bad fields and
        DuplicateCourseError if the code is already taken.
        """
        _validate_course(course_code, name, credits)
        with self.db.scope(conn) as c:
            try:
                cur = c.execute(
                    "INSERT INTO courses (course_code, name, credits, is_new) VALUES (?, ?, ?, ?)",
                    (course_code, name, credits, int(is_new)),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateCourseError(course_code) from e
        log.debug("[CREATE COURSE] %s", course_code)
        return Course(id=cur.lastrowid, course_code=course_code, name=name, credits=credits, is_new=is_new)

    def update(
        self,
        course_code: str,
        name: str,
        credits: Any,
        is_new: bool = True,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Course:
        _validate_course(course_code, name, credits)
        with self.db.scope(conn) as c:
            cur = c.execute(
                "UPDATE courses SET name = ?, credits = ?, is_new = ? WHERE course_code = ?",
                (name, credits, int(is_new), course_code),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"Course {course_code} not found")
            row = c.execute("SELECT * FROM courses WHERE course_code = ?", (course_code,)).fetchone()
        return _course(row)

    def delete(self, course_code: str, conn: Optional[sqlite3.Connection] = None) -> None:
        with self.db.scope(conn) as c:
            cur = c.execute("DELETE FROM courses WHERE course_code = ?", (course_code,))
            if cur.rowcount == 0:
                raise NotFoundError(f"Course {course_code} not found")


# ---------------------------------------------------------------------------
# Course positions
# ---------------------------------------------------------------------------


def _position(row: sqlite3.Row) -> CoursePosition:
    return CoursePosition(
        id=row["id"],
        course_id=row["course_id"],
        template_id=row["template_id"],
        days=row["days"],
        periods=row["periods"],
        start_period=row["start_period"],
    )


class CoursePositionRepository(_Repository):
    def find(
        self, course_id: int, template_id: int, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[CoursePosition]:
        with self.db.scope(conn) as c:
            row = c.execute(
                "SELECT * FROM course_positions WHERE course_id = ? AND template_id = ? ORDER BY id LIMIT 1",
                (course_id, template_id),
            ).fetchone()
        return _position(row) if row else None

    def create(
        self,
        course_id: int,
        template_id: int,
        days: Optional[int],
        periods: Optional[int],
        start_period: Optional[int],
        conn: Optional[sqlite3.Connection] = None,
    ) -> CoursePosition:
        with self.db.scope(conn) as c:
            cur = c.execute(
                "INSERT INTO course_positions (course_id, template_id, days, periods, start_period) "
                "VALUES (?, ?, ?, ?, ?)",
                (course_id, template_id, days, periods, start_period),
            )
        return CoursePosition(cur.lastrowid, course_id, template_id, days, periods, start_period)

    def update(
        self,
        course_id: int,
        template_id: int,
        days: Optional[int],
        periods: Optional[int],
        start_period: Optional[int],
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        with self.db.scope(conn) as c:
            cur = c.execute(
                "UPDATE course_positions SET days = ?, periods = ?, start_period = ? "
                "WHERE course_id = ? AND template_id = ?",
                (days, periods, start_period, course_id, template_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"Course position not found (course={course_id}, template={template_id})")

    def delete(self, course_id: int, template_id: int, conn: Optional[sqlite3.Connection] = None) -> None:
        with self.db.scope(conn) as c:
            cur = c.execute(
                "DELETE FROM course_positions WHERE course_id = ? AND template_id = ?",
                (course_id, template_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"Course position not found (course={course_id}, template={template_id})")


# ---------------------------------------------------------------------------
# Course values
# ---------------------------------------------------------------------------


def _value(row: sqlite3.Row) -> CourseValue:
    return CourseValue(
        id=row["id"],
        course_id=row["course_id"],
        template_id=row["template_id"],
        lecture=row["lecture"],
        location=row["location"],
        day_of_week=row["day_of_week"],
        start_period=row["start_period"],
        period_count=row["period_count"],
        group_number=row["group_number"],
        lab_group_number=row["lab_group_number"],
    )


class CourseValueRepository(_Repository):
    def exists(
        self,
        course_id: int,
        template_id: int,
        lecture: str,
        location: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """True if the full (course, template, lecture, location) tuple is stored."""
        with self.db.scope(conn) as c:
            row = c.execute(
                "SELECT 1 FROM course_values "
                "WHERE course_id = ? AND template_id = ? AND lecture = ? AND location = ?",
                (course_id, template_id, lecture, location),
            ).fetchone()
        return row is not None

    def find(
        self, course_id: int, template_id: int, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[CourseValue]:
        with self.db.scope(conn) as c:
            row = c.execute(
                "SELECT * FROM course_values WHERE course_id = ? AND template_id = ? ORDER BY id LIMIT 1",
                (course_id, template_id),
            ).fetchone()
        return _value(row) if row else None

    def list_for_template(self, template_id: int) -> list[CourseValue]:
        with self.db.scope() as c:
            rows = c.execute("SELECT * FROM course_values WHERE template_id = ? ORDER BY id", (template_id,)).fetchall()
        return [_value(r) for r in rows]

    def create(
        self,
        course_id: int,
        template_id: int,
        lecture: str,
        location: str,
        day_of_week: Optional[str] = None,
        start_period: Optional[int] = None,
        period_count: Optional[int] = None,
        group_number: Optional[int] = None,
        lab_group_number: Optional[int] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> CourseValue:
        if not lecture or not location or course_id is None or template_id is None:
            raise ValidationError("Missing required fields for CourseValue")

        with self.db.scope(conn) as c:
            cur = c.execute(
                "INSERT INTO course_values (course_id, template_id, lecture, location, day_of_week, "
                "start_period, period_count, group_number, lab_group_number) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    course_id,
                    template_id,
                    lecture,
                    location,
                    day_of_week,
                    start_period,
                    period_count,
                    group_number,
                    lab_group_number,
                ),
            )
        log.debug("[CREATE COURSE VALUE] id=%s course=%s template=%s", cur.lastrowid, course_id, template_id)
        return CourseValue(
            id=cur.lastrowid,
            course_id=course_id,
            template_id=template_id,
            lecture=lecture,
            location=location,
            day_of_week=day_of_week,
            start_period=start_period,
            period_count=period_count,
            group_number=group_number,
            lab_group_number=lab_group_number,
        )

    def update(
        self,
        course_id: int,
        template_id: int,
        lecture: str,
        location: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        with self.db.scope(conn) as c:
            existing = self.find(course_id, template_id, conn=c)
            if existing is None:
                raise NotFoundError("Course value not found")
            c.execute(
                "UPDATE course_values SET lecture = ?, location = ? WHERE id = ?",
                (lecture, location, existing.id),
            )
        log.debug("[UPDATE COURSE VALUE] id=%s", existing.id)

    def delete(self, course_id: int, template_id: int, conn: Optional[sqlite3.Connection] = None) -> None:
        with self.db.scope(conn) as c:
            existing = self.find(course_id, template_id, conn=c)
            if existing is None:
                raise NotFoundError("Course value not found")
            c.execute("DELETE FROM course_values WHERE id = ?", (existing.id,))
        log.debug("[DELETE COURSE VALUE] id=%s", existing.id)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def _template(row: sqlite3.Row) -> Template:
    return Template(
        id=row["id"],
        user_id=row["user_id"],
        is_sync=bool(row["is_sync"]),
        is_main=bool(row["is_main"]),
        last_sync_time=_dt(row["last_sync_time"]),
    )


class TemplateRepository(_Repository):
    def find(self, template_id: int) -> Optional[Template]:
        with self.db.scope() as c:
            row = c.execute("SELECT * FROM scheduler_templates WHERE id = ?", (template_id,)).fetchone()
        return _template(row) if row else None

    def create(
        self,
        user_id: Optional[int],
        is_sync: bool = False,
        is_main: bool = False,
        last_sync_time: Optional[datetime] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Template:
        with self.db.scope(conn) as c:
            cur = c.execute(
                "INSERT INTO scheduler_templates (user_id, is_sync, is_main, last_sync_time) VALUES (?, ?, ?, ?)",
                (user_id, int(is_sync), int(is_main), _ts(last_sync_time)),
            )
        return Template(
            id=cur.lastrowid, user_id=user_id, is_sync=is_sync, is_main=is_main, last_sync_time=last_sync_time
        )

    def mark_synced(self, template_id: int, when: datetime) -> None:
        with self.db.scope() as c:
            c.execute(
                "UPDATE scheduler_templates SET is_sync = 1, last_sync_time = ? WHERE id = ?",
                (_ts(when), template_id),
            )

    def find_main_for_user(self, user_id: Optional[int]) -> Optional[Template]:
        # "IS" so that an ownerless template matches user_id=None
        with self.db.scope() as c:
            row = c.execute(
                "SELECT * FROM scheduler_templates WHERE user_id IS ? AND is_main = 1 ORDER BY id LIMIT 1",
                (user_id,),
            ).fetchone()
        return _template(row) if row else None

    def find_main_by_student_id(self, student_id: str) -> Optional[Template]:
        with self.db.scope() as c:
            row = c.execute(
                "SELECT t.* FROM scheduler_templates t JOIN users u ON u.id = t.user_id "
                "WHERE t.is_main = 1 AND u.student_id = ? ORDER BY t.id LIMIT 1",
                (student_id,),
            ).fetchone()
        return _template(row) if row else None

    def get_detail(self, template_id: int) -> list[dict[str, Any]]:
        """
        Template joined with its positions, courses and values (one row per position).
        """
        query = (
            "SELECT t.id AS template_id, t.is_sync, t.is_main, t.last_sync_time, "
            "p.id AS position_id, p.days, p.periods, p.start_period, "
            "c.id AS course_id, c.course_code, c.name AS course_name, c.credits, "
            "v.id AS value_id, v.lecture, v.location "
            "FROM scheduler_templates t "
            "LEFT JOIN course_positions p ON p.template_id = t.id "
            "LEFT JOIN courses c ON c.id = p.course_id "
            "LEFT JOIN course_values v ON v.course_id = c.id AND v.template_id = t.id "
            "WHERE t.id = ? ORDER BY p.id"
        )
        with self.db.scope() as c:
            rows = c.execute(query, (template_id,)).fetchall()
        return [dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Deadlines
# ---------------------------------------------------------------------------


def _deadline(row: sqlite3.Row) -> Deadline:
    return Deadline(
        id=row["id"],
        title=row["title"],
        due_at=_dt(row["due_at"]),
        is_active=bool(row["is_active"]),
        course_value_id=row["course_value_id"],
    )


class DeadlineRepository(_Repository):
    def create(
        self,
        title: str,
        due_at: Optional[datetime] = None,
        is_active: bool = False,
        course_value_id: Optional[int] = None,
    ) -> Deadline:
        if not title:
            raise ValidationError("Deadline title is required")
        with self.db.scope() as c:
            cur = c.execute(
                "INSERT INTO deadlines (title, due_at, is_active, course_value_id) VALUES (?, ?, ?, ?)",
                (title, _ts(due_at), int(is_active), course_value_id),
            )
        return Deadline(
            id=cur.lastrowid, title=title, due_at=due_at, is_active=is_active, course_value_id=course_value_id
        )

    def get_active(self) -> list[Deadline]:
        with self.db.scope() as c:
            rows = c.execute("SELECT * FROM deadlines WHERE is_active = 1 ORDER BY due_at, id").fetchall()
        return [_deadline(r) for r in rows]

    def activate(self, deadline_id: int) -> None:
        """Turn on the alert for a deadline."""
        with self.db.scope() as c:
            cur = c.execute("UPDATE deadlines SET is_active = 1 WHERE id = ?", (deadline_id,))
            if cur.rowcount == 0:
                raise NotFoundError(f"Deadline {deadline_id} not found")


# ---------------------------------------------------------------------------
# Sync events
# ---------------------------------------------------------------------------


def _sync_event(row: sqlite3.Row) -> SyncAuditRecord:
    return SyncAuditRecord(
        id=row["id"],
        sync_event=SyncEventKind(row["sync_event"]),
        start_time=_dt(row["start_time"]),
        finish_time=_dt(row["finish_time"]),
        status=bool(row["status"]),
        fail_reason=FailReason(row["fail_reason"]) if row["fail_reason"] else None,
        user_id=row["user_id"],
    )


class SyncEventRepository(_Repository):
    def insert(self, record: SyncAuditRecord) -> int:
        with self.db.scope() as c:
            cur = c.execute(
                "INSERT INTO sync_events (sync_event, start_time, finish_time, status, fail_reason, user_id) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    record.sync_event.value,
                    _ts(record.start_time),
                    _ts(record.finish_time),
                    int(record.status),
                    record.fail_reason.value if record.fail_reason else None,
                    record.user_id,
                ),
            )
        return cur.lastrowid

    def list_recent(self, limit: int = 20) -> list[SyncAuditRecord]:
        with self.db.scope() as c:
            rows = c.execute("SELECT * FROM sync_events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [_sync_event(r) for r in rows]
