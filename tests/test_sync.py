"""
Tests for catalog and schedule sync runs.

Every run must append exactly one audit record. The portal is replaced by
a fake returning canned pages; storage is a temporary SQLite file.
"""

import sqlite3
import tempfile
import unittest
from pathlib import Path
from typing import Optional
from unittest import mock

from coursesync.audit import SyncAuditLog
from coursesync.auth import AuthService
from coursesync.cache import MemoryBackend, SessionCache
from coursesync.errors import (
    DuplicateCourseError,
    InvalidSessionError,
    NotFoundError,
    RemoteFetchError,
    ValidationError,
)
from coursesync.model import FailReason, Role, SyncEventKind
from coursesync.storage import (
    CourseRepository,
    CourseValueRepository,
    Database,
    SyncEventRepository,
    TemplateRepository,
    UserRepository,
)
from coursesync.sync import SyncService

TOKEN = "ASP.NET_SessionId=abc123"


def catalog_page(rows: list[tuple[str, str, str]]) -> str:
    body = "".join(
        "<tr>"
        f"<td><span>{code}</span></td>"
        f'<td><a id="grid_ctl{i:02d}_lkDownload">{name}</a></td>'
        f"<td><span>{credits}</span></td>"
        "</tr>"
        for i, (code, name, credits) in enumerate(rows)
    )
    return f"<html><body><table>{body}</table></body></html>"


def schedule_page(cells: list[tuple[str, str, str, str, str, str]]) -> str:
    tds = []
    for descriptor, day, location, start, count, lecturer in cells:
        params = ",".join(f"'{p}'" for p in ["Course", "-", descriptor, day, "-", location, start, count, lecturer])
        tds.append(f'<td onmouseover="ddrivetip({params})">{descriptor}</td>')
    return "<html><body><table><tr>" + "".join(tds) + "</tr></table></body></html>"


class FakePortal:
    def __init__(self, catalog: str = "", schedule: str = "", error: Optional[Exception] = None) -> None:
        self.catalog = catalog
        self.schedule = schedule
        self.error = error
        self.calls: list[tuple] = []

    def fetch_catalog_page(self, session_token: str) -> str:
        self.calls.append(("catalog", session_token))
        if self.error:
            raise self.error
        return self.catalog

    def fetch_schedule_page(self, session_token: str, schedule_id: int) -> str:
        self.calls.append(("schedule", session_token, schedule_id))
        if self.error:
            raise self.error
        return self.schedule


class SyncTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db = Database(Path(self._tmp.name) / "test.db")
        self.db.init_schema()

        self.users = UserRepository(self.db)
        self.bot = self.users.create("sync-bot", role=Role.SYNC)
        self.courses = CourseRepository(self.db)
        self.values = CourseValueRepository(self.db)
        self.templates = TemplateRepository(self.db)
        self.events = SyncEventRepository(self.db)
        self.cache = SessionCache(MemoryBackend())
        self.portal = FakePortal()

        self.service = SyncService(
            cache=self.cache,
            portal=self.portal,
            courses=self.courses,
            values=self.values,
            templates=self.templates,
            audit=SyncAuditLog(self.events, self.users, AuthService()),
            session_prefix="ASP.NET_SessionId=",
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()


class TestSaveSessionId(SyncTestCase):
    def test_valid_token_is_cached(self) -> None:
        self.service.save_session_id(TOKEN)
        self.assertEqual(self.cache.get(), TOKEN)

    def test_token_without_prefix_is_rejected(self) -> None:
        with self.assertRaises(InvalidSessionError):
            self.service.save_session_id("PHPSESSID=abc")
        self.assertIsNone(self.cache.get())


class TestSyncCatalog(SyncTestCase):
    def test_creates_all_courses_on_empty_catalog(self) -> None:
        self.cache.set(TOKEN)
        self.portal.catalog = catalog_page(
            [("CS1013401", "Intro", "4"), ("MA0030001", "Calculus", "3"), ("PH0010001", "Physics", "2")]
        )

        result = self.service.sync_catalog()

        self.assertEqual(result.created, 3)
        self.assertEqual(self.courses.list_codes(), {"CS1013401", "MA0030001", "PH0010001"})
        events = self.events.list_recent()
        self.assertEqual(len(events), 1)
        self.assertTrue(events[0].status)
        self.assertIsNone(events[0].fail_reason)
        self.assertEqual(events[0].sync_event, SyncEventKind.FROM_CATALOG)
        self.assertEqual(events[0].user_id, self.bot.id)

    def test_existing_code_stops_the_run(self) -> None:
        self.cache.set(TOKEN)
        self.courses.create("MA0030001", "Calculus", 3)
        self.portal.catalog = catalog_page(
            [("CS1013401", "Intro", "4"), ("MA0030001", "Calculus", "3"), ("PH0010001", "Physics", "2")]
        )

        with self.assertRaises(DuplicateCourseError) as ctx:
            self.service.sync_catalog()

        self.assertEqual(ctx.exception.course_code, "MA0030001")
        self.assertEqual(self.courses.list_codes(), {"CS1013401", "MA0030001"})
        events = self.events.list_recent()
        self.assertEqual(len(events), 1)
        self.assertFalse(events[0].status)
        self.assertEqual(events[0].fail_reason, FailReason.EXISTED_COURSE)

    def test_non_numeric_credits_reject_only_that_row(self) -> None:
        self.cache.set(TOKEN)
        self.portal.catalog = catalog_page([("CS1013401", "Intro", "four"), ("MA0030001", "Calculus", "3")])

        result = self.service.sync_catalog()

        self.assertEqual(result.rejected, ["CS1013401"])
        self.assertEqual(self.courses.list_codes(), {"MA0030001"})
        self.assertTrue(result.record.status)

    def test_missing_session_is_audited_without_fetch(self) -> None:
        result = self.service.sync_catalog()

        self.assertEqual(self.portal.calls, [])
        self.assertFalse(result.record.status)
        self.assertEqual(result.record.fail_reason, FailReason.MISS_SESSION_ID)
        self.assertEqual(len(self.events.list_recent()), 1)

    def test_fetch_failure_is_audited_and_raised(self) -> None:
        self.cache.set(TOKEN)
        self.portal.error = RemoteFetchError("503")

        with self.assertRaises(RemoteFetchError):
            self.service.sync_catalog()

        events = self.events.list_recent()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].fail_reason, FailReason.REMOTE_FETCH_FAILED)
        self.assertEqual(self.courses.list_all(), [])

    def test_database_error_is_audited_and_raised(self) -> None:
        self.cache.set(TOKEN)
        self.portal.catalog = catalog_page([("CS1013401", "Intro", "4")])

        with mock.patch.object(
            self.courses, "create", side_effect=sqlite3.OperationalError("database is locked")
        ):
            with self.assertRaises(sqlite3.OperationalError):
                self.service.sync_catalog()

        events = self.events.list_recent()
        self.assertEqual(len(events), 1)
        self.assertFalse(events[0].status)
        self.assertEqual(events[0].fail_reason, FailReason.UNEXPECTED_ERROR)
        self.assertEqual(events[0].user_id, self.bot.id)


class TestSyncSchedule(SyncTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.intro = self.courses.create("CS1013401", "Intro", 4)
        self.calc = self.courses.create("MA0030001", "Calculus", 3)
        self.portal.schedule = schedule_page(
            [
                ("CS101340.02 - Nhóm 2", "Thứ 2", "B1.22", "1", "3", "Nguyen Van A"),
                ("MA003000 - Tổ thực hành 1", "Thứ 4", "C2.01", "6", "2", "Tran Thi B"),
                ("EN999999.01", "Thứ 5", "A1", "1", "3", "Le C"),
            ]
        )

    def test_missing_session_creates_nothing(self) -> None:
        result = self.service.sync_schedule(7)

        self.assertEqual(self.portal.calls, [])
        self.assertEqual(result.created, 0)
        self.assertIsNone(result.payload)
        events = self.events.list_recent()
        self.assertEqual(len(events), 1)
        self.assertFalse(events[0].status)
        self.assertEqual(events[0].fail_reason, FailReason.MISS_SESSION_ID)

    def test_rerun_is_idempotent(self) -> None:
        self.cache.set(TOKEN)

        first = self.service.sync_schedule(7)
        second = self.service.sync_schedule(7)

        self.assertEqual(first.created, 2)
        self.assertTrue(first.record.status)
        self.assertEqual(second.created, 0)
        self.assertEqual(second.skipped, 2)
        self.assertFalse(second.record.status)
        self.assertEqual(second.record.fail_reason, FailReason.EXISTED_COURSE_VALUE)
        self.assertEqual(len(self.events.list_recent()), 2)

    def test_returns_fetched_page_and_drops_unmatched_cells(self) -> None:
        self.cache.set(TOKEN)

        result = self.service.sync_schedule(7)

        self.assertEqual(result.payload, self.portal.schedule)
        self.assertEqual(self.portal.calls, [("schedule", TOKEN, 7)])
        template = self.templates.find_main_for_user(self.bot.id)
        assert template is not None
        stored = self.values.list_for_template(template.id)
        self.assertEqual({v.course_id for v in stored}, {self.intro.id, self.calc.id})

        intro_value = next(v for v in stored if v.course_id == self.intro.id)
        self.assertEqual(intro_value.lecture, "Nguyen Van A")
        self.assertEqual(intro_value.location, "B1.22")
        self.assertEqual(intro_value.group_number, 2)
        self.assertIsNone(intro_value.lab_group_number)
        self.assertEqual(intro_value.start_period, 1)
        self.assertEqual(intro_value.period_count, 3)

    def test_success_marks_template_synced(self) -> None:
        self.cache.set(TOKEN)
        template = self.templates.create(None)

        self.service.sync_schedule(7, template_id=template.id)

        updated = self.templates.find(template.id)
        assert updated is not None
        self.assertTrue(updated.is_sync)
        self.assertIsNotNone(updated.last_sync_time)

    def test_unknown_template_is_rejected_before_the_run(self) -> None:
        self.cache.set(TOKEN)
        with self.assertRaises(NotFoundError):
            self.service.sync_schedule(7, template_id=999)
        self.assertEqual(self.events.list_recent(), [])
        self.assertEqual(self.portal.calls, [])

    def test_fetch_failure_is_audited_and_raised(self) -> None:
        self.cache.set(TOKEN)
        self.portal.error = RemoteFetchError("timeout")

        with self.assertRaises(RemoteFetchError):
            self.service.sync_schedule(7)

        events = self.events.list_recent()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].fail_reason, FailReason.REMOTE_FETCH_FAILED)

    def test_database_error_is_audited_and_raised(self) -> None:
        self.cache.set(TOKEN)

        with mock.patch.object(self.values, "exists", side_effect=sqlite3.OperationalError("disk I/O error")):
            with self.assertRaises(sqlite3.OperationalError):
                self.service.sync_schedule(7)

        events = self.events.list_recent()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].fail_reason, FailReason.UNEXPECTED_ERROR)

    def test_local_env_without_user_is_audited_and_raised(self) -> None:
        self.cache.set(TOKEN)
        self.service.audit = SyncAuditLog(self.events, self.users, AuthService(None), local_sync=True)

        with self.assertRaises(ValidationError):
            self.service.sync_schedule(7)

        events = self.events.list_recent()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].fail_reason, FailReason.UNEXPECTED_ERROR)
        self.assertIsNone(events[0].user_id)
        self.assertEqual(self.portal.calls, [])


if __name__ == "__main__":
    unittest.main()
