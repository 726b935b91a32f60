"""
Sync engine: reconciles portal pages against the local catalog.

Two runs are supported:

- sync_catalog():   catalog (roadmap) page  -> courses
- sync_schedule():  timetable page          -> course values of a template

Every run appends exactly one audit record. Outcomes:

    missing session          -> status False, MISS_SESSION_ID   (no exception)
    portal fetch failed      -> status False, REMOTE_FETCH_FAILED (RemoteFetchError re-raised)
    catalog code exists      -> status False, EXISTED_COURSE    (DuplicateCourseError raised)
    nothing new on schedule  -> status False, EXISTED_COURSE_VALUE
    any other error          -> status False, UNEXPECTED_ERROR  (re-raised)
    otherwise                -> status True

Records written before a failure stay written; there is no rollback across
records.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from coursesync import codes
from coursesync.audit import SyncAuditLog
from coursesync.cache import SessionCache
from coursesync.errors import (
    DuplicateCourseError,
    InvalidSessionError,
    NotFoundError,
    RemoteFetchError,
    ValidationError,
)
from coursesync.model import FailReason, SyncAuditRecord, SyncEventKind, SyncResult, Template
from coursesync.parse import parse_catalog_page, parse_schedule_page
from coursesync.scrape import PortalClient
from coursesync.storage import CourseRepository, CourseValueRepository, TemplateRepository

log = logging.getLogger(__name__)


class SyncService:
    def __init__(
        self,
        cache: SessionCache,
        portal: PortalClient,
        courses: CourseRepository,
        values: CourseValueRepository,
        templates: TemplateRepository,
        audit: SyncAuditLog,
        session_prefix: str,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.cache = cache
        self.portal = portal
        self.courses = courses
        self.values = values
        self.templates = templates
        self.audit = audit
        self.session_prefix = session_prefix
        self.now = now

    # -----------------------------------------------------------------------
    # Session
    # -----------------------------------------------------------------------

    def save_session_id(self, token: str) -> None:
        """
        Store a session cookie captured from the portal.

        Raises InvalidSessionError if it lacks the required prefix.
        """
        log.debug("[SYNC DATA] Save SessionId from web")
        token = (token or "").strip()
        if not token.startswith(self.session_prefix):
            raise InvalidSessionError(f"Session ID must start with {self.session_prefix!r}")
        self.cache.set(token)

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _finish(
        self,
        kind: SyncEventKind,
        started: datetime,
        reason: Optional[FailReason] = None,
        require_user: bool = True,
    ) -> SyncAuditRecord:
        record = SyncAuditRecord(
            sync_event=kind,
            start_time=started,
            finish_time=self.now(),
            status=reason is None,
            fail_reason=reason,
            user_id=None,
        )
        return self.audit.append(record, require_user=require_user)

    def _record_unexpected_failure(self, kind: SyncEventKind, started: datetime, tag: str) -> None:
        # Called from an except block; the caller re-raises the original error.
        log.exception("%s Sync run failed", tag)
        try:
            self._finish(kind, started, FailReason.UNEXPECTED_ERROR, require_user=False)
        except Exception:
            log.exception("%s Could not record the failed sync run", tag)

    def _target_template(self) -> Template:
        # Schedule sync without an explicit template writes into the acting
        # user's main template, created on first use.
        user_id = self.audit.acting_user_id()
        template = self.templates.find_main_for_user(user_id)
        if template is None:
            template = self.templates.create(user_id, is_sync=True, is_main=True)
            log.debug("[SYNC DATA FROM SCHEDULE] Created main template %s", template.id)
        return template

    # -----------------------------------------------------------------------
    # Catalog
    # -----------------------------------------------------------------------

    def sync_catalog(self) -> SyncResult:
        """
        Create a course for every catalog row.

        The first row whose code already exists stops the run: rows before
        it stay created, rows after it are not looked at.
        """
        started = self.now()
        kind = SyncEventKind.FROM_CATALOG
        try:
            return self._run_catalog(kind, started)
        except (RemoteFetchError, DuplicateCourseError):
            raise
        except Exception:
            self._record_unexpected_failure(kind, started, "[SYNC DATA FROM ROAD MAP]")
            raise

    def _run_catalog(self, kind: SyncEventKind, started: datetime) -> SyncResult:
        token = self.cache.get()
        log.debug("[SYNC DATA FROM ROAD MAP] check session key")
        if not token:
            log.debug("[SYNC DATA FROM ROAD MAP] missing session id")
            return SyncResult(record=self._finish(kind, started, FailReason.MISS_SESSION_ID))

        known_codes = self.courses.list_codes()

        try:
            html = self.portal.fetch_catalog_page(token)
        except RemoteFetchError:
            self._finish(kind, started, FailReason.REMOTE_FETCH_FAILED)
            raise

        created = 0
        rejected: list[str] = []
        for entry in parse_catalog_page(html):
            try:
                if entry.course_code in known_codes:
                    raise DuplicateCourseError(entry.course_code)
                self.courses.create(entry.course_code, entry.name, entry.credits, is_new=True)
            except DuplicateCourseError:
                log.debug("[SYNC DATA FROM ROAD MAP] Course %s is existed", entry.course_code)
                self._finish(kind, started, FailReason.EXISTED_COURSE)
                raise
            except ValidationError as e:
                log.warning("[SYNC DATA FROM ROAD MAP] Rejected course %r: %s", entry.course_code, e)
                rejected.append(entry.course_code)
                continue

            known_codes.add(entry.course_code)
            created += 1
            log.debug("[SYNC DATA FROM ROAD MAP] Successfully created course: %s", entry.course_code)

        log.debug("[SYNC DATA FROM ROAD MAP] Create sync event")
        record = self._finish(kind, started)
        return SyncResult(record=record, created=created, rejected=rejected)

    # -----------------------------------------------------------------------
    # Schedule
    # -----------------------------------------------------------------------

    def sync_schedule(self, schedule_id: int, template_id: Optional[int] = None) -> SyncResult:
        """
        Create a course value for every timetable cell that matches a known
        course and is not stored yet. Returns the fetched page in `payload`.
        """
        template: Optional[Template] = None
        if template_id is not None:
            template = self.templates.find(template_id)
            if template is None:
                raise NotFoundError(f"Template {template_id} not found")

        started = self.now()
        kind = SyncEventKind.FROM_SCHEDULE
        try:
            return self._run_schedule(kind, started, schedule_id, template)
        except RemoteFetchError:
            raise
        except Exception:
            self._record_unexpected_failure(kind, started, "[SYNC DATA FROM SCHEDULE]")
            raise

    def _run_schedule(
        self,
        kind: SyncEventKind,
        started: datetime,
        schedule_id: int,
        template: Optional[Template],
    ) -> SyncResult:
        token = self.cache.get()
        log.debug("[SYNC DATA FROM SCHEDULE] Check session key")
        if not token:
            log.debug("[SYNC DATA FROM SCHEDULE] missing session id")
            return SyncResult(record=self._finish(kind, started, FailReason.MISS_SESSION_ID))

        if template is None:
            template = self._target_template()

        index = codes.build_index(self.courses.list_all())

        try:
            html = self.portal.fetch_schedule_page(token, schedule_id)
        except RemoteFetchError:
            self._finish(kind, started, FailReason.REMOTE_FETCH_FAILED)
            raise

        matched = []
        for cell in parse_schedule_page(html):
            course = codes.match(index, cell.raw_course_token)
            if course is None:
                log.debug(
                    "[SYNC DATA FROM SCHEDULE] No match found for extracted course code: %r",
                    codes.normalize(cell.raw_course_token),
                )
                continue
            matched.append((course, cell))

        created = 0
        skipped = 0
        rejected: list[str] = []
        log.debug("[SYNC DATA FROM SCHEDULE] Check existed course value")
        for course, cell in matched:
            if self.values.exists(course.id, template.id, cell.lecturer, cell.location):
                log.debug("[SYNC DATA FROM SCHEDULE] Existed course value for %s", course.course_code)
                skipped += 1
                continue
            try:
                self.values.create(
                    course.id,
                    template.id,
                    cell.lecturer,
                    cell.location,
                    day_of_week=cell.day_of_week,
                    start_period=cell.start_period,
                    period_count=cell.period_count,
                    group_number=cell.group_number,
                    lab_group_number=cell.lab_group_number,
                )
            except ValidationError as e:
                log.warning("[SYNC DATA FROM SCHEDULE] Rejected cell %r: %s", cell.raw_course_token, e)
                rejected.append(cell.raw_course_token)
                continue
            created += 1

        if created:
            self.templates.mark_synced(template.id, self.now())
            record = self._finish(kind, started)
        else:
            record = self._finish(kind, started, FailReason.EXISTED_COURSE_VALUE)
        log.debug("[SYNC DATA FROM SCHEDULE] Create sync event (created=%d skipped=%d)", created, skipped)

        return SyncResult(record=record, created=created, skipped=skipped, rejected=rejected, payload=html)
