"""
Schedule templates edited by students.

A course inside a template is a "triple":

    course            (catalog row, shared across templates)
    course position   (day / start period / period count in this template)
    course value      (lecturer / location in this template)

The three rows of one triple are always written or deleted inside a
single transaction, so a failure never leaves an orphaned position or value.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Any, Iterable, Optional

from coursesync.errors import NotFoundError
from coursesync.model import Template, TemplateCourseEntry
from coursesync.storage import (
    CoursePositionRepository,
    CourseRepository,
    CourseValueRepository,
    Database,
    TemplateRepository,
    UserRepository,
)

log = logging.getLogger(__name__)


class TemplateService:
    def __init__(self, db: Database) -> None:
        self.db = db
        self.users = UserRepository(db)
        self.templates = TemplateRepository(db)
        self.courses = CourseRepository(db)
        self.positions = CoursePositionRepository(db)
        self.values = CourseValueRepository(db)

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def get_template(self, template_id: int) -> list[dict[str, Any]]:
        log.debug("[SCHEDULE TEMPLATE] Get template's information")
        return self.templates.get_detail(template_id)

    def get_template_by_student_id(self, student_id: str) -> Optional[Template]:
        return self.templates.find_main_by_student_id(student_id)

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def create_template(
        self,
        user_id: Optional[int],
        is_sync: bool = False,
        is_main: bool = False,
        last_sync_time: Optional[datetime] = None,
    ) -> Template:
        log.debug("[CREATE TEMPLATE] create template")
        template = self.templates.create(user_id, is_sync=is_sync, is_main=is_main, last_sync_time=last_sync_time)
        log.debug("[CREATE TEMPLATE] save template %s successfully", template.id)
        return template

    def create_schedule(
        self,
        student_id: str,
        template_id: Optional[int],
        entries: Iterable[TemplateCourseEntry],
    ) -> Optional[Template]:
        """
        Apply a student's submitted course list to a template.

        - template_id None: only a new (empty) template is created.
        - unknown template_id: nothing happens, returns None.
        - otherwise every entry is created or updated, then the triples of
          deleted entries are removed (all of them if every entry is deleted).
        """
        student = self.users.find_by_student_id(student_id)

        if template_id is None:
            return self.create_template(student.id if student else None)

        template = self.templates.find(template_id)
        if template is None:
            log.debug("[SCHEDULE TEMPLATE] Template %s not found, nothing to do", template_id)
            return None

        entries = list(entries)
        for entry in entries:
            self._save_triple(template, entry)

        if all(entry.is_deleted for entry in entries):
            to_delete = entries
        else:
            to_delete = [entry for entry in entries if entry.is_deleted]

        for entry in to_delete:
            self._delete_triple(template, entry)

        return template

    def _save_triple(self, template: Template, entry: TemplateCourseEntry) -> None:
        with self.db.transaction() as conn:
            course = self.courses.find_by_code(entry.course_code, conn=conn)
            if course is None:
                course = self.courses.create(entry.course_code, entry.course_name, entry.credits, conn=conn)
                self.positions.create(
                    course.id, template.id, entry.day, entry.periods_count, entry.start_period, conn=conn
                )
                self.values.create(course.id, template.id, entry.lecturer, entry.location, conn=conn)
                log.debug("[SCHEDULE TEMPLATE] Created %s in template %s", entry.course_code, template.id)
                return

            self.courses.update(entry.course_code, entry.course_name, entry.credits, conn=conn)
            self._upsert_position(conn, course.id, template.id, entry)
            self._upsert_value(conn, course.id, template.id, entry)
            log.debug("[SCHEDULE TEMPLATE] Updated %s in template %s", entry.course_code, template.id)

    def _upsert_position(
        self, conn: sqlite3.Connection, course_id: int, template_id: int, entry: TemplateCourseEntry
    ) -> None:
        # A catalog course may not be placed in this template yet
        if self.positions.find(course_id, template_id, conn=conn) is None:
            self.positions.create(
                course_id, template_id, entry.day, entry.periods_count, entry.start_period, conn=conn
            )
        else:
            self.positions.update(
                course_id, template_id, entry.day, entry.periods_count, entry.start_period, conn=conn
            )

    def _upsert_value(
        self, conn: sqlite3.Connection, course_id: int, template_id: int, entry: TemplateCourseEntry
    ) -> None:
        if self.values.find(course_id, template_id, conn=conn) is None:
            self.values.create(course_id, template_id, entry.lecturer, entry.location, conn=conn)
        else:
            self.values.update(course_id, template_id, entry.lecturer, entry.location, conn=conn)

    def _delete_triple(self, template: Template, entry: TemplateCourseEntry) -> None:
        with self.db.transaction() as conn:
            course = self.courses.find_by_code(entry.course_code, conn=conn)
            if course is None:
                raise NotFoundError(f"Course {entry.course_code} not found")
            self.positions.delete(course.id, template.id, conn=conn)
            self.values.delete(course.id, template.id, conn=conn)
            self.courses.delete(entry.course_code, conn=conn)
        log.debug("[SCHEDULE TEMPLATE] Deleted %s from template %s", entry.course_code, template.id)
