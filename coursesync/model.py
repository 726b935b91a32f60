"""
Central data model definitions used across the project.

Persisted rows (Course, CoursePosition, CourseValue, Template, User,
Deadline, SyncAuditRecord) and the ephemeral records produced by page
parsing (CatalogEntry, ScheduleCell) live here so that scraping, storage
and the sync engine share the same field names.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


class SyncEventKind(str, enum.Enum):
    FROM_CATALOG = "FROM_CATALOG"
    FROM_SCHEDULE = "FROM_SCHEDULE"


class FailReason(str, enum.Enum):
    MISS_SESSION_ID = "MISS_SESSION_ID"
    EXISTED_COURSE = "EXISTED_COURSE"
    EXISTED_COURSE_VALUE = "EXISTED_COURSE_VALUE"
    REMOTE_FETCH_FAILED = "REMOTE_FETCH_FAILED"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


class Role(str, enum.Enum):
    STUDENT = "student"
    SYNC = "sync"


# ---------------------------------------------------------------------------
# Persisted rows
# ---------------------------------------------------------------------------


@dataclass
class User:
    id: int
    student_id: str
    name: str
    email: str
    role: Role = Role.STUDENT


@dataclass
class Course:
    """
    One catalog course. Identity key is course_code (assigned by the portal).
    """

    id: int
    course_code: str
    name: str
    credits: int
    is_new: bool = True


@dataclass
class Template:
    """
    A student's schedule template ("scheduler template").
    """

    id: int
    user_id: Optional[int]
    is_sync: bool = False
    is_main: bool = False
    last_sync_time: Optional[datetime] = None


@dataclass
class CoursePosition:
    """Where a course sits in a template's weekly grid."""

    id: int
    course_id: int
    template_id: int
    days: Optional[int]
    periods: Optional[int]
    start_period: Optional[int]


@dataclass
class CourseValue:
    """
    Lecturer/location of a course inside a template.

    Uniqueness: (course_id, template_id, lecture, location).
    The remaining fields are only filled by schedule sync.
    """

    id: int
    course_id: int
    template_id: int
    lecture: str
    location: str
    day_of_week: Optional[str] = None
    start_period: Optional[int] = None
    period_count: Optional[int] = None
    group_number: Optional[int] = None
    lab_group_number: Optional[int] = None


@dataclass
class Deadline:
    id: int
    title: str
    due_at: Optional[datetime]
    is_active: bool
    course_value_id: Optional[int] = None


@dataclass
class SyncAuditRecord:
    """
    One row per sync run. Never mutated after it is appended.

    Invariant: fail_reason is not None  <=>  status is False.
    """

    sync_event: SyncEventKind
    start_time: datetime
    finish_time: Optional[datetime]
    status: bool
    fail_reason: Optional[FailReason]
    user_id: Optional[int]
    id: Optional[int] = None


# ---------------------------------------------------------------------------
# Parsed page records (not persisted directly)
# ---------------------------------------------------------------------------


@dataclass
class CatalogEntry:
    """
    One row of the catalog (roadmap) page.

    credits is None when the credit cell did not hold a number; the
    course repository rejects such entries instead of storing zero.
    """

    course_code: str
    name: str
    credits: Optional[int]
    raw_credits: str = ""


@dataclass
class ScheduleCell:
    """
    One timetable grid cell, extracted from its tooltip parameters.
    """

    raw_course_token: str
    day_of_week: str
    start_period: Optional[int]
    period_count: Optional[int]
    location: str
    lecturer: str
    group_number: Optional[int] = None
    lab_group_number: Optional[int] = None


@dataclass
class TemplateCourseEntry:
    """
    One course submitted by a student when editing their template.
    """

    course_code: str
    course_name: str
    credits: int
    day: Optional[int]
    start_period: Optional[int]
    periods_count: Optional[int]
    location: str
    lecturer: str
    is_active: bool = True
    is_deleted: bool = False


@dataclass
class SyncResult:
    """
    Outcome of one sync run as returned to the caller.
    """

    record: SyncAuditRecord
    created: int = 0
    skipped: int = 0
    rejected: list[str] = field(default_factory=list)
    payload: Optional[str] = None
