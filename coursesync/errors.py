"""
Exception hierarchy shared by the sync engine, storage and CLI.

Only failures the caller is expected to see are modelled here.
A missing portal session is NOT an error: sync runs audit it and return.
"""

from __future__ import annotations


class CourseSyncError(Exception):
    """Base class for all coursesync errors."""


class ValidationError(CourseSyncError):
    """Input for a single record is invalid (bad credits, missing fields)."""


class InvalidSessionError(ValidationError):
    """Submitted session token does not carry the required prefix."""


class NotFoundError(CourseSyncError):
    pass


class CacheError(CourseSyncError):
    pass


class RemoteFetchError(CourseSyncError):
    """The portal could not be reached or answered with a non-2xx status."""


class MalformedTooltipError(CourseSyncError):
    pass


class DuplicateCourseError(CourseSyncError):
    """Catalog sync found a course code that already exists locally."""

    def __init__(self, course_code: str) -> None:
        super().__init__(f"Course {course_code} is existed")
        self.course_code = course_code
