"""
Course code normalization and matching.

The portal writes course codes in two shapes:

- catalog rows hold the plain catalog code, padded/suffixed after the
  first 8 characters  ->  base code = first 8 chars, trimmed, uppercased
- timetable tooltips hold a descriptor like "CS101340.02 - Nhóm 2"
  ->  base code = leading [A-Z0-9] run of the uppercased, trimmed token

Both rules must produce the same key for the same course, which is what
the schedule sync joins on. A token without an alphanumeric prefix
normalizes to "" and never matches.
"""

from __future__ import annotations

import re
from typing import Iterable

from coursesync.model import Course

CATALOG_CODE_LENGTH = 8

_ALNUM_PREFIX = re.compile(r"^[A-Z0-9]+")


def normalize(raw: str) -> str:
    """
    Canonical code of a scraped token: leading alphanumeric run, uppercased.

    Idempotent: normalize(normalize(x)) == normalize(x).
    """
    token = (raw or "").strip().upper().replace("'", "")
    m = _ALNUM_PREFIX.match(token)
    return m.group(0) if m else ""


def catalog_base_code(course_code: str) -> str:
    """
    Canonical code of a catalog course: first 8 chars, trimmed, uppercased.
    """
    return (course_code or "")[:CATALOG_CODE_LENGTH].strip().upper()


def build_index(courses: Iterable[Course]) -> dict[str, Course]:
    """
    Map canonical code -> Course. Built once per sync run.

    Later courses win when two catalog codes share a base code.
    """
    index: dict[str, Course] = {}
    for course in courses:
        base = catalog_base_code(course.course_code)
        if base:
            index[base] = course
    return index


def match(index: dict[str, Course], raw_token: str) -> Course | None:
    code = normalize(raw_token)
    if not code:
        return None
    return index.get(code)
