"""
Parsing (portal HTML -> structured records).

- Catalog page: every download link ([id*="lkDownload"]) is one course.
  Its own text is the course name, the code sits in the <td> before it
  and the credit count in the <td> after it.
- Schedule page: every timetable cell carries
      onmouseover="ddrivetip('..','..','<descriptor>','<day>', ...)"
  with 9 positional parameters (indices 0-8).

Important rules:
- credits that are not a number stay None (the course repository rejects them)
- start period / period count that are not a number become None
- group and lab group are optional
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from bs4 import BeautifulSoup, Tag

from coursesync.errors import MalformedTooltipError
from coursesync.model import CatalogEntry, ScheduleCell

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

TOOLTIP_PARAM_COUNT = 9

_TOOLTIP_CALL = re.compile(r"ddrivetip\((.+)\)", re.DOTALL)
_INT_PREFIX = re.compile(r"^\s*([+-]?\d+)")

# The portal labels sections in Vietnamese; the English forms are accepted too.
GROUP_PATTERN = re.compile(r"(?:nhóm|group)\s+(\d+)", re.IGNORECASE)
LAB_GROUP_PATTERN = re.compile(r"(?:tổ thực hành|lab-section)\s+(\d+)", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_int_prefix(value: str) -> Optional[int]:
    """
    Parse the leading integer of a string ("3", " 12abc" -> 12).
    Returns None if there is none.
    """
    m = _INT_PREFIX.match(value or "")
    return int(m.group(1)) if m else None


def parse_credits(value: str) -> Optional[int]:
    """
    Parse a credit cell. The whole (trimmed) text must be a number.

    "3" -> 3, "3.0" -> 3, "", "n/a", "2.5" -> None
    """
    text = (value or "").strip()
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    if not number.is_integer():
        return None
    return int(number)


def _cell_label(td: Optional[Tag]) -> str:
    # Joined text of the <span> labels inside a table cell
    if td is None:
        return ""
    return "".join(span.get_text() for span in td.find_all("span")).strip()


# ---------------------------------------------------------------------------
# Catalog page
# ---------------------------------------------------------------------------


def parse_catalog_page(html: str) -> List[CatalogEntry]:
    """
    Return catalog entries in document order.
    """
    soup = BeautifulSoup(html, "html.parser")

    entries: List[CatalogEntry] = []
    for link in soup.select('[id*="lkDownload"]'):
        name = link.get_text().strip()

        td = link.find_parent("td")
        if td is None:
            log.debug("Download link %r is not inside a table cell, skipping", link.get("id"))
            continue

        course_code = _cell_label(td.find_previous_sibling("td"))
        raw_credits = _cell_label(td.find_next_sibling("td"))

        entries.append(
            CatalogEntry(
                course_code=course_code,
                name=name,
                credits=parse_credits(raw_credits),
                raw_credits=raw_credits,
            )
        )

    return entries


# ---------------------------------------------------------------------------
# Schedule page
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TooltipParams:
    """
    The 9 positional parameters of a ddrivetip(...) call, by meaning.
    """

    descriptor: str
    day_of_week: str
    location: str
    start_period: str
    period_count: str
    lecturer: str

    @classmethod
    def from_attribute(cls, attr: str) -> "TooltipParams":
        """
        Parse an onmouseover attribute value.

        Raises MalformedTooltipError if the call or its parameter count is wrong.
        """
        m = _TOOLTIP_CALL.search(attr or "")
        if not m:
            raise MalformedTooltipError(f"Not a ddrivetip call: {attr!r}")

        params = [p.replace("'", "").strip() for p in m.group(1).split(",")]
        if len(params) < TOOLTIP_PARAM_COUNT:
            raise MalformedTooltipError(
                f"Expected {TOOLTIP_PARAM_COUNT} tooltip parameters, got {len(params)}: {attr!r}"
            )

        return cls(
            descriptor=params[2],
            day_of_week=params[3],
            location=params[5],
            start_period=params[6],
            period_count=params[7],
            lecturer=params[8],
        )

    def to_cell(self) -> ScheduleCell:
        group = GROUP_PATTERN.search(self.descriptor)
        lab_group = LAB_GROUP_PATTERN.search(self.descriptor)

        return ScheduleCell(
            raw_course_token=self.descriptor,
            day_of_week=self.day_of_week,
            start_period=parse_int_prefix(self.start_period),
            period_count=parse_int_prefix(self.period_count),
            location=self.location,
            lecturer=self.lecturer,
            group_number=int(group.group(1)) if group else None,
            lab_group_number=int(lab_group.group(1)) if lab_group else None,
        )


def parse_schedule_page(html: str) -> List[ScheduleCell]:
    """
    Return one ScheduleCell per tooltip-carrying timetable cell.

    Cells with a malformed parameter list are logged and skipped.
    """
    soup = BeautifulSoup(html, "html.parser")

    cells: List[ScheduleCell] = []
    for td in soup.select('td[onmouseover^="ddrivetip"]'):
        attr = td.get("onmouseover") or ""
        try:
            params = TooltipParams.from_attribute(attr)
        except MalformedTooltipError as e:
            log.warning("Skipping timetable cell: %s", e)
            continue
        cells.append(params.to_cell())

    return cells
