"""
Tests for template reconciliation (student-submitted course lists).

A triple = course + course position + course value. Each triple is
written or removed as one unit.
"""

import tempfile
import unittest
from pathlib import Path

from coursesync.errors import ValidationError
from coursesync.model import TemplateCourseEntry
from coursesync.storage import Database
from coursesync.templates import TemplateService


def entry(code: str, deleted: bool = False, lecturer: str = "Dr. A", name: str = "Intro") -> TemplateCourseEntry:
    return TemplateCourseEntry(
        course_code=code,
        course_name=name,
        credits=4,
        day=2,
        start_period=1,
        periods_count=3,
        location="B1.22",
        lecturer=lecturer,
        is_deleted=deleted,
    )


class TestTemplateService(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db = Database(Path(self._tmp.name) / "test.db")
        self.db.init_schema()
        self.service = TemplateService(self.db)
        self.student = self.service.users.create("20520001", name="An")
        self.template = self.service.create_template(self.student.id, is_main=True)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _triple(self, code: str):
        course = self.service.courses.find_by_code(code)
        if course is None:
            return None, None, None
        return (
            course,
            self.service.positions.find(course.id, self.template.id),
            self.service.values.find(course.id, self.template.id),
        )

    def test_null_template_id_only_creates_template(self) -> None:
        created = self.service.create_schedule("20520001", None, [entry("CS1013401")])

        assert created is not None
        self.assertNotEqual(created.id, self.template.id)
        self.assertEqual(created.user_id, self.student.id)
        self.assertIsNone(self.service.courses.find_by_code("CS1013401"))

    def test_unknown_template_is_a_no_op(self) -> None:
        self.assertIsNone(self.service.create_schedule("20520001", 999, [entry("CS1013401")]))
        self.assertEqual(self.service.courses.list_all(), [])

    def test_new_course_creates_triple(self) -> None:
        self.service.create_schedule("20520001", self.template.id, [entry("CS1013401")])

        course, position, value = self._triple("CS1013401")
        self.assertIsNotNone(course)
        assert position is not None and value is not None
        self.assertEqual((position.days, position.start_period, position.periods), (2, 1, 3))
        self.assertEqual((value.lecture, value.location), ("Dr. A", "B1.22"))

    def test_existing_course_is_updated_in_place(self) -> None:
        self.service.create_schedule("20520001", self.template.id, [entry("CS1013401")])
        self.service.create_schedule(
            "20520001", self.template.id, [entry("CS1013401", lecturer="Dr. B", name="Intro to CS")]
        )

        course, _, value = self._triple("CS1013401")
        assert course is not None and value is not None
        self.assertEqual(course.name, "Intro to CS")
        self.assertEqual(value.lecture, "Dr. B")
        self.assertEqual(len(self.service.values.list_for_template(self.template.id)), 1)

    def test_catalog_course_gets_placed_in_template(self) -> None:
        self.service.courses.create("CS1013401", "Intro", 4)

        self.service.create_schedule("20520001", self.template.id, [entry("CS1013401")])

        _, position, value = self._triple("CS1013401")
        self.assertIsNotNone(position)
        self.assertIsNotNone(value)

    def test_only_flagged_entries_are_deleted(self) -> None:
        self.service.create_schedule(
            "20520001", self.template.id, [entry("CS1013401"), entry("MA0030001", deleted=True)]
        )

        self.assertIsNotNone(self._triple("CS1013401")[0])
        self.assertEqual(self._triple("MA0030001"), (None, None, None))

    def test_all_flagged_deletes_every_triple(self) -> None:
        self.service.create_schedule(
            "20520001",
            self.template.id,
            [entry("CS1013401", deleted=True), entry("MA0030001", deleted=True)],
        )

        self.assertEqual(self.service.courses.list_all(), [])
        self.assertEqual(self.service.values.list_for_template(self.template.id), [])

    def test_failed_value_write_leaves_no_partial_triple(self) -> None:
        with self.assertRaises(ValidationError):
            self.service.create_schedule("20520001", self.template.id, [entry("CS1013401", lecturer="")])

        self.assertIsNone(self.service.courses.find_by_code("CS1013401"))
        self.assertEqual(self.service.templates.get_detail(self.template.id)[0]["position_id"], None)

    def test_get_template_by_student_id(self) -> None:
        found = self.service.get_template_by_student_id("20520001")
        assert found is not None
        self.assertEqual(found.id, self.template.id)


if __name__ == "__main__":
    unittest.main()
