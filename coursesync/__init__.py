"""
coursesync: keeps a local course catalog and schedule templates in sync
with the university portal.
"""

from pathlib import Path

__version__ = (Path(__file__).resolve().parent / "VERSION").read_text(encoding="utf-8").strip()
