from __future__ import annotations

from typing import Optional


class AuthService:
    """
    Identifies the user on whose behalf the current operation runs.

    The HTTP layer that would extract this from a token is not part of this
    package; the CLI builds one from ACTING_STUDENT_ID.
    """

    def __init__(self, student_id: Optional[str] = None) -> None:
        self._student_id = student_id.strip() if student_id else None

    def current_user_id(self) -> Optional[str]:
        return self._student_id
