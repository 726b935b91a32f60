from __future__ import annotations

import logging
from typing import Optional

import requests
import urllib3

from coursesync.config import Settings
from coursesync.errors import RemoteFetchError

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Portal pages
# ---------------------------------------------------------------------------

PORTAL_PAGE = "/Default.aspx"
CATALOG_VIEW = "ctdtkhoisv"
SCHEDULE_VIEW = "thoikhoabieu"


class PortalClient:
    """
    Fetches raw portal pages using a captured session cookie.

    The portal does not accept API logins, so the cookie string copied from
    a browser session is sent verbatim as the Cookie header.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30,
        verify_ssl: bool = True,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self.session = session or requests.Session()

        if not verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PortalClient":
        return cls(
            settings.portal_base_url,
            timeout=settings.portal_timeout,
            verify_ssl=settings.portal_verify_ssl,
        )

    def _get(self, params: dict[str, str], session_token: str) -> str:
        url = self.base_url + PORTAL_PAGE
        try:
            resp = self.session.get(
                url,
                params=params,
                headers={"Cookie": session_token},
                timeout=self.timeout,
                verify=self.verify_ssl,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            log.error("Fetching %s %s failed: %s", url, params, e)
            raise RemoteFetchError(f"Could not fetch portal page {params.get('page')}: {e}") from e

        return resp.text

    def fetch_catalog_page(self, session_token: str) -> str:
        log.debug("Fetching catalog page")
        return self._get({"page": CATALOG_VIEW}, session_token)

    def fetch_schedule_page(self, session_token: str, schedule_id: int) -> str:
        log.debug("Fetching schedule page id=%s", schedule_id)
        return self._get({"page": SCHEDULE_VIEW, "sta": "0", "id": str(schedule_id)}, session_token)
