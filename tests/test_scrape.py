import unittest
from unittest import mock

import requests

from coursesync.errors import RemoteFetchError
from coursesync.scrape import PortalClient


def _response(text: str = "<html></html>", status: int = 200) -> mock.MagicMock:
    resp = mock.MagicMock()
    resp.text = text
    resp.status_code = status
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    return resp


class TestPortalClient(unittest.TestCase):
    def setUp(self) -> None:
        self.session = mock.MagicMock()
        self.client = PortalClient("https://portal.test/", timeout=5, verify_ssl=True, session=self.session)

    def test_catalog_page_sends_cookie_and_view(self) -> None:
        self.session.get.return_value = _response("<p>catalog</p>")

        html = self.client.fetch_catalog_page("ASP.NET_SessionId=abc")

        self.assertEqual(html, "<p>catalog</p>")
        args, kwargs = self.session.get.call_args
        self.assertEqual(args[0], "https://portal.test/Default.aspx")
        self.assertEqual(kwargs["params"], {"page": "ctdtkhoisv"})
        self.assertEqual(kwargs["headers"], {"Cookie": "ASP.NET_SessionId=abc"})
        self.assertEqual(kwargs["timeout"], 5)

    def test_schedule_page_passes_id(self) -> None:
        self.session.get.return_value = _response()

        self.client.fetch_schedule_page("ASP.NET_SessionId=abc", 42)

        _, kwargs = self.session.get.call_args
        self.assertEqual(kwargs["params"], {"page": "thoikhoabieu", "sta": "0", "id": "42"})

    def test_non_success_status_raises(self) -> None:
        self.session.get.return_value = _response(status=500)
        with self.assertRaises(RemoteFetchError):
            self.client.fetch_catalog_page("ASP.NET_SessionId=abc")

    def test_network_error_raises(self) -> None:
        self.session.get.side_effect = requests.ConnectionError("unreachable")
        with self.assertRaises(RemoteFetchError):
            self.client.fetch_schedule_page("ASP.NET_SessionId=abc", 1)


if __name__ == "__main__":
    unittest.main()
