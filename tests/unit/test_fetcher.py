"""Unit tests for ffcam_etl.fetcher.

HTTP is mocked with MagicMock sessions; no network access required.
"""

from __future__ import annotations

import json
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from ffcam_etl.fetcher import PaginatedFetcher, RateLimiter, _is_html_body
from ffcam_etl.shared import FetchError, SessionExpiredError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _resp(payload=None, status=200, text=None):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.text = text if text is not None else json.dumps(payload)
    return resp


def _page(page, total, rows, records=None):
    return _resp({
        "page": page,
        "total": total,
        "records": records if records is not None else total * len(rows),
        "rows": rows,
    })


def _row(idx):
    return {"id": str(idx), "cell": {"col_0": f"6900{idx:08d}"}}


def _fetcher(responses, delay=0.0):
    session = MagicMock()
    session.get.side_effect = responses
    sleeper = MagicMock()
    fetcher = PaginatedFetcher(
        session,
        "SID123",
        base_url="https://example.test/jx_jqGrid.php",
        rows_per_page=2,
        rate_limiter=RateLimiter(delay_seconds=delay, sleeper=sleeper),
    )
    return fetcher, session, sleeper


# ---------------------------------------------------------------------------
# RateLimiter
# ---------------------------------------------------------------------------

class TestRateLimiter:
    def test_default_delay(self):
        assert RateLimiter().delay_seconds == pytest.approx(0.3)

    def test_sleeps_configured_delay(self):
        sleeper = MagicMock()
        RateLimiter(delay_seconds=0.5, sleeper=sleeper).sleep()
        sleeper.assert_called_once_with(0.5)

    def test_zero_delay_does_not_sleep(self):
        sleeper = MagicMock()
        RateLimiter(delay_seconds=0.0, sleeper=sleeper).sleep()
        sleeper.assert_not_called()


# ---------------------------------------------------------------------------
# URL building
# ---------------------------------------------------------------------------

class TestBuildUrl:
    def test_query_parameters(self):
        fetcher, _, _ = _fetcher([])
        url = fetcher.build_url({"def": "adh_brevets", "page": 3})
        parsed = urlparse(url)
        q = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        assert parsed.path.endswith("jx_jqGrid.php")
        assert q["sid"] == "SID123"
        assert q["_search"] == "false"
        assert q["rows"] == "2"
        assert q["def"] == "adh_brevets"
        assert q["page"] == "3"


# ---------------------------------------------------------------------------
# fetch_page
# ---------------------------------------------------------------------------

class TestIsHtmlBody:
    @pytest.mark.parametrize("text", [
        "<!DOCTYPE html><html>", "  <html><body>login</body></html>", "<!doctype HTML>",
    ])
    def test_html(self, text):
        assert _is_html_body(text) is True

    def test_json(self):
        assert _is_html_body('{"rows": []}') is False


class TestFetchPage:
    def test_html_body_is_session_expired(self):
        fetcher, _, _ = _fetcher([_resp(text="<!DOCTYPE html><html>login</html>")])
        with pytest.raises(SessionExpiredError) as exc_info:
            fetcher.fetch_page("https://example.test")
        assert "sid" in str(exc_info.value)

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_status_is_session_expired(self, status):
        fetcher, _, _ = _fetcher([_resp(text="denied", status=status)])
        with pytest.raises(SessionExpiredError):
            fetcher.fetch_page("https://example.test")

    def test_server_error(self):
        fetcher, _, _ = _fetcher([_resp(text='{"error": 1}', status=500)])
        with pytest.raises(FetchError, match="HTTP 500"):
            fetcher.fetch_page("https://example.test")

    def test_server_error_html_page_is_not_session_expiry(self):
        fetcher, _, _ = _fetcher([_resp(text="<html>502 Bad Gateway</html>", status=502)])
        with pytest.raises(FetchError, match="HTTP 502"):
            fetcher.fetch_page("https://example.test")

    def test_invalid_json(self):
        fetcher, _, _ = _fetcher([_resp(text="not json")])
        with pytest.raises(FetchError, match="invalid JSON"):
            fetcher.fetch_page("https://example.test")

    def test_non_object_payload(self):
        fetcher, _, _ = _fetcher([_resp(text="[1, 2]")])
        with pytest.raises(FetchError):
            fetcher.fetch_page("https://example.test")

    def test_network_error(self):
        fetcher, _, _ = _fetcher([requests.ConnectionError("boom")])
        with pytest.raises(FetchError, match="network error"):
            fetcher.fetch_page("https://example.test")

    def test_passes_timeout(self):
        fetcher, session, _ = _fetcher([_page(1, 1, [])])
        fetcher.fetch_page("https://example.test")
        assert session.get.call_args.kwargs["timeout"] == fetcher.timeout


# ---------------------------------------------------------------------------
# fetch_all
# ---------------------------------------------------------------------------

class TestFetchAll:
    def test_single_page(self):
        fetcher, session, sleeper = _fetcher([_page(1, 1, [_row(1), _row(2)])])
        items = fetcher.fetch_all({"def": "x"}, lambda r: r["id"])
        assert items == ["1", "2"]
        assert session.get.call_count == 1
        sleeper.assert_not_called()

    def test_walks_all_pages_in_order(self):
        responses = [_page(p, 3, [_row(2 * p - 1), _row(2 * p)]) for p in (1, 2, 3)]
        fetcher, session, _ = _fetcher(responses)
        items = fetcher.fetch_all({"def": "x"}, lambda r: r["id"])
        assert items == ["1", "2", "3", "4", "5", "6"]
        pages = [
            parse_qs(urlparse(c.args[0]).query)["page"][0] for c in session.get.call_args_list
        ]
        assert pages == ["1", "2", "3"]

    def test_later_page_failure_is_skipped(self):
        responses = [
            _page(1, 5, [_row(1)]),
            _page(2, 5, [_row(2)]),
            _resp(text="oops", status=500),
            _page(4, 5, [_row(4)]),
            _page(5, 5, [_row(5)]),
        ]
        fetcher, session, _ = _fetcher(responses)
        items = fetcher.fetch_all({"def": "x"}, lambda r: r["id"])
        assert items == ["1", "2", "4", "5"]
        assert session.get.call_count == 5
        assert fetcher.pages_fetched == 4
        assert fetcher.pages_failed == 1

    def test_later_page_html_is_skipped_not_fatal(self):
        responses = [
            _page(1, 2, [_row(1)]),
            _resp(text="<html>login</html>"),
        ]
        fetcher, _, _ = _fetcher(responses)
        assert fetcher.fetch_all({}, lambda r: r["id"]) == ["1"]
        assert fetcher.pages_failed == 1

    def test_first_page_session_expiry_is_fatal(self):
        fetcher, session, _ = _fetcher([_resp(text="<!DOCTYPE html><html></html>")])
        with pytest.raises(SessionExpiredError):
            fetcher.fetch_all({}, lambda r: r)
        assert session.get.call_count == 1

    def test_first_page_error_is_fatal(self):
        fetcher, _, _ = _fetcher([_resp(text="x", status=502)])
        with pytest.raises(FetchError):
            fetcher.fetch_all({}, lambda r: r)

    def test_first_page_invalid_page_count_is_fetch_error(self):
        fetcher, _, _ = _fetcher([_resp({"page": 1, "total": "n/a", "rows": []})])
        with pytest.raises(FetchError, match="invalid page count"):
            fetcher.fetch_all({}, lambda r: r)

    def test_delay_between_pages_only(self):
        responses = [_page(p, 3, [_row(p)]) for p in (1, 2, 3)]
        fetcher, _, sleeper = _fetcher(responses, delay=0.3)
        fetcher.fetch_all({}, lambda r: r["id"])
        assert sleeper.call_count == 2
        sleeper.assert_called_with(0.3)

    def test_transform_none_drops_row(self):
        fetcher, _, _ = _fetcher([_page(1, 1, [_row(1), _row(2), _row(3)])])
        items = fetcher.fetch_all({}, lambda r: r["id"] if r["id"] != "2" else None)
        assert items == ["1", "3"]

    def test_on_page_sees_every_payload(self):
        responses = [_page(p, 2, [_row(p)]) for p in (1, 2)]
        fetcher, _, _ = _fetcher(responses)
        seen = []
        fetcher.fetch_all({}, lambda r: r, on_page=lambda payload: seen.append(payload["page"]))
        assert seen == [1, 2]

    def test_empty_result(self):
        fetcher, _, _ = _fetcher([_resp({"page": 1, "total": 0, "records": 0, "rows": []})])
        assert fetcher.fetch_all({}, lambda r: r) == []
