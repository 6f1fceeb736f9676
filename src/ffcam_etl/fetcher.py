"""ffcam_etl.fetcher

Paginated client for the FFCAM extranet jqGrid endpoint.

Design principles:
  - Polite: exactly one in-flight request, fixed pause between pages.
  - Page 1 is authoritative: it declares the page count, and any failure
    there (typically an expired session answering with an HTML login page)
    aborts the scrape.
  - Later pages are best effort: a failed page is logged and skipped so a
    transient error deep into a large dataset costs one page, not the run.
  - No retries and no backoff; the delay is a courtesy, not a recovery.
"""

from __future__ import annotations

import json
import logging
import time
import urllib.parse
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

import click
import requests

from ffcam_etl.shared import FetchError, SessionExpiredError

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://extranet-clubalpin.com/app/ActivitesFormations/jx_jqGrid.php"
ROWS_PER_PAGE = 150
REQUEST_DELAY_MS = 300
REQUEST_TIMEOUT = 30

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

@dataclass
class RateLimiter:
    """Fixed pause between successful page fetches."""

    delay_seconds: float = REQUEST_DELAY_MS / 1000.0
    sleeper: Callable[[float], None] = time.sleep

    def sleep(self) -> None:
        if self.delay_seconds > 0:
            self.sleeper(self.delay_seconds)


# ---------------------------------------------------------------------------
# Response checks
# ---------------------------------------------------------------------------

def _is_html_body(text: str) -> bool:
    head = text.lstrip()[:15].lower()
    return head.startswith("<!doctype") or head.startswith("<html")


def _detect_session_failure(resp: requests.Response) -> bool:
    """Expired or invalid sid: 401/403, or login HTML instead of JSON on a 2xx."""
    if resp.status_code in (401, 403):
        return True
    return bool(resp.ok) and _is_html_body(resp.text)


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------

class PaginatedFetcher:
    def __init__(
        self,
        session: requests.Session,
        session_id: str,
        base_url: str = DEFAULT_BASE_URL,
        rows_per_page: int = ROWS_PER_PAGE,
        rate_limiter: RateLimiter | None = None,
        timeout: int = REQUEST_TIMEOUT,
    ) -> None:
        self.session = session
        self.session_id = session_id
        self.base_url = base_url
        self.rows_per_page = rows_per_page
        self.rate_limiter = rate_limiter or RateLimiter()
        self.timeout = timeout
        self.pages_fetched = 0
        self.pages_failed = 0

    def build_url(self, params: dict[str, Any]) -> str:
        query = {
            "sid": self.session_id,
            "_search": "false",
            "rows": str(self.rows_per_page),
        }
        query.update({k: str(v) for k, v in params.items()})
        return f"{self.base_url}?{urllib.parse.urlencode(query)}"

    def fetch_page(self, url: str) -> dict[str, Any]:
        """GET one grid page and decode it.

        Raises SessionExpiredError on 401/403 or a 2xx login HTML page,
        FetchError on transport errors, non-2xx status or malformed JSON.
        """
        try:
            resp = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise FetchError(f"network error: {exc}") from exc

        if _detect_session_failure(resp):
            raise SessionExpiredError()
        if not resp.ok:
            raise FetchError(f"HTTP {resp.status_code}")
        try:
            payload = json.loads(resp.text)
        except ValueError as exc:
            raise FetchError("invalid JSON from the FFCAM API") from exc
        if not isinstance(payload, dict):
            raise FetchError("unexpected FFCAM API payload (not an object)")
        return payload

    def _page_count(self, payload: dict[str, Any]) -> int:
        raw = payload.get("total") or 1
        try:
            return int(str(raw))
        except ValueError as exc:
            raise FetchError(f"invalid page count from the FFCAM API: {raw!r}") from exc

    def fetch_all(
        self,
        params: dict[str, Any],
        transform: Callable[[dict[str, Any]], T | None],
        on_page: Callable[[dict[str, Any]], None] | None = None,
    ) -> list[T]:
        """Walk every page in order, returning the non-None transformed rows.

        `on_page` sees each decoded payload before its rows are transformed.
        """
        items: list[T] = []
        page = 1
        total_pages = 1
        while page <= total_pages:
            url = self.build_url({**params, "page": page})
            try:
                payload = self.fetch_page(url)
                if page == 1:
                    total_pages = self._page_count(payload)
                    click.echo(f"  {payload.get('records', 0)} records over {total_pages} page(s)")
                if on_page is not None:
                    on_page(payload)
                page_items = []
                for row in payload.get("rows") or []:
                    item = transform(row)
                    if item is not None:
                        page_items.append(item)
            except Exception as exc:
                if page == 1:
                    raise
                self.pages_failed += 1
                log.warning("Page %d/%d failed, skipping: %s", page, total_pages, exc)
                page += 1
                continue

            items.extend(page_items)
            self.pages_fetched += 1
            click.echo(f"  page {page}/{total_pages} ({len(items)} records)")
            page += 1
            if page <= total_pages:
                self.rate_limiter.sleep()
        return items
