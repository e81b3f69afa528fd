"""Watched single APIs, a list of URLs fetched on demand.

Unlike project routes, a watched API is one URL fetched with ``GET``.  Any
status below ``500`` counts as success and the response body is kept as the
``last_response``; ``5xx`` answers and network failures are errors.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from apiscope.errors import NotFoundError, ValidationError
from apiscope.validation import validate_http_url

logger = logging.getLogger(__name__)

FETCH_TIMEOUT = 10.0


@dataclass
class FetchOutcome:
    status: str
    response_time_ms: float
    status_code: int | None = None
    data: Any = None
    error: str | None = None


async def fetch_api(
    url: str,
    timeout: float = FETCH_TIMEOUT,
    client: httpx.AsyncClient | None = None,
) -> FetchOutcome:
    """GET *url* and classify the answer (``< 500`` is success)."""
    start = time.perf_counter()
    try:
        if client is None:
            async with httpx.AsyncClient(follow_redirects=True, timeout=timeout) as own:
                response = await own.get(url)
        else:
            response = await client.get(url, timeout=timeout)
    except httpx.HTTPError as exc:
        elapsed = _elapsed_ms(start)
        logger.info("fetch %s failed: %s", url, exc)
        return FetchOutcome(status="error", response_time_ms=elapsed, error=str(exc) or exc.__class__.__name__)

    elapsed = _elapsed_ms(start)
    if response.status_code >= 500:
        return FetchOutcome(
            status="error",
            response_time_ms=elapsed,
            status_code=response.status_code,
            error=f"Request failed with status code {response.status_code}",
        )
    try:
        data = response.json()
    except ValueError:
        data = response.text
    return FetchOutcome(
        status="success",
        response_time_ms=elapsed,
        status_code=response.status_code,
        data=data,
    )


class WatchRegistry:
    """CRUD wrapper around the ``watched_apis`` table."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def add(self, url: str) -> dict[str, Any]:
        url = validate_http_url(url.strip() if isinstance(url, str) else url)
        existing = self._conn.execute("SELECT id FROM watched_apis WHERE url = ?", (url,)).fetchone()
        if existing is not None:
            raise ValidationError("API URL already exists")
        api_id = uuid.uuid4().hex
        self._conn.execute(
            "INSERT INTO watched_apis (id, url, last_status) VALUES (?, ?, 'pending')",
            (api_id, url),
        )
        self._conn.commit()
        return self.get(api_id)

    def list_apis(self) -> list[dict[str, Any]]:
        cur = self._conn.execute("SELECT * FROM watched_apis ORDER BY created_at DESC, rowid DESC")
        return [_api_dict(row) for row in cur.fetchall()]

    def get(self, api_id: str) -> dict[str, Any]:
        row = self._conn.execute("SELECT * FROM watched_apis WHERE id = ?", (api_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"API not found: {api_id}")
        return _api_dict(row)

    def record_fetch(self, api_id: str, outcome: FetchOutcome) -> dict[str, Any]:
        self.get(api_id)
        self._conn.execute(
            """
            UPDATE watched_apis
               SET last_status = ?, last_response = ?, last_checked = ?,
                   response_time_ms = ?, error_message = ?, updated_at = CURRENT_TIMESTAMP
             WHERE id = ?
            """,
            (
                outcome.status,
                json.dumps(outcome.data) if outcome.status == "success" else None,
                datetime.now(timezone.utc).isoformat(),
                outcome.response_time_ms,
                outcome.error,
                api_id,
            ),
        )
        self._conn.commit()
        return self.get(api_id)

    def delete(self, api_id: str) -> None:
        cur = self._conn.execute("DELETE FROM watched_apis WHERE id = ?", (api_id,))
        self._conn.commit()
        if cur.rowcount == 0:
            raise NotFoundError(f"API not found: {api_id}")


def _api_dict(row: sqlite3.Row) -> dict[str, Any]:
    api = dict(row)
    if api.get("last_response") is not None:
        api["last_response"] = json.loads(api["last_response"])
    return api


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000.0, 3)
