"""Single-request HTTP probe used by route discovery and monitoring.

A probe issues exactly one request and classifies the outcome.  Any HTTP
status is accepted; only ``2xx`` counts as success.  Network-level failures
(DNS, refused connections, timeouts, malformed URLs) are captured in the
returned :class:`ProbeResult` and never raised to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


@dataclass
class ProbeResult:
    ok: bool
    response_time_ms: float
    status_code: int | None = None
    error_message: str | None = None
    error_type: str | None = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def status(self) -> str:
        return "success" if self.ok else "error"


async def probe(
    base_url: str,
    path: str,
    method: str = "GET",
    timeout: float = 5.0,
    client: httpx.AsyncClient | None = None,
) -> ProbeResult:
    """Send one *method* request to ``base_url + path`` and classify it.

    The URL is the plain concatenation of *base_url* and *path*; callers
    must pass a well-formed base.  When *client* is ``None`` a short-lived
    client is created for this request.  Redirects are followed, so the
    reported status is the final one.
    """
    url = f"{base_url}{path}"
    start = time.perf_counter()
    try:
        if client is None:
            async with httpx.AsyncClient(follow_redirects=True, timeout=timeout) as own:
                response = await own.request(method, url)
        else:
            response = await client.request(method, url, timeout=timeout)
    except httpx.TimeoutException as exc:
        return _failure(start, "timeout", f"timeout of {timeout:g}s exceeded", exc, url)
    except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
        return _failure(start, "invalid_url", str(exc), exc, url)
    except httpx.ConnectError as exc:
        return _failure(start, "connect", str(exc), exc, url)
    except httpx.HTTPError as exc:
        return _failure(start, "network", str(exc), exc, url)

    elapsed = _elapsed_ms(start)
    logger.debug("probe %s %s -> %d (%.1f ms)", method, url, response.status_code, elapsed)
    return ProbeResult(
        ok=is_success(response.status_code),
        response_time_ms=elapsed,
        status_code=response.status_code,
    )


async def gather_ordered(
    calls: list[Callable[[], Awaitable[T]]],
    concurrency: int = 1,
    deadline: float | None = None,
) -> list[T | None]:
    """Run *calls* with at most *concurrency* in flight, preserving order.

    The returned list is aligned with *calls*.  When *deadline* (seconds)
    expires, unfinished calls are cancelled and their slots hold ``None``;
    calls that already completed keep their results.
    """
    if not calls:
        return []

    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _bounded(call: Callable[[], Awaitable[T]]) -> T:
        async with semaphore:
            return await call()

    tasks = [asyncio.create_task(_bounded(call)) for call in calls]
    try:
        done, pending = await asyncio.wait(tasks, timeout=deadline)
    finally:
        # also runs when the caller itself is cancelled mid-pass
        for task in tasks:
            if not task.done():
                task.cancel()
    if pending:
        logger.info("pass deadline of %ss reached, %d probe(s) cancelled", deadline, len(pending))
        await asyncio.gather(*pending, return_exceptions=True)
    return [task.result() if task in done else None for task in tasks]


# ── Internal helpers ───────────────────────────────────────────────

def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000.0, 3)


def _failure(
    start: float,
    error_type: str,
    message: str,
    exc: Exception,
    url: str,
) -> ProbeResult:
    elapsed = _elapsed_ms(start)
    message = message or exc.__class__.__name__
    logger.debug("probe %s failed (%s): %s", url, error_type, message)
    return ProbeResult(
        ok=False,
        response_time_ms=elapsed,
        error_message=message,
        error_type=error_type,
    )
