"""Route scanner for apiscope.

Infers which routes an HTTP API exposes by probing a fixed catalog of common
endpoints with every supported method:

  - endpoints  ``/  /api  /health  /status  /users  /products  /posts
    /comments  /data``
  - methods    ``GET  POST  PUT  DELETE  PATCH``

A pair is kept unless the API answers ``404``.  Network failures are kept as
``error`` routes rather than dropped, so an unreachable API shows up as such.

.. warning::
   Probing ``POST``/``PUT``/``DELETE``/``PATCH`` against a third-party API
   may trigger side effects on that API.  This is on by default to keep the
   full 45-pair catalog; pass ``probe_unsafe_methods=False`` (or set
   ``APISCOPE_PROBE_UNSAFE_METHODS=0``) to restrict discovery to ``GET``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any

import httpx

from apiscope.discovery.probe import ProbeResult, gather_ordered, probe
from apiscope.errors import ValidationError
from apiscope.validation import validate_http_url

logger = logging.getLogger(__name__)

CATALOG_ENDPOINTS: tuple[str, ...] = (
    "/",
    "/api",
    "/health",
    "/status",
    "/users",
    "/products",
    "/posts",
    "/comments",
    "/data",
)
CATALOG_METHODS: tuple[str, ...] = ("GET", "POST", "PUT", "DELETE", "PATCH")
SAFE_METHODS = frozenset({"GET"})

DISCOVERY_TIMEOUT = float(os.environ.get("APISCOPE_DISCOVERY_TIMEOUT", "5.0"))
PROBE_CONCURRENCY = int(os.environ.get("APISCOPE_PROBE_CONCURRENCY", "1"))
PROBE_UNSAFE_METHODS = os.environ.get("APISCOPE_PROBE_UNSAFE_METHODS", "1").lower() not in ("0", "false", "no", "off")


def pass_deadline() -> float | None:
    """Overall deadline for one discovery/monitoring pass, from the environment."""
    raw = os.environ.get("APISCOPE_PASS_DEADLINE", "")
    return float(raw) if raw else None


def catalog() -> list[tuple[str, str]]:
    """Return the 45 ``(endpoint, method)`` pairs in probing order."""
    return [(path, method) for path in CATALOG_ENDPOINTS for method in CATALOG_METHODS]


@dataclass
class Route:
    path: str
    method: str
    status: str
    response_time_ms: float
    last_checked: datetime

    @classmethod
    def from_probe(cls, path: str, method: str, result: ProbeResult) -> "Route":
        return cls(
            path=path,
            method=method,
            status=result.status,
            response_time_ms=result.response_time_ms,
            last_checked=result.timestamp,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "method": self.method,
            "status": self.status,
            "response_time_ms": self.response_time_ms,
            "last_checked": self.last_checked.isoformat(),
        }


@dataclass
class DiscoveryResult:
    success: bool
    routes: list[Route] = field(default_factory=list)
    error: str | None = None
    probed: int = 0
    skipped: list[tuple[str, str]] = field(default_factory=list)
    complete: bool = True

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "routes": [r.to_dict() for r in self.routes],
            "probed": self.probed,
            "complete": self.complete,
        }
        if self.skipped:
            data["skipped"] = [{"path": p, "method": m} for p, m in self.skipped]
        if self.error is not None:
            data["error"] = self.error
        return data


class RouteScanner:
    """Brute-force route discovery over :data:`CATALOG_ENDPOINTS` × :data:`CATALOG_METHODS`.

    Args:
        timeout:              Per-probe timeout in seconds.
        concurrency:          Maximum probes in flight; ``1`` probes sequentially.
        probe_unsafe_methods: Also probe write methods (see module warning).
        http_client:          Optional shared client; the scanner never closes it.
    """

    def __init__(
        self,
        timeout: float = DISCOVERY_TIMEOUT,
        concurrency: int = PROBE_CONCURRENCY,
        probe_unsafe_methods: bool = PROBE_UNSAFE_METHODS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.timeout = timeout
        self.concurrency = concurrency
        self.probe_unsafe_methods = probe_unsafe_methods
        self._client = http_client

    def planned_pairs(self) -> tuple[list[tuple[str, str]], list[tuple[str, str]]]:
        """Split the catalog into ``(to_probe, skipped)`` according to the method policy."""
        pairs = catalog()
        if self.probe_unsafe_methods:
            return pairs, []
        keep = [p for p in pairs if p[1] in SAFE_METHODS]
        skipped = [p for p in pairs if p[1] not in SAFE_METHODS]
        return keep, skipped

    async def discover_routes(
        self,
        base_url: str,
        deadline: float | None = None,
    ) -> DiscoveryResult:
        """Probe every catalog pair against *base_url* and build the route inventory.

        Only a malformed *base_url* fails the whole call; individual probe
        failures become ``error`` routes.  When *deadline* (seconds) expires
        the routes gathered so far are returned with ``complete=False``.
        """
        try:
            validate_http_url(base_url)
        except ValidationError as exc:
            logger.warning("discovery rejected base URL %r: %s", base_url, exc)
            return DiscoveryResult(success=False, error=str(exc))

        pairs, skipped = self.planned_pairs()
        if self._client is not None:
            outcomes = await self._probe_all(self._client, base_url, pairs, deadline)
        else:
            async with httpx.AsyncClient(follow_redirects=True, timeout=self.timeout) as client:
                outcomes = await self._probe_all(client, base_url, pairs, deadline)

        routes: list[Route] = []
        probed = 0
        for (path, method), result in zip(pairs, outcomes):
            if result is None:
                continue
            probed += 1
            if result.status_code == 404:
                continue
            routes.append(Route.from_probe(path, method, result))

        complete = probed == len(pairs)
        logger.info(
            "discovery of %s complete, %d/%d pair(s) probed, %d route(s) found",
            base_url, probed, len(pairs), len(routes),
        )
        return DiscoveryResult(
            success=True,
            routes=routes,
            probed=probed,
            skipped=skipped,
            complete=complete,
        )

    async def _probe_all(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        pairs: list[tuple[str, str]],
        deadline: float | None,
    ) -> list[ProbeResult | None]:
        calls = [
            partial(probe, base_url, path, method, self.timeout, client)
            for path, method in pairs
        ]
        return await gather_ordered(calls, self.concurrency, deadline)
