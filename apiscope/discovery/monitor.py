"""Route monitoring: re-probes a known route inventory and aggregates metrics.

Two latency figures are tracked per project:

``average_response_time_ms``
    mean latency of the most recent monitoring pass only.
``running_average_response_time_ms``
    mean latency over every route check ever counted in ``total_requests``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from datetime import datetime
from functools import partial
from typing import Any, Iterable, Mapping

import httpx

from apiscope.discovery.probe import ProbeResult, gather_ordered, probe
from apiscope.discovery.scanner import PROBE_CONCURRENCY, Route
from apiscope.errors import ValidationError

logger = logging.getLogger(__name__)

MONITOR_TIMEOUT = float(os.environ.get("APISCOPE_MONITOR_TIMEOUT", "10.0"))


@dataclass
class RouteCheck:
    """Outcome of re-probing one route."""

    path: str
    method: str
    status: str
    status_code: int | None
    response_time_ms: float
    last_checked: datetime
    error_message: str | None = None

    @classmethod
    def from_probe(cls, path: str, method: str, result: ProbeResult) -> "RouteCheck":
        return cls(
            path=path,
            method=method,
            status=result.status,
            status_code=result.status_code,
            response_time_ms=result.response_time_ms,
            last_checked=result.timestamp,
            error_message=result.error_message,
        )

    def to_route(self) -> Route:
        return Route(
            path=self.path,
            method=self.method,
            status=self.status,
            response_time_ms=self.response_time_ms,
            last_checked=self.last_checked,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "path": self.path,
            "method": self.method,
            "status": self.status,
            "status_code": self.status_code,
            "response_time_ms": self.response_time_ms,
            "last_checked": self.last_checked.isoformat(),
        }
        if self.error_message is not None:
            data["error_message"] = self.error_message
        return data


@dataclass
class BatchMetrics:
    """Aggregates over a single monitoring pass."""

    count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_response_time_ms: float = 0.0

    @classmethod
    def from_checks(cls, checks: Iterable[RouteCheck]) -> "BatchMetrics":
        batch = cls()
        for check in checks:
            batch.count += 1
            batch.total_response_time_ms += check.response_time_ms or 0.0
            if check.status == "success":
                batch.success_count += 1
            else:
                batch.error_count += 1
        return batch

    @property
    def average_response_time_ms(self) -> float:
        if self.count == 0:
            return 0.0
        return self.total_response_time_ms / self.count

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "average_response_time_ms": self.average_response_time_ms,
        }


@dataclass(frozen=True)
class ApiMetrics:
    """Cumulative per-project counters, updated after every monitoring pass."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_response_time_ms: float = 0.0
    running_average_response_time_ms: float = 0.0

    def apply(self, batch: BatchMetrics) -> "ApiMetrics":
        """Return the metrics after folding in *batch*; counters never decrease."""
        total = self.total_requests + batch.count
        if total:
            running = (
                self.running_average_response_time_ms * self.total_requests
                + batch.total_response_time_ms
            ) / total
        else:
            running = 0.0
        return replace(
            self,
            total_requests=total,
            successful_requests=self.successful_requests + batch.success_count,
            failed_requests=self.failed_requests + batch.error_count,
            average_response_time_ms=batch.average_response_time_ms,
            running_average_response_time_ms=running,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "average_response_time_ms": self.average_response_time_ms,
            "running_average_response_time_ms": self.running_average_response_time_ms,
        }


@dataclass
class MonitorResult:
    success: bool
    results: list[RouteCheck] = field(default_factory=list)
    complete: bool = True
    error: str | None = None

    @property
    def metrics(self) -> BatchMetrics:
        return BatchMetrics.from_checks(self.results)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "results": [r.to_dict() for r in self.results],
            "metrics": self.metrics.to_dict(),
            "complete": self.complete,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


class RouteMonitor:
    """Re-probes a route inventory in order, one result per route.

    Args:
        timeout:     Per-probe timeout in seconds.
        concurrency: Maximum probes in flight; ``1`` probes sequentially.
        http_client: Optional shared client; the monitor never closes it.
    """

    def __init__(
        self,
        timeout: float = MONITOR_TIMEOUT,
        concurrency: int = PROBE_CONCURRENCY,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.timeout = timeout
        self.concurrency = concurrency
        self._client = http_client

    async def monitor_api(
        self,
        base_url: str,
        routes: list[Route] | list[Mapping[str, Any]],
        deadline: float | None = None,
    ) -> MonitorResult:
        """Probe every route in *routes* against *base_url*.

        Raises:
            ValidationError: if *routes* is empty (no probe is issued).
        """
        if not routes:
            raise ValidationError("No routes to monitor. Discover routes first.")
        keys = [_route_key(r) for r in routes]

        if self._client is not None:
            outcomes = await self._probe_all(self._client, base_url, keys, deadline)
        else:
            async with httpx.AsyncClient(follow_redirects=True, timeout=self.timeout) as client:
                outcomes = await self._probe_all(client, base_url, keys, deadline)

        checks = [
            RouteCheck.from_probe(path, method, result)
            for (path, method), result in zip(keys, outcomes)
            if result is not None
        ]
        batch = BatchMetrics.from_checks(checks)
        logger.info(
            "monitoring of %s: %d/%d route(s) checked, %d ok, %d error, avg %.1f ms",
            base_url, len(checks), len(keys), batch.success_count, batch.error_count,
            batch.average_response_time_ms,
        )
        return MonitorResult(success=True, results=checks, complete=len(checks) == len(keys))

    async def _probe_all(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        keys: list[tuple[str, str]],
        deadline: float | None,
    ) -> list[ProbeResult | None]:
        calls = [
            partial(probe, base_url, path, method, self.timeout, client)
            for path, method in keys
        ]
        return await gather_ordered(calls, self.concurrency, deadline)


def _route_key(route: Route | Mapping[str, Any]) -> tuple[str, str]:
    if isinstance(route, Mapping):
        path, method = route.get("path"), route.get("method")
    else:
        path, method = route.path, route.method
    if not path or not method:
        raise ValidationError(f"Route entries need a path and a method, got {route!r}")
    return path, str(method).upper()
