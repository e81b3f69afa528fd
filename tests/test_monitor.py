"""Tests for route monitoring and metric aggregation."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from apiscope.discovery.monitor import ApiMetrics, BatchMetrics, RouteCheck, RouteMonitor
from apiscope.discovery.scanner import Route
from apiscope.errors import ValidationError


def _monitor(handler) -> RouteMonitor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)
    return RouteMonitor(timeout=1.0, http_client=client)


def _check(status: str, ms: float) -> RouteCheck:
    return RouteCheck(
        path="/",
        method="GET",
        status=status,
        status_code=200 if status == "success" else 500,
        response_time_ms=ms,
        last_checked=datetime.now(timezone.utc),
    )


class TestRouteMonitor:
    @pytest.mark.asyncio
    async def test_one_result_per_route_in_order(self):
        routes = [
            {"path": "/users", "method": "GET"},
            {"path": "/users", "method": "post"},
            {"path": "/health", "method": "GET"},
        ]

        def handler(request):
            return httpx.Response(201 if request.method == "POST" else 200)

        result = await _monitor(handler).monitor_api("http://api.test", routes)
        assert result.success
        assert result.complete
        assert [(r.path, r.method, r.status_code) for r in result.results] == [
            ("/users", "GET", 200),
            ("/users", "POST", 201),
            ("/health", "GET", 200),
        ]

    @pytest.mark.asyncio
    async def test_accepts_route_objects(self):
        routes = [
            Route("/", "GET", "success", 1.0, datetime.now(timezone.utc)),
            Route("/data", "DELETE", "error", 2.0, datetime.now(timezone.utc)),
        ]

        def handler(request):
            return httpx.Response(200 if request.url.path == "/" else 503)

        result = await _monitor(handler).monitor_api("http://api.test", routes)
        assert [r.status for r in result.results] == ["success", "error"]
        assert result.results[1].status_code == 503

    @pytest.mark.asyncio
    async def test_empty_inventory_issues_no_request(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200)

        with pytest.raises(ValidationError, match="No routes to monitor"):
            await _monitor(handler).monitor_api("http://api.test", [])
        assert calls == []

    @pytest.mark.asyncio
    async def test_network_failure_becomes_error_result(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = await _monitor(handler).monitor_api("http://api.test", [{"path": "/", "method": "GET"}])
        check = result.results[0]
        assert check.status == "error"
        assert check.status_code is None
        assert check.error_message
        assert result.metrics.error_count == 1

    @pytest.mark.asyncio
    async def test_route_without_method_is_rejected(self):
        with pytest.raises(ValidationError):
            await _monitor(lambda request: httpx.Response(200)).monitor_api(
                "http://api.test", [{"path": "/"}]
            )


class TestBatchMetrics:
    def test_counts_and_average(self):
        batch = BatchMetrics.from_checks([_check("success", 10.0), _check("error", 30.0)])
        assert batch.count == 2
        assert batch.success_count == 1
        assert batch.error_count == 1
        assert batch.average_response_time_ms == 20.0

    def test_empty_average_is_zero(self):
        assert BatchMetrics().average_response_time_ms == 0.0


class TestApiMetrics:
    def test_apply_accumulates(self):
        first = ApiMetrics().apply(BatchMetrics.from_checks([_check("success", 10.0), _check("success", 20.0)]))
        assert first.total_requests == 2
        assert first.successful_requests == 2
        assert first.failed_requests == 0
        assert first.average_response_time_ms == 15.0
        assert first.running_average_response_time_ms == 15.0

        second = first.apply(BatchMetrics.from_checks([_check("error", 60.0)]))
        assert second.total_requests == 3
        assert second.successful_requests == 2
        assert second.failed_requests == 1
        # per-pass average reflects the latest pass only
        assert second.average_response_time_ms == 60.0
        assert second.running_average_response_time_ms == pytest.approx(30.0)

    def test_apply_is_pure(self):
        base = ApiMetrics()
        base.apply(BatchMetrics.from_checks([_check("success", 5.0)]))
        assert base.total_requests == 0

    def test_counters_sum(self):
        metrics = ApiMetrics()
        for checks in ([_check("success", 1.0)], [_check("error", 2.0), _check("success", 3.0)]):
            metrics = metrics.apply(BatchMetrics.from_checks(checks))
        assert metrics.total_requests == metrics.successful_requests + metrics.failed_requests


class TestMonitorDeadline:
    @pytest.mark.asyncio
    async def test_partial_results_keep_route_order(self):
        async def handler(request):
            if request.url.path == "/slow":
                await asyncio.sleep(5)
            return httpx.Response(200)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        monitor = RouteMonitor(timeout=10.0, concurrency=3, http_client=client)
        routes = [
            {"path": "/a", "method": "GET"},
            {"path": "/slow", "method": "GET"},
            {"path": "/b", "method": "GET"},
        ]
        result = await monitor.monitor_api("http://api.test", routes, deadline=0.3)
        assert result.complete is False
        assert [r.path for r in result.results] == ["/a", "/b"]
        assert result.metrics.count == 2
        assert result.to_dict()["complete"] is False
