"""apiscope.discovery — route discovery and monitoring.

Exports:
    probe           — single classified HTTP request, never raises on network failure
    ProbeResult     — outcome of one probe
    Route           — one discovered ``(path, method)`` with its last health
    RouteScanner    — catalog-driven route discovery
    RouteMonitor    — re-probes a route inventory and aggregates metrics
    ApiMetrics      — cumulative per-project counters
    ProjectRegistry — SQLite-backed project / route / metrics persistence
"""

from __future__ import annotations

from apiscope.discovery.monitor import ApiMetrics, BatchMetrics, MonitorResult, RouteCheck, RouteMonitor
from apiscope.discovery.probe import ProbeResult, probe
from apiscope.discovery.registry import ProjectRegistry
from apiscope.discovery.scanner import CATALOG_ENDPOINTS, CATALOG_METHODS, DiscoveryResult, Route, RouteScanner, catalog

__all__ = [
    "ApiMetrics",
    "BatchMetrics",
    "CATALOG_ENDPOINTS",
    "CATALOG_METHODS",
    "DiscoveryResult",
    "MonitorResult",
    "ProbeResult",
    "ProjectRegistry",
    "Route",
    "RouteCheck",
    "RouteMonitor",
    "RouteScanner",
    "catalog",
    "probe",
]
