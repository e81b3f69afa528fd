"""Project lifecycle service.

Wires the project registry, the route scanner, the route monitor and the
store connection registry together.  This is the entry point the HTTP
routers use; it holds no request-layer concerns.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Callable

from apiscope.db import get_db, init_db
from apiscope.discovery.monitor import ApiMetrics, MonitorResult, RouteMonitor
from apiscope.discovery.registry import ProjectRegistry
from apiscope.discovery.scanner import DiscoveryResult, RouteScanner, pass_deadline
from apiscope.errors import NotFoundError, StoreConnectionError, ValidationError
from apiscope.store.manager import ConnectionRegistry
from apiscope.validation import validate_http_url, validate_store_url

logger = logging.getLogger(__name__)


def _default_db() -> sqlite3.Connection:
    init_db()
    return get_db()


class ProjectService:
    """Central service for project operations."""

    def __init__(
        self,
        connections: ConnectionRegistry | None = None,
        scanner: RouteScanner | None = None,
        monitor: RouteMonitor | None = None,
        db: Callable[[], sqlite3.Connection] = _default_db,
    ) -> None:
        self.connections = connections or ConnectionRegistry()
        self.scanner = scanner or RouteScanner()
        self.monitor = monitor or RouteMonitor()
        self._db = db

    def registry(self) -> ProjectRegistry:
        return ProjectRegistry(self._db())

    # ── Projects ───────────────────────────────────────────────────

    async def add_project(self, name: str, api_url: str, store_url: str) -> dict[str, Any]:
        """Validate, check the store is reachable, then create the project.

        Route discovery is not run here; callers schedule
        :meth:`discover_in_background` once the project exists.

        Raises:
            ValidationError:      missing name or malformed URLs.
            StoreConnectionError: the store connection test failed.
        """
        if not name or not api_url or not store_url:
            raise ValidationError("Name, API URL, and store URL are required")
        validate_http_url(api_url)
        validate_store_url(store_url)

        check = await self.connections.test_connection(store_url)
        if not check["success"]:
            raise StoreConnectionError(check["error"])

        return self.registry().create_project(name, api_url, store_url)

    def list_projects(self) -> list[dict[str, Any]]:
        return self.registry().list_projects()

    def get_project(self, project_id: str) -> dict[str, Any]:
        return self.registry().get_project(project_id)

    async def remove(self, project_id: str) -> None:
        """Delete the project and release its store connection."""
        self.registry().delete_project(project_id)
        await self.connections.release(project_id)

    # ── Discovery / monitoring ─────────────────────────────────────

    async def discover(self, project_id: str) -> tuple[DiscoveryResult, dict[str, Any]]:
        """Run discovery against the project's API and store the inventory."""
        registry = self.registry()
        project = registry.get_project(project_id)
        result = await self.scanner.discover_routes(project["api_url"], deadline=pass_deadline())
        if result.success:
            registry.replace_routes(project_id, result.routes)
        else:
            registry.set_api_status(project_id, "error", result.error)
        return result, registry.get_project(project_id)

    async def discover_in_background(self, project_id: str) -> None:
        """Discovery run scheduled right after project creation."""
        try:
            result, _ = await self.discover(project_id)
        except NotFoundError:
            logger.info("project %s removed before background discovery finished", project_id)
            return
        logger.info(
            "background discovery for project %s: success=%s routes=%d",
            project_id, result.success, len(result.routes),
        )

    async def monitor_project(
        self, project_id: str
    ) -> tuple[MonitorResult, ApiMetrics, dict[str, Any]]:
        """Re-probe the stored inventory and fold the pass into the metrics.

        Raises:
            ValidationError: the project has no routes yet.
        """
        registry = self.registry()
        project = registry.get_project(project_id)
        routes = registry.list_routes(project_id)
        result = await self.monitor.monitor_api(project["api_url"], routes, deadline=pass_deadline())
        metrics = registry.record_monitoring(project_id, result.results)
        return result, metrics, registry.get_project(project_id)

    # ── Store ──────────────────────────────────────────────────────

    async def connect_store(self, project_id: str) -> dict[str, Any]:
        """Make sure the project's store handle exists (envelope result)."""
        project = self.get_project(project_id)
        return await self.connections.connect(project_id, project["store_url"])

    async def shutdown(self) -> None:
        await self.connections.close_all()
