"""Project registry: persists projects, route inventories and metrics to SQLite."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any

from apiscope.discovery.monitor import ApiMetrics, BatchMetrics, RouteCheck
from apiscope.discovery.scanner import Route
from apiscope.errors import NotFoundError

logger = logging.getLogger(__name__)

_METRIC_COLUMNS = (
    "total_requests",
    "successful_requests",
    "failed_requests",
    "average_response_time_ms",
    "running_average_response_time_ms",
)


class ProjectRegistry:
    """CRUD wrapper around the ``projects`` / ``project_routes`` tables.

    Args:
        conn: An open :class:`sqlite3.Connection` (WAL mode recommended).
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    # ------------------------------------------------------------------ #
    # Projects                                                             #
    # ------------------------------------------------------------------ #

    def create_project(self, name: str, api_url: str, store_url: str) -> dict[str, Any]:
        """Insert a new project in ``pending`` state and return it."""
        project_id = uuid.uuid4().hex
        self._conn.execute(
            """
            INSERT INTO projects (id, name, api_url, store_url, api_status)
            VALUES (?, ?, ?, ?, 'pending')
            """,
            (project_id, name.strip(), api_url.strip(), store_url.strip()),
        )
        self._conn.commit()
        logger.info("created project id=%s name=%s", project_id, name)
        return self.get_project(project_id)

    def list_projects(self) -> list[dict[str, Any]]:
        """Return every project, newest first, with routes and metrics."""
        cur = self._conn.execute("SELECT * FROM projects ORDER BY created_at DESC, rowid DESC")
        return [self._project_dict(row) for row in cur.fetchall()]

    def get_project(self, project_id: str) -> dict[str, Any]:
        """Return one project.

        Raises:
            NotFoundError: if *project_id* is unknown.
        """
        return self._project_dict(self._row(project_id))

    def delete_project(self, project_id: str) -> None:
        """Delete a project and (via cascade) its routes."""
        cur = self._conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        self._conn.commit()
        if cur.rowcount == 0:
            raise NotFoundError(f"Project not found: {project_id}")
        logger.info("deleted project id=%s", project_id)

    def set_api_status(
        self,
        project_id: str,
        status: str,
        error_message: str | None = None,
    ) -> None:
        """Record the latest overall API status for *project_id*."""
        self._row(project_id)
        self._conn.execute(
            """
            UPDATE projects
               SET api_status = ?, error_message = ?, updated_at = CURRENT_TIMESTAMP
             WHERE id = ?
            """,
            (status, error_message, project_id),
        )
        self._conn.commit()

    # ------------------------------------------------------------------ #
    # Routes                                                               #
    # ------------------------------------------------------------------ #

    def replace_routes(self, project_id: str, routes: list[Route]) -> None:
        """Replace the whole route inventory of *project_id* in one transaction."""
        self._row(project_id)
        with self._conn:
            self._write_routes(project_id, routes)
            self._conn.execute(
                """
                UPDATE projects
                   SET api_status = 'success', error_message = NULL,
                       updated_at = CURRENT_TIMESTAMP
                 WHERE id = ?
                """,
                (project_id,),
            )
        logger.debug("replace_routes id=%s count=%d", project_id, len(routes))

    def list_routes(self, project_id: str) -> list[Route]:
        """Return the stored inventory in discovery order."""
        cur = self._conn.execute(
            """
            SELECT path, method, status, response_time_ms, last_checked
              FROM project_routes
             WHERE project_id = ?
             ORDER BY position
            """,
            (project_id,),
        )
        return [
            Route(
                path=row["path"],
                method=row["method"],
                status=row["status"],
                response_time_ms=row["response_time_ms"] or 0.0,
                last_checked=_parse_ts(row["last_checked"]),
            )
            for row in cur.fetchall()
        ]

    # ------------------------------------------------------------------ #
    # Metrics                                                              #
    # ------------------------------------------------------------------ #

    def get_metrics(self, project_id: str) -> ApiMetrics:
        row = self._row(project_id)
        return ApiMetrics(**{col: row[col] for col in _METRIC_COLUMNS})

    def record_monitoring(self, project_id: str, checks: list[RouteCheck]) -> ApiMetrics:
        """Store a monitoring pass: refreshed routes plus updated cumulative metrics.

        The metrics read-modify-write happens inside a single transaction.

        Returns:
            The project's metrics after this pass.
        """
        batch = BatchMetrics.from_checks(checks)
        now = datetime.now(timezone.utc).isoformat()
        with self._conn:
            if not self._conn.in_transaction:
                self._conn.execute("BEGIN IMMEDIATE")
            metrics = self.get_metrics(project_id).apply(batch)
            self._upsert_routes(project_id, [c.to_route() for c in checks])
            self._conn.execute(
                """
                UPDATE projects
                   SET total_requests = ?, successful_requests = ?, failed_requests = ?,
                       average_response_time_ms = ?, running_average_response_time_ms = ?,
                       response_time_ms = ?, last_checked = ?, updated_at = CURRENT_TIMESTAMP
                 WHERE id = ?
                """,
                (
                    metrics.total_requests,
                    metrics.successful_requests,
                    metrics.failed_requests,
                    metrics.average_response_time_ms,
                    metrics.running_average_response_time_ms,
                    batch.average_response_time_ms,
                    now,
                    project_id,
                ),
            )
        logger.debug(
            "record_monitoring id=%s total=%d ok=%d failed=%d",
            project_id, metrics.total_requests, metrics.successful_requests,
            metrics.failed_requests,
        )
        return metrics

    # ------------------------------------------------------------------ #
    # Helpers                                                              #
    # ------------------------------------------------------------------ #

    def _write_routes(self, project_id: str, routes: list[Route]) -> None:
        self._conn.execute("DELETE FROM project_routes WHERE project_id = ?", (project_id,))
        self._upsert_routes(project_id, routes)

    def _upsert_routes(self, project_id: str, routes: list[Route]) -> None:
        """Insert new routes after the existing ones; refresh known routes in place."""
        start = self._conn.execute(
            "SELECT COALESCE(MAX(position) + 1, 0) FROM project_routes WHERE project_id = ?",
            (project_id,),
        ).fetchone()[0]
        self._conn.executemany(
            """
            INSERT INTO project_routes
                (project_id, position, path, method, status, response_time_ms, last_checked)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(project_id, path, method) DO UPDATE SET
                status           = excluded.status,
                response_time_ms = excluded.response_time_ms,
                last_checked     = excluded.last_checked
            """,
            [
                (
                    project_id,
                    start + offset,
                    r.path,
                    r.method,
                    r.status,
                    r.response_time_ms,
                    r.last_checked.isoformat(),
                )
                for offset, r in enumerate(routes)
            ],
        )

    def _row(self, project_id: str) -> sqlite3.Row:
        row = self._conn.execute(
            "SELECT * FROM projects WHERE id = ?", (project_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Project not found: {project_id}")
        return row

    def _project_dict(self, row: sqlite3.Row) -> dict[str, Any]:
        project = {k: row[k] for k in row.keys() if k not in _METRIC_COLUMNS}
        project["api_metrics"] = {col: row[col] for col in _METRIC_COLUMNS}
        project["routes"] = [r.to_dict() for r in self.list_routes(row["id"])]
        return project


def _parse_ts(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    return datetime.fromisoformat(value)
