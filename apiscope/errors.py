"""Error types shared by the discovery engine, the store registry and the API."""

from __future__ import annotations


class ApiScopeError(Exception):
    """Base error for apiscope failures."""

    error_type = "error"


class ValidationError(ApiScopeError):
    """Raised for malformed URLs, missing filters/updates or empty inventories."""

    error_type = "validation"


class StoreConnectionError(ApiScopeError):
    """Raised when a project's document store is unreachable."""

    error_type = "connection"


class NotConnectedError(ApiScopeError):
    """Raised when a store operation runs before ``acquire`` for that project."""

    error_type = "not_connected"

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"No connection found for project {tenant_id}")
        self.tenant_id = tenant_id


class NotFoundError(ApiScopeError):
    """Raised when a project or watched API record does not exist."""

    error_type = "not_found"


# HTTP status the request layer answers with, by ``error_type``; anything
# else (store or connection failures) is a 500.
HTTP_STATUS = {
    ValidationError.error_type: 400,
    NotFoundError.error_type: 404,
    NotConnectedError.error_type: 409,
}
