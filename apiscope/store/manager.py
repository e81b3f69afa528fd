"""Per-project MongoDB connection registry.

Each project (tenant) gets at most one pooled :class:`pymongo.MongoClient`,
created lazily on the first :meth:`ConnectionRegistry.acquire` and closed by
:meth:`ConnectionRegistry.release`.  Concurrent acquires for the same project
share a single in-flight connect, so they all see the same handle or the
same failure.  pymongo is blocking, so every driver call runs in a worker
thread via :func:`asyncio.to_thread`.

Document operations return envelopes rather than raising::

    {"success": True, "documents": [...], "total": 25, "limit": 10, "skip": 0}
    {"success": False, "error": "No connection found for project p1",
     "error_type": "not_connected"}

Documents or filters the driver cannot encode (NUL in a key, integers wider
than 64 bits) come back as ``error_type: "validation"`` envelopes.  Only
contract violations (missing collection name, filter or patch, a page size
below 1) raise :class:`~apiscope.errors.ValidationError`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Mapping

from bson.errors import BSONError
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from apiscope.errors import ApiScopeError, NotConnectedError, StoreConnectionError, ValidationError

logger = logging.getLogger(__name__)

STORE_TIMEOUT_MS = int(os.environ.get("APISCOPE_STORE_TIMEOUT_MS", "5000"))
STORE_POOL_SIZE = int(os.environ.get("APISCOPE_STORE_POOL_SIZE", "10"))

# Database used when neither the caller nor the connection string names one.
DEFAULT_DATABASE = "test"

# Default page size for get_documents. A limit of 0 would mean "no limit" to
# the driver, so it is never passed through.
DEFAULT_PAGE_SIZE = 100

ClientFactory = Callable[..., Any]


def failure(exc: ApiScopeError) -> dict[str, Any]:
    return {"success": False, "error": str(exc), "error_type": exc.error_type}


class StoreHandle:
    """A live client owned by :class:`ConnectionRegistry` for one project."""

    def __init__(self, tenant_id: str, client: Any) -> None:
        self.tenant_id = tenant_id
        self.client = client
        self.connected_at = datetime.now(timezone.utc)
        self._active = 0
        self._idle = asyncio.Event()
        self._idle.set()

    def database(self, name: str | None = None) -> Any:
        if name:
            return self.client[name]
        return self.client.get_default_database(DEFAULT_DATABASE)

    @property
    def active_operations(self) -> int:
        return self._active

    @contextlib.asynccontextmanager
    async def in_use(self) -> AsyncIterator["StoreHandle"]:
        self._active += 1
        self._idle.clear()
        try:
            yield self
        finally:
            self._active -= 1
            if self._active == 0:
                self._idle.set()

    async def wait_idle(self) -> None:
        await self._idle.wait()


class ConnectionRegistry:
    """Owns every project's store handle, keyed by project id.

    Args:
        client_factory:              Callable building a client from a URL and
                                     pymongo options (default: ``MongoClient``).
        server_selection_timeout_ms: Connect bound for unreachable stores.
        max_pool_size:               Connection pool size per project.
    """

    def __init__(
        self,
        client_factory: ClientFactory | None = None,
        server_selection_timeout_ms: int = STORE_TIMEOUT_MS,
        max_pool_size: int = STORE_POOL_SIZE,
    ) -> None:
        self._factory = client_factory or MongoClient
        self.server_selection_timeout_ms = server_selection_timeout_ms
        self.max_pool_size = max_pool_size
        self._handles: dict[str, StoreHandle] = {}
        self._pending: dict[str, asyncio.Future[StoreHandle]] = {}

    def __contains__(self, tenant_id: object) -> bool:
        return tenant_id in self._handles

    def get(self, tenant_id: str) -> StoreHandle | None:
        return self._handles.get(tenant_id)

    def tenants(self) -> list[str]:
        return list(self._handles)

    # ── Lifecycle ──────────────────────────────────────────────────

    async def acquire(self, tenant_id: str, connection_string: str) -> StoreHandle:
        """Return the project's handle, connecting on first use.

        Raises:
            StoreConnectionError: if the store cannot be reached.  Nothing is
                registered, so the call can simply be retried.
        """
        handle = self._handles.get(tenant_id)
        if handle is not None:
            return handle
        pending = self._pending.get(tenant_id)
        if pending is None:
            pending = asyncio.ensure_future(self._connect(tenant_id, connection_string))
            self._pending[tenant_id] = pending
        return await asyncio.shield(pending)

    async def connect(self, tenant_id: str, connection_string: str) -> dict[str, Any]:
        """Envelope form of :meth:`acquire` for the request layer."""
        try:
            await self.acquire(tenant_id, connection_string)
        except StoreConnectionError as exc:
            return failure(exc)
        return {"success": True}

    async def release(self, tenant_id: str) -> dict[str, Any]:
        """Close and forget the project's handle; a no-op if there is none.

        Waits for an in-flight connect and for operations already using the
        handle before closing it.
        """
        pending = self._pending.get(tenant_id)
        if pending is not None:
            with contextlib.suppress(StoreConnectionError):
                await asyncio.shield(pending)
        handle = self._handles.pop(tenant_id, None)
        if handle is None:
            return {"success": True}
        await handle.wait_idle()
        try:
            await asyncio.to_thread(handle.client.close)
        except PyMongoError as exc:
            logger.warning("closing store for project %s failed: %s", tenant_id, exc)
            return {"success": False, "error": str(exc), "error_type": "store"}
        logger.info("released store connection for project %s", tenant_id)
        return {"success": True}

    async def close_all(self) -> None:
        """Release every handle (process shutdown)."""
        tenants = set(self._handles) | set(self._pending)
        for tenant_id in tenants:
            await self.release(tenant_id)

    async def test_connection(self, connection_string: str) -> dict[str, Any]:
        """Connect, ping and close without registering anything."""
        try:
            client = await asyncio.to_thread(self._open_client, connection_string)
        except StoreConnectionError as exc:
            return failure(exc)
        await asyncio.to_thread(client.close)
        return {"success": True, "message": "Connection successful"}

    # ── Document operations ────────────────────────────────────────

    async def list_databases(self, tenant_id: str) -> dict[str, Any]:
        def _list(handle: StoreHandle) -> dict[str, Any]:
            return {"databases": list(handle.client.list_databases())}

        return await self._run(tenant_id, "list_databases", _list)

    async def list_collections(self, tenant_id: str, db_name: str | None = None) -> dict[str, Any]:
        def _list(handle: StoreHandle) -> dict[str, Any]:
            return {"collections": list(handle.database(db_name).list_collections())}

        return await self._run(tenant_id, "list_collections", _list)

    async def get_documents(
        self,
        tenant_id: str,
        collection: str,
        db_name: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        skip: int = 0,
        filter: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Return one page of documents; ``total`` ignores *limit*/*skip*."""
        _require_collection(collection)
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        if skip < 0:
            raise ValidationError("skip must be non-negative")
        query = dict(filter or {})

        def _find(handle: StoreHandle) -> dict[str, Any]:
            coll = handle.database(db_name)[collection]
            documents = list(coll.find(query).skip(skip).limit(limit))
            total = coll.count_documents(query)
            return {"documents": documents, "total": total, "limit": limit, "skip": skip}

        return await self._run(tenant_id, "get_documents", _find)

    async def insert_document(
        self,
        tenant_id: str,
        collection: str,
        document: Mapping[str, Any],
        db_name: str | None = None,
    ) -> dict[str, Any]:
        _require_collection(collection)
        if not isinstance(document, Mapping):
            raise ValidationError("document must be an object")
        body = dict(document)

        def _insert(handle: StoreHandle) -> dict[str, Any]:
            result = handle.database(db_name)[collection].insert_one(body)
            return {"inserted_id": result.inserted_id}

        return await self._run(tenant_id, "insert_document", _insert)

    async def update_document(
        self,
        tenant_id: str,
        collection: str,
        filter: Mapping[str, Any] | None,
        patch: Mapping[str, Any] | None,
        db_name: str | None = None,
    ) -> dict[str, Any]:
        """Apply *patch* with ``$set`` to the first document matching *filter*."""
        _require_collection(collection)
        if filter is None or not patch:
            raise ValidationError("Filter and update fields are required")
        query, changes = dict(filter), dict(patch)

        def _update(handle: StoreHandle) -> dict[str, Any]:
            result = handle.database(db_name)[collection].update_one(query, {"$set": changes})
            return {"modified_count": result.modified_count}

        return await self._run(tenant_id, "update_document", _update)

    async def delete_document(
        self,
        tenant_id: str,
        collection: str,
        filter: Mapping[str, Any] | None,
        db_name: str | None = None,
    ) -> dict[str, Any]:
        """Delete at most one document matching *filter*."""
        _require_collection(collection)
        if filter is None:
            raise ValidationError("Filter is required")
        query = dict(filter)

        def _delete(handle: StoreHandle) -> dict[str, Any]:
            result = handle.database(db_name)[collection].delete_one(query)
            return {"deleted_count": result.deleted_count}

        return await self._run(tenant_id, "delete_document", _delete)

    # ── Internal ───────────────────────────────────────────────────

    async def _connect(self, tenant_id: str, connection_string: str) -> StoreHandle:
        try:
            client = await asyncio.to_thread(self._open_client, connection_string)
            handle = StoreHandle(tenant_id, client)
            self._handles[tenant_id] = handle
            logger.info("connected store for project %s", tenant_id)
            return handle
        except StoreConnectionError as exc:
            logger.warning("store connect failed for project %s: %s", tenant_id, exc)
            raise
        finally:
            self._pending.pop(tenant_id, None)

    def _open_client(self, connection_string: str) -> Any:
        """Build a client and force a round-trip so failures surface here."""
        client = None
        try:
            client = self._factory(
                connection_string,
                serverSelectionTimeoutMS=self.server_selection_timeout_ms,
                maxPoolSize=self.max_pool_size,
            )
            client.admin.command("ping")
            return client
        except (PyMongoError, ValueError) as exc:
            if client is not None:
                client.close()
            raise StoreConnectionError(str(exc)) from exc

    async def _run(
        self,
        tenant_id: str,
        operation: str,
        func: Callable[[StoreHandle], dict[str, Any]],
    ) -> dict[str, Any]:
        handle = self._handles.get(tenant_id)
        if handle is None:
            return failure(NotConnectedError(tenant_id))
        async with handle.in_use():
            try:
                payload = await asyncio.to_thread(func, handle)
            except (BSONError, OverflowError) as exc:
                # documents or filters the driver cannot encode to BSON
                logger.info("%s rejected for project %s: %s", operation, tenant_id, exc)
                return failure(ValidationError(str(exc)))
            except PyMongoError as exc:
                logger.warning("%s failed for project %s: %s", operation, tenant_id, exc)
                return {"success": False, "error": str(exc), "error_type": "store"}
        return {"success": True, **payload}


def _require_collection(collection: str) -> None:
    if not collection:
        raise ValidationError("collection name is required")
