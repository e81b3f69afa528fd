"""Projects API router for apiscope.

Provides RESTful endpoints for registering projects, discovering and
monitoring their routes, and administering each project's document store.

Documents and filters travel as MongoDB Extended JSON, so ``ObjectId`` and
dates round-trip (``{"_id": {"$oid": "..."}}``).
"""

from __future__ import annotations

import json
import logging
from typing import Any

from bson import json_util
from bson.errors import BSONError
from fastapi import APIRouter, BackgroundTasks, Body, HTTPException, Query
from pydantic import BaseModel

from apiscope.errors import HTTP_STATUS, ApiScopeError, NotFoundError, ValidationError
from apiscope.projects import ProjectService
from apiscope.store.manager import DEFAULT_PAGE_SIZE

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/projects", tags=["projects"])

_SERVICE: ProjectService | None = None


# ── Helper ────────────────────────────────────────────────────────

def _service() -> ProjectService:
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = ProjectService()
    return _SERVICE


async def shutdown() -> None:
    """Close every store connection held by the shared service."""
    if _SERVICE is not None:
        await _SERVICE.shutdown()


def _http_error(exc: ApiScopeError, message: str | None = None) -> HTTPException:
    status = HTTP_STATUS.get(exc.error_type, 500)
    return HTTPException(status_code=status, detail={"message": message or str(exc), "error": str(exc)})


def _store_result(result: dict[str, Any], message: str) -> dict[str, Any]:
    """Unwrap a store envelope or raise the matching HTTP error."""
    if not result["success"]:
        status = HTTP_STATUS.get(result.get("error_type", ""), 500)
        raise HTTPException(status_code=status, detail={"message": message, "error": result["error"]})
    payload = {k: v for k, v in result.items() if k != "success"}
    return json.loads(json_util.dumps(payload))


def _parse_ejson(text: str, what: str) -> Any:
    """Decode Extended JSON; malformed input (bad $oid, unknown $-types) is a 400."""
    try:
        value = json_util.loads(text)
    except (ValueError, TypeError, BSONError) as exc:
        raise HTTPException(
            status_code=400, detail={"message": f"Invalid {what}", "error": str(exc)}
        ) from exc
    if not isinstance(value, dict):
        raise HTTPException(status_code=400, detail={"message": f"Invalid {what}", "error": "expected an object"})
    return value


def _from_ejson(value: Any, what: str) -> Any:
    return _parse_ejson(json.dumps(value), what)


async def _connected(project_id: str) -> ProjectService:
    service = _service()
    try:
        result = await service.connect_store(project_id)
    except NotFoundError as exc:
        raise _http_error(exc, "Project not found") from exc
    if not result["success"]:
        raise HTTPException(
            status_code=500,
            detail={"message": "Failed to connect to store", "error": result["error"]},
        )
    return service


# ══════════════════════════════════════════════════════════════════
# PROJECTS
# ══════════════════════════════════════════════════════════════════

class ProjectCreate(BaseModel):
    name: str = ""
    api_url: str = ""
    store_url: str = ""


class ConnectionTest(BaseModel):
    store_url: str = ""


@router.post("/add", status_code=201)
async def add_project(req: ProjectCreate, background: BackgroundTasks):
    service = _service()
    try:
        project = await service.add_project(req.name, req.api_url, req.store_url)
    except ValidationError as exc:
        raise _http_error(exc) from exc
    except ApiScopeError as exc:
        raise HTTPException(
            status_code=400,
            detail={"message": "Failed to connect to store", "error": str(exc)},
        ) from exc
    background.add_task(service.discover_in_background, project["id"])
    return {"message": "Project added successfully", "project": project}


@router.post("/test-connection")
async def test_connection(req: ConnectionTest):
    if not req.store_url:
        raise HTTPException(status_code=400, detail="store_url is required")
    return await _service().connections.test_connection(req.store_url)


@router.get("/list")
async def list_projects():
    projects = _service().list_projects()
    return {"count": len(projects), "projects": projects}


@router.get("/{project_id}")
async def get_project(project_id: str):
    try:
        return {"project": _service().get_project(project_id)}
    except NotFoundError as exc:
        raise _http_error(exc, "Project not found") from exc


@router.delete("/{project_id}")
async def delete_project(project_id: str):
    try:
        await _service().remove(project_id)
    except NotFoundError as exc:
        raise _http_error(exc, "Project not found") from exc
    return {"message": "Project deleted successfully"}


# ══════════════════════════════════════════════════════════════════
# DISCOVERY & MONITORING
# ══════════════════════════════════════════════════════════════════

@router.post("/{project_id}/discover-routes")
async def discover_routes(project_id: str):
    try:
        result, project = await _service().discover(project_id)
    except NotFoundError as exc:
        raise _http_error(exc, "Project not found") from exc
    if not result.success:
        raise HTTPException(
            status_code=500,
            detail={"message": "Failed to discover routes", "error": result.error},
        )
    data = result.to_dict()
    return {
        "message": "Routes discovered successfully",
        "routes": data["routes"],
        "probed": data["probed"],
        "complete": data["complete"],
        "project": project,
    }


@router.post("/{project_id}/monitor")
async def monitor_routes(project_id: str):
    try:
        result, metrics, project = await _service().monitor_project(project_id)
    except ApiScopeError as exc:
        raise _http_error(exc) from exc
    return {
        "message": "Monitoring completed",
        "results": [r.to_dict() for r in result.results],
        "batch": result.metrics.to_dict(),
        "api_metrics": metrics.to_dict(),
        "complete": result.complete,
        "project": project,
    }


# ══════════════════════════════════════════════════════════════════
# STORE ADMINISTRATION
# ══════════════════════════════════════════════════════════════════

class DocumentUpdate(BaseModel):
    filter: dict[str, Any] | None = None
    update: dict[str, Any] | None = None


class DocumentDelete(BaseModel):
    filter: dict[str, Any] | None = None


@router.get("/{project_id}/store/databases")
async def list_databases(project_id: str):
    service = await _connected(project_id)
    result = await service.connections.list_databases(project_id)
    return _store_result(result, "Failed to list databases")


@router.get("/{project_id}/store/{db_name}/collections")
async def list_collections(project_id: str, db_name: str):
    service = await _connected(project_id)
    result = await service.connections.list_collections(project_id, db_name)
    return _store_result(result, "Failed to list collections")


@router.get("/{project_id}/store/{db_name}/{collection}/documents")
async def get_documents(
    project_id: str,
    db_name: str,
    collection: str,
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=0, description="0 selects the default page size"),
    skip: int = Query(0, ge=0),
    filter: str | None = Query(None, description="Extended JSON filter"),
):
    query = _parse_ejson(filter, "filter") if filter else None
    service = await _connected(project_id)
    result = await service.connections.get_documents(
        project_id, collection, db_name=db_name, limit=limit or DEFAULT_PAGE_SIZE, skip=skip, filter=query,
    )
    return _store_result(result, "Failed to fetch documents")


@router.post("/{project_id}/store/{db_name}/{collection}/documents", status_code=201)
async def insert_document(
    project_id: str,
    db_name: str,
    collection: str,
    document: dict[str, Any] = Body(...),
):
    body = _from_ejson(document, "document")
    service = await _connected(project_id)
    result = await service.connections.insert_document(
        project_id, collection, body, db_name=db_name,
    )
    return {"message": "Document inserted successfully", **_store_result(result, "Failed to insert document")}


@router.put("/{project_id}/store/{db_name}/{collection}/documents")
async def update_document(project_id: str, db_name: str, collection: str, req: DocumentUpdate):
    if req.filter is None or not req.update:
        raise HTTPException(status_code=400, detail="Filter and update fields are required")
    query, patch = _from_ejson(req.filter, "filter"), _from_ejson(req.update, "update")
    service = await _connected(project_id)
    result = await service.connections.update_document(
        project_id, collection, query, patch, db_name=db_name,
    )
    return {"message": "Document updated successfully", **_store_result(result, "Failed to update document")}


@router.delete("/{project_id}/store/{db_name}/{collection}/documents")
async def delete_document(project_id: str, db_name: str, collection: str, req: DocumentDelete):
    if req.filter is None:
        raise HTTPException(status_code=400, detail="Filter is required")
    query = _from_ejson(req.filter, "filter")
    service = await _connected(project_id)
    result = await service.connections.delete_document(
        project_id, collection, query, db_name=db_name,
    )
    return {"message": "Document deleted successfully", **_store_result(result, "Failed to delete document")}
