"""Watched-API router: single URLs checked on demand."""

from __future__ import annotations

import logging
import sqlite3

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from apiscope.db import get_db, init_db
from apiscope.errors import NotFoundError, ValidationError
from apiscope.watch import WatchRegistry, fetch_api

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["watch"])


def _db() -> sqlite3.Connection:
    init_db()
    return get_db()


class WatchCreate(BaseModel):
    url: str = ""


@router.post("/add", status_code=201)
async def add_api(req: WatchCreate):
    try:
        api = WatchRegistry(_db()).add(req.url)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"message": "API added successfully", "api": api}


@router.get("/list")
async def list_apis():
    apis = WatchRegistry(_db()).list_apis()
    return {"count": len(apis), "apis": apis}


@router.get("/fetch/{api_id}")
async def fetch(api_id: str):
    registry = WatchRegistry(_db())
    try:
        api = registry.get(api_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="API not found") from exc

    outcome = await fetch_api(api["url"])
    api = registry.record_fetch(api_id, outcome)
    if outcome.status == "success":
        return {
            "status": "success",
            "response_time_ms": outcome.response_time_ms,
            "data": outcome.data,
            "status_code": outcome.status_code,
            "api": api,
        }
    return {
        "status": "error",
        "response_time_ms": outcome.response_time_ms,
        "error": outcome.error,
        "api": api,
    }


@router.delete("/delete/{api_id}")
async def delete_api(api_id: str):
    try:
        WatchRegistry(_db()).delete(api_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="API not found") from exc
    return {"message": "API deleted successfully"}
