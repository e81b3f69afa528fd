"""apiscope HTTP service.

Exposes:
  /projects/...   — project registration, route discovery, monitoring, store admin
  /api/...        — watched single APIs
  GET  /health    — liveness check

Start with::

    python -m apiscope.server
    # or
    uvicorn apiscope.server:app --host 0.0.0.0 --port 5000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apiscope import __version__, projects_api, watch_api
from apiscope.db import close_db, init_db
from apiscope.errors import HTTP_STATUS, ApiScopeError

logger = logging.getLogger(__name__)

# Closed allow-list; nothing outside it gets CORS headers.
CORS_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("APISCOPE_CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    yield
    await projects_api.shutdown()
    close_db()


# ──────────────────────────────────────────────────────────────────
# FastAPI app
# ──────────────────────────────────────────────────────────────────

app = FastAPI(title="apiscope", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

app.include_router(projects_api.router)
app.include_router(watch_api.router)


@app.exception_handler(ApiScopeError)
async def apiscope_error(request: Request, exc: ApiScopeError) -> JSONResponse:
    status = HTTP_STATUS.get(exc.error_type, 500)
    logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"message": str(exc), "error_type": exc.error_type})


@app.exception_handler(Exception)
async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Something went wrong!", "error": str(exc)})


@app.get("/health")
async def health():
    return {"status": "ok", "message": "Server is running"}


# ──────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────

def main():
    import uvicorn
    host = os.environ.get("APISCOPE_HOST", "0.0.0.0")
    port = int(os.environ.get("APISCOPE_PORT", "5000"))
    logging.basicConfig(level=os.environ.get("APISCOPE_LOG_LEVEL", "INFO").upper())
    logger.info("Starting apiscope server on %s:%d", host, port)
    uvicorn.run("apiscope.server:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
