from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.routers import functions, identity, orders, storage
from app.domain.errors import OrderTrackingError
from app.infra import signing
from app.infra.audit import AuditMiddleware
from app.infra.db import check_db_ready
from app.infra.log import configure_logging
from app.infra.redis_state import check_redis_ready

logger = logging.getLogger(__name__)

CORS_ALLOW_ORIGINS = [
    origin.strip() for origin in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",") if origin.strip()
]


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    configure_logging()
    # Fail the boot, not the first scan, when the signing secret is missing.
    signing.get_signer()
    logger.info("order tracker started")
    yield


app = FastAPI(
    title="order-tracker",
    description="Multi-tenant order tracking: signed QR lifecycle, load activation and driver locations.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(AuditMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)


@app.exception_handler(OrderTrackingError)
async def handle_order_tracking_error(request: Request, exc: OrderTrackingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg', 'invalid request')}" if location else "invalid request"
    return JSONResponse(status_code=400, content={"error": "validation_error", "message": message})


app.include_router(functions.router, tags=["functions"])
app.include_router(identity.router, prefix="/api/identity", tags=["identity"])
app.include_router(orders.router, prefix="/api/orders", tags=["orders"])
app.include_router(orders.ws_router, tags=["orders-ws"])
app.include_router(storage.router, prefix="/storage", tags=["storage"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    redis_ok = check_redis_ready()
    checks = {
        "db": "ok" if db_ok else "fail",
        "redis": "ok" if redis_ok else "fail",
    }
    if not (db_ok and redis_ok):
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
