from contextlib import asynccontextmanager
from typing import Optional
import json
import logging
import traceback

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from deliberation.auth.auth import (
    ACCESS_TOKEN_TYPE,
    decode_token,
    token_from_request,
)
from deliberation.database import Base, SessionLocal, engine
from deliberation.errors import DeliberationError, Unauthenticated
import deliberation.models  # noqa: F401  # Ensure all SQLAlchemy models are registered
from deliberation.routers import control as control_router
from deliberation.routers import realtime as realtime_router
from deliberation.routers import sessions as sessions_router
from deliberation.routers import voting as voting_router
from deliberation.utils.logging_config import setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    Base.metadata.create_all(bind=engine)
    logging.getLogger("deliberation").info("Database initialized.")
    yield
    logging.getLogger("deliberation").info("Application shutdown.")


app = FastAPI(
    title="Deliberation",
    description="Session synchronization and voting for facilitated candidate review",
    lifespan=lifespan,
)


def _summarize_payload(body: bytes) -> Optional[str]:
    if not body:
        return None
    parsed = json.loads(body.decode("utf-8"))
    if not isinstance(parsed, dict):
        return type(parsed).__name__
    redacted = {}
    for key, value in parsed.items():
        lower_key = str(key).lower()
        if "password" in lower_key or "token" in lower_key or "credential" in lower_key:
            redacted[key] = "***"
        elif isinstance(value, (str, int, float, bool, type(None))):
            redacted[key] = value
        else:
            redacted[key] = type(value).__name__
    return json.dumps(redacted, ensure_ascii=True)


async def audit_action_middleware(
    request: Request, call_next: RequestResponseEndpoint
) -> Response:
    method = request.method.upper()
    if method not in {"POST", "PUT", "PATCH", "DELETE"}:
        return await call_next(request)

    path = request.url.path
    if not path.startswith("/api/"):
        return await call_next(request)

    token = token_from_request(request)
    if not token:
        return await call_next(request)
    try:
        identity = decode_token(token, expected_type=ACCESS_TOKEN_TYPE)
    except Unauthenticated:
        return await call_next(request)
    if not identity.is_facilitator:
        return await call_next(request)

    payload_summary: Optional[str] = None
    if request.headers.get("content-type", "").lower().startswith("application/json"):
        try:
            payload_summary = _summarize_payload(await request.body())
        except (UnicodeDecodeError, ValueError):
            payload_summary = "unavailable"

    response = await call_next(request)

    details = {
        "method": method,
        "path": path,
        "status": response.status_code,
        "user": identity.user_id,
        "role": identity.role.value,
    }
    if payload_summary:
        details["payload"] = payload_summary
    logging.getLogger("audit").info("Audit action: %s", details)
    return response


app.add_middleware(BaseHTTPMiddleware, dispatch=audit_action_middleware)

# Include routers
app.include_router(sessions_router.router)
app.include_router(control_router.router)
app.include_router(voting_router.router)
app.include_router(realtime_router.router)


@app.exception_handler(DeliberationError)
async def deliberation_exception_handler(request: Request, exc: DeliberationError):
    logger = logging.getLogger("deliberation")
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
    else:
        logger.info("%s on %s: %s", exc.code, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger = logging.getLogger("deliberation")
    logger.error("Global exception: %s\n%s", exc, traceback.format_exc())
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal Server Error. Please check logs."},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger = logging.getLogger("deliberation")
    # Only the messages, so the response is always serializable.
    error_messages = [err["msg"] for err in exc.errors()]
    logger.warning("Validation error: %s", error_messages)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": error_messages},
    )


@app.get("/health", tags=["healthcheck"])
async def health_check():
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except Exception as exc:  # noqa: BLE001
        logging.getLogger("deliberation").error(
            "Health check database connection error: %s", exc
        )
        raise HTTPException(
            status_code=503, detail=f"Database connection failed: {exc}"
        ) from exc
    return {"status": "healthy", "database": "connected"}
