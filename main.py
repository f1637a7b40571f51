import os
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError
from pymongo.errors import DuplicateKeyError, PyMongoError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
from config import settings
from database import collection_name, create_document, ensure_indexes
from exceptions import SchoolError
from logging_config import generate_request_id, logger, set_request_id, set_user_id
from routers import (
    attendance, auth, classes, dashboard, exams, fees, library, marks, messages, notices,
    reports, sections, sessions, students, study_materials, subjects, teachers, users,
)
from schemas import AuditLog


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            ensure_indexes()
        except PyMongoError as e:
            logger.log_error_with_context(e, "ensure_indexes")
    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} starting ({settings.ENVIRONMENT})")
    yield


app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.rate_limit],
    enabled=settings.RATE_LIMIT_ENABLED,
)
app.state.limiter = limiter

app.add_middleware(SlowAPIMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


# -------------------- Static files -------------------- #
os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR), name="uploads")


# -------------------- Middleware -------------------- #

AUDITED_METHODS = {"POST", "PUT", "DELETE"}


@app.middleware("http")
async def audit_middleware(request: Request, call_next):
    """Record successful writes under /api in the audit log."""
    request.state.user = None
    response = await call_next(request)
    if (
        request.method in AUDITED_METHODS
        and request.url.path.startswith("/api/")
        and response.status_code < 400
        and database.db is not None
    ):
        user = request.state.user or {}
        entry = AuditLog(
            user=user.get("_id"),
            role=user.get("role"),
            action=request.url.path.split("/")[2],
            path=request.url.path,
            method=request.method,
            status=response.status_code,
            ip=request.client.host if request.client else None,
        )
        try:
            create_document(collection_name(AuditLog), entry.to_document())
        except PyMongoError as e:
            logger.log_error_with_context(e, "audit_middleware", path=request.url.path)
    return response


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or generate_request_id()
    set_request_id(request_id)
    set_user_id("")
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    response.headers["X-Request-ID"] = request_id
    logger.log_request(
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
        client_ip=request.client.host if request.client else None,
    )
    return response


# -------------------- Exception handlers -------------------- #

def _field_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    fields = []
    for err in errors:
        loc = [str(part) for part in err.get("loc", ())]
        if loc and loc[0] in ("body", "query", "path", "header", "form"):
            loc = loc[1:]
        message = err.get("msg", "Invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        fields.append({"field": ".".join(loc), "message": message})
    return fields


def _error(status_code: int, message: str, errors: Optional[List[Dict[str, str]]] = None) -> JSONResponse:
    body: Dict[str, Any] = {"success": False, "message": message}
    if errors:
        body["errors"] = errors
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(SchoolError)
async def school_error_handler(request: Request, exc: SchoolError):
    if exc.status_code >= 500:
        logger.log_error_with_context(exc, f"{request.method} {request.url.path}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return _error(400, "Validation failed", _field_errors(exc.errors()))


@app.exception_handler(ValidationError)
async def model_validation_handler(request: Request, exc: ValidationError):
    return _error(400, "Validation failed", _field_errors(exc.errors()))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return _error(404, "Route not found")
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit exceeded for {get_remote_address(request)}: {exc.detail}")
    return _error(429, "Too many requests from this IP, please try again later.")


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    fields = list(((exc.details or {}).get("keyValue") or {}).keys())
    errors = [{"field": f, "message": f"Duplicate value for {f}"} for f in fields]
    return _error(400, "Duplicate value", errors)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.log_error_with_context(exc, f"{request.method} {request.url.path}")
    return _error(500, "Server error")


# -------------------- Routes -------------------- #

for module in (
    auth, users, sessions, classes, sections, subjects, students, teachers, exams, marks,
    attendance, fees, library, study_materials, messages, notices, reports, dashboard,
):
    app.include_router(module.router, prefix="/api")


@app.get("/")
@limiter.exempt
def read_root():
    return {"success": True, "message": f"{settings.APP_NAME} is running"}


@app.get("/api/health")
@limiter.exempt
def health():
    return {
        "success": True,
        "message": "School Management System API is running",
        "timestamp": datetime.utcnow().isoformat(),
        "environment": settings.ENVIRONMENT,
    }


# -------------------- Run -------------------- #

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
