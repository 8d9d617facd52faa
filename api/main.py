"""
Contact Identity Service
FastAPI Application Entry Point

Run locally with:

    python -m api.main

Settings (port, database path, timeouts) come from the environment or .env,
see config/settings.py.
"""
# Load environment variables from .env file first, before any imports
from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi import HTTPException

from api.routes import identify
from config.settings import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    # Startup: open the contact store so schema problems surface immediately
    try:
        from api.services.contact_store import get_contact_store
        store = get_contact_store()
        logger.info(f"Contact store ready at {store.db_path}")
    except Exception as e:
        logger.error(f"Failed to open contact store: {e}")

    yield  # Application runs here

    logger.info("Identity service stopped")


app = FastAPI(
    title="Contact Identity Service",
    description="Consolidates partial contact observations into primary/secondary clusters",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware for browser clients
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(identify.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log method, path, status and duration of every request."""
    start = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - start) * 1000
    logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f}ms)")
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Convert validation errors to 400 with clear messages."""
    errors = exc.errors()

    # Sanitize errors for JSON serialization (convert bytes to string, drop exception objects)
    sanitized_errors = []
    for error in errors:
        sanitized = dict(error)
        if "input" in sanitized and isinstance(sanitized["input"], bytes):
            sanitized["input"] = sanitized["input"].decode("utf-8", errors="replace")
        if "ctx" in sanitized:
            sanitized["ctx"] = {k: str(v) for k, v in sanitized["ctx"].items()}
        sanitized_errors.append(sanitized)

    # Missing body, malformed JSON, or a body that is not an object
    for error in errors:
        loc = list(error.get("loc", []))
        if loc == ["body"] or error.get("type") in ("json_invalid", "model_attributes_type"):
            return JSONResponse(
                status_code=400,
                content={"error": identify.EMPTY_BODY_ERROR, "detail": sanitized_errors}
            )
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "detail": sanitized_errors}
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Report HTTP errors as {"error": message}."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.get("/health")
async def health_check():
    """Health check endpoint that verifies the contact store answers."""
    from api.services.contact_store import get_contact_store

    checks = {
        "contact_store": await asyncio.to_thread(get_contact_store().ping),
    }

    all_healthy = all(checks.values())

    return {
        "status": "healthy" if all_healthy else "degraded",
        "service": "contact-identity",
        "checks": checks,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)
