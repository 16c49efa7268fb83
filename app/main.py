from contextlib import asynccontextmanager
import logging
import traceback

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from sqlalchemy import text

from app.database import engine, Base, SessionLocal
import app.models  # noqa: F401  # Ensure all SQLAlchemy models are registered
from app.routers import retrospectives as retrospectives_router
from app.routers import realtime as realtime_router
from app.utils.logging_config import setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    Base.metadata.create_all(bind=engine)
    logging.getLogger("app").info("Database initialized.")
    yield
    logging.getLogger("app").info("Application shutdown.")


app = FastAPI(
    title="Retroboard",
    description="Real-time collaborative retrospective sessions",
    lifespan=lifespan,
)


async def audit_action_middleware(
    request: Request, call_next: RequestResponseEndpoint
) -> Response:
    method = request.method.upper()
    if method not in {"POST", "PUT", "PATCH", "DELETE"}:
        return await call_next(request)

    path = request.url.path
    if not path.startswith("/api/"):
        return await call_next(request)

    response = await call_next(request)

    logger = logging.getLogger("audit")
    details = {
        "method": method,
        "path": path,
        "status": response.status_code,
        "user": request.headers.get("x-user-id") or "unknown",
    }
    logger.info("Audit action: %s", details)
    return response


app.add_middleware(BaseHTTPMiddleware, dispatch=audit_action_middleware)

# Include routers
app.include_router(retrospectives_router.router)
app.include_router(realtime_router.router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger = logging.getLogger("app")
    logger.error(f"Global exception: {str(exc)}\n{traceback.format_exc()}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal Server Error. Please check logs."},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    logger = logging.getLogger("app")
    if exc.status_code >= 500:
        logger.error(
            f"HTTP {exc.status_code} error: {exc.detail}\n{traceback.format_exc()}"
        )
    else:
        logger.info(f"HTTP {exc.status_code}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger = logging.getLogger("app")
    errors = exc.errors()

    # Only the messages; the raw error objects are not always JSON serializable
    error_messages = [err["msg"] for err in errors]

    logger.warning(f"Validation error: {error_messages}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": error_messages},
    )


@app.get("/health", tags=["healthcheck"])
async def health_check():
    try:
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        db.close()
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        logging.getLogger("app").error("Health check database connection error: %s", e)
        raise HTTPException(
            status_code=503, detail=f"Database connection failed: {str(e)}"
        )
