"""
FastAPI entry point.

    uvicorn billtrack.main:app --reload
"""
import logging
from typing import List

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic_settings import BaseSettings


class AppSettings(BaseSettings):
    """Application flags, read from the environment and `.env`."""
    log_level: str = "INFO"
    auto_create_tables: bool = False
    api_docs_enabled: bool = False
    cors_allow_origins: str = ""  # comma separated
    frontend_url: str = ""
    app_url: str = ""

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def cors_origins(self) -> List[str]:
        origins = [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]
        if origins:
            return origins
        fallback = self.frontend_url or self.app_url
        return [fallback] if fallback else ["http://localhost:3000"]


app_settings = AppSettings()

logging.basicConfig(
    level=app_settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

from billtrack.database import engine, Base
from billtrack.db_helpers import (
    authenticate_internal_request_from_headers,
    clear_request_user_id,
    set_request_user_id,
)
from billtrack.routes import api_router
from billtrack.services.errors import RecurringServiceError

logger = logging.getLogger(__name__)

# Schemas are normally created by migrations; this is for local runs only
if app_settings.auto_create_tables:
    logger.warning("AUTO_CREATE_TABLES is enabled; creating tables via SQLAlchemy metadata.")
    Base.metadata.create_all(bind=engine)

docs_enabled = app_settings.api_docs_enabled
app = FastAPI(
    title="Billtrack API",
    description="Recurring service detection and payment reconciliation",
    version="0.1.0",
    docs_url="/docs" if docs_enabled else None,
    redoc_url="/redoc" if docs_enabled else None,
    openapi_url="/openapi.json" if docs_enabled else None,
)


def _requires_identity(request: Request) -> bool:
    return request.method != "OPTIONS" and request.url.path.startswith("/api/")


@app.middleware("http")
async def signed_identity_middleware(request: Request, call_next):
    """Authenticate /api requests and bind the user id to the request context."""
    if not _requires_identity(request):
        return await call_next(request)

    path = request.url.path
    if request.url.query:
        path = f"{path}?{request.url.query}"

    try:
        user_id = authenticate_internal_request_from_headers(request.method, path, request.headers)
    except HTTPException as exc:
        logger.warning(f"[AUTH] Rejected {request.method} {request.url.path}: {exc.detail}")
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    token = set_request_user_id(user_id)
    try:
        return await call_next(request)
    finally:
        clear_request_user_id(token)


@app.exception_handler(RecurringServiceError)
async def recurring_service_error_handler(request: Request, exc: RecurringServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


app.add_middleware(
    CORSMiddleware,
    allow_origins=app_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api")


@app.get("/")
def root():
    payload = {"message": "Billtrack API"}
    if docs_enabled:
        payload["docs"] = "/docs"
    return payload


@app.get("/health")
def health():
    return {"status": "healthy"}
