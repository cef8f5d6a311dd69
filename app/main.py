"""
SignFlow - Main FastAPI Application
Backend for multi-party document signing.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from app.config import get_settings, get_cors_origins
from app.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler,
)
from app.utils.logging import RequestIdMiddleware, setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    setup_logging(
        environment=settings.environment,
        level=logging.DEBUG if settings.debug else logging.INFO,
    )
    logger.info(
        f"Starting SignFlow v1.0.0 ({settings.environment}, finalization={settings.finalization_mode})"
    )
    yield
    logger.info("Shutting down SignFlow")


app = FastAPI(
    title="SignFlow",
    description="""Backend service for collecting signatures on PDF documents.

## Authentication

### Document owners
- `Authorization: Bearer <google_id_token>`, or
- `X-Admin-Secret` + `X-User-ID` (+ optional `X-User-Email`, `X-User-Name`) for server-to-server calls

### Signers
No account. The signing token from the invitation link is sent in the request body of `/sign/*`.

### Internal
`X-Internal-Secret` on `/internal/v1/*`.
""",
    version="1.0.0",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "documents", "description": "Document owner operations"},
        {"name": "signing", "description": "Signer operations (public, token-based)"},
        {"name": "internal", "description": "Service-to-service endpoints"},
        {"name": "health", "description": "Health check endpoints"},
    ],
)


from app.routers import documents, health, internal, signing  # noqa: E402

# Middleware
app.add_middleware(RequestIdMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(ValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Routers
app.include_router(health.router)
app.include_router(documents.router)
app.include_router(signing.router)   # Public signing API
app.include_router(internal.router)  # Internal service-to-service API


# Custom OpenAPI schema with security schemes
def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema

    from fastapi.openapi.utils import get_openapi

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
        tags=app.openapi_tags,
    )

    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "BearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
            "description": "Google ID Token of the document owner",
        },
        "AdminSecret": {
            "type": "apiKey",
            "in": "header",
            "name": "X-Admin-Secret",
            "description": "Admin API secret for server-to-server calls",
        },
        "UserID": {
            "type": "apiKey",
            "in": "header",
            "name": "X-User-ID",
            "description": "Owner id (required with X-Admin-Secret)",
        },
    }

    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", 8000)),
        reload=get_settings().debug,
    )
