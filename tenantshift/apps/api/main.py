from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantshift.apps.api.errors import (
    http_exception_handler,
    tenantshift_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantshift.apps.api.response import API_VERSION
from tenantshift.apps.api.routes.admin import router as admin_router
from tenantshift.apps.api.routes.health import router as health_router
from tenantshift.apps.api.routes.ops import router as ops_router
from tenantshift.core.errors import TenantShiftError
from tenantshift.core.logging import configure_logging


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="TenantShift Admin API", version=API_VERSION)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(TenantShiftError, tenantshift_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(admin_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
