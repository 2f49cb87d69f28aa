from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ncrelay.apps.api.errors import (
    bulk_limit_exception_handler,
    http_exception_handler,
    notification_not_found_handler,
    starlette_http_exception_handler,
    store_error_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from ncrelay.apps.api.response import API_VERSION
from ncrelay.apps.api.routes.health import router as health_router
from ncrelay.apps.api.routes.queue_admin import router as queue_admin_router
from ncrelay.core.config import get_settings
from ncrelay.core.errors import BulkLimitExceeded, NotificationNotFound, StoreError
from ncrelay.core.logging import configure_logging
from ncrelay.services.telemetry import increment_counter


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="NCRelay API", docs_url=None, redoc_url=None, openapi_url=None)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        # Propagate a request id to responses and count API traffic by status family.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        started = time.monotonic()
        response = await call_next(request)
        increment_counter(f"api.responses.{response.status_code // 100}xx")
        response.headers.setdefault("X-Request-Id", request_id)
        response.headers.setdefault("X-Response-Time-Ms", f"{(time.monotonic() - started) * 1000.0:.1f}")
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(NotificationNotFound)
    async def _notification_not_found_handler(request: Request, exc: NotificationNotFound):
        return await notification_not_found_handler(request, exc)

    @app.exception_handler(BulkLimitExceeded)
    async def _bulk_limit_exception_handler(request: Request, exc: BulkLimitExceeded):
        return await bulk_limit_exception_handler(request, exc)

    @app.exception_handler(StoreError)
    async def _store_error_handler(request: Request, exc: StoreError):
        return await store_error_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(queue_admin_router, prefix=f"/{API_VERSION}")
    # Unversioned liveness probe for load balancers.
    app.include_router(health_router, include_in_schema=False)

    # Serve versioned OpenAPI JSON and docs endpoints for v1 consumers.
    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="NCRelay API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Inject bearer auth into the schema when operator routes are token protected.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title="NCRelay API",
            version=API_VERSION,
            routes=app.routes,
        )
        if settings.operator_api_token:
            components = schema.setdefault("components", {})
            security_schemes = components.setdefault("securitySchemes", {})
            security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
            for path, operations in schema.get("paths", {}).items():
                if not path.startswith("/v1/admin/"):
                    continue
                for operation in operations.values():
                    operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
