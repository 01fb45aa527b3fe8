from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.openapi.utils import get_openapi
from fastapi.staticfiles import StaticFiles

from genstudio.apps.api.errors import install_exception_handlers
from genstudio.apps.api.response import API_VERSION
from genstudio.apps.api.routes.artifacts import router as artifacts_router
from genstudio.apps.api.routes.checkout import router as checkout_router
from genstudio.apps.api.routes.credits import router as credits_router
from genstudio.apps.api.routes.health import router as health_router
from genstudio.apps.api.routes.prompt_assist import router as prompt_assist_router
from genstudio.apps.api.routes.shots import router as shots_router
from genstudio.apps.api.routes.tools import router as tools_router
from genstudio.apps.api.routes.webhooks import router as webhooks_router
from genstudio.apps.api.routes.workspaces import router as workspaces_router
from genstudio.core.config import get_settings
from genstudio.core.logging import configure_logging
from genstudio.providers.storage.factory import get_object_store
from genstudio.providers.storage.local import LOCAL_MEDIA_MOUNT, LocalObjectStore
from genstudio.services.events import CreditEventBus


logger = logging.getLogger(__name__)

_PUBLIC_PATHS = {
    "/v1/health",
    "/v1/health/details",
    "/v1/webhooks/provider",
    "/v1/webhooks/payments",
    "/v1/webhooks/identity",
}

# Webhooks carry signed callbacks from the provider, payment processor and identity service.
_ROUTERS = (
    health_router,
    credits_router,
    tools_router,
    workspaces_router,
    shots_router,
    artifacts_router,
    checkout_router,
    prompt_assist_router,
    webhooks_router,
)


def _bearer_openapi(app: FastAPI, server_url: str) -> dict:
    if app.openapi_schema:
        return app.openapi_schema
    schema = get_openapi(title=app.title, version=API_VERSION, routes=app.routes)
    schema["servers"] = [{"url": server_url}]
    schema.setdefault("components", {}).setdefault("securitySchemes", {})["BearerAuth"] = {
        "type": "http",
        "scheme": "bearer",
        "bearerFormat": "JWT",
    }
    for path, operations in schema.get("paths", {}).items():
        if path not in _PUBLIC_PATHS:
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
    app.openapi_schema = schema
    return schema


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="GenStudio API")
    # Balance-change subscribers (e.g. a UI push channel) register here.
    app.state.credit_events = CreditEventBus()

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    install_exception_handlers(app)

    for router in _ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")

    if settings.object_store_provider == "local":
        store = get_object_store()
        if isinstance(store, LocalObjectStore):
            store.root.mkdir(parents=True, exist_ok=True)
            app.mount(LOCAL_MEDIA_MOUNT, StaticFiles(directory=str(store.root)), name="media")

    app.openapi = lambda: _bearer_openapi(app, settings.public_base_url)  # type: ignore[method-assign]

    return app


app = create_app()
