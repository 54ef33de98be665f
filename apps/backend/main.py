"""FastAPI entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from apps.backend.deps import build_services
from apps.backend.middleware.trace_id import TraceIdMiddleware, ensure_trace_id
from apps.backend.routers import cron, health, messages, reminders, webhooks
from apps.backend.utils.api_errors import error_response

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.services = build_services()
    yield
    services = getattr(app.state, "services", None)
    if services is not None:
        services.registry.close()


app = FastAPI(
    title="Clinic Messaging",
    description="SMS, email, push and in-app delivery with appointment reminders",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(TraceIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["System"])
app.include_router(messages.router, prefix="/v1/messages", tags=["Messages"])
app.include_router(reminders.router, prefix="/v1", tags=["Reminders"])
app.include_router(webhooks.router, prefix="/v1/webhooks", tags=["Webhooks"])
app.include_router(cron.router, prefix="/v1/cron", tags=["Cron"])


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail
    if not isinstance(detail, str):
        detail = str(detail) if detail else "http_error"
    return error_response(request, exc.status_code, "http_error", detail)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    trace_id = ensure_trace_id(request.scope)
    logger.exception("Unhandled exception trace_id=%s path=%s", trace_id, request.url.path)
    detail_safe = str(exc)[:200].replace("'", "")
    return error_response(request, 500, "internal_error", "Internal server error", detail_safe)
