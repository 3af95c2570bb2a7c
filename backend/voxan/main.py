import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from .config import AppSettings, get_settings
from .deps import Services, build_services
from .logging_config import configure_logging
from .routers import api, vapi


def create_app(
    settings: AppSettings | None = None, services: Services | None = None
) -> FastAPI:
    configure_logging()
    logger = logging.getLogger(__name__)
    if services is None:
        settings = settings or get_settings()
        services = build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.services.close()

    app = FastAPI(
        title="VoxAn Booking Server",
        description="Webhook backend for the VoxAn voice agent: availability, bookings and leads.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    # Log only high-level, non-sensitive configuration.
    logger.info(
        "app_config_summary_sanitized",
        extra={
            "calendar_stub": services.settings.calendar.use_stub,
            "storage": services.storage_backend,
            "sms_provider": services.settings.sms.provider,
            "verify_signatures": services.settings.vapi.verify_signatures,
        },
    )

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = rid
        start = time.time()
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        logger.info(
            "request_completed",
            extra={
                "path": request.url.path,
                "method": request.method,
                "status_code": response.status_code,
                "duration_ms": round((time.time() - start) * 1000, 1),
                "request_id": rid,
            },
        )
        return response

    app.include_router(vapi.router, tags=["vapi"])
    app.include_router(api.router, tags=["api"])
    return app


app = create_app()
