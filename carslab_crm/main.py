from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from carslab_crm.api.errors import register_exception_handlers
from carslab_crm.api.routes import (
    audit,
    auth,
    health,
    invoice_signatures,
    signatures,
    tablet_ws,
    tablets,
    workstations,
)
from carslab_crm.core.config import settings
from carslab_crm.core.logging_setup import logger
from carslab_crm.db.session import init_db
from carslab_crm.services.events import event_publisher


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncGenerator[None, None]:
    init_db()
    yield
    event_publisher.shutdown(wait=True)


def _normalize_origin(value: str | None) -> str | None:
    if not value:
        return None
    cleaned = value.strip().rstrip("/")
    return cleaned or None


def create_app() -> FastAPI:
    application = FastAPI(
        title=settings.project_name,
        debug=settings.debug,
        lifespan=lifespan,
    )

    origins: list[str] = []
    for item in settings.allowed_origins:
        normalized = _normalize_origin(item)
        if normalized and normalized not in origins:
            origins.append(normalized)

    logger.info("CORS configured with origins: %s", origins)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(application)

    application.include_router(health.router, prefix="/health")
    application.include_router(auth.router, prefix=settings.api_prefix)
    application.include_router(workstations.router, prefix=settings.api_prefix)
    application.include_router(tablets.router, prefix=settings.api_prefix)
    application.include_router(signatures.router, prefix=settings.api_prefix)
    application.include_router(invoice_signatures.router, prefix=settings.api_prefix)
    application.include_router(audit.router, prefix=settings.api_prefix)
    application.include_router(tablet_ws.router)

    @application.get("/")
    def root() -> dict[str, str]:
        return {"service": settings.project_name}

    logger.info("%s API initialised", settings.project_name)
    return application


app = create_app()
