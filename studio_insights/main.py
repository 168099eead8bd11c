from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .database import init_db
from .observability import RequestTimingLoggingMiddleware, add_exception_handlers, configure_logging
from .routers import health
from .routers import events as events_router
from .routers import feedback as feedback_router
from .routers import insights as insights_router

# Schema exists at import so TestClient works without entering the lifespan
init_db()


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    application = FastAPI(title="Studio Insights API", version="0.1.0", lifespan=lifespan)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(RequestTimingLoggingMiddleware)

    add_exception_handlers(application)

    application.include_router(health.router)
    application.include_router(events_router.router)
    application.include_router(insights_router.router)
    application.include_router(feedback_router.router)

    return application


app = create_app()
