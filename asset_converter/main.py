# asset_converter/main.py
from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, get_settings
from .core.registry import Dispatcher, JobRegistry
from .middleware_logging import register_request_logging
from .error_handlers import register_error_handlers
from .routers.health import router as health_router
from .routers.jobs import router as jobs_router
from .routers.operator import router as operator_router
from .services.dispatcher import ConversionDispatcher

logger = logging.getLogger("asset_converter.main")

ROUTE_DOCS = [
    ("/", "Healthcheck"),
    ("/process/{type}/{id}", "Queue processing for id"),
    ("/progress/{id}", "Poll progress for id"),
    ("/queue", "Get queue status"),
    ("/restart", "Operator restart (POST, X-Operator-Token)"),
]


def route_doc_string() -> str:
    width = max(len(path) for path, _ in ROUTE_DOCS)
    return "\n".join(f"{path.ljust(width)}\t{desc}" for path, desc in ROUTE_DOCS)


# =========================
# ---- App Init ----
# =========================
def create_app(settings: Optional[Settings] = None, dispatcher: Optional[Dispatcher] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Listening on port %s (base path %s)\n%s", settings.PORT, settings.BASE_PATH, route_doc_string())
        yield

    app = FastAPI(title="Asset Converter", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = JobRegistry(
        settings.BASE_PATH,
        dispatcher or ConversionDispatcher(settings),
        strict_ids=settings.STRICT_JOB_IDS,
    )

    register_request_logging(app)
    register_error_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(jobs_router)
    app.include_router(operator_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=get_settings().PORT)
