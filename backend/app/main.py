import logging
import logging.config

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.metrics import router as metrics_router
from app.api.routes import router as api_router
from app.api.ws import router as ws_router
from app.config import Settings, get_settings
from freetalk.realtime.hub import Hub
from freetalk.realtime.persistence import PersistenceAdapter


LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        }
    },
    "handlers": {
        "default": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        }
    },
    "root": {
        "handlers": ["default"],
        "level": "INFO",
    },
    "loggers": {
        "freetalk.realtime.deadletter": {
            "handlers": ["default"],
            "level": "ERROR",
            "propagate": False,
        }
    },
}


logging.config.dictConfig(LOGGING_CONFIG)

logger = logging.getLogger(__name__)

LOOPBACK_ORIGIN_REGEX = r"^http://(localhost|127\.0\.0\.1|\[::1\])(:\d+)?$"


def _default_persistence() -> PersistenceAdapter:
    from app.database import SessionLocal, engine
    from app.models import Base
    from app.services.persistence import SqlPersistenceAdapter

    Base.metadata.create_all(bind=engine)
    return SqlPersistenceAdapter(SessionLocal)


def create_app(
    settings: Settings | None = None,
    persistence: PersistenceAdapter | None = None,
) -> FastAPI:
    """Build the API; the hub is created on startup and kept on ``app.state``."""

    settings = settings or get_settings()
    application = FastAPI(title=settings.app_name, debug=settings.debug)
    application.state.settings = settings
    application.state.hub = None

    application.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_origin_regex=LOOPBACK_ORIGIN_REGEX,
    )

    @application.get("/health", tags=["system"])
    def health_check() -> dict[str, str]:
        """Simple health check endpoint."""
        return {"status": "ok", "environment": settings.environment}

    @application.on_event("startup")
    async def _startup() -> None:
        adapter = persistence if persistence is not None else _default_persistence()
        application.state.hub = Hub.from_settings(settings, adapter)
        logger.info("Realtime hub started", extra={"environment": settings.environment})

    @application.on_event("shutdown")
    async def _shutdown() -> None:
        hub = application.state.hub
        application.state.hub = None
        if hub is not None:
            await hub.shutdown()
            logger.info("Realtime hub stopped")

    application.include_router(api_router, prefix="/api")
    application.include_router(ws_router)
    application.include_router(metrics_router)
    return application


app = create_app()
