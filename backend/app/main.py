import logging.config

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.metrics import router as metrics_router
from app.api.routes import router as api_router
from app.api.ws import router as ws_router
from app.config import get_settings
from app.core.errors import ServiceError, service_error_handler
from app.services.runtime import get_services, shutdown_realtime, startup_realtime


def build_logging_config(level: str) -> dict:
    return {
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
            "level": level,
        },
        "loggers": {
            # Timer and fan-out chatter stays at INFO even when the app runs at DEBUG.
            "lexline.realtime": {
                "level": "INFO",
                "propagate": True,
            },
            "httpx": {
                "level": "WARNING",
                "propagate": True,
            },
        },
    }


settings = get_settings()

logging.config.dictConfig(build_logging_config(settings.log_level.upper()))

app = FastAPI(title=settings.app_name, debug=settings.debug)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[str(origin) for origin in settings.cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(ServiceError, service_error_handler)


@app.get("/health", tags=["system"])
def health_check() -> dict[str, str | int]:
    """Liveness probe with the number of users connected to this process."""
    return {
        "status": "ok",
        "environment": settings.environment,
        "onlineUsers": len(get_services().presence.online_user_ids()),
    }


@app.on_event("startup")
async def _startup() -> None:
    await startup_realtime()


@app.on_event("shutdown")
async def _shutdown() -> None:
    await shutdown_realtime()


app.include_router(api_router, prefix="/api")
app.include_router(ws_router)
app.include_router(metrics_router)
