from fastapi import FastAPI
import logging

from backend.app.config import get_settings
from backend.app.logging_config import setup_logging

settings = get_settings()
setup_logging(settings.log_dir)

app = FastAPI(
    title="appsd",
    response_model_by_alias=False,
)


logger = logging.getLogger("appsd.core")
logger.info("appsd backend starting")

@app.on_event("startup")
async def startup_event() -> None:
    logger.info("Running application startup tasks")
    # Delayed imports to avoid importing the apps package at module import time.
    from .apps.api.router import router as apps_router, get_apps_service
    from .apps.service import start_update_check_task

    try:
        # Mount routers early so endpoints exist even if subsequent startup steps fail
        app.include_router(apps_router)
        logger.info("Mounted apps router")

        service = get_apps_service()
        service.startup()
        logger.info("Loaded app registry")

        start_update_check_task(app, service, settings.update_check_interval)

    except Exception:
        logger.exception("Application startup failed")
        raise


@app.on_event("shutdown")
async def shutdown_event() -> None:
    logger.info("Running application shutdown tasks")
    from .apps.service import stop_update_check_task
    await stop_update_check_task(app)


@app.get("/api/health")
def health() -> dict[str, str]:
    return {"status": "ok", "service": "appsd"}
