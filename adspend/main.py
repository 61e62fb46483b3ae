from contextlib import asynccontextmanager

from fastapi import FastAPI

from adspend.api import billing, health
from adspend.core.circuit_breaker import set_notification_callback
from adspend.core.config import settings
from adspend.core.errors import capture_message, init_sentry
from adspend.core.logging_config import get_logger
from adspend.core.scheduler import start_scheduler, stop_scheduler
from adspend.db import create_db_and_tables
from adspend.services.wiring import load_collaborators

logger = get_logger(__name__)


def _alert_circuit_change(name: str, old_state: str, new_state: str) -> None:
    level = "warning" if new_state == "open" else "info"
    capture_message(
        "circuit_breaker_state_changed",
        level=level,
        context={"breaker": name, "old_state": old_state, "new_state": new_state},
        tags={"breaker": name},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT)
    create_db_and_tables()
    set_notification_callback(_alert_circuit_change)
    load_collaborators()
    logger.info("app_starting", project=settings.PROJECT_NAME, environment=settings.ENVIRONMENT)

    if settings.RUN_SCHEDULER:
        start_scheduler()
    else:
        logger.info("scheduler_skipped", reason="RUN_SCHEDULER is false")

    try:
        yield
    finally:
        stop_scheduler()
        set_notification_callback(None)


app = FastAPI(title=settings.PROJECT_NAME, openapi_url=f"{settings.API_V1_STR}/openapi.json", lifespan=lifespan)

app.include_router(billing.router, prefix=settings.API_V1_STR)
app.include_router(health.router)
