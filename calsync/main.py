# calsync/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from calsync.config import get_settings
from calsync.db.session import engine
from calsync.errors import CalSyncError
from calsync.logging_config import configure_logging
from calsync.models import Base
from calsync.routers import availability, bookings, event_types, integrations, schedules, webhooks

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)


@app.exception_handler(CalSyncError)
async def calsync_error_handler(request: Request, exc: CalSyncError):
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "[%s] %s | Path=%s",
        exc.__class__.__name__,
        exc,
        request.url.path,
        exc_info=exc.status_code >= 500,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.user_message, "error": exc.__class__.__name__},
    )


# Routers
app.include_router(availability.router)
app.include_router(bookings.router)
app.include_router(schedules.router)
app.include_router(integrations.router)
app.include_router(
    event_types.router,
    prefix="/coaches/{coach_id}/event-types",
    tags=["event-types"],
)
app.include_router(webhooks.router)


@app.get("/health")
def health_check():
    db_status = "ok"
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        db_status = "error"

    return {
        "status": "ok" if db_status == "ok" else "degraded",
        "app": settings.APP_NAME,
        "env": settings.ENV,
        "database": db_status,
    }
