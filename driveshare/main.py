# Application entrypoint: configures middleware, error mapping, startup routines, and API routers.
import asyncio
import logging
import os
import threading
import time
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .db import Base, engine, is_sqlite
from .errors import BookingError
from .notifications import dispatcher
from .routes.auth import router as auth_router
from .routes.bookings import router as bookings_router
from .routes.notifications import router as notifications_router
from .routes.notifications_ws import WebSocketTransport, router as notifications_ws_router, start_redis_subscriber
from .routes.payments import router as payments_router, webhook_router
from .routes.vehicles import router as vehicles_router
from .sweepers import activate_due_bookings, sweep_expired_bookings

logger = logging.getLogger("driveshare.main")

SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))


def _start_lifecycle_sweeper(interval_seconds: int = 60) -> None:
    """
    Launch a daemon thread that periodically expires unpaid holds and activates
    approved bookings whose pickup date has arrived.

    Errors are logged and retried on the next interval.
    """
    def _loop() -> None:
        while True:
            for sweep in (sweep_expired_bookings, activate_due_bookings):
                try:
                    sweep()
                except Exception:
                    logger.exception("sweeper.failed", extra={"sweeper": sweep.__name__})
            time.sleep(interval_seconds)

    t = threading.Thread(target=_loop, name="booking-lifecycle-sweeper", daemon=True)
    t.start()


# Parse CORS origins from a comma-separated env var.
# '*' cannot be combined with allow_credentials=True, so it maps to the localhost dev origins.
def _parse_cors_origins(env_value: Optional[str]) -> List[str]:
    default_dev_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    if not env_value:
        return default_dev_origins

    origins = [o.strip() for o in env_value.split(",") if o.strip()]
    if "*" in origins:
        return default_dev_origins

    return origins


app = FastAPI(title="DriveShare Booking API", version="0.1.0")
allow_list = _parse_cors_origins(os.getenv("CORS_ORIGINS"))

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


@app.on_event("startup")
async def on_startup() -> None:
    # For local SQLite, auto-create tables; server databases rely on Alembic migrations.
    if is_sqlite():
        Base.metadata.create_all(bind=engine)

    loop = asyncio.get_running_loop()
    dispatcher.transport = WebSocketTransport(loop)
    start_redis_subscriber(loop)

    if SWEEP_INTERVAL_SECONDS > 0:
        _start_lifecycle_sweeper(interval_seconds=SWEEP_INTERVAL_SECONDS)


# Simple liveness endpoint for container orchestrators and uptime checks
@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


app.include_router(auth_router, prefix="", tags=["auth"])
app.include_router(webhook_router, prefix="", tags=["payments"])
app.include_router(vehicles_router, prefix="/api/v1", tags=["vehicles"])
app.include_router(bookings_router, prefix="/api/v1", tags=["bookings"])
app.include_router(payments_router, prefix="/api/v1", tags=["payments"])
app.include_router(notifications_router, prefix="/api/v1", tags=["notifications"])
app.include_router(notifications_ws_router, prefix="/ws", tags=["notifications"])
