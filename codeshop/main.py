import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# IMPORTANT:
# This imports ALL models so SQLAlchemy registers tables + FKs correctly
import codeshop.models  # noqa: F401
from codeshop.core.config import settings
from codeshop.core.db import close_db, get_session_factory, init_db
from codeshop.core.errors import setup_error_handlers
from codeshop.core.logging import RequestContextMiddleware, setup_logging
from codeshop.services import code_ledger

# Routers
from codeshop.routers.callbacks import router as callbacks_router
from codeshop.routers.codes import router as codes_router

logger = structlog.get_logger()


async def _sweep_expired_forever(interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            async with get_session_factory()() as db:
                await code_ledger.sweep_expired(db)
        except Exception:
            logger.exception("expiry_sweep_failed")


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    await init_db(settings.DATABASE_URL, echo=settings.DB_ECHO, create_all=settings.DB_CREATE_ALL)

    sweeper = None
    if settings.EXPIRY_SWEEP_INTERVAL_SECONDS > 0:
        sweeper = asyncio.create_task(_sweep_expired_forever(settings.EXPIRY_SWEEP_INTERVAL_SECONDS))

    yield

    if sweeper is not None:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper

    await close_db()


def create_app() -> FastAPI:
    setup_logging(settings)

    app = FastAPI(title="MyShop Code Service", version=settings.APP_VERSION, lifespan=lifespan)

    # ✅ CORS for the admin portal (frontend)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)

    setup_error_handlers(app)

    @app.get("/", tags=["Health"])
    async def root():
        return {"status": "OK", "message": "MyShop Admin Portal Backend API", "version": settings.APP_VERSION}

    # Payment callbacks (redirect + notification transports)
    app.include_router(callbacks_router)

    # Codes
    app.include_router(codes_router)

    return app


app = create_app()
