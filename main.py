#main.py
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.auth import router as auth_router
from api.users import router as users_router
from core.database import build_engine, build_sessionmaker, init_models, utcnow
from core.errors import register_exception_handlers
from core.notifier import OtpNotifier, build_notifier
from core.otp import OtpEngine
from core.tokens import TokenEngine
from settings import Settings
from telemetry.logger import configure_logging, get_logger

logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    notifier: Optional[OtpNotifier] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)

    engine = build_engine(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_models(engine)
        logger.info("startup", environment=settings.environment)
        yield
        await engine.dispose()

    app = FastAPI(title="Asset Handover Auth", lifespan=lifespan)

    app.state.settings = settings
    app.state.engine = engine
    app.state.sessionmaker = build_sessionmaker(engine)
    app.state.otp_engine = OtpEngine(settings, clock=clock)
    app.state.token_engine = TokenEngine(settings, clock=clock)
    app.state.notifier = notifier or build_notifier(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    app.include_router(auth_router)
    app.include_router(users_router)

    @app.get("/")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
