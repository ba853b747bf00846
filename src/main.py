# src/main.py
import os
from typing import Optional

import httpx
import structlog
import uvicorn
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine

from src.config import Settings, load_settings, log_configuration_summary
from src.infrastructure.database import build_engine, build_session_factory, init_db
from src.middleware.logging import RequestIdMiddleware
from src.routers.integrations_router import router as integrations_router
from src.services.integration_broker import IntegrationBroker


def configure_structlog():
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
    )


configure_structlog()
logger = structlog.get_logger()


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[AsyncEngine] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or load_settings()
    engine = engine or build_engine(settings.database_url)
    session_factory = build_session_factory(engine)

    app = FastAPI(title="Integrations Broker")
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.broker = IntegrationBroker(settings, session_factory, transport=transport)

    app.add_middleware(RequestIdMiddleware)
    app.include_router(integrations_router)

    @app.on_event("startup")
    async def on_startup():
        await init_db(engine)
        log_configuration_summary(settings)
        logger.info("app_startup", environment=settings.environment)

    @app.on_event("shutdown")
    async def on_shutdown():
        await app.state.broker.close()
        await engine.dispose()
        logger.info("app_shutdown")

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("src.main:app", host="0.0.0.0", port=int(os.getenv("PORT", 8000)), reload=True)
