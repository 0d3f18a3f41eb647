from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from searchhub.connectors.factory import supported_platforms
from searchhub.credentials import SqlCredentialStore
from searchhub.db import get_engine, get_sessionmaker
from searchhub.models import Base
from searchhub.routers import accounts, connectors, search
from searchhub.schemas import ConnectorConfig
from searchhub.services.aggregator import AggregationManager
from searchhub.settings import settings

_log = logging.getLogger(__name__)


async def _autoload_connectors(manager: AggregationManager) -> None:
    wanted = [p.strip().lower() for p in settings.autoload_connectors.split(",") if p.strip()]
    for platform in wanted:
        if platform not in supported_platforms():
            _log.warning("Skipping unknown connector %s", platform)
            continue
        await manager.load_connector(ConnectorConfig(platform=platform))


@asynccontextmanager
async def lifespan(app: FastAPI):
    manager: AggregationManager | None = getattr(app.state, "manager", None)
    if manager is None:
        engine = get_engine()
        Base.metadata.create_all(bind=engine)
        manager = AggregationManager(SqlCredentialStore(get_sessionmaker()))
        await _autoload_connectors(manager)
        app.state.manager = manager
    _log.info("Search service ready with connectors: %s", ", ".join(manager.list_connectors()) or "none")
    yield
    await manager.shutdown()


def create_app(*, manager: AggregationManager | None = None) -> FastAPI:
    app = FastAPI(title="SearchHub API", version="0.1.0", lifespan=lifespan)
    app.state.manager = manager

    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    app.include_router(search.router, prefix="/api/v1")
    app.include_router(connectors.router, prefix="/api/v1")
    app.include_router(accounts.router, prefix="/api/v1")

    return app


app = create_app()
