"""
opsdash.api.main — FastAPI application entry point
===================================================

Run with::

    python -m opsdash
    # or, for development:
    uvicorn opsdash.api.main:app --reload --port 4000

``create_app()`` wires everything; the lifespan owns the process-wide state
(engine, store, verifier, metrics source, hub) and tears it down in order on
shutdown: stop the ticker and close subscribers, close the metrics HTTP
client, dispose of the connection pool.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import Engine

from opsdash import __version__
from opsdash.api.auth import router as auth_router
from opsdash.api.deps import Services, get_services
from opsdash.api.errors import install_error_handlers
from opsdash.api.routes.metrics import router as metrics_router
from opsdash.api.routes.socket import router as socket_router
from opsdash.api.routes.users import router as users_router
from opsdash.clock import new_id, utcnow
from opsdash.config import DashboardConfig, load_config
from opsdash.database.engine import (
    bootstrap_schema,
    configure_db_timeout,
    create_db_engine,
    run_db,
)
from opsdash.errors import StorageUnavailable
from opsdash.services.hub import SubscriptionHub
from opsdash.services.identity import IdentityVerifier
from opsdash.services.metrics_source import MetricsSource, system_info
from opsdash.services.role_policy import RolePolicy
from opsdash.services.session import REFRESH_HEADER, SessionAuthority
from opsdash.services.user_store import UserStore

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def build_services(
    cfg: DashboardConfig,
    *,
    engine: Engine | None = None,
    verifier: IdentityVerifier | None = None,
    metrics_source: MetricsSource | None = None,
    sessions: SessionAuthority | None = None,
) -> Services:
    """Construct the process-wide collaborators from *cfg*.

    Tests inject fakes for the pieces that talk to the outside world.
    """
    engine = engine or create_db_engine(cfg)
    metrics = metrics_source or MetricsSource.from_config(cfg)
    return Services(
        config=cfg,
        engine=engine,
        store=UserStore(engine),
        sessions=sessions or SessionAuthority(cfg.jwt_secret),
        verifier=verifier or IdentityVerifier(
            cfg.google_client_id, allow_client_identity=cfg.allow_client_identity
        ),
        roles=RolePolicy.from_config(cfg),
        metrics=metrics,
        hub=SubscriptionHub(
            metrics.sample,
            tick_seconds=cfg.tick_seconds,
            send_timeout=cfg.socket_send_timeout,
        ),
    )


def create_app(
    config: DashboardConfig | None = None,
    *,
    engine: Engine | None = None,
    verifier: IdentityVerifier | None = None,
    metrics_source: MetricsSource | None = None,
    sessions: SessionAuthority | None = None,
    start_ticker: bool = True,
) -> FastAPI:
    cfg = config or load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = build_services(
            cfg,
            engine=engine,
            verifier=verifier,
            metrics_source=metrics_source,
            sessions=sessions,
        )
        configure_db_timeout(cfg.db_timeout_seconds)
        await asyncio.to_thread(bootstrap_schema, services.engine)
        app.state.services = services
        if start_ticker:
            services.hub.start()
        user_count = await run_db(services.store.count)
        logger.info("opsdash API started: %d users, broadcasting every %.1fs",
                    user_count, cfg.tick_seconds)
        try:
            yield
        finally:
            logger.info("opsdash API shutting down")
            await services.hub.shutdown()
            await services.metrics.aclose()
            if engine is None:
                services.engine.dispose()
            app.state.services = None

    app = FastAPI(
        title="opsdash API",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cfg.cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        expose_headers=[REFRESH_HEADER, REQUEST_ID_HEADER],
    )

    @app.middleware("http")
    async def request_trace(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or new_id()
        request.state.request_id = request_id
        started = time.perf_counter()
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info("%s %s %d %.1fms [%s]", request.method, request.url.path,
                    response.status_code, (time.perf_counter() - started) * 1000, request_id)
        return response

    install_error_handlers(app)

    app.include_router(auth_router)
    app.include_router(users_router, prefix="/api")
    app.include_router(metrics_router, prefix="/api")
    app.include_router(socket_router)

    @app.get("/health")
    async def health(request: Request):
        services = get_services(request)
        body = {
            "status": "ok",
            "timestamp": utcnow().isoformat(),
            "version": __version__,
            "database": "ok",
            "subscribers": services.hub.size,
            "system": await asyncio.to_thread(system_info),
        }
        try:
            await run_db(services.store.ping)
        except StorageUnavailable:
            body["status"] = "degraded"
            body["database"] = "unavailable"
            return JSONResponse(status_code=503, content=body)
        return body

    return app


def __getattr__(name: str):
    # ``uvicorn opsdash.api.main:app`` builds the app on first access so that
    # importing this module never requires a configured environment.
    if name == "app":
        return create_app()
    raise AttributeError(name)
