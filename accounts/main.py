"""FastAPI application wiring for the account service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from psycopg_pool import ConnectionPool

from .api.errors import register_error_handlers
from .api.routes import public_router, router as users_router
from .config import Settings, get_settings
from .domain.bearer import BearerTokenCodec
from .domain.service import AccountService
from .domain.token_lifecycle import TokenLifecycle
from .mailer import Mailer, SmtpMailer
from .repository import AccountRepository, PostgresAccountRepository

settings = get_settings()

logger = logging.getLogger(__name__)


def build_account_service(
    repository: AccountRepository, mailer: Mailer, settings: Settings
) -> AccountService:
    """Construct the token lifecycle, bearer codec, and account service around ``repository``."""
    lifecycle = TokenLifecycle(
        repository,
        secret=settings.security_secret,
        ttl=timedelta(seconds=settings.security_token_ttl_seconds),
        backdate=timedelta(seconds=settings.security_token_backdate_seconds),
    )
    codec = BearerTokenCodec(
        repository,
        lifecycle,
        secret=settings.security_secret,
        issuer=settings.jwt_issuer,
        ttl_seconds=settings.bearer_ttl_seconds,
        session_ttl_seconds=settings.session_ttl_seconds,
    )
    return AccountService(repository, lifecycle, codec, mailer, settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, mailer, services) for the app lifecycle."""
    logging.basicConfig(level=settings.log_level)
    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    repository = PostgresAccountRepository(pool)
    repository.ensure_schema()
    mailer = SmtpMailer(settings)
    app.state.pool = pool
    app.state.account_service = build_account_service(repository, mailer, settings)
    logger.info("%s %s ready", settings.app_name, settings.version)
    try:
        yield
    finally:
        mailer.shutdown()
        pool.close()
        pool.wait_close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)

register_error_handlers(app)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get(f"{settings.api_base_path}/version", tags=["health"])
def version(response: Response) -> dict[str, str]:
    response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    return {"version": settings.version}


app.include_router(public_router, prefix=settings.api_base_path)
app.include_router(users_router, prefix=settings.api_base_path)


# Prometheus metrics endpoint for Prometheus scrapes
try:
    from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
except ImportError:  # pragma: no cover - metrics are optional in dev
    pass
