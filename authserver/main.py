import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from authserver.config import settings
from authserver.database import async_session, dispose_engine, init_db
from authserver.oauth2.middleware import OAuth2AuthenticationMiddleware
from authserver.oauth2.repository import OAuth2Repository
from authserver.oauth2.revocation import RevocationCache
from authserver.oauth2.routes import router as oauth2_router
from authserver.oauth2.server import AuthorizationServer

APP_VERSION = "0.1.0"
logger = logging.getLogger(__name__)


async def warm_up_revocation_cache(app: FastAPI) -> int:
    """Load revoked token hashes into the app's revocation cache (best effort)."""
    cache: RevocationCache = app.state.revocation_cache

    async def _load() -> list[str]:
        async with app.state.session_factory() as db:
            server = AuthorizationServer(OAuth2Repository(db), cache)
            return await server.load_revoked_token_hashes()

    return await cache.warm_up(_load)


async def purge_expired_credentials(app: FastAPI) -> dict[str, int]:
    async with app.state.session_factory() as db:
        server = AuthorizationServer(OAuth2Repository(db), app.state.revocation_cache)
        return await server.purge_expired()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup: create tables, then warm the revocation cache
    await init_db()
    await warm_up_revocation_cache(app)

    # Opportunistic purge of expired tokens and dead authorization codes
    async def _purge_loop() -> None:
        while True:
            await asyncio.sleep(settings.token_purge_interval_seconds)
            try:
                await purge_expired_credentials(app)
            except Exception:
                logger.exception("Background task error")

    purge_task = asyncio.create_task(_purge_loop())

    yield

    # Shutdown: the cache is dropped with the process; the store stays authoritative
    purge_task.cancel()
    with suppress(asyncio.CancelledError):
        await purge_task
    await dispose_engine()


def create_app() -> FastAPI:
    app = FastAPI(
        title="OAuth2 Authorization Server",
        description="Authorization codes, token pairs, revocation and client registry",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.session_factory = async_session
    app.state.revocation_cache = RevocationCache()

    allowed_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Bearer tokens resolve to a principal before any route runs
    app.add_middleware(OAuth2AuthenticationMiddleware)

    app.include_router(oauth2_router)

    @app.get("/health")
    async def health() -> dict:
        return {
            "status": "ok",
            "version": APP_VERSION,
            "revocation_cache": {
                "warmed_up": app.state.revocation_cache.warmed_up,
                "size": len(app.state.revocation_cache),
            },
        }

    return app


app = create_app()
