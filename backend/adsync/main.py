"""FastAPI application entrypoint.

Configures CORS, includes routers, and exposes health and feature-flag
endpoints.
"""

import logging

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .deps import get_settings
from .feature_flags import FeatureFlags, get_feature_flags
from .routers import hierarchy as hierarchy_router
from .routers import hybrid as hybrid_router
from .routers import prewarm as prewarm_router
from .telemetry import init_sentry
from . import schemas

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _redis_status():
    """(reachable, last worker heartbeat) from the shared Redis client."""
    from . import state
    from .workers.arq_worker import HEARTBEAT_KEY

    if state.redis_client is None:
        return False, None
    try:
        state.redis_client.ping()
        return True, state.redis_client.get(HEARTBEAT_KEY)
    except Exception as e:
        logger.warning(f"[HEALTH] Redis check failed: {e}")
        return False, None


def create_app() -> FastAPI:
    app = FastAPI(
        title="adsync API",
        description="""
        Cache-first metrics reads for campaigns, ad groups and keywords.

        - **/hybrid**: reads served from the local cache, backfilled inline or
          through the refresh queue, with full provenance metadata
        - **/prewarm**: proactive ad-group backfill for visible campaigns
        - **/hierarchy**: parent/child drift history
        """,
        version="1.0.0",
    )

    settings = get_settings()

    # BACKEND_CORS_ORIGINS can be a comma-separated list
    allowed_origins = [o.strip() for o in settings.BACKEND_CORS_ORIGINS.split(",") if o.strip()]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(hybrid_router.router)
    app.include_router(prewarm_router.router)
    app.include_router(hierarchy_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        redis_ok, heartbeat = _redis_status()
        return schemas.HealthResponse(status="ok", redis=redis_ok, worker_heartbeat=heartbeat)

    @app.get("/flags", response_model=schemas.FlagsResponse, tags=["Health"])
    def flags(current: FeatureFlags = Depends(get_feature_flags)):
        return schemas.FlagsResponse(flags=current.all_flags())

    @app.on_event("startup")
    async def startup_event():
        init_sentry()
        if settings.ENVIRONMENT == "development":
            from .database import init_db
            init_db()
            logger.info("[STARTUP] Development schema ensured")
        redis_ok, _ = _redis_status()
        if redis_ok:
            logger.info("[STARTUP] Shared Redis is healthy")
        else:
            logger.warning(
                "[STARTUP] Redis unavailable - locks, quotas and pre-warm progress are process-local"
            )

    return app


app = create_app()
