from __future__ import annotations

import logging
import os
from typing import List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.sentinel.config import load_config
from src.sentinel.routers import alerts, health, jobs, rules
from src.sentinel.state import AppState, get_state, init_state

openapi_tags = [
    {"name": "Health", "description": "Service health, Mongo connectivity and scheduler diagnostics."},
    {"name": "Alerts", "description": "Alert ingestion, listing, manual resolution and history."},
    {"name": "Rules", "description": "Escalation / auto-close rules per source type."},
    {"name": "Jobs", "description": "Background sweep statistics and manual triggers."},
]

logger = logging.getLogger(__name__)


def _env_frontend_url() -> str | None:
    return os.getenv("FRONTEND_URL")


def _env_cors_extra_origins() -> List[str]:
    # Comma-separated list for preview deployments, etc.
    raw = os.getenv("CORS_ALLOW_ORIGINS") or ""
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    return parts


def _allowed_origins() -> List[str]:
    origins: List[str] = ["http://localhost:5173", "http://127.0.0.1:5173"]
    frontend_url = _env_frontend_url()
    if frontend_url:
        origins.append(frontend_url)
    origins.extend(_env_cors_extra_origins())

    # De-dupe while preserving order
    seen = set()
    return [o for o in origins if not (o in seen or seen.add(o))]


# PUBLIC_INTERFACE
def create_app(state: Optional[AppState] = None) -> FastAPI:
    """
    Build the FastAPI app.

    With no state, config is loaded from env and Mongo-backed stores are wired. Passing a
    prebuilt AppState (e.g. in-memory stores) skips that.
    """
    app = FastAPI(
        title="Sentinel Alert Management API",
        description=(
            "Fleet alert lifecycle backend. Alerts are evaluated against per-source-type rules on ingestion "
            "and by two background sweeps (auto-close and rule re-evaluation)."
        ),
        version="1.0.0",
        openapi_tags=openapi_tags,
    )

    if state is None:
        init_state(app, load_config())
    else:
        app.state.state = state

    @app.on_event("startup")
    async def _on_startup() -> None:
        """Startup hook: connect to Mongo, ensure indexes, warm the rule index, start the sweeps."""
        st = get_state(app)

        if st.mongo is not None:
            # Connect + verify early so misconfigured Mongo doesn't silently break background tasks.
            st.mongo.connect_app()
            if not st.mongo.ping():
                raise RuntimeError("Mongo connectivity check failed during startup. Verify SENTINEL_MONGO_URI.")
            st.mongo.init_indexes()

        try:
            await st.engine.initialize()
        except Exception:
            # evaluate() loads rules lazily; the next evaluation or sweep retries.
            logger.exception("Initial rule load failed")

        if st.config.scheduler_enabled:
            st.scheduler.start()

    @app.on_event("shutdown")
    async def _on_shutdown() -> None:
        """Shutdown hook: stop the sweeps and close Mongo connections."""
        st = get_state(app)
        await st.scheduler.stop()
        if st.mongo is not None:
            st.mongo.close()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(alerts.router)
    app.include_router(rules.router)
    app.include_router(jobs.router)
    return app


app = create_app()
