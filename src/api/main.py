import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.deps import get_settings
from src.rules.loader import load_rules_or_default

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    settings = get_settings()

    # Load rules and validate on startup (fail-fast)
    try:
        rules = load_rules_or_default(settings.rules_path)
        if rules.debug:
            logging.getLogger("src.components.handoff").setLevel(logging.DEBUG)
        logger.info(
            "Rules loaded from %s (%d allowlisted domains)",
            settings.rules_path,
            len(rules.allowlist.domains),
        )
    except Exception:
        logger.critical("Rules load failed", exc_info=True)
        sys.exit(1)

    yield

    shutdown_registry()


app = FastAPI(
    title="Partner Handoff API",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# --- Routers ---
from src.api.routes import handoff  # noqa: E402
from src.api.routes.handoff import shutdown_registry  # noqa: E402

app.include_router(handoff.router, prefix="/api/handoff", tags=["Handoff"])


# CORS (the shim runs on the community platform's pages)
origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health_check() -> dict[str, Any]:
    """Health check endpoint."""
    return {"status": "ok", "service": "handoff"}
