r"""forecast_backend\app\main.py

Main entrypoint for the FastAPI application.

The API exposes per-SKU forecasts, the cached parameter proposals behind
them and the optimization queue.  A health endpoint is also provided for
readiness/liveness checks.  Configuration is read from environment
variables and YAML files in `configs/`.
"""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse

# Load .env from repo root before settings are first read
BASE_DIR = Path(__file__).resolve().parents[2]
load_dotenv(BASE_DIR / ".env")

from .api.v1 import forecasts, health, models, optimizations, queue  # noqa: E402
from .core.config import get_settings  # noqa: E402
from .core.observability import TokenAuthMiddleware, metrics_endpoint  # noqa: E402
from .services.forecast_engine import get_engine  # noqa: E402

LOGGER = logging.getLogger(__name__)

LOGGER.info(
    "Advisory optimizer enabled: %s model=%s",
    bool(os.getenv("GEMINI_API_KEY")),
    get_settings().gemini_model,
)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    yield
    if get_engine.cache_info().currsize:
        get_engine().close()


app = FastAPI(title="Forecast Optimization API", version="0.1.0", lifespan=_lifespan)

# Allow cross-origin requests from dashboards (and others).
origins_env = os.getenv("CORS_ORIGINS", "")
origins = [origin.strip() for origin in origins_env.split(",") if origin.strip()] or ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(TokenAuthMiddleware)

# Include versioned routers
app.include_router(health.router, prefix="/api/v1")
app.include_router(models.router, prefix="/api/v1")
app.include_router(forecasts.router, prefix="/api/v1")
app.include_router(optimizations.router, prefix="/api/v1")
app.include_router(queue.router, prefix="/api/v1")


@app.get("/", include_in_schema=False)
def _root() -> RedirectResponse:
    """Redirect the root path to the interactive docs."""

    return RedirectResponse(url="/docs")


@app.get("/metrics", include_in_schema=False)
async def _metrics() -> Response:
    """Expose Prometheus metrics."""

    return metrics_endpoint()
