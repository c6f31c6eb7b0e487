"""Health check endpoints.

- /healthz: Liveness check (is the process alive?)
- /readyz: Readiness check (is the service ready to accept traffic?)
- /health: Combined liveness and readiness
- /metrics: Prometheus metrics endpoint
"""

from typing import Any

from fastapi import APIRouter, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["health"])

CRITICAL_COMPONENTS = ("session_manager", "voice_credentials")

# Health status tracking
_ready: bool = False
_components: dict[str, bool] = {
    "session_manager": False,
    "voice_credentials": False,
    "avatar_credentials": False,
    "history_store": False,
}


def set_ready(ready: bool) -> None:
    """Set overall readiness status."""
    global _ready
    _ready = ready


def set_component_health(component: str, healthy: bool) -> None:
    """Set health status for a known component."""
    if component in _components:
        _components[component] = healthy


def get_component_health() -> dict[str, bool]:
    """Get health status of all components."""
    return _components.copy()


def _critical_ready() -> bool:
    return _ready and all(_components.get(c, False) for c in CRITICAL_COMPONENTS)


@router.get("/healthz", response_model=dict[str, str])
async def healthz() -> dict[str, str]:
    """Liveness check. Returns 200 while the process is alive."""
    return {"status": "alive"}


@router.get("/readyz")
async def readyz(response: Response) -> dict[str, Any]:
    """Readiness check.

    Returns 503 until startup completes and every critical component is up.
    The avatar and history store are not critical: sessions degrade
    without them.
    """
    if _critical_ready():
        return {"status": "ready", "components": _components}

    response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {"status": "not_ready", "components": _components}


@router.get("/health")
async def health(response: Response) -> dict[str, Any]:
    """Combined health endpoint."""
    ready = _critical_ready()
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return {
        "status": "healthy" if ready else "degraded",
        "ready": _ready,
        "components": _components,
    }


@router.get("/metrics")
async def metrics() -> Response:
    """Prometheus exposition."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
