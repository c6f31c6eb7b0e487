"""Voice token route.

The browser-side voice stream authenticates with a short-lived access
token; this endpoint mints one from the server-held credentials.
"""

from typing import Awaitable, Callable

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from talkai.exceptions import CredentialError
from talkai.observability.logging import get_logger
from talkai.voice.token import fetch_access_token_from_settings

logger = get_logger(__name__)

router = APIRouter(prefix="/api/hume", tags=["voice"])

TokenFetcher = Callable[[], Awaitable[str]]


def get_token_fetcher() -> TokenFetcher:
    """Token source dependency (overridable in tests)."""
    return fetch_access_token_from_settings


@router.get("/access-token")
async def access_token(
    fetch_token: TokenFetcher = Depends(get_token_fetcher),
) -> JSONResponse:
    """Return ``{accessToken}``, or 500 ``{error}`` on failure."""
    try:
        token = await fetch_token()
    except CredentialError as e:
        return JSONResponse(
            status_code=500,
            content={"error": e.details.get("reason", e.message)},
        )
    except Exception as e:
        logger.error("access_token_route_failed", error=str(e))
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    return JSONResponse(content={"accessToken": token})
