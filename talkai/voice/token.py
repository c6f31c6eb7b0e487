"""Voice service access tokens.

Exchanges the server-held API key and secret for a short-lived access
token (OAuth2 client-credentials grant). The token is what the voice
stream connection is authorized with; the secret never leaves the server.
"""

from __future__ import annotations

import httpx

from talkai.config.settings import Settings, get_settings
from talkai.exceptions import CredentialError
from talkai.observability.logging import get_logger
from talkai.observability.metrics import record_error

logger = get_logger(__name__)

TOKEN_PATH = "/oauth2-cc/token"


async def fetch_access_token(
    api_key: str | None,
    secret_key: str | None,
    api_url: str = "https://api.hume.ai",
    timeout_s: float = 10.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    """Fetch a voice access token.

    Args:
        api_key: Voice service API key
        secret_key: Voice service secret key
        api_url: REST base URL
        timeout_s: Request timeout
        transport: Optional httpx transport (tests)

    Returns:
        Access token string

    Raises:
        CredentialError: Missing credentials, rejected request or no token
    """
    if not api_key or not secret_key:
        logger.error("voice_token_missing_credentials")
        raise CredentialError("Missing API credentials")

    logger.info("voice_token_fetching")

    try:
        async with httpx.AsyncClient(timeout=timeout_s, transport=transport) as client:
            response = await client.post(
                f"{api_url}{TOKEN_PATH}",
                auth=(api_key, secret_key),
                data={"grant_type": "client_credentials"},
            )
    except httpx.HTTPError as e:
        record_error("voice", "token_request")
        logger.error("voice_token_request_failed", error=str(e))
        raise CredentialError(f"Request failed: {e}") from e

    if not response.is_success:
        record_error("voice", "token_rejected")
        logger.error("voice_token_rejected", status_code=response.status_code)
        raise CredentialError("Token request rejected", status_code=response.status_code)

    try:
        token = response.json().get("access_token")
    except ValueError:
        token = None

    if not token:
        record_error("voice", "token_missing")
        logger.error("voice_token_missing")
        raise CredentialError("Failed to get access token")

    logger.info("voice_token_fetched")
    return token


async def fetch_access_token_from_settings(settings: Settings | None = None) -> str:
    """Fetch a voice access token using configured credentials."""
    settings = settings or get_settings()
    return await fetch_access_token(
        settings.hume_api_key,
        settings.hume_secret_key,
        api_url=settings.hume_api_url,
    )
