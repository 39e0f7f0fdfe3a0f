"""
FastAPI Dependencies - Ledger injection and service authentication.

NO DICTIONARIES - All dependencies return typed objects.
"""

import secrets

from fastapi import Header, HTTPException, Request, status
from structlog import get_logger

from magic_coins.config import settings
from magic_coins.ledger import MagicCoinLedger

logger = get_logger(__name__)


def get_ledger(request: Request) -> MagicCoinLedger:
    """
    FastAPI dependency returning the ledger client built at startup.

    Usage:
        @router.get("/v1/ledger/{user_id}/balance")
        async def get_balance(
            user_id: str,
            ledger: MagicCoinLedger = Depends(get_ledger),
        ):
            pass
    """
    ledger: MagicCoinLedger | None = getattr(request.app.state, "ledger", None)
    if ledger is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ledger not initialized",
        )
    return ledger


async def require_api_key(
    x_api_key: str | None = Header(None, description="Service API key"),
) -> None:
    """
    FastAPI dependency to validate the X-API-Key header.

    Open when no API key is configured.

    Raises:
        HTTPException 401 if the key is missing or wrong
    """
    expected = settings.api_key
    if not expected:
        return

    if not x_api_key or not secrets.compare_digest(x_api_key, expected):
        logger.warning("api_key_rejected", has_api_key=bool(x_api_key))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
