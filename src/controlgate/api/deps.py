"""API dependencies."""

import logging
import secrets
from typing import AsyncGenerator

from fastapi import Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from controlgate.config import Environment, settings
from controlgate.db.base import get_session_factory

logger = logging.getLogger("controlgate.api")


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def verify_api_key(
    authorization: str | None = Header(None),
    x_api_key: str | None = Header(None, alias="X-API-Key"),
) -> str:
    """
    Verify the shared API key.

    Accepts ``Authorization: Bearer <key>`` or ``X-API-Key``. Fails closed:
    without a configured key every request is rejected unless insecure dev
    mode is explicitly enabled in development.
    """
    if settings.allow_insecure_dev and settings.env == Environment.DEVELOPMENT:
        return "insecure_dev"

    api_key = None
    if authorization and authorization.startswith("Bearer "):
        api_key = authorization[7:]
    elif x_api_key:
        api_key = x_api_key

    if not api_key:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization. Use Authorization: Bearer <key> or X-API-Key header",
        )

    if not settings.api_key:
        logger.error("SECURITY VIOLATION: No API key configured. Set CONTROLGATE_API_KEY.")
        raise HTTPException(
            status_code=503,
            detail="Server misconfigured: authentication not properly initialized",
        )

    if not secrets.compare_digest(api_key, settings.api_key):
        raise HTTPException(status_code=401, detail="Invalid API key")
    return "api_key"


def validate_auth_config() -> None:
    """
    Validate authentication configuration at startup.

    Raises:
        RuntimeError: If configuration is insecure for the current environment
    """
    if settings.allow_insecure_dev and settings.env != Environment.DEVELOPMENT:
        raise RuntimeError(
            f"SECURITY ERROR: allow_insecure_dev=true is only permitted in development. "
            f"Current environment: {settings.env.value}. "
            f"Set CONTROLGATE_ALLOW_INSECURE_DEV=false for {settings.env.value}."
        )

    if settings.allow_insecure_dev:
        logger.warning(
            "=" * 80 + "\n"
            "WARNING: Running in INSECURE DEV MODE\n"
            "  - Authentication is DISABLED\n"
            "  - Set CONTROLGATE_ALLOW_INSECURE_DEV=false for any deployment\n"
            + "=" * 80
        )
    elif settings.api_key:
        logger.info(f"Authentication enabled: shared API key for {settings.env.value}")
    else:
        logger.warning(
            "No CONTROLGATE_API_KEY configured; all API requests will be rejected"
        )
