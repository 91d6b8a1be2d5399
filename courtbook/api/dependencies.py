"""
FastAPI dependency injection.

Dependencies provide the ledger, the caller's identity and configuration
to route handlers. Using dependency injection means:
- Routes don't instantiate their own dependencies (easier to test)
- Dependencies can be overridden in tests
- Configuration is centralized

The ledger is a process-wide object: its class cache, per-user locks and
background earnings tasks must be shared by every request. It is built on
first use (normally during application startup) and torn down at shutdown.
"""

import logging
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from ..config.settings import Settings, get_settings
from ..core.ledger import EarningsAccrualPoint, Ledger, build_ledger
from ..core.ledger.schedule import load_timezone
from ..infrastructure.documents import create_document_store
from ..infrastructure.snowflake import SnowflakeConfig

logger = logging.getLogger(__name__)

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# Global ledger instance (shared across requests)
_ledger: Optional[Ledger] = None


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

async def verify_api_key(
    settings: Annotated[Settings, Depends(get_settings)],
    api_key: str = Security(api_key_header),
) -> str:
    """
    Validate API key from request header.

    Raises 403 if key is invalid or missing.
    """
    if not api_key:
        logger.warning("Request missing API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="API key required. Provide X-API-Key header.",
        )

    if api_key not in settings.api_keys_list:
        logger.warning(
            "Invalid API key attempt",
            extra={"key_prefix": api_key[:8]}
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )

    return api_key


def get_acting_user_id(
    x_user_id: Annotated[Optional[str], Header()] = None,
) -> Optional[str]:
    """
    The identity the request acts as, from the X-User-Id header.

    A missing header is passed through as None; the ledger rejects it with
    IdentityError, which the app maps to 401.
    """
    return x_user_id.strip() if x_user_id else None


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

def snowflake_config_from_settings(settings: Settings) -> SnowflakeConfig:
    return SnowflakeConfig(
        account=settings.snowflake_account,
        user=settings.snowflake_user,
        password=settings.snowflake_password or None,
        private_key_path=settings.snowflake_private_key_path,
        private_key_base64=settings.snowflake_private_key_base64,
        database=settings.snowflake_database,
        schema=settings.snowflake_schema,
        warehouse=settings.snowflake_warehouse,
        role=settings.snowflake_role,
    )


def build_ledger_from_settings(settings: Settings) -> Ledger:
    """Wire a ledger over the store selected by the settings."""
    if settings.snowflake_mock_mode:
        store = create_document_store(mock_mode=True)
    else:
        store = create_document_store(
            config=snowflake_config_from_settings(settings),
            table=settings.snowflake_documents_table,
        )

    return build_ledger(
        store,
        default_balance=settings.default_starting_credits,
        tz=load_timezone(settings.reference_timezone),
        accrual_point=EarningsAccrualPoint(settings.earnings_accrual_point),
        earnings_retry_attempts=settings.earnings_retry_attempts,
        earnings_retry_delay=settings.earnings_retry_delay_seconds,
    )


async def get_ledger(
    settings: Annotated[Settings, Depends(get_settings)],
) -> Ledger:
    """
    Provide the shared ledger, building and starting it on first use.

    Outside mock mode the documents table is created if missing before the
    class registry loads.
    """
    global _ledger

    if _ledger is None:
        ledger = build_ledger_from_settings(settings)
        if not settings.snowflake_mock_mode:
            await ledger.store.ensure_table()
        await ledger.start()
        _ledger = ledger
        logger.info(
            "Created shared ledger",
            extra={"mock_mode": settings.snowflake_mock_mode}
        )

    return _ledger


async def close_ledger() -> None:
    """Stop the shared ledger and wait for background earnings to finish."""
    global _ledger

    if _ledger is not None:
        ledger, _ledger = _ledger, None
        await ledger.shutdown()


# ---------------------------------------------------------------------------
# Convenience Type Aliases
# ---------------------------------------------------------------------------

# These type aliases make route signatures cleaner
AuthenticatedUser = Annotated[str, Depends(verify_api_key)]
ActingUserId = Annotated[Optional[str], Depends(get_acting_user_id)]
LedgerDep = Annotated[Ledger, Depends(get_ledger)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
