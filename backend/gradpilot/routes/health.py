"""
Health check endpoints.
"""
from fastapi import APIRouter

from gradpilot.core.logging import get_logger
from gradpilot.services.orchestration.credentials import get_credential_manager
from gradpilot.services.orchestration.errors import CredentialPoolConfigurationError

logger = get_logger(__name__)
router = APIRouter()


@router.get("/")
async def health_check():
    """
    Basic health check endpoint.
    """
    return {
        "status": "ok",
        "message": "API is running"
    }


@router.get("/credentials")
async def credentials_health():
    """
    Health of the oracle credential pool.

    Returns:
        - status: ok, degraded (no key can take a call right now) or unavailable
        - available_keys / active_keys / total_keys
        - remaining_quota and next_reset_at
    """
    try:
        stats = get_credential_manager().get_usage_stats()
    except CredentialPoolConfigurationError as exc:
        logger.warning("credentials_health_unconfigured", error=str(exc))
        return {
            "status": "unavailable",
            "message": str(exc),
        }

    return {
        "status": "ok" if stats.available_keys else "degraded",
        "total_keys": stats.total_keys,
        "active_keys": stats.active_keys,
        "available_keys": stats.available_keys,
        "remaining_quota": stats.remaining_quota,
        "next_reset_at": stats.next_reset_at.isoformat(),
    }
