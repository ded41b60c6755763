"""
Admin endpoints for the oracle credential pool.

GET /admin/credentials/stats
POST /admin/credentials/reset
POST /admin/credentials/{index}/reset
"""
from fastapi import APIRouter, Depends, HTTPException

from gradpilot.core.logging import get_logger
from gradpilot.services.orchestration.credentials import (
    CredentialPoolStats,
    CredentialRotationManager,
    get_credential_manager,
)

logger = get_logger(__name__)

router = APIRouter()


@router.get("/credentials/stats", response_model=CredentialPoolStats)
async def credential_stats(
    manager: CredentialRotationManager = Depends(get_credential_manager),
):
    """
    Usage of every key in the pool.

    Security: Should require admin authentication in production.
    """
    return manager.get_usage_stats()


@router.post("/credentials/reset", response_model=CredentialPoolStats)
async def reset_all_credentials(
    manager: CredentialRotationManager = Depends(get_credential_manager),
):
    """Clear usage and reactivate every key."""
    manager.reset_all()
    logger.info("admin_credentials_reset")
    return manager.get_usage_stats()


@router.post("/credentials/{index}/reset", response_model=CredentialPoolStats)
async def reset_credential(
    index: int,
    manager: CredentialRotationManager = Depends(get_credential_manager),
):
    """Clear usage and reactivate one key."""
    try:
        key = manager.reset_key(index)
    except IndexError:
        raise HTTPException(status_code=404, detail=f"No credential key at index {index}")
    logger.info("admin_credential_reset", key=key.identifier)
    return manager.get_usage_stats()
