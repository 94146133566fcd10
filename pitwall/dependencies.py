# pitwall/dependencies.py
"""
FastAPI dependency functions for caller identity and worker authorization.

Authentication itself happens upstream: the gateway in front of Pitwall
verifies the session and forwards the caller's identity in the
``X-User-Id`` header. Pitwall only scopes data by that identity.

Key Dependencies:
    - get_current_user_id: Caller identity from X-User-Id (401 if absent)
    - verify_worker_header: Guard for POST /telemetry/worker
    - verify_cron_secret: Guard for GET /cron/process

Usage:
    from fastapi import Depends
    from pitwall.dependencies import get_current_user_id

    @router.get("/telemetry/uploads")
    async def list_uploads(user_id: str = Depends(get_current_user_id)):
        ...
"""

import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, Query, status

from pitwall.config import settings

logger = logging.getLogger("pitwall.dependencies")


def _secret_matches(candidate: Optional[str]) -> bool:
    """True when no worker secret is configured or the candidate matches it."""
    if not settings.worker_secret:
        return True
    if not candidate:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), settings.worker_secret.encode("utf-8"))


async def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> str:
    """
    Resolve the caller's identity.

    Raises:
        HTTPException: 401 if the header is missing or blank
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
    return user_id


async def verify_worker_header(
    x_worker_secret: Optional[str] = Header(default=None, alias="X-Worker-Secret"),
) -> None:
    """
    Guard the worker trigger. Open when WORKER_SECRET is unset.

    Raises:
        HTTPException: 401 if the shared secret does not match
    """
    if not _secret_matches(x_worker_secret):
        logger.warning("Rejected worker trigger with invalid secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


async def verify_cron_secret(
    secret: Optional[str] = Query(default=None),
) -> None:
    """
    Guard the cron trigger (schedulers can usually only set a query string).

    Raises:
        HTTPException: 401 if the shared secret does not match
    """
    if not _secret_matches(secret):
        logger.warning("Rejected cron trigger with invalid secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
