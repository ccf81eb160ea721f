"""
FastAPI Security Dependencies
Admin authentication for the billing operations API
"""

import logging
import secrets

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from dream_billing.config import Config
from dream_billing.utils.exceptions import APIExceptions

logger = logging.getLogger(__name__)

# auto_error=False so a missing header gets the same 401 as a wrong key
security = HTTPBearer(auto_error=False)


async def get_admin_key(credentials: HTTPAuthorizationCredentials | None = Depends(security)) -> str:
    """
    Validate the admin API key using constant-time comparison.

    Raises:
        HTTPException: 401 if the key is missing, not configured, or doesn't match
    """
    if credentials is None or not credentials.credentials:
        raise APIExceptions.invalid_admin_key()

    admin_key = credentials.credentials
    expected_key = Config.ADMIN_API_KEY

    if not expected_key:
        logger.error("ADMIN_API_KEY environment variable is not configured")
        raise APIExceptions.invalid_admin_key()

    if not secrets.compare_digest(admin_key.encode(), expected_key.encode()):
        logger.warning(f"Invalid admin key attempt with key prefix: {admin_key[:4]}...")
        raise APIExceptions.invalid_admin_key()

    return admin_key
