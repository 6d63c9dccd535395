"""
FastAPI dependency guarding the operator endpoints.
"""

import hmac
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..config import settings


# HTTP Bearer token scheme
bearer_scheme = HTTPBearer(auto_error=False)


async def require_operator(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[str]:
    """
    Require the operator bearer token when one is configured.

    With no OPERATOR_API_TOKEN set the operator endpoints are open, which is
    what local development and tests expect.
    """
    expected = settings.operator_api_token
    if not expected:
        return None

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not hmac.compare_digest(credentials.credentials, expected):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid operator token",
        )
    return "operator"
