"""
Machine Metrics Hub - Authentication

Shared bearer token for the ingestion and administrative routes. With no
token configured the routes are open.
"""

import secrets
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings

security = HTTPBearer(auto_error=False)


def verify_token(presented: str, expected: str) -> bool:
    """Constant-time token comparison."""
    return secrets.compare_digest(presented.encode(), expected.encode())


async def require_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    """Reject the request unless it carries the configured API token."""
    expected = settings.get_api_token()
    if not expected:
        return

    if credentials is None or not verify_token(credentials.credentials, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API token",
            headers={"WWW-Authenticate": "Bearer"},
        )
