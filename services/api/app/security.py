"""
API security: static bearer token shared with the product backend
"""

import secrets

from fastapi import Header, HTTPException, status

from services.shared import config as shared_config


async def verify_api_auth_token(authorization: str = Header(default=None)) -> None:
    """
    Require `Authorization: Bearer <API_AUTH_TOKEN>` when a token is configured

    Args:
        authorization (str): Authorization header

    Returns:
        None. Raises HTTPException(401) on a missing or wrong token
    """
    expected = shared_config.API_AUTH_TOKEN
    if not expected:
        return

    scheme, _, provided = (authorization or "").partition(" ")
    if scheme != "Bearer" or not provided:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    if not secrets.compare_digest(provided, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
