"""
FastAPI dependencies.

- get_db / SessionDep: one database session per request
- get_current_operator / OperatorDep: bearer token check for the operator
  (creator dashboard) endpoints
- client_ip / ClientIPDep + enforce_rate_limit: per-client rate limiting of
  the public checkout and license endpoints
"""
from collections.abc import Generator
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt.exceptions import InvalidTokenError
from pydantic import ValidationError
from sqlmodel import Session

from storefront.api.errors import RateLimited
from storefront.api.schemas import TokenPayload
from storefront.core import rate_limit, security
from storefront.core.config import settings
from storefront.core.db import engine

reusable_oauth2 = HTTPBearer()


def get_db() -> Generator[Session, None, None]:
    """
    Database session for one request.

    Services own their commits; the session is closed (and anything left
    uncommitted rolled back) when the request ends.
    """
    with Session(engine) as session:
        yield session


SessionDep = Annotated[Session, Depends(get_db)]
TokenDep = Annotated[HTTPAuthorizationCredentials, Depends(reusable_oauth2)]


def get_current_operator(token: TokenDep) -> str:
    """
    Validate an operator bearer token.

    Returns:
        The token subject

    Raises:
        HTTPException: 401 when the token is invalid or not an operator token
    """
    try:
        payload = jwt.decode(
            token.credentials,
            settings.SECRET_KEY,
            algorithms=[security.ALGORITHM],
            audience=security.OPERATOR_AUDIENCE,
        )
        token_data = TokenPayload(**payload)
    except (InvalidTokenError, ValidationError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    if token_data.sub != settings.OPERATOR_SUBJECT:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not an operator")
    return token_data.sub


OperatorDep = Annotated[str, Depends(get_current_operator)]


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


ClientIPDep = Annotated[str, Depends(client_ip)]


def enforce_rate_limit(scope: str, *parts: str, limit: int) -> None:
    """
    Raises:
        RateLimited: the client exceeded ``limit`` requests in the current window
    """
    if not rate_limit.hit(scope, *parts, limit=limit):
        raise RateLimited()
