"""
Bearer token authentication. Tokens are issued upstream; this module only verifies them
and turns the claims into a Principal.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from ..core import config
from ..core.schema import Principal

security = HTTPBearer(auto_error=False)


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed access token (used by ops tooling and tests)."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(token: str) -> Dict[str, Any]:
    """Decode and verify a JWT, raising 401 on any failure."""
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except JWTError:
        raise _unauthorized("Token is not valid")


def principal_from_claims(claims: Dict[str, Any]) -> Principal:
    principal_id = claims.get("id") or claims.get("sub")
    username = claims.get("username")
    role = str(claims.get("role") or "").strip().lower()
    if not principal_id or not username or not role:
        raise _unauthorized("Token is missing identity claims")
    return Principal(principal_id=str(principal_id), username=username, role=role)


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Principal:
    """FastAPI dependency: the authenticated caller."""
    if credentials is None or not credentials.credentials:
        raise _unauthorized("No token, authorization denied")
    return principal_from_claims(decode_token(credentials.credentials))
