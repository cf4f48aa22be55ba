"""
Operator bearer tokens.

The desk has no user table: tokens are minted for operators by whoever
holds SECRET_KEY and carry the operator id in `sub`.
"""

from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt
from ..config import settings

TOKEN_ISSUER = "ticketdesk"
TOKEN_TYPE = "operator"


def create_operator_token(
    operator_id: str,
    name: Optional[str] = None,
    role: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    claims = {"sub": operator_id, "exp": expire, "iss": TOKEN_ISSUER, "type": TOKEN_TYPE}
    if name:
        claims["name"] = name
    if role:
        claims["role"] = role
    return jwt.encode(claims, settings.secret_key, algorithm=settings.algorithm)


def verify_operator_token(token: str) -> Optional[dict]:
    """Claims of a valid, unexpired operator token; None otherwise."""
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
            issuer=TOKEN_ISSUER,
        )
    except JWTError:
        return None
    if payload.get("type") != TOKEN_TYPE or not payload.get("sub"):
        return None
    return payload
