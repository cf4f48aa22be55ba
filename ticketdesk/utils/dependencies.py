import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..config import Settings, get_settings
from ..services.storage import BlobStore, get_blob_store
from .security import verify_operator_token
from .logging_config import operator_id_var

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class Operator:
    """Authenticated back-office user, taken from the token claims"""
    id: str
    name: Optional[str] = None
    role: Optional[str] = None


def get_current_operator(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> Operator:
    """Require a valid operator bearer token"""
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_operator_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    operator = Operator(id=str(payload["sub"]), name=payload.get("name"), role=payload.get("role"))
    operator_id_var.set(operator.id)
    return operator


def get_request_id(request: Request) -> str:
    """Get request_id from request state or generate one"""
    return getattr(request.state, 'request_id', str(uuid.uuid4())[:8])


def get_store(settings: Settings = Depends(get_settings)) -> BlobStore:
    return get_blob_store(settings)
