"""Reusable FastAPI dependencies for auth and database access."""
from typing import Callable, Optional

from fastapi import Depends, Security
from fastapi.security import APIKeyHeader, OAuth2PasswordBearer
from sqlalchemy.orm import Session

from .config import get_settings
from .database import get_db
from .errors import Forbidden
from .identity import Principal, authorize
from .models import RoleEnum

settings = get_settings()
# auto_error is off so a missing token reaches authorize() and gets the envelope
oauth_scheme = OAuth2PasswordBearer(tokenUrl="/users/login", auto_error=False)
service_api_key_header = APIKeyHeader(name="X-Service-Key", auto_error=False)


def get_session_token(token: Optional[str] = Depends(oauth_scheme)) -> Optional[str]:
    return token


def get_principal(token: Optional[str] = Depends(oauth_scheme), db: Session = Depends(get_db)) -> Principal:
    return authorize(db, token)


def get_approved_principal(token: Optional[str] = Depends(oauth_scheme), db: Session = Depends(get_db)) -> Principal:
    return authorize(db, token, require_approved=True)


def require_role(role: RoleEnum) -> Callable[..., Principal]:
    def dependency(token: Optional[str] = Depends(oauth_scheme), db: Session = Depends(get_db)) -> Principal:
        return authorize(db, token, role)

    return dependency


def require_service_key(api_key: Optional[str] = Security(service_api_key_header)) -> None:
    if not api_key or api_key != settings.service_api_key:
        raise Forbidden("Invalid service key")
