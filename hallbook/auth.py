"""Credential checks and the signed session tokens handed to clients.

A session token is a JWT whose ``sub`` is the user id and whose ``jti`` names
a row in ``auth_sessions``. The row decides whether the session is live; the
token only proves who issued it.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from .config import get_settings
from .dates import utcnow
from .errors import Unauthenticated
from .models import User

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
settings = get_settings()


@dataclass(frozen=True)
class SessionClaims:
    user_id: int
    session_id: str


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    claims = dict(data)
    lifetime = expires_delta if expires_delta is not None else timedelta(minutes=settings.access_token_expire_minutes)
    issued_at = utcnow()
    claims.update({"iat": issued_at, "exp": issued_at + lifetime})
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def issue_session_token(user_id: int, session_id: str, lifetime: Optional[timedelta] = None) -> str:
    return create_access_token({"sub": str(user_id), "jti": session_id}, lifetime)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError as exc:
        raise Unauthenticated("Session token has expired, sign in again") from exc
    except JWTError as exc:
        raise Unauthenticated("Invalid session token") from exc


def read_session_claims(token: str) -> SessionClaims:
    """Decode ``token`` and pull out the user id and session id it names."""

    claims = decode_token(token)
    subject, session_id = claims.get("sub"), claims.get("jti")
    if subject is None or session_id is None:
        raise Unauthenticated("Session token is missing required claims")
    try:
        user_id = int(subject)
    except (TypeError, ValueError) as exc:
        raise Unauthenticated("Session token subject is malformed") from exc
    return SessionClaims(user_id=user_id, session_id=str(session_id))


def authenticate_user(db: Session, email: str, password: str) -> Optional[User]:
    """Match e-mail and password; stale hashes are upgraded in place (caller commits)."""

    user: Optional[User] = db.query(User).filter(User.email == email.strip().lower()).first()
    if user is None or not verify_password(password, user.hashed_password):
        return None
    if pwd_context.needs_update(user.hashed_password):
        user.hashed_password = get_password_hash(password)
    return user
