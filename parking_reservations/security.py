import logging
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from . import crud
from .config import settings
from .database import get_db
from .errors import AuthenticationError, AuthzError
from .models import User

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password: str, hashed_password: str) -> bool:
    return check_password_hash(hashed_password, password)


def create_access_token(user: User) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.access_token_expire_minutes)
    payload = {"sub": str(user.id), "role": user.role.value, "exp": expire}
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> int:
    """User id carried by a valid token."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Authentication token has expired", "TokenExpired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid authentication token", "InvalidToken")
    try:
        return int(payload["sub"])
    except (KeyError, ValueError):
        raise AuthenticationError("Invalid authentication token", "InvalidToken")


def authenticate(db: Session, email: str, password: str) -> User:
    user = crud.get_user_by_email(db, email)
    if not user or not verify_password(password, user.hashed_password):
        logger.warning(f"Failed login for {email}")
        raise AuthenticationError("Invalid email or password", "InvalidCredentials")
    return user


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
                     db: Session = Depends(get_db)) -> User:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthenticationError("Authentication required", "NotAuthenticated")
    user = crud.get_user(db, decode_access_token(credentials.credentials))
    if not user:
        raise AuthenticationError("User for this token no longer exists", "InvalidToken")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise AuthzError("Admin access required")
    return user
