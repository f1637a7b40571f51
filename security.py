import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from bson import ObjectId
from fastapi import Depends, Request
from jose import JWTError, jwt
from passlib.context import CryptContext

from config import settings
from database import collection_name, get_db
from exceptions import AuthenticationError, AuthorizationError
from logging_config import set_user_id
from policies import Principal, load_principal
from schemas import User

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.BCRYPT_ROUNDS)

USERS = collection_name(User)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(plain, hashed)


def create_access_token(user_id: Any, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.JWT_EXPIRE_MINUTES))
    return jwt.encode({"id": str(user_id), "exp": expire}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def make_token() -> Tuple[str, str]:
    """Random one-time token and the sha256 digest stored in its place"""
    raw = secrets.token_hex(20)
    return raw, hash_token(raw)


def hash_token(raw: str) -> str:
    return hashlib.sha256(raw.encode()).hexdigest()


def _bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("authorization")
    if not auth or not auth.startswith("Bearer"):
        return None
    parts = auth.split(" ", 1)
    return parts[1].strip() if len(parts) == 2 and parts[1].strip() else None


def get_current_user(request: Request) -> Dict[str, Any]:
    """Resolve the bearer token to an active user document."""
    token = _bearer_token(request)
    if not token:
        raise AuthenticationError("Access denied. No token provided.")
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise AuthenticationError("Token is not valid.")
    user_id = payload.get("id")
    if not user_id or not ObjectId.is_valid(user_id):
        raise AuthenticationError("Token is not valid.")
    user = get_db()[USERS].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise AuthenticationError("Token is not valid. User not found.")
    if not user.get("isActive", True):
        raise AuthenticationError("Account is deactivated. Please contact administrator.")
    request.state.user = user
    set_user_id(str(user["_id"]))
    return user


def authorize(*roles: str):
    """Dependency allowing only the given roles."""
    def _dep(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if roles and user.get("role") not in roles:
            raise AuthorizationError(
                f"Access denied. {user.get('role')} role is not authorized to access this resource."
            )
        return user
    return _dep


def get_principal(user: Dict[str, Any] = Depends(get_current_user)) -> Principal:
    return load_principal(get_db(), user)


def principal_for(*roles: str):
    """Role-restricted variant of get_principal."""
    def _dep(user: Dict[str, Any] = Depends(authorize(*roles))) -> Principal:
        return load_principal(get_db(), user)
    return _dep
