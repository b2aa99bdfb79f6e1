"""
Authentication and role guards.

Passwords are hashed with bcrypt through passlib. Sessions are stateless
HS256 JWTs carrying the user id, email, name and role; the user is looked
up again on every request so role changes take effect immediately.
"""

import os
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext

import database
from schemas import STAFF_ROLES

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "43200"))  # 30 days

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
security = HTTPBearer(auto_error=False)

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return pwd_context.verify(plain, hashed)
    except (ValueError, TypeError):
        return False


def password_strength_error(password: str) -> Optional[str]:
    """Return a message describing why `password` is too weak, or None."""
    if len(password) < 6:
        return "Password must be at least 6 characters"
    if not (_UPPER.search(password) and _LOWER.search(password) and _DIGIT.search(password)):
        return "Password must contain an uppercase letter, a lowercase letter and a number"
    return None


def create_token(user: dict) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "name": user.get("full_name"),
        "role": user.get("role", "user"),
        "iat": now,
        "exp": now + timedelta(minutes=JWT_EXPIRE_MINUTES),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid token")


def public_user(user: dict) -> dict:
    """Strip secrets from a user document before it leaves the API."""
    out = {k: v for k, v in user.items() if k not in (
        "password_hash", "reset_password_token", "reset_password_expiry", "reset_requested_at")}
    out["_id"] = str(out["_id"])
    return out


def get_current_user(creds: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> dict:
    if creds is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    payload = decode_token(creds.credentials)
    if database.db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    try:
        user = database.db["user"].find_one({"_id": ObjectId(payload.get("sub"))})
    except (InvalidId, TypeError):
        raise HTTPException(status_code=401, detail="Invalid token")
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token")
    return public_user(user)


def require_roles(*allowed: str):
    def _dep(current: dict = Depends(get_current_user)) -> dict:
        if current.get("role") not in allowed:
            raise HTTPException(status_code=403, detail="Not authorized")
        return current
    return _dep


require_staff = require_roles(*STAFF_ROLES)
require_admin = require_roles("admin")


def is_staff(user: dict) -> bool:
    return user.get("role") in STAFF_ROLES
