from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from bson import ObjectId
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext

from config import Settings
from database import Store
from errors import Forbidden, Unauthenticated

security = HTTPBearer(auto_error=False)
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return password_ctx.verify(password, hashed)


def create_token(user: dict, settings: Settings) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "is_admin": user.get("is_admin", False),
        "exp": now + timedelta(minutes=settings.jwt_expires_min),
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


def decode_token(token: str, settings: Settings) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Token expired. Please login again.", code="TOKEN_EXPIRED")
    except jwt.InvalidTokenError:
        raise Unauthenticated("Invalid token", code="INVALID_TOKEN")


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    settings: Settings = Depends(get_settings),
    store: Store = Depends(get_store),
) -> dict:
    if credentials is None or not credentials.credentials:
        raise Unauthenticated()
    payload = decode_token(credentials.credentials, settings)
    uid = payload.get("sub")
    if not uid or not ObjectId.is_valid(uid):
        raise Unauthenticated("Invalid token", code="INVALID_TOKEN")
    user = store["user"].find_one({"_id": ObjectId(uid)})
    if not user or not user.get("is_active", True):
        raise Unauthenticated("User not found")
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if not user.get("is_admin"):
        raise Forbidden("Admin only")
    return user
