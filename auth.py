import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from bson import ObjectId
from fastapi import Cookie, Depends, Header, HTTPException
from jose import jwt, JWTError
from passlib.context import CryptContext

from database import db

# Security/JWT
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
TOKEN_TTL = timedelta(days=7)
SESSION_COOKIE = "session_token"
ADMIN_SECRET_KEY = os.getenv("ADMIN_SECRET_KEY")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def create_token(user: dict) -> str:
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "role": user.get("role", "user"),
        "exp": datetime.now(timezone.utc) + TOKEN_TTL,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "role": user.get("role", "user"),
        "phone": user.get("phone"),
        "avatar": user.get("avatar"),
        "address": user.get("address"),
        "is_active": user.get("is_active", True),
    }


def _token_from(authorization: Optional[str], session_token: Optional[str]) -> Optional[str]:
    if authorization:
        return authorization.replace("Bearer ", "").strip()
    return session_token


def _load_user(token: str) -> dict:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token user")
    if not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="Account is blocked")
    return user


def get_current_user(
    authorization: Optional[str] = Header(None),
    session_token: Optional[str] = Cookie(None),
):
    token = _token_from(authorization, session_token)
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")
    return _load_user(token)


def get_optional_user(
    authorization: Optional[str] = Header(None),
    session_token: Optional[str] = Cookie(None),
):
    token = _token_from(authorization, session_token)
    if not token:
        return None
    try:
        return _load_user(token)
    except HTTPException:
        return None


def require_admin(user=Depends(get_current_user)):
    if user.get("role") != "admin":
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user
