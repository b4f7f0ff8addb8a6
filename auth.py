from typing import Optional

from fastapi import Depends, Header
from pymongo.database import Database

from database import get_db
from errors import AccessDeniedError, AuthenticationError
from models import Sessions


def bearer_token(authorization: Optional[str] = Header(None)) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Access token required")
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise AuthenticationError("Access token required")
    return token


def get_current_user(token: str = Depends(bearer_token), db: Database = Depends(get_db)) -> dict:
    user = Sessions.get_user(db, token)
    if not user:
        raise AuthenticationError("Invalid or expired token")
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "admin":
        raise AccessDeniedError("Admin access required")
    return user


def ensure_owner_or_admin(user: dict, owner_id: str) -> None:
    if str(owner_id) != str(user["_id"]) and user.get("role") != "admin":
        raise AccessDeniedError("Access denied")
