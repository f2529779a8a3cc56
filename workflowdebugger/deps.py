import datetime as dt

import jwt
from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from . import config
from .db import get_db
from .entitlement import AccessCheck, check_access
from .errors import ApiError
from .models import User, utcnow

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


def create_access_token(user: User) -> str:
    now = utcnow()
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "iat": now,
        "exp": now + dt.timedelta(hours=config.JWT_EXPIRE_HOURS),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm="HS256")


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
    if not token:
        raise ApiError.unauthorized()
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
        uid = int(payload.get("sub"))
    except (jwt.InvalidTokenError, TypeError, ValueError):
        raise ApiError.unauthorized("Invalid token")
    user = db.get(User, uid)
    if not user or not user.is_active:
        raise ApiError.unauthorized("User not found")
    return user


def get_access(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> AccessCheck:
    return check_access(db, user.id)


def require_premium(user: User = Depends(get_current_user), access: AccessCheck = Depends(get_access)) -> User:
    if not access.has_access:
        raise ApiError.forbidden(access.reason or "Subscription required")
    return user
