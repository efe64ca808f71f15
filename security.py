import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Request, Response
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel

import config
from database import collection, oid
from errors import ApiError, ErrorKind

logger = logging.getLogger(__name__)

TOKEN_COOKIE = "token"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=config.BCRYPT_ROUNDS)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


class Principal(BaseModel):
    """The authenticated caller, passed explicitly to every handler."""

    id: str
    name: str
    email: str
    role: str
    franchise: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_manager(self) -> bool:
        return self.role == "orderManager"

    def manages(self, franchise_id) -> bool:
        return self.is_manager and self.franchise is not None and self.franchise == str(franchise_id)


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None):
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=config.ACCESS_TOKEN_EXPIRE_DAYS))
    return jwt.encode({"id": user_id, "exp": expire}, config.SECRET_KEY, algorithm=config.ALGORITHM)


def set_token_cookie(response: Response, token: str):
    response.set_cookie(
        TOKEN_COOKIE,
        token,
        httponly=True,
        max_age=config.ACCESS_TOKEN_EXPIRE_DAYS * 24 * 60 * 60,
        secure=config.COOKIE_SECURE,
        samesite="strict",
    )


def clear_token_cookie(response: Response):
    response.delete_cookie(TOKEN_COOKIE, httponly=True, secure=config.COOKIE_SECURE, samesite="strict")


def principal_from_user(user: dict) -> Principal:
    franchise = user.get("franchise")
    return Principal(
        id=str(user["_id"]),
        name=user.get("name", ""),
        email=user.get("email", ""),
        role=user.get("role", "user"),
        franchise=str(franchise) if franchise else None,
    )


def get_current_user(request: Request, bearer: Optional[str] = Depends(oauth2_scheme)) -> Principal:
    token = bearer or request.cookies.get(TOKEN_COOKIE)
    if not token:
        raise ApiError(ErrorKind.UNAUTHORIZED, "Access denied. No token provided.", headers={"WWW-Authenticate": "Bearer"})

    credentials_exception = ApiError(
        ErrorKind.UNAUTHORIZED, "Could not validate credentials", headers={"WWW-Authenticate": "Bearer"}
    )
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        user_id = payload.get("id")
        if user_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    try:
        user = collection("user").find_one({"_id": oid(user_id)})
    except ApiError as exc:
        if exc.kind is ErrorKind.INTERNAL:
            raise
        user = None

    if not user:
        raise credentials_exception
    if user.get("status", "Active") != "Active":
        raise ApiError(ErrorKind.FORBIDDEN, "Your account is not active. Please contact support.")
    return principal_from_user(user)


def require_admin(user: Principal = Depends(get_current_user)) -> Principal:
    if not user.is_admin:
        logger.warning("Admin-only access refused for user %s (%s)", user.id, user.role)
        raise ApiError(ErrorKind.FORBIDDEN, "Access denied. Admin privileges required.")
    return user


def require_admin_or_manager(user: Principal = Depends(get_current_user)) -> Principal:
    if not (user.is_admin or user.is_manager):
        logger.warning("Admin/manager access refused for user %s (%s)", user.id, user.role)
        raise ApiError(ErrorKind.FORBIDDEN, "Access denied. Admin or manager privileges required.")
    return user


def ensure_franchise_access(user: Principal, franchise_id, action: str = "access this franchise"):
    """Admins pass; order managers only for the franchise they are bound to."""
    if user.is_admin or user.manages(franchise_id):
        return
    logger.warning("User %s (%s) refused to %s %s", user.id, user.role, action, franchise_id)
    raise ApiError(ErrorKind.FORBIDDEN, f"Not authorized to {action}")
