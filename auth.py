"""
Authentication and authorization

Passwords are hashed with passlib. A successful register or login creates a
server-side session and hands the client a signed token that carries the
session id; the token alone grants nothing once the session entry is gone.

Authorization is a chain of guard functions. A guard takes the current
principal (or None) and returns None to let the request through or the
AppError that rejects it. ``require`` turns a chain into a FastAPI
dependency so a rejected request never reaches the route body.
"""
import logging
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from dotenv import load_dotenv
from fastapi import Cookie, Depends, Header
from jose import JWTError, jwt
from passlib.context import CryptContext

from errors import AppError, Forbidden, Unauthorized
from sessions import SESSION_TTL_SECONDS, SessionStore, get_sessions
from storage import MongoStorage, get_storage

load_dotenv()

logger = logging.getLogger(__name__)

SECRET_KEY = os.getenv("JWT_SECRET", "dev-secret-change")
ALGORITHM = "HS256"
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")

pwd_context = CryptContext(schemes=["argon2", "bcrypt"], deprecated="auto")

Principal = Optional[Dict[str, Any]]
Guard = Callable[[Principal], Optional[AppError]]


# Utilities

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> Tuple[bool, Optional[str]]:
    """Return (matches, replacement_hash); the replacement is set when the stored hash is outdated."""
    try:
        return pwd_context.verify_and_update(plain_password, hashed_password)
    except ValueError:
        logger.warning("Stored password hash could not be identified")
        return False, None


def create_session_token(session_id: str, user_id: str, ttl: int = SESSION_TTL_SECONDS) -> str:
    expire = datetime.now(timezone.utc) + timedelta(seconds=ttl)
    return jwt.encode({"sid": session_id, "sub": user_id, "exp": expire}, SECRET_KEY, algorithm=ALGORITHM)


def decode_session_token(token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


def start_session(sessions: SessionStore, user: Dict[str, Any]) -> str:
    session_id = secrets.token_urlsafe(32)
    sessions.set(session_id, {"user_id": user["id"]})
    sessions.prune()
    return create_session_token(session_id, user["id"])


# Operations

def register(storage: MongoStorage, sessions: SessionStore, username: str, email: str,
             password: str) -> Tuple[Dict[str, Any], str]:
    user = storage.create_user({
        "username": username,
        "email": email,
        "password_hash": hash_password(password),
        "role": "user",
    })
    logger.info("Registered user %s", user["id"])
    return user, start_session(sessions, user)


def login(storage: MongoStorage, sessions: SessionStore, identifier: str,
          password: str) -> Tuple[Dict[str, Any], str]:
    user = storage.get_user_by_identifier(identifier)
    if not user:
        pwd_context.dummy_verify()
        logger.info("Failed login for %r", identifier)
        raise Unauthorized("Invalid username/email or password")
    valid, new_hash = verify_password(password, user.get("password_hash") or "")
    if not valid:
        logger.info("Failed login for %r", identifier)
        raise Unauthorized("Invalid username/email or password")
    if new_hash:
        user = storage.update_user(user["id"], {"password_hash": new_hash})
        logger.info("Upgraded password hash for user %s", user["id"])
    logger.info("User %s logged in", user["id"])
    return user, start_session(sessions, user)


def logout(sessions: SessionStore, token: Optional[str]) -> None:
    payload = decode_session_token(token) if token else None
    if payload and payload.get("sid"):
        sessions.delete(payload["sid"])
        logger.info("User %s logged out", payload.get("sub"))


def current_principal(storage: MongoStorage, sessions: SessionStore, token: Optional[str]) -> Principal:
    if not token:
        return None
    payload = decode_session_token(token)
    if not payload or not payload.get("sid"):
        return None
    session = sessions.get(payload["sid"])
    if not session or session.get("user_id") != payload.get("sub"):
        return None
    user = storage.get_user(session["user_id"])
    if user is None:
        # account deleted while the session was alive
        sessions.delete(payload["sid"])
    return user


# Guards

def authenticated(principal: Principal) -> Optional[AppError]:
    if principal is None:
        return Unauthorized("Unauthorized")
    return None


def admin(principal: Principal) -> Optional[AppError]:
    if principal is None or principal.get("role") != "admin":
        return Forbidden("Forbidden")
    return None


def self_or_admin(user_id: str) -> Guard:
    def guard(principal: Principal) -> Optional[AppError]:
        if principal is None:
            return Unauthorized("Unauthorized")
        if principal["id"] != user_id and principal.get("role") != "admin":
            return Forbidden("Forbidden")
        return None
    return guard


def enforce(principal: Principal, *guards: Guard) -> Principal:
    for guard in guards:
        error = guard(principal)
        if error is not None:
            raise error
    return principal


# Dependencies

def get_session_token(
    authorization: Optional[str] = Header(default=None),
    session_cookie: Optional[str] = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1]
    return session_cookie


def get_current_user(
    token: Optional[str] = Depends(get_session_token),
    storage: MongoStorage = Depends(get_storage),
    sessions: SessionStore = Depends(get_sessions),
) -> Principal:
    return current_principal(storage, sessions, token)


def require(*guards: Guard):
    def dependency(principal: Principal = Depends(get_current_user)) -> Dict[str, Any]:
        return enforce(principal, *guards)
    return dependency


require_authenticated = require(authenticated)
require_admin = require(authenticated, admin)
