"""
Access control: who is calling, and may they do this.

``get_current_user`` resolves the bearer token into a user document and
attaches it to ``request.state.user``; ``allowed_to`` gates a route on a
fixed role set.
"""

import logging
from typing import AbstractSet, Any, Callable, Dict, Optional, Tuple

from fastapi import Depends, Header, Request
from pymongo.database import Database

import security
import users
from database import as_utc, get_db, to_object_id
from errors import (
    AccountDeactivated,
    Forbidden,
    IncorrectCredentials,
    InvalidId,
    InvalidToken,
    PasswordChanged,
    TokenUserNotFound,
    Unauthenticated,
)
from schemas import Role

logger = logging.getLogger(__name__)

USERS = frozenset({Role.USER})
STAFF = frozenset({Role.ADMIN, Role.MANAGER})
ADMINS = frozenset({Role.ADMIN})
EVERYONE = frozenset(Role)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization.split(" ", 1)[1].strip()
    return token or None


def authenticate(db: Database, token: Optional[str]) -> Dict[str, Any]:
    if not token:
        raise Unauthenticated()

    payload = security.verify(token)
    try:
        user_id = to_object_id(payload.user_id)
    except InvalidId:
        raise InvalidToken()
    user = db["user"].find_one({"_id": user_id})

    if user is not None and not user.get("active", True):
        raise AccountDeactivated()
    if user is None:
        raise TokenUserNotFound()

    changed_at = user.get("password_changed_at")
    if changed_at and int(as_utc(changed_at).timestamp()) > payload.issued_at:
        raise PasswordChanged()
    return user


def role_of(user: Dict[str, Any]) -> Optional[Role]:
    try:
        return Role(user.get("role"))
    except ValueError:
        return None


def authorize(user: Dict[str, Any], allowed: AbstractSet[Role]) -> None:
    if role_of(user) not in allowed:
        raise Forbidden()


def get_current_user(request: Request, authorization: Optional[str] = Header(default=None), db: Database = Depends(get_db)) -> Dict[str, Any]:
    user = authenticate(db, bearer_token(authorization))
    request.state.user = user
    return user


def allowed_to(allowed: AbstractSet[Role]) -> Callable[..., Dict[str, Any]]:
    allowed = frozenset(allowed)

    def dependency(current_user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        authorize(current_user, allowed)
        return current_user

    return dependency


def signup(db: Database, name: str, email: str, password: str) -> Tuple[Dict[str, Any], str]:
    user = users.create_user(db, name, email, password)
    logger.info("New user signed up: %s", user["_id"])
    return user, security.issue(str(user["_id"]))


def login(db: Database, email: str, password: str) -> Tuple[Dict[str, Any], str]:
    user = users.find_by_email(db, email)
    if not user or not security.verify_password(password, user.get("password_hash", "")):
        logger.info("Failed login for %s", email)
        raise IncorrectCredentials()
    if not user.get("active", True):
        raise AccountDeactivated()
    return user, security.issue(str(user["_id"]))
