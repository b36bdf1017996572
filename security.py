"""
Token service and password hashing.

Tokens are HS256 JWTs carrying the user id (``sub``) and the issue time
(``iat``, whole seconds). Revocation after a password change is not done
here: the guard compares ``iat`` against the user's ``password_changed_at``.
"""

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

import config
from errors import ExpiredToken, InvalidToken

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


@dataclass(frozen=True)
class TokenPayload:
    user_id: str
    issued_at: int


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def hash_reset_code(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


def issue(user_id: str, now: Optional[datetime] = None, expires_delta: Optional[timedelta] = None) -> str:
    issued = now or datetime.now(timezone.utc)
    expire = issued + (expires_delta or timedelta(minutes=config.JWT_EXPIRE_MINUTES))
    to_encode = {
        "sub": str(user_id),
        "iat": int(issued.timestamp()),
        "exp": int(expire.timestamp()),
    }
    return jwt.encode(to_encode, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def verify(token: str) -> TokenPayload:
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise ExpiredToken()
    except JWTError:
        raise InvalidToken()
    user_id = payload.get("sub")
    issued_at = payload.get("iat")
    if not user_id or not isinstance(issued_at, int):
        raise InvalidToken()
    return TokenPayload(user_id=user_id, issued_at=issued_at)
