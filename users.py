"""
Credential store: user records, password changes and the reset-code lifecycle.

Only hashes are persisted, never a plaintext password or reset code.
"""

import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
import notifications
import security
from database import as_utc, serialize_doc, to_object_id, utcnow
from errors import (
    DuplicateEmail,
    InvalidOrExpiredCode,
    PasswordMismatch,
    ResetNotVerified,
    UserNotFound,
)
from schemas import Role, User

logger = logging.getLogger(__name__)

PRIVATE_FIELDS = (
    "password_hash",
    "password_reset_code",
    "password_reset_expires",
    "password_reset_verified",
)

RESET_FIELDS = {
    "password_reset_code": "",
    "password_reset_expires": "",
    "password_reset_verified": "",
}


def public_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    user = serialize_doc(doc)
    for field in PRIVATE_FIELDS:
        user.pop(field, None)
    return user


def find_by_email(db: Database, email: str) -> Optional[Dict[str, Any]]:
    return db["user"].find_one({"email": email.strip().lower()})


def get_user(db: Database, user_id: str) -> Dict[str, Any]:
    user = db["user"].find_one({"_id": to_object_id(user_id, "user id")})
    if not user:
        raise UserNotFound(f"There's no user with ID: {user_id}")
    return user


def list_users(db: Database, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    skip = max(page - 1, 0) * limit
    cursor = db["user"].find({}).sort("created_at", -1).skip(skip).limit(limit)
    items = [public_user(u) for u in cursor]
    return {"items": items, "total": db["user"].count_documents({}), "page": page, "limit": limit}


def create_user(db: Database, name: str, email: str, password: str, role: Role = Role.USER, phone: Optional[str] = None) -> Dict[str, Any]:
    email = email.strip().lower()
    if find_by_email(db, email):
        raise DuplicateEmail()
    user_model = User(
        name=name,
        email=email,
        phone=phone,
        password_hash=security.hash_password(password),
        role=role,
    )
    data = user_model.model_dump()
    now = utcnow()
    data["created_at"] = now
    data["updated_at"] = now
    try:
        result = db["user"].insert_one(data)
    except DuplicateKeyError:
        # lost a race against a concurrent signup with the same email
        raise DuplicateEmail()
    return db["user"].find_one({"_id": result.inserted_id})


def update_user(db: Database, user_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    oid = to_object_id(user_id, "user id")
    update = {k: v for k, v in changes.items() if v is not None}
    if "email" in update:
        update["email"] = update["email"].strip().lower()
        other = db["user"].find_one({"email": update["email"], "_id": {"$ne": oid}})
        if other:
            raise DuplicateEmail()
    if "role" in update and isinstance(update["role"], Role):
        update["role"] = update["role"].value
    update["updated_at"] = utcnow()
    res = db["user"].update_one({"_id": oid}, {"$set": update})
    if res.matched_count == 0:
        raise UserNotFound(f"There's no user with ID: {user_id}")
    return db["user"].find_one({"_id": oid})


def delete_user(db: Database, user_id: str) -> None:
    res = db["user"].delete_one({"_id": to_object_id(user_id, "user id")})
    if res.deleted_count == 0:
        raise UserNotFound(f"There's no user with ID: {user_id}")


def deactivate_me(db: Database, user_id: str) -> None:
    db["user"].update_one(
        {"_id": to_object_id(user_id, "user id")},
        {"$set": {"active": False, "updated_at": utcnow()}},
    )


def set_password(db: Database, user_id: str, new_password: str) -> Dict[str, Any]:
    """Replace the password and stamp the change; older tokens stop working."""
    oid = to_object_id(user_id, "user id")
    now = utcnow()
    res = db["user"].update_one(
        {"_id": oid},
        {"$set": {
            "password_hash": security.hash_password(new_password),
            "password_changed_at": now,
            "updated_at": now,
        }},
    )
    if res.matched_count == 0:
        raise UserNotFound(f"There's no user with ID: {user_id}")
    return db["user"].find_one({"_id": oid})


def change_password(db: Database, user_id: str, current_password: str, new_password: str) -> str:
    user = get_user(db, user_id)
    if not security.verify_password(current_password, user.get("password_hash", "")):
        raise PasswordMismatch()
    set_password(db, user_id, new_password)
    return security.issue(user_id)


# Password reset

def begin_password_reset(db: Database, email: str) -> str:
    user = find_by_email(db, email)
    if not user:
        raise UserNotFound(f"There's no user with the email {email}")

    reset_code = f"{secrets.randbelow(900000) + 100000}"
    expires = utcnow() + timedelta(minutes=config.RESET_CODE_TTL_MINUTES)
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {
            "password_reset_code": security.hash_reset_code(reset_code),
            "password_reset_expires": expires,
            "password_reset_verified": False,
        }},
    )

    try:
        notifications.send_email(
            user["email"],
            f"Your password reset code (valid for {config.RESET_CODE_TTL_MINUTES} mins)",
            f"Hi {user.get('name', '')},\nYour password reset code is {reset_code}",
        )
    except Exception:
        logger.error("Reset code delivery failed for user %s, clearing reset state", user["_id"])
        db["user"].update_one({"_id": user["_id"]}, {"$unset": RESET_FIELDS})
        raise

    return reset_code


def verify_reset_code(db: Database, code: str) -> None:
    hashed = security.hash_reset_code(code)
    now = utcnow()
    for user in db["user"].find({"password_reset_code": hashed}):
        expires = user.get("password_reset_expires")
        if expires and as_utc(expires) > now:
            db["user"].update_one({"_id": user["_id"]}, {"$set": {"password_reset_verified": True}})
            return
    raise InvalidOrExpiredCode()


def complete_reset(db: Database, email: str, new_password: str) -> str:
    user = find_by_email(db, email)
    if not user:
        raise UserNotFound(f"There's no user with the email {email}")
    if not user.get("password_reset_verified"):
        raise ResetNotVerified()

    now = utcnow()
    db["user"].update_one(
        {"_id": user["_id"]},
        {
            "$set": {
                "password_hash": security.hash_password(new_password),
                "password_changed_at": now,
                "updated_at": now,
            },
            "$unset": RESET_FIELDS,
        },
    )
    return security.issue(str(user["_id"]))

