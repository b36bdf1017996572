"""
Access control tests: token resolution, revocation on password change,
role gating, signup and login over HTTP.
"""

from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId

import auth
import security
from errors import (
    AccountDeactivated,
    ExpiredToken,
    Forbidden,
    InvalidToken,
    PasswordChanged,
    TokenUserNotFound,
    Unauthenticated,
)
from schemas import Role

from conftest import auth_header

pytestmark = pytest.mark.unit


def test_authenticate_without_token_fails(db):
    with pytest.raises(Unauthenticated):
        auth.authenticate(db, None)


def test_authenticate_resolves_user(db, make_user):
    user = make_user()
    token = security.issue(str(user["_id"]))

    resolved = auth.authenticate(db, token)

    assert resolved["_id"] == user["_id"]


def test_authenticate_rejects_bad_token(db):
    with pytest.raises(InvalidToken):
        auth.authenticate(db, "garbage")


def test_authenticate_rejects_expired_token(db, make_user):
    user = make_user()
    token = security.issue(
        str(user["_id"]),
        now=datetime.now(timezone.utc) - timedelta(hours=3),
        expires_delta=timedelta(hours=1),
    )

    with pytest.raises(ExpiredToken):
        auth.authenticate(db, token)


def test_authenticate_rejects_deactivated_account(db, make_user):
    user = make_user()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"active": False}})

    with pytest.raises(AccountDeactivated):
        auth.authenticate(db, security.issue(str(user["_id"])))


def test_authenticate_rejects_token_of_deleted_user(db):
    token = security.issue(str(ObjectId()))

    with pytest.raises(TokenUserNotFound):
        auth.authenticate(db, token)


def test_token_issued_before_password_change_is_rejected(db, make_user):
    user = make_user()
    issued = datetime.now(timezone.utc) - timedelta(hours=1)
    token = security.issue(str(user["_id"]), now=issued)
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_changed_at": datetime.now(timezone.utc)}},
    )

    with pytest.raises(PasswordChanged):
        auth.authenticate(db, token)


def test_token_issued_after_password_change_is_accepted(db, make_user):
    user = make_user()
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_changed_at": datetime.now(timezone.utc) - timedelta(hours=1)}},
    )

    resolved = auth.authenticate(db, security.issue(str(user["_id"])))

    assert resolved["_id"] == user["_id"]


def test_authorize_rejects_role_outside_set():
    with pytest.raises(Forbidden):
        auth.authorize({"role": "user"}, auth.ADMINS)


def test_authorize_accepts_member_role():
    auth.authorize({"role": "manager"}, auth.STAFF)


def test_unknown_or_missing_role_has_no_role():
    assert auth.role_of({"role": "ghost"}) is None
    assert auth.role_of({}) is None
    with pytest.raises(Forbidden):
        auth.authorize({"role": "ghost"}, auth.EVERYONE)


def test_admin_route_with_user_role_is_forbidden_and_changes_nothing(client, db, make_user):
    user = make_user()
    order_id = db["order"].insert_one({"user_id": str(user["_id"]), "is_paid": False}).inserted_id

    response = client.put(f"/orders/{order_id}/pay", headers=auth_header(user))

    assert response.status_code == 403
    assert response.json()["kind"] == "forbidden"
    assert db["order"].find_one({"_id": order_id})["is_paid"] is False


def test_missing_bearer_token_is_401(client):
    response = client.get("/auth/me")

    assert response.status_code == 401
    assert response.json()["kind"] == "unauthenticated"


def test_signup_returns_token_and_hides_password(client, db):
    response = client.post(
        "/auth/signup",
        json={"name": "Ada", "email": "Ada@Example.com", "password": "secret123"},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["access_token"]
    assert body["user"]["email"] == "ada@example.com"
    assert body["user"]["role"] == Role.USER.value
    assert "password_hash" not in body["user"]
    assert db["user"].find_one({"email": "ada@example.com"})["password_hash"] != "secret123"


def test_signup_with_taken_email_fails(client, make_user):
    make_user(email="ada@example.com")

    response = client.post(
        "/auth/signup",
        json={"name": "Ada", "email": "ada@example.com", "password": "secret123"},
    )

    assert response.status_code == 400
    assert response.json()["kind"] == "duplicate_email"


def test_login_ok_and_me(client, make_user):
    make_user(email="ada@example.com", password="secret123")

    response = client.post("/auth/login", json={"email": "ada@example.com", "password": "secret123"})
    assert response.status_code == 200
    token = response.json()["access_token"]

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["email"] == "ada@example.com"


def test_login_with_wrong_password_fails(client, make_user):
    make_user(email="ada@example.com", password="secret123")

    response = client.post("/auth/login", json={"email": "ada@example.com", "password": "nope-nope"})

    assert response.status_code == 401
    assert response.json()["kind"] == "incorrect_credentials"


def test_login_of_deactivated_account_fails(client, db, make_user):
    user = make_user(email="ada@example.com", password="secret123")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"active": False}})

    response = client.post("/auth/login", json={"email": "ada@example.com", "password": "secret123"})

    assert response.status_code == 401
    assert response.json()["kind"] == "account_deactivated"
