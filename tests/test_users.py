"""
Credential store tests, mostly the password-reset lifecycle.
"""

from datetime import datetime, timedelta, timezone

import pytest

import notifications
import security
import users
from errors import (
    DeliveryFailed,
    DuplicateEmail,
    InvalidOrExpiredCode,
    PasswordMismatch,
    ResetNotVerified,
    UserNotFound,
)
from schemas import Role

from conftest import auth_header

pytestmark = pytest.mark.unit


@pytest.fixture
def outbox(monkeypatch):
    sent = []

    def fake_send(to, subject, body):
        sent.append({"to": to, "subject": subject, "body": body})

    monkeypatch.setattr(notifications, "send_email", fake_send)
    return sent


def test_create_user_stores_only_hash(db):
    user = users.create_user(db, "Ada", "ada@example.com", "secret123")

    assert user["password_hash"] != "secret123"
    assert security.verify_password("secret123", user["password_hash"])
    assert user["role"] == "user"
    assert user["active"] is True


def test_create_user_duplicate_email(db, make_user):
    make_user(email="ada@example.com")

    with pytest.raises(DuplicateEmail):
        users.create_user(db, "Other", "ADA@example.com", "secret123")


def test_begin_reset_stores_hash_and_sends_code(db, make_user, outbox):
    user = make_user(email="ada@example.com")

    code = users.begin_password_reset(db, "ada@example.com")

    stored = db["user"].find_one({"_id": user["_id"]})
    assert len(code) == 6 and code.isdigit()
    assert stored["password_reset_code"] == security.hash_reset_code(code)
    assert stored["password_reset_code"] != code
    assert stored["password_reset_verified"] is False
    assert len(outbox) == 1
    assert outbox[0]["to"] == "ada@example.com"
    assert code in outbox[0]["body"]


def test_begin_reset_for_unknown_email(db, outbox):
    with pytest.raises(UserNotFound):
        users.begin_password_reset(db, "ghost@example.com")
    assert outbox == []


def test_begin_reset_rolls_back_when_delivery_fails(db, make_user, monkeypatch):
    user = make_user(email="ada@example.com")

    def failing_send(to, subject, body):
        raise DeliveryFailed()

    monkeypatch.setattr(notifications, "send_email", failing_send)

    with pytest.raises(DeliveryFailed):
        users.begin_password_reset(db, "ada@example.com")

    stored = db["user"].find_one({"_id": user["_id"]})
    assert "password_reset_code" not in stored
    assert "password_reset_expires" not in stored
    assert "password_reset_verified" not in stored


def test_verify_reset_code_marks_verified(db, make_user, outbox):
    user = make_user(email="ada@example.com")
    code = users.begin_password_reset(db, "ada@example.com")

    users.verify_reset_code(db, code)

    assert db["user"].find_one({"_id": user["_id"]})["password_reset_verified"] is True


def test_verify_wrong_code_fails(db, make_user, outbox):
    make_user(email="ada@example.com")
    code = users.begin_password_reset(db, "ada@example.com")
    wrong = "000000" if code != "000000" else "111111"

    with pytest.raises(InvalidOrExpiredCode):
        users.verify_reset_code(db, wrong)


def test_verify_expired_code_fails(db, make_user, outbox):
    user = make_user(email="ada@example.com")
    code = users.begin_password_reset(db, "ada@example.com")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_reset_expires": datetime.now(timezone.utc) - timedelta(minutes=1)}},
    )

    with pytest.raises(InvalidOrExpiredCode):
        users.verify_reset_code(db, code)


def test_complete_reset_requires_verification(db, make_user, outbox):
    make_user(email="ada@example.com")
    users.begin_password_reset(db, "ada@example.com")

    with pytest.raises(ResetNotVerified):
        users.complete_reset(db, "ada@example.com", "newsecret1")


def test_complete_reset_unknown_email(db):
    with pytest.raises(UserNotFound):
        users.complete_reset(db, "ghost@example.com", "newsecret1")


def test_reset_code_is_single_use(db, make_user, outbox):
    user = make_user(email="ada@example.com", password="secret123")
    code = users.begin_password_reset(db, "ada@example.com")
    users.verify_reset_code(db, code)

    token = users.complete_reset(db, "ada@example.com", "newsecret1")

    stored = db["user"].find_one({"_id": user["_id"]})
    assert security.verify(token).user_id == str(user["_id"])
    assert security.verify_password("newsecret1", stored["password_hash"])
    assert stored.get("password_changed_at") is not None
    assert "password_reset_code" not in stored

    with pytest.raises(InvalidOrExpiredCode):
        users.verify_reset_code(db, code)
    with pytest.raises(ResetNotVerified):
        users.complete_reset(db, "ada@example.com", "another1")


def test_change_password_checks_current_password(db, make_user):
    user = make_user(password="secret123")

    with pytest.raises(PasswordMismatch):
        users.change_password(db, str(user["_id"]), "wrong", "newsecret1")

    token = users.change_password(db, str(user["_id"]), "secret123", "newsecret1")

    assert security.verify(token).user_id == str(user["_id"])


def test_reset_flow_over_http(client, db, make_user, outbox):
    make_user(email="ada@example.com", password="secret123")

    assert client.post("/auth/forgot-password", json={"email": "ada@example.com"}).status_code == 200
    code = outbox[0]["body"].rsplit(" ", 1)[-1]

    assert client.post("/auth/verify-reset-code", json={"reset_code": code}).status_code == 200
    response = client.put("/auth/reset-password", json={"email": "ada@example.com", "new_password": "newsecret1"})
    assert response.status_code == 200
    assert response.json()["access_token"]

    login = client.post("/auth/login", json={"email": "ada@example.com", "password": "newsecret1"})
    assert login.status_code == 200


def test_deactivate_me_blocks_further_requests(client, make_user):
    user = make_user()
    headers = auth_header(user)

    assert client.delete("/users/me", headers=headers).status_code == 204

    response = client.get("/users/me", headers=headers)
    assert response.status_code == 401
    assert response.json()["kind"] == "account_deactivated"


def test_staff_can_list_users_but_users_cannot(client, make_user):
    admin = make_user(email="admin@example.com", role=Role.ADMIN)
    user = make_user(email="user@example.com")

    assert client.get("/users", headers=auth_header(user)).status_code == 403
    response = client.get("/users", headers=auth_header(admin))
    assert response.status_code == 200
    assert response.json()["total"] == 2
    assert all("password_hash" not in u for u in response.json()["items"])
