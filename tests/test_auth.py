from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from filmhub import accounts
from filmhub.models import PasswordResetToken, User, UserSession
from filmhub.security import hash_token, utcnow, verify_password

from conftest import PASSWORD


def register(client, username="newbie", email="newbie@example.com", password="Register1"):
    return client.post("/api/auth/register", json={
        "username": username,
        "email": email,
        "password": password,
    })


def bad_login(client, identifier, password="WrongPass1"):
    return client.post("/api/auth/login", json={"identifier": identifier, "password": password})


# ── registration ──────────────────────────────────────────

def test_register_creates_pending_user(client, db):
    response = register(client)
    assert response.status_code == 201
    body = response.json()
    assert body["user"]["status"] == "pending_verification"

    user = db.query(User).filter(User.username == "newbie").one()
    assert user.password_hash != "Register1"
    assert verify_password("Register1", user.password_hash)


def test_register_conflicts(client, make_user):
    make_user("alice")

    response = register(client, username="other", email="alice@example.com")
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "USER_EXISTS"

    response = register(client, username="Alice", email="new@example.com")
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "USERNAME_TAKEN"


def test_register_rejects_weak_password_and_bad_username(client):
    assert register(client, password="short").status_code == 422
    assert register(client, password="alllowercase1").status_code == 422
    assert register(client, username="no spaces!").status_code == 422
    assert register(client, email="not-an-email").status_code == 422


def test_unverified_user_cannot_log_in_until_verified(client, db):
    register(client)
    response = client.post("/api/auth/login", json={"identifier": "newbie", "password": "Register1"})
    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "ACCOUNT_NOT_ACTIVE"

    user = db.query(User).filter(User.username == "newbie").one()
    token = accounts.create_email_verification(db, user)

    assert client.post("/api/auth/verify-email", json={"token": token}).status_code == 200
    # single use
    assert client.post("/api/auth/verify-email", json={"token": token}).status_code == 400

    response = client.post("/api/auth/login", json={"identifier": "newbie@example.com", "password": "Register1"})
    assert response.status_code == 200


# ── login / lockout ───────────────────────────────────────

def test_login_returns_tokens_and_stores_hashes(client, db, make_user, login):
    make_user("alice")
    body = login("alice")

    assert body["token_type"] == "bearer"
    assert body["user"]["username"] == "alice"

    session = db.query(UserSession).one()
    assert session.token_hash == hash_token(body["access_token"])
    assert session.refresh_token_hash == hash_token(body["refresh_token"])
    assert session.token_hash != body["access_token"]


def test_unknown_user_is_401(client):
    response = bad_login(client, "ghost")
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "INVALID_CREDENTIALS"


def test_wrong_password_increments_attempts(client, db, make_user):
    user = make_user("alice")

    response = bad_login(client, "alice")
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "INVALID_CREDENTIALS"

    db.refresh(user)
    assert user.failed_login_attempts == 1
    assert user.last_failed_login is not None


def test_five_failures_lock_the_account(client, db, make_user):
    user = make_user("alice")

    for _ in range(5):
        assert bad_login(client, "alice").status_code == 401

    db.refresh(user)
    assert user.failed_login_attempts == 5
    locked_for = user.account_locked_until.replace(tzinfo=None) - utcnow().replace(tzinfo=None)
    assert timedelta(minutes=29) < locked_for <= timedelta(minutes=30)

    # correct password is refused while locked
    response = client.post("/api/auth/login", json={"identifier": "alice", "password": PASSWORD})
    assert response.status_code == 423
    assert response.json()["detail"]["code"] == "ACCOUNT_LOCKED"


def test_expired_lock_allows_login_and_resets_counter(client, db, make_user, login):
    user = make_user("alice")
    user.failed_login_attempts = 5
    user.account_locked_until = utcnow() - timedelta(minutes=1)
    db.commit()

    login("alice")

    db.refresh(user)
    assert user.failed_login_attempts == 0
    assert user.account_locked_until is None


def test_successful_login_resets_counter(client, db, make_user, login):
    user = make_user("alice")
    bad_login(client, "alice")
    bad_login(client, "alice")

    login("alice")

    db.refresh(user)
    assert user.failed_login_attempts == 0
    assert user.login_count == 1
    assert user.last_login is not None


def test_banned_user_cannot_log_in(client, db, make_user):
    user = make_user("alice")
    user.is_banned = True
    db.commit()

    response = client.post("/api/auth/login", json={"identifier": "alice", "password": PASSWORD})
    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "ACCOUNT_BANNED"


# ── tokens / sessions ─────────────────────────────────────

def test_protected_route_needs_token(client):
    response = client.get("/api/auth/me")
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "NO_TOKEN"

    response = client.get("/api/auth/me", headers={"Authorization": "Bearer garbage"})
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "INVALID_TOKEN"


def test_refresh_rotates_tokens(client, make_user, login):
    make_user("alice")
    tokens = login("alice")

    response = client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert response.status_code == 200
    rotated = response.json()
    assert rotated["access_token"] != tokens["access_token"]
    assert rotated["refresh_token"] != tokens["refresh_token"]

    # the new access token works, the old pair is dead
    assert client.get("/api/auth/me", headers={"Authorization": f"Bearer {rotated['access_token']}"}).status_code == 200
    assert client.get("/api/auth/me", headers={"Authorization": f"Bearer {tokens['access_token']}"}).status_code == 401
    assert client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]}).status_code == 401


def test_refresh_rejects_access_token(client, make_user, login):
    make_user("alice")
    tokens = login("alice")

    response = client.post("/api/auth/refresh", json={"refresh_token": tokens["access_token"]})
    assert response.status_code == 401


def test_logout_invalidates_token(client, make_user, login):
    make_user("alice")
    headers = {"Authorization": f"Bearer {login('alice')['access_token']}"}

    assert client.get("/api/auth/me", headers=headers).status_code == 200
    assert client.post("/api/auth/logout", headers=headers).status_code == 200

    response = client.get("/api/auth/me", headers=headers)
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "INVALID_SESSION"

    # idempotent
    assert client.post("/api/auth/logout", headers=headers).status_code == 200


def test_logout_all_and_session_list(client, make_user, login):
    make_user("alice")
    first = {"Authorization": f"Bearer {login('alice')['access_token']}"}
    second = {"Authorization": f"Bearer {login('alice', remember_me=True)['access_token']}"}

    sessions = client.get("/api/auth/sessions", headers=first).json()
    assert len(sessions) == 2
    assert [s["current"] for s in sessions].count(True) == 1

    assert client.post("/api/auth/logout-all", headers=first).status_code == 200
    assert client.get("/api/auth/me", headers=first).status_code == 401
    assert client.get("/api/auth/me", headers=second).status_code == 401


# ── profile / passwords ───────────────────────────────────

def test_profile_update(client, make_user, auth_headers):
    make_user("alice")
    headers = auth_headers("alice")

    response = client.put("/api/auth/me", headers=headers, json={"bio": "Films at night", "location": "Busan"})
    assert response.status_code == 200
    assert response.json()["bio"] == "Films at night"

    assert client.put("/api/auth/me", headers=headers, json={}).status_code == 400


def test_change_password_keeps_current_session_only(client, make_user, login):
    make_user("alice")
    current = {"Authorization": f"Bearer {login('alice')['access_token']}"}
    other = {"Authorization": f"Bearer {login('alice')['access_token']}"}

    response = client.post("/api/auth/change-password", headers=current,
                           json={"current_password": "Nope12345", "new_password": "Changed99"})
    assert response.status_code == 400

    response = client.post("/api/auth/change-password", headers=current,
                           json={"current_password": PASSWORD, "new_password": "Changed99"})
    assert response.status_code == 200

    assert client.get("/api/auth/me", headers=current).status_code == 200
    assert client.get("/api/auth/me", headers=other).status_code == 401
    login("alice", "Changed99")


def test_forgot_password_does_not_leak_accounts(client, db, make_user):
    make_user("alice")

    known = client.post("/api/auth/forgot-password", json={"email": "alice@example.com"})
    unknown = client.post("/api/auth/forgot-password", json={"email": "nobody@example.com"})
    assert known.status_code == unknown.status_code == 200
    assert known.json() == unknown.json()
    assert db.query(PasswordResetToken).count() == 1


def test_password_reset_is_single_use_and_revokes_sessions(client, db, make_user, login):
    user = make_user("alice")
    headers = {"Authorization": f"Bearer {login('alice')['access_token']}"}
    token = accounts.create_password_reset_token(db, user)
    old_hash = user.password_hash

    response = client.post("/api/auth/reset-password", json={"token": token, "new_password": "BrandNew42"})
    assert response.status_code == 200

    db.expire_all()
    user = db.get(User, user.id)
    assert user.password_hash != old_hash
    assert verify_password("BrandNew42", user.password_hash)
    assert db.query(PasswordResetToken).one().used is True
    assert db.query(UserSession).filter(UserSession.is_active.is_(True)).count() == 0
    assert client.get("/api/auth/me", headers=headers).status_code == 401

    # second use fails
    response = client.post("/api/auth/reset-password", json={"token": token, "new_password": "Another42x"})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "INVALID_TOKEN"

    login("alice", "BrandNew42")


def test_expired_reset_token_is_rejected(client, db, make_user):
    user = make_user("alice")
    token = accounts.create_password_reset_token(db, user)
    reset = db.query(PasswordResetToken).one()
    reset.expires_at = utcnow() - timedelta(minutes=1)
    db.commit()

    response = client.post("/api/auth/reset-password", json={"token": token, "new_password": "BrandNew42"})
    assert response.status_code == 400


@pytest.mark.parametrize("email", ["a@b..c", "x@y.c,om", "two@@example.com", "spaces in@example.com"])
def test_register_rejects_malformed_email(client, db, email):
    assert register(client, email=email).status_code == 422
    assert db.query(User).count() == 0


def test_register_lowercases_email(client, db):
    assert register(client, email="NewBie@Example.COM").status_code == 201
    assert db.query(User).one().email == "newbie@example.com"


def test_forgot_password_rejects_malformed_email(client):
    response = client.post("/api/auth/forgot-password", json={"email": "a@b..c"})
    assert response.status_code == 422


def test_register_race_on_unique_columns_returns_409(client, db, monkeypatch):
    def lost_race(*args, **kwargs):
        raise IntegrityError("INSERT INTO users", {}, Exception("UNIQUE constraint failed: users.email"))

    monkeypatch.setattr(accounts, "create_user", lost_race)

    response = register(client)
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "USER_EXISTS"


def test_password_reset_rolls_back_when_commit_fails(client, db, make_user, login, monkeypatch):
    user = make_user("alice")
    headers = {"Authorization": f"Bearer {login('alice')['access_token']}"}
    token = accounts.create_password_reset_token(db, user)
    old_hash = user.password_hash

    def failing_commit(self):
        raise SQLAlchemyError("database went away")

    monkeypatch.setattr(Session, "commit", failing_commit)
    response = client.post("/api/auth/reset-password", json={"token": token, "new_password": "BrandNew42"})
    monkeypatch.undo()
    assert response.status_code == 500

    db.expire_all()
    assert db.get(User, user.id).password_hash == old_hash
    assert db.query(PasswordResetToken).one().used is False
    assert db.query(UserSession).filter(UserSession.is_active.is_(True)).count() == 1
    assert client.get("/api/auth/me", headers=headers).status_code == 200

    # the token is still good once the database recovers
    response = client.post("/api/auth/reset-password", json={"token": token, "new_password": "BrandNew42"})
    assert response.status_code == 200
