from datetime import timedelta

import pytest

from filmhub import accounts
from filmhub.models import AdminActivity, PasswordResetToken, User, UserSession, Video
from filmhub.security import utcnow

from conftest import PASSWORD


@pytest.fixture
def staff(make_user, auth_headers):
    make_user("root", role="admin")
    make_user("mod", role="moderator")
    return {"admin": auth_headers("root"), "moderator": auth_headers("mod")}


@pytest.mark.parametrize("path", [
    "/api/admin/stats",
    "/api/admin/moderation/queue",
    "/api/admin/users",
    "/api/admin/films",
    "/api/admin/activity",
])
def test_non_staff_gets_403(client, make_user, auth_headers, path):
    make_user("alice")

    response = client.get(path, headers=auth_headers("alice"))
    assert response.status_code == 403
    assert response.json()["detail"]["current"] == "user"

    assert client.get(path).status_code == 401


def test_moderation_flow(client, db, staff, make_user, make_film):
    alice = make_user("alice")
    film = make_film(alice, moderation_status="pending")
    make_film(alice, title="Already Live")

    queue = client.get("/api/admin/moderation/queue", headers=staff["moderator"]).json()
    assert queue["total"] == 1
    assert queue["films"][0]["owner_username"] == "alice"

    response = client.post(f"/api/admin/moderation/films/{film.id}/approve", headers=staff["moderator"],
                           json={"notes": "Looks good"})
    assert response.status_code == 200
    assert response.json()["moderation_status"] == "approved"
    assert response.json()["moderated_by"] is not None

    assert client.get("/api/admin/moderation/queue", headers=staff["moderator"]).json()["total"] == 0
    assert client.get(f"/api/films/{film.id}").status_code == 200


def test_reject_requires_reason(client, staff, make_user, make_film):
    film = make_film(make_user("alice"), moderation_status="pending")
    url = f"/api/admin/moderation/films/{film.id}/reject"

    assert client.post(url, headers=staff["admin"], json={}).status_code == 400

    response = client.post(url, headers=staff["admin"], json={"reason": "Copyrighted soundtrack"})
    assert response.status_code == 200
    assert response.json()["moderation_status"] == "rejected"
    assert response.json()["moderation_notes"] == "Copyrighted soundtrack"

    rejected = client.get("/api/admin/moderation/queue", params={"status": "rejected"}, headers=staff["admin"])
    assert rejected.json()["total"] == 1


def test_flag_increments_count(client, staff, make_user, make_film):
    film = make_film(make_user("alice"))
    url = f"/api/admin/moderation/films/{film.id}/flag"

    client.post(url, headers=staff["moderator"], json={"reason": "Reported"})
    body = client.post(url, headers=staff["moderator"]).json()
    assert body["flag_count"] == 2
    assert body["moderation_status"] == "flagged"

    # flagged films leave the public catalog
    assert client.get(f"/api/films/{film.id}").status_code == 404


def test_ban_requires_admin_and_revokes_sessions(client, db, staff, make_user, login):
    alice = make_user("alice")
    alice_headers = {"Authorization": f"Bearer {login('alice')['access_token']}"}
    url = f"/api/admin/users/{alice.id}/ban"

    assert client.post(url, headers=staff["moderator"], json={"reason": "spam"}).status_code == 403
    assert client.post(url, headers=staff["admin"], json={}).status_code == 422

    response = client.post(url, headers=staff["admin"], json={"reason": "spam"})
    assert response.status_code == 200
    assert response.json()["user"]["is_banned"] is True

    assert client.get("/api/auth/me", headers=alice_headers).status_code == 401
    assert db.query(UserSession).filter(
        UserSession.user_id == alice.id, UserSession.is_active.is_(True)).count() == 0

    response = client.post("/api/auth/login", json={"identifier": "alice", "password": PASSWORD})
    assert response.status_code == 403

    assert client.post(f"/api/admin/users/{alice.id}/unban", headers=staff["admin"]).status_code == 200
    login("alice")


def test_admin_cannot_ban_self(client, db, staff):
    root = db.query(User).filter(User.username == "root").one()

    response = client.post(f"/api/admin/users/{root.id}/ban", headers=staff["admin"], json={"reason": "oops"})
    assert response.status_code == 400


def test_role_change(client, staff, make_user):
    alice = make_user("alice")
    url = f"/api/admin/users/{alice.id}/role"

    assert client.put(url, headers=staff["moderator"], json={"role": "admin"}).status_code == 403
    assert client.put(url, headers=staff["admin"], json={"role": "wizard"}).status_code == 422

    response = client.put(url, headers=staff["admin"], json={"role": "moderator"})
    assert response.json()["user"]["role"] == "moderator"


def test_user_listing_filters(client, staff, make_user, make_film, db):
    alice = make_user("alice")
    make_user("bob")
    make_film(alice)
    alice.is_banned = True
    db.commit()

    body = client.get("/api/admin/users", params={"search": "ali"}, headers=staff["admin"]).json()
    assert [u["username"] for u in body["users"]] == ["alice"]
    assert body["users"][0]["video_count"] == 1

    body = client.get("/api/admin/users", params={"banned": True}, headers=staff["admin"]).json()
    assert [u["username"] for u in body["users"]] == ["alice"]

    body = client.get("/api/admin/users", params={"role": "moderator"}, headers=staff["admin"]).json()
    assert [u["username"] for u in body["users"]] == ["mod"]


def test_film_management(client, db, fake_s3, staff, make_user, make_film):
    alice = make_user("alice")
    first = make_film(alice, title="One")
    second = make_film(alice, title="Two")
    third = make_film(alice, title="Three")

    listing = client.get("/api/admin/films", params={"search": "t"}, headers=staff["admin"]).json()
    assert listing["pagination"]["total"] == 2

    response = client.put(f"/api/admin/films/{first.id}", headers=staff["admin"], json={"status": "error"})
    assert response.json()["status"] == "error"

    response = client.post("/api/admin/films/bulk", headers=staff["admin"],
                           json={"action": "update_status", "video_ids": [second.id, third.id], "status": "processing"})
    assert response.json()["affected_rows"] == 2

    response = client.post("/api/admin/films/bulk", headers=staff["admin"],
                           json={"action": "delete", "video_ids": [second.id, third.id]})
    assert response.json()["affected_rows"] == 2
    assert db.query(Video).count() == 1
    assert len(fake_s3) == 1

    assert client.delete(f"/api/admin/films/{first.id}", headers=staff["moderator"]).status_code == 200
    assert db.query(Video).count() == 0

    actions = {a.action_type for a in db.query(AdminActivity).all()}
    assert {"update_video", "bulk_update_status", "bulk_delete_videos", "delete_video"} <= actions

    log = client.get("/api/admin/activity", headers=staff["admin"]).json()
    assert len(log) == 4


def test_stats(client, staff, make_user, make_film):
    alice = make_user("alice")
    make_film(alice, title="Popular", view_count=100)
    make_film(alice, title="Quiet", view_count=1)
    make_film(alice, title="Waiting", moderation_status="pending", view_count=500)

    stats = client.get("/api/admin/stats", headers=staff["moderator"]).json()
    assert stats["videos"]["total"] == 3
    assert stats["videos"]["moderation"]["pending"] == 1
    assert stats["views"]["total"] == 601
    assert stats["users"]["total"] == 3
    assert [v["title"] for v in stats["top_videos"]] == ["Popular", "Quiet"]


def test_cleanup_tokens(client, db, staff, make_user):
    alice = make_user("alice")
    accounts.create_password_reset_token(db, alice)
    db.query(PasswordResetToken).update({"expires_at": utcnow() - timedelta(hours=1)})
    db.commit()

    response = client.post("/api/admin/maintenance/cleanup-tokens", headers=staff["admin"])
    assert response.status_code == 200
    assert response.json()["deleted"] == 1


def test_film_update_rejects_null_for_required_fields(client, db, staff, make_user, make_film):
    film = make_film(make_user("alice"), title="Keep Me")

    for body in ({"title": None}, {"is_private": None}, {"status": None}):
        response = client.put(f"/api/admin/films/{film.id}", headers=staff["admin"], json=body)
        assert response.status_code == 422

    db.expire_all()
    video = db.get(Video, film.id)
    assert video.title == "Keep Me"
    assert video.status == "ready"


@pytest.mark.parametrize("path, params", [
    ("/api/admin/activity", {"limit": -1}),
    ("/api/admin/moderation/queue", {"skip": -1}),
    ("/api/admin/users", {"limit": 0}),
    ("/api/admin/films", {"page": 0}),
    ("/api/admin/films", {"limit": 1000}),
])
def test_pagination_is_bounded(client, staff, path, params):
    assert client.get(path, params=params, headers=staff["admin"]).status_code == 422
