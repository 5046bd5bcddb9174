from filmhub.models import Playlist, PlaylistItem


def create(client, headers, title="Late Night", **fields):
    return client.post("/api/playlists/", headers=headers, json={"title": title, **fields})


def add(client, headers, playlist_id, video_id):
    return client.post(f"/api/playlists/{playlist_id}/videos", headers=headers, json={"video_id": video_id})


def positions(client, playlist_id, headers=None):
    videos = client.get(f"/api/playlists/{playlist_id}/videos", headers=headers).json()["videos"]
    return [(v["position"], v["video"]["id"]) for v in videos]


def test_create_and_read(client, make_user, auth_headers):
    make_user("alice")
    headers = auth_headers("alice")

    response = create(client, headers, title="  Favourites  ", description="Keepers")
    assert response.status_code == 201
    body = response.json()
    assert body["title"] == "Favourites"
    assert body["video_count"] == 0
    assert body["owner"]["username"] == "alice"

    assert client.get(f"/api/playlists/{body['id']}").status_code == 200
    assert create(client, headers, title="   ").status_code == 422
    assert create(client, None).status_code == 401


def test_private_playlist_is_hidden_from_others(client, make_user, auth_headers):
    make_user("alice")
    make_user("bob")
    alice = auth_headers("alice")
    bob = auth_headers("bob")
    playlist_id = create(client, alice, is_private=True).json()["id"]

    assert client.get(f"/api/playlists/{playlist_id}", headers=alice).status_code == 200
    assert client.get(f"/api/playlists/{playlist_id}").status_code == 404
    assert client.get(f"/api/playlists/{playlist_id}", headers=bob).status_code == 404
    assert client.get(f"/api/playlists/{playlist_id}/videos", headers=bob).status_code == 404
    assert client.delete(f"/api/playlists/{playlist_id}", headers=bob).status_code == 404


def test_only_owner_modifies(client, db, make_user, make_film, auth_headers):
    film = make_film(make_user("alice"))
    make_user("bob")
    alice = auth_headers("alice")
    bob = auth_headers("bob")
    playlist_id = create(client, alice).json()["id"]

    assert client.put(f"/api/playlists/{playlist_id}", headers=bob, json={"title": "Mine"}).status_code == 403
    assert add(client, bob, playlist_id, film.id).status_code == 403
    assert client.delete(f"/api/playlists/{playlist_id}", headers=bob).status_code == 403

    response = client.put(f"/api/playlists/{playlist_id}", headers=alice, json={"title": "Renamed", "is_private": True})
    assert response.json()["title"] == "Renamed"
    assert response.json()["is_private"] is True
    assert client.put(f"/api/playlists/{playlist_id}", headers=alice, json={"title": None}).status_code == 422
    assert client.put(f"/api/playlists/{playlist_id}", headers=alice, json={}).status_code == 400

    assert add(client, alice, playlist_id, film.id).status_code == 201
    assert client.delete(f"/api/playlists/{playlist_id}", headers=alice).status_code == 200
    assert db.query(Playlist).count() == 0
    assert db.query(PlaylistItem).count() == 0


def test_add_remove_and_reorder(client, make_user, make_film, auth_headers):
    alice = make_user("alice")
    first = make_film(alice, title="One")
    second = make_film(alice, title="Two")
    third = make_film(alice, title="Three")
    headers = auth_headers("alice")
    playlist_id = create(client, headers).json()["id"]

    for film in (first, second, third):
        assert add(client, headers, playlist_id, film.id).status_code == 201
    assert add(client, headers, playlist_id, first.id).status_code == 409
    assert positions(client, playlist_id) == [(1, first.id), (2, second.id), (3, third.id)]
    assert client.get(f"/api/playlists/{playlist_id}").json()["video_count"] == 3

    response = client.put(f"/api/playlists/{playlist_id}/reorder", headers=headers,
                          json={"video_ids": [third.id, first.id, second.id]})
    assert response.status_code == 200
    assert positions(client, playlist_id) == [(1, third.id), (2, first.id), (3, second.id)]

    # partial or duplicated orderings are refused
    for ids in ([third.id, first.id], [third.id, first.id, first.id], [third.id, first.id, second.id, 999]):
        response = client.put(f"/api/playlists/{playlist_id}/reorder", headers=headers, json={"video_ids": ids})
        assert response.status_code == 400

    assert client.delete(f"/api/playlists/{playlist_id}/videos/{third.id}", headers=headers).status_code == 200
    assert positions(client, playlist_id) == [(1, first.id), (2, second.id)]
    assert client.delete(f"/api/playlists/{playlist_id}/videos/{third.id}", headers=headers).status_code == 404

    assert add(client, headers, playlist_id, third.id).json()["position"] == 3


def test_hidden_films_are_not_listed(client, make_user, make_film, auth_headers):
    alice = make_user("alice")
    public = make_film(alice, title="Public")
    pending = make_film(alice, title="Pending", moderation_status="pending")
    headers = auth_headers("alice")
    playlist_id = create(client, headers).json()["id"]

    # the owner can add their own unapproved film
    add(client, headers, playlist_id, public.id)
    add(client, headers, playlist_id, pending.id)

    assert [video_id for _, video_id in positions(client, playlist_id, headers)] == [public.id, pending.id]
    assert [video_id for _, video_id in positions(client, playlist_id)] == [public.id]


def test_cannot_add_film_caller_cannot_see(client, make_user, make_film, auth_headers):
    film = make_film(make_user("alice"), is_private=True)
    make_user("bob")
    headers = auth_headers("bob")
    playlist_id = create(client, headers).json()["id"]

    assert add(client, headers, playlist_id, film.id).status_code == 404


def test_user_playlists(client, make_user, auth_headers):
    make_user("alice")
    alice = auth_headers("alice")
    create(client, alice, title="Open")
    create(client, alice, title="Secret", is_private=True)

    public = client.get("/api/playlists/user/alice").json()["playlists"]
    assert [p["title"] for p in public] == ["Open"]

    own = client.get("/api/playlists/user/alice", headers=alice).json()["playlists"]
    assert {p["title"] for p in own} == {"Open", "Secret"}

    assert client.get("/api/playlists/user/ghost").status_code == 404


def test_deleting_film_removes_it_from_playlists(client, db, make_user, make_film, auth_headers):
    film = make_film(make_user("alice"))
    headers = auth_headers("alice")
    playlist_id = create(client, headers).json()["id"]
    add(client, headers, playlist_id, film.id)

    assert client.delete(f"/api/films/{film.id}", headers=headers).status_code == 200
    assert db.query(PlaylistItem).count() == 0
    assert client.get(f"/api/playlists/{playlist_id}").json()["video_count"] == 0
