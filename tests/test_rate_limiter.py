import time

from filmhub import config
from filmhub.rate_limiter import RateLimiter


def test_sliding_window_blocks_after_limit():
    limiter = RateLimiter(2, 60, scope="unit")

    assert limiter.hit("unit:1.2.3.4") == 0
    assert limiter.hit("unit:1.2.3.4") == 0
    retry_after = limiter.hit("unit:1.2.3.4")
    assert 1 <= retry_after <= 60

    # other clients have their own window
    assert limiter.hit("unit:5.6.7.8") == 0

    limiter.reset()
    assert limiter.hit("unit:1.2.3.4") == 0


def test_register_endpoint_is_rate_limited(client):
    for i in range(config.REGISTER_RATE_LIMIT):
        response = client.post("/api/auth/register", json={
            "username": f"user{i}", "email": f"user{i}@example.com", "password": "Register1",
        })
        assert response.status_code == 201

    response = client.post("/api/auth/register", json={
        "username": "onemore", "email": "onemore@example.com", "password": "Register1",
    })
    assert response.status_code == 429
    assert response.json()["detail"]["code"] == "RATE_LIMITED"
    assert int(response.headers["retry-after"]) >= 1


def test_login_limit(client, make_user):
    make_user("alice")
    for _ in range(config.LOGIN_RATE_LIMIT):
        client.post("/api/auth/login", json={"identifier": "nobody", "password": "Whatever1"})

    response = client.post("/api/auth/login", json={"identifier": "alice", "password": "Secret123"})
    assert response.status_code == 429


def test_disabled_limiter_lets_everything_through(client, monkeypatch):
    monkeypatch.setattr(config, "RATE_LIMIT_ENABLED", False)

    for i in range(config.REGISTER_RATE_LIMIT + 2):
        response = client.post("/api/auth/register", json={
            "username": f"user{i}", "email": f"user{i}@example.com", "password": "Register1",
        })
        assert response.status_code == 201


def test_window_expiry_lets_client_back_in():
    limiter = RateLimiter(1, 1, scope="unit")

    assert limiter.hit("unit:1.2.3.4") == 0
    assert limiter.hit("unit:1.2.3.4") >= 1

    time.sleep(1.2)
    assert limiter.hit("unit:1.2.3.4") == 0


def test_forgot_password_has_its_own_limit(client):
    for _ in range(config.PASSWORD_RESET_RATE_LIMIT):
        response = client.post("/api/auth/forgot-password", json={"email": "nobody@example.com"})
        assert response.status_code == 200

    response = client.post("/api/auth/forgot-password", json={"email": "nobody@example.com"})
    assert response.status_code == 429
    assert response.json()["detail"]["code"] == "RATE_LIMITED"

    # registration is counted separately
    response = client.post("/api/auth/register", json={
        "username": "fresh", "email": "fresh@example.com", "password": "Register1",
    })
    assert response.status_code == 201
