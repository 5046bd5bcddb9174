import os
import tempfile

import pytest

# Must be set before filmhub.config is imported
_db_fd, _db_path = tempfile.mkstemp(suffix=".db")
os.environ["DATABASE_URL"] = f"sqlite:///{_db_path}"
os.environ["JWT_SECRET"] = "test-access-secret"
os.environ["JWT_REFRESH_SECRET"] = "test-refresh-secret"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["UPLOAD_DAILY_LIMIT"] = "100"
os.environ["REQUIRE_EMAIL_VERIFICATION"] = "true"
os.environ["RATE_LIMIT_ENABLED"] = "true"
os.environ["ADMIN_USERNAME"] = ""
os.environ["ADMIN_EMAIL"] = ""
os.environ["ADMIN_PASSWORD"] = ""
os.environ["AWS_REGION"] = "us-east-1"

from fastapi.testclient import TestClient  # noqa: E402

from filmhub import accounts, rate_limiter  # noqa: E402
from filmhub.database import Base, SessionLocal, engine  # noqa: E402
from filmhub.main import app  # noqa: E402
from filmhub.models import Video  # noqa: E402
from filmhub.routers import films  # noqa: E402

PASSWORD = "Secret123"


def pytest_sessionfinish(session, exitstatus):
    engine.dispose()
    os.close(_db_fd)
    if os.path.exists(_db_path):
        os.unlink(_db_path)


@pytest.fixture(autouse=True)
def database():
    """Fresh tables for every test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_rate_limits():
    rate_limiter.reset_all()
    yield
    rate_limiter.reset_all()


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


class FakeBody:
    def __init__(self, data: bytes):
        self.data = data

    def iter_chunks(self, chunk_size: int = 1024):
        for i in range(0, len(self.data), chunk_size):
            yield self.data[i:i + chunk_size]


@pytest.fixture
def fake_s3(monkeypatch):
    """In-memory stand-in for the S3 bucket used by the films router."""
    objects = {}

    def upload(file_content, filename, content_type):
        objects[filename] = file_content
        return f"https://bucket.example/{filename}"

    def get(filename, byte_range=None):
        data = objects[filename]
        if byte_range:
            start, end = byte_range.split("=")[1].split("-")
            data = data[int(start):int(end) + 1]
        return {"Body": FakeBody(data)}

    def delete(filename):
        objects.pop(filename, None)

    monkeypatch.setattr(films, "upload_file_to_s3", upload)
    monkeypatch.setattr(films, "get_file_from_s3", get)
    monkeypatch.setattr(films, "delete_file_from_s3", delete)
    return objects


@pytest.fixture
def make_user(db):
    def _make(username="alice", role="user", password=PASSWORD, status="active", email=None):
        return accounts.create_user(
            db,
            username=username,
            email=email or f"{username}@example.com",
            password=password,
            role=role,
            status=status,
        )
    return _make


@pytest.fixture
def login(client):
    """Returns the login JSON body; fails the test on a non-200."""
    def _login(identifier, password=PASSWORD, **extra):
        response = client.post("/api/auth/login", json={"identifier": identifier, "password": password, **extra})
        assert response.status_code == 200, response.text
        return response.json()
    return _login


@pytest.fixture
def auth_headers(login):
    def _headers(identifier, password=PASSWORD):
        return {"Authorization": f"Bearer {login(identifier, password)['access_token']}"}
    return _headers


@pytest.fixture
def make_film(db, fake_s3):
    def _make(owner, title="Night Train", moderation_status="approved", is_private=False,
              category="drama", content=b"0123456789" * 10, **fields):
        key = f"films/{owner.id}-{title.replace(' ', '-').lower()}.mp4"
        fake_s3[key] = content
        video = Video(
            owner_id=owner.id,
            title=title,
            category=category,
            filename=key,
            original_filename=f"{title}.mp4",
            file_path=f"https://bucket.example/{key}",
            file_size=len(content),
            content_type="video/mp4",
            status="ready",
            moderation_status=moderation_status,
            is_private=is_private,
            **fields,
        )
        db.add(video)
        db.commit()
        db.refresh(video)
        return video
    return _make
