# tests/conftest.py
import pytest
from fakeredis import FakeAsyncRedis, FakeServer
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.core.database import Database
from app.models.user import User
from app.services.notifications import NotificationHub
from app.services.storage import LocalFileStorage
from main import create_app

PASSWORD = "SuperSecret123"


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        ENVIRONMENT="test",
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        SECRET_KEY="test-secret-key",
        UPLOAD_PATH=str(tmp_path / "uploads"),
        DEFAULT_PAGE_SIZE=10,
        MAX_PAGE_SIZE=100,
    )


@pytest.fixture()
async def database(settings):
    # One shared in-memory connection for the whole test
    db = Database(settings.DATABASE_URL, poolclass=StaticPool, connect_args={"check_same_thread": False})
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture()
async def redis_client():
    client = FakeAsyncRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture()
def storage(settings):
    storage = LocalFileStorage(settings.UPLOAD_PATH)
    storage.ensure_dirs()
    return storage


@pytest.fixture()
def app(settings, database, redis_client, storage):
    return create_app(
        settings,
        database=database,
        redis=redis_client,
        storage=storage,
        notifications=NotificationHub(),
    )


@pytest.fixture()
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def _register(client, username):
    r = await client.post("/api/v1/auth/register", json={
        "username": username,
        "email": f"{username}@example.com",
        "password": PASSWORD,
    })
    assert r.status_code == 201, r.text
    return r.json()["data"]


async def _login(client, username):
    r = await client.post("/api/v1/auth/login", data={"username": username, "password": PASSWORD})
    assert r.status_code == 200, r.text
    return r.json()["access_token"]


@pytest.fixture()
def make_user(client, database):
    """Register + login; returns a dict with id, email, username and auth headers."""

    async def _make(username, role="user"):
        user = await _register(client, username)
        if role != "user":
            async with database.session_factory() as session:
                await session.execute(update(User).where(User.id == user["id"]).values(role=role))
                await session.commit()
        token = await _login(client, username)
        user["headers"] = {"Authorization": f"Bearer {token}"}
        user["token"] = token
        return user

    return _make


@pytest.fixture()
def create_note(client):
    async def _create(user, title="Note", files=None, **fields):
        data = {"title": title}
        data.update({key: str(value).lower() if isinstance(value, bool) else str(value) for key, value in fields.items()})
        r = await client.post("/api/v1/notes/", headers=user["headers"], data=data, files=files)
        assert r.status_code == 201, r.text
        return r.json()["data"]

    return _create
