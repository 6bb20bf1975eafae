from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from models.captain_video import CaptainVideo
from models.user import User
from main import app
from routers import rate_limit
from services import telemetry
from services.dispatch import DispatchResult
from services.object_store import LocalObjectStore
from services.session_token import issue_session_token
from services.video_state import get_video


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    telemetry._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    telemetry._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "pipeline.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield maker
    await engine.dispose()


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {issue_session_token(user_id).token}"}


async def seed_video(maker, owner_id: str = "captain-1", **fields) -> str:
    """Insert a captain video (and its owner) directly; returns the id."""
    fields.setdefault("original_url", f"https://cdn.test/captains/{owner_id}/media/original/clip.mp4")
    async with maker() as db:
        if await db.get(User, owner_id) is None:
            db.add(User(id=owner_id, email=f"{owner_id}@local.invalid"))
        video = CaptainVideo(owner_id=owner_id, **fields)
        db.add(video)
        await db.commit()
        return video.id


async def load_video(maker, video_id: str):
    async with maker() as db:
        return await get_video(db, video_id)


class RecordingBackend:
    """Dispatch backend that records jobs instead of running them."""

    def __init__(self, name: str):
        self.name = name
        self.jobs = []

    async def dispatch(self, job):
        self.jobs.append(job)
        return DispatchResult(backend=self.name, reference=f"ref-{len(self.jobs)}")


@pytest_asyncio.fixture
async def pipeline(session_maker, tmp_path):
    """App client wired to a temp database, a temp local object store and a recording dispatcher."""
    async def override_get_db():
        async with session_maker() as session:
            yield session

    previous = (app.state.object_store, app.state.dispatcher)
    store = LocalObjectStore(root=str(tmp_path / "blobs"), base_url="http://test")
    app.state.object_store = store
    app.state.dispatcher = RecordingBackend("local")
    app.dependency_overrides[get_db] = override_get_db
    with patch("services.dispatch.async_session_maker", session_maker):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client, store

    app.dependency_overrides.pop(get_db, None)
    app.state.object_store, app.state.dispatcher = previous
