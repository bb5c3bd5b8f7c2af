"""Shared test fixtures and configuration for pytest."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from reviewdesk.db import Base
from reviewdesk.models import EditorProfile, Project, ProjectTrack, ReviewComment
from reviewdesk.services.access import Actor
from reviewdesk.services.images import ImageContext, ImageHostClient, ImageHostConfig, ImageLimits, ImageUpload
from reviewdesk.services.password_gate import ProofStore
from reviewdesk.services.revalidate import Revalidator

EDITOR_USER_ID = "user-editor"
CLIENT_USER_ID = "user-client"
OTHER_USER_ID = "user-other"

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class FakeRedis:
    """Records the few Redis calls the proof store and revalidator make."""

    def __init__(self) -> None:
        self.values: dict[str, Any] = {}
        self.expiry: dict[str, int | None] = {}
        self.published: list[tuple[str, str]] = []

    async def set(self, key: str, value: Any, ex: int | None = None) -> bool:
        self.values[key] = value
        self.expiry[key] = ex
        return True

    async def get(self, key: str) -> Any:
        return self.values.get(key)

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1


class ImgbbStub:
    """MockTransport handler standing in for the ImgBB upload endpoint."""

    def __init__(self, fail_filenames: set[str] | None = None) -> None:
        self.calls = 0
        self.fail_filenames = fail_filenames or set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        for name in self.fail_filenames:
            if f'filename="{name}"'.encode() in request.content:
                return httpx.Response(400, json={"error": {"message": "Invalid image"}})
        return httpx.Response(200, json={"data": {"url": f"https://i.ibb.co/img{self.calls}.png"}})


def png(name: str = "shot.png", size: int | None = None) -> ImageUpload:
    data = PNG_BYTES if size is None else b"\x00" * size
    return ImageUpload(filename=name, content_type="image/png", data=data)


def item_step(text: str, *, status: str = "pending", comment_id: str | None = None, timestamp: float | None = None) -> dict:
    metadata: dict[str, Any] = {"type": "comment", "text": text, "images": [], "links": []}
    if comment_id is not None:
        metadata["comment_id"] = comment_id
    if timestamp is not None:
        metadata["timestamp"] = timestamp
    return {"name": text, "status": status, "metadata": metadata}


def final_step(*, status: str = "pending", link: str | None = None, name: str = "Finish") -> dict:
    return {"name": name, "status": status, "is_final": True, "deliverable_link": link}


@pytest_asyncio.fixture
async def engine() -> AsyncIterator[AsyncEngine]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def revalidator(fake_redis: FakeRedis) -> Revalidator:
    return Revalidator(fake_redis, "test:revalidate")  # type: ignore[arg-type]


@pytest.fixture
def proofs(fake_redis: FakeRedis) -> ProofStore:
    return ProofStore(fake_redis)  # type: ignore[arg-type]


@pytest.fixture
def imgbb() -> ImgbbStub:
    return ImgbbStub()


@pytest.fixture
def images(imgbb: ImgbbStub) -> ImageContext:
    host = ImageHostClient(
        ImageHostConfig(api_key="test-key", upload_url="https://imgbb.test/1/upload"),
        transport=httpx.MockTransport(imgbb),
    )
    return ImageContext(host=host, limits=ImageLimits())


@pytest.fixture
def editor_actor() -> Actor:
    return Actor(user_id=EDITOR_USER_ID)


@pytest_asyncio.fixture
async def editor_profile(session: AsyncSession) -> EditorProfile:
    profile = EditorProfile(user_id=EDITOR_USER_ID, display_name="Edie Editor")
    session.add(profile)
    await session.commit()
    return profile


@pytest_asyncio.fixture
async def project(session: AsyncSession, editor_profile: EditorProfile) -> Project:
    project = Project(
        editor_id=editor_profile.id,
        title="Brand film",
        client_name="Acme",
    )
    session.add(project)
    await session.commit()
    return project


async def add_track(
    session: AsyncSession,
    project: Project,
    steps: list[dict],
    *,
    round_number: int = 1,
    decision: str = "pending",
    status: str = "in_progress",
    media_type: str | None = None,
) -> ProjectTrack:
    track = ProjectTrack(
        project_id=project.id,
        round_number=round_number,
        status=status,
        client_decision=decision,
        steps=steps,
        final_deliverable_media_type=media_type,
    )
    session.add(track)
    await session.commit()
    return track


async def add_comment(
    session: AsyncSession,
    track: ProjectTrack,
    text: str,
    timestamp: float,
    *,
    commenter_id: str | None = None,
    commenter_name: str | None = "Client",
    created_at: datetime | None = None,
) -> ReviewComment:
    comment = ReviewComment(
        track_id=track.id,
        comment={"text": text, "timestamp": timestamp},
        commenter_name=commenter_name,
        commenter_id=commenter_id,
        created_at=created_at or datetime.now(timezone.utc),
    )
    session.add(comment)
    await session.commit()
    return comment


@pytest_asyncio.fixture
async def delivered_track(session: AsyncSession, project: Project) -> ProjectTrack:
    """Round 1 handed to the client: one completed item and a completed final step."""
    return await add_track(
        session,
        project,
        [item_step("Trim intro", status="completed"), final_step(status="completed", link="https://vimeo.com/1")],
        status="in_review",
        media_type="video",
    )
