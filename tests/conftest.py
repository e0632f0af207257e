"""Pytest configuration and shared fixtures.

Run with:
    pytest tests/                          # Run all tests
    pytest tests/test_usage.py -v          # Run specific test file

Every test gets its own in-memory SQLite database (aiosqlite, single
shared connection via StaticPool) with the full schema created.
"""

from __future__ import annotations

import uuid
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from speakforme.db.models import Base, User, UserSubscription, Workspace
from speakforme.db.session import db_session
from speakforme.observability.stats import PipelineStats

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def stats() -> PipelineStats:
    """Fresh stats collector per test (avoids global state bleed)."""
    return PipelineStats()


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------


async def make_workspace(
    session_factory: async_sessionmaker[AsyncSession],
    team_id: str = "T0001",
    organization_id: uuid.UUID | None = None,
) -> Workspace:
    async with db_session(session_factory) as db:
        ws = Workspace(slack_team_id=team_id, name="Acme", organization_id=organization_id)
        db.add(ws)
        await db.flush()
        return ws


async def make_user(
    session_factory: async_sessionmaker[AsyncSession],
    workspace_id: uuid.UUID,
    slack_user_id: str,
    email: str | None = None,
    role: str = "member",
    plan_id: str | None = None,
    subscription_status: str = "active",
) -> User:
    async with db_session(session_factory) as db:
        user = User(
            workspace_id=workspace_id, slack_user_id=slack_user_id, email=email, role=role
        )
        db.add(user)
        if email and plan_id:
            db.add(
                UserSubscription(
                    email=email, plan_id=plan_id, subscription_status=subscription_status
                )
            )
        await db.flush()
        return user


@pytest_asyncio.fixture
async def workspace(session_factory) -> Workspace:
    return await make_workspace(session_factory)


@pytest_asyncio.fixture
async def org_workspace(session_factory) -> Workspace:
    """Workspace that belongs to an organization (guardrails and escalations apply)."""
    return await make_workspace(session_factory, team_id="T0002", organization_id=uuid.uuid4())


class FakeSlackClient:
    """Minimal async stand-in for slack_sdk's AsyncWebClient."""

    def __init__(
        self,
        history: list[dict[str, Any]] | None = None,
        replies: dict[str, list[dict[str, Any]]] | None = None,
    ) -> None:
        self.history = history or []
        self.replies = replies or {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def conversations_history(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("conversations_history", kwargs))
        # Slack returns newest first
        return {"messages": list(reversed(self.history))}

    async def conversations_replies(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("conversations_replies", kwargs))
        return {"messages": self.replies.get(kwargs["ts"], [])}

    async def chat_postEphemeral(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("chat_postEphemeral", kwargs))
        return {"ok": True}

    async def chat_postMessage(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("chat_postMessage", kwargs))
        return {"ok": True, "ts": "1700000000.000100"}

    async def auth_test(self) -> dict[str, Any]:
        return {"ok": True, "team_id": "T0001"}


@pytest.fixture
def slack_client() -> FakeSlackClient:
    return FakeSlackClient()
