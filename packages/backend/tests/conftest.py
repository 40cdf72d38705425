from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.db import model_registry as _model_registry  # noqa: F401
from app.db.base import Base
from app.db.session import build_session_factory
from app.models.team import MembershipStatus, Team, TeamProject, TeamRole, TeamUser
from app.models.workspace import Project, Workspace
from app.security.crypto import CryptoEnvelope
from app.services.events import RecordingEventSink


TEST_ENCRYPTION_KEY = bytes.fromhex("00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff")
OWNER_ID = "owner-1"


@dataclass
class OrgGraph:
    workspace: Workspace
    project: Project
    team: Team


AddMember = Callable[..., Awaitable[TeamUser]]


@pytest_asyncio.fixture
async def session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield build_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def envelope() -> CryptoEnvelope:
    return CryptoEnvelope(TEST_ENCRYPTION_KEY)


@pytest.fixture
def sink() -> RecordingEventSink:
    return RecordingEventSink()


@pytest_asyncio.fixture
async def org(db: AsyncSession) -> OrgGraph:
    """Workspace and project owned by ``owner-1`` with one team linked to the project."""
    workspace = Workspace(name="Acme", created_by=OWNER_ID, settings={})
    db.add(workspace)
    await db.flush()

    project = Project(name="payments", user_id=OWNER_ID, workspace_id=workspace.id)
    team = Team(workspace_id=workspace.id, name="platform", created_by=OWNER_ID)
    db.add_all([project, team])
    await db.flush()

    db.add(TeamProject(team_id=team.id, project_id=project.id))
    await db.commit()
    return OrgGraph(workspace=workspace, project=project, team=team)


@pytest.fixture
def add_member(db: AsyncSession) -> AddMember:
    async def _add(
        team: Team,
        user_id: str,
        role: TeamRole,
        status: MembershipStatus = MembershipStatus.ACTIVE,
    ) -> TeamUser:
        member = TeamUser(team_id=team.id, user_id=user_id, role=role, status=status)
        db.add(member)
        await db.commit()
        return member

    return _add
