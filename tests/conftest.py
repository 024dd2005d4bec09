"""Root test configuration."""

import logging
from datetime import datetime, timedelta

import pytest
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from edictflow.approvals.service import ApprovalService
from edictflow.config import Settings
from edictflow.db.models import Base
from edictflow.db.repositories import TeamRepository
from edictflow.domain.models import EnforcementMode, TargetLayer, Team
from edictflow.events import InMemoryEventBus
from edictflow.rules.service import RuleDraft, RuleService

T0 = datetime(2026, 3, 2, 9, 0, 0)


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


class FakeClock:
    """Manually advanced clock; starts at T0."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        required_approvals_organization=2,
        required_approvals_team=1,
        required_approvals_project=1,
        sweeper_interval_seconds=0.01,
    )


@pytest.fixture
def bus():
    return InMemoryEventBus()


@pytest.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def team(session):
    team = Team(id="team-platform", name="Platform")
    await TeamRepository(session).create(team)
    await session.commit()
    return team


@pytest.fixture
def rule_service(session, bus, settings, clock):
    return RuleService(session, bus, settings, clock)


@pytest.fixture
def approval_service(session, bus, settings, clock):
    return ApprovalService(session, bus, settings, clock)


@pytest.fixture
def make_approved_rule(team, rule_service, approval_service):
    """Factory: author, submit and approve a team rule in one step."""

    async def factory(
        mode: EnforcementMode = EnforcementMode.temporary, timeout_hours: int = 1, **overrides
    ):
        draft = RuleDraft(
            name=overrides.pop("name", "Lock CI config"),
            content=overrides.pop("content", "Do not edit .github/workflows by hand"),
            target_layer=TargetLayer.team,
            team_id=team.id,
            enforcement_mode=mode,
            temporary_timeout_hours=timeout_hours,
            **overrides,
        )
        rule = await rule_service.create_rule(draft, "author")
        await rule_service.submit_rule(rule.id, "author")
        await approval_service.approve(rule.id, "lead")
        return await rule_service.get_rule(rule.id)

    return factory
