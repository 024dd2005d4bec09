from datetime import timedelta

import pytest

from edictflow.audit.diff import reconstruct_state
from edictflow.changes.service import ChangeRequestService, DetectedChange
from edictflow.core.errors import (
    AlreadyTerminal,
    DuplicateException,
    InvalidState,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from edictflow.db.repositories import AuditRepository
from edictflow.domain.models import (
    AuditAction,
    AuditEntityType,
    ChangeRequestStatus,
    EnforcementMode,
    ExceptionStatus,
    ExceptionType,
)
from edictflow.events import EventType, InstructionAction
from edictflow.exception_requests.service import ExceptionFiling, ExceptionService


@pytest.fixture
def changes(session, bus, settings, clock):
    return ChangeRequestService(session, bus, settings, clock)


@pytest.fixture
def exceptions(session, bus, settings, clock):
    return ExceptionService(session, bus, settings, clock)


@pytest.fixture
def open_change(changes, make_approved_rule):
    async def factory(mode: EnforcementMode = EnforcementMode.temporary, timeout_hours: int = 1):
        rule = await make_approved_rule(mode, timeout_hours=timeout_hours)
        return await changes.create_from_detector(
            DetectedChange(
                rule_id=rule.id,
                team_id=rule.team_id,
                file_path="deploy/values.yaml",
                original_hash="sha-original",
                modified_hash="sha-hotfix",
            )
        )

    return factory


def filing(change, exception_type=ExceptionType.time_limited, **overrides) -> ExceptionFiling:
    fields = {
        "change_request_id": change.id,
        "justification": "Incident hotfix, see postmortem",
        "exception_type": exception_type,
    }
    fields.update(overrides)
    return ExceptionFiling(**fields)


@pytest.mark.asyncio
async def test_grant_suspends_enforcement(bus, clock, changes, exceptions, open_change):
    change = await open_change()
    expires = clock.now + timedelta(hours=4)
    requested = await exceptions.file_exception(filing(change, expires_at=expires), "dev")

    assert requested.status is ExceptionStatus.pending
    assert bus.events[-1].event_type is EventType.exception_requested

    granted = await exceptions.approve_exception(requested.id, "lead")

    assert granted.status is ExceptionStatus.approved
    assert granted.resolved_by == "lead"
    parent = await changes.get_change(change.id)
    assert parent.status is ChangeRequestStatus.exception_granted
    assert parent.timeout_at is None
    assert bus.events[-1].event_type is EventType.exception_granted
    assert bus.instructions[-1].action is InstructionAction.allow

    clock.advance(hours=2)
    assert await changes.expire_overdue() == 0


@pytest.mark.asyncio
async def test_filing_validation(clock, changes, exceptions, open_change):
    change = await open_change()

    with pytest.raises(ValidationError):
        await exceptions.file_exception(filing(change, justification="  "), "dev")
    with pytest.raises(ValidationError):
        await exceptions.file_exception(
            filing(change, ExceptionType.permanent, expires_at=clock.now + timedelta(days=1)), "dev"
        )
    with pytest.raises(ValidationError):
        await exceptions.file_exception(filing(change, expires_at=clock.now), "dev")
    with pytest.raises(NotFound):
        await exceptions.file_exception(filing(change, change_request_id="missing"), "dev")

    await changes.approve(change.id, "lead")
    with pytest.raises(InvalidState):
        await exceptions.file_exception(filing(change), "dev")


@pytest.mark.asyncio
async def test_one_active_exception_per_change(exceptions, open_change):
    change = await open_change()
    first = await exceptions.file_exception(filing(change, ExceptionType.permanent), "dev")

    with pytest.raises(DuplicateException):
        await exceptions.file_exception(filing(change, ExceptionType.permanent), "dev")

    await exceptions.deny_exception(first.id, "lead")
    second = await exceptions.file_exception(filing(change, ExceptionType.permanent), "dev")
    assert second.id != first.id


@pytest.mark.asyncio
async def test_deny_leaves_change_pending(bus, changes, exceptions, open_change):
    change = await open_change()
    requested = await exceptions.file_exception(filing(change, ExceptionType.permanent), "dev")

    denied = await exceptions.deny_exception(requested.id, "lead")

    assert denied.status is ExceptionStatus.denied
    assert (await changes.get_change(change.id)).status is ChangeRequestStatus.pending
    assert bus.events[-1].event_type is EventType.exception_denied
    with pytest.raises(InvalidTransition):
        await exceptions.approve_exception(requested.id, "lead")


@pytest.mark.asyncio
async def test_time_limited_grant_needs_expiry(clock, exceptions, open_change):
    change = await open_change()
    requested = await exceptions.file_exception(filing(change), "dev")

    with pytest.raises(ValidationError):
        await exceptions.approve_exception(requested.id, "lead")

    granted = await exceptions.approve_exception(
        requested.id, "lead", expires_at=clock.now + timedelta(hours=1)
    )
    assert granted.expires_at == clock.now + timedelta(hours=1)


@pytest.mark.asyncio
async def test_exception_after_auto_revert(clock, changes, exceptions, open_change):
    change = await open_change()
    clock.advance(hours=1)
    await changes.expire_overdue()
    requested = await exceptions.file_exception(filing(change, ExceptionType.permanent), "dev")

    await exceptions.approve_exception(requested.id, "lead")

    assert (await changes.get_change(change.id)).status is ChangeRequestStatus.exception_granted


@pytest.mark.asyncio
async def test_expiry_rearms_temporary_deadline(bus, clock, changes, exceptions, open_change):
    change = await open_change(EnforcementMode.temporary, timeout_hours=1)
    requested = await exceptions.file_exception(
        filing(change, expires_at=clock.now + timedelta(hours=2)), "dev"
    )
    await exceptions.approve_exception(requested.id, "lead")

    clock.advance(hours=2)
    assert await exceptions.expire_exceptions() == 1
    assert await exceptions.expire_exceptions() == 0

    rearmed = await changes.get_change(change.id)
    assert rearmed.status is ChangeRequestStatus.pending
    assert rearmed.timeout_at == clock.now + timedelta(hours=1)
    assert rearmed.resolved_by is None
    assert bus.events[-1].event_type is EventType.exception_expired
    assert (await exceptions.get_exception(requested.id)).expired_at == clock.now

    clock.advance(hours=1)
    assert await changes.expire_overdue() == 1
    assert (await changes.get_change(change.id)).status is ChangeRequestStatus.auto_reverted


@pytest.mark.asyncio
async def test_change_history_replays_grant_and_expiry(
    session, clock, changes, exceptions, open_change
):
    change = await open_change(EnforcementMode.temporary, timeout_hours=1)
    requested = await exceptions.file_exception(
        filing(change, expires_at=clock.now + timedelta(hours=2)), "dev"
    )
    await exceptions.approve_exception(requested.id, "lead")

    audit = AuditRepository(session)
    history = await audit.entity_history(AuditEntityType.change_request, change.id)
    assert [e.action for e in history] == [AuditAction.created, AuditAction.exception_granted]
    assert history[-1].actor_id == "lead"
    assert history[-1].metadata["exception_id"] == requested.id
    assert reconstruct_state(history)["status"] == "exception_granted"

    clock.advance(hours=2)
    assert await exceptions.expire_exceptions() == 1

    history = await audit.entity_history(AuditEntityType.change_request, change.id)
    assert [e.action for e in history] == [
        AuditAction.created,
        AuditAction.exception_granted,
        AuditAction.updated,
    ]
    parent = await changes.get_change(change.id)
    state = reconstruct_state(history)
    assert state["status"] == parent.status.value == "pending"
    assert state["timeout_at"] == parent.timeout_at.isoformat()
    assert state["resolved_by"] is None


@pytest.mark.asyncio
async def test_expiry_reverts_block_mode_immediately(bus, clock, changes, exceptions, open_change):
    change = await open_change(EnforcementMode.block)
    requested = await exceptions.file_exception(
        filing(change, expires_at=clock.now + timedelta(hours=2)), "dev"
    )
    await exceptions.approve_exception(requested.id, "lead")

    clock.advance(hours=3)
    await exceptions.expire_exceptions()

    rearmed = await changes.get_change(change.id)
    assert rearmed.status is ChangeRequestStatus.pending
    assert rearmed.timeout_at is None
    assert bus.instructions[-1].action is InstructionAction.revert
    assert bus.instructions[-1].revert_to_hash == "sha-original"


@pytest.mark.asyncio
async def test_permanent_exceptions_never_expire(clock, changes, exceptions, open_change):
    change = await open_change()
    requested = await exceptions.file_exception(filing(change, ExceptionType.permanent), "dev")
    await exceptions.approve_exception(requested.id, "lead")

    clock.advance(days=365)

    assert await exceptions.expire_exceptions() == 0
    assert (await changes.get_change(change.id)).status is ChangeRequestStatus.exception_granted


@pytest.mark.asyncio
async def test_list_exceptions_by_team(team, exceptions, open_change):
    change = await open_change()
    requested = await exceptions.file_exception(filing(change, ExceptionType.permanent), "dev")

    assert [e.id for e in await exceptions.list_exceptions(team_id=team.id)] == [requested.id]
    assert await exceptions.list_exceptions(team_id="team-other") == []
    assert await exceptions.list_exceptions(status=ExceptionStatus.approved) == []


@pytest.mark.asyncio
async def test_grant_after_sweeper_reverted_the_change(session, clock, changes, exceptions, open_change):
    change = await open_change(EnforcementMode.temporary, timeout_hours=1)
    requested = await exceptions.file_exception(
        filing(change, ExceptionType.permanent), "dev"
    )
    clock.advance(hours=1)
    assert await changes.expire_overdue() == 1

    await exceptions.approve_exception(requested.id, "lead")

    history = await AuditRepository(session).entity_history(
        AuditEntityType.change_request, change.id
    )
    assert [e.action for e in history] == [
        AuditAction.created,
        AuditAction.auto_reverted,
        AuditAction.exception_granted,
    ]
    assert (await changes.get_change(change.id)).status is ChangeRequestStatus.exception_granted


@pytest.mark.asyncio
async def test_expiring_a_stale_exception_twice_is_already_terminal(
    session, bus, clock, changes, exceptions, open_change
):
    change = await open_change(EnforcementMode.temporary, timeout_hours=1)
    requested = await exceptions.file_exception(
        filing(change, expires_at=clock.now + timedelta(hours=2)), "dev"
    )
    stale = await exceptions.approve_exception(requested.id, "lead")
    clock.advance(hours=2)
    assert await exceptions.expire_exceptions() == 1
    events_before = len(bus.events)

    with pytest.raises(AlreadyTerminal):
        await exceptions.expire_exception(stale)

    history = await AuditRepository(session).entity_history(
        AuditEntityType.exception_request, requested.id
    )
    assert [e.action for e in history].count(AuditAction.expired) == 1
    assert len(bus.events) == events_before
