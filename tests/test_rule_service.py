from datetime import timedelta

import pytest

from edictflow.core.errors import InvalidState, NotFound, ValidationError
from edictflow.db.repositories import AuditFilters, AuditRepository
from edictflow.domain.models import (
    AuditAction,
    EnforcementMode,
    RuleStatus,
    TargetLayer,
    Trigger,
    TriggerType,
)
from edictflow.events import EventType
from edictflow.rules.matcher import MatchContext
from edictflow.rules.service import RuleDraft, RuleUpdate


async def audit_actions(session, entity_id):
    entries, _ = await AuditRepository(session).list(AuditFilters(entity_id=entity_id))
    return [entry.action for entry in reversed(entries)]


def team_draft(team, **overrides) -> RuleDraft:
    fields = {
        "name": "Protect migrations",
        "content": "Schema migrations need review",
        "target_layer": TargetLayer.team,
        "team_id": team.id,
    }
    fields.update(overrides)
    return RuleDraft(**fields)


@pytest.mark.asyncio
async def test_create_rule_starts_as_draft(session, bus, team, rule_service, settings):
    rule = await rule_service.create_rule(team_draft(team), "alice")

    assert rule.status is RuleStatus.draft
    assert rule.created_by == "alice"
    assert rule.temporary_timeout_hours == settings.default_temporary_timeout_hours
    assert await audit_actions(session, rule.id) == [AuditAction.created]
    assert [e.event_type for e in bus.events] == [EventType.rule_created]


@pytest.mark.asyncio
async def test_create_rejects_invalid_definitions(session, bus, team, rule_service):
    with pytest.raises(ValidationError):
        await rule_service.create_rule(
            RuleDraft(name="g", content="c", target_layer=TargetLayer.project), "alice"
        )
    with pytest.raises(NotFound):
        await rule_service.create_rule(team_draft(team, team_id="no-such-team"), "alice")
    with pytest.raises(NotFound):
        await rule_service.create_rule(team_draft(team, category_id="no-such-cat"), "alice")

    assert await rule_service.list_rules() == []
    assert bus.events == []


@pytest.mark.asyncio
async def test_update_draft_records_changed_fields(session, clock, team, rule_service):
    rule = await rule_service.create_rule(team_draft(team), "alice")
    clock.advance(minutes=5)

    updated = await rule_service.update_rule(
        rule.id, RuleUpdate(name="Protect all migrations", priority_weight=3), "bob"
    )

    assert updated.name == "Protect all migrations"
    assert updated.priority_weight == 3
    entries, _ = await AuditRepository(session).list(AuditFilters(action=AuditAction.updated))
    assert len(entries) == 1
    assert set(entries[0].changes) == {"name", "priority_weight", "updated_at"}
    assert entries[0].actor_id == "bob"


@pytest.mark.asyncio
async def test_update_validates_merged_rule(team, rule_service):
    rule = await rule_service.create_rule(team_draft(team), "alice")

    with pytest.raises(ValidationError):
        await rule_service.update_rule(rule.id, RuleUpdate(temporary_timeout_hours=500), "alice")
    with pytest.raises(ValidationError):
        await rule_service.update_rule(rule.id, RuleUpdate(force=True), "alice")


@pytest.mark.asyncio
async def test_submit_moves_to_pending_and_locks_edits(session, bus, team, rule_service):
    rule = await rule_service.create_rule(team_draft(team), "alice")

    submitted = await rule_service.submit_rule(rule.id, "alice")

    assert submitted.status is RuleStatus.pending
    assert submitted.approval_round == 1
    assert (await rule_service.get_rule(rule.id)).status is RuleStatus.pending
    assert bus.events[-1].event_type is EventType.rule_submitted

    with pytest.raises(InvalidState):
        await rule_service.submit_rule(rule.id, "alice")
    with pytest.raises(InvalidState):
        await rule_service.update_rule(rule.id, RuleUpdate(name="x"), "alice")
    with pytest.raises(InvalidState):
        await rule_service.delete_rule(rule.id, "alice")
    assert await audit_actions(session, rule.id) == [AuditAction.created, AuditAction.submitted]


@pytest.mark.asyncio
async def test_submit_requires_content(team, rule_service):
    rule = await rule_service.create_rule(team_draft(team, content="   "), "alice")

    with pytest.raises(InvalidState):
        await rule_service.submit_rule(rule.id, "alice")


@pytest.mark.asyncio
async def test_delete_draft(session, bus, team, rule_service):
    rule = await rule_service.create_rule(team_draft(team), "alice")

    await rule_service.delete_rule(rule.id, "alice")

    with pytest.raises(NotFound):
        await rule_service.get_rule(rule.id)
    assert await audit_actions(session, rule.id) == [AuditAction.created, AuditAction.deleted]
    assert bus.events[-1].event_type is EventType.rule_deleted


@pytest.mark.asyncio
async def test_revise_spawns_new_draft(session, make_approved_rule, rule_service):
    source = await make_approved_rule()

    draft = await rule_service.revise_rule(source.id, "alice")

    assert draft.id != source.id
    assert draft.status is RuleStatus.draft
    assert draft.revises_rule_id == source.id
    assert draft.approval_round == 0
    assert draft.content == source.content
    assert (await rule_service.get_rule(source.id)).status is RuleStatus.approved
    assert await audit_actions(session, draft.id) == [AuditAction.revised]


@pytest.mark.asyncio
async def test_revise_refuses_drafts(team, rule_service):
    rule = await rule_service.create_rule(team_draft(team), "alice")

    with pytest.raises(InvalidState):
        await rule_service.revise_rule(rule.id, "alice")


@pytest.mark.asyncio
async def test_effective_rules_only_include_approved(clock, team, rule_service, make_approved_rule):
    approved = await make_approved_rule(
        EnforcementMode.block,
        name="Python style",
        triggers=[Trigger(type=TriggerType.path, pattern="**/*.py")],
    )
    await rule_service.create_rule(team_draft(team, name="Still a draft"), "alice")

    matched = await rule_service.effective_rules(team.id, MatchContext(file_path="src/app.py"))
    unmatched = await rule_service.effective_rules(team.id, MatchContext(file_path="README.md"))

    assert [r.id for r in matched] == [approved.id]
    assert unmatched == []

    with pytest.raises(NotFound):
        await rule_service.effective_rules("no-such-team")


@pytest.mark.asyncio
async def test_effective_rules_respect_window(clock, team, rule_service, make_approved_rule):
    rule = await make_approved_rule(
        EnforcementMode.warning, effective_end=clock.now + timedelta(days=1)
    )

    assert [r.id for r in await rule_service.effective_rules(team.id)] == [rule.id]
    assert await rule_service.effective_rules(team.id, at=clock.now + timedelta(days=2)) == []
