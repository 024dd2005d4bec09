import json
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from edictflow.config import Settings
from edictflow.core.errors import ConfigurationError
from edictflow.events import (
    EnforcementInstruction,
    EventFanout,
    EventType,
    GovernanceEvent,
    InMemoryEventBus,
    InstructionAction,
    RedisEventPublisher,
    build_publisher,
)
from edictflow.events.redis import event_channel, instruction_channel

NOW = datetime(2026, 6, 1, 8, 30)


def make_event(team_id: str | None = "team-a") -> GovernanceEvent:
    return GovernanceEvent(
        event_type=EventType.rule_approved,
        entity_type="rule",
        entity_id="rule-1",
        team_id=team_id,
        payload={"status": "approved"},
        occurred_at=NOW,
    )


def make_instruction() -> EnforcementInstruction:
    return EnforcementInstruction(
        action=InstructionAction.revert,
        change_request_id="cr-1",
        team_id="team-a",
        file_path="src/app.py",
        revert_to_hash="abc123",
        issued_at=NOW,
    )


def test_message_body_is_compact_json():
    body = json.loads(make_event().to_message_body())

    assert body["event_type"] == "rule_approved"
    assert body["occurred_at"] == "2026-06-01T08:30:00"
    assert "actor_id" not in body


@pytest.mark.asyncio
async def test_memory_bus_records_in_order():
    bus = InMemoryEventBus()
    event, instruction = make_event(), make_instruction()

    await bus.publish_event(event)
    await bus.publish_instruction(instruction)

    assert bus.size() == 2
    assert await bus.next() is event
    assert bus.drain() == [instruction]
    assert bus.size() == 0
    assert bus.events == [event]
    assert bus.instructions == [instruction]
    assert await bus.ping()


@pytest.mark.asyncio
async def test_fanout_swallows_transport_failures():
    publisher = MagicMock()
    publisher.publish_event = AsyncMock(side_effect=RuntimeError("broker down"))
    publisher.publish_instruction = AsyncMock(side_effect=RuntimeError("broker down"))
    fanout = EventFanout(publisher)

    await fanout.publish_event(make_event())
    await fanout.publish_instruction(make_instruction())

    publisher.publish_event.assert_awaited_once()
    publisher.publish_instruction.assert_awaited_once()


class TestRedisEventPublisher:
    @pytest.fixture
    def redis_client(self):
        client = MagicMock()
        client.publish = AsyncMock(return_value=1)
        client.ping = AsyncMock(return_value=True)
        client.close = AsyncMock()
        return client

    def test_channels(self):
        assert event_channel("team-a") == "events:team:team-a"
        assert event_channel(None) == "events:global"
        assert instruction_channel("team-a") == "enforcement:team:team-a"

    @pytest.mark.asyncio
    async def test_publishes_to_team_channels(self, redis_client):
        publisher = RedisEventPublisher("redis://unused", redis_client=redis_client)

        await publisher.publish_event(make_event())
        await publisher.publish_event(make_event(team_id=None))
        await publisher.publish_instruction(make_instruction())

        channels = [call.args[0] for call in redis_client.publish.await_args_list]
        assert channels == ["events:team:team-a", "events:global", "enforcement:team:team-a"]
        body = json.loads(redis_client.publish.await_args_list[2].args[1])
        assert body["action"] == "revert"
        assert body["revert_to_hash"] == "abc123"

    @pytest.mark.asyncio
    async def test_retries_connection_errors(self, redis_client):
        redis_client.publish = AsyncMock(side_effect=[RedisConnectionError("reset"), 1])
        publisher = RedisEventPublisher("redis://unused", redis_client=redis_client)

        await publisher.publish_event(make_event())

        assert redis_client.publish.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, redis_client):
        redis_client.publish = AsyncMock(side_effect=RedisConnectionError("down"))
        publisher = RedisEventPublisher("redis://unused", max_retries=1, redis_client=redis_client)

        with pytest.raises(RedisConnectionError):
            await publisher.publish_event(make_event())

    @pytest.mark.asyncio
    async def test_ping_and_close(self, redis_client):
        publisher = RedisEventPublisher("redis://unused", redis_client=redis_client)

        assert await publisher.ping()
        await publisher.close()
        redis_client.close.assert_awaited_once()


class TestBuildPublisher:
    def test_memory_backend(self):
        assert isinstance(build_publisher(Settings(_env_file=None)), InMemoryEventBus)

    def test_redis_backend(self):
        publisher = build_publisher(
            Settings(_env_file=None, event_backend="redis", redis_url="redis://localhost:6379/2")
        )
        assert isinstance(publisher, RedisEventPublisher)

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError) as exc_info:
            build_publisher(Settings(_env_file=None, event_backend="kafka"))
        assert exc_info.value.details["event_backend"] == "kafka"
