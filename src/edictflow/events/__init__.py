from __future__ import annotations

from typing import Protocol

import structlog

from edictflow.config import Settings
from edictflow.core.errors import ConfigurationError
from edictflow.events.memory import InMemoryEventBus
from edictflow.events.models import (
    EnforcementInstruction,
    EventType,
    GovernanceEvent,
    InstructionAction,
)
from edictflow.events.redis import RedisEventPublisher

logger = structlog.get_logger()


class EventPublisher(Protocol):
    async def publish_event(self, event: GovernanceEvent) -> None: ...

    async def publish_instruction(self, instruction: EnforcementInstruction) -> None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class EventFanout:
    """Fail-open wrapper: a broken transport never undoes a committed change."""

    def __init__(self, publisher: EventPublisher) -> None:
        self._publisher = publisher

    async def publish_event(self, event: GovernanceEvent) -> None:
        try:
            await self._publisher.publish_event(event)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "event_publish_failed",
                event_type=event.event_type.value,
                entity_id=event.entity_id,
                error=str(exc),
            )

    async def publish_instruction(self, instruction: EnforcementInstruction) -> None:
        try:
            await self._publisher.publish_instruction(instruction)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "instruction_publish_failed",
                action=instruction.action.value,
                change_request_id=instruction.change_request_id,
                error=str(exc),
            )


def build_publisher(settings: Settings) -> EventPublisher:
    if settings.event_backend == "memory":
        return InMemoryEventBus()
    if settings.event_backend == "redis":
        return RedisEventPublisher(
            settings.redis_url,
            max_connections=settings.redis_max_connections,
            max_retries=settings.event_publish_max_retries,
        )
    raise ConfigurationError(
        f"Unknown event backend: {settings.event_backend}",
        {"event_backend": settings.event_backend, "supported": ["memory", "redis"]},
    )


__all__ = [
    "EnforcementInstruction",
    "EventFanout",
    "EventPublisher",
    "EventType",
    "GovernanceEvent",
    "InMemoryEventBus",
    "InstructionAction",
    "RedisEventPublisher",
    "build_publisher",
]
