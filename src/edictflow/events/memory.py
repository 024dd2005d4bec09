from __future__ import annotations

import asyncio

from edictflow.events.models import EnforcementInstruction, GovernanceEvent


class InMemoryEventBus:
    """asyncio-backed fan-out for local development and tests."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[GovernanceEvent | EnforcementInstruction] = asyncio.Queue()
        self.events: list[GovernanceEvent] = []
        self.instructions: list[EnforcementInstruction] = []

    async def publish_event(self, event: GovernanceEvent) -> None:
        self.events.append(event)
        await self._queue.put(event)

    async def publish_instruction(self, instruction: EnforcementInstruction) -> None:
        self.instructions.append(instruction)
        await self._queue.put(instruction)

    async def next(self) -> GovernanceEvent | EnforcementInstruction:
        return await self._queue.get()

    def drain(self) -> list[GovernanceEvent | EnforcementInstruction]:
        items = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
        return items

    def size(self) -> int:
        return self._queue.qsize()

    async def close(self) -> None:
        return None

    async def ping(self) -> bool:
        return True
