from __future__ import annotations

import redis.asyncio as aioredis
import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from edictflow.events.models import EnforcementInstruction, GovernanceEvent

logger = structlog.get_logger()


def event_channel(team_id: str | None) -> str:
    return f"events:team:{team_id}" if team_id else "events:global"


def instruction_channel(team_id: str) -> str:
    return f"enforcement:team:{team_id}"


class RedisEventPublisher:
    """Publish events and enforcement instructions over Redis pub/sub."""

    def __init__(
        self,
        redis_url: str,
        max_connections: int = 10,
        max_retries: int = 3,
        redis_client: aioredis.Redis | None = None,
    ) -> None:
        self._pool: aioredis.ConnectionPool | None = None
        self._client: aioredis.Redis | None = redis_client
        self._max_retries = max_retries

        if redis_client is None:
            self._pool = aioredis.ConnectionPool.from_url(
                redis_url,
                max_connections=max_connections,
                decode_responses=True,
            )

    async def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.Redis(connection_pool=self._pool)
        return self._client

    async def _publish(self, channel: str, body: str) -> int:
        client = await self._get_client()
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            reraise=True,
        ):
            with attempt:
                receivers = await client.publish(channel, body)
        logger.debug("event_published", channel=channel, receivers=receivers)
        return receivers

    async def publish_event(self, event: GovernanceEvent) -> None:
        await self._publish(event_channel(event.team_id), event.to_message_body())

    async def publish_instruction(self, instruction: EnforcementInstruction) -> None:
        await self._publish(
            instruction_channel(instruction.team_id), instruction.to_message_body()
        )

    async def ping(self) -> bool:
        client = await self._get_client()
        return bool(await client.ping())

    async def close(self) -> None:
        if self._client:
            await self._client.close()
        if self._pool is not None:
            await self._pool.disconnect()
