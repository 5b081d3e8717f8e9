"""
Redis incident store

Stores each incident as a JSON document under ``<prefix><id>`` and keeps a
sorted set of ids scored by creation time for listing.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import ProcessingError
from ..models import Incident
from .base import IncidentStore

logger = logging.getLogger(__name__)


class RedisIncidentStore(IncidentStore):
    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key_prefix: str = "incidentops:incident:",
        client: Optional[redis.Redis] = None,
        **kwargs,
    ):
        """
        Args:
            host: Redis host
            port: Redis port
            db: Redis database number
            password: Redis password
            key_prefix: Namespace for incident keys
            client: Pre-built client, mainly for tests
            **kwargs: Additional connection pool options
        """
        self.key_prefix = key_prefix
        self.index_key = f"{key_prefix}index"
        if client is not None:
            self.client = client
        else:
            self.pool = redis.ConnectionPool(
                host=host,
                port=port,
                db=db,
                password=password,
                decode_responses=True,
                **kwargs,
            )
            self.client = redis.Redis(connection_pool=self.pool)

    def _key(self, incident_id: str) -> str:
        return f"{self.key_prefix}{incident_id}"

    def _deserialize(self, raw: str) -> Incident:
        try:
            return Incident.model_validate_json(raw)
        except PydanticValidationError as e:
            raise ProcessingError(f"Corrupt incident record: {e}", cause=e) from e

    async def _read(self, incident_id: str) -> Optional[Incident]:
        raw = await self.client.get(self._key(incident_id))
        return self._deserialize(raw) if raw is not None else None

    async def _write(self, incident: Incident) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(self._key(incident.id), incident.model_dump_json())
            pipe.zadd(self.index_key, {incident.id: incident.created_at.timestamp()})
            await pipe.execute()

    async def _read_all(self) -> list[Incident]:
        ids = await self.client.zrange(self.index_key, 0, -1)
        if not ids:
            return []
        raws = await self.client.mget([self._key(i) for i in ids])
        return [self._deserialize(raw) for raw in raws if raw is not None]

    async def close(self) -> None:
        await self.client.aclose()
