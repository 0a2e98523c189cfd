"""
Redis storage implementation

Each record lives at `{prefix}{collection}:{id}` as pydantic JSON; a set at
`{prefix}{collection}:_index` tracks the ids of a collection. Atomic updates
use WATCH/MULTI optimistic transactions.
"""

import contextlib
import logging
from typing import Any, Optional

import redis.asyncio as redis
from pydantic import BaseModel, ValidationError
from redis.exceptions import RedisError, WatchError

from ..errors import (
    StorageConnectionError,
    StorageSerializationError,
    VersionConflictError,
)
from .base import COLLECTION_MODELS, Mutator, StorageBackend

logger = logging.getLogger(__name__)


class RedisStorage(StorageBackend):
    """Redis-backed storage for multi-process deployments"""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key_prefix: str = "selfheal:",
        socket_timeout: float = 5.0,
        max_update_retries: int = 10,
        client: Optional[redis.Redis] = None,
    ):
        """
        Initialize Redis storage

        Args:
            host: Redis host
            port: Redis port
            db: Redis database number
            password: Redis password
            key_prefix: Prefix for every key written
            socket_timeout: Socket timeout in seconds
            max_update_retries: WATCH retries before giving up on an update
            client: Pre-built client (overrides connection arguments)
        """
        self.key_prefix = key_prefix
        self.max_update_retries = max_update_retries
        self.client = client or redis.Redis(
            host=host,
            port=port,
            db=db,
            password=password,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            decode_responses=False,
        )

    def _record_key(self, collection: str, record_id: str) -> str:
        return f"{self.key_prefix}{collection}:{record_id}"

    def _index_key(self, collection: str) -> str:
        return f"{self.key_prefix}{collection}:_index"

    def _serialize(self, record: BaseModel) -> bytes:
        try:
            return record.model_dump_json().encode("utf-8")
        except (TypeError, ValueError) as e:
            raise StorageSerializationError(f"Failed to serialize record: {e}") from e

    def _deserialize(self, collection: str, data: bytes) -> BaseModel:
        try:
            return COLLECTION_MODELS[collection].model_validate_json(data)
        except ValidationError as e:
            raise StorageSerializationError(
                f"Failed to deserialize {collection} record: {e}"
            ) from e

    async def _load(self, collection: str, record_id: str) -> Optional[BaseModel]:
        try:
            data = await self.client.get(self._record_key(collection, record_id))
        except RedisError as e:
            logger.error(f"Redis error in load: {e}")
            raise StorageConnectionError(f"Redis connection error: {e}") from e
        return self._deserialize(collection, data) if data is not None else None

    async def _store(self, collection: str, record_id: str, record: BaseModel) -> None:
        data = self._serialize(record)
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.set(self._record_key(collection, record_id), data)
            pipe.sadd(self._index_key(collection), record_id)
            await pipe.execute()
        except RedisError as e:
            logger.error(f"Redis error in store: {e}")
            raise StorageConnectionError(f"Redis connection error: {e}") from e

    async def _delete(self, collection: str, record_id: str) -> bool:
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(self._record_key(collection, record_id))
            pipe.srem(self._index_key(collection), record_id)
            deleted, _ = await pipe.execute()
            return deleted > 0
        except RedisError as e:
            logger.error(f"Redis error in delete: {e}")
            raise StorageConnectionError(f"Redis connection error: {e}") from e

    async def _load_all(self, collection: str) -> list[BaseModel]:
        try:
            ids = await self.client.smembers(self._index_key(collection))
            if not ids:
                return []
            record_ids = sorted(
                i.decode("utf-8") if isinstance(i, bytes) else i for i in ids
            )
            values = await self.client.mget(
                [self._record_key(collection, record_id) for record_id in record_ids]
            )
        except RedisError as e:
            logger.error(f"Redis error in load_all: {e}")
            raise StorageConnectionError(f"Redis connection error: {e}") from e
        # Index entries can outlive their record if a delete raced a scan
        return [self._deserialize(collection, v) for v in values if v is not None]

    async def _update(
        self, collection: str, record_id: str, mutate: Mutator
    ) -> BaseModel:
        key = self._record_key(collection, record_id)
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                for _ in range(self.max_update_retries):
                    try:
                        await pipe.watch(key)
                        data = await pipe.get(key)
                        current = (
                            self._deserialize(collection, data)
                            if data is not None
                            else None
                        )
                        updated = mutate(current)
                        pipe.multi()
                        pipe.set(key, self._serialize(updated))
                        pipe.sadd(self._index_key(collection), record_id)
                        await pipe.execute()
                        return updated
                    except WatchError:
                        logger.debug(f"Concurrent write on {key}, retrying")
                        continue
        except RedisError as e:
            logger.error(f"Redis error in update: {e}")
            raise StorageConnectionError(f"Redis connection error: {e}") from e

        raise VersionConflictError(
            f"Gave up updating {key} after {self.max_update_retries} concurrent writes"
        )

    async def get_stats(self) -> dict[str, Any]:
        try:
            records = {
                name: await self.client.scard(self._index_key(name))
                for name in COLLECTION_MODELS
            }
        except RedisError as e:
            logger.error(f"Redis error in get_stats: {e}")
            return {"backend": "redis", "error": str(e)}
        return {"backend": "redis", "records": records}

    async def ping(self) -> bool:
        try:
            return await self.client.ping() is True
        except RedisError:
            return False

    async def close(self) -> None:
        with contextlib.suppress(RedisError):
            await self.client.aclose()
