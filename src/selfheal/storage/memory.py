"""
In-memory storage implementation

Default backend for development, tests and single-process deployments.
"""

import threading
from typing import Any, Optional

from pydantic import BaseModel

from .base import Mutator, StorageBackend


class MemoryStorage(StorageBackend):
    """
    Thread-safe in-memory storage

    Records are deep-copied on the way in and out, so callers can never alias
    stored state. `_update` runs the mutator under the lock, which makes every
    compare-and-set atomic with respect to other writers.
    """

    def __init__(self):
        self._collections: dict[str, dict[str, BaseModel]] = {}
        self._lock = threading.RLock()

        self._stats = {"reads": 0, "writes": 0, "deletes": 0, "conflicts": 0}

    def _bucket(self, collection: str) -> dict[str, BaseModel]:
        return self._collections.setdefault(collection, {})

    async def _load(self, collection: str, record_id: str) -> Optional[BaseModel]:
        with self._lock:
            self._stats["reads"] += 1
            record = self._bucket(collection).get(record_id)
            return record.model_copy(deep=True) if record is not None else None

    async def _store(self, collection: str, record_id: str, record: BaseModel) -> None:
        with self._lock:
            self._bucket(collection)[record_id] = record.model_copy(deep=True)
            self._stats["writes"] += 1

    async def _delete(self, collection: str, record_id: str) -> bool:
        with self._lock:
            existed = self._bucket(collection).pop(record_id, None) is not None
            if existed:
                self._stats["deletes"] += 1
            return existed

    async def _load_all(self, collection: str) -> list[BaseModel]:
        with self._lock:
            self._stats["reads"] += 1
            return [r.model_copy(deep=True) for r in self._bucket(collection).values()]

    async def _update(
        self, collection: str, record_id: str, mutate: Mutator
    ) -> BaseModel:
        with self._lock:
            bucket = self._bucket(collection)
            current = bucket.get(record_id)
            try:
                updated = mutate(
                    current.model_copy(deep=True) if current is not None else None
                )
            except Exception:
                self._stats["conflicts"] += 1
                raise
            bucket[record_id] = updated.model_copy(deep=True)
            self._stats["writes"] += 1
            return updated

    async def clear(self) -> None:
        """Drop every record"""
        with self._lock:
            self._collections.clear()

    async def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "backend": "memory",
                **self._stats,
                "records": {
                    name: len(bucket) for name, bucket in self._collections.items()
                },
            }
