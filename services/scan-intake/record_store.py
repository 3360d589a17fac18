"""Record Store collaborator: create/update/delete plus a realtime subscription.

The hosted document database is replaced here by an in-memory store with the
same contract; list snapshots are pushed to subscribers after every change.
"""

import asyncio
import itertools
import logging
import uuid
from collections import defaultdict
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any, Protocol

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class RecordNotFound(Exception):
    """No record with that id in the collection."""


class Record(BaseModel):
    id: str
    created_at: datetime
    fields: dict[str, Any]


class RecordStore(Protocol):
    async def create(self, collection: str, fields: dict[str, Any]) -> Record: ...

    async def update(self, collection: str, record_id: str, fields: dict[str, Any]) -> Record: ...

    async def delete(self, collection: str, record_id: str) -> None: ...

    def list_records(self, collection: str, order_by: str = "created_at", descending: bool = True) -> list[Record]: ...

    def subscribe(
        self, collection: str, order_by: str = "created_at", descending: bool = True,
    ) -> AsyncIterator[list[Record]]: ...


class InMemoryRecordStore:
    def __init__(self):
        self._collections: dict[str, dict[str, Record]] = defaultdict(dict)
        self._subscribers: dict[str, list[tuple[asyncio.Queue, str, bool]]] = defaultdict(list)
        self._sequence = itertools.count()
        self._order: dict[str, int] = {}

    async def create(self, collection: str, fields: dict[str, Any]) -> Record:
        record = Record(
            id=uuid.uuid4().hex,
            created_at=datetime.now(timezone.utc),
            fields=dict(fields),
        )
        self._collections[collection][record.id] = record
        self._order[record.id] = next(self._sequence)
        logger.info("Created %s record %s", collection, record.id)
        self._notify(collection)
        return record

    async def update(self, collection: str, record_id: str, fields: dict[str, Any]) -> Record:
        existing = self._get(collection, record_id)
        record = existing.model_copy(update={"fields": {**existing.fields, **fields}})
        self._collections[collection][record_id] = record
        logger.info("Updated %s record %s", collection, record_id)
        self._notify(collection)
        return record

    async def delete(self, collection: str, record_id: str) -> None:
        self._get(collection, record_id)
        del self._collections[collection][record_id]
        self._order.pop(record_id, None)
        logger.info("Deleted %s record %s", collection, record_id)
        self._notify(collection)

    def get(self, collection: str, record_id: str) -> Record:
        return self._get(collection, record_id)

    def list_records(self, collection: str, order_by: str = "created_at", descending: bool = True) -> list[Record]:
        records = list(self._collections[collection].values())
        return sorted(records, key=lambda r: self._sort_key(r, order_by), reverse=descending)

    async def subscribe(
        self, collection: str, order_by: str = "created_at", descending: bool = True,
    ) -> AsyncIterator[list[Record]]:
        """Yield the current snapshot, then a fresh snapshot after every change.

        A subscriber that falls behind skips straight to the latest snapshot.
        """
        queue: asyncio.Queue[list[Record]] = asyncio.Queue(maxsize=1)
        entry = (queue, order_by, descending)
        self._subscribers[collection].append(entry)
        try:
            yield self.list_records(collection, order_by, descending)
            while True:
                yield await queue.get()
        finally:
            self._subscribers[collection].remove(entry)

    def _get(self, collection: str, record_id: str) -> Record:
        record = self._collections[collection].get(record_id)
        if record is None:
            raise RecordNotFound(f"No {collection} record with id {record_id}")
        return record

    def _notify(self, collection: str):
        for queue, order_by, descending in self._subscribers[collection]:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(self.list_records(collection, order_by, descending))

    def _sort_key(self, record: Record, order_by: str) -> tuple:
        seq = self._order.get(record.id, 0)
        if order_by == "created_at":
            return (0, record.created_at, seq)
        value = record.fields.get(order_by)
        # Missing values sort together, after typed values
        if value is None:
            return (1, "", seq)
        return (0, value, seq)
