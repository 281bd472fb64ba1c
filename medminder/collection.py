import asyncio
import json
from typing import Callable, Generic, Iterable, Optional, Sequence, Tuple, Type, TypeVar

from .errors import StorageReadFailure, StorageWriteFailure
from .logs import logger
from .observable import Observable
from .storage import DurableStore

R = TypeVar("R")
T = TypeVar("T")


def next_id(records: Iterable) -> int:
    return max((r.id for r in records), default=0) + 1


class EntityCollection(Generic[R]):
    """
    In-memory authoritative list of one record type, mirrored to one blob.

    Writers go through :meth:`mutate`, which holds the collection lock across
    read-current, compute, publish and persist. Readers use :attr:`snapshot`
    and never wait on that lock.
    """

    def __init__(self, file_name: str, record_type: Type[R], store: DurableStore):
        self.file_name = file_name
        self.record_type = record_type
        self.store = store
        self._channel = Observable(())
        self._lock = asyncio.Lock()
        # highest id handed out or loaded this session
        self._high_water = 0

    def __repr__(self):
        return f"<EntityCollection {self.file_name} n={len(self.snapshot)}>"

    @property
    def snapshot(self) -> Tuple[R, ...]:
        return self._channel.value

    @property
    def channel(self) -> Observable:
        return self._channel

    def subscribe(self, callback):
        return self._channel.subscribe(callback)

    def updates(self):
        return self._channel.updates()

    def find(self, record_id: int) -> Optional[R]:
        return next((r for r in self.snapshot if r.id == record_id), None)

    def allocate_id(self, records: Iterable[R]) -> int:
        """``max(id) + 1`` over ``records``, never below an id already handed out."""
        rid = max(next_id(records), self._high_water + 1)
        self._high_water = rid
        return rid

    # -------------------------
    # Persistence
    # -------------------------
    def decode(self, content: str) -> Tuple[R, ...]:
        rows = json.loads(content)
        if not isinstance(rows, list):
            raise ValueError(f"{self.file_name}: expected a JSON array")
        return tuple(self.record_type.from_dict(row) for row in rows)

    def encode(self, records: Sequence[R]) -> str:
        return json.dumps([r.to_dict() for r in records], indent=4, ensure_ascii=False)

    async def load(self) -> Tuple[R, ...]:
        async with self._lock:
            try:
                content = await asyncio.to_thread(self.store.read, self.file_name)
            except StorageReadFailure:
                logger.exception(f"load {self.file_name} failed; starting empty")
                content = None
            records: Tuple[R, ...] = ()
            if content is not None:
                try:
                    records = self.decode(content)
                except (ValueError, TypeError, RecursionError) as e:
                    # json.JSONDecodeError is a ValueError; deep nesting overflows the decoder
                    logger.warning(f"load {self.file_name}: unreadable content ({e}); starting empty")
                    records = ()
            self._high_water = next_id(records) - 1
            self._channel.publish(records)
            logger.info(f"loaded {self.file_name}: {len(records)} records")
            return records

    async def _flush(self, records: Sequence[R]) -> bool:
        text = self.encode(records)
        try:
            await asyncio.to_thread(self.store.write, self.file_name, text)
            return True
        except StorageWriteFailure:
            logger.exception(f"save {self.file_name} failed; keeping in-memory state")
            return False

    # -------------------------
    # Mutation
    # -------------------------
    async def mutate(self, change: Callable[[Tuple[R, ...]], Tuple[Iterable[R], T]]) -> T:
        """
        Apply ``change`` to the current snapshot and persist the result.

        ``change`` receives the current records and returns
        ``(new_records, result)``; ``result`` is handed back to the caller.
        Nothing is published or written when the records come back unchanged.
        """
        async with self._lock:
            current = self.snapshot
            new_records, result = change(current)
            new_records = tuple(new_records)
            if new_records == current:
                return result
            self._channel.publish(new_records)
            await self._flush(new_records)
            return result

    async def append(self, build: Callable[[int], R]) -> int:
        """Allocate the next id, build a record with it and append it."""
        def change(records):
            rid = self.allocate_id(records)
            return records + (build(rid),), rid
        return await self.mutate(change)

    async def update_where(self, predicate: Callable[[R], bool], update: Callable[[R], R]) -> int:
        def change(records):
            hits = 0
            out = []
            for r in records:
                if predicate(r):
                    r = update(r)
                    hits += 1
                out.append(r)
            return out, hits
        return await self.mutate(change)

    async def remove_where(self, predicate: Callable[[R], bool]) -> int:
        def change(records):
            kept = [r for r in records if not predicate(r)]
            return kept, len(records) - len(kept)
        return await self.mutate(change)
