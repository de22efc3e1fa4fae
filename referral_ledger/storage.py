"""
In-memory data store shared by the ledgers.

The store is constructed explicitly and handed to every service. All writes
go through a unit of work opened with ``Store.atomic()``: the store lock is
held for the whole unit, writes are staged and only applied when the block
exits cleanly, so readers never see half of a transition.
"""

import copy
import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator, Optional
from uuid import UUID

from .errors import DuplicateKeyError, StaleStatusError

logger = logging.getLogger(__name__)

TABLES = ("users", "campaigns", "selections", "referrals", "rewards")


class UnitOfWork:
    def __init__(self, store: "Store"):
        self._store = store
        self._staged: dict[str, dict[UUID, dict]] = {name: {} for name in TABLES}
        self._staged_index: dict[str, dict] = {name: {} for name in store._indexes}

    def get(self, table: str, record_id: UUID) -> Optional[dict]:
        record = self._staged[table].get(record_id)
        if record is None:
            record = self._store._tables[table].get(record_id)
        return copy.deepcopy(record) if record is not None else None

    def find(self, table: str, predicate: Callable[[dict], bool]) -> list[dict]:
        merged = dict(self._store._tables[table])
        merged.update(self._staged[table])
        return [copy.deepcopy(r) for r in merged.values() if predicate(r)]

    def lookup(self, index: str, key) -> Optional[UUID]:
        if key in self._staged_index[index]:
            return self._staged_index[index][key]
        return self._store._indexes[index].get(key)

    def insert(self, table: str, record: dict, unique: Optional[dict] = None) -> dict:
        for index, key in (unique or {}).items():
            if self.lookup(index, key) is not None:
                raise DuplicateKeyError(index, key)
        for index, key in (unique or {}).items():
            self._staged_index[index][key] = record["id"]
        self._staged[table][record["id"]] = copy.deepcopy(record)
        return copy.deepcopy(record)

    def update(self, table: str, record_id: UUID, changes: dict) -> dict:
        record = self.get(table, record_id)
        if record is None:
            raise KeyError(record_id)
        record.update(changes)
        self._staged[table][record_id] = record
        return copy.deepcopy(record)

    def compare_and_set_status(
        self, table: str, record_id: UUID, expected: Iterable, new_status, changes: Optional[dict] = None,
    ) -> dict:
        expected = frozenset(expected)
        record = self.get(table, record_id)
        if record is None:
            raise KeyError(record_id)
        if record["status"] not in expected:
            raise StaleStatusError(record_id, expected, record["status"])
        record.update(changes or {})
        record["status"] = new_status
        record["version"] = record.get("version", 0) + 1
        self._staged[table][record_id] = record
        return copy.deepcopy(record)

    def increment(self, table: str, record_id: UUID, field: str, by: int = 1) -> int:
        record = self.get(table, record_id)
        if record is None:
            raise KeyError(record_id)
        record[field] = record.get(field, 0) + by
        self._staged[table][record_id] = record
        return record[field]

    def _apply(self) -> None:
        for table, records in self._staged.items():
            self._store._tables[table].update(records)
        for index, entries in self._staged_index.items():
            self._store._indexes[index].update(entries)


class Store:
    def __init__(self):
        self._lock = threading.RLock()
        self._local = threading.local()
        self._tables: dict[str, dict[UUID, dict]] = {name: {} for name in TABLES}
        self._indexes: dict[str, dict] = {
            "user_email": {},
            "business_code": {},
            "referrer_code": {},
            "customer_email": {},
            "selection": {},
            "referral_code": {},
            "reward_code": {},
        }

    @contextmanager
    def atomic(self) -> Iterator[UnitOfWork]:
        """Open a unit of work, joining the caller's one if already inside it."""
        current = getattr(self._local, "uow", None)
        if current is not None:
            yield current
            return
        with self._lock:
            uow = UnitOfWork(self)
            self._local.uow = uow
            try:
                yield uow
            except BaseException:
                logger.debug("Discarding staged writes after failure")
                raise
            else:
                uow._apply()
            finally:
                self._local.uow = None

    def get(self, table: str, record_id: UUID) -> Optional[dict]:
        with self._lock:
            record = self._tables[table].get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def find(self, table: str, predicate: Callable[[dict], bool]) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._tables[table].values() if predicate(r)]

    def lookup(self, index: str, key) -> Optional[UUID]:
        with self._lock:
            return self._indexes[index].get(key)

    def increment(self, table: str, record_id: UUID, field: str, by: int = 1) -> int:
        with self.atomic() as uow:
            return uow.increment(table, record_id, field, by)

    def snapshot(self) -> dict[str, list[dict]]:
        """Point-in-time copy of every table, for read-only consumers."""
        with self._lock:
            return {name: copy.deepcopy(list(rows.values())) for name, rows in self._tables.items()}

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._tables[table])
