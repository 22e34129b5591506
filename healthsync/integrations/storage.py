"""Canonical record storage contract.

The sync engine only needs four things from the relational store: delete a
(user, source) partition, bulk insert, a transactional boundary around the
two, and a read path for inspection.  ``InMemoryHealthStore`` implements the
contract for tests and local runs.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable
from uuid import UUID

from healthsync.integrations.base import CanonicalRecord

logger = logging.getLogger("healthsync.integrations.storage")


class HealthRecordStore(ABC):
    """Where canonical records live, partitioned by ``source_provider``."""

    @abstractmethod
    async def delete_by_user_and_source(self, user_id: UUID, source: str) -> int:
        """Delete every record of ``user_id`` tagged with ``source``; return the count."""

    @abstractmethod
    async def bulk_insert(self, records: Iterable[CanonicalRecord]) -> int:
        """Insert records; return the number written."""

    @abstractmethod
    def transaction(self):
        """Async context manager making the enclosed writes atomic."""

    @abstractmethod
    async def find_by_user(
        self, user_id: UUID, kind: str | None = None, source: str | None = None
    ) -> list[CanonicalRecord]: ...


class InMemoryHealthStore(HealthRecordStore):
    """List-backed store.

    ``transaction()`` snapshots the record list on entry and restores it if
    the block raises, so a failed replace leaves the prior records intact.
    """

    def __init__(self) -> None:
        self._records: list[CanonicalRecord] = []

    async def delete_by_user_and_source(self, user_id: UUID, source: str) -> int:
        kept = [
            r for r in self._records
            if not (r.user_id == user_id and r.source_provider == source)
        ]
        deleted = len(self._records) - len(kept)
        self._records = kept
        return deleted

    async def bulk_insert(self, records: Iterable[CanonicalRecord]) -> int:
        batch = list(records)
        self._records.extend(batch)
        return len(batch)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryHealthStore]:
        snapshot = copy.copy(self._records)
        try:
            yield self
        except BaseException:
            self._records = snapshot
            logger.warning("Health store transaction rolled back")
            raise

    async def find_by_user(
        self, user_id: UUID, kind: str | None = None, source: str | None = None
    ) -> list[CanonicalRecord]:
        return [
            r for r in self._records
            if r.user_id == user_id
            and (kind is None or r.kind == kind)
            and (source is None or r.source_provider == source)
        ]

    def __len__(self) -> int:
        return len(self._records)
