"""Sync orchestrator: drives adapter → mapper → store for each provider.

``sync_one`` runs one (user, provider) sync with full-replace semantics.
``sync_all`` fans out over every active connection of a user and isolates
failures per provider, so one broken integration never blocks the others.

Write ordering: all three category fetches and the mapping complete before
the store is touched, and the delete plus inserts run inside one store
transaction.  A failed or cancelled fetch therefore leaves the previous
records in place.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Mapping
from uuid import UUID

from healthsync.integrations.base import Provider, ProviderAdapter
from healthsync.integrations.connections import Connection, ConnectionManager
from healthsync.integrations.errors import (
    AuthExpired,
    CryptoError,
    InvalidOperation,
    InvalidState,
    NotFound,
    SyncError,
)
from healthsync.integrations.mappers.base import DataMapper
from healthsync.integrations.rate_limiter import RateLimiter
from healthsync.integrations.storage import HealthRecordStore
from healthsync.models.base import utc_now
from healthsync.models.sync import ProviderSyncResult, SyncCounts, SyncStatus

logger = logging.getLogger("healthsync.integrations.sync.orchestrator")

DEFAULT_WINDOW_DAYS = 30
DEFAULT_MAX_CONCURRENT_PROVIDERS = 6


class SyncOrchestrator:
    """Coordinate provider syncs for a user.

    Usage::

        orchestrator = SyncOrchestrator(manager, adapters, mappers, store, limiter)
        counts = await orchestrator.sync_one(user_id, Provider.FITBIT)
        results = await orchestrator.sync_all(user_id)
    """

    def __init__(
        self,
        connections: ConnectionManager,
        adapters: Mapping[Provider, ProviderAdapter],
        mappers: Mapping[Provider, DataMapper],
        store: HealthRecordStore,
        rate_limiter: RateLimiter,
        *,
        default_window_days: int = DEFAULT_WINDOW_DAYS,
        max_concurrent_providers: int = DEFAULT_MAX_CONCURRENT_PROVIDERS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._connections = connections
        self._adapters = adapters
        self._mappers = mappers
        self._store = store
        self._rate_limiter = rate_limiter
        self._default_window = timedelta(days=default_window_days)
        self._max_concurrent = max_concurrent_providers
        self._clock = clock

    # ------------------------------------------------------------------
    # Single provider
    # ------------------------------------------------------------------

    async def sync_one(
        self,
        user_id: UUID,
        provider: Provider | str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> SyncCounts:
        """Replace every record of (user, provider) with a fresh fetch.

        Args:
            user_id:  Internal user UUID.
            provider: Provider to sync.
            start:    Window start (default: ``end`` minus the default window).
            end:      Window end (default: now).

        Returns:
            Per-category counts of the records written.

        Raises:
            NotFound:      No connection, or no adapter/mapper for the provider.
            InvalidState:  The connection is not active.
            AuthExpired:   Token refresh failed or stored credentials are unusable.
            ProviderError: A provider fetch failed.
        """
        provider = Provider(provider)
        connection = await self._connections.get_for_user(user_id, provider)
        if not connection.is_active:
            raise InvalidState(
                f"{provider} connection for user {user_id} is {connection.status}"
            )
        adapter = self._adapter(provider)
        mapper = self._mapper(provider)
        start, end = self._resolve_window(start, end)

        logger.info(
            "Sync start: %s/%s window %s → %s",
            user_id, provider, start.isoformat(), end.isoformat(),
        )
        try:
            connection = await self._ensure_fresh_token(connection)
            try:
                access_token = self._connections.get_access_token(connection)
            except CryptoError as exc:
                raise AuthExpired(
                    f"Stored {provider} credentials are unusable; re-authorization required"
                ) from exc

            fetched = await asyncio.gather(
                adapter.get_activities(access_token, start, end),
                adapter.get_sleep_data(access_token, start, end),
                adapter.get_nutrition_data(access_token, start, end),
                return_exceptions=True,
            )
            for outcome in fetched:
                if isinstance(outcome, BaseException):
                    raise outcome
            activities, sleep, nutrition = fetched
            batch = mapper.map_all(user_id, activities, sleep, nutrition)

            async with self._store.transaction():
                deleted = await self._store.delete_by_user_and_source(user_id, provider.value)
                counts = SyncCounts(
                    activities_count=await self._store.bulk_insert(batch.activities),
                    sleep_count=await self._store.bulk_insert(batch.sleep),
                    nutrition_count=await self._store.bulk_insert(batch.nutrition),
                    health_data_count=await self._store.bulk_insert(batch.health_data),
                    skipped_count=batch.skipped,
                )
        except Exception:
            self._rate_limiter.record_error(adapter.api_bucket)
            raise

        await self._connections.update_last_synced(connection.id, self._clock())
        self._rate_limiter.reset_error_count(adapter.api_bucket)
        logger.info(
            "Sync complete: %s/%s → %d activities, %d sleep, %d nutrition, "
            "%d points (%d replaced, %d skipped)",
            user_id, provider, counts.activities_count, counts.sleep_count,
            counts.nutrition_count, counts.health_data_count, deleted, counts.skipped_count,
        )
        return counts

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def sync_all(
        self,
        user_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[str, ProviderSyncResult]:
        """Sync every active connection of ``user_id`` independently.

        Returns:
            Provider slug → result, exactly one entry per active connection.

        Raises:
            NotFound: The user has no active connections.
        """
        connections = await self._connections.active_for_user(user_id)
        if not connections:
            raise NotFound(f"No active connections for user {user_id}")

        semaphore = asyncio.Semaphore(self._max_concurrent)
        logger.info("Sync all: user %s, %d providers", user_id, len(connections))
        results = await asyncio.gather(
            *(self._isolated_sync(user_id, c, start, end, semaphore) for c in connections)
        )
        return {result.provider.value: result for result in results}

    async def _isolated_sync(
        self,
        user_id: UUID,
        connection: Connection,
        start: datetime | None,
        end: datetime | None,
        semaphore: asyncio.Semaphore,
    ) -> ProviderSyncResult:
        async with semaphore:
            try:
                counts = await self.sync_one(user_id, connection.provider, start, end)
            except Exception as exc:
                logger.error(
                    "Sync failed for %s/%s: %s", user_id, connection.provider, exc
                )
                return ProviderSyncResult(
                    provider=connection.provider,
                    success=False,
                    error=str(exc) or type(exc).__name__,
                )
        return ProviderSyncResult(provider=connection.provider, success=True, counts=counts)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_sync_status(self, user_id: UUID) -> list[SyncStatus]:
        """Return one status row per connection of the user, whatever its status."""
        return [
            SyncStatus.model_validate(connection)
            for connection in await self._connections.list_for_user(user_id)
        ]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _ensure_fresh_token(self, connection: Connection) -> Connection:
        if not connection.is_token_expired(self._clock()):
            return connection
        logger.info("Token expired for %s/%s, refreshing", connection.user_id, connection.provider)
        try:
            return await self._connections.refresh(connection.id)
        except SyncError as exc:
            raise AuthExpired(
                f"{connection.provider} token expired and could not be refreshed: {exc.message}"
            ) from exc

    def _resolve_window(
        self, start: datetime | None, end: datetime | None
    ) -> tuple[datetime, datetime]:
        end = end or self._clock()
        start = start or end - self._default_window
        if start > end:
            raise InvalidOperation(
                f"Sync window start {start.isoformat()} is after end {end.isoformat()}"
            )
        return start, end

    def _adapter(self, provider: Provider) -> ProviderAdapter:
        try:
            return self._adapters[provider]
        except KeyError:
            raise NotFound(f"No adapter configured for provider '{provider}'") from None

    def _mapper(self, provider: Provider) -> DataMapper:
        try:
            return self._mappers[provider]
        except KeyError:
            raise NotFound(f"No mapper configured for provider '{provider}'") from None
