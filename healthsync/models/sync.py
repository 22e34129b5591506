"""Pydantic models for sync results and connection status."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import Field

from healthsync.integrations.base import Provider
from healthsync.integrations.connections import ConnectionStatus
from healthsync.models.base import HealthSyncBase


class SyncCounts(HealthSyncBase):
    """Records written by one successful provider sync."""

    activities_count: int = Field(default=0, ge=0)
    sleep_count: int = Field(default=0, ge=0)
    nutrition_count: int = Field(default=0, ge=0)
    health_data_count: int = Field(default=0, ge=0)
    skipped_count: int = Field(default=0, ge=0)

    @property
    def total(self) -> int:
        return (
            self.activities_count
            + self.sleep_count
            + self.nutrition_count
            + self.health_data_count
        )


class ProviderSyncResult(HealthSyncBase):
    """One slot of the per-provider result map returned by ``sync_all``."""

    provider: Provider
    success: bool
    counts: SyncCounts | None = None
    error: str | None = None


class SyncStatus(HealthSyncBase):
    """Staleness view of one connection."""

    connection_id: uuid.UUID = Field(alias="id")
    provider: Provider
    status: ConnectionStatus
    last_synced_at: datetime | None = None
    token_expires_at: datetime | None = None
