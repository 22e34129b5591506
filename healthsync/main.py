"""healthsync composition root.

Wires settings, the YAML engine config, the token cipher, the shared rate
limiter, one adapter and mapper per provider, the connection manager, the
record store, the orchestrator and the scheduler into a ``SyncEngine``.

Usage::

    configure_logging()
    engine = create_sync_engine()
    conn = await engine.connections.connect_with_code(user_id, "fitbit", code)
    results = await engine.orchestrator.sync_all(user_id)
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import httpx

from healthsync.config import Settings, get_settings
from healthsync.integrations.adapters import build_adapters
from healthsync.integrations.base import Provider, ProviderAdapter
from healthsync.integrations.config_loader import SyncConfig, get_sync_config
from healthsync.integrations.connections import (
    ConnectionManager,
    ConnectionStore,
    InMemoryConnectionStore,
)
from healthsync.integrations.mappers import build_mappers
from healthsync.integrations.mappers.base import DataMapper
from healthsync.integrations.rate_limiter import RateLimiter
from healthsync.integrations.storage import HealthRecordStore, InMemoryHealthStore
from healthsync.integrations.sync.orchestrator import SyncOrchestrator
from healthsync.integrations.sync.scheduler import SyncScheduler
from healthsync.integrations.token_cipher import TokenCipher
from healthsync.models.base import utc_now

logger = logging.getLogger("healthsync")

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s %(message)s"


def configure_logging(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


@dataclass
class SyncEngine:
    """Every wired component of one engine instance."""

    settings: Settings
    config: SyncConfig
    cipher: TokenCipher
    rate_limiter: RateLimiter
    adapters: dict[Provider, ProviderAdapter]
    mappers: dict[Provider, DataMapper]
    connections: ConnectionManager
    store: HealthRecordStore
    orchestrator: SyncOrchestrator
    scheduler: SyncScheduler


def create_sync_engine(
    settings: Settings | None = None,
    *,
    config: SyncConfig | None = None,
    connection_store: ConnectionStore | None = None,
    record_store: HealthRecordStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    clock: Callable[[], datetime] | None = None,
) -> SyncEngine:
    """Build a ready-to-use engine.

    Args:
        settings:         Process settings (default: ``get_settings()``).
        config:           Engine tuning (default: bundled ``sync_config.yaml``).
        connection_store: Connection persistence (default: in-memory).
        record_store:     Canonical record persistence (default: in-memory).
        http_client:      Shared client for every adapter (default: one per request).
        clock:            UTC clock for expiry and staleness checks.

    Raises:
        CryptoError: ``token_encryption_key`` is not configured.
    """
    settings = settings or get_settings()
    config = config or get_sync_config()
    clock = clock or utc_now

    cipher = TokenCipher(settings.token_encryption_key)
    rate_limiter = RateLimiter(
        config.rate_limits.buckets,
        default_limit=config.rate_limits.default,
        max_wait_attempts=config.rate_limits.max_wait_attempts,
    )
    adapters = build_adapters(rate_limiter, settings=settings, http_client=http_client)
    mappers = build_mappers()
    store = record_store or InMemoryHealthStore()
    connections = ConnectionManager(
        connection_store or InMemoryConnectionStore(), cipher, adapters, clock=clock
    )
    orchestrator = SyncOrchestrator(
        connections,
        adapters,
        mappers,
        store,
        rate_limiter,
        default_window_days=config.sync.default_window_days,
        max_concurrent_providers=config.sync.max_concurrent_providers,
        clock=clock,
    )
    scheduler = SyncScheduler(
        orchestrator,
        config,
        max_concurrent=config.sync.max_concurrent_providers,
        clock=clock,
    )
    logger.info(
        "%s sync engine v%s ready [%s]: %d providers",
        settings.app_name, settings.app_version, settings.environment, len(adapters),
    )
    return SyncEngine(
        settings=settings,
        config=config,
        cipher=cipher,
        rate_limiter=rate_limiter,
        adapters=adapters,
        mappers=mappers,
        connections=connections,
        store=store,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )
