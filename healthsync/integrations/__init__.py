"""healthsync multi-provider sync engine.

Pulls activity, sleep and nutrition data from wearable and health platforms,
normalizes it into canonical records and replaces each (user, provider)
partition of the record store on every sync.

Subpackages:
    adapters/  — Provider API adapters (Fitbit, Google Fit, Garmin, Withings, Apple, Samsung)
    mappers/   — Provider payload → canonical record translation
    sync/      — Orchestrator and interval scheduler

Core modules:
    base          — ProviderAdapter ABC and canonical data models
    errors        — Typed error taxonomy
    token_cipher  — Encryption of stored credentials
    rate_limiter  — Per-bucket token buckets with error backoff
    connections   — Connection lifecycle
    storage       — Record store contract
    config_loader — Load/validate/reload sync_config.yaml
"""

from healthsync.integrations.base import (
    Activity,
    HealthDataPoint,
    NutritionEntry,
    OAuthTokens,
    Provider,
    ProviderAdapter,
    SleepSession,
)
from healthsync.integrations.config_loader import SyncConfig, get_sync_config

__all__ = [
    "Activity",
    "HealthDataPoint",
    "NutritionEntry",
    "OAuthTokens",
    "Provider",
    "ProviderAdapter",
    "SleepSession",
    "SyncConfig",
    "get_sync_config",
]
