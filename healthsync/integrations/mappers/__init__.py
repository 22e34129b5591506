"""Provider data mappers for healthsync.

Each mapper turns one provider's raw payloads into canonical Activity,
SleepSession and NutritionEntry records plus the derived HealthDataPoint
projection.  Mappers are pure and stateless, so one instance per provider is
shared by every sync.
"""

from __future__ import annotations

from healthsync.integrations.base import Provider
from healthsync.integrations.mappers.apple_health import AppleHealthMapper
from healthsync.integrations.mappers.base import DataMapper, MappedBatch
from healthsync.integrations.mappers.fitbit import FitbitMapper
from healthsync.integrations.mappers.garmin import GarminMapper
from healthsync.integrations.mappers.google_fit import GoogleFitMapper
from healthsync.integrations.mappers.samsung_health import SamsungHealthMapper
from healthsync.integrations.mappers.withings import WithingsMapper

__all__ = [
    "AppleHealthMapper",
    "DataMapper",
    "FitbitMapper",
    "GarminMapper",
    "GoogleFitMapper",
    "MappedBatch",
    "SamsungHealthMapper",
    "WithingsMapper",
    "MAPPER_REGISTRY",
    "build_mappers",
    "get_mapper",
]

# Registry: provider → mapper class
MAPPER_REGISTRY: dict[Provider, type[DataMapper]] = {
    Provider.FITBIT: FitbitMapper,
    Provider.GOOGLE_FIT: GoogleFitMapper,
    Provider.GARMIN: GarminMapper,
    Provider.WITHINGS: WithingsMapper,
    Provider.APPLE_HEALTH: AppleHealthMapper,
    Provider.SAMSUNG_HEALTH: SamsungHealthMapper,
}


def get_mapper(provider: Provider | str) -> type[DataMapper]:
    """Return the mapper class for a provider.

    Raises:
        KeyError: If no mapper is registered for the provider.
    """
    try:
        return MAPPER_REGISTRY[Provider(provider)]
    except (KeyError, ValueError):
        raise KeyError(f"No mapper registered for provider '{provider}'") from None


def build_mappers() -> dict[Provider, DataMapper]:
    return {provider: cls() for provider, cls in MAPPER_REGISTRY.items()}
