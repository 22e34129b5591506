"""Provider adapters for healthsync.

Each adapter implements the ProviderAdapter ABC and handles:
- OAuth (or equivalent) code exchange and token refresh
- Fetching activities, sleep, and nutrition payloads for a date window
- Rate-limited, error-translated HTTP against the provider's API

Available adapters:
    FitbitAdapter         Fitbit Web API (OAuth2)
    GoogleFitAdapter      Google Fit REST API (OAuth2)
    GarminAdapter         Garmin Connect wellness API (OAuth 1.0a)
    WithingsAdapter       Withings API (OAuth2, action-style)
    AppleHealthAdapter    Apple (JWT client assertion; placeholder data)
    SamsungHealthAdapter  Samsung Health (placeholder, no public API)
"""

from __future__ import annotations

import httpx

from healthsync.config import Settings
from healthsync.integrations.adapters.apple_health import AppleHealthAdapter
from healthsync.integrations.adapters.fitbit import FitbitAdapter
from healthsync.integrations.adapters.garmin import GarminAdapter
from healthsync.integrations.adapters.google_fit import GoogleFitAdapter
from healthsync.integrations.adapters.samsung_health import SamsungHealthAdapter
from healthsync.integrations.adapters.withings import WithingsAdapter
from healthsync.integrations.base import Provider, ProviderAdapter
from healthsync.integrations.rate_limiter import RateLimiter

__all__ = [
    "AppleHealthAdapter",
    "FitbitAdapter",
    "GarminAdapter",
    "GoogleFitAdapter",
    "SamsungHealthAdapter",
    "WithingsAdapter",
    "ADAPTER_REGISTRY",
    "build_adapters",
    "get_adapter",
]

# Registry: provider → adapter class
ADAPTER_REGISTRY: dict[Provider, type[ProviderAdapter]] = {
    Provider.FITBIT: FitbitAdapter,
    Provider.GOOGLE_FIT: GoogleFitAdapter,
    Provider.GARMIN: GarminAdapter,
    Provider.WITHINGS: WithingsAdapter,
    Provider.APPLE_HEALTH: AppleHealthAdapter,
    Provider.SAMSUNG_HEALTH: SamsungHealthAdapter,
}


def get_adapter(provider: Provider | str) -> type[ProviderAdapter]:
    """Return the adapter class for a given provider.

    Args:
        provider: A Provider or its slug, e.g. 'fitbit'.

    Returns:
        The adapter class (not an instance).

    Raises:
        KeyError: If the provider is not registered.
    """
    try:
        return ADAPTER_REGISTRY[Provider(provider)]
    except (KeyError, ValueError):
        raise KeyError(
            f"No adapter registered for provider '{provider}'. "
            f"Available: {[p.value for p in ADAPTER_REGISTRY]}"
        ) from None


def build_adapters(
    rate_limiter: RateLimiter,
    settings: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> dict[Provider, ProviderAdapter]:
    """Instantiate one adapter per registered provider, sharing the limiter."""
    return {
        provider: adapter_cls(rate_limiter, settings=settings, http_client=http_client)
        for provider, adapter_cls in ADAPTER_REGISTRY.items()
    }
