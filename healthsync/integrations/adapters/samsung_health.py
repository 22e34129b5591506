"""Samsung Health adapter.

Samsung Health has no public server API; data sharing requires an on-device
SDK partnership.  Every capability here is a deterministic placeholder: the
payloads depend only on the requested window, so repeated syncs of the same
window produce identical records.  Each call still consumes the
``samsung_health-api`` bucket.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import httpx

from healthsync.integrations.base import (
    OAuthTokens,
    Provider,
    ProviderAdapter,
    ProviderProfile,
)

logger = logging.getLogger("healthsync.integrations.samsung_health")

_PLACEHOLDER_AUTHORIZE_URL = "https://shealth.samsung.com/oauth/authorize"
_TOKEN_LIFETIME = timedelta(hours=1)

_WATCH = {"name": "Galaxy Watch", "model": "SM-R800", "manufacturer": "Samsung"}
_PHONE = {"name": "Galaxy S21", "model": "SM-G991", "manufacturer": "Samsung"}


def _millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _window_midnight(start: datetime) -> datetime:
    start = start.astimezone(timezone.utc)
    return start.replace(hour=0, minute=0, second=0, microsecond=0)


class SamsungHealthAdapter(ProviderAdapter):
    """Samsung Health placeholder adapter."""

    PROVIDER = Provider.SAMSUNG_HEALTH
    DISPLAY_NAME = "Samsung Health"

    async def get_authorization_url(self, state: str) -> str:
        """Placeholder consent URL; any code it yields is accepted below."""
        return str(
            httpx.URL(
                _PLACEHOLDER_AUTHORIZE_URL,
                params={"client_id": self._settings.samsung_health_client_id, "state": state},
            )
        )

    async def get_access_token(self, code: str) -> OAuthTokens:
        await self._placeholder_call()
        logger.info("Samsung Health: issuing placeholder tokens")
        return OAuthTokens(
            access_token="placeholder_access_token",
            refresh_token="placeholder_refresh_token",
            expires_at=self._expires_at(_TOKEN_LIFETIME.total_seconds()),
            extra={"placeholder": True},
        )

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        await self._placeholder_call()
        logger.info("Samsung Health: refreshing placeholder tokens")
        return OAuthTokens(
            access_token="placeholder_refreshed_access_token",
            refresh_token="placeholder_refreshed_refresh_token",
            expires_at=self._expires_at(_TOKEN_LIFETIME.total_seconds()),
            extra={"placeholder": True},
        )

    async def get_user_profile(self, access_token: str) -> ProviderProfile:
        await self._placeholder_call()
        return ProviderProfile(
            provider_user_id="samsung_health_user",
            display_name="Samsung Health User",
            extra={"placeholder": True},
        )

    async def get_activities(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        await self._placeholder_call()
        began = _window_midnight(start) + timedelta(hours=1)
        return [
            {
                "id": f"samsung_activity_{began.date().isoformat()}",
                "type": "running",
                "startTime": _millis(began),
                "endTime": _millis(began + timedelta(hours=1)),
                "duration": 3_600_000,
                "distance": 5000,
                "distanceUnit": "m",
                "calories": 450,
                "steps": 7500,
                "device": dict(_WATCH),
            }
        ]

    async def get_sleep_data(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        await self._placeholder_call()
        bed = _window_midnight(start) + timedelta(days=1)
        hour = timedelta(hours=1)
        stages = [
            {
                "stage": stage,
                "startTime": _millis(bed + hour * i),
                "endTime": _millis(bed + hour * (i + 1)),
                "duration": 3_600_000,
            }
            for i, stage in enumerate(("light", "deep", "rem"))
        ]
        return [
            {
                "id": f"samsung_sleep_{bed.date().isoformat()}",
                "startTime": _millis(bed),
                "endTime": _millis(bed + timedelta(hours=8)),
                "duration": 28_800_000,
                "stages": stages,
                "quality": 85,
                "device": dict(_WATCH),
            }
        ]

    async def get_nutrition_data(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        await self._placeholder_call()
        noon = _window_midnight(start) + timedelta(hours=12)
        return [
            {
                "id": f"samsung_nutrition_{noon.date().isoformat()}",
                "timestamp": _millis(noon),
                "mealType": "lunch",
                "foodItems": [
                    {
                        "name": "Chicken Salad", "quantity": 1, "unit": "bowl", "calories": 350,
                        "nutrients": {"carbs": 15, "fat": 12, "protein": 30, "fiber": 5},
                    },
                    {
                        "name": "Whole Grain Bread", "quantity": 2, "unit": "slice", "calories": 160,
                        "nutrients": {"carbs": 30, "fat": 2, "protein": 6, "fiber": 4},
                    },
                ],
                "waterIntake": 500,
                "device": dict(_PHONE),
            }
        ]
