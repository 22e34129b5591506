"""Apple Health adapter.

Token exchange goes through Sign in with Apple: instead of a static client
secret, each request carries an ES256-signed JWT assertion built from the
team id, key id and the downloaded private key.

HealthKit itself is device-local and has no server-side read API, so the
four data calls below return deterministic placeholder payloads derived from
the requested window.  They still consume the rate limiter so that the
adapter behaves like every other provider under load.

Settings:
    APPLE_HEALTH_CLIENT_ID     Services ID (JWT ``sub``)
    APPLE_HEALTH_TEAM_ID       Developer team id (JWT ``iss``)
    APPLE_HEALTH_KEY_ID        Key id (JWT header ``kid``)
    APPLE_HEALTH_PRIVATE_KEY   PEM-encoded P-256 private key
    APPLE_HEALTH_REDIRECT_URI  Registered callback URL
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import jwt as pyjwt

from healthsync.integrations.base import (
    OAuthTokens,
    Provider,
    ProviderAdapter,
    ProviderProfile,
)
from healthsync.integrations.errors import ProviderError

logger = logging.getLogger("healthsync.integrations.apple_health")

_APPLE_AUTH_BASE = "https://appleid.apple.com"
_APPLE_AUTHORIZE_URL = f"{_APPLE_AUTH_BASE}/auth/authorize"
_APPLE_TOKEN_URL = f"{_APPLE_AUTH_BASE}/auth/token"
CLIENT_SECRET_LIFETIME = timedelta(days=180)

_SOURCE_NAME = "iPhone"
_SOURCE_ID = "com.apple.health"


class AppleHealthAdapter(ProviderAdapter):
    """Apple Health adapter (JWT client assertion, placeholder data reads)."""

    PROVIDER = Provider.APPLE_HEALTH
    DISPLAY_NAME = "Apple Health"

    def build_client_secret(self, now: datetime | None = None) -> str:
        """Sign the ES256 client-secret JWT expected by Apple's token endpoint."""
        issued = int((now or datetime.now(timezone.utc)).timestamp())
        payload = {
            "iss": self._settings.apple_health_team_id,
            "iat": issued,
            "exp": issued + int(CLIENT_SECRET_LIFETIME.total_seconds()),
            "aud": _APPLE_AUTH_BASE,
            "sub": self._settings.apple_health_client_id,
        }
        return pyjwt.encode(
            payload,
            self._settings.apple_health_private_key,
            algorithm="ES256",
            headers={"kid": self._settings.apple_health_key_id},
        )

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def get_authorization_url(self, state: str) -> str:
        # Apple only returns name/email scopes through a form_post callback
        return self._oauth2_authorize_url(
            _APPLE_AUTHORIZE_URL,
            client_id=self._settings.apple_health_client_id,
            redirect_uri=self._settings.apple_health_redirect_uri,
            scope="name email",
            state=state,
            response_mode="form_post",
        )

    async def get_access_token(self, code: str) -> OAuthTokens:
        logger.info("Apple Health: exchanging authorization code")
        data = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self._settings.apple_health_redirect_uri,
            },
            operation="get_access_token",
        )
        return self._oauth2_tokens(data, "get_access_token")

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        logger.info("Apple Health: refreshing access token")
        data = await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            operation="refresh_access_token",
        )
        return self._oauth2_tokens(data, "refresh_access_token")

    async def _token_request(self, form: dict, *, operation: str) -> dict:
        try:
            client_secret = self.build_client_secret()
        except (ValueError, TypeError, pyjwt.PyJWTError) as exc:
            self._rate_limiter.record_error(self.token_bucket)
            logger.error("Apple Health: client secret could not be signed: %s", exc)
            raise ProviderError(
                self.PROVIDER.value, operation, "client secret could not be signed"
            ) from exc
        return await self._request_json(
            "POST",
            _APPLE_TOKEN_URL,
            operation=operation,
            bucket=self.token_bucket,
            data={
                **form,
                "client_id": self._settings.apple_health_client_id,
                "client_secret": client_secret,
            },
        )

    # ------------------------------------------------------------------
    # Placeholder data
    # ------------------------------------------------------------------

    async def get_user_profile(self, access_token: str) -> ProviderProfile:
        await self._placeholder_call()
        return ProviderProfile(
            provider_user_id="apple_health_user",
            display_name=None,
            extra={"placeholder": True},
        )

    async def get_activities(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        await self._placeholder_call()
        finished = end.replace(microsecond=0)
        begun = finished - timedelta(hours=1)
        return [
            {
                "id": f"apple_activity_{int(begun.timestamp())}",
                "sourceName": _SOURCE_NAME,
                "sourceId": _SOURCE_ID,
                "startDate": begun.isoformat(),
                "endDate": finished.isoformat(),
                "duration": 3600,
                "activeEnergyBurned": 300,
                "activeEnergyBurnedUnit": "kcal",
                "distance": 5.2,
                "distanceUnit": "km",
                "workoutActivityType": "running",
            }
        ]

    async def get_sleep_data(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        await self._placeholder_call()
        anchor = end.replace(microsecond=0)
        bed = anchor - timedelta(hours=8)
        stages = [
            ("deep", bed, bed + timedelta(hours=1)),
            ("rem", bed + timedelta(hours=1), bed + timedelta(hours=2)),
            ("light", bed + timedelta(hours=2), anchor - timedelta(seconds=1000)),
        ]
        return [
            {
                "id": f"apple_sleep_{int(bed.timestamp())}",
                "sourceName": _SOURCE_NAME,
                "sourceId": _SOURCE_ID,
                "startDate": bed.isoformat(),
                "endDate": stages[-1][2].isoformat(),
                "sleepStages": [
                    {
                        "stage": stage,
                        "startDate": s.isoformat(),
                        "endDate": e.isoformat(),
                        "duration": int((e - s).total_seconds()),
                    }
                    for stage, s, e in stages
                ],
            }
        ]

    async def get_nutrition_data(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        await self._placeholder_call()
        eaten = end.replace(microsecond=0)
        return [
            {
                "id": f"apple_nutrition_{int(eaten.timestamp())}",
                "sourceName": _SOURCE_NAME,
                "sourceId": _SOURCE_ID,
                "date": eaten.isoformat(),
                "meal": "breakfast",
                "foodItems": [
                    {
                        "name": "Oatmeal", "quantity": 1, "unit": "bowl", "calories": 150,
                        "carbohydrates": 27, "protein": 5, "fat": 2.5, "fiber": 4,
                    },
                    {
                        "name": "Banana", "quantity": 1, "unit": "piece", "calories": 105,
                        "carbohydrates": 27, "protein": 1.3, "fat": 0.4, "fiber": 3.1,
                    },
                ],
            }
        ]
