"""Withings public API adapter.

OAuth 2.0 with a twist: every endpoint (including the token endpoint) is a
form POST carrying an ``action`` parameter, and errors come back as HTTP 200
with a non-zero ``status`` in the body.

Settings:
    WITHINGS_CLIENT_ID      OAuth2 client ID
    WITHINGS_CLIENT_SECRET  OAuth2 client secret
    WITHINGS_REDIRECT_URI   Registered callback URL

API base: https://wbsapi.withings.net/v2

Endpoints used:
    /oauth2   action=requesttoken   Code exchange and refresh
    /user     action=getuser        Profile
    /measure  action=getworkouts    Workouts
    /sleep    action=get            Sleep state segments

Withings exposes no nutrition data; ``get_nutrition_data`` returns nothing.
"""

from __future__ import annotations

import logging
from datetime import datetime

from healthsync.integrations.base import (
    OAuthTokens,
    Provider,
    ProviderAdapter,
    ProviderProfile,
    safe_int,
)
from healthsync.integrations.errors import ProviderError

logger = logging.getLogger("healthsync.integrations.withings")

_WITHINGS_AUTHORIZE_URL = "https://account.withings.com/oauth2_user/authorize2"
_WITHINGS_API_BASE = "https://wbsapi.withings.net/v2"
WITHINGS_SCOPES = ("user.info", "user.metrics", "user.activity")

_WORKOUT_FIELDS = "calories,effduration,elevation,distance,steps,hr_average,hr_max,hr_min"

#: Segments further apart than this belong to different nights.
SLEEP_SESSION_GAP_SECONDS = 2 * 3600


class WithingsAdapter(ProviderAdapter):
    """Withings adapter (OAuth 2.0, action-style POST API)."""

    PROVIDER = Provider.WITHINGS
    DISPLAY_NAME = "Withings"

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def get_authorization_url(self, state: str) -> str:
        # Withings separates scopes with commas
        return self._oauth2_authorize_url(
            _WITHINGS_AUTHORIZE_URL,
            client_id=self._settings.withings_client_id,
            redirect_uri=self._settings.withings_redirect_uri,
            scope=",".join(WITHINGS_SCOPES),
            state=state,
        )

    async def get_access_token(self, code: str) -> OAuthTokens:
        logger.info("Withings: exchanging authorization code")
        body = await self._post(
            "/oauth2",
            {
                "action": "requesttoken",
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self._settings.withings_redirect_uri,
                **self._client_credentials(),
            },
            operation="get_access_token",
            bucket=self.token_bucket,
        )
        return self._to_tokens(body, "get_access_token")

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        logger.info("Withings: refreshing access token")
        body = await self._post(
            "/oauth2",
            {
                "action": "requesttoken",
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                **self._client_credentials(),
            },
            operation="refresh_access_token",
            bucket=self.token_bucket,
        )
        return self._to_tokens(body, "refresh_access_token")

    async def get_user_profile(self, access_token: str) -> ProviderProfile:
        body = await self._post(
            "/user", {"action": "getuser"}, operation="get_user_profile",
            access_token=access_token,
        )
        users = body.get("users") or [{}]
        user = users[0]
        name = " ".join(p for p in (user.get("firstname"), user.get("lastname")) if p)
        return ProviderProfile(
            provider_user_id=str(user.get("id", "")),
            display_name=name or None,
        )

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    async def get_activities(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        body = await self._post(
            "/measure",
            {
                "action": "getworkouts",
                "startdate": int(start.timestamp()),
                "enddate": int(end.timestamp()),
                "data_fields": _WORKOUT_FIELDS,
            },
            operation="get_activities",
            access_token=access_token,
        )
        return list(body.get("series", []))

    async def get_sleep_data(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        """Fetch sleep state segments and group them into nightly sessions.

        Each element is ``{"id", "startdate", "enddate", "segments", "model",
        "deviceid"}``.
        """
        body = await self._post(
            "/sleep",
            {
                "action": "get",
                "startdate": int(start.timestamp()),
                "enddate": int(end.timestamp()),
                "data_fields": "hr,rr,snoring",
            },
            operation="get_sleep_data",
            access_token=access_token,
        )
        return group_sleep_segments(body.get("series", []))

    async def get_nutrition_data(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        await self._placeholder_call()
        logger.debug("Withings: no nutrition API, returning no entries")
        return []

    # ------------------------------------------------------------------
    # Private HTTP helpers
    # ------------------------------------------------------------------

    def _client_credentials(self) -> dict[str, str]:
        return {
            "client_id": self._settings.withings_client_id,
            "client_secret": self._settings.withings_client_secret,
        }

    async def _post(
        self,
        path: str,
        form: dict,
        *,
        operation: str,
        access_token: str | None = None,
        bucket: str | None = None,
    ) -> dict:
        """POST an action form and unwrap ``body``.

        Raises:
            ProviderError: On HTTP failure or a non-zero Withings status.
        """
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else None
        data = await self._request_json(
            "POST",
            f"{_WITHINGS_API_BASE}{path}",
            operation=operation,
            bucket=bucket,
            data=form,
            headers=headers,
        )
        status = safe_int(data.get("status"))
        if status != 0:
            self._rate_limiter.record_error(bucket or self.api_bucket)
            logger.error("Withings API error during %s: status=%s", operation, status)
            raise ProviderError(
                self.PROVIDER.value,
                operation,
                f"Withings status {status}: {data.get('error', 'unknown error')}",
            )
        return data.get("body") or {}

    def _to_tokens(self, body: dict, operation: str) -> OAuthTokens:
        tokens = self._oauth2_tokens(body, operation)
        if body.get("userid") is not None:
            tokens.extra["user_id"] = str(body["userid"])
        return tokens


def group_sleep_segments(series: list[dict]) -> list[dict]:
    """Group Withings sleep-state segments into sessions by time proximity."""
    sessions: list[dict] = []
    for segment in sorted(series, key=lambda s: safe_int(s.get("startdate")) or 0):
        start = safe_int(segment.get("startdate"))
        end = safe_int(segment.get("enddate"))
        if start is None or end is None:
            continue
        current = sessions[-1] if sessions else None
        if current is None or start - current["enddate"] > SLEEP_SESSION_GAP_SECONDS:
            current = {
                "id": str(segment.get("id") or start),
                "startdate": start,
                "enddate": end,
                "segments": [],
                "model": segment.get("model"),
                "deviceid": segment.get("hash_deviceid") or segment.get("deviceid"),
            }
            sessions.append(current)
        current["segments"].append(
            {"state": segment.get("state"), "startdate": start, "enddate": end}
        )
        current["enddate"] = max(current["enddate"], end)
    return sessions
