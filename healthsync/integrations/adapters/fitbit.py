"""Fitbit Web API adapter.

OAuth 2.0 authorization-code flow; the token endpoint authenticates the
client with HTTP Basic auth.

Settings:
    FITBIT_CLIENT_ID      OAuth2 client ID
    FITBIT_CLIENT_SECRET  OAuth2 client secret
    FITBIT_REDIRECT_URI   Registered callback URL

API base: https://api.fitbit.com

Endpoints used:
    /1/user/-/profile.json                      User profile
    /1/user/-/activities/list.json              Logged activities (paged)
    /1.2/user/-/sleep/date/{start}/{end}.json   Sleep logs for a range
    /1/user/-/foods/log/date/{date}.json        Food log (one day per call)
"""

from __future__ import annotations

import logging
from datetime import date, datetime

from healthsync.integrations.base import (
    OAuthTokens,
    Provider,
    ProviderAdapter,
    ProviderProfile,
    parse_datetime,
)

logger = logging.getLogger("healthsync.integrations.fitbit")

_FITBIT_API_BASE = "https://api.fitbit.com"
_FITBIT_AUTHORIZE_URL = "https://www.fitbit.com/oauth2/authorize"
_FITBIT_TOKEN_URL = "https://api.fitbit.com/oauth2/token"
FITBIT_SCOPES = ("activity", "heartrate", "sleep", "nutrition", "profile")
_ACTIVITY_PAGE_SIZE = 100


class FitbitAdapter(ProviderAdapter):
    """Fitbit Web API adapter (OAuth 2.0 bearer tokens)."""

    PROVIDER = Provider.FITBIT
    DISPLAY_NAME = "Fitbit"

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def get_authorization_url(self, state: str) -> str:
        return self._oauth2_authorize_url(
            _FITBIT_AUTHORIZE_URL,
            client_id=self._settings.fitbit_client_id,
            redirect_uri=self._settings.fitbit_redirect_uri,
            scope=" ".join(FITBIT_SCOPES),
            state=state,
        )

    async def get_access_token(self, code: str) -> OAuthTokens:
        logger.info("Fitbit: exchanging authorization code")
        data = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self._settings.fitbit_redirect_uri,
                "client_id": self._settings.fitbit_client_id,
            },
            operation="get_access_token",
        )
        return self._oauth2_tokens(data, "get_access_token")

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        logger.info("Fitbit: refreshing access token")
        data = await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            operation="refresh_access_token",
        )
        return self._oauth2_tokens(data, "refresh_access_token")

    async def get_user_profile(self, access_token: str) -> ProviderProfile:
        data = await self._get(
            "/1/user/-/profile.json", access_token, operation="get_user_profile"
        )
        user = data.get("user", {})
        return ProviderProfile(
            provider_user_id=str(user.get("encodedId", "")),
            display_name=user.get("displayName") or user.get("fullName"),
            extra={"timezone": user.get("timezone")},
        )

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    async def get_activities(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        """Fetch logged activities that started within ``[start, end]``.

        The list endpoint is paged forward from ``afterDate``; paging stops at
        the first activity past ``end`` or at a short page.
        """
        activities: list[dict] = []
        offset = 0
        while True:
            data = await self._get(
                "/1/user/-/activities/list.json",
                access_token,
                operation="get_activities",
                params={
                    "afterDate": (start.date()).isoformat(),
                    "sort": "asc",
                    "limit": _ACTIVITY_PAGE_SIZE,
                    "offset": offset,
                },
            )
            page = data.get("activities", [])
            for item in page:
                started = parse_datetime(item.get("startTime"))
                if started is not None and started > end:
                    return activities
                activities.append(item)
            if len(page) < _ACTIVITY_PAGE_SIZE:
                return activities
            offset += _ACTIVITY_PAGE_SIZE

    async def get_sleep_data(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        data = await self._get(
            f"/1.2/user/-/sleep/date/{start.date().isoformat()}/{end.date().isoformat()}.json",
            access_token,
            operation="get_sleep_data",
        )
        return list(data.get("sleep", []))

    async def get_nutrition_data(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        """Fetch food logs one day at a time.

        Each element is ``{"date": ..., "foods": [...], "summary": {...}}``.
        """

        async def fetch_day(day: date) -> list[dict]:
            data = await self._get(
                f"/1/user/-/foods/log/date/{day.isoformat()}.json",
                access_token,
                operation="get_nutrition_data",
            )
            foods = data.get("foods", [])
            if not foods and not data.get("summary", {}).get("water"):
                return []
            return [
                {
                    "date": day.isoformat(),
                    "foods": foods,
                    "summary": data.get("summary", {}),
                }
            ]

        return await self._collect_days(start, end, fetch_day, "get_nutrition_data")

    # ------------------------------------------------------------------
    # Private HTTP helpers
    # ------------------------------------------------------------------

    async def _get(
        self, path: str, access_token: str, *, operation: str, params: dict | None = None
    ) -> dict:
        return await self._request_json(
            "GET",
            f"{_FITBIT_API_BASE}{path}",
            operation=operation,
            params=params,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    async def _token_request(self, form: dict, *, operation: str) -> dict:
        return await self._request_json(
            "POST",
            _FITBIT_TOKEN_URL,
            operation=operation,
            bucket=self.token_bucket,
            data=form,
            auth=(self._settings.fitbit_client_id, self._settings.fitbit_client_secret),
        )

