"""Garmin Connect wellness API adapter.

Uses OAuth 1.0a (not OAuth2).  Garmin requires a consumer key/secret pair
registered with the Garmin developer program, and a three-legged flow:

1. ``get_authorization_url(state)`` obtains a temporary request token and
   returns the ``oauthConfirm`` URL for it.
2. The user authorizes it at Garmin and is redirected back with a verifier.
3. ``get_access_token("request_token:::verifier")`` trades the pair for a
   permanent access token.  The request secret is remembered from step 1;
   ``request_token:::request_secret:::verifier`` passes it explicitly.

Settings:
    GARMIN_CONSUMER_KEY     OAuth 1.0a consumer key
    GARMIN_CONSUMER_SECRET  OAuth 1.0a consumer secret
    GARMIN_CALLBACK_URI     oauth_callback sent with the request token

API base: https://apis.garmin.com/wellness-api/rest/v1

Endpoints used:
    /user/profile                Profile
    /activities                  Activity summaries for a date range
    /activity/{id}               Activity detail (heart rate, steps, device)
    /sleep                       Sleep sessions with sleep levels
    /nutrition/daily/{date}      Meals logged on one day
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from urllib.parse import parse_qsl

import httpx
from authlib.integrations.httpx_client import OAuth1Auth

from healthsync.integrations.base import (
    OAuthTokens,
    Provider,
    ProviderAdapter,
    ProviderProfile,
)
from healthsync.integrations.errors import InvalidOperation, ProviderError

logger = logging.getLogger("healthsync.integrations.garmin")

_GARMIN_API_BASE = "https://apis.garmin.com/wellness-api/rest/v1"
_GARMIN_OAUTH_BASE = "https://connectapi.garmin.com/oauth-service/oauth"
GARMIN_AUTHORIZE_URL = "https://connect.garmin.com/oauthConfirm"


def split_token(access_token: str) -> tuple[str, str]:
    """Parse the combined ``token:::secret`` format stored for Garmin.

    Returns:
        Tuple of (token, secret).  A bare token yields an empty secret.
    """
    if ":::" in access_token:
        token, secret = access_token.split(":::", 1)
        return token, secret
    return access_token, ""


class GarminAdapter(ProviderAdapter):
    """Garmin Connect adapter (OAuth 1.0a, HMAC-SHA1 signed requests)."""

    PROVIDER = Provider.GARMIN
    DISPLAY_NAME = "Garmin Connect"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        # request token -> request secret, until the access-token leg runs
        self._request_secrets: dict[str, str] = {}
        if not self._settings.garmin_consumer_key or not self._settings.garmin_consumer_secret:
            logger.warning(
                "Garmin consumer key/secret not configured. "
                "Set GARMIN_CONSUMER_KEY and GARMIN_CONSUMER_SECRET environment variables."
            )

    # ------------------------------------------------------------------
    # OAuth 1.0a
    # ------------------------------------------------------------------

    def _oauth1(self, token: str | None = None, secret: str | None = None, **extra) -> OAuth1Auth:
        return OAuth1Auth(
            client_id=self._settings.garmin_consumer_key,
            client_secret=self._settings.garmin_consumer_secret,
            token=token,
            token_secret=secret,
            **extra,
        )

    async def _oauth_form(self, url: str, auth: OAuth1Auth, operation: str) -> dict[str, str]:
        response = await self._send(
            "POST", url, operation=operation, bucket=self.token_bucket, auth=auth
        )
        form = dict(parse_qsl(response.text))
        if not form.get("oauth_token") or not form.get("oauth_token_secret"):
            self._rate_limiter.record_error(self.token_bucket)
            raise ProviderError(self.PROVIDER.value, operation, "OAuth response missing token")
        return form

    async def get_request_token(self, callback_uri: str | None = None) -> tuple[str, str]:
        """First leg: obtain a temporary request token and its secret."""
        form = await self._oauth_form(
            f"{_GARMIN_OAUTH_BASE}/request_token",
            self._oauth1(redirect_uri=callback_uri or self._settings.garmin_callback_uri or None),
            "get_request_token",
        )
        return form["oauth_token"], form["oauth_token_secret"]

    async def get_authorization_url(self, state: str) -> str:
        """Obtain a request token and return Garmin's confirmation URL for it.

        OAuth 1.0a has no ``state`` parameter, so it rides on the callback URL.
        """
        callback = None
        if self._settings.garmin_callback_uri:
            callback = str(httpx.URL(self._settings.garmin_callback_uri, params={"state": state}))
        token, secret = await self.get_request_token(callback)
        self._request_secrets[token] = secret
        return str(httpx.URL(GARMIN_AUTHORIZE_URL, params={"oauth_token": token}))

    async def get_access_token(self, code: str) -> OAuthTokens:
        """Exchange an authorized request token for an access token.

        Args:
            code: ``request_token:::verifier`` or
                  ``request_token:::request_secret:::verifier``.

        Returns:
            OAuthTokens with access_token='token:::secret' and no refresh token.

        Raises:
            InvalidOperation: ``code`` is not in one of the two forms above.
        """
        parts = code.split(":::")
        if len(parts) == 2 and all(parts):
            request_token, verifier = parts
            request_secret = self._request_secrets.pop(request_token, "")
        elif len(parts) == 3 and parts[0] and parts[2]:
            request_token, request_secret, verifier = parts
            self._request_secrets.pop(request_token, None)
        else:
            raise InvalidOperation(
                "Garmin code must be 'request_token:::oauth_verifier' "
                "or 'request_token:::request_secret:::oauth_verifier'"
            )

        logger.info("Garmin: exchanging request token for access token")
        form = await self._oauth_form(
            f"{_GARMIN_OAUTH_BASE}/access_token",
            self._oauth1(request_token, request_secret, verifier=verifier),
            "get_access_token",
        )
        token, secret = form["oauth_token"], form["oauth_token_secret"]
        return OAuthTokens(
            access_token=f"{token}:::{secret}",
            refresh_token=None,  # OAuth 1.0a has no refresh tokens
            token_type="OAuth1",
            extra={"oauth_token": token},
        )

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        """OAuth 1.0a access tokens do not expire; return the token unchanged."""
        logger.debug("Garmin: OAuth1 access tokens don't expire, no refresh needed")
        return OAuthTokens(access_token=refresh_token, refresh_token=None, token_type="OAuth1")

    async def get_user_profile(self, access_token: str) -> ProviderProfile:
        data = await self._get("/user/profile", access_token, operation="get_user_profile")
        return ProviderProfile(
            provider_user_id=str(data.get("id") or data.get("userId") or ""),
            display_name=data.get("displayName"),
            extra={"first_name": data.get("firstName"), "last_name": data.get("lastName")},
        )

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    async def get_activities(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        """Fetch activity summaries, each merged with its detail record.

        A failed detail call keeps the bare summary rather than failing the
        whole window.
        """
        summaries = await self._get(
            "/activities", access_token, operation="get_activities",
            params=self._range_params(start, end),
        )
        activities: list[dict] = []
        for summary in self._as_list(summaries, "activities"):
            activity = dict(summary)
            activity_id = summary.get("activityId") or summary.get("summaryId")
            if activity_id is not None:
                try:
                    detail = await self._get(
                        f"/activity/{activity_id}", access_token, operation="get_activities"
                    )
                    activity["detail"] = detail
                except ProviderError as exc:
                    logger.warning("Garmin: detail for activity %s unavailable: %s", activity_id, exc)
            activities.append(activity)
        return activities

    async def get_sleep_data(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        data = await self._get(
            "/sleep", access_token, operation="get_sleep_data",
            params=self._range_params(start, end),
        )
        return self._as_list(data, "sleep")

    async def get_nutrition_data(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        """Fetch daily nutrition logs; days without data are skipped."""

        async def fetch_day(day: date) -> list[dict]:
            data = await self._get(
                f"/nutrition/daily/{day.isoformat()}",
                access_token,
                operation="get_nutrition_data",
            )
            if not data or not data.get("meals"):
                return []
            return [{**data, "date": data.get("date") or day.isoformat()}]

        return await self._collect_days(start, end, fetch_day, "get_nutrition_data")

    # ------------------------------------------------------------------
    # Private HTTP helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _range_params(start: datetime, end: datetime) -> dict[str, str]:
        return {"startDate": start.date().isoformat(), "endDate": end.date().isoformat()}

    @staticmethod
    def _as_list(data, key: str) -> list[dict]:
        if isinstance(data, list):
            return data
        return list((data or {}).get(key, []))

    async def _get(
        self, path: str, access_token: str, *, operation: str, params: dict | None = None
    ):
        token, secret = split_token(access_token)
        return await self._request_json(
            "GET",
            f"{_GARMIN_API_BASE}{path}",
            operation=operation,
            params=params,
            auth=self._oauth1(token, secret),
        )
