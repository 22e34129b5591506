"""Google Fit REST API adapter.

OAuth 2.0 authorization-code flow against Google's token endpoint.

Settings:
    GOOGLE_FIT_CLIENT_ID      OAuth2 client ID
    GOOGLE_FIT_CLIENT_SECRET  OAuth2 client secret
    GOOGLE_FIT_REDIRECT_URI   Registered callback URL

API base: https://www.googleapis.com/fitness/v1/users/me

Google Fit has no per-workout summary: a workout is a *session*, and its
calories, steps and distance are summed from the merged datasets over the
session's time range.  Dataset ids are ``{startNanos}-{endNanos}``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from healthsync.integrations.base import (
    OAuthTokens,
    Provider,
    ProviderAdapter,
    ProviderProfile,
    is_missing_data,
    safe_int,
)
from healthsync.integrations.errors import ProviderError

logger = logging.getLogger("healthsync.integrations.google_fit")

_GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"
_FITNESS_API_BASE = "https://www.googleapis.com/fitness/v1/users/me"

GOOGLE_FIT_SCOPES = (
    "https://www.googleapis.com/auth/fitness.activity.read",
    "https://www.googleapis.com/auth/fitness.body.read",
    "https://www.googleapis.com/auth/fitness.sleep.read",
    "https://www.googleapis.com/auth/fitness.nutrition.read",
    "openid",
    "profile",
)

SLEEP_ACTIVITY_TYPE = 72

_SESSION_DATASETS: dict[str, str] = {
    "calories": "derived:com.google.calories.expended:com.google.android.gms:merge_calories_expended",
    "steps": "derived:com.google.step_count.delta:com.google.android.gms:merge_step_deltas",
    "distance": "derived:com.google.distance.delta:com.google.android.gms:merge_distance_delta",
}

_SLEEP_SEGMENT_DATASET = "derived:com.google.sleep.segment:com.google.android.gms:merged"

_NUTRIENT_DATASETS: dict[str, str] = {
    "calories": "derived:com.google.nutrition.summary:com.google.android.gms:merged",
    "protein": "derived:com.google.protein.summary:com.google.android.gms:merged",
    "fat": "derived:com.google.fat.summary:com.google.android.gms:merged",
    "carbohydrates": "derived:com.google.carbs.summary:com.google.android.gms:merged",
    "fiber": "derived:com.google.dietary_fiber.summary:com.google.android.gms:merged",
}


def _rfc3339(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _nanos(value: datetime | int) -> int:
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000) * 1_000_000
    return int(value) * 1_000_000


def _point_value(point: dict) -> float:
    """Sum the numeric value slots of one dataset point."""
    total = 0.0
    for slot in point.get("value", []):
        if "fpVal" in slot:
            total += float(slot["fpVal"])
        elif "intVal" in slot:
            total += float(slot["intVal"])
    return total


class GoogleFitAdapter(ProviderAdapter):
    """Google Fit adapter (OAuth 2.0 bearer tokens)."""

    PROVIDER = Provider.GOOGLE_FIT
    DISPLAY_NAME = "Google Fit"

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def get_authorization_url(self, state: str) -> str:
        """Consent URL; offline access with forced consent so a refresh token is issued."""
        return self._oauth2_authorize_url(
            _GOOGLE_AUTHORIZE_URL,
            client_id=self._settings.google_fit_client_id,
            redirect_uri=self._settings.google_fit_redirect_uri,
            scope=" ".join(GOOGLE_FIT_SCOPES),
            state=state,
            access_type="offline",
            prompt="consent",
        )

    async def get_access_token(self, code: str) -> OAuthTokens:
        logger.info("Google Fit: exchanging authorization code")
        data = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self._settings.google_fit_redirect_uri,
            },
            operation="get_access_token",
        )
        return self._oauth2_tokens(data, "get_access_token")

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        logger.info("Google Fit: refreshing access token")
        data = await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            operation="refresh_access_token",
        )
        return self._oauth2_tokens(data, "refresh_access_token")

    async def get_user_profile(self, access_token: str) -> ProviderProfile:
        data = await self._request_json(
            "GET",
            _GOOGLE_USERINFO_URL,
            operation="get_user_profile",
            headers=self._auth_headers(access_token),
        )
        return ProviderProfile(
            provider_user_id=str(data.get("sub", "")),
            display_name=data.get("name"),
            extra={"email": data.get("email")},
        )

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    async def get_activities(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        """Fetch workout sessions, each enriched with calories/steps/distance sums."""
        sessions = await self._sessions(access_token, start, end, operation="get_activities")
        activities: list[dict] = []
        for session in sessions:
            activity_type = safe_int(session.get("activityType"))
            if activity_type is None or activity_type == SLEEP_ACTIVITY_TYPE:
                continue
            enriched = dict(session)
            for field_name, data_source in _SESSION_DATASETS.items():
                points = await self._dataset_points(
                    access_token,
                    data_source,
                    session.get("startTimeMillis"),
                    session.get("endTimeMillis"),
                    operation="get_activities",
                )
                enriched[field_name] = (
                    sum(_point_value(p) for p in points) if points is not None else None
                )
            activities.append(enriched)
        return activities

    async def get_sleep_data(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        """Fetch sleep sessions with their raw sleep-segment points attached."""
        sessions = await self._sessions(
            access_token,
            start,
            end,
            operation="get_sleep_data",
            activity_type=SLEEP_ACTIVITY_TYPE,
        )
        sleep: list[dict] = []
        for session in sessions:
            points = await self._dataset_points(
                access_token,
                _SLEEP_SEGMENT_DATASET,
                session.get("startTimeMillis"),
                session.get("endTimeMillis"),
                operation="get_sleep_data",
            )
            sleep.append({**session, "segments": points or []})
        return sleep

    async def get_nutrition_data(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        """Read every nutrient summary dataset and merge the points per day.

        Each element is ``{"date", "startTimeMillis", "endTimeMillis",
        "nutrients": {...}, "application"}``.
        """
        by_day: dict[str, dict] = {}
        for nutrient, data_source in _NUTRIENT_DATASETS.items():
            points = await self._dataset_points(
                access_token, data_source, start, end, operation="get_nutrition_data"
            )
            for point in points or []:
                started_ms = safe_int(point.get("startTimeNanos", 0)) // 1_000_000
                ended_ms = safe_int(point.get("endTimeNanos", 0)) // 1_000_000
                day_key = datetime.fromtimestamp(started_ms / 1000, tz=timezone.utc).date().isoformat()
                day = by_day.setdefault(
                    day_key,
                    {
                        "date": day_key,
                        "startTimeMillis": started_ms,
                        "endTimeMillis": ended_ms,
                        "nutrients": {name: 0.0 for name in _NUTRIENT_DATASETS},
                        "application": None,
                    },
                )
                day["startTimeMillis"] = min(day["startTimeMillis"], started_ms)
                day["endTimeMillis"] = max(day["endTimeMillis"], ended_ms)
                day["nutrients"][nutrient] += _point_value(point)
                origin = point.get("originDataSourceId")
                if origin:
                    day["application"] = origin.split(":")[0]
        return [by_day[key] for key in sorted(by_day)]

    # ------------------------------------------------------------------
    # Private HTTP helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _auth_headers(access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    async def _token_request(self, form: dict, *, operation: str) -> dict:
        return await self._request_json(
            "POST",
            _GOOGLE_TOKEN_URL,
            operation=operation,
            bucket=self.token_bucket,
            data={
                **form,
                "client_id": self._settings.google_fit_client_id,
                "client_secret": self._settings.google_fit_client_secret,
            },
        )

    async def _sessions(
        self,
        access_token: str,
        start: datetime,
        end: datetime,
        *,
        operation: str,
        activity_type: int | None = None,
    ) -> list[dict]:
        params: dict = {"startTime": _rfc3339(start), "endTime": _rfc3339(end)}
        if activity_type is not None:
            params["activityType"] = activity_type
        data = await self._request_json(
            "GET",
            f"{_FITNESS_API_BASE}/sessions",
            operation=operation,
            params=params,
            headers=self._auth_headers(access_token),
        )
        return list(data.get("session", []))

    async def _dataset_points(
        self,
        access_token: str,
        data_source: str,
        start: datetime | int | str | None,
        end: datetime | int | str | None,
        *,
        operation: str,
    ) -> list[dict] | None:
        """Return the points of one dataset, or None if the provider has none.

        ``start``/``end`` are datetimes or epoch milliseconds.
        """
        if start is None or end is None:
            return None
        start_ns = _nanos(start if isinstance(start, datetime) else int(start))
        end_ns = _nanos(end if isinstance(end, datetime) else int(end))
        try:
            data = await self._request_json(
                "GET",
                f"{_FITNESS_API_BASE}/dataSources/{data_source}/datasets/{start_ns}-{end_ns}",
                operation=operation,
                headers=self._auth_headers(access_token),
            )
        except ProviderError as exc:
            if not is_missing_data(exc):
                raise
            logger.warning("Google Fit: dataset %s unavailable: %s", data_source, exc)
            return None
        return list(data.get("point", []))
