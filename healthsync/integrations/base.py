"""Base classes and canonical data models for the healthsync sync engine.

Every provider adapter subclasses ProviderAdapter, and every data mapper
turns that adapter's payloads into the canonical Activity / SleepSession /
NutritionEntry / HealthDataPoint records defined here.  These types are the
single source of truth consumed by the orchestrator and the record store.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Iterator
from uuid import UUID

import httpx

from healthsync.config import Settings, get_settings
from healthsync.integrations.errors import ProviderError
from healthsync.integrations.rate_limiter import RateLimiter

logger = logging.getLogger("healthsync.integrations")


class Provider(str, Enum):
    """The external platforms a user can connect."""

    FITBIT = "fitbit"
    GOOGLE_FIT = "google_fit"
    GARMIN = "garmin"
    WITHINGS = "withings"
    APPLE_HEALTH = "apple_health"
    SAMSUNG_HEALTH = "samsung_health"

    def __str__(self) -> str:
        return self.value


#: source_provider value for records entered by hand, outside any sync.
MANUAL_ENTRY_SOURCE = "manual_entry"


class SleepStageType(str, Enum):
    AWAKE = "awake"
    LIGHT = "light"
    DEEP = "deep"
    REM = "rem"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# OAuth / Auth tokens
# ---------------------------------------------------------------------------


@dataclass
class OAuthTokens:
    """OAuth token pair returned after authentication or refresh.

    Attributes:
        access_token:  Bearer token (or ``token:::secret`` for OAuth 1.0a).
        refresh_token: Long-lived token used to obtain a new access_token.
        expires_at:    UTC datetime when the access_token expires.
        token_type:    Token type, typically "Bearer".
        scope:         Granted OAuth scopes.
        extra:         Any additional fields returned by the provider (e.g. user_id).
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scope: list[str] = field(default_factory=list)
    extra: dict = field(default_factory=dict)


@dataclass
class ProviderProfile:
    """Identity of the user on the provider side."""

    provider_user_id: str
    display_name: str | None = None
    extra: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Canonical records
# ---------------------------------------------------------------------------


@dataclass(kw_only=True)
class CanonicalRecord:
    """Fields shared by every canonical health record.

    Records are never mutated after mapping.  A resync deletes every record
    with the same (user_id, source_provider) and inserts fresh ones.

    Attributes:
        user_id:          Internal user UUID.
        source_provider:  Provider slug, or ``manual_entry``.
        start_time:       UTC start of the observation.
        end_time:         UTC end of the observation, when it spans time.
        source_device_id: Device identifier reported by the provider.
        metadata:         Free-form extras; ``original_id`` points back at
                          the provider's native identifier.
    """

    kind: ClassVar[str] = "record"

    user_id: UUID
    source_provider: str
    start_time: datetime
    end_time: datetime | None = None
    source_device_id: str | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def original_id(self) -> str | None:
        return self.metadata.get("original_id")


@dataclass(kw_only=True)
class Activity(CanonicalRecord):
    """A workout or tracked activity.  Distance is in kilometres."""

    kind: ClassVar[str] = "activity"

    activity_type: str = "other"
    duration_seconds: int = 0
    distance: float | None = None
    calories_burned: float | None = None
    steps: int | None = None
    heart_rate_avg: int | None = None
    heart_rate_max: int | None = None

    @property
    def value(self) -> float:
        return float(self.duration_seconds)

    @property
    def unit(self) -> str:
        return "s"


@dataclass
class SleepStage:
    stage: SleepStageType
    start_time: datetime
    end_time: datetime
    duration_seconds: int


@dataclass(kw_only=True)
class SleepSession(CanonicalRecord):
    """One sleep period with its ordered stages."""

    kind: ClassVar[str] = "sleep"

    duration_seconds: int = 0
    stages: list[SleepStage] = field(default_factory=list)
    quality: float | None = None

    @property
    def value(self) -> float:
        return float(self.duration_seconds)

    @property
    def unit(self) -> str:
        return "s"

    def stage_seconds(self, stage: SleepStageType) -> int:
        return sum(s.duration_seconds for s in self.stages if s.stage == stage)


@dataclass
class Macronutrients:
    """Macronutrients in grams."""

    protein: float = 0.0
    carbohydrates: float = 0.0
    fat: float = 0.0
    fiber: float = 0.0

    def __add__(self, other: Macronutrients) -> Macronutrients:
        return Macronutrients(
            protein=self.protein + other.protein,
            carbohydrates=self.carbohydrates + other.carbohydrates,
            fat=self.fat + other.fat,
            fiber=self.fiber + other.fiber,
        )


@dataclass
class FoodItem:
    name: str
    quantity: float
    unit: str
    calories: float
    macronutrients: Macronutrients = field(default_factory=Macronutrients)


@dataclass(kw_only=True)
class NutritionEntry(CanonicalRecord):
    """One meal: its foods plus aggregated totals."""

    kind: ClassVar[str] = "nutrition"

    meal_type: str = "unknown"
    foods: list[FoodItem] = field(default_factory=list)
    total_calories: float = 0.0
    total_macronutrients: Macronutrients = field(default_factory=Macronutrients)
    water_intake_ml: float | None = None

    @property
    def value(self) -> float:
        return self.total_calories

    @property
    def unit(self) -> str:
        return "kcal"


@dataclass(kw_only=True)
class HealthDataPoint(CanonicalRecord):
    """Flattened scalar observation derived from one of the records above."""

    kind: ClassVar[str] = "health_data"

    data_type: str
    data_subtype: str
    value: float
    unit: str


# ---------------------------------------------------------------------------
# Parsing helpers shared by adapters and mappers
# ---------------------------------------------------------------------------


def safe_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def safe_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (or epoch seconds) into an aware UTC datetime.

    Naive inputs are assumed to already be UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def from_epoch_millis(value: Any) -> datetime | None:
    ms = safe_int(value)
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def iter_days(start: datetime, end: datetime) -> Iterator[date]:
    """Yield every calendar day from ``start`` to ``end`` inclusive."""
    current = start.date()
    last = end.date()
    while current <= last:
        yield current
        current += timedelta(days=1)


def utc_midnight(day: date) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)


_STANDARD_TOKEN_FIELDS = frozenset(
    {"access_token", "refresh_token", "expires_in", "token_type", "scope"}
)


# ---------------------------------------------------------------------------
# Abstract base adapter
# ---------------------------------------------------------------------------


class ProviderAdapter(ABC):
    """Abstract base class for all provider adapters.

    Each adapter exposes the same capability set so the orchestrator never
    branches on provider.  Every remote call goes through :meth:`_send`,
    which consumes a rate-limiter token first and translates failures into
    :class:`ProviderError` after recording them on the limiter.

    Subclasses must implement:
        - get_authorization_url()
        - get_access_token()
        - refresh_access_token()
        - get_user_profile()
        - get_activities()
        - get_sleep_data()
        - get_nutrition_data()
    """

    #: Provider this adapter talks to.
    PROVIDER: ClassVar[Provider]

    #: Human-readable name for logging.
    DISPLAY_NAME: ClassVar[str] = "Unknown Provider"

    def __init__(
        self,
        rate_limiter: RateLimiter,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            rate_limiter: Shared limiter; every remote call consumes from it.
            settings:     Provider credentials (defaults to ``get_settings()``).
            http_client:  Optional pre-configured httpx client (useful for testing).
        """
        self._rate_limiter = rate_limiter
        self._settings = settings or get_settings()
        self._http_client = http_client

    @property
    def api_bucket(self) -> str:
        return f"{self.PROVIDER.value}-api"

    @property
    def token_bucket(self) -> str:
        return f"{self.PROVIDER.value}-token"

    # ------------------------------------------------------------------
    # Capability set
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_authorization_url(self, state: str) -> str:
        """Build the provider consent URL the user is sent to.

        Args:
            state: Opaque value echoed back on the callback (CSRF guard).

        Returns:
            Absolute URL; the provider redirects back with a code for
            :meth:`get_access_token`.
        """

    @abstractmethod
    async def get_access_token(self, code: str) -> OAuthTokens:
        """Exchange an authorization code for tokens.

        Args:
            code: Authorization code (or verifier) from the provider callback.

        Returns:
            OAuthTokens with access_token, refresh_token, and expiry.
        """

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        """Obtain a new access token from a refresh token."""

    @abstractmethod
    async def get_user_profile(self, access_token: str) -> ProviderProfile:
        """Fetch the provider-side identity of the token's owner."""

    @abstractmethod
    async def get_activities(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        """Fetch provider-native activity payloads within ``[start, end]``."""

    @abstractmethod
    async def get_sleep_data(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        """Fetch provider-native sleep payloads within ``[start, end]``."""

    @abstractmethod
    async def get_nutrition_data(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        """Fetch provider-native nutrition payloads within ``[start, end]``."""

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        bucket: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Make one rate-limited request.

        Args:
            method:    HTTP method.
            url:       Full URL.
            operation: Adapter operation name, carried on ProviderError.
            bucket:    Limiter bucket (defaults to the provider's api bucket).
            **kwargs:  Passed through to ``httpx.AsyncClient.request``.

        Returns:
            The successful (2xx) response.

        Raises:
            ProviderError: On non-2xx responses and transport failures.
        """
        bucket = bucket or self.api_bucket
        await self._rate_limiter.consume(bucket)

        try:
            if self._http_client is not None:
                response = await self._http_client.request(method, url, **kwargs)
            else:
                async with httpx.AsyncClient(
                    timeout=self._settings.http_timeout_seconds
                ) as client:
                    response = await client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._rate_limiter.record_error(bucket)
            logger.error(
                "%s API error: %s %s → %d",
                self.DISPLAY_NAME, method, url, exc.response.status_code,
            )
            raise ProviderError(
                self.PROVIDER.value, operation, exc, status=exc.response.status_code
            ) from exc
        except httpx.HTTPError as exc:
            self._rate_limiter.record_error(bucket)
            logger.error("%s transport error during %s: %s", self.DISPLAY_NAME, operation, exc)
            raise ProviderError(self.PROVIDER.value, operation, exc) from exc

        return response

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        bucket: str | None = None,
        **kwargs: Any,
    ) -> Any:
        response = await self._send(method, url, operation=operation, bucket=bucket, **kwargs)
        try:
            return response.json()
        except ValueError as exc:
            self._rate_limiter.record_error(bucket or self.api_bucket)
            raise ProviderError(self.PROVIDER.value, operation, "response body is not JSON") from exc

    @staticmethod
    def _oauth2_authorize_url(
        url: str,
        *,
        client_id: str,
        redirect_uri: str,
        scope: str,
        state: str,
        **extra: str,
    ) -> str:
        """Authorization-code consent URL with the standard query parameters."""
        params = {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": scope,
            "state": state,
            **extra,
        }
        return str(httpx.URL(url, params=params))

    async def _placeholder_call(self, bucket: str | None = None) -> None:
        """Consume a token for a call that is answered locally."""
        await self._rate_limiter.consume(bucket or self.api_bucket)

    @staticmethod
    def _expires_at(expires_in: Any, now: datetime | None = None) -> datetime:
        seconds = safe_int(expires_in) or 3600
        return (now or datetime.now(timezone.utc)).replace(microsecond=0) + timedelta(
            seconds=seconds
        )

    def _oauth2_tokens(self, data: dict, operation: str) -> OAuthTokens:
        """Build OAuthTokens from a standard OAuth 2.0 token response body."""
        access_token = data.get("access_token")
        if not access_token:
            raise ProviderError(
                self.PROVIDER.value, operation, "token response has no access_token"
            )
        scope = data.get("scope") or ""
        return OAuthTokens(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_at=self._expires_at(data.get("expires_in")),
            token_type=data.get("token_type") or "Bearer",
            scope=scope.split() if isinstance(scope, str) else list(scope),
            extra={k: v for k, v in data.items() if k not in _STANDARD_TOKEN_FIELDS},
        )

    async def _collect_days(
        self,
        start: datetime,
        end: datetime,
        fetch_day: Callable[[date], Awaitable[list[dict]]],
        operation: str,
    ) -> list[dict]:
        """Run ``fetch_day`` for each day in the window and concatenate results.

        A day the provider answers with a client error (typically "no data
        for this date") is logged and skipped.  Auth failures, throttling,
        server errors and transport errors still propagate.
        """
        results: list[dict] = []
        for day in iter_days(start, end):
            try:
                results.extend(await fetch_day(day))
            except ProviderError as exc:
                if not is_missing_data(exc):
                    raise
                logger.warning(
                    "%s: %s for %s skipped: %s", self.DISPLAY_NAME, operation, day, exc
                )
        return results


def is_missing_data(exc: ProviderError) -> bool:
    """True when the provider answered but had nothing for the request."""
    return exc.status is not None and 400 <= exc.status < 500 and exc.status not in (
        401,
        403,
        429,
    )
