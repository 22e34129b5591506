"""Shared fixtures, fakes and constants for sync engine tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable
from uuid import UUID

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from healthsync.config import Settings
from healthsync.integrations.base import (
    OAuthTokens,
    Provider,
    ProviderAdapter,
    ProviderProfile,
)
from healthsync.integrations.config_loader import SyncConfig, load_sync_config
from healthsync.integrations.rate_limiter import BucketLimit, RateLimiter
from healthsync.integrations.token_cipher import TokenCipher

# Canonical test user IDs
TEST_USER_ID = UUID("12345678-1234-5678-1234-567812345678")
OTHER_USER_ID = UUID("87654321-4321-8765-4321-876543218765")

# Default sync window used across tests (inclusive calendar days Feb 1 → Feb 3)
TEST_START = datetime(2026, 2, 1, tzinfo=timezone.utc)
TEST_END = datetime(2026, 2, 3, 23, 0, tzinfo=timezone.utc)

# Wall clock "now" for connection/orchestrator tests
TEST_NOW = datetime(2026, 2, 4, 8, 0, tzinfo=timezone.utc)

TEST_ENCRYPTION_KEY = "test-passphrase-not-a-real-key"


def generate_p256_pem() -> str:
    """Fresh P-256 private key in PEM form, for signing Apple client secrets."""
    key = ec.generate_private_key(ec.SECP256R1())
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


# ---------------------------------------------------------------------------
# Time fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Records requested sleeps and advances the paired clock by that much."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.clock = clock
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


class WallClock:
    """Settable UTC clock for expiry and staleness checks."""

    def __init__(self, now: datetime = TEST_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(fake_clock: FakeClock) -> FakeSleep:
    return FakeSleep(fake_clock)


@pytest.fixture
def wall_clock() -> WallClock:
    return WallClock()


@pytest.fixture
def limiter(fake_clock: FakeClock, fake_sleep: FakeSleep) -> RateLimiter:
    """A roomy limiter on fake time, so adapter tests never actually wait."""
    return RateLimiter(
        default_limit=BucketLimit(capacity=1000, window_seconds=60.0),
        clock=fake_clock,
        sleep=fake_sleep,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        token_encryption_key=TEST_ENCRYPTION_KEY,
        fitbit_client_id="fitbit-client",
        fitbit_client_secret="fitbit-secret",
        fitbit_redirect_uri="https://app.example.com/callback/fitbit",
        google_fit_client_id="google-client",
        google_fit_client_secret="google-secret",
        google_fit_redirect_uri="https://app.example.com/callback/google_fit",
        garmin_consumer_key="garmin-key",
        garmin_consumer_secret="garmin-secret",
        garmin_callback_uri="https://app.example.com/callback/garmin",
        withings_client_id="withings-client",
        withings_client_secret="withings-secret",
        withings_redirect_uri="https://app.example.com/callback/withings",
        apple_health_client_id="com.example.healthsync",
        apple_health_team_id="TEAM123456",
        apple_health_key_id="KEY1234567",
        apple_health_private_key=generate_p256_pem(),
        apple_health_redirect_uri="https://app.example.com/callback/apple",
    )


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(TEST_ENCRYPTION_KEY)


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the real bundled sync config for tests."""
    return load_sync_config()


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.requests: list[httpx.Request] = []

        def recording(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(recording)

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


def mock_client(
    handler: Callable[[httpx.Request], httpx.Response],
) -> tuple[httpx.AsyncClient, RecordingTransport]:
    """AsyncClient wired to ``handler``, plus the transport for request assertions."""
    transport = RecordingTransport(handler)
    return httpx.AsyncClient(transport=transport), transport


# ---------------------------------------------------------------------------
# Provider payload builders
# ---------------------------------------------------------------------------


def fitbit_activity(log_id: int, start: datetime, **overrides) -> dict:
    payload = {
        "logId": log_id,
        "activityName": "Run",
        "startTime": start.isoformat(),
        "activeDuration": 1_800_000,
        "distance": 3.1,
        "distanceUnit": "Mile",
        "calories": 320,
        "steps": 4200,
        "averageHeartRate": 148,
        "source": {"name": "Charge 6"},
    }
    payload.update(overrides)
    return payload


def fitbit_sleep(log_id: int, start: datetime, hours: int = 7) -> dict:
    """Main-sleep log whose first hour is light and second hour deep."""
    return {
        "logId": log_id,
        "isMainSleep": True,
        "startTime": start.isoformat(),
        "endTime": (start + timedelta(hours=hours)).isoformat(),
        "duration": hours * 3_600_000,
        "efficiency": 90,
        "levels": {
            "data": [
                {"dateTime": start.isoformat(), "level": "light", "seconds": 3600},
                {
                    "dateTime": (start + timedelta(hours=1)).isoformat(),
                    "level": "deep",
                    "seconds": 3600,
                },
            ]
        },
    }


def fitbit_food(meal_type_id: int, name: str, calories: float) -> dict:
    return {
        "loggedFood": {
            "name": name,
            "amount": 1,
            "unit": {"name": "serving"},
            "mealTypeId": meal_type_id,
            "calories": calories,
        },
        "nutritionalValues": {
            "calories": calories,
            "protein": 10,
            "carbs": 20,
            "fat": 5,
            "fiber": 2,
        },
    }


# ---------------------------------------------------------------------------
# Scriptable adapter
# ---------------------------------------------------------------------------


class StubAdapter(ProviderAdapter):
    """In-process adapter returning canned payloads.

    Every call consumes from the limiter like a real adapter.  Put an
    exception in ``failures`` under an operation name to make that call
    raise it; ``calls`` records operation names in call order.
    """

    DISPLAY_NAME = "Stub"

    def __init__(
        self,
        provider: Provider,
        rate_limiter: RateLimiter,
        *,
        activities: list[dict] | None = None,
        sleep: list[dict] | None = None,
        nutrition: list[dict] | None = None,
        refreshed: OAuthTokens | None = None,
    ) -> None:
        super().__init__(rate_limiter, settings=Settings(_env_file=None))
        self.PROVIDER = provider
        self.payloads = {
            "get_activities": activities or [],
            "get_sleep_data": sleep or [],
            "get_nutrition_data": nutrition or [],
        }
        self.refreshed = refreshed or OAuthTokens(
            access_token="refreshed-access",
            refresh_token="refreshed-refresh",
            expires_at=TEST_NOW + timedelta(hours=8),
        )
        self.failures: dict[str, Exception] = {}
        self.calls: list[str] = []
        self.access_tokens_seen: list[str] = []
        self.refresh_tokens_seen: list[str] = []

    async def _run(self, operation: str, result, *, bucket: str | None = None):
        self.calls.append(operation)
        bucket = bucket or self.api_bucket
        await self._rate_limiter.consume(bucket)
        failure = self.failures.get(operation)
        if failure is not None:
            self._rate_limiter.record_error(bucket)
            raise failure
        return result

    def fetch_calls(self) -> list[str]:
        return [c for c in self.calls if c in self.payloads]

    async def get_authorization_url(self, state: str) -> str:
        self.calls.append("get_authorization_url")
        return f"https://stub.example.com/authorize?state={state}"

    async def get_access_token(self, code: str) -> OAuthTokens:
        return await self._run(
            "get_access_token",
            OAuthTokens(
                access_token=f"access-for-{code}",
                refresh_token=f"refresh-for-{code}",
                expires_at=TEST_NOW + timedelta(hours=8),
                scope=["activity", "sleep"],
                extra={"user_id": "provider-user-1"},
            ),
            bucket=self.token_bucket,
        )

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        self.refresh_tokens_seen.append(refresh_token)
        return await self._run("refresh_access_token", self.refreshed, bucket=self.token_bucket)

    async def get_user_profile(self, access_token: str) -> ProviderProfile:
        return await self._run(
            "get_user_profile",
            ProviderProfile(provider_user_id="provider-user-1", display_name="Stub User"),
        )

    async def get_activities(self, access_token, start, end) -> list[dict]:
        self.access_tokens_seen.append(access_token)
        return await self._run("get_activities", list(self.payloads["get_activities"]))

    async def get_sleep_data(self, access_token, start, end) -> list[dict]:
        return await self._run("get_sleep_data", list(self.payloads["get_sleep_data"]))

    async def get_nutrition_data(self, access_token, start, end) -> list[dict]:
        return await self._run("get_nutrition_data", list(self.payloads["get_nutrition_data"]))
