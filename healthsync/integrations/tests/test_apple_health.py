"""Tests for the Apple Health adapter (JWT client secret, placeholder reads) and mapper."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import jwt as pyjwt
import pytest
from cryptography.hazmat.primitives import serialization

from healthsync.config import Settings
from healthsync.integrations.adapters.apple_health import (
    CLIENT_SECRET_LIFETIME,
    AppleHealthAdapter,
)
from healthsync.integrations.base import SleepStageType
from healthsync.integrations.errors import ProviderError
from healthsync.integrations.mappers.apple_health import AppleHealthMapper
from healthsync.integrations.rate_limiter import RateLimiter
from healthsync.integrations.tests.conftest import (
    TEST_END,
    TEST_START,
    TEST_USER_ID,
    mock_client,
)


def public_key_of(settings: Settings):
    private = serialization.load_pem_private_key(
        settings.apple_health_private_key.encode("ascii"), password=None
    )
    return private.public_key()


def token_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "access_token": "apple-access",
            "refresh_token": "apple-refresh",
            "expires_in": 3600,
            "token_type": "Bearer",
            "id_token": "header.payload.sig",
        },
    )


class TestClientSecret:
    def test_signed_es256_with_kid(self, limiter: RateLimiter, settings: Settings) -> None:
        adapter = AppleHealthAdapter(limiter, settings=settings)
        issued = datetime(2026, 2, 1, tzinfo=timezone.utc)
        secret = adapter.build_client_secret(now=issued)

        header = pyjwt.get_unverified_header(secret)
        assert header["alg"] == "ES256"
        assert header["kid"] == "KEY1234567"

        claims = pyjwt.decode(
            secret,
            public_key_of(settings),
            algorithms=["ES256"],
            audience="https://appleid.apple.com",
            options={"verify_exp": False},
        )
        assert claims["iss"] == "TEAM123456"
        assert claims["sub"] == "com.example.healthsync"
        assert claims["exp"] - claims["iat"] == int(CLIENT_SECRET_LIFETIME.total_seconds())

    @pytest.mark.asyncio
    async def test_token_exchange_posts_assertion(
        self, limiter: RateLimiter, settings: Settings
    ) -> None:
        client, transport = mock_client(token_handler)
        adapter = AppleHealthAdapter(limiter, settings=settings, http_client=client)

        tokens = await adapter.get_access_token("apple-code")

        request = transport.requests[0]
        assert str(request.url) == "https://appleid.apple.com/auth/token"
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        assert form["grant_type"] == "authorization_code"
        assert form["client_id"] == "com.example.healthsync"
        assert pyjwt.get_unverified_header(form["client_secret"])["kid"] == "KEY1234567"
        assert tokens.access_token == "apple-access"
        assert tokens.extra == {"id_token": "header.payload.sig"}
        assert limiter.available_tokens("apple_health-token") == pytest.approx(999)

    @pytest.mark.asyncio
    async def test_unsignable_key_is_provider_error_without_request(
        self, limiter: RateLimiter, settings: Settings
    ) -> None:
        client, transport = mock_client(token_handler)
        broken = settings.model_copy(update={"apple_health_private_key": "not a pem"})
        adapter = AppleHealthAdapter(limiter, settings=broken, http_client=client)

        with pytest.raises(ProviderError, match="client secret could not be signed"):
            await adapter.refresh_access_token("apple-refresh")

        assert transport.requests == []
        assert limiter.error_count("apple_health-token") == 1

    @pytest.mark.asyncio
    async def test_authorization_url(self, limiter: RateLimiter, settings: Settings) -> None:
        adapter = AppleHealthAdapter(limiter, settings=settings)
        url = httpx.URL(await adapter.get_authorization_url("state-apple"))

        assert str(url).startswith("https://appleid.apple.com/auth/authorize?")
        assert url.params["client_id"] == "com.example.healthsync"
        assert url.params["redirect_uri"] == "https://app.example.com/callback/apple"
        assert url.params["response_type"] == "code"
        assert url.params["response_mode"] == "form_post"
        assert url.params["state"] == "state-apple"


class TestPlaceholderReads:
    @pytest.mark.asyncio
    async def test_reads_consume_the_api_bucket(
        self, limiter: RateLimiter, settings: Settings
    ) -> None:
        adapter = AppleHealthAdapter(limiter, settings=settings)

        await adapter.get_user_profile("token")
        await adapter.get_activities("token", TEST_START, TEST_END)
        await adapter.get_sleep_data("token", TEST_START, TEST_END)
        await adapter.get_nutrition_data("token", TEST_START, TEST_END)

        assert limiter.available_tokens("apple_health-api") == pytest.approx(996)

    @pytest.mark.asyncio
    async def test_same_window_same_payloads(
        self, limiter: RateLimiter, settings: Settings
    ) -> None:
        adapter = AppleHealthAdapter(limiter, settings=settings)
        first = await adapter.get_sleep_data("token", TEST_START, TEST_END)
        second = await adapter.get_sleep_data("token", TEST_START, TEST_END)
        assert first == second


class TestAppleHealthMapper:
    @pytest.mark.asyncio
    async def test_maps_placeholder_payloads(
        self, limiter: RateLimiter, settings: Settings
    ) -> None:
        adapter = AppleHealthAdapter(limiter, settings=settings)
        batch = AppleHealthMapper().map_all(
            TEST_USER_ID,
            await adapter.get_activities("token", TEST_START, TEST_END),
            await adapter.get_sleep_data("token", TEST_START, TEST_END),
            await adapter.get_nutrition_data("token", TEST_START, TEST_END),
        )

        [activity] = batch.activities
        assert activity.activity_type == "running"
        assert activity.distance == pytest.approx(5.2)
        assert activity.calories_burned == 300
        assert activity.source_device_id == "iPhone"

        [session] = batch.sleep
        assert session.duration_seconds == 8 * 3600 - 1000
        assert session.stage_seconds(SleepStageType.DEEP) == 3600
        assert session.stage_seconds(SleepStageType.REM) == 3600

        [meal] = batch.nutrition
        assert meal.meal_type == "breakfast"
        assert meal.total_calories == 255
        assert meal.total_macronutrients.carbohydrates == pytest.approx(54)
        assert batch.skipped == 0

    def test_core_sleep_is_light(self) -> None:
        bed = TEST_START
        raw = {
            "id": "s1",
            "startDate": bed.isoformat(),
            "endDate": (bed + timedelta(hours=1)).isoformat(),
            "sleepStages": [
                {
                    "stage": "Core",
                    "startDate": bed.isoformat(),
                    "endDate": (bed + timedelta(hours=1)).isoformat(),
                }
            ],
        }
        [session] = AppleHealthMapper().map_sleep_data([raw], TEST_USER_ID)
        assert session.stages[0].stage is SleepStageType.LIGHT
        assert session.stages[0].duration_seconds == 3600

    def test_activity_without_dates_is_skipped(self) -> None:
        assert AppleHealthMapper().map_activities([{"id": "x"}], TEST_USER_ID) == []
