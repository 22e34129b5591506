"""Tests for SyncOrchestrator: full replace, isolation, token lifecycle."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from healthsync.config import Settings
from healthsync.integrations.adapters.apple_health import AppleHealthAdapter
from healthsync.integrations.adapters.samsung_health import SamsungHealthAdapter
from healthsync.integrations.base import OAuthTokens, Provider
from healthsync.integrations.config_loader import SyncConfig
from healthsync.integrations.connections import (
    ConnectionManager,
    ConnectionStatus,
    InMemoryConnectionStore,
)
from healthsync.integrations.errors import (
    AuthExpired,
    InvalidOperation,
    InvalidState,
    NotFound,
    ProviderError,
)
from healthsync.integrations.mappers import build_mappers
from healthsync.integrations.rate_limiter import RateLimiter
from healthsync.integrations.storage import InMemoryHealthStore
from healthsync.integrations.sync.orchestrator import SyncOrchestrator
from healthsync.integrations.tests.conftest import (
    OTHER_USER_ID,
    TEST_END,
    TEST_NOW,
    TEST_START,
    TEST_USER_ID,
    StubAdapter,
    WallClock,
    fitbit_activity,
    fitbit_food,
    fitbit_sleep,
    mock_client,
)
from healthsync.integrations.token_cipher import TokenCipher
from healthsync.main import create_sync_engine

FRESH_TOKENS = OAuthTokens(
    access_token="fitbit-access",
    refresh_token="fitbit-refresh",
    expires_at=TEST_NOW + timedelta(hours=1),
)


@dataclass
class Harness:
    fitbit: StubAdapter
    manager: ConnectionManager
    store: InMemoryHealthStore
    orchestrator: SyncOrchestrator
    limiter: RateLimiter
    clock: WallClock


@pytest.fixture
def harness(
    limiter: RateLimiter, cipher: TokenCipher, settings: Settings, wall_clock: WallClock
) -> Harness:
    fitbit = StubAdapter(
        Provider.FITBIT,
        limiter,
        activities=[
            fitbit_activity(1, TEST_START + timedelta(hours=8)),
            fitbit_activity(2, TEST_START + timedelta(days=1, hours=8)),
        ],
        sleep=[fitbit_sleep(10, TEST_START - timedelta(hours=1))],
        nutrition=[
            {
                "date": "2026-02-01",
                "foods": [fitbit_food(1, "Oats", 150), fitbit_food(5, "Pasta", 600)],
                "summary": {},
            }
        ],
    )
    adapters = {
        Provider.FITBIT: fitbit,
        Provider.SAMSUNG_HEALTH: SamsungHealthAdapter(limiter, settings=settings),
    }
    manager = ConnectionManager(InMemoryConnectionStore(), cipher, adapters, clock=wall_clock)
    store = InMemoryHealthStore()
    orchestrator = SyncOrchestrator(
        manager, adapters, build_mappers(), store, limiter, clock=wall_clock
    )
    return Harness(fitbit, manager, store, orchestrator, limiter, wall_clock)


def snapshot(records) -> list[tuple]:
    return sorted(
        (r.kind, r.source_provider, r.original_id, getattr(r, "data_subtype", ""))
        for r in records
    )


class TestSyncOne:
    @pytest.mark.asyncio
    async def test_counts_and_last_synced(self, harness: Harness) -> None:
        await harness.manager.create(TEST_USER_ID, Provider.FITBIT, FRESH_TOKENS)

        counts = await harness.orchestrator.sync_one(
            TEST_USER_ID, Provider.FITBIT, TEST_START, TEST_END
        )

        assert counts.activities_count == 2
        assert counts.sleep_count == 1
        assert counts.nutrition_count == 2
        # 4 per activity, duration/efficiency/deep for sleep, 5 per meal
        assert counts.health_data_count == 21
        assert counts.skipped_count == 0
        assert len(harness.store) == counts.total

        conn = await harness.manager.get_for_user(TEST_USER_ID, Provider.FITBIT)
        assert conn.last_synced_at == TEST_NOW
        assert harness.fitbit.access_tokens_seen == ["fitbit-access"]

    @pytest.mark.asyncio
    async def test_resync_is_idempotent(self, harness: Harness) -> None:
        await harness.manager.create(TEST_USER_ID, Provider.FITBIT, FRESH_TOKENS)

        await harness.orchestrator.sync_one(TEST_USER_ID, Provider.FITBIT, TEST_START, TEST_END)
        first = snapshot(await harness.store.find_by_user(TEST_USER_ID))
        await harness.orchestrator.sync_one(TEST_USER_ID, Provider.FITBIT, TEST_START, TEST_END)
        second = snapshot(await harness.store.find_by_user(TEST_USER_ID))

        assert first == second
        assert len(harness.store) == len(first)

    @pytest.mark.asyncio
    async def test_resync_replaces_removed_records(self, harness: Harness) -> None:
        await harness.manager.create(TEST_USER_ID, Provider.FITBIT, FRESH_TOKENS)
        await harness.orchestrator.sync_one(TEST_USER_ID, Provider.FITBIT, TEST_START, TEST_END)

        harness.fitbit.payloads["get_activities"] = harness.fitbit.payloads["get_activities"][:1]
        await harness.orchestrator.sync_one(TEST_USER_ID, Provider.FITBIT, TEST_START, TEST_END)

        activities = await harness.store.find_by_user(TEST_USER_ID, kind="activity")
        assert [a.original_id for a in activities] == ["1"]

    @pytest.mark.asyncio
    async def test_other_sources_and_users_untouched(self, harness: Harness) -> None:
        await harness.manager.create(TEST_USER_ID, Provider.FITBIT, FRESH_TOKENS)
        await harness.manager.create(TEST_USER_ID, Provider.SAMSUNG_HEALTH, FRESH_TOKENS)
        await harness.manager.create(OTHER_USER_ID, Provider.FITBIT, FRESH_TOKENS)

        await harness.orchestrator.sync_one(TEST_USER_ID, Provider.SAMSUNG_HEALTH, TEST_START, TEST_END)
        await harness.orchestrator.sync_one(OTHER_USER_ID, Provider.FITBIT, TEST_START, TEST_END)
        samsung_before = snapshot(await harness.store.find_by_user(TEST_USER_ID, source="samsung_health"))
        other_before = snapshot(await harness.store.find_by_user(OTHER_USER_ID))

        await harness.orchestrator.sync_one(TEST_USER_ID, Provider.FITBIT, TEST_START, TEST_END)

        assert snapshot(await harness.store.find_by_user(TEST_USER_ID, source="samsung_health")) == samsung_before
        assert snapshot(await harness.store.find_by_user(OTHER_USER_ID)) == other_before

    @pytest.mark.asyncio
    async def test_fetch_failure_keeps_previous_records(self, harness: Harness) -> None:
        conn = await harness.manager.create(TEST_USER_ID, Provider.FITBIT, FRESH_TOKENS)
        await harness.orchestrator.sync_one(TEST_USER_ID, Provider.FITBIT, TEST_START, TEST_END)
        before = snapshot(await harness.store.find_by_user(TEST_USER_ID))

        harness.clock.now = TEST_NOW + timedelta(minutes=10)
        harness.fitbit.failures["get_nutrition_data"] = ProviderError(
            "fitbit", "get_nutrition_data", "server exploded", status=500
        )
        with pytest.raises(ProviderError):
            await harness.orchestrator.sync_one(TEST_USER_ID, Provider.FITBIT, TEST_START, TEST_END)

        assert snapshot(await harness.store.find_by_user(TEST_USER_ID)) == before
        assert (await harness.manager.get(conn.id)).last_synced_at == TEST_NOW
        # One from the adapter, one from the orchestrator
        assert harness.limiter.error_count("fitbit-api") == 2

    @pytest.mark.asyncio
    async def test_success_resets_error_count(self, harness: Harness) -> None:
        await harness.manager.create(TEST_USER_ID, Provider.FITBIT, FRESH_TOKENS)
        harness.limiter.record_error("fitbit-api")

        await harness.orchestrator.sync_one(TEST_USER_ID, Provider.FITBIT, TEST_START, TEST_END)
        assert harness.limiter.error_count("fitbit-api") == 0

    @pytest.mark.asyncio
    async def test_missing_connection(self, harness: Harness) -> None:
        with pytest.raises(NotFound):
            await harness.orchestrator.sync_one(TEST_USER_ID, Provider.FITBIT)

    @pytest.mark.asyncio
    async def test_inactive_connection(self, harness: Harness) -> None:
        conn = await harness.manager.create(TEST_USER_ID, Provider.FITBIT, FRESH_TOKENS)
        await harness.manager.mark_expired(conn.id)
        with pytest.raises(InvalidState):
            await harness.orchestrator.sync_one(TEST_USER_ID, Provider.FITBIT)
        assert harness.fitbit.calls == []

    @pytest.mark.asyncio
    async def test_unconfigured_provider(self, harness: Harness) -> None:
        await harness.manager.create(TEST_USER_ID, Provider.WITHINGS, FRESH_TOKENS)
        with pytest.raises(NotFound):
            await harness.orchestrator.sync_one(TEST_USER_ID, Provider.WITHINGS)

    @pytest.mark.asyncio
    async def test_inverted_window(self, harness: Harness) -> None:
        await harness.manager.create(TEST_USER_ID, Provider.FITBIT, FRESH_TOKENS)
        with pytest.raises(InvalidOperation):
            await harness.orchestrator.sync_one(TEST_USER_ID, Provider.FITBIT, TEST_END, TEST_START)

    @pytest.mark.asyncio
    async def test_default_window_ends_now(self, harness: Harness) -> None:
        await harness.manager.create(TEST_USER_ID, Provider.SAMSUNG_HEALTH, FRESH_TOKENS)
        await harness.orchestrator.sync_one(TEST_USER_ID, Provider.SAMSUNG_HEALTH)

        # Samsung placeholders anchor on the window start: now minus 30 days
        [activity] = await harness.store.find_by_user(TEST_USER_ID, kind="activity")
        expected_day = (TEST_NOW - timedelta(days=30)).date()
        assert activity.start_time.date() == expected_day


class TestTokenLifecycle:
    @pytest.mark.asyncio
    async def test_expired_token_refreshed_exactly_once(self, harness: Harness) -> None:
        await harness.manager.create(
            TEST_USER_ID,
            Provider.FITBIT,
            OAuthTokens(
                access_token="stale-access",
                refresh_token="fitbit-refresh",
                expires_at=TEST_NOW - timedelta(minutes=1),
            ),
        )

        await harness.orchestrator.sync_one(TEST_USER_ID, Provider.FITBIT, TEST_START, TEST_END)
        await harness.orchestrator.sync_one(TEST_USER_ID, Provider.FITBIT, TEST_START, TEST_END)

        assert harness.fitbit.calls.count("refresh_access_token") == 1
        assert harness.fitbit.refresh_tokens_seen == ["fitbit-refresh"]
        assert harness.fitbit.access_tokens_seen == ["refreshed-access", "refreshed-access"]

    @pytest.mark.asyncio
    async def test_refresh_failure_is_auth_expired_without_fetching(
        self, harness: Harness
    ) -> None:
        await harness.manager.create(
            TEST_USER_ID,
            Provider.FITBIT,
            OAuthTokens(
                access_token="stale-access",
                refresh_token="revoked-refresh",
                expires_at=TEST_NOW - timedelta(minutes=1),
            ),
        )
        harness.fitbit.failures["refresh_access_token"] = ProviderError(
            "fitbit", "refresh_access_token", "invalid_grant", status=400
        )

        with pytest.raises(AuthExpired) as excinfo:
            await harness.orchestrator.sync_one(TEST_USER_ID, Provider.FITBIT, TEST_START, TEST_END)

        assert isinstance(excinfo.value.__cause__, ProviderError)
        assert harness.fitbit.fetch_calls() == []
        assert len(harness.store) == 0
        conn = await harness.manager.get_for_user(TEST_USER_ID, Provider.FITBIT)
        assert conn.status is ConnectionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_unsignable_apple_secret_is_auth_expired(
        self, limiter: RateLimiter, cipher: TokenCipher, wall_clock: WallClock
    ) -> None:
        client, transport = mock_client(lambda request: httpx.Response(200, json={}))
        apple = AppleHealthAdapter(
            limiter,
            settings=Settings(_env_file=None, token_encryption_key="k"),
            http_client=client,
        )
        adapters = {Provider.APPLE_HEALTH: apple}
        manager = ConnectionManager(InMemoryConnectionStore(), cipher, adapters, clock=wall_clock)
        store = InMemoryHealthStore()
        orchestrator = SyncOrchestrator(
            manager, adapters, build_mappers(), store, limiter, clock=wall_clock
        )
        await manager.create(
            TEST_USER_ID,
            Provider.APPLE_HEALTH,
            OAuthTokens(
                access_token="apple-access",
                refresh_token="apple-refresh",
                expires_at=TEST_NOW - timedelta(hours=1),
            ),
        )

        with pytest.raises(AuthExpired) as excinfo:
            await orchestrator.sync_one(
                TEST_USER_ID, Provider.APPLE_HEALTH, TEST_START, TEST_END
            )

        assert isinstance(excinfo.value.__cause__, ProviderError)
        assert transport.requests == []
        assert limiter.available_tokens("apple_health-api") == pytest.approx(1000)
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token_is_auth_expired(
        self, harness: Harness
    ) -> None:
        await harness.manager.create(
            TEST_USER_ID,
            Provider.FITBIT,
            OAuthTokens(access_token="stale", expires_at=TEST_NOW - timedelta(minutes=1)),
        )
        with pytest.raises(AuthExpired):
            await harness.orchestrator.sync_one(TEST_USER_ID, Provider.FITBIT, TEST_START, TEST_END)

    @pytest.mark.asyncio
    async def test_undecryptable_token_is_auth_expired(self, harness: Harness) -> None:
        conn = await harness.manager.create(TEST_USER_ID, Provider.FITBIT, FRESH_TOKENS)
        conn.access_token = "garbage"

        with pytest.raises(AuthExpired):
            await harness.orchestrator.sync_one(TEST_USER_ID, Provider.FITBIT, TEST_START, TEST_END)
        assert harness.fitbit.calls == []


class TestSyncAll:
    @pytest.mark.asyncio
    async def test_failures_are_isolated(self, harness: Harness) -> None:
        await harness.manager.create(TEST_USER_ID, Provider.FITBIT, FRESH_TOKENS)
        await harness.manager.create(TEST_USER_ID, Provider.SAMSUNG_HEALTH, FRESH_TOKENS)
        harness.fitbit.failures["get_sleep_data"] = ProviderError(
            "fitbit", "get_sleep_data", "timed out"
        )

        results = await harness.orchestrator.sync_all(TEST_USER_ID, TEST_START, TEST_END)

        assert set(results) == {"fitbit", "samsung_health"}
        assert results["fitbit"].success is False
        assert "timed out" in results["fitbit"].error
        assert results["fitbit"].counts is None
        assert results["samsung_health"].success is True
        assert results["samsung_health"].counts.activities_count == 1
        assert await harness.store.find_by_user(TEST_USER_ID, source="fitbit") == []

    @pytest.mark.asyncio
    async def test_only_active_connections(self, harness: Harness) -> None:
        conn = await harness.manager.create(TEST_USER_ID, Provider.FITBIT, FRESH_TOKENS)
        await harness.manager.create(TEST_USER_ID, Provider.SAMSUNG_HEALTH, FRESH_TOKENS)
        await harness.manager.revoke(conn.id)

        results = await harness.orchestrator.sync_all(TEST_USER_ID, TEST_START, TEST_END)
        assert list(results) == ["samsung_health"]

    @pytest.mark.asyncio
    async def test_no_active_connections(self, harness: Harness) -> None:
        with pytest.raises(NotFound):
            await harness.orchestrator.sync_all(TEST_USER_ID)


class TestSyncStatus:
    @pytest.mark.asyncio
    async def test_lists_every_connection(self, harness: Harness) -> None:
        fitbit = await harness.manager.create(TEST_USER_ID, Provider.FITBIT, FRESH_TOKENS)
        samsung = await harness.manager.create(TEST_USER_ID, Provider.SAMSUNG_HEALTH, FRESH_TOKENS)
        await harness.manager.mark_expired(samsung.id)
        await harness.orchestrator.sync_one(TEST_USER_ID, Provider.FITBIT, TEST_START, TEST_END)

        statuses = {s.provider: s for s in await harness.orchestrator.get_sync_status(TEST_USER_ID)}

        assert statuses[Provider.FITBIT].connection_id == fitbit.id
        assert statuses[Provider.FITBIT].last_synced_at == TEST_NOW
        assert statuses[Provider.FITBIT].token_expires_at == TEST_NOW + timedelta(hours=1)
        assert statuses[Provider.SAMSUNG_HEALTH].status is ConnectionStatus.EXPIRED
        assert statuses[Provider.SAMSUNG_HEALTH].last_synced_at is None

    @pytest.mark.asyncio
    async def test_unknown_user_is_empty(self, harness: Harness) -> None:
        assert await harness.orchestrator.get_sync_status(OTHER_USER_ID) == []


# ---------------------------------------------------------------------------
# Fitbit succeeds, Garmin times out: end to end through the real adapters
# ---------------------------------------------------------------------------

SCENARIO_START = datetime(2026, 2, 1, tzinfo=timezone.utc)
SCENARIO_END = datetime(2026, 2, 10, 23, 0, tzinfo=timezone.utc)


def provider_cloud(request: httpx.Request) -> httpx.Response:
    if request.url.host == "apis.garmin.com":
        raise httpx.ReadTimeout("read timed out", request=request)

    path = request.url.path
    if path == "/1/user/-/activities/list.json":
        return httpx.Response(
            200,
            json={
                "activities": [
                    fitbit_activity(100 + i, SCENARIO_START + timedelta(hours=18 * i + 7))
                    for i in range(12)
                ]
            },
        )
    if path.startswith("/1.2/user/-/sleep/date/"):
        return httpx.Response(
            200,
            json={
                "sleep": [
                    fitbit_sleep(200 + i, SCENARIO_START + timedelta(days=i, hours=-1))
                    for i in range(3)
                ]
            },
        )
    if path.startswith("/1/user/-/foods/log/date/"):
        return httpx.Response(
            200,
            json={
                "foods": [
                    fitbit_food(1, "Oats", 150),
                    fitbit_food(3, "Salad", 400),
                    fitbit_food(5, "Salmon", 650),
                    fitbit_food(2, "Apple", 95),
                ],
                "summary": {"water": 1500},
            },
        )
    return httpx.Response(404)


class TestFitbitAndGarminScenario:
    @pytest.mark.asyncio
    async def test_garmin_timeout_does_not_block_fitbit(
        self, settings: Settings, sync_config: SyncConfig, wall_clock: WallClock
    ) -> None:
        client, transport = mock_client(provider_cloud)
        engine = create_sync_engine(
            settings, config=sync_config, http_client=client, clock=wall_clock
        )
        await engine.connections.create(TEST_USER_ID, Provider.FITBIT, FRESH_TOKENS)
        await engine.connections.create(
            TEST_USER_ID, Provider.GARMIN, OAuthTokens(access_token="gtok:::gsecret", token_type="OAuth1")
        )

        results = await engine.orchestrator.sync_all(TEST_USER_ID, SCENARIO_START, SCENARIO_END)

        assert set(results) == {"fitbit", "garmin"}
        fitbit = results["fitbit"]
        assert fitbit.success is True
        assert fitbit.counts.activities_count == 12
        assert fitbit.counts.sleep_count == 3
        assert fitbit.counts.nutrition_count == 40

        garmin = results["garmin"]
        assert garmin.success is False
        assert garmin.counts is None
        assert garmin.error.startswith("garmin ")

        assert await engine.store.find_by_user(TEST_USER_ID, source="garmin") == []
        assert len(await engine.store.find_by_user(TEST_USER_ID, kind="nutrition")) == 40
        assert engine.rate_limiter.error_count("garmin-api") >= 1
        assert engine.rate_limiter.error_count("fitbit-api") == 0

        fitbit_requests = [r for r in transport.requests if r.url.host == "api.fitbit.com"]
        # one activity page, one sleep range, ten food-log days
        assert len(fitbit_requests) == 12
