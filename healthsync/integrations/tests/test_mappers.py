"""Tests for the shared mapper machinery and the mapper registry."""

from __future__ import annotations

from datetime import timedelta

import pytest

from healthsync.integrations.base import (
    Activity,
    FoodItem,
    Macronutrients,
    Provider,
    SleepSession,
    SleepStage,
    SleepStageType,
)
from healthsync.integrations.mappers import (
    MAPPER_REGISTRY,
    FitbitMapper,
    build_mappers,
    get_mapper,
)
from healthsync.integrations.mappers.base import (
    build_nutrition_entry,
    km_from_meters,
    seconds_from_millis,
)
from healthsync.integrations.tests.conftest import TEST_START, TEST_USER_ID


def make_activity(**overrides) -> Activity:
    fields = dict(
        user_id=TEST_USER_ID,
        source_provider="fitbit",
        start_time=TEST_START,
        end_time=TEST_START + timedelta(minutes=30),
        metadata={"original_id": "a1"},
        duration_seconds=1800,
    )
    fields.update(overrides)
    return Activity(**fields)


class TestHealthDataProjection:
    def test_zero_steps_emit_no_point(self) -> None:
        points = FitbitMapper().map_to_health_data_points([make_activity(steps=0)])
        assert points == []

    def test_positive_steps_emit_count_point(self) -> None:
        [point] = FitbitMapper().map_to_health_data_points([make_activity(steps=500)])
        assert (point.data_type, point.data_subtype, point.value, point.unit) == (
            "activity", "steps", 500.0, "count",
        )
        assert point.original_id == "a1"
        assert point.source_provider == "fitbit"
        assert point.end_time == TEST_START + timedelta(minutes=30)

    def test_sleep_points_in_hours(self) -> None:
        session = SleepSession(
            user_id=TEST_USER_ID,
            source_provider="garmin",
            start_time=TEST_START,
            metadata={"original_id": "s1"},
            duration_seconds=27_000,
            stages=[
                SleepStage(SleepStageType.REM, TEST_START, TEST_START + timedelta(minutes=90), 5400),
            ],
        )
        points = {p.data_subtype: p for p in FitbitMapper().map_to_health_data_points(sleep=[session])}
        assert set(points) == {"duration", "rem_sleep"}
        assert points["duration"].value == pytest.approx(7.5)
        assert points["rem_sleep"].value == pytest.approx(1.5)

    def test_nutrition_totals_from_foods(self) -> None:
        entry = build_nutrition_entry(
            user_id=TEST_USER_ID,
            source="fitbit",
            start_time=TEST_START,
            meal_type="lunch",
            foods=[
                FoodItem("Rice", 1, "cup", 200, Macronutrients(carbohydrates=45, protein=4)),
                FoodItem("Beans", 1, "cup", 220, Macronutrients(carbohydrates=40, protein=15, fiber=12)),
            ],
            original_id="2026-02-01-lunch",
        )
        assert entry.total_calories == 420
        assert entry.total_macronutrients == Macronutrients(protein=19, carbohydrates=85, fat=0, fiber=12)

        subtypes = [p.data_subtype for p in FitbitMapper().map_to_health_data_points(nutrition=[entry])]
        assert subtypes == ["calories", "protein", "carbohydrates", "fiber"]


class TestUnitHelpers:
    def test_km_from_meters(self) -> None:
        assert km_from_meters(None) is None
        assert km_from_meters(2500) == pytest.approx(2.5)

    def test_seconds_from_millis(self) -> None:
        assert seconds_from_millis(None) == 0
        assert seconds_from_millis(1_499) == 1


class TestMapperRegistry:
    def test_every_provider_has_a_mapper(self) -> None:
        assert set(MAPPER_REGISTRY) == set(Provider)
        mappers = build_mappers()
        for provider, mapper in mappers.items():
            assert mapper.source == provider.value

    def test_lookup_by_slug(self) -> None:
        assert get_mapper("fitbit") is FitbitMapper

    def test_unknown_provider(self) -> None:
        with pytest.raises(KeyError, match="No mapper registered"):
            get_mapper("myfitnesspal")
