"""Fitbit payload → canonical record mapping.

Fitbit reports durations in milliseconds and sleep timestamps in the user's
local time without an offset; those are taken as UTC.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import date, timedelta
from uuid import UUID

from healthsync.integrations.base import (
    Activity,
    FoodItem,
    Macronutrients,
    NutritionEntry,
    Provider,
    SleepSession,
    SleepStage,
    SleepStageType,
    parse_datetime,
    safe_float,
    safe_int,
    utc_midnight,
)
from healthsync.integrations.errors import MappingError
from healthsync.integrations.mappers.base import (
    DataMapper,
    build_nutrition_entry,
    seconds_from_millis,
)

_KM_PER_MILE = 1.609344
_MIN_NAP_MILLIS = 3_600_000

_FITBIT_ACTIVITY_TYPE_MAP: dict[str, str] = {
    "run": "running",
    "running": "running",
    "treadmill": "running",
    "walk": "walking",
    "walking": "walking",
    "hike": "hiking",
    "bike": "cycling",
    "outdoor bike": "cycling",
    "spinning": "cycling",
    "swim": "swimming",
    "swimming": "swimming",
    "weights": "strength_training",
    "weight lifting": "strength_training",
    "yoga": "yoga",
    "elliptical": "elliptical",
    "workout": "workout",
    "sport": "sport",
}

_FITBIT_SLEEP_LEVEL_MAP: dict[str, SleepStageType] = {
    "wake": SleepStageType.AWAKE,
    "awake": SleepStageType.AWAKE,
    "restless": SleepStageType.AWAKE,
    "light": SleepStageType.LIGHT,
    "deep": SleepStageType.DEEP,
    "rem": SleepStageType.REM,
}

# Fitbit mealTypeId → canonical meal type
_FITBIT_MEAL_TYPES: dict[int, str] = {
    1: "breakfast",
    2: "snack",
    3: "lunch",
    4: "snack",
    5: "dinner",
    6: "snack",
    7: "anytime",
}


class FitbitMapper(DataMapper):
    PROVIDER = Provider.FITBIT
    SLEEP_SCORE_SUBTYPE = "efficiency"
    SLEEP_SCORE_UNIT = "percent"

    def _map_activity(self, raw: dict, user_id: UUID) -> Activity:
        start = parse_datetime(raw["startTime"])
        if start is None:
            raise MappingError(f"unparseable startTime {raw['startTime']!r}")
        duration = seconds_from_millis(raw.get("activeDuration") or raw.get("duration"))

        distance = safe_float(raw.get("distance"))
        if distance is not None and str(raw.get("distanceUnit", "")).lower().startswith("mile"):
            distance *= _KM_PER_MILE

        name = str(raw.get("activityName") or "")
        return Activity(
            user_id=user_id,
            source_provider=self.source,
            start_time=start,
            end_time=start + timedelta(seconds=duration),
            source_device_id=(raw.get("source") or {}).get("name"),
            metadata={"original_id": str(raw["logId"]), "activity_name": name or None},
            activity_type=_FITBIT_ACTIVITY_TYPE_MAP.get(
                name.lower(), name.lower().replace(" ", "_") or "other"
            ),
            duration_seconds=duration,
            distance=distance,
            calories_burned=safe_float(raw.get("calories")),
            steps=safe_int(raw.get("steps")),
            heart_rate_avg=safe_int(raw.get("averageHeartRate")),
        )

    def _map_sleep(self, raw: dict, user_id: UUID) -> SleepSession | None:
        duration_ms = safe_int(raw.get("duration")) or 0
        if not raw.get("isMainSleep", True) and duration_ms < _MIN_NAP_MILLIS:
            return None

        start = parse_datetime(raw["startTime"])
        if start is None:
            raise MappingError(f"unparseable startTime {raw['startTime']!r}")
        end = parse_datetime(raw.get("endTime")) or start + timedelta(milliseconds=duration_ms)

        stages = []
        for level in (raw.get("levels") or {}).get("data", []):
            stage_start = parse_datetime(level.get("dateTime"))
            seconds = safe_int(level.get("seconds")) or 0
            if stage_start is None:
                continue
            stages.append(
                SleepStage(
                    stage=_FITBIT_SLEEP_LEVEL_MAP.get(
                        str(level.get("level", "")).lower(), SleepStageType.UNKNOWN
                    ),
                    start_time=stage_start,
                    end_time=stage_start + timedelta(seconds=seconds),
                    duration_seconds=seconds,
                )
            )

        return SleepSession(
            user_id=user_id,
            source_provider=self.source,
            start_time=start,
            end_time=end,
            metadata={
                "original_id": str(raw["logId"]),
                "is_main_sleep": raw.get("isMainSleep", True),
                "minutes_asleep": safe_int(raw.get("minutesAsleep")),
            },
            duration_seconds=seconds_from_millis(duration_ms),
            stages=stages,
            quality=safe_float(raw.get("efficiency")),
        )

    def _map_nutrition(self, raw: dict, user_id: UUID) -> list[NutritionEntry]:
        """Group one day's food log into one entry per meal."""
        day = date.fromisoformat(raw["date"])
        meals: dict[str, list[FoodItem]] = defaultdict(list)
        for food in raw.get("foods", []):
            logged = food.get("loggedFood") or {}
            values = food.get("nutritionalValues") or {}
            meal = _FITBIT_MEAL_TYPES.get(safe_int(logged.get("mealTypeId")) or 7, "anytime")
            meals[meal].append(
                FoodItem(
                    name=str(logged.get("name") or "Unknown food"),
                    quantity=safe_float(logged.get("amount")) or 0.0,
                    unit=str((logged.get("unit") or {}).get("name") or "serving"),
                    calories=safe_float(values.get("calories", logged.get("calories"))) or 0.0,
                    macronutrients=Macronutrients(
                        protein=safe_float(values.get("protein")) or 0.0,
                        carbohydrates=safe_float(values.get("carbs")) or 0.0,
                        fat=safe_float(values.get("fat")) or 0.0,
                        fiber=safe_float(values.get("fiber")) or 0.0,
                    ),
                )
            )

        water = safe_float((raw.get("summary") or {}).get("water")) or None
        if not meals and water:
            meals["anytime"] = []

        entries = []
        for index, (meal, foods) in enumerate(meals.items()):
            entries.append(
                build_nutrition_entry(
                    user_id=user_id,
                    source=self.source,
                    start_time=utc_midnight(day),
                    meal_type=meal,
                    foods=foods,
                    original_id=f"{day.isoformat()}-{meal}",
                    water_intake_ml=water if index == 0 else None,
                )
            )
        return entries
