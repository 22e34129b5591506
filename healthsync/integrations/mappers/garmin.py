"""Garmin payload → canonical record mapping.

Garmin reports epoch seconds, distances in metres, and sleep as a flat list
of ``sleepLevels`` spans.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
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
    safe_float,
    safe_int,
    utc_midnight,
)
from healthsync.integrations.errors import MappingError
from healthsync.integrations.mappers.base import (
    DataMapper,
    build_nutrition_entry,
    km_from_meters,
)

# Activity type mapping: Garmin activity type → canonical slug
_GARMIN_ACTIVITY_TYPE_MAP: dict[str, str] = {
    "running": "running",
    "treadmill_running": "running",
    "cycling": "cycling",
    "indoor_cycling": "cycling",
    "lap_swimming": "swimming",
    "open_water_swimming": "swimming",
    "walking": "walking",
    "hiking": "hiking",
    "strength_training": "strength_training",
    "yoga": "yoga",
    "pilates": "pilates",
    "hiit": "hiit",
    "rowing": "rowing",
    "elliptical": "elliptical",
}

_GARMIN_SLEEP_LEVELS: dict[str, SleepStageType] = {
    "awake": SleepStageType.AWAKE,
    "light": SleepStageType.LIGHT,
    "deep": SleepStageType.DEEP,
    "rem": SleepStageType.REM,
}


def _from_seconds(value) -> datetime | None:
    seconds = safe_int(value)
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class GarminMapper(DataMapper):
    PROVIDER = Provider.GARMIN

    def _map_activity(self, raw: dict, user_id: UUID) -> Activity:
        detail = raw.get("detail") or {}
        start = _from_seconds(raw.get("startTimeInSeconds"))
        if start is None:
            raise MappingError("activity has no startTimeInSeconds")
        duration = safe_int(raw.get("durationInSeconds")) or 0

        def pick(*keys):
            for source in (detail, raw):
                for key in keys:
                    if source.get(key) is not None:
                        return source[key]
            return None

        activity_type = str(raw.get("activityType") or "other").lower()
        return Activity(
            user_id=user_id,
            source_provider=self.source,
            start_time=start,
            end_time=start + timedelta(seconds=duration),
            source_device_id=pick("deviceName"),
            metadata={
                "original_id": str(raw.get("activityId") or raw["summaryId"]),
                "activity_name": raw.get("activityName"),
            },
            activity_type=_GARMIN_ACTIVITY_TYPE_MAP.get(activity_type, "other"),
            duration_seconds=duration,
            distance=km_from_meters(raw.get("distanceInMeters")),
            calories_burned=safe_float(pick("caloriesInKiloCalories", "activeKilocalories")),
            steps=safe_int(pick("steps")),
            heart_rate_avg=safe_int(pick("averageHeartRateInBeatsPerMinute")),
            heart_rate_max=safe_int(pick("maxHeartRateInBeatsPerMinute")),
        )

    def _map_sleep(self, raw: dict, user_id: UUID) -> SleepSession:
        start = _from_seconds(raw.get("startTimeInSeconds"))
        if start is None:
            raise MappingError("sleep has no startTimeInSeconds")

        stages = []
        for level in raw.get("sleepLevels", []):
            level_start = _from_seconds(level.get("startTimeInSeconds"))
            level_end = _from_seconds(level.get("endTimeInSeconds"))
            if level_start is None or level_end is None:
                continue
            stages.append(
                SleepStage(
                    stage=_GARMIN_SLEEP_LEVELS.get(
                        str(level.get("sleepLevel", "")).lower(), SleepStageType.UNKNOWN
                    ),
                    start_time=level_start,
                    end_time=level_end,
                    duration_seconds=safe_int(level.get("durationInSeconds"))
                    or int((level_end - level_start).total_seconds()),
                )
            )

        end = _from_seconds(raw.get("endTimeInSeconds"))
        if end is None:
            end = start + timedelta(seconds=safe_int(raw.get("durationInSeconds")) or 0)
        duration = sum(s.duration_seconds for s in stages) or int((end - start).total_seconds())

        overall = (raw.get("sleepScores") or {}).get("overall")
        if isinstance(overall, dict):
            overall = overall.get("value")

        return SleepSession(
            user_id=user_id,
            source_provider=self.source,
            start_time=start,
            end_time=end,
            source_device_id=raw.get("deviceName"),
            metadata={
                "original_id": str(
                    raw.get("dailySleepId") or raw.get("summaryId")
                    or f"{raw.get('startTimeInSeconds')}-{raw.get('endTimeInSeconds')}"
                ),
                "unmeasurable_seconds": safe_int(raw.get("unmeasurableSleepInSeconds")) or 0,
            },
            duration_seconds=duration,
            stages=stages,
            quality=safe_float(overall),
        )

    def _map_nutrition(self, raw: dict, user_id: UUID) -> list[NutritionEntry]:
        """One entry per logged meal; the day's water goes on the first one."""
        day = date.fromisoformat(str(raw["date"])[:10])
        water = safe_float(raw.get("dailyWaterIntakeInMilliliters"))
        entries = []
        for index, meal in enumerate(raw.get("meals", [])):
            meal_type = str(meal.get("mealType") or "unknown").lower()
            foods = []
            for component in meal.get("components", []):
                macros = component.get("macronutrients") or {}
                foods.append(
                    FoodItem(
                        name=str(component.get("description") or "Unknown food"),
                        quantity=safe_float(component.get("amount")) or 0.0,
                        unit=str(component.get("unit") or "serving"),
                        calories=safe_float(component.get("calories")) or 0.0,
                        macronutrients=Macronutrients(
                            protein=safe_float(macros.get("protein")) or 0.0,
                            carbohydrates=safe_float(macros.get("carbohydrates")) or 0.0,
                            fat=safe_float(macros.get("fat")) or 0.0,
                            fiber=safe_float(macros.get("fiber")) or 0.0,
                        ),
                    )
                )
            entries.append(
                build_nutrition_entry(
                    user_id=user_id,
                    source=self.source,
                    start_time=utc_midnight(day),
                    meal_type=meal_type,
                    foods=foods,
                    original_id=f"{day.isoformat()}-{meal_type}",
                    water_intake_ml=water if index == 0 else None,
                    source_device_id=raw.get("deviceName") or "Garmin Connect",
                )
            )
        return entries
