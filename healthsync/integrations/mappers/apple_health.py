"""Apple Health payload → canonical record mapping.

Apple exports use ISO-8601 timestamps and already report distance in
kilometres and energy in kilocalories.
"""

from __future__ import annotations

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
)
from healthsync.integrations.errors import MappingError
from healthsync.integrations.mappers.base import DataMapper, build_nutrition_entry

_APPLE_WORKOUT_TYPES: dict[str, str] = {
    "running": "running",
    "walking": "walking",
    "cycling": "cycling",
    "swimming": "swimming",
    "hiking": "hiking",
    "yoga": "yoga",
    "traditionalstrengthtraining": "strength_training",
    "functionalstrengthtraining": "strength_training",
    "highintensityintervaltraining": "hiit",
    "rowing": "rowing",
    "elliptical": "elliptical",
}

_APPLE_SLEEP_STAGES: dict[str, SleepStageType] = {
    "awake": SleepStageType.AWAKE,
    "inbed": SleepStageType.AWAKE,
    "core": SleepStageType.LIGHT,
    "light": SleepStageType.LIGHT,
    "deep": SleepStageType.DEEP,
    "rem": SleepStageType.REM,
}


def _bounds(raw: dict):
    start = parse_datetime(raw.get("startDate"))
    end = parse_datetime(raw.get("endDate"))
    if start is None or end is None:
        raise MappingError("missing startDate/endDate")
    return start, end


class AppleHealthMapper(DataMapper):
    PROVIDER = Provider.APPLE_HEALTH

    def _map_activity(self, raw: dict, user_id: UUID) -> Activity:
        start, end = _bounds(raw)
        workout = str(raw.get("workoutActivityType") or "").lower()
        return Activity(
            user_id=user_id,
            source_provider=self.source,
            start_time=start,
            end_time=end,
            source_device_id=raw.get("sourceName"),
            metadata={"original_id": str(raw["id"])},
            activity_type=_APPLE_WORKOUT_TYPES.get(workout, "other"),
            duration_seconds=safe_int(raw.get("duration"))
            or int((end - start).total_seconds()),
            distance=safe_float(raw.get("distance")),
            calories_burned=safe_float(raw.get("activeEnergyBurned")),
            steps=safe_int(raw.get("stepCount")),
            heart_rate_avg=safe_int(raw.get("averageHeartRate")),
            heart_rate_max=safe_int(raw.get("maxHeartRate")),
        )

    def _map_sleep(self, raw: dict, user_id: UUID) -> SleepSession:
        start, end = _bounds(raw)
        stages = []
        for item in raw.get("sleepStages", []):
            stage_start, stage_end = _bounds(item)
            stages.append(
                SleepStage(
                    stage=_APPLE_SLEEP_STAGES.get(
                        str(item.get("stage", "")).lower(), SleepStageType.UNKNOWN
                    ),
                    start_time=stage_start,
                    end_time=stage_end,
                    duration_seconds=safe_int(item.get("duration"))
                    or int((stage_end - stage_start).total_seconds()),
                )
            )
        return SleepSession(
            user_id=user_id,
            source_provider=self.source,
            start_time=start,
            end_time=end,
            source_device_id=raw.get("sourceName"),
            metadata={"original_id": str(raw["id"])},
            duration_seconds=int((end - start).total_seconds()),
            stages=stages,
        )

    def _map_nutrition(self, raw: dict, user_id: UUID) -> list[NutritionEntry]:
        eaten = parse_datetime(raw.get("date"))
        if eaten is None:
            raise MappingError("nutrition entry has no date")
        foods = [
            FoodItem(
                name=str(item.get("name") or "Unknown food"),
                quantity=safe_float(item.get("quantity")) or 0.0,
                unit=str(item.get("unit") or "serving"),
                calories=safe_float(item.get("calories")) or 0.0,
                macronutrients=Macronutrients(
                    protein=safe_float(item.get("protein")) or 0.0,
                    carbohydrates=safe_float(item.get("carbohydrates")) or 0.0,
                    fat=safe_float(item.get("fat")) or 0.0,
                    fiber=safe_float(item.get("fiber")) or 0.0,
                ),
            )
            for item in raw.get("foodItems", [])
        ]
        return [
            build_nutrition_entry(
                user_id=user_id,
                source=self.source,
                start_time=eaten,
                meal_type=str(raw.get("meal") or "unknown").lower(),
                foods=foods,
                original_id=str(raw["id"]),
                water_intake_ml=safe_float(raw.get("waterIntake")),
                source_device_id=raw.get("sourceName"),
            )
        ]
