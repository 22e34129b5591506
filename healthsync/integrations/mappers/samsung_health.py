"""Samsung Health payload → canonical record mapping."""

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
    from_epoch_millis,
    safe_float,
    safe_int,
)
from healthsync.integrations.errors import MappingError
from healthsync.integrations.mappers.base import (
    DataMapper,
    build_nutrition_entry,
    km_from_meters,
    seconds_from_millis,
)

_SAMSUNG_SLEEP_STAGES: dict[str, SleepStageType] = {
    "awake": SleepStageType.AWAKE,
    "light": SleepStageType.LIGHT,
    "deep": SleepStageType.DEEP,
    "rem": SleepStageType.REM,
}


def _bounds(raw: dict):
    start = from_epoch_millis(raw.get("startTime"))
    end = from_epoch_millis(raw.get("endTime"))
    if start is None or end is None:
        raise MappingError("missing startTime/endTime")
    return start, end


def _device(raw: dict) -> str | None:
    return (raw.get("device") or {}).get("name")


class SamsungHealthMapper(DataMapper):
    PROVIDER = Provider.SAMSUNG_HEALTH

    def _map_activity(self, raw: dict, user_id: UUID) -> Activity:
        start, end = _bounds(raw)
        distance = raw.get("distance")
        return Activity(
            user_id=user_id,
            source_provider=self.source,
            start_time=start,
            end_time=end,
            source_device_id=_device(raw),
            metadata={"original_id": str(raw["id"])},
            activity_type=str(raw.get("type") or "other").lower(),
            duration_seconds=seconds_from_millis(raw.get("duration"))
            or int((end - start).total_seconds()),
            distance=km_from_meters(distance)
            if raw.get("distanceUnit", "m") == "m"
            else safe_float(distance),
            calories_burned=safe_float(raw.get("calories")),
            steps=safe_int(raw.get("steps")),
            heart_rate_avg=safe_int(raw.get("heartRateAvg")),
            heart_rate_max=safe_int(raw.get("heartRateMax")),
        )

    def _map_sleep(self, raw: dict, user_id: UUID) -> SleepSession:
        start, end = _bounds(raw)
        stages = []
        for item in raw.get("stages", []):
            stage_start, stage_end = _bounds(item)
            stages.append(
                SleepStage(
                    stage=_SAMSUNG_SLEEP_STAGES.get(
                        str(item.get("stage", "")).lower(), SleepStageType.UNKNOWN
                    ),
                    start_time=stage_start,
                    end_time=stage_end,
                    duration_seconds=seconds_from_millis(item.get("duration"))
                    or int((stage_end - stage_start).total_seconds()),
                )
            )
        return SleepSession(
            user_id=user_id,
            source_provider=self.source,
            start_time=start,
            end_time=end,
            source_device_id=_device(raw),
            metadata={"original_id": str(raw["id"])},
            duration_seconds=seconds_from_millis(raw.get("duration"))
            or int((end - start).total_seconds()),
            stages=stages,
            quality=safe_float(raw.get("quality")),
        )

    def _map_nutrition(self, raw: dict, user_id: UUID) -> list[NutritionEntry]:
        eaten = from_epoch_millis(raw.get("timestamp"))
        if eaten is None:
            raise MappingError("nutrition entry has no timestamp")
        foods = []
        for item in raw.get("foodItems", []):
            nutrients = item.get("nutrients") or {}
            foods.append(
                FoodItem(
                    name=str(item.get("name") or "Unknown food"),
                    quantity=safe_float(item.get("quantity")) or 0.0,
                    unit=str(item.get("unit") or "serving"),
                    calories=safe_float(item.get("calories")) or 0.0,
                    macronutrients=Macronutrients(
                        protein=safe_float(nutrients.get("protein")) or 0.0,
                        carbohydrates=safe_float(nutrients.get("carbs")) or 0.0,
                        fat=safe_float(nutrients.get("fat")) or 0.0,
                        fiber=safe_float(nutrients.get("fiber")) or 0.0,
                    ),
                )
            )
        return [
            build_nutrition_entry(
                user_id=user_id,
                source=self.source,
                start_time=eaten,
                meal_type=str(raw.get("mealType") or "unknown").lower(),
                foods=foods,
                original_id=str(raw["id"]),
                water_intake_ml=safe_float(raw.get("waterIntake")),
                source_device_id=_device(raw),
            )
        ]
