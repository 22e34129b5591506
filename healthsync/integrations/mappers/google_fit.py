"""Google Fit payload → canonical record mapping."""

from __future__ import annotations

from datetime import date
from uuid import UUID

from healthsync.integrations.base import (
    Activity,
    Macronutrients,
    NutritionEntry,
    Provider,
    SleepSession,
    SleepStage,
    SleepStageType,
    from_epoch_millis,
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

# Google Fit numeric activity type → canonical activity type
_GOOGLE_FIT_ACTIVITY_TYPES: dict[int, str] = {
    1: "biking",
    7: "walking",
    8: "running",
    13: "biking",
    35: "swimming",
    54: "running",
    72: "sleep",
    80: "strength_training",
    82: "swimming",
    93: "walking",
    100: "yoga",
}

_GOOGLE_FIT_SLEEP_STAGES: dict[int, SleepStageType] = {
    1: SleepStageType.AWAKE,
    2: SleepStageType.LIGHT,
    3: SleepStageType.DEEP,
    4: SleepStageType.REM,
}


class GoogleFitMapper(DataMapper):
    PROVIDER = Provider.GOOGLE_FIT

    def _map_activity(self, raw: dict, user_id: UUID) -> Activity:
        start, end = self._session_bounds(raw)
        type_id = safe_int(raw.get("activityType"))
        steps = raw.get("steps")
        return Activity(
            user_id=user_id,
            source_provider=self.source,
            start_time=start,
            end_time=end,
            source_device_id=(raw.get("application") or {}).get("packageName"),
            metadata={"original_id": str(raw["id"]), "name": raw.get("name")},
            activity_type=_GOOGLE_FIT_ACTIVITY_TYPES.get(type_id, "other"),
            duration_seconds=int((end - start).total_seconds()),
            distance=km_from_meters(raw.get("distance")),
            calories_burned=safe_float(raw.get("calories")),
            steps=safe_int(steps) if steps is not None else None,
        )

    def _map_sleep(self, raw: dict, user_id: UUID) -> SleepSession:
        start, end = self._session_bounds(raw)
        stages = []
        for point in raw.get("segments", []):
            seg_start = from_epoch_millis(safe_int(point.get("startTimeNanos", 0)) // 1_000_000)
            seg_end = from_epoch_millis(safe_int(point.get("endTimeNanos", 0)) // 1_000_000)
            values = point.get("value") or [{}]
            stage_value = safe_int(values[0].get("intVal"))
            stages.append(
                SleepStage(
                    stage=_GOOGLE_FIT_SLEEP_STAGES.get(stage_value, SleepStageType.UNKNOWN),
                    start_time=seg_start,
                    end_time=seg_end,
                    duration_seconds=int((seg_end - seg_start).total_seconds()),
                )
            )
        return SleepSession(
            user_id=user_id,
            source_provider=self.source,
            start_time=start,
            end_time=end,
            source_device_id=(raw.get("application") or {}).get("packageName"),
            metadata={"original_id": str(raw["id"])},
            duration_seconds=int((end - start).total_seconds()),
            stages=stages,
        )

    def _map_nutrition(self, raw: dict, user_id: UUID) -> list[NutritionEntry]:
        day = date.fromisoformat(raw["date"])
        nutrients = raw.get("nutrients") or {}
        return [
            build_nutrition_entry(
                user_id=user_id,
                source=self.source,
                start_time=from_epoch_millis(raw.get("startTimeMillis")) or utc_midnight(day),
                meal_type="unknown",
                foods=[],
                original_id=f"nutrition-{day.isoformat()}",
                source_device_id=raw.get("application"),
                total_calories=safe_float(nutrients.get("calories")) or 0.0,
                total_macronutrients=Macronutrients(
                    protein=safe_float(nutrients.get("protein")) or 0.0,
                    carbohydrates=safe_float(nutrients.get("carbohydrates")) or 0.0,
                    fat=safe_float(nutrients.get("fat")) or 0.0,
                    fiber=safe_float(nutrients.get("fiber")) or 0.0,
                ),
            )
        ]

    @staticmethod
    def _session_bounds(raw: dict):
        start = from_epoch_millis(raw.get("startTimeMillis"))
        end = from_epoch_millis(raw.get("endTimeMillis"))
        if start is None or end is None:
            raise MappingError("session is missing startTimeMillis/endTimeMillis")
        return start, end
