"""Withings payload → canonical record mapping."""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

from healthsync.integrations.base import (
    Activity,
    NutritionEntry,
    Provider,
    SleepSession,
    SleepStage,
    SleepStageType,
    safe_float,
    safe_int,
)
from healthsync.integrations.errors import MappingError
from healthsync.integrations.mappers.base import DataMapper, km_from_meters

# Withings workout category → canonical activity type
_WITHINGS_WORKOUT_CATEGORIES: dict[int, str] = {
    1: "walking",
    2: "running",
    3: "hiking",
    6: "cycling",
    7: "swimming",
    16: "strength_training",
    28: "yoga",
    29: "pilates",
    36: "elliptical",
    187: "rowing",
    188: "hiit",
}

_WITHINGS_SLEEP_STATES: dict[int, SleepStageType] = {
    0: SleepStageType.AWAKE,
    1: SleepStageType.LIGHT,
    2: SleepStageType.DEEP,
    3: SleepStageType.REM,
}


def _epoch(value, field_name: str) -> datetime:
    seconds = safe_int(value)
    if seconds is None:
        raise MappingError(f"missing {field_name}")
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class WithingsMapper(DataMapper):
    PROVIDER = Provider.WITHINGS

    def _map_activity(self, raw: dict, user_id: UUID) -> Activity:
        start = _epoch(raw.get("startdate"), "startdate")
        end = _epoch(raw.get("enddate"), "enddate")
        # getworkouts nests the measures under "data"; older payloads are flat.
        data = raw.get("data") or raw
        duration = safe_int(data.get("effduration")) or int((end - start).total_seconds())
        return Activity(
            user_id=user_id,
            source_provider=self.source,
            start_time=start,
            end_time=end,
            source_device_id=raw.get("deviceid"),
            metadata={"original_id": str(raw["id"]), "category": raw.get("category")},
            activity_type=_WITHINGS_WORKOUT_CATEGORIES.get(
                safe_int(raw.get("category")), "other"
            ),
            duration_seconds=duration,
            distance=km_from_meters(data.get("distance")),
            calories_burned=safe_float(data.get("calories")),
            steps=safe_int(data.get("steps")),
            heart_rate_avg=safe_int(data.get("hr_average")),
            heart_rate_max=safe_int(data.get("hr_max")),
        )

    def _map_sleep(self, raw: dict, user_id: UUID) -> SleepSession:
        start = _epoch(raw.get("startdate"), "startdate")
        end = _epoch(raw.get("enddate"), "enddate")
        stages = []
        for segment in raw.get("segments", []):
            seg_start = _epoch(segment.get("startdate"), "segment startdate")
            seg_end = _epoch(segment.get("enddate"), "segment enddate")
            stages.append(
                SleepStage(
                    stage=_WITHINGS_SLEEP_STATES.get(
                        safe_int(segment.get("state")), SleepStageType.UNKNOWN
                    ),
                    start_time=seg_start,
                    end_time=seg_end,
                    duration_seconds=int((seg_end - seg_start).total_seconds()),
                )
            )
        asleep = sum(
            s.duration_seconds for s in stages if s.stage is not SleepStageType.AWAKE
        )
        return SleepSession(
            user_id=user_id,
            source_provider=self.source,
            start_time=start,
            end_time=end,
            source_device_id=raw.get("deviceid"),
            metadata={"original_id": str(raw["id"]), "model": raw.get("model")},
            duration_seconds=asleep or int((end - start).total_seconds()),
            stages=stages,
        )

    def _map_nutrition(self, raw: dict, user_id: UUID) -> list[NutritionEntry]:
        # Withings has no nutrition API.
        return []
