"""Shared machinery for provider data mappers.

A mapper is a pure translation from one provider's payloads to canonical
records.  It performs no I/O and keeps no state between calls.  Records that
cannot be translated are logged and skipped so one malformed item never
sinks a whole sync.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, ClassVar, Iterable, TypeVar
from uuid import UUID

from healthsync.integrations.base import (
    Activity,
    FoodItem,
    HealthDataPoint,
    Macronutrients,
    NutritionEntry,
    Provider,
    SleepSession,
    SleepStageType,
)
from healthsync.integrations.errors import MappingError

logger = logging.getLogger("healthsync.integrations.mappers")

R = TypeVar("R")

_SECONDS_PER_HOUR = 3600.0


@dataclass
class MappedBatch:
    """Everything one sync pass will write for a single provider."""

    activities: list[Activity] = field(default_factory=list)
    sleep: list[SleepSession] = field(default_factory=list)
    nutrition: list[NutritionEntry] = field(default_factory=list)
    health_data: list[HealthDataPoint] = field(default_factory=list)
    skipped: int = 0

    def records(self) -> list:
        return [*self.activities, *self.sleep, *self.nutrition, *self.health_data]


class DataMapper(ABC):
    """Translate one provider's native payloads into canonical records.

    Subclasses implement the three per-record hooks; list handling, skip
    accounting and the health-data projection live here.
    """

    PROVIDER: ClassVar[Provider]

    #: data_subtype and unit used for the sleep score point.
    SLEEP_SCORE_SUBTYPE: ClassVar[str] = "quality"
    SLEEP_SCORE_UNIT: ClassVar[str] = "score"

    @property
    def source(self) -> str:
        return self.PROVIDER.value

    # ------------------------------------------------------------------
    # Per-record hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _map_activity(self, raw: dict, user_id: UUID) -> Activity | None:
        """Map one activity payload; return None to drop it deliberately."""

    @abstractmethod
    def _map_sleep(self, raw: dict, user_id: UUID) -> SleepSession | None:
        """Map one sleep payload; return None to drop it deliberately."""

    @abstractmethod
    def _map_nutrition(self, raw: dict, user_id: UUID) -> list[NutritionEntry]:
        """Map one nutrition payload into zero or more meal entries."""

    # ------------------------------------------------------------------
    # Public, pure API
    # ------------------------------------------------------------------

    def map_activities(self, raw: Iterable[dict], user_id: UUID) -> list[Activity]:
        return self._map_each(raw, lambda r: self._map_activity(r, user_id), "activity")[0]

    def map_sleep_data(self, raw: Iterable[dict], user_id: UUID) -> list[SleepSession]:
        return self._map_each(raw, lambda r: self._map_sleep(r, user_id), "sleep")[0]

    def map_nutrition_data(self, raw: Iterable[dict], user_id: UUID) -> list[NutritionEntry]:
        return self._map_each(raw, lambda r: self._map_nutrition(r, user_id), "nutrition")[0]

    def map_to_health_data_points(
        self,
        activities: Iterable[Activity] = (),
        sleep: Iterable[SleepSession] = (),
        nutrition: Iterable[NutritionEntry] = (),
    ) -> list[HealthDataPoint]:
        """Project canonical records into scalar points.

        A point is emitted only for a value that is present and positive; a
        missing provider field never turns into a zero-valued point.
        """
        points: list[HealthDataPoint] = []
        for activity in activities:
            points.extend(self._activity_points(activity))
        for session in sleep:
            points.extend(self._sleep_points(session))
        for entry in nutrition:
            points.extend(self._nutrition_points(entry))
        return points

    def map_all(
        self,
        user_id: UUID,
        activities: Iterable[dict],
        sleep: Iterable[dict],
        nutrition: Iterable[dict],
    ) -> MappedBatch:
        """Map all three categories and derive the health-data points."""
        mapped_activities, skipped_a = self._map_each(
            activities, lambda r: self._map_activity(r, user_id), "activity"
        )
        mapped_sleep, skipped_s = self._map_each(
            sleep, lambda r: self._map_sleep(r, user_id), "sleep"
        )
        mapped_nutrition, skipped_n = self._map_each(
            nutrition, lambda r: self._map_nutrition(r, user_id), "nutrition"
        )
        return MappedBatch(
            activities=mapped_activities,
            sleep=mapped_sleep,
            nutrition=mapped_nutrition,
            health_data=self.map_to_health_data_points(
                mapped_activities, mapped_sleep, mapped_nutrition
            ),
            skipped=skipped_a + skipped_s + skipped_n,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _map_each(
        self, raw: Iterable[dict], fn: Callable[[dict], R | list[R] | None], kind: str
    ) -> tuple[list[R], int]:
        mapped: list[R] = []
        skipped = 0
        for item in raw:
            try:
                result = fn(item)
            except (MappingError, KeyError, TypeError, ValueError) as exc:
                skipped += 1
                logger.warning(
                    "%s: skipped malformed %s record %r: %s",
                    self.source, kind, _record_id(item), exc,
                )
                continue
            if result is None:
                continue
            if isinstance(result, list):
                mapped.extend(result)
            else:
                mapped.append(result)
        return mapped, skipped

    def _point(
        self, record, data_type: str, data_subtype: str, value: float, unit: str
    ) -> HealthDataPoint:
        return HealthDataPoint(
            user_id=record.user_id,
            source_provider=record.source_provider,
            start_time=record.start_time,
            end_time=record.end_time,
            source_device_id=record.source_device_id,
            metadata={"original_id": record.original_id},
            data_type=data_type,
            data_subtype=data_subtype,
            value=value,
            unit=unit,
        )

    def _activity_points(self, activity: Activity) -> list[HealthDataPoint]:
        points = []
        if activity.steps and activity.steps > 0:
            points.append(self._point(activity, "activity", "steps", float(activity.steps), "count"))
        if activity.calories_burned and activity.calories_burned > 0:
            points.append(
                self._point(activity, "activity", "calories", activity.calories_burned, "kcal")
            )
        if activity.distance and activity.distance > 0:
            points.append(self._point(activity, "activity", "distance", activity.distance, "km"))
        if activity.heart_rate_avg and activity.heart_rate_avg > 0:
            points.append(
                self._point(activity, "vitals", "heart_rate", float(activity.heart_rate_avg), "bpm")
            )
        return points

    def _sleep_points(self, session: SleepSession) -> list[HealthDataPoint]:
        points = []
        if session.duration_seconds > 0:
            points.append(
                self._point(
                    session, "sleep", "duration",
                    session.duration_seconds / _SECONDS_PER_HOUR, "hours",
                )
            )
        if session.quality and session.quality > 0:
            points.append(
                self._point(
                    session, "sleep", self.SLEEP_SCORE_SUBTYPE, session.quality,
                    self.SLEEP_SCORE_UNIT,
                )
            )
        for stage, subtype in ((SleepStageType.DEEP, "deep_sleep"), (SleepStageType.REM, "rem_sleep")):
            seconds = session.stage_seconds(stage)
            if seconds > 0:
                points.append(
                    self._point(session, "sleep", subtype, seconds / _SECONDS_PER_HOUR, "hours")
                )
        return points

    def _nutrition_points(self, entry: NutritionEntry) -> list[HealthDataPoint]:
        points = []
        if entry.total_calories > 0:
            points.append(self._point(entry, "nutrition", "calories", entry.total_calories, "kcal"))
        macros = entry.total_macronutrients
        for subtype, value in (
            ("protein", macros.protein),
            ("carbohydrates", macros.carbohydrates),
            ("fat", macros.fat),
            ("fiber", macros.fiber),
        ):
            if value > 0:
                points.append(self._point(entry, "nutrition", subtype, value, "g"))
        if entry.water_intake_ml and entry.water_intake_ml > 0:
            points.append(self._point(entry, "nutrition", "water", entry.water_intake_ml, "ml"))
        return points


def _record_id(item) -> str | None:
    if isinstance(item, dict):
        for key in ("id", "logId", "activityId", "summaryId", "date"):
            if item.get(key) is not None:
                return str(item[key])
    return None


def km_from_meters(value) -> float | None:
    if value is None:
        return None
    return float(value) / 1000.0


def seconds_from_millis(value) -> int:
    return int(round(float(value or 0) / 1000.0))


def build_nutrition_entry(
    *,
    user_id: UUID,
    source: str,
    start_time,
    meal_type: str,
    foods: list[FoodItem],
    original_id: str,
    water_intake_ml: float | None = None,
    source_device_id: str | None = None,
    total_calories: float | None = None,
    total_macronutrients: Macronutrients | None = None,
) -> NutritionEntry:
    """Assemble a NutritionEntry, totalling the foods unless totals are given."""
    if total_calories is None:
        total_calories = sum(f.calories for f in foods)
    if total_macronutrients is None:
        total_macronutrients = sum((f.macronutrients for f in foods), Macronutrients())
    return NutritionEntry(
        user_id=user_id,
        source_provider=source,
        start_time=start_time,
        source_device_id=source_device_id,
        metadata={"original_id": original_id},
        meal_type=meal_type,
        foods=foods,
        total_calories=float(total_calories),
        total_macronutrients=total_macronutrients,
        water_intake_ml=water_intake_ml,
    )
