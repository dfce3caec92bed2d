"""Pydantic schemas for analytics results.

The same models decode remote service responses (camelCase on the wire),
round-trip through the local analytics cache, and carry locally computed
fallback values.
"""

from __future__ import annotations

import datetime as dt
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

from peelog.core.schemas import Quality


class InsightType(str, Enum):
    POSITIVE = "positive"
    INFO = "info"
    WARNING = "warning"


class WeeklySeverity(str, Enum):
    """Rating of one day's mean quality."""

    NONE = "none"
    POOR = "poor"
    FAIR = "fair"
    GOOD = "good"
    EXCELLENT = "excellent"


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Interpretation(_Wire):
    label: str
    severity: InsightType = InsightType.INFO


class OverviewStats(_Wire):
    """Totals and health score over a range."""

    total_events: int = Field(ge=0)
    this_week_events: int = Field(ge=0)
    average_daily: float = Field(ge=0)
    health_score: float = Field(ge=0, le=1)
    health_score_interpretation: Interpretation
    # Distinct calendar days with at least one event; the remote service may omit it
    active_days: int | None = Field(default=None, ge=0)
    min_active_days: int = Field(default=3, ge=1)

    @property
    def has_sufficient_data(self) -> bool:
        return self.active_days is not None and self.active_days >= self.min_active_days

    @property
    def display_label(self) -> str:
        """Interpretation label, suppressed when there are too few active days."""
        if not self.has_sufficient_data:
            return "Insufficient data"
        return self.health_score_interpretation.label


class QualityTrendPoint(_Wire):
    date: dt.date
    average_quality: float

    @field_validator("date", mode="before")
    @classmethod
    def _date_part(cls, value):
        # Server sends midnight instants for day points
        if isinstance(value, str) and "T" in value:
            return value.split("T", 1)[0]
        return value


class HourlyBucket(_Wire):
    hour: int = Field(ge=0, le=23)
    count: int = Field(ge=0)


class QualityCount(_Wire):
    quality: Quality
    count: int = Field(ge=0)


class WeeklyDay(_Wire):
    """One of the fixed seven days in the weekly overview."""

    day_of_week: int = Field(ge=1, le=7)  # 1 = Sunday
    day_name: str
    count: int = Field(ge=0)
    average_quality: float = 0.0
    severity: WeeklySeverity = WeeklySeverity.NONE
    date: dt.date | None = None


class HealthInsight(_Wire):
    type: InsightType
    title: str
    message: str
    recommendation: str | None = None


class InsightsEnvelope(_Wire):
    insights: list[HealthInsight] = Field(default_factory=list)


TREND_LIST = TypeAdapter(list[QualityTrendPoint])
HOURLY_LIST = TypeAdapter(list[HourlyBucket])
DISTRIBUTION_LIST = TypeAdapter(list[QualityCount])
WEEKLY_LIST = TypeAdapter(list[WeeklyDay])
INSIGHT_LIST = TypeAdapter(list[HealthInsight])
