"""Local statistics over an event set.

These are the last-resort fallbacks used when neither the remote service nor
the cache can answer, so they must agree with the server's definitions:

- Average daily: total events / distinct active days (not calendar days).
- Health score: 0.7 * optimal share + 0.2 * acceptable share (clear and
  pale yellow) + 0.1 * concerning share; 0.0 for an empty set.
- Hourly histogram: always 24 buckets by local hour.
- Quality trend: one point per active day, ascending by date.
- Weekly overview: today and the six preceding days, oldest first.
- Distribution: zero counts omitted, sorted by count descending.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from datetime import date, datetime, timedelta, tzinfo
from typing import Iterable

from peelog.analytics.schemas import (
    HealthInsight,
    HourlyBucket,
    InsightType,
    Interpretation,
    OverviewStats,
    QualityCount,
    QualityTrendPoint,
    WeeklyDay,
    WeeklySeverity,
)
from peelog.core.schemas import Event, Quality

logger = logging.getLogger(__name__)

OPTIMAL_WEIGHT = 0.7
ACCEPTABLE_WEIGHT = 0.2
CONCERNING_WEIGHT = 0.1

_DAY_NAMES = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
_QUALITY_ORDER = {q: i for i, q in enumerate(Quality)}


def day_of_week(day: date) -> int:
    """1 = Sunday ... 7 = Saturday."""
    return (day.weekday() + 1) % 7 + 1


def health_score(events: list[Event]) -> float:
    if not events:
        return 0.0
    total = len(events)
    optimal = sum(1 for e in events if e.quality.is_optimal)
    acceptable = sum(1 for e in events if e.quality.is_acceptable)
    concerning = sum(1 for e in events if e.quality.is_concerning)
    score = (
        optimal / total * OPTIMAL_WEIGHT
        + acceptable / total * ACCEPTABLE_WEIGHT
        + concerning / total * CONCERNING_WEIGHT
    )
    return min(max(score, 0.0), 1.0)


def interpret_health_score(score: float) -> Interpretation:
    if score > 0.85:
        return Interpretation(label="Excellent", severity=InsightType.POSITIVE)
    if score >= 0.7:
        return Interpretation(label="Good", severity=InsightType.POSITIVE)
    if score >= 0.5:
        return Interpretation(label="Moderate", severity=InsightType.INFO)
    if score >= 0.3:
        return Interpretation(label="Poor", severity=InsightType.WARNING)
    return Interpretation(label="Very Poor", severity=InsightType.WARNING)


def weekly_severity(count: int, average_quality: float) -> WeeklySeverity:
    if count == 0:
        return WeeklySeverity.NONE
    if average_quality >= 4.0:
        return WeeklySeverity.EXCELLENT
    if average_quality >= 3.0:
        return WeeklySeverity.GOOD
    if average_quality >= 2.0:
        return WeeklySeverity.FAIR
    return WeeklySeverity.POOR


def normalize_hourly(buckets: Iterable[HourlyBucket]) -> list[HourlyBucket]:
    """Expand a possibly sparse histogram to exactly 24 buckets."""
    counts = [0] * 24
    for bucket in buckets:
        counts[bucket.hour] += bucket.count
    return [HourlyBucket(hour=h, count=c) for h, c in enumerate(counts)]


def weekly_grid(today: date) -> list[date]:
    """The seven days ending ``today``, oldest first."""
    return [today - timedelta(days=offset) for offset in range(6, -1, -1)]


def _weekly_day(day: date, count: int, average_quality: float) -> WeeklyDay:
    dow = day_of_week(day)
    return WeeklyDay(
        day_of_week=dow,
        day_name=_DAY_NAMES[dow - 1],
        count=count,
        average_quality=average_quality,
        severity=weekly_severity(count, average_quality),
        date=day,
    )


def normalize_weekly(days: Iterable[WeeklyDay], today: date) -> list[WeeklyDay]:
    """Place a possibly sparse weekly answer on the seven-day grid.

    Rows are matched by date, or by day of week when the date is missing;
    days without a row get zero count and no severity.
    """
    by_date: dict[date, WeeklyDay] = {}
    by_dow: dict[int, WeeklyDay] = {}
    for row in days:
        if row.date is not None:
            by_date[row.date] = row
        else:
            by_dow[row.day_of_week] = row

    grid = []
    for day in weekly_grid(today):
        row = by_date.get(day) or by_dow.get(day_of_week(day))
        if row is None:
            grid.append(_weekly_day(day, 0, 0.0))
        else:
            grid.append(_weekly_day(day, row.count, row.average_quality if row.count else 0.0))
    return grid


def _mean_quality(events: list[Event]) -> float:
    if not events:
        return 0.0
    return sum(e.quality.numeric_value for e in events) / len(events)


class AnalyticsCalculator:
    """Pure, timezone-aware computations over lists of events."""

    def __init__(self, tz: tzinfo, min_active_days: int = 3):
        self.tz = tz
        self.min_active_days = min_active_days

    def local_day(self, event: Event) -> date:
        return event.timestamp.astimezone(self.tz).date()

    def events_by_day(self, events: Iterable[Event]) -> dict[date, list[Event]]:
        grouped: dict[date, list[Event]] = defaultdict(list)
        for event in events:
            grouped[self.local_day(event)].append(event)
        return grouped

    def active_days(self, events: Iterable[Event]) -> int:
        return len({self.local_day(e) for e in events})

    def overview(self, events: list[Event], now: datetime) -> OverviewStats:
        total = len(events)
        active = self.active_days(events)
        week_ago = now - timedelta(days=7)
        score = health_score(events)

        return OverviewStats(
            total_events=total,
            this_week_events=sum(1 for e in events if e.timestamp >= week_ago),
            average_daily=total / active if active else 0.0,
            health_score=score,
            health_score_interpretation=interpret_health_score(score),
            active_days=active,
            min_active_days=self.min_active_days,
        )

    def quality_trends(self, events: list[Event]) -> list[QualityTrendPoint]:
        grouped = self.events_by_day(events)
        return [
            QualityTrendPoint(date=day, average_quality=_mean_quality(day_events))
            for day, day_events in sorted(grouped.items())
        ]

    def hourly(self, events: list[Event]) -> list[HourlyBucket]:
        counts = Counter(e.timestamp.astimezone(self.tz).hour for e in events)
        return [HourlyBucket(hour=h, count=counts.get(h, 0)) for h in range(24)]

    def distribution(self, events: list[Event]) -> list[QualityCount]:
        counts = Counter(e.quality for e in events)
        ordered = sorted(counts.items(), key=lambda item: (-item[1], _QUALITY_ORDER[item[0]]))
        return [QualityCount(quality=q, count=c) for q, c in ordered if c > 0]

    def weekly(self, events: list[Event], now: datetime) -> list[WeeklyDay]:
        """Fixed seven-day overview ending today, oldest first."""
        grouped = self.events_by_day(events)
        days = []
        for day in weekly_grid(now.astimezone(self.tz).date()):
            day_events = grouped.get(day, [])
            days.append(_weekly_day(day, len(day_events), _mean_quality(day_events)))
        return days

    def insights(self, stats: OverviewStats, events: list[Event], now: datetime) -> list[HealthInsight]:
        """Rule-based hydration, frequency and consistency insights."""
        if stats.total_events == 0:
            return [
                HealthInsight(
                    type=InsightType.INFO,
                    title="No Data Yet",
                    message="Log a few events to see insights about your hydration.",
                    recommendation="Start tracking today.",
                )
            ]

        insights = [self._hydration_insight(stats.health_score), self._frequency_insight(stats.average_daily)]

        previous_week = sum(
            1 for e in events if now - timedelta(days=14) <= e.timestamp < now - timedelta(days=7)
        )
        if previous_week and stats.this_week_events > previous_week:
            insights.append(
                HealthInsight(
                    type=InsightType.POSITIVE,
                    title="Improving Trend",
                    message="Your tracking consistency has improved this week.",
                    recommendation="Keep tracking!",
                )
            )
        elif stats.this_week_events >= 7:
            insights.append(
                HealthInsight(
                    type=InsightType.POSITIVE,
                    title="Consistent Tracking",
                    message="You're maintaining good tracking habits this week.",
                    recommendation="Great consistency!",
                )
            )
        return insights

    @staticmethod
    def _hydration_insight(score: float) -> HealthInsight:
        if score > 0.85:
            return HealthInsight(
                type=InsightType.POSITIVE,
                title="Excellent Hydration",
                message="Your urine quality indicates optimal hydration levels with mostly pale yellow urine.",
                recommendation="Keep it up! You're maintaining perfect hydration balance.",
            )
        if score >= 0.7:
            return HealthInsight(
                type=InsightType.POSITIVE,
                title="Good Hydration",
                message="You're maintaining healthy hydration levels most of the time.",
                recommendation="Continue your current hydration habits.",
            )
        if score >= 0.5:
            return HealthInsight(
                type=InsightType.INFO,
                title="Moderate Hydration",
                message="Your hydration levels show room for improvement with some concerning patterns.",
                recommendation="Aim for more pale yellow urine by drinking water regularly.",
            )
        if score >= 0.3:
            return HealthInsight(
                type=InsightType.WARNING,
                title="Poor Hydration",
                message="Your urine suggests you may be dehydrated or overhydrated frequently.",
                recommendation="Monitor your water intake and aim for pale yellow urine.",
            )
        return HealthInsight(
            type=InsightType.WARNING,
            title="Very Poor Hydration",
            message="Your urine patterns indicate significant hydration concerns.",
            recommendation="Please consult a healthcare professional about your hydration patterns.",
        )

    @staticmethod
    def _frequency_insight(average_daily: float) -> HealthInsight:
        if average_daily > 8:
            return HealthInsight(
                type=InsightType.INFO,
                title="High Frequency",
                message="You're logging more than 8 events per day on average.",
                recommendation="Monitor patterns",
            )
        if average_daily >= 6:
            return HealthInsight(
                type=InsightType.POSITIVE,
                title="Optimal Frequency",
                message="Your daily frequency is in the healthy range of 6-8 times.",
                recommendation="Perfect balance!",
            )
        if average_daily >= 4:
            return HealthInsight(
                type=InsightType.INFO,
                title="Normal Frequency",
                message="Your frequency is within normal range but could be higher.",
                recommendation="Consider drinking more",
            )
        return HealthInsight(
            type=InsightType.WARNING,
            title="Low Frequency",
            message="You're logging fewer than 4 events per day.",
            recommendation="Stay hydrated",
        )
