"""Statistics over the event log with remote, cache and local tiers."""

from peelog.analytics.ranges import AnalyticsRange, RangeKind

__all__ = ["AnalyticsRange", "RangeKind"]
