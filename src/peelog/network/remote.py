"""Client for the remote sync and analytics service."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError

from peelog.analytics.schemas import (
    DISTRIBUTION_LIST,
    HOURLY_LIST,
    TREND_LIST,
    WEEKLY_LIST,
    HealthInsight,
    HourlyBucket,
    InsightsEnvelope,
    OverviewStats,
    QualityCount,
    QualityTrendPoint,
    WeeklyDay,
)
from peelog.core.config import RemoteConfig
from peelog.core.errors import ServerError
from peelog.core.schemas import Event, format_timestamp
from peelog.network.http import ServiceClient, TokenProvider
from peelog.network.schemas import EventDeltaResponse, EventSetResponse, MutationResponse, RemoteEvent

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _parse(model: type[M], payload: Any, endpoint: str) -> M:
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise ServerError(f"Unexpected {endpoint} response: {e.error_count()} invalid fields") from e


def _parse_list(adapter: TypeAdapter, payload: Any, endpoint: str) -> list:
    try:
        return adapter.validate_python(payload or [])
    except ValidationError as e:
        raise ServerError(f"Unexpected {endpoint} response: {e.error_count()} invalid fields") from e


class RemoteService(ServiceClient):
    """Remote authoritative event store plus server-side analytics.

    Analytics endpoints take a period-range body (``period``, ``startDate``,
    ``endDate``, ``timeZone``) built by ``AnalyticsRange.remote_body``.
    """

    def __init__(self, config: RemoteConfig, token_provider: TokenProvider | None = None, session=None):
        super().__init__(config.base_url, config.timeout_seconds, token_provider, session)

    # Events

    async def fetch_full_event_set(self, user_id: str) -> list[Event]:
        data = await self.post("events/list", {"userId": user_id})
        response = _parse(EventSetResponse, data or {}, "events/list")
        return [e.to_event(user_id) for e in response.events]

    async def fetch_event_delta(self, user_id: str, since: datetime) -> tuple[list[Event], list[str]]:
        """Events changed after ``since`` and ids deleted remotely since then."""
        data = await self.post("events/delta", {"userId": user_id, "since": format_timestamp(since)})
        response = _parse(EventDeltaResponse, data or {}, "events/delta")
        return [e.to_event(user_id) for e in response.events], response.deleted_ids

    async def upsert_events(self, user_id: str, events: list[Event]) -> list[str]:
        """Upload events; returns the ids the server accepted."""
        body = {"userId": user_id, "events": [RemoteEvent.from_event(e, user_id).to_wire() for e in events]}
        data = await self.post("events/upsert", body)
        if not data:
            return [e.id for e in events]
        return _parse(MutationResponse, data, "events/upsert").accepted

    async def delete_events(self, user_id: str, event_ids: list[str]) -> list[str]:
        data = await self.post("events/delete", {"userId": user_id, "ids": event_ids})
        if not data:
            return list(event_ids)
        return _parse(MutationResponse, data, "events/delete").accepted

    # Analytics

    async def fetch_overview(self, user_id: str, body: dict[str, Any]) -> OverviewStats:
        data = await self.post("statsOverview", {**body, "userId": user_id})
        return _parse(OverviewStats, data, "statsOverview")

    async def fetch_quality_trends(self, user_id: str, body: dict[str, Any]) -> list[QualityTrendPoint]:
        return _parse_list(TREND_LIST, await self.post("qualityTrends", {**body, "userId": user_id}), "qualityTrends")

    async def fetch_hourly(self, user_id: str, body: dict[str, Any]) -> list[HourlyBucket]:
        return _parse_list(HOURLY_LIST, await self.post("hourly", {**body, "userId": user_id}), "hourly")

    async def fetch_quality_distribution(self, user_id: str, body: dict[str, Any]) -> list[QualityCount]:
        data = await self.post("qualityDistribution", {**body, "userId": user_id})
        return _parse_list(DISTRIBUTION_LIST, data, "qualityDistribution")

    async def fetch_weekly(self, user_id: str, body: dict[str, Any]) -> list[WeeklyDay]:
        # The server always answers for the last seven days
        data = await self.post("weekly", {"userId": user_id, "timeZone": body.get("timeZone")})
        return _parse_list(WEEKLY_LIST, data, "weekly")

    async def fetch_insights(self, user_id: str, body: dict[str, Any]) -> list[HealthInsight]:
        data = await self.post("insights", {**body, "userId": user_id})
        return _parse(InsightsEnvelope, data or {}, "insights").insights
