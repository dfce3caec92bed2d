"""AI insight service client: cached insight reads and the daily question limit."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from pydantic import ValidationError

from peelog.core.config import AIConfig, RemoteConfig
from peelog.core.errors import ErrorKind, InvalidInputError, PeeLogError, PermissionDeniedError, ServerError
from peelog.core.schemas import format_timestamp, utcnow
from peelog.core.session import SessionContext
from peelog.network.connectivity import ConnectivityMonitor
from peelog.network.http import ServiceClient, TokenProvider
from peelog.network.schemas import AIInsight, AIInsightKind, AskAIResponse
from peelog.storage.database import Database

logger = logging.getLogger(__name__)

RESOURCE_EXHAUSTED = 429


class AIRateLimitError(PeeLogError):
    """The daily custom-question allowance is used up."""

    kind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str = "You've already asked today's question. Try again tomorrow."):
        super().__init__(message, status=RESOURCE_EXHAUSTED)


def utc_day_key(at: datetime | None = None) -> str:
    return (at or utcnow()).astimezone(timezone.utc).strftime("%Y-%m-%d")


class AskRateLimiter:
    """Custom questions per user per UTC day, persisted in ``ai_question_log``."""

    def __init__(self, db: Database, daily_limit: int = 1):
        self.db = db
        self.daily_limit = daily_limit

    async def asked_today(self, user_id: str, now: datetime | None = None) -> int:
        row = await self.db.fetch_one(
            "SELECT COUNT(*) AS asked FROM ai_question_log WHERE user_id = ? AND day = ?",
            (user_id, utc_day_key(now)),
        )
        return row["asked"] if row else 0

    async def remaining_today(self, user_id: str, now: datetime | None = None) -> int:
        return max(0, self.daily_limit - await self.asked_today(user_id, now))

    async def can_ask_today(self, user_id: str, now: datetime | None = None) -> bool:
        return await self.remaining_today(user_id, now) > 0

    async def record(self, user_id: str, question: str | None, now: datetime | None = None) -> None:
        now = now or utcnow()
        await self.db.insert(
            "ai_question_log",
            {"user_id": user_id, "day": utc_day_key(now), "question": question, "asked_at": format_timestamp(now)},
        )

    async def exhaust(self, user_id: str, now: datetime | None = None) -> None:
        """Mark the day as used up, e.g. when the server says so."""
        for _ in range(await self.remaining_today(user_id, now)):
            await self.record(user_id, None, now)


class AIInsightClient(ServiceClient):
    """Reads generated insights and submits custom questions.

    Insight content is produced server side; this client only caches what it
    receives (so insights stay readable offline) and enforces the daily
    question limit before calling out.
    """

    def __init__(
        self,
        remote_config: RemoteConfig,
        config: AIConfig,
        db: Database,
        session: SessionContext,
        connectivity: ConnectivityMonitor,
        token_provider: TokenProvider | None = None,
        http_session=None,
    ):
        super().__init__(remote_config.base_url, remote_config.timeout_seconds, token_provider, http_session)
        self.config = config
        self.db = db
        self.session = session
        self.connectivity = connectivity
        self.limiter = AskRateLimiter(db, config.daily_question_limit)
        self.request_count = 0
        self._ask_locks: dict[str, asyncio.Lock] = {}

    def _require_account(self) -> str:
        user = self.session.user
        if user is None or user.is_guest:
            raise PermissionDeniedError("AI insights need a signed-in account")
        if not self.config.enabled:
            raise PermissionDeniedError("AI insights are disabled")
        return user.id

    async def _cached(self, user_id: str, kind: AIInsightKind) -> AIInsight | None:
        row = await self.db.fetch_one(
            "SELECT content, fetched_at FROM ai_insights WHERE user_id = ? AND kind = ? AND period_key = ?",
            (user_id, kind.value, kind.value),
        )
        if row is None:
            return None
        try:
            return AIInsight.model_validate_json(row["content"])
        except ValidationError as e:
            logger.warning(f"Dropping unreadable cached {kind.value} insight: {e.error_count()} errors")
            await self.db.execute(
                "DELETE FROM ai_insights WHERE user_id = ? AND kind = ? AND period_key = ?",
                (user_id, kind.value, kind.value),
            )
            return None

    async def _store(self, user_id: str, insight: AIInsight) -> None:
        await self.db.upsert(
            "ai_insights",
            {
                "user_id": user_id,
                "kind": insight.type.value,
                "period_key": insight.type.value,
                "content": insight.model_dump_json(by_alias=True),
                "fetched_at": format_timestamp(utcnow()),
            },
        )

    async def _fetch_insight(self, kind: AIInsightKind) -> AIInsight | None:
        user_id = self._require_account()
        token = self.session.token()

        if not self.connectivity.is_online:
            return await self._cached(user_id, kind)

        try:
            self.request_count += 1
            data = await self.post("ai/insight", {"userId": user_id, "kind": kind.value})
        except PeeLogError as e:
            if e.kind is ErrorKind.PERMISSION_DENIED:
                raise
            logger.warning(f"Fetching {kind.value} insight failed, serving cache: {e.message}")
            return await self._cached(user_id, kind)

        if not data:
            return None
        try:
            insight = AIInsight.model_validate(data)
        except ValidationError as e:
            raise ServerError(f"Unexpected ai/insight response: {e.error_count()} invalid fields") from e

        if self.session.is_current(token):
            await self._store(user_id, insight)
        return insight

    async def fetch_daily_insight(self) -> AIInsight | None:
        return await self._fetch_insight(AIInsightKind.DAILY)

    async def fetch_weekly_insight(self) -> AIInsight | None:
        return await self._fetch_insight(AIInsightKind.WEEKLY)

    async def fetch_custom_insight(self) -> AIInsight | None:
        """The answer to the most recent custom question, if any."""
        return await self._fetch_insight(AIInsightKind.CUSTOM)

    async def can_ask_today(self) -> bool:
        user = self.session.user
        if user is None or user.is_guest or not self.config.enabled:
            return False
        return await self.limiter.can_ask_today(user.id)

    async def remaining_today(self) -> int:
        user = self.session.user
        if user is None or user.is_guest:
            return 0
        return await self.limiter.remaining_today(user.id)

    async def ask(self, question: str) -> AskAIResponse:
        """Submit one custom question.

        Raises:
            AIRateLimitError: Today's allowance is used, locally or per the server.
            InvalidInputError: The question is empty or rejected by the server.
        """
        question = question.strip()
        if not question:
            raise InvalidInputError("Please enter a question")

        user_id = self._require_account()
        # Check, post and record as one step so concurrent asks cannot share an allowance
        async with self._ask_locks.setdefault(user_id, asyncio.Lock()):
            return await self._ask(user_id, question)

    async def _ask(self, user_id: str, question: str) -> AskAIResponse:
        if not await self.limiter.can_ask_today(user_id):
            raise AIRateLimitError()

        try:
            self.request_count += 1
            data = await self.post("ai/ask", {"userId": user_id, "question": question})
        except PeeLogError as e:
            if e.status == RESOURCE_EXHAUSTED:
                await self.limiter.exhaust(user_id)
                raise AIRateLimitError() from e
            if e.status == 400:
                raise InvalidInputError("Invalid question. Please try a different prompt.", status=400) from e
            raise

        try:
            response = AskAIResponse.model_validate(data or {})
        except ValidationError as e:
            raise ServerError("The AI service returned an empty answer") from e

        await self.limiter.record(user_id, question)
        await self._store(
            user_id,
            AIInsight(type=AIInsightKind.CUSTOM, content=response.insight, generated_at=utcnow(), question=question),
        )
        logger.info(f"AI question answered for {user_id}")
        return response

