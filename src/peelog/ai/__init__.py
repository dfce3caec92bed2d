"""AI insight service integration."""

from peelog.ai.insights_client import AIInsightClient, AIRateLimitError, AskRateLimiter

__all__ = ["AIInsightClient", "AIRateLimitError", "AskRateLimiter"]
