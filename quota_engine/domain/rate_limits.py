"""Domain models describing per-model request rate limiting state."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_serializer


class RateLimitDenialReason(str, Enum):
    DAILY_LIMIT_EXCEEDED = "daily_limit_exceeded"
    MINUTE_LIMIT_EXCEEDED = "minute_limit_exceeded"


class ResetTimes(BaseModel):
    daily: datetime = Field(description="Next UTC midnight")
    minute: datetime = Field(description="Start of the next UTC minute")


class RateLimitCounter(BaseModel):
    """Persisted per (account, resource) counter with two rolling windows."""

    account_id: str
    resource_id: str
    daily_count: int = Field(default=0, ge=0)
    minute_count: int = Field(default=0, ge=0)
    last_daily_reset: datetime | None = None
    last_minute_reset: datetime | None = None

    class Config:
        from_attributes = True


class AbsentCounter(BaseModel):
    """Read result for an (account, resource) pair with no stored row yet."""

    account_id: str
    resource_id: str


class PresentCounter(BaseModel):
    counter: RateLimitCounter


CounterRead = AbsentCounter | PresentCounter


class RateLimitResult(BaseModel):
    """Represents the outcome of a rate limit check."""

    allowed: bool = Field(
        description="Whether the request is permitted under the configured limits",
    )
    reason: RateLimitDenialReason | None = Field(default=None)
    remaining_daily: float = Field(
        description="Requests left today; infinite for unmetered or waived resources",
        ge=0,
    )
    remaining_minute: float = Field(
        description="Requests left in the current minute",
        ge=0,
    )
    reset_times: ResetTimes

    @field_serializer("remaining_daily", "remaining_minute", when_used="json")
    def _serialize_unlimited(self, value: float) -> float | None:
        return None if math.isinf(value) else value

    def retry_after_seconds(self, now: datetime) -> int:
        """Seconds until the window that caused a denial rolls over."""

        if self.allowed or self.reason is None:
            return 0
        if self.reason == RateLimitDenialReason.DAILY_LIMIT_EXCEEDED:
            target = self.reset_times.daily
        else:
            target = self.reset_times.minute
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return max(int(math.ceil((target - now).total_seconds())), 0)


class RateLimitStatus(BaseModel):
    """Current usage of a metered resource, framed for display."""

    resource_id: str
    daily_count: int = Field(ge=0)
    minute_count: int = Field(ge=0)
    daily_limit: float = Field(ge=0)
    minute_limit: float = Field(ge=0)
    remaining_daily: float = Field(ge=0)
    remaining_minute: float = Field(ge=0)
    reset_times: ResetTimes

    @field_serializer(
        "daily_limit", "minute_limit", "remaining_daily", "remaining_minute", when_used="json"
    )
    def _serialize_unlimited(self, value: float) -> float | None:
        return None if math.isinf(value) else value


class RateLimitExceededPayload(BaseModel):
    """Structured error payload returned when a limit is exceeded."""

    message: str = Field(default="Rate limit exceeded")
    reason: RateLimitDenialReason
    resource_id: str
    remaining_daily: float = Field(ge=0)
    remaining_minute: float = Field(ge=0)
    retry_after: int = Field(
        description="Seconds until clients should retry the blocked action",
        ge=0,
    )
