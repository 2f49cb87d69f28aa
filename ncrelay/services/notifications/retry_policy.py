from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Sequence

from ncrelay.core.config import get_settings


DEFAULT_RETRY_DELAYS_S: tuple[int, ...] = (60, 300, 1800)


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: timedelta


def _normalize_delays(delays_s: Sequence[int | float]) -> tuple[float, ...]:
    if not delays_s:
        raise ValueError("retry schedule must contain at least one delay")
    normalized = tuple(float(value) for value in delays_s)
    if any(value < 0 for value in normalized):
        raise ValueError("retry delays must be non-negative")
    return normalized


def backoff_delay(retry_count: int, delays_s: Sequence[int | float] = DEFAULT_RETRY_DELAYS_S) -> timedelta:
    # Index the schedule by retry count and clamp to the last entry.
    if retry_count < 0:
        raise ValueError("retry_count must be >= 0")
    schedule = _normalize_delays(delays_s)
    return timedelta(seconds=schedule[min(int(retry_count), len(schedule) - 1)])


def next_attempt(
    retry_count: int,
    max_retries: int,
    *,
    delays_s: Sequence[int | float] = DEFAULT_RETRY_DELAYS_S,
) -> RetryDecision:
    """Decide whether another attempt is allowed and how long to wait for it.

    Pure: no clock, no store, no network. ``retry`` is true while
    ``retry_count < max_retries``; the delay is always reported so callers can
    log what the schedule would have been.
    """
    if max_retries < 0:
        raise ValueError("max_retries must be >= 0")
    return RetryDecision(
        retry=int(retry_count) < int(max_retries),
        delay=backoff_delay(retry_count, delays_s),
    )


@dataclass(frozen=True)
class RetryPolicy:
    # Bind a schedule once so the delivery path does not re-read settings per row.
    delays_s: tuple[float, ...] = field(default=tuple(float(value) for value in DEFAULT_RETRY_DELAYS_S))

    def __post_init__(self) -> None:
        object.__setattr__(self, "delays_s", _normalize_delays(self.delays_s))

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(delays_s=tuple(get_settings().queue_retry_delays_s))

    def backoff(self, retry_count: int) -> timedelta:
        return backoff_delay(retry_count, self.delays_s)

    def next_attempt(self, retry_count: int, max_retries: int) -> RetryDecision:
        return next_attempt(retry_count, max_retries, delays_s=self.delays_s)

    def after_failed_attempt(self, retry_count: int, max_retries: int) -> tuple[RetryDecision, int]:
        """Resolve a failed attempt against a row that had ``retry_count`` prior failures.

        The attempt just made is number ``retry_count + 1``. When another try is
        allowed the row records that many failures and waits the schedule entry
        for its first, second, ... retry; otherwise the count is capped at
        ``max_retries`` for the terminal failed state.
        """
        attempts = int(retry_count) + 1
        decision = self.next_attempt(attempts, max_retries)
        if decision.retry:
            return RetryDecision(retry=True, delay=self.backoff(attempts - 1)), attempts
        return RetryDecision(retry=False, delay=self.backoff(attempts - 1)), min(attempts, int(max_retries))
