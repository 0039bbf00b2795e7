"""
Retry policy and write attempt state machine

Backoff for attempt n (1-based retry number):

    delay = min(retry_interval * exponential_base ** (n - 1), max_retry_delay) + uniform(0, retry_jitter)

A Retry-After header from the server replaces the computed delay.
"""

import math
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import List, Optional

from lineflux.config import WriteOptions

RETRYABLE_STATUSES = frozenset({429})


def is_retryable_status(status: int) -> bool:
    """429 Too Many Requests and any 5xx are worth retrying"""
    return status in RETRYABLE_STATUSES or 500 <= status <= 599


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """
    Parse a Retry-After header into seconds

    Accepts delta-seconds ("120") and HTTP dates ("Wed, 21 Oct 2015 07:28:00 GMT").
    Returns None when absent or unparseable; dates in the past give 0.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None

    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        return max(0.0, seconds) if math.isfinite(seconds) else None

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


class RetryPolicy:
    """Bounded exponential backoff with jitter"""

    def __init__(
        self,
        max_retries: int = 5,
        retry_interval: float = 1.0,
        max_retry_delay: float = 30.0,
        exponential_base: float = 2.0,
        retry_jitter: float = 0.2,
        rng: Optional[random.Random] = None
    ):
        self.max_retries = max_retries
        self.retry_interval = retry_interval
        self.max_retry_delay = max_retry_delay
        self.exponential_base = exponential_base
        self.retry_jitter = retry_jitter
        self._rng = rng or random.Random()

    @classmethod
    def from_options(cls, options: WriteOptions) -> "RetryPolicy":
        return cls(
            max_retries=options.max_retries,
            retry_interval=options.retry_interval,
            max_retry_delay=options.max_retry_delay,
            exponential_base=options.exponential_base,
            retry_jitter=options.retry_jitter
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def can_retry(self, retries_done: int) -> bool:
        return retries_done < self.max_retries

    def delay_for(self, retry_number: int, retry_after: Optional[float] = None) -> float:
        """Seconds to wait before retry number `retry_number` (1-based)"""
        if retry_after is not None:
            return retry_after

        delay = self.retry_interval * (self.exponential_base ** (retry_number - 1))
        delay = min(delay, self.max_retry_delay)
        if self.retry_jitter > 0:
            delay += self._rng.uniform(0, self.retry_jitter)
        return delay


class WriteState(Enum):
    PENDING = "pending"
    SENDING = "sending"
    RETRY_SCHEDULED = "retry_scheduled"
    SUCCESS = "success"
    FAILED = "failed"


_TRANSITIONS = {
    WriteState.PENDING: {WriteState.SENDING},
    WriteState.SENDING: {WriteState.SUCCESS, WriteState.RETRY_SCHEDULED, WriteState.FAILED},
    WriteState.RETRY_SCHEDULED: {WriteState.SENDING},
    WriteState.SUCCESS: set(),
    WriteState.FAILED: set(),
}


@dataclass
class WriteResult:
    """Outcome of sending one batch, with its state history"""

    batch_id: Optional[str] = None
    state: WriteState = WriteState.PENDING
    attempts: int = 0
    status: Optional[int] = None
    history: List[WriteState] = field(default_factory=lambda: [WriteState.PENDING])

    def transition(self, new_state: WriteState):
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal write state transition {self.state.value} -> {new_state.value}")
        if new_state is WriteState.SENDING:
            self.attempts += 1
        self.state = new_state
        self.history.append(new_state)

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)

    @property
    def is_terminal(self) -> bool:
        return self.state in (WriteState.SUCCESS, WriteState.FAILED)

    @property
    def succeeded(self) -> bool:
        return self.state is WriteState.SUCCESS
