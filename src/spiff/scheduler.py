"""Priority queues and sliding-window rate limits for the API dispatcher.

Priorities:
    NORMAL (0)    interactive requests forwarded from the UI, startup calls
    BULK_LOAD (1) star chart crawl; only sent when nothing at NORMAL is waiting

Any non-negative integer is a valid priority internally; a queue exists only
while it holds requests, and lower numbers always drain first. The forward
route accepts NORMAL and BULK_LOAD only.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import IntEnum
from typing import Generic, TypeVar

T = TypeVar("T")


class Priority(IntEnum):
    """Request priority levels (lower = serviced first)."""

    NORMAL = 0
    BULK_LOAD = 1


@dataclass(frozen=True)
class RateLimitRule:
    """At most `max_count` completed requests in any trailing `window` seconds."""

    max_count: int
    window: float


class PastRequestLog:
    """Ascending timestamps of received responses, trimmed from the front."""

    def __init__(self, max_entries: int, max_age: float) -> None:
        self.max_age = max_age
        self._times: deque[float] = deque(maxlen=max_entries)

    def append(self, timestamp: float) -> None:
        # Responses can be stamped slightly out of order; keep the log sorted.
        if self._times and timestamp < self._times[-1]:
            timestamp = self._times[-1]
        self._times.append(timestamp)

    def prune(self, now: float) -> None:
        """Drop entries older than the longest tracked window."""
        cutoff = now - self.max_age
        while self._times and self._times[0] < cutoff:
            self._times.popleft()

    def __len__(self) -> int:
        return len(self._times)

    def __getitem__(self, index: int) -> float:
        return self._times[index]

    def __iter__(self) -> Iterator[float]:
        return iter(self._times)


class RateLimits:
    """Immutable set of sliding-window rules plus the limits derived from them."""

    def __init__(self, rules: Iterable[RateLimitRule | tuple[int, float]]) -> None:
        parsed = tuple(
            r if isinstance(r, RateLimitRule) else RateLimitRule(int(r[0]), float(r[1]))
            for r in rules
        )
        if not parsed:
            raise ValueError("At least one rate limit rule is required")
        for rule in parsed:
            if rule.max_count < 1 or rule.window <= 0:
                raise ValueError(f"Invalid rate limit rule: {rule}")
        self.rules: tuple[RateLimitRule, ...] = parsed
        self.concurrency_cap = min(r.max_count for r in parsed)
        self.history_size = max(r.max_count for r in parsed)
        self.tracked_duration = max(r.window for r in parsed)

    def new_log(self) -> PastRequestLog:
        return PastRequestLog(self.history_size, self.tracked_duration)

    def required_wait(self, past: PastRequestLog, now: float, in_flight: int) -> float:
        """Seconds until one more request may be sent without breaking any rule.

        Requests still in flight will land inside the window once they complete,
        so they are charged against every rule's budget up front.
        """
        wait = 0.0
        for rule in self.rules:
            remaining = rule.max_count - in_flight
            if remaining <= 0:
                # Only reachable when the concurrency cap is bypassed; wait a full window.
                wait = max(wait, rule.window)
                continue
            if remaining > len(past):
                continue
            next_send = past[len(past) - remaining] + rule.window
            wait = max(wait, next_send - now)
        return wait

    def __repr__(self) -> str:
        rules = ", ".join(f"{r.max_count}/{r.window}s" for r in self.rules)
        return f"RateLimits({rules})"


class RequestQueues(Generic[T]):
    """One FIFO per priority in use; lower priorities are serviced first."""

    def __init__(self) -> None:
        # Only non-empty queues are kept, so cost tracks the classes in use.
        self._queues: dict[int, deque[T]] = {}

    def _queue(self, priority: int) -> deque[T]:
        if priority < 0:
            raise ValueError(f"Invalid priority: {priority}")
        return self._queues.setdefault(priority, deque())

    def push(self, priority: int, item: T) -> None:
        self._queue(priority).append(item)

    def push_front(self, priority: int, item: T) -> None:
        """Re-insert at the head of its own class (used for retries)."""
        self._queue(priority).appendleft(item)

    def pop_next(self) -> tuple[int, T]:
        if not self._queues:
            raise IndexError("pop from empty request queues")
        priority = min(self._queues)
        queue = self._queues[priority]
        item = queue.popleft()
        if not queue:
            del self._queues[priority]
        return priority, item

    def sizes(self) -> dict[int, int]:
        """Queued request count per priority in use, lowest priority first."""
        return {p: len(self._queues[p]) for p in sorted(self._queues)}

    def __len__(self) -> int:
        return sum(len(q) for q in self._queues.values())

    def __bool__(self) -> bool:
        return bool(self._queues)
