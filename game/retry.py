"""Retry delays and policies.

Delay functions are pure so retry behaviour can be tested without waiting;
the sleep primitive is injected by whoever runs the loop.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable

Sleep = Callable[[float], Awaitable[None]]


def exponential_delay(attempt: int, base: float = 1.0) -> float:
    """Delay after a failed ``attempt`` (1-based): base, 2*base, 4*base, ..."""
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    return base * (2 ** (attempt - 1))


def fixed_delay(attempt: int, delay: float = 5.0) -> float:
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    return delay


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    backoff: str = "exponential"  # "exponential" | "fixed"

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.backoff not in ("exponential", "fixed"):
            raise ValueError(f"Unknown backoff: {self.backoff}")

    def next_delay(self, attempt: int) -> float:
        if self.backoff == "fixed":
            return fixed_delay(attempt, self.base_delay)
        return exponential_delay(attempt, self.base_delay)

    def delays(self) -> list[float]:
        """Waits between attempts; one fewer than ``max_attempts``."""
        return [self.next_delay(n) for n in range(1, self.max_attempts)]
