from __future__ import annotations
import random
from dataclasses import dataclass
from typing import Callable, Iterator, Optional


@dataclass(frozen=True)
class ExponentialBackoff:
    """
    Reconnect delays: base, base*factor, base*factor**2, ... capped at
    max_delay. ``max_attempts=None`` retries forever.

    ``jitter`` is the fraction (0..1) of each delay that may be shaved off at
    random so a crowd of clients dropped together does not redial in lockstep.
    """
    base: float = 1.0
    factor: float = 2.0
    max_delay: float = 60.0
    max_attempts: Optional[int] = 10
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.base < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")
        if self.max_attempts is not None and self.max_attempts < 0:
            raise ValueError("max_attempts must not be negative")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")

    def delay_for(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """Delay before attempt number ``attempt`` (0-based)."""
        if attempt < 0:
            raise ValueError("attempt must not be negative")
        # cap the exponent before it overflows a float
        try:
            delay = min(self.base * (self.factor ** attempt), self.max_delay)
        except OverflowError:
            delay = self.max_delay
        if self.jitter:
            delay -= delay * self.jitter * rand()
        return delay

    def delays(self, rand: Callable[[], float] = random.random) -> Iterator[float]:
        attempt = 0
        while self.max_attempts is None or attempt < self.max_attempts:
            yield self.delay_for(attempt, rand)
            attempt += 1
