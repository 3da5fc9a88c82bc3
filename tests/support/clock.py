from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone


@dataclass
class FakeClock:
    """
    Minimal deterministic clock for tests.

    Satisfies `runplane.kernel.time.Clock`; `ms()` feeds the millisecond
    clocks used by the rate limiter and the provider health registry.
    """

    now_utc: datetime

    @classmethod
    def fixed(cls, *, year: int = 2026, month: int = 1, day: int = 1) -> "FakeClock":
        return cls(now_utc=datetime(year, month, day, 0, 0, 0, tzinfo=timezone.utc))

    def now(self) -> datetime:
        return self.now_utc

    def ms(self) -> float:
        return self.now_utc.timestamp() * 1000

    def advance(self, delta: timedelta) -> None:
        self.now_utc = self.now_utc + delta
