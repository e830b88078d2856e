from __future__ import annotations

from datetime import datetime, timedelta, timezone


class FakeClock:
    # Injected as time_provider so expiry and period rollover need no sleeping.
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)
