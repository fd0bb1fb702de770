from datetime import datetime, timezone


class SystemClock:
    """Wall clock in naive UTC, matching how timestamps are stored"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


system_clock = SystemClock()
