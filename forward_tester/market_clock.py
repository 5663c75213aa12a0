"""Venue calendar for a 24/5 FX market. No I/O, no hidden state."""

from datetime import datetime, timedelta, timezone
from typing import Tuple

from forward_tester.models import MarketStatus, VolumeRegime

WEEKLY_CLOSE_WEEKDAY = 4  # Friday
WEEKLY_OPEN_WEEKDAY = 6  # Sunday
ROLLOVER_HOUR_UTC = 22

# (name, start hour, end hour) in UTC, end exclusive, may wrap past midnight
TRADING_SESSIONS: Tuple[Tuple[str, int, int], ...] = (
    ("Sydney", 21, 6),
    ("Tokyo", 0, 9),
    ("London", 7, 16),
    ("New York", 12, 21),
)


def _as_utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def _in_window(hour: int, start: int, end: int) -> bool:
    if start <= end:
        return start <= hour < end
    return hour >= start or hour < end


class MarketClock:
    """
    Determines whether the venue is open and the liquidity regime.

    The market closes Friday 22:00 UTC and reopens Sunday 22:00 UTC.
    """

    def status(self, now: datetime) -> MarketStatus:
        now = _as_utc(now)
        is_open = self.is_open(now)
        return MarketStatus(
            is_open=is_open,
            volume_regime=self.volume_regime(now.hour),
            next_transition=self._next_transition(now, is_open),
            active_sessions=self.active_sessions(now.hour) if is_open else (),
        )

    @staticmethod
    def is_open(now: datetime) -> bool:
        now = _as_utc(now)
        weekday = now.weekday()
        if weekday == 5:
            return False
        if weekday == WEEKLY_OPEN_WEEKDAY and now.hour < ROLLOVER_HOUR_UTC:
            return False
        if weekday == WEEKLY_CLOSE_WEEKDAY and now.hour >= ROLLOVER_HOUR_UTC:
            return False
        return True

    @staticmethod
    def volume_regime(hour_utc: int) -> VolumeRegime:
        # London-NY overlap
        if 12 <= hour_utc < 17:
            return VolumeRegime.HIGH
        # Tokyo-London overlap
        if 7 <= hour_utc < 9:
            return VolumeRegime.HIGH
        if 8 <= hour_utc < 17 or 0 <= hour_utc < 9:
            return VolumeRegime.MEDIUM
        return VolumeRegime.LOW

    @staticmethod
    def active_sessions(hour_utc: int) -> Tuple[str, ...]:
        return tuple(name for name, start, end in TRADING_SESSIONS if _in_window(hour_utc, start, end))

    @staticmethod
    def _next_transition(now: datetime, is_open: bool) -> datetime:
        target_weekday = WEEKLY_CLOSE_WEEKDAY if is_open else WEEKLY_OPEN_WEEKDAY
        days_ahead = (target_weekday - now.weekday()) % 7
        candidate = (now + timedelta(days=days_ahead)).replace(
            hour=ROLLOVER_HOUR_UTC, minute=0, second=0, microsecond=0
        )
        if candidate <= now:
            candidate += timedelta(days=7)
        return candidate


def format_status(status: MarketStatus) -> str:
    if not status.is_open:
        return "Markets Closed"
    return f"Markets Open ({status.volume_regime.value} volume)"
