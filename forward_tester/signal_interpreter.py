import logging
from typing import Optional

from forward_tester.config import MIN_SIGNAL_CONFIDENCE
from forward_tester.models import (
    ActionableSignal,
    Direction,
    MarketStatus,
    SignalSeries,
    TradingSession,
    VolumeRegime,
)

logger = logging.getLogger(__name__)


class SignalInterpreter:
    """
    Reduces a SignalSeries to at most one order intent for the current bar.

    Only the last index is looked at; earlier bars are history. Stateless,
    so the same inputs always give the same answer.
    """

    def __init__(self, min_confidence: float = MIN_SIGNAL_CONFIDENCE):
        self.min_confidence = min_confidence

    @staticmethod
    def should_execute(status: MarketStatus, session: TradingSession) -> bool:
        """Market-conditions gate for a session: closed venue or opted-out low volume."""
        if not status.is_open:
            return False
        if session.avoid_low_volume and status.volume_regime == VolumeRegime.LOW:
            return False
        return True

    def interpret(
        self,
        series: SignalSeries,
        session: TradingSession,
        market_status: MarketStatus,
    ) -> Optional[ActionableSignal]:
        if not self.should_execute(market_status, session):
            logger.debug(f"Session {session.id}: market gate closed ({market_status.volume_regime.value} volume)")
            return None

        if series.error:
            return None

        if len(series) == 0:
            return None
        last = len(series) - 1

        if not series.entry[last]:
            return None

        raw_direction = series.direction[last] if last < len(series.direction) else None
        try:
            direction = Direction(raw_direction)
        except ValueError:
            logger.debug(f"Session {session.id}: entry on last bar without usable direction {raw_direction!r}")
            return None

        confidence = None
        if series.confidence is not None:
            confidence = series.confidence[last] if last < len(series.confidence) else None
            if confidence is None or confidence < self.min_confidence:
                logger.debug(
                    f"Session {session.id}: confidence {confidence} below threshold {self.min_confidence}"
                )
                return None

        if session.reverse_signals:
            return ActionableSignal(
                direction=direction.reversed(),
                bar_index=last,
                confidence=confidence,
                reversed=True,
            )
        return ActionableSignal(direction=direction, bar_index=last, confidence=confidence)
