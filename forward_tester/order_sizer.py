import logging
import math
from abc import ABC, abstractmethod
from typing import Optional

from forward_tester.config import DEFAULT_ORDER_UNITS
from forward_tester.models import ActionableSignal, Direction, Order, TradingSession

logger = logging.getLogger(__name__)


class PipConverter(ABC):
    """Converts between pips and price distance for one quoting convention."""

    pip_size: float

    def to_price(self, pips: float) -> float:
        return round(pips * self.pip_size, 10)

    def to_pips(self, distance: float) -> float:
        return round(distance / self.pip_size, 6)

    @abstractmethod
    def supports(self, instrument: str) -> bool:
        raise NotImplementedError


class FiveDecimalPipConverter(PipConverter):
    """Majors quoted to 5 decimals: 1 pip = 0.0001."""

    pip_size = 0.0001

    def supports(self, instrument: str) -> bool:
        return True


class JpyPipConverter(PipConverter):
    """Yen crosses quoted to 3 decimals: 1 pip = 0.01."""

    pip_size = 0.01

    def supports(self, instrument: str) -> bool:
        return instrument.upper().endswith("_JPY")


def pip_converter_for(instrument: str) -> PipConverter:
    for converter in (JpyPipConverter(), FiveDecimalPipConverter()):
        if converter.supports(instrument):
            return converter
    return FiveDecimalPipConverter()


class OrderSizer:
    """
    Builds a market order from a signal and the session's risk parameters.

    Without an account balance every order is `default_units`. With one,
    units risk `risk_per_trade` percent of the balance over the stop distance,
    floored and clamped to [1, max_position_size].
    """

    def __init__(self, default_units: int = DEFAULT_ORDER_UNITS):
        self.default_units = default_units

    def position_units(self, session: TradingSession, stop_distance: float, account_balance: Optional[float]) -> int:
        risk = session.risk
        cap = max(1, int(risk.max_position_size))
        if account_balance is None or account_balance <= 0 or risk.risk_per_trade <= 0 or stop_distance <= 0:
            return min(self.default_units, cap)

        risk_amount = account_balance * (risk.risk_per_trade / 100.0)
        units = math.floor(risk_amount / stop_distance)
        return max(1, min(units, cap))

    def size(
        self,
        signal: ActionableSignal,
        session: TradingSession,
        account_balance: Optional[float] = None,
        client_id: Optional[str] = None,
    ) -> Order:
        converter = pip_converter_for(session.symbol)
        stop_distance = converter.to_price(session.risk.stop_loss)
        take_profit_distance = converter.to_price(session.risk.take_profit)

        units = self.position_units(session, stop_distance, account_balance)
        signed = units if signal.direction == Direction.BUY else -units
        logger.debug(
            f"Sized {signal.direction.value} {session.symbol}: {signed} units, "
            f"SL {stop_distance} TP {take_profit_distance} (balance={account_balance})"
        )
        return Order(
            instrument=session.symbol,
            units=signed,
            stop_loss_distance=stop_distance,
            take_profit_distance=take_profit_distance,
            client_id=client_id,
        )
