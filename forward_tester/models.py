"""Value objects shared by the engine components."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np


class Direction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    def reversed(self) -> "Direction":
        return Direction.SELL if self is Direction.BUY else Direction.BUY


class Environment(str, Enum):
    PRACTICE = "practice"
    LIVE = "live"


class VolumeRegime(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class LogType(str, Enum):
    INFO = "info"
    TRADE = "trade"
    ERROR = "error"


class SessionOutcome(str, Enum):
    TRADE_EXECUTED = "TRADE_EXECUTED"
    NO_SIGNAL = "NO_SIGNAL"
    SKIPPED_MARKET_CONDITIONS = "SKIPPED_MARKET_CONDITIONS"
    ERROR = "ERROR"


class SessionState(str, Enum):
    ACTIVE = "ACTIVE"
    EVALUATING = "EVALUATING"
    EXECUTING = "EXECUTING"
    ERROR_LOGGED = "ERROR_LOGGED"


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    FAILED = "FAILED"


@dataclass(frozen=True)
class BrokerCredentials:
    account_id: str
    api_key: str
    environment: Environment = Environment.PRACTICE

    @property
    def key(self) -> Tuple[str, str, str]:
        """Identity used to share one connection across sessions."""
        return (self.environment.value, self.account_id, self.api_key)

    def __repr__(self) -> str:
        # Never leak the token into logs
        return f"BrokerCredentials(account_id={self.account_id!r}, environment={self.environment.value!r})"


@dataclass(frozen=True)
class RiskParameters:
    risk_per_trade: float = 2.0
    stop_loss: float = 40.0
    take_profit: float = 80.0
    max_position_size: int = 100000


@dataclass(frozen=True)
class TradingSession:
    id: str
    user_id: str
    strategy_name: str
    strategy_code: str
    symbol: str
    timeframe: str
    credentials: BrokerCredentials
    risk: RiskParameters = field(default_factory=RiskParameters)
    strategy_id: Optional[str] = None
    reverse_signals: bool = False
    avoid_low_volume: bool = False
    is_active: bool = True
    last_execution: Optional[datetime] = None

    @property
    def environment(self) -> Environment:
        return self.credentials.environment


@dataclass(frozen=True)
class Candle:
    time: str
    open: float
    high: float
    low: float
    close: float
    volume: int


@dataclass(frozen=True)
class CandleSeries:
    """Chronological candles plus aligned float arrays for strategy input."""

    symbol: str
    timeframe: str
    candles: Tuple[Candle, ...]

    def __len__(self) -> int:
        return len(self.candles)

    def _column(self, name: str) -> np.ndarray:
        return np.asarray([getattr(c, name) for c in self.candles], dtype=float)

    @property
    def open(self) -> np.ndarray:
        return self._column("open")

    @property
    def high(self) -> np.ndarray:
        return self._column("high")

    @property
    def low(self) -> np.ndarray:
        return self._column("low")

    @property
    def close(self) -> np.ndarray:
        return self._column("close")

    @property
    def volume(self) -> np.ndarray:
        return self._column("volume")

    def to_payload(self) -> Dict[str, List[float]]:
        """Plain lists keyed like the strategy execution contract."""
        return {
            "open": self.open.tolist(),
            "high": self.high.tolist(),
            "low": self.low.tolist(),
            "close": self.close.tolist(),
            "volume": self.volume.tolist(),
        }


@dataclass(frozen=True)
class SignalSeries:
    entry: List[bool]
    exit: List[bool]
    direction: List[Optional[str]]
    confidence: Optional[List[float]] = None
    error: Optional[str] = None

    def __len__(self) -> int:
        return len(self.entry)

    @classmethod
    def empty(cls, length: int, error: Optional[str] = None) -> "SignalSeries":
        """All-false/all-None series used whenever a strategy result is unusable."""
        return cls(
            entry=[False] * length,
            exit=[False] * length,
            direction=[None] * length,
            error=error,
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "bars": len(self),
            "entries": sum(1 for e in self.entry if e),
            "exits": sum(1 for e in self.exit if e),
            "buy": sum(1 for d in self.direction if d == Direction.BUY.value),
            "sell": sum(1 for d in self.direction if d == Direction.SELL.value),
            "error": self.error,
        }


@dataclass(frozen=True)
class ActionableSignal:
    direction: Direction
    bar_index: int
    confidence: Optional[float] = None
    reversed: bool = False


@dataclass(frozen=True)
class Order:
    instrument: str
    units: int
    stop_loss_distance: float
    take_profit_distance: float
    order_type: str = "MARKET"
    time_in_force: str = "FOK"
    client_id: Optional[str] = None

    @property
    def direction(self) -> Direction:
        return Direction.BUY if self.units > 0 else Direction.SELL

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "order": {
                "type": self.order_type,
                "instrument": self.instrument,
                "units": str(self.units),
                "timeInForce": self.time_in_force,
                "positionFill": "DEFAULT",
                "stopLossOnFill": {"distance": _format_distance(self.stop_loss_distance)},
                "takeProfitOnFill": {"distance": _format_distance(self.take_profit_distance)},
            }
        }
        if self.client_id:
            payload["order"]["clientExtensions"] = {"id": self.client_id}
        return payload


def _format_distance(value: float) -> str:
    return f"{value:.5f}"


@dataclass(frozen=True)
class OrderAck:
    order_id: Optional[str]
    transaction_id: Optional[str]
    fill_price: Optional[float]
    raw: Dict[str, Any] = field(default_factory=dict)
    already_placed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "transaction_id": self.transaction_id,
            "fill_price": self.fill_price,
            "already_placed": self.already_placed,
        }


@dataclass(frozen=True)
class MarketStatus:
    is_open: bool
    volume_regime: VolumeRegime
    next_transition: datetime
    active_sessions: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_open": self.is_open,
            "volume_regime": self.volume_regime.value,
            "next_transition": self.next_transition.isoformat(),
            "active_sessions": list(self.active_sessions),
        }


@dataclass(frozen=True)
class ExecutionRecord:
    session_id: Optional[str]
    user_id: Optional[str]
    step: str
    log_type: LogType
    message: str
    trade_data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class SessionResult:
    """Settled outcome of one session's pipeline within a tick."""

    session_id: str
    outcome: SessionOutcome
    detail: Dict[str, Any] = field(default_factory=dict)
    states: List[SessionState] = field(default_factory=list)
