import logging
import math
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from forward_tester.config import CANDLE_COUNT, DATA_MAX_ATTEMPTS, MAX_CANDLE_COUNT, SYNTHETIC_VOLUME
from forward_tester.connection_supervisor import ConnectionRegistry
from forward_tester.errors import DataFetchError, ForwardTestingError, NetworkError
from forward_tester.models import Candle, CandleSeries, TradingSession
from forward_tester.retry import RetryPolicy

logger = logging.getLogger(__name__)

GRANULARITY_SECONDS: Dict[str, int] = {
    "S5": 5, "S10": 10, "S15": 15, "S30": 30,
    "M1": 60, "M2": 120, "M4": 240, "M5": 300, "M10": 600, "M15": 900, "M30": 1800,
    "H1": 3600, "H2": 7200, "H3": 10800, "H4": 14400, "H6": 21600, "H8": 28800, "H12": 43200,
    "D": 86400, "W": 604800, "M": 2592000,
}

_NATIVE = re.compile(r"^([SMHDW])(\d*)$")
_SHORTHAND = re.compile(r"^(\d+)\s*([SMHDW])$", re.IGNORECASE)


def normalize_granularity(timeframe: str) -> str:
    """
    Map session timeframes ('5M', '5m', 'M5', '1h', 'D') to OANDA granularities.

    Raises ValueError for anything the venue does not serve.
    """
    raw = (timeframe or "").strip()
    if not raw:
        raise ValueError("Timeframe is required")

    # 'M' alone is monthly in OANDA terms
    if _NATIVE.match(raw.upper()) and raw.upper() in GRANULARITY_SECONDS:
        return raw.upper()

    short = _SHORTHAND.match(raw)
    if short:
        value, unit = int(short.group(1)), short.group(2).upper()
        if unit in ("D", "W") and value == 1:
            candidate = unit
        else:
            candidate = f"{unit}{value}"
        if candidate in GRANULARITY_SECONDS:
            return candidate

    raise ValueError(f"Unsupported timeframe: {timeframe}")


def candles_for_hours(timeframe: str, hours: float = 24, cap: int = 500) -> int:
    """How many candles of `timeframe` cover the last `hours`, capped."""
    try:
        seconds = GRANULARITY_SECONDS[normalize_granularity(timeframe)]
    except ValueError:
        seconds = GRANULARITY_SECONDS["M15"]
    return max(1, min(int(hours * 3600 // seconds), cap))


class _OandaModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class OandaMid(_OandaModel):
    o: float
    h: float
    l: float
    c: float

    @field_validator("o", "h", "l", "c")
    @classmethod
    def validate_finite(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("price must be finite")
        return value


class OandaCandle(_OandaModel):
    time: str = ""
    complete: bool = True
    volume: Optional[int] = None
    mid: OandaMid

    @field_validator("volume", mode="before")
    @classmethod
    def coerce_volume(cls, value: Any) -> Optional[int]:
        # FX volume is a tick count and may be missing or junk
        try:
            volume = int(float(value))
        except (TypeError, ValueError):
            return None
        return volume if volume > 0 else None


class OandaCandlesResponse(_OandaModel):
    instrument: Optional[str] = None
    granularity: Optional[str] = None
    candles: List[OandaCandle]


def normalize_candles(
    payload: Dict[str, Any],
    symbol: str,
    timeframe: str,
    synthetic_volume: int = SYNTHETIC_VOLUME,
) -> CandleSeries:
    """
    Convert an OANDA candles payload into an aligned CandleSeries.

    Order is preserved exactly as received; gaps stay gaps.
    """
    try:
        parsed = OandaCandlesResponse.model_validate(payload)
    except ValidationError as exc:
        raise DataFetchError(f"Malformed candle response for {symbol}: {exc.error_count()} invalid field(s)") from exc

    if not parsed.candles:
        raise DataFetchError(f"Empty candle set for {symbol} {timeframe}")

    candles = tuple(
        Candle(
            time=entry.time,
            open=entry.mid.o,
            high=entry.mid.h,
            low=entry.mid.l,
            close=entry.mid.c,
            volume=entry.volume if entry.volume is not None else synthetic_volume,
        )
        for entry in parsed.candles
    )
    return CandleSeries(symbol=symbol, timeframe=timeframe, candles=candles)


class MarketDataGateway:
    """Fetches normalized OHLCV candles for a session through its connection."""

    def __init__(
        self,
        connections: ConnectionRegistry,
        candle_count: int = CANDLE_COUNT,
        max_candle_count: int = MAX_CANDLE_COUNT,
        retry_policy: Optional[RetryPolicy] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.connections = connections
        self.candle_count = max(1, min(candle_count, max_candle_count))
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=DATA_MAX_ATTEMPTS)
        self.logger = logger or logging.getLogger(__name__)

    async def fetch(self, session: TradingSession) -> CandleSeries:
        try:
            granularity = normalize_granularity(session.timeframe)
        except ValueError as exc:
            raise DataFetchError(str(exc)) from exc

        supervisor = self.connections.get(session.credentials)

        async def _once():
            broker = await supervisor.ensure_connected()
            try:
                return await broker.fetch_candles(session.symbol, granularity, self.candle_count)
            except NetworkError as exc:
                await supervisor.report_failure(exc)
                raise

        try:
            payload = await self.retry_policy.run(_once)
        except DataFetchError:
            raise
        except ForwardTestingError as exc:
            raise DataFetchError(f"Candle fetch failed for {session.symbol}: {exc}") from exc

        series = normalize_candles(payload, session.symbol, granularity)
        self.logger.debug(f"Fetched {len(series)} {granularity} candles for {session.symbol}")
        return series
