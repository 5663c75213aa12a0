"""
Indicator helpers exposed to strategy code inside the sandbox worker.

Pure Python over plain lists so the worker process needs nothing beyond the
standard library. Every function returns a list aligned with its input, with
NaN where the indicator is not yet defined.
"""

import math
from typing import List, Optional, Sequence

NAN = float("nan")


def _is_nan(value) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def sma(data: Sequence[float], period: int) -> List[float]:
    """Simple moving average; NaN for the first period-1 bars."""
    n = len(data)
    if period <= 0 or n < period:
        return [NAN] * n

    result = [NAN] * (period - 1)
    for i in range(period - 1, n):
        window = data[i - period + 1:i + 1]
        result.append(sum(window) / period)
    return result


def ema(data: Sequence[float], period: int) -> List[float]:
    """
    Exponential moving average with multiplier 2/(period+1).

    Seeded at the first non-NaN sample; NaN samples carry the previous value.
    """
    n = len(data)
    if n == 0 or period <= 0:
        return [NAN] * n

    multiplier = 2 / (period + 1)
    result = [NAN] * n

    start = 0
    while start < n and _is_nan(data[start]):
        start += 1
    if start >= n:
        return result

    result[start] = float(data[start])
    for i in range(start + 1, n):
        if _is_nan(data[i]):
            result[i] = result[i - 1]
        else:
            result[i] = data[i] * multiplier + result[i - 1] * (1 - multiplier)
    return result


def rsi(data: Sequence[float], period: int = 14) -> List[float]:
    """Relative strength index with Wilder smoothing; NaN for the first `period` bars."""
    n = len(data)
    if period <= 0 or n < period + 1:
        return [NAN] * n

    deltas = [data[i] - data[i - 1] for i in range(1, n)]
    gains = [d if d > 0 else 0.0 for d in deltas]
    losses = [-d if d < 0 else 0.0 for d in deltas]

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period

    result = [NAN] * period
    for i in range(period, n):
        if avg_loss == 0:
            result.append(100.0)
        else:
            rs = avg_gain / avg_loss
            result.append(100 - (100 / (1 + rs)))

        if i < len(deltas):
            avg_gain = (avg_gain * (period - 1) + gains[i]) / period
            avg_loss = (avg_loss * (period - 1) + losses[i]) / period
    return result


def atr(high: Sequence[float], low: Sequence[float], close: Sequence[float], period: int = 14) -> List[float]:
    """Average true range as the SMA of true range; the first bar has no TR."""
    n = len(close)
    if len(high) != len(low) or len(low) != n:
        return [NAN] * n

    true_ranges: List[float] = [NAN]
    for i in range(1, n):
        true_ranges.append(max(
            high[i] - low[i],
            abs(high[i] - close[i - 1]),
            abs(low[i] - close[i - 1]),
        ))
    # the leading NaN keeps the first full window undefined too
    return sma(true_ranges, period)


def crossover(fast: Sequence[float], slow: Sequence[float], index: Optional[int] = None) -> bool:
    """True when `fast` crossed above `slow` on bar `index` (default last)."""
    i = len(fast) - 1 if index is None else index
    if i < 1:
        return False
    values = (fast[i - 1], slow[i - 1], fast[i], slow[i])
    if any(_is_nan(v) for v in values):
        return False
    return fast[i - 1] <= slow[i - 1] and fast[i] > slow[i]


def crossunder(fast: Sequence[float], slow: Sequence[float], index: Optional[int] = None) -> bool:
    """True when `fast` crossed below `slow` on bar `index` (default last)."""
    return crossover(slow, fast, index)


class TechnicalAnalysis:
    """Namespace grouping the helpers, as strategies historically call them."""

    sma = staticmethod(sma)
    ema = staticmethod(ema)
    rsi = staticmethod(rsi)
    atr = staticmethod(atr)
    crossover = staticmethod(crossover)
    crossunder = staticmethod(crossunder)
