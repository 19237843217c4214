"""Indicator library: TradingView-standard recurrences over float64 arrays.

Every function takes plain numpy arrays (see ``models.ohlcv_arrays``) and
returns series aligned with its input.  Unavailable entries are NaN:

    ATR(P), +DI/-DI(P)   first P-1 values
    ADX(P)               first 2P-2 values
    VWMA(P), CCI(P)      first P-1 values
    MFI(P)               first P values
    CHOP(P)              first P-1 values

Recurrences run in numba kernels; rolling sums/extremes and CCI go through
TA-Lib, whose lookback and zero-denominator handling match the reference
formulas exactly.  A period below the indicator's minimum raises
``ConfigError``; a series too short to warm up simply comes back all-NaN.
"""

import math
from typing import NamedTuple

import numba as nb
import numpy as np
import talib

from candlesig.errors import ConfigError


class DMI(NamedTuple):
    plus_di: np.ndarray
    minus_di: np.ndarray
    dx: np.ndarray
    adx: np.ndarray


class MACD(NamedTuple):
    line: np.ndarray
    signal: np.ndarray
    histogram: np.ndarray


def _check_period(name: str, period: int, minimum: int = 1) -> None:
    if period < minimum:
        raise ConfigError(f"{name} period must be >= {minimum}, got {period}")


def _f64(values) -> np.ndarray:
    return np.ascontiguousarray(values, dtype=np.float64)


# ---------------------------------------------------------------------------
# Numba kernels
# ---------------------------------------------------------------------------


@nb.njit(cache=True)
def _true_range(high, low, close):
    n = len(high)
    tr = np.empty(n)
    if n == 0:
        return tr
    tr[0] = high[0] - low[0]
    for i in range(1, n):
        hl = high[i] - low[i]
        hc = abs(high[i] - close[i - 1])
        lc = abs(low[i] - close[i - 1])
        tr[i] = max(hl, max(hc, lc))
    return tr


@nb.njit(cache=True)
def _sma(src, period):
    n = len(src)
    out = np.full(n, np.nan)
    total = 0.0
    count = 0
    for i in range(n):
        v = src[i]
        if not np.isfinite(v):
            # a gap restarts the window
            total = 0.0
            count = 0
            continue
        total += v
        count += 1
        if count > period:
            total -= src[i - period]
            count = period
        if count == period:
            out[i] = total / period
    return out


@nb.njit(cache=True)
def _smoothed(src, period, alpha):
    """SMA-seeded exponential smoothing shared by RMA and EMA."""
    n = len(src)
    out = np.full(n, np.nan)
    seed = _sma(src, period)
    seeded = False
    prev = 0.0
    for i in range(n):
        v = src[i]
        if seeded:
            if np.isfinite(v):
                prev = alpha * v + (1.0 - alpha) * prev
                out[i] = prev
            else:
                seeded = False
        elif np.isfinite(seed[i]):
            prev = seed[i]
            out[i] = prev
            seeded = True
    return out


@nb.njit(cache=True)
def _directional_movement(high, low):
    n = len(high)
    plus = np.zeros(n)
    minus = np.zeros(n)
    for i in range(1, n):
        up = high[i] - high[i - 1]
        down = low[i - 1] - low[i]
        if up > down and up > 0.0:
            plus[i] = up
        if down > up and down > 0.0:
            minus[i] = down
    return plus, minus


@nb.njit(cache=True)
def _di(smoothed_dm, atr_values):
    n = len(atr_values)
    out = np.full(n, np.nan)
    for i in range(n):
        a = atr_values[i]
        dm = smoothed_dm[i]
        if np.isnan(a) or np.isnan(dm):
            continue
        out[i] = 0.0 if a == 0.0 else 100.0 * dm / a
    return out


@nb.njit(cache=True)
def _dx(plus_di, minus_di):
    n = len(plus_di)
    out = np.full(n, np.nan)
    for i in range(n):
        p = plus_di[i]
        m = minus_di[i]
        if np.isnan(p) or np.isnan(m):
            continue
        total = p + m
        out[i] = 0.0 if total == 0.0 else 100.0 * abs(p - m) / total
    return out


@nb.njit(cache=True)
def _vwma(close, volume, period):
    n = len(close)
    out = np.full(n, np.nan)
    for i in range(period - 1, n):
        pv = 0.0
        vol = 0.0
        for j in range(i - period + 1, i + 1):
            pv += close[j] * volume[j]
            vol += volume[j]
        if vol != 0.0:
            out[i] = pv / vol
    return out


@nb.njit(cache=True)
def _stoch_raw(high, low, close, period):
    n = len(close)
    out = np.full(n, np.nan)
    for i in range(period - 1, n):
        hh = high[i]
        ll = low[i]
        for j in range(i - period + 1, i):
            if high[j] > hh:
                hh = high[j]
            if low[j] < ll:
                ll = low[j]
        rng = hh - ll
        out[i] = 50.0 if rng == 0.0 else 100.0 * (close[i] - ll) / rng
    return out


@nb.njit(cache=True)
def _mfi(high, low, close, volume, period):
    n = len(close)
    out = np.full(n, np.nan)
    if n <= period:
        return out
    tp = (high + low + close) / 3.0
    pos = np.zeros(n)
    neg = np.zeros(n)
    for i in range(1, n):
        flow = tp[i] * volume[i]
        if tp[i] > tp[i - 1]:
            pos[i] = flow
        elif tp[i] < tp[i - 1]:
            neg[i] = flow
    for i in range(period, n):
        p = 0.0
        m = 0.0
        for j in range(i - period + 1, i + 1):
            p += pos[j]
            m += neg[j]
        if p > 0.0 and m == 0.0:
            out[i] = 100.0
        elif p == 0.0 and m > 0.0:
            out[i] = 0.0
        elif p == 0.0 and m == 0.0:
            out[i] = 50.0
        else:
            out[i] = 100.0 - 100.0 / (1.0 + p / m)
    return out


@nb.njit(cache=True)
def _chop(sum_tr, highest, lowest, period):
    n = len(sum_tr)
    out = np.full(n, np.nan)
    denom = math.log10(period)
    for i in range(n):
        s = sum_tr[i]
        if np.isnan(s) or np.isnan(highest[i]) or np.isnan(lowest[i]):
            continue
        rng = highest[i] - lowest[i]
        if rng <= 0.0 or s <= 0.0:
            out[i] = 0.0
            continue
        ratio = s / rng
        out[i] = 0.0 if ratio <= 0.0 else 100.0 * math.log10(ratio) / denom
    return out


@nb.njit(cache=True)
def _slope_pct(values, lookback):
    n = len(values)
    out = np.full(n, np.nan)
    for i in range(lookback, n):
        base = values[i - lookback]
        cur = values[i]
        if np.isnan(base) or np.isnan(cur) or base == 0.0:
            continue
        out[i] = (cur - base) / base * 100.0
    return out


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------


def true_range(high, low, close) -> np.ndarray:
    return _true_range(_f64(high), _f64(low), _f64(close))


def sma(values, period: int) -> np.ndarray:
    _check_period("SMA", period)
    return _sma(_f64(values), period)


def rma(values, period: int) -> np.ndarray:
    """Wilder's running average, seeded by the SMA of the first ``period`` values."""
    _check_period("RMA", period)
    src = _f64(values)
    if period == 1:
        return src.copy()
    return _smoothed(src, period, 1.0 / period)


def ema(values, period: int) -> np.ndarray:
    _check_period("EMA", period)
    src = _f64(values)
    if period == 1:
        return src.copy()
    return _smoothed(src, period, 2.0 / (period + 1))


def slope_pct(values, lookback: int) -> np.ndarray:
    """Percent change of ``values`` over ``lookback`` bars."""
    _check_period("slope", lookback)
    return _slope_pct(_f64(values), lookback)


# ---------------------------------------------------------------------------
# Indicators
# ---------------------------------------------------------------------------


def atr(high, low, close, period: int = 14) -> np.ndarray:
    _check_period("ATR", period)
    return rma(true_range(high, low, close), period)


def dmi(high, low, close, period: int = 14) -> DMI:
    """Directional movement index: +DI, -DI, DX and ADX over one period."""
    _check_period("DMI", period)
    h, lo, c = _f64(high), _f64(low), _f64(close)
    plus_dm, minus_dm = _directional_movement(h, lo)
    smoothed_tr = rma(_true_range(h, lo, c), period)
    plus_di = _di(rma(plus_dm, period), smoothed_tr)
    minus_di = _di(rma(minus_dm, period), smoothed_tr)
    dx = _dx(plus_di, minus_di)
    return DMI(plus_di, minus_di, dx, rma(dx, period))


def vwma(close, volume, period: int = 20) -> np.ndarray:
    _check_period("VWMA", period)
    return _vwma(_f64(close), _f64(volume), period)


def stochastic(high, low, close, k_period: int = 14, k_smooth: int = 3, d_period: int = 3):
    """Slow stochastic; returns ``(k, d)`` where ``k`` is the smoothed %K."""
    _check_period("Stochastic %K", k_period)
    _check_period("Stochastic smoothing", k_smooth)
    _check_period("Stochastic %D", d_period)
    raw = _stoch_raw(_f64(high), _f64(low), _f64(close), k_period)
    k = _sma(raw, k_smooth)
    return k, _sma(k, d_period)


def mfi(high, low, close, volume, period: int = 14) -> np.ndarray:
    _check_period("MFI", period)
    return _mfi(_f64(high), _f64(low), _f64(close), _f64(volume), period)


def cci(high, low, close, period: int = 20) -> np.ndarray:
    _check_period("CCI", period, minimum=2)
    h, lo, c = _f64(high), _f64(low), _f64(close)
    if len(c) < period:
        return np.full(len(c), np.nan)
    return talib.CCI(h, lo, c, timeperiod=period)


def macd(close, fast: int = 12, slow: int = 26, signal: int = 9) -> MACD:
    _check_period("MACD fast", fast)
    _check_period("MACD slow", slow)
    _check_period("MACD signal", signal)
    src = _f64(close)
    line = ema(src, fast) - ema(src, slow)
    signal_line = ema(line, signal)
    return MACD(line, signal_line, line - signal_line)


def choppiness(high, low, close, period: int = 14) -> np.ndarray:
    _check_period("CHOP", period, minimum=2)
    h, lo, c = _f64(high), _f64(low), _f64(close)
    if len(c) < period:
        return np.full(len(c), np.nan)
    sum_tr = talib.SUM(_true_range(h, lo, c), timeperiod=period)
    return _chop(sum_tr, talib.MAX(h, timeperiod=period), talib.MIN(lo, timeperiod=period), period)


# ---------------------------------------------------------------------------
# Per-snapshot memo
# ---------------------------------------------------------------------------


class SeriesCache:
    """Memoized indicator calls over one OHLCV snapshot.

    Keys combine the function, its input columns and its keyword parameters,
    so two conditions asking for ``dmi(period=14)`` share one computation.
    """

    def __init__(self, data: dict[str, np.ndarray]):
        self.data = data
        self._memo: dict = {}

    def __len__(self) -> int:
        return len(self.data["close"])

    def get(self, func, *columns: str, **params):
        key = (func.__name__, columns) + tuple(sorted(params.items()))
        if key not in self._memo:
            self._memo[key] = func(*(self.data[c] for c in columns), **params)
        return self._memo[key]
