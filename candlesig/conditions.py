"""Condition providers for the windowed signal matcher.

A condition owns the indicator arrays it needs and answers three questions
about a bar ``i``:

    ready(i)        are its indicator values available at ``i``?
    observe(i)      side-agnostic evidence (a ``Finding`` with a lean), used
                    for anchors and decision matrices
    check(i, side)  does bar ``i`` support a LONG / SHORT candidate?

``find(start, end, side)`` scans an inclusive window for the first piece of
evidence.  Generators combine providers; they never touch indicator math.

Crossovers may need their gap confirmed on a later bar.  ``horizon`` is the
bar being evaluated: nothing after it is read, so a crossover whose gap is
confirmed later is not evidence yet.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np

from candlesig.crossover import Cross, crossed, gap_confirmed_at, gap_series, relative
from candlesig.indicators import (
    SeriesCache,
    atr,
    cci,
    dmi,
    macd,
    mfi,
    slope_pct,
    sma,
    stochastic,
    vwma,
)
from candlesig.models import Direction

LEAN = {Direction.LONG: Cross.UP, Direction.SHORT: Cross.DOWN}


def side_of(lean: Cross) -> Direction:
    return Direction.LONG if lean is Cross.UP else Direction.SHORT


def _finite(*values) -> bool:
    return all(not math.isnan(v) for v in values)


@dataclass(frozen=True)
class Finding:
    name: str
    index: int
    lean: Cross
    crossover: bool = False
    values: tuple[float, ...] = ()


class Condition(ABC):
    name = "condition"
    # True when observe() reports crossovers that may anchor a window
    anchors = False

    def __init__(self):
        self.horizon: int | None = None
        self.rejected_gap = False

    @property
    @abstractmethod
    def warmup(self) -> int:
        """Index of the first bar at which values can be available."""

    @abstractmethod
    def compute(self, cache: SeriesCache) -> None: ...

    @abstractmethod
    def ready(self, i: int) -> bool: ...

    def observe(self, i: int) -> Finding | None:
        return None

    def check(self, i: int, side: Direction) -> Finding | None:
        found = self.observe(i)
        if found is not None and found.lean is LEAN[side]:
            return found
        return None

    def event(self, i: int) -> bool:
        return self.observe(i) is not None

    def find(self, start: int, end: int, side: Direction | None = None) -> Finding | None:
        for i in range(max(start, 0), end + 1):
            found = self.observe(i) if side is None else self.check(i, side)
            if found is not None:
                return found
        return None

    def _last_index(self, length: int) -> int:
        return length - 1 if self.horizon is None else min(self.horizon, length - 1)


# ---------------------------------------------------------------------------
# Two-series crossovers
# ---------------------------------------------------------------------------


class _PairCondition(Condition):
    """Crossover of two aligned series, or (relative mode) which one is on top.

    A crossover at ``i`` counts once ``gaps`` reaches ``gap_min`` on ``i`` or
    on one of the ``gap_window`` bars after it, never past ``horizon``.
    """

    anchors = True

    def __init__(self, relative_mode: bool = False, gap_min: float = 0.0, gap_window: int = 0):
        super().__init__()
        self.relative = relative_mode
        self.gap_min = gap_min
        self.gap_window = gap_window
        self.a = np.empty(0)
        self.b = np.empty(0)
        self.gaps = np.empty(0)

    def _set_pair(self, a, b, gaps=None) -> None:
        self.a, self.b = a, b
        self.gaps = gap_series(a, b) if gaps is None else gaps

    def ready(self, i):
        return 0 <= i < len(self.a) and _finite(self.a[i], self.b[i])

    def _values(self, i):
        return float(self.a[i]), float(self.b[i])

    def confirmed_at(self, i: int) -> int | None:
        """Bar on which the gap of a crossover at ``i`` is confirmed."""
        return gap_confirmed_at(
            float(self.gaps[i]), self.gap_min, i, self.gap_window, (self.gaps,), self._last_index(len(self.gaps))
        )

    def crossover_at(self, i: int) -> Finding | None:
        lean = crossed(self.a, self.b, i)
        if lean is None:
            return None
        if self.confirmed_at(i) is None:
            self.rejected_gap = True
            return None
        return Finding(self.name, i, lean, crossover=True, values=self._values(i))

    def confirms_at(self, e: int) -> bool:
        """True when a crossover of the last ``gap_window`` bars gets its gap on ``e``."""
        for i in range(max(e - self.gap_window, 1), e + 1):
            if crossed(self.a, self.b, i) is not None and self.confirmed_at(i) == e:
                return True
        return False

    def observe(self, i):
        return self.crossover_at(i)

    def event(self, i):
        return self.confirms_at(i)

    def check(self, i, side):
        if not self.relative:
            return super().check(i, side)
        lean = relative(self.a, self.b, i)
        if lean is LEAN[side]:
            return Finding(self.name, i, lean, values=self._values(i))
        return None

    def find(self, start, end, side=None):
        self.rejected_gap = False
        return super().find(start, end, side)


class VWMACross(_PairCondition):
    """Fast/slow VWMA crossover.

    With ``gap_atr`` the separation is measured in ATRs of ``atr_period``;
    ``volatility_min`` additionally drops crossovers on bars whose ATR is below
    that percent of the close.
    """

    name = "vwma_cross"

    def __init__(self, fast: int = 6, slow: int = 36, relative_mode: bool = False, gap_atr: float = 0.0,
                 gap_window: int = 0, atr_period: int = 3, volatility_min: float = 0.0):
        super().__init__(relative_mode, gap_atr, gap_window)
        self.fast = fast
        self.slow = slow
        self.atr_period = atr_period
        self.volatility_min = volatility_min
        self.atr_pct = np.empty(0)

    @property
    def uses_atr(self) -> bool:
        return self.gap_min > 0.0 or self.volatility_min > 0.0

    @property
    def warmup(self):
        base = max(self.fast, self.slow) - 1
        return max(base, self.atr_period - 1) if self.uses_atr else base

    def compute(self, cache):
        fast = cache.get(vwma, "close", "volume", period=self.fast)
        slow = cache.get(vwma, "close", "volume", period=self.slow)
        if not self.uses_atr:
            self._set_pair(fast, slow)
            return
        atr_values = cache.get(atr, "high", "low", "close", period=self.atr_period)
        close = cache.data["close"]
        with np.errstate(divide="ignore", invalid="ignore"):
            self._set_pair(fast, slow, np.where(atr_values > 0.0, gap_series(fast, slow) / atr_values, np.nan))
            self.atr_pct = np.where(close != 0.0, atr_values / close * 100.0, np.nan)

    def ready(self, i):
        if not super().ready(i):
            return False
        return not self.uses_atr or _finite(self.atr_pct[i])

    def crossover_at(self, i):
        found = super().crossover_at(i)
        if found is None or self.volatility_min <= 0.0:
            return found
        pct = float(self.atr_pct[i])
        return found if not math.isnan(pct) and pct >= self.volatility_min else None


class DICross(_PairCondition):
    name = "dmi_cross"

    def __init__(self, period: int = 14, relative_mode: bool = False):
        super().__init__(relative_mode)
        self.period = period

    @property
    def warmup(self):
        return self.period - 1

    def compute(self, cache):
        result = cache.get(dmi, "high", "low", "close", period=self.period)
        self._set_pair(result.plus_di, result.minus_di)


class StochCross(_PairCondition):
    name = "stoch_cross"

    def __init__(self, k_period: int = 14, k_smooth: int = 3, d_period: int = 3, relative_mode: bool = False):
        super().__init__(relative_mode)
        self.k_period = k_period
        self.k_smooth = k_smooth
        self.d_period = d_period

    @property
    def warmup(self):
        return self.k_period + self.k_smooth + self.d_period - 3

    def compute(self, cache):
        self._set_pair(*cache.get(
            stochastic, "high", "low", "close",
            k_period=self.k_period, k_smooth=self.k_smooth, d_period=self.d_period,
        ))


# ---------------------------------------------------------------------------
# Band filters (side-aware only)
# ---------------------------------------------------------------------------


class StochExtremes(Condition):
    """LONG while %K sits below ``long_max``, SHORT while above ``short_min``."""

    name = "stoch_extremes"

    def __init__(self, k_period=14, k_smooth=3, d_period=3, long_max=40.0, short_min=60.0):
        super().__init__()
        self.k_period = k_period
        self.k_smooth = k_smooth
        self.d_period = d_period
        self.long_max = long_max
        self.short_min = short_min
        self.k = np.empty(0)

    @property
    def warmup(self):
        return self.k_period + self.k_smooth - 2

    def compute(self, cache):
        self.k, _ = cache.get(
            stochastic, "high", "low", "close",
            k_period=self.k_period, k_smooth=self.k_smooth, d_period=self.d_period,
        )

    def ready(self, i):
        return 0 <= i < len(self.k) and _finite(self.k[i])

    def check(self, i, side):
        if not self.ready(i):
            return None
        k = float(self.k[i])
        ok = k < self.long_max if side is Direction.LONG else k > self.short_min
        return Finding(self.name, i, LEAN[side], values=(k,)) if ok else None


class _BandCondition(Condition):
    """LONG requires the oscillator below ``overbought``, SHORT above ``oversold``."""

    def __init__(self, period: int, oversold: float, overbought: float):
        super().__init__()
        self.period = period
        self.oversold = oversold
        self.overbought = overbought
        self.values = np.empty(0)

    def ready(self, i):
        return 0 <= i < len(self.values) and _finite(self.values[i])

    def check(self, i, side):
        if not self.ready(i):
            return None
        v = float(self.values[i])
        ok = v < self.overbought if side is Direction.LONG else v > self.oversold
        return Finding(self.name, i, LEAN[side], values=(v,)) if ok else None


class MFIBand(_BandCondition):
    name = "mfi"

    def __init__(self, period=14, oversold=20.0, overbought=80.0):
        super().__init__(period, oversold, overbought)

    @property
    def warmup(self):
        return self.period

    def compute(self, cache):
        self.values = cache.get(mfi, "high", "low", "close", "volume", period=self.period)


class CCIBand(_BandCondition):
    name = "cci"

    def __init__(self, period=20, oversold=-100.0, overbought=100.0):
        super().__init__(period, oversold, overbought)

    @property
    def warmup(self):
        return self.period - 1

    def compute(self, cache):
        self.values = cache.get(cci, "high", "low", "close", period=self.period)


class _MACDCondition(Condition):
    def __init__(self, fast=12, slow=26, signal=9):
        super().__init__()
        self.fast = fast
        self.slow = slow
        self.signal = signal
        self.result = None

    @property
    def warmup(self):
        return max(self.fast, self.slow) + self.signal - 2

    def compute(self, cache):
        self.result = cache.get(macd, "close", fast=self.fast, slow=self.slow, signal=self.signal)

    def ready(self, i):
        r = self.result
        return r is not None and 0 <= i < len(r.line) and _finite(r.line[i], r.signal[i])


class MACDHistogram(_MACDCondition):
    name = "macd_histogram"

    def observe(self, i):
        if not self.ready(i):
            return None
        h = float(self.result.histogram[i])
        if h == 0.0:
            return None
        return Finding(self.name, i, Cross.UP if h > 0.0 else Cross.DOWN, values=(h,))


class MACDSign(_MACDCondition):
    """Contrarian MACD filter: LONG below the zero line, SHORT above it."""

    name = "macd_sign"

    def observe(self, i):
        if not self.ready(i):
            return None
        line, sig = float(self.result.line[i]), float(self.result.signal[i])
        if line < 0.0 and sig < 0.0:
            return Finding(self.name, i, Cross.UP, values=(line, sig))
        if line > 0.0 and sig > 0.0:
            return Finding(self.name, i, Cross.DOWN, values=(line, sig))
        return None


# ---------------------------------------------------------------------------
# Trend evidence with gap validation
# ---------------------------------------------------------------------------


class VWMASlope(Condition):
    """VWMA rising/falling faster than a fixed or ATR-relative threshold (percent).

    ``confirm`` bars in a row must clear the threshold on the same side before
    the slope counts.
    """

    name = "vwma_slope"

    def __init__(
        self,
        period: int = 20,
        lookback: int = 6,
        threshold: float = 0.1,
        dynamic: bool = False,
        atr_period: int = 14,
        atr_coefficient: float = 0.25,
        confirm: int = 1,
    ):
        super().__init__()
        self.period = period
        self.lookback = lookback
        self.threshold = threshold
        self.dynamic = dynamic
        self.atr_period = atr_period
        self.atr_coefficient = atr_coefficient
        self.confirm = confirm
        self.slope = np.empty(0)
        self.thresholds = np.empty(0)
        self.vwma = np.empty(0)

    @property
    def warmup(self):
        base = self.period - 1 + self.lookback
        if self.dynamic:
            base = max(base, self.atr_period - 1)
        return base + self.confirm - 1

    def compute(self, cache):
        self.vwma = cache.get(vwma, "close", "volume", period=self.period)
        self.slope = slope_pct(self.vwma, self.lookback)
        if self.dynamic:
            close = cache.data["close"]
            atr_values = cache.get(atr, "high", "low", "close", period=self.atr_period)
            with np.errstate(divide="ignore", invalid="ignore"):
                self.thresholds = np.where(close != 0.0, atr_values / close * 100.0, np.nan) * self.atr_coefficient
        else:
            self.thresholds = np.full(len(self.slope), float(self.threshold))

    def ready(self, i):
        return 0 <= i < len(self.slope) and _finite(self.slope[i], self.thresholds[i])

    def _lean(self, i: int) -> Cross | None:
        if not self.ready(i):
            return None
        s, th = float(self.slope[i]), float(self.thresholds[i])
        if s == 0.0 or abs(s) < th:
            return None
        return Cross.UP if s > 0.0 else Cross.DOWN

    def observe(self, i):
        lean = self._lean(i)
        if lean is None or i - self.confirm + 1 < 0:
            return None
        for j in range(i - self.confirm + 1, i):
            if self._lean(j) is not lean:
                return None
        return Finding(self.name, i, lean, values=(float(self.slope[i]), float(self.thresholds[i])))


class DIDominance(_PairCondition):
    """Which directional index dominates: a gap-validated crossover, else the leader.

    With ``prefer_crossover`` a window search returns any validated +DI/-DI
    crossover before falling back to plain dominance; only crossover findings
    count towards TREND classification.
    """

    name = "di"
    anchors = False

    def __init__(self, period: int = 14, gap_min: float = 0.0, gap_window: int = 0, prefer_crossover: bool = True):
        super().__init__(gap_min=gap_min, gap_window=gap_window)
        self.period = period
        self.prefer_crossover = prefer_crossover

    @property
    def plus(self) -> np.ndarray:
        return self.a

    @property
    def minus(self) -> np.ndarray:
        return self.b

    @property
    def warmup(self):
        return self.period - 1

    def compute(self, cache):
        result = cache.get(dmi, "high", "low", "close", period=self.period)
        self._set_pair(result.plus_di, result.minus_di)

    def dominance_at(self, i: int) -> Finding | None:
        lean = relative(self.a, self.b, i)
        if lean is None or self.gaps[i] < self.gap_min:
            return None
        return Finding(self.name, i, lean, values=self._values(i))

    def observe(self, i):
        return self.crossover_at(i) or self.dominance_at(i)

    def event(self, i):
        if self.confirms_at(i):
            return True
        now = self.dominance_at(i)
        if now is None:
            return False
        before = self.dominance_at(i - 1) if i >= 1 else None
        return before is None or before.lean is not now.lean

    def find_crossover(self, start: int, end: int, side: Direction | None = None) -> Finding | None:
        for i in range(max(start, 0), end + 1):
            found = self.crossover_at(i)
            if found is not None and (side is None or found.lean is LEAN[side]):
                return found
        return None

    def find(self, start, end, side=None):
        self.rejected_gap = False
        if self.prefer_crossover:
            found = self.find_crossover(start, end, side)
            if found is not None:
                return found
        for i in range(max(start, 0), end + 1):
            found = self.dominance_at(i)
            if found is not None and (side is None or found.lean is LEAN[side]):
                return found
        return None


class DXADXCross(_PairCondition):
    """DX crossing ADX with a gap-validated separation; UP means DX rising through ADX."""

    name = "dx_adx"

    def __init__(self, period: int = 14, gap_min: float = 0.0, gap_window: int = 0):
        super().__init__(gap_min=gap_min, gap_window=gap_window)
        self.period = period

    @property
    def dx(self) -> np.ndarray:
        return self.a

    @property
    def adx(self) -> np.ndarray:
        return self.b

    @property
    def warmup(self):
        return 2 * self.period - 2

    def compute(self, cache):
        result = cache.get(dmi, "high", "low", "close", period=self.period)
        self._set_pair(result.dx, result.adx)


# ---------------------------------------------------------------------------
# Single-bar candle validation
# ---------------------------------------------------------------------------


class CandleGate(Condition):
    """Body size, body-to-ATR ratio, optional volume ratio and colour of one bar."""

    name = "candle"

    def __init__(
        self,
        atr_period: int = 3,
        body_pct_min: float = 0.6,
        body_atr_min: float = 0.6,
        volume_ratio_min: float = 0.0,
        volume_period: int = 20,
    ):
        super().__init__()
        self.atr_period = atr_period
        self.body_pct_min = body_pct_min
        self.body_atr_min = body_atr_min
        self.volume_ratio_min = volume_ratio_min
        self.volume_period = volume_period
        self.data: dict[str, np.ndarray] = {}
        self.atr = np.empty(0)
        self.avg_volume = np.empty(0)

    @property
    def uses_volume(self) -> bool:
        return self.volume_ratio_min > 0.0

    @property
    def warmup(self):
        base = self.atr_period - 1
        return max(base, self.volume_period - 1) if self.uses_volume else base

    def compute(self, cache):
        self.data = cache.data
        self.atr = cache.get(atr, "high", "low", "close", period=self.atr_period)
        if self.uses_volume:
            self.avg_volume = cache.get(sma, "volume", period=self.volume_period)

    def ready(self, i):
        if not (0 <= i < len(self.atr)) or math.isnan(self.atr[i]):
            return False
        return not self.uses_volume or not math.isnan(self.avg_volume[i])

    def stats(self, i: int) -> tuple[float, float, float]:
        """``(body, body_pct, atr)`` for bar ``i``."""
        d = self.data
        body = abs(float(d["close"][i]) - float(d["open"][i]))
        rng = float(d["high"][i]) - float(d["low"][i])
        body_pct = body / rng if rng > 0.0 else 0.0
        return body, body_pct, float(self.atr[i])

    def colour(self, i: int) -> Direction | None:
        o, c = self.data["open"][i], self.data["close"][i]
        if c > o:
            return Direction.LONG
        if c < o:
            return Direction.SHORT
        return None

    def passes(self, i: int) -> bool:
        if not self.ready(i):
            return False
        d = self.data
        if float(d["high"][i]) - float(d["low"][i]) <= 0.0:
            return False
        body, body_pct, atr_value = self.stats(i)
        if body_pct < self.body_pct_min or body < self.body_atr_min * atr_value:
            return False
        if self.uses_volume:
            avg = float(self.avg_volume[i])
            if avg <= 0.0 or float(d["volume"][i]) / avg < self.volume_ratio_min:
                return False
        return True

    def observe(self, i):
        side = self.colour(i) if 0 <= i < len(self.atr) else None
        if side is None or not self.passes(i):
            return None
        return Finding(self.name, i, LEAN[side], values=self.stats(i))
