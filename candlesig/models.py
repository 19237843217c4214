"""Core records shared by generators, the execution model and the backtest driver.

Candles are plain frozen dataclasses; every indicator and generator works on the
numpy view returned by :func:`ohlcv_arrays`.  Signal metadata is a tagged union:
one frozen dataclass per generator, discriminated by its ``kind`` field.
"""

import enum
import math
from dataclasses import dataclass, field
from typing import Union

import numpy as np


class Action(str, enum.Enum):
    ENTRY = "ENTRY"
    EXIT = "EXIT"


class Direction(str, enum.Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1

    def opposite(self) -> "Direction":
        return Direction.SHORT if self is Direction.LONG else Direction.LONG


class Mode(str, enum.Enum):
    TREND = "TREND"
    COUNTER_TREND = "COUNTER_TREND"


class ExitReason(str, enum.Enum):
    SIGNAL = "SIGNAL"
    REVERSAL = "REVERSAL"
    TRAILING_STOP = "TRAILING_STOP"
    END_OF_DATA = "END_OF_DATA"


class TrackStatus(str, enum.Enum):
    VALID = "VALID"
    INCOMPLETE_WINDOW = "INCOMPLETE_WINDOW"
    FLAG_DISABLED = "FLAG_DISABLED"
    GAP_INSUFFICIENT = "GAP_INSUFFICIENT"
    NOT_READY = "NOT_READY"
    SUPPRESSED = "SUPPRESSED"


# ---------------------------------------------------------------------------
# Candles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Candle:
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def bullish(self) -> bool:
        return self.close > self.open


def ohlcv_arrays(candles) -> dict[str, np.ndarray]:
    """Extract aligned OHLCV arrays from a candle sequence."""
    n = len(candles)
    out = {
        "open_time": np.empty(n, dtype=np.int64),
        "open": np.empty(n, dtype=np.float64),
        "high": np.empty(n, dtype=np.float64),
        "low": np.empty(n, dtype=np.float64),
        "close": np.empty(n, dtype=np.float64),
        "volume": np.empty(n, dtype=np.float64),
    }
    for i, c in enumerate(candles):
        out["open_time"][i] = c.open_time
        out["open"][i] = c.open
        out["high"][i] = c.high
        out["low"][i] = c.low
        out["close"][i] = c.close
        out["volume"][i] = c.volume
    return out


# ---------------------------------------------------------------------------
# Signal metadata (one variant per generator)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CrossoverMeta:
    mode: Mode
    vwma_fast: float
    vwma_slow: float
    plus_di: float
    minus_di: float
    dx: float
    adx: float
    vwma_cross_index: int
    di_index: int
    dx_cross_index: int
    di_crossover: bool
    kind: str = field(default="crossover", init=False)


@dataclass(frozen=True)
class DirectionMeta:
    mode: Mode
    vwma_slope: float
    slope_threshold: float
    plus_di: float
    minus_di: float
    dx: float
    adx: float
    di_crossover: bool
    window_start: int
    window_end: int
    kind: str = field(default="direction", init=False)


@dataclass(frozen=True)
class CandleMeta:
    body: float
    body_pct: float
    atr: float
    body_to_atr: float
    filters: tuple[str, ...] = ()
    kind: str = field(default="candle", init=False)


@dataclass(frozen=True)
class AnchoredMeta:
    anchor_index: int
    trigger_index: int
    window_start: int
    window_end: int
    body: float
    body_pct: float
    atr: float
    satisfied: tuple[str, ...] = ()
    kind: str = field(default="anchored", init=False)


@dataclass(frozen=True)
class TrendMeta:
    """Entry: the matched VWMA and DI crossovers.  Exit: which rule closed the position."""

    reason: str
    vwma_fast: float
    vwma_slow: float
    plus_di: float
    minus_di: float
    atr_pct: float
    vwma_cross_index: int | None = None
    di_cross_index: int | None = None
    dx_cross_index: int | None = None
    distance_bars: int | None = None
    lead: str = ""
    body_pct: float = 0.0
    body_to_atr: float = 0.0
    kind: str = field(default="trend", init=False)


@dataclass(frozen=True)
class IntervalMeta:
    start_index: int
    end_index: int
    duration_bars: int
    variation_pct: float
    vwma: float
    slope: float
    threshold: float
    kind: str = field(default="interval", init=False)


SignalMeta = Union[CrossoverMeta, DirectionMeta, CandleMeta, AnchoredMeta, TrendMeta, IntervalMeta]


# ---------------------------------------------------------------------------
# Signals and diagnostics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Signal:
    timestamp: int
    action: Action
    direction: Direction
    price: float
    confidence: float
    metadata: SignalMeta | None = None
    entry_price: float | None = None
    entry_time: int | None = None

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")


@dataclass
class TrackedSignal:
    index: int
    timestamp: int
    window_start: int
    window_end: int
    status: TrackStatus
    reason: str = ""
    found: tuple[str, ...] = ()
    missing: tuple[str, ...] = ()
    direction: Direction | None = None
    action: Action | None = None


@dataclass
class GeneratorMetrics:
    total_signals: int = 0
    entry_signals: int = 0
    exit_signals: int = 0
    long_signals: int = 0
    short_signals: int = 0
    avg_confidence: float = 0.0
    last_signal_time: int | None = None

    def record(self, signal: Signal) -> None:
        self.total_signals += 1
        if signal.action is Action.ENTRY:
            self.entry_signals += 1
        else:
            self.exit_signals += 1
        if signal.direction is Direction.LONG:
            self.long_signals += 1
        else:
            self.short_signals += 1
        self.avg_confidence += (signal.confidence - self.avg_confidence) / self.total_signals
        self.last_signal_time = signal.timestamp


# ---------------------------------------------------------------------------
# Closed positions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClosedPosition:
    direction: Direction
    entry_time: int
    entry_price: float
    exit_time: int
    exit_price: float
    exit_reason: ExitReason

    @property
    def captured_pct(self) -> float:
        if self.entry_price == 0.0 or math.isnan(self.entry_price):
            return 0.0
        if self.direction is Direction.LONG:
            return (self.exit_price - self.entry_price) / self.entry_price * 100.0
        return (self.entry_price - self.exit_price) / self.entry_price * 100.0
