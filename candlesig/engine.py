"""Backtest driver: replay candles or trades through a generator and the execution model.

Execution convention (no look-ahead):
  bar p closes  ->  fresh generator over the last ``window`` closed bars plus a
                    synthetic forming bar (open time of p+1, OHLC = close[p],
                    volume 0)
                ->  signals stamped with bar p: EXIT at close[p], ENTRY at open[p+1]
  trailing stop ->  checked against each bar close (klines) or each trade (ticks)

Nothing at or after bar p+1 other than its open time and open price reaches
a decision taken at boundary p.  ``run_batch`` is the offline variant: one
generator over the whole series, advanced one boundary at a time with the
same routing rules.

Before bar p is evaluated the generator takes over the execution model's
position, so a trailing stop that closed a trade also lifts the generator's
same-direction gating.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

import numba as nb
import numpy as np

from candlesig.errors import ConfigError, InsufficientHistoryError
from candlesig.execution import ExecutionModel, TrailingConfig
from candlesig.generators import SignalGenerator
from candlesig.indicators import atr, vwma
from candlesig.models import Action, Candle, ClosedPosition, Direction, Signal, ohlcv_arrays

logger = logging.getLogger(__name__)


@dataclass
class BacktestResult:
    generator: str
    params: dict
    total_captured_pct: float
    win_rate_pct: float
    num_trades: int
    profit_factor: float
    max_drawdown_pct: float
    long_captured_pct: float = 0.0
    short_captured_pct: float = 0.0
    positions: list[ClosedPosition] = field(default_factory=list)
    signals: list[Signal] = field(default_factory=list)


@nb.njit(cache=True, error_model="numpy")
def _summarize(captured):
    """Total, win rate, profit factor and max drawdown of per-trade captured percents."""
    n = len(captured)
    total = 0.0
    wins = 0.0
    win_sum = 0.0
    loss_sum = 0.0
    peak = 0.0
    max_dd = 0.0
    for i in range(n):
        c = captured[i]
        total += c
        if c > 0.0:
            wins += 1.0
            win_sum += c
        elif c < 0.0:
            loss_sum -= c
        if total > peak:
            peak = total
        if peak - total > max_dd:
            max_dd = peak - total
    win_rate = wins / n * 100.0 if n > 0 else 0.0
    if loss_sum > 0.0:
        profit_factor = win_sum / loss_sum
    elif win_sum > 0.0:
        profit_factor = 9999.0
    else:
        profit_factor = 0.0
    return total, win_rate, profit_factor, max_dd


def infer_interval(candles) -> int:
    """Bar size in milliseconds (median spacing of open times)."""
    if len(candles) < 2:
        raise ValueError("need at least two candles to infer the bar interval")
    times = np.array([c.open_time for c in candles], dtype=np.int64)
    return int(np.median(np.diff(times)))


class Backtester:
    """Routes generator output into an ``ExecutionModel`` without look-ahead.

    ``factory`` returns a new, uninitialised generator; the rolling modes build
    one per boundary so each decision sees only its own window.
    """

    def __init__(
        self,
        factory: Callable[[], SignalGenerator],
        trailing: TrailingConfig | None = None,
        window: int = 300,
        interval_ms: int | None = None,
        close_at_end: bool = False,
    ):
        if window < 2:
            raise ConfigError(f"window must be >= 2, got {window}")
        self.factory = factory
        self.trailing = trailing
        self.window = window
        self.interval_ms = interval_ms
        self.close_at_end = close_at_end
        sample = self._new_generator()
        self.name = sample.name
        self.params = sample.config.as_params()
        self._reset()

    def _new_generator(self) -> SignalGenerator:
        generator = self.factory()
        generator.initialize()
        return generator

    def _reset(self) -> None:
        self.model = ExecutionModel(self.trailing)
        self.signals: list[Signal] = []
        self._reference: float | None = None

    # ------------------------------------------------------------------
    # Boundary processing
    # ------------------------------------------------------------------

    def _window(self, candles, p: int) -> list[Candle]:
        start = max(0, p - self.window + 1)
        last = candles[p]
        forming = Candle(candles[p + 1].open_time, last.close, last.close, last.close, last.close, 0.0)
        return [*candles[start:p + 1], forming]

    def _stop_references(self, window: list[Candle]) -> tuple[float | None, float | None]:
        """ATR and VWMA of the last closed bar of ``window`` for the stop policy."""
        if self.trailing is None or self.trailing.policy == "none":
            return None, None
        data = ohlcv_arrays(window)
        atr_value = float(atr(data["high"], data["low"], data["close"], self.trailing.atr_period)[-2])
        vwma_value = None
        if self.trailing.policy == "vwma":
            vwma_value = float(vwma(data["close"], data["volume"], self.trailing.vwma_period)[-2])
        return atr_value, vwma_value

    def _sync(self, generator: SignalGenerator) -> None:
        held = self.model.position
        if held is None:
            generator.sync_position(None)
        else:
            generator.sync_position(held.direction, held.entry_time, held.entry_price)

    def _detect(self, window: list[Candle], p: int) -> list[Signal] | None:
        """Signals of a fresh generator for the last closed bar of ``window``."""
        generator = self._new_generator()
        try:
            generator.compute_indicators(window)
        except InsufficientHistoryError as exc:
            logger.debug("boundary %d skipped: %s", p, exc)
            return None
        # replay the history in the window, then hand over the live position
        generator.detect_signals(window, last=len(window) - 3)
        self._sync(generator)
        return generator.detect_signals(window)

    def _boundary(self, candles, p: int, signals: list[Signal] | None = None) -> None:
        if p < 0 or p + 1 >= len(candles):
            return
        if signals is None and p < self.window - 1:
            return
        window = self._window(candles, p)
        if signals is None:
            signals = self._detect(window, p)
            if signals is None:
                return

        bar, nxt = candles[p], candles[p + 1]
        current = [s for s in signals if s.timestamp == bar.open_time]
        atr_value, vwma_value = self._stop_references(window)
        if vwma_value is not None:
            self._reference = vwma_value
        if not current:
            return
        self.signals.extend(current)

        for signal in current:
            if signal.action is Action.EXIT:
                self.model.exit(signal.direction, bar.open_time, bar.close)
        for signal in current:
            if signal.action is Action.ENTRY and self.model.enter(
                signal.direction, nxt.open_time, nxt.open, atr=atr_value, reference=self._reference
            ):
                break

    # ------------------------------------------------------------------
    # Drivers
    # ------------------------------------------------------------------

    def run_klines(self, candles) -> BacktestResult:
        """Kline-by-kline replay; stops are checked against each bar close."""
        self._reset()
        for i, bar in enumerate(candles):
            if i >= 1:
                self._boundary(candles, i - 1)
            self.model.on_price(bar.open_time, bar.close, self._reference)
        return self._result(candles)

    def run_trades(self, candles, trades: Iterable[tuple[int, float]]) -> BacktestResult:
        """Trade-by-trade replay: intrabar stop checks, boundaries on interval changes."""
        self._reset()
        interval = self.interval_ms or infer_interval(candles)
        index = {c.open_time: i for i, c in enumerate(candles)}
        current = None
        last_ts = None
        for ts, price in trades:
            if last_ts is not None and ts < last_ts:
                raise ValueError(f"trades must be in ascending timestamp order ({ts} after {last_ts})")
            last_ts = ts
            bucket = ts - ts % interval
            if current is not None and bucket != current and current in index:
                self._boundary(candles, index[current])
            current = bucket
            self.model.on_price(ts, price, self._reference)
        if current is not None and current in index:
            self._boundary(candles, index[current])
        return self._result(candles)

    def run_batch(self, candles) -> BacktestResult:
        """Offline replay: one generator over the full series, one boundary at a time."""
        self._reset()
        generator = self._new_generator()
        generator.compute_indicators(candles)
        for i, bar in enumerate(candles):
            if i >= 1:
                self._sync(generator)
                signals = generator.detect_signals(candles, last=i - 1)
                self._boundary(candles, i - 1, signals=signals)
            self.model.on_price(bar.open_time, bar.close, self._reference)
        return self._result(candles)

    def _result(self, candles) -> BacktestResult:
        if self.close_at_end and len(candles):
            last = candles[-1]
            self.model.close_open(last.open_time, last.close)
        positions = list(self.model.closed)
        captured = np.array([p.captured_pct for p in positions], dtype=np.float64)
        total, win_rate, profit_factor, max_dd = _summarize(captured)
        long_sum = sum(p.captured_pct for p in positions if p.direction is Direction.LONG)
        short_sum = sum(p.captured_pct for p in positions if p.direction is Direction.SHORT)
        logger.info("%s: %d signal(s), %d closed position(s), %+.2f%% captured",
                    self.name, len(self.signals), len(positions), total)
        return BacktestResult(
            generator=self.name,
            params=self.params,
            total_captured_pct=round(float(total), 4),
            win_rate_pct=round(float(win_rate), 2),
            num_trades=len(positions),
            profit_factor=round(float(profit_factor), 3),
            max_drawdown_pct=round(float(max_dd), 4),
            long_captured_pct=round(long_sum, 4),
            short_captured_pct=round(short_sum, 4),
            positions=positions,
            signals=list(self.signals),
        )
