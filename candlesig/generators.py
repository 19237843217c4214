"""Signal generators: stateful matchers over closed candles.

All variants share one shape (``SignalGenerator``):

    initialize()             validate config, build condition providers
    compute_indicators(c)    fill every provider's arrays from the candles
    detect_signals(c)        evaluate [cursor+1 .. len(c)-2] and advance

The last candle of a series is the one still forming and is never evaluated.
A decision on bar ``i`` reads nothing after ``i``, so detecting over a whole
series gives the same signals as detecting bar by bar.  A generator tracks
at most one open direction: same-direction ENTRYs and EXITs with nothing to
close are suppressed, and on any bar EXITs are evaluated before ENTRYs.

Variants:
    vwma_cross_dmi    VWMA cross + DI dominance + DX/ADX cross in a sliding window
    direction_dmi     event-driven VWMA slope / DI / DX decision matrix
    vwma_trend        gap-validated VWMA and DI crossovers matched within W bars
    vwma_direction    directional intervals of the VWMA slope
    candle_filter     strong-bodied candle plus same-bar filters
    anchored_window   crossover anchor, filters accumulated around it
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace

import numpy as np

from candlesig.conditions import (
    CandleGate,
    CCIBand,
    Condition,
    DICross,
    DIDominance,
    DXADXCross,
    Finding,
    MACDHistogram,
    MACDSign,
    MFIBand,
    StochCross,
    StochExtremes,
    VWMACross,
    VWMASlope,
    side_of,
)
from candlesig.config import (
    AnchoredConfig,
    CandleFilterConfig,
    CrossoverConfig,
    DirectionConfig,
    SlopeConfig,
    TrendConfig,
)
from candlesig.crossover import Cross, crossed
from candlesig.errors import GeneratorError, InsufficientHistoryError
from candlesig.indicators import SeriesCache
from candlesig.models import (
    Action,
    AnchoredMeta,
    CandleMeta,
    CrossoverMeta,
    Direction,
    DirectionMeta,
    GeneratorMetrics,
    IntervalMeta,
    Mode,
    Signal,
    SignalMeta,
    TrackedSignal,
    TrackStatus,
    TrendMeta,
    ohlcv_arrays,
)

logger = logging.getLogger(__name__)


class SignalGenerator(ABC):
    name = "generator"
    config_cls = CrossoverConfig

    def __init__(self, config=None):
        self.config = config if config is not None else self.config_cls()
        self.conditions: list[Condition] = []
        self.metrics = GeneratorMetrics()
        self.tracked: list[TrackedSignal] = []
        self._data: dict | None = None
        self._initialized = False
        self._cursor = -1
        self._last_fire = -1
        self._position: Direction | None = None
        self._entry: tuple[int, float] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Validate the configuration and build the condition providers."""
        self.config.validate()
        self.conditions = self._build_conditions()
        self._initialized = True

    @abstractmethod
    def _build_conditions(self) -> list[Condition]: ...

    @abstractmethod
    def _scan(self, start: int, end: int) -> list[Signal]: ...

    def has_gates(self) -> bool:
        return bool(self.conditions)

    @property
    def warmup(self) -> int:
        return max((c.warmup for c in self.conditions), default=0)

    def compute_indicators(self, candles) -> None:
        if not self._initialized:
            raise GeneratorError(f"{self.name}: initialize() must run before compute_indicators()")
        if len(candles) < self.warmup + 1:
            raise InsufficientHistoryError(
                f"{self.name}: {len(candles)} candles cannot warm up indicators needing {self.warmup + 1}"
            )
        self._data = ohlcv_arrays(candles)
        cache = SeriesCache(self._data)
        for condition in self.conditions:
            condition.compute(cache)

    def detect_signals(self, candles, last: int | None = None) -> list[Signal]:
        """Evaluate the closed bars after the cursor, up to ``last`` when given."""
        if self._data is None:
            raise GeneratorError(f"{self.name}: compute_indicators() must run before detect_signals()")
        if len(candles) != len(self._data["close"]):
            raise GeneratorError(
                f"{self.name}: indicators cover {len(self._data['close'])} candles, got {len(candles)}"
            )
        end = len(candles) - 2 if last is None else min(last, len(candles) - 2)
        start = max(self._cursor + 1, self.warmup)
        signals: list[Signal] = []
        if self.has_gates() and start <= end:
            self._set_horizon(end)
            signals = self._scan(start, end)
        self._cursor = max(self._cursor, end)
        for signal in signals:
            self.metrics.record(signal)
        logger.debug("%s: bars %d..%d -> %d signal(s)", self.name, start, end, len(signals))
        return signals

    def sync_position(self, direction: Direction | None, entry_time: int | None = None,
                      entry_price: float | None = None) -> None:
        """Take over a position held outside the generator (None: flat)."""
        self._position = direction
        self._entry = (entry_time, entry_price) if direction is not None else None

    def get_metrics(self) -> GeneratorMetrics:
        return replace(self.metrics)

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _set_horizon(self, i: int) -> None:
        for condition in self.conditions:
            condition.horizon = i

    def _unready(self, i: int) -> list[str]:
        return [c.name for c in self.conditions if not c.ready(i)]

    def _time(self, i: int) -> int:
        return int(self._data["open_time"][i])

    def _close(self, i: int) -> float:
        return float(self._data["close"][i])

    def _emit(self, i: int, action: Action, direction: Direction, confidence: float,
              meta: SignalMeta, out: list) -> Signal | None:
        """Build a signal for bar ``i`` unless position gating suppresses it."""
        when, price = self._time(i), self._close(i)
        if action is Action.ENTRY:
            if self._position is direction:
                return None
            signal = Signal(when, action, direction, price, confidence, meta)
            self._position = direction
            self._entry = (when, price)
        else:
            if self._position is not direction:
                return None
            entry_time, entry_price = self._entry
            signal = Signal(when, action, direction, price, confidence, meta,
                            entry_price=entry_price, entry_time=entry_time)
            self._position = None
            self._entry = None
        out.append(signal)
        return signal

    def _track(self, i: int, start: int, end: int, status: TrackStatus, reason: str = "",
               found=(), missing=(), direction=None, action=None) -> None:
        if not self.config.track:
            return
        self.tracked.append(TrackedSignal(
            index=i, timestamp=self._time(i), window_start=start, window_end=end,
            status=status, reason=reason, found=tuple(found), missing=tuple(missing),
            direction=direction, action=action,
        ))


def _find_all(conditions: list[Condition], start: int, end: int) -> dict[str, Finding | None]:
    return {c.name: c.find(start, end) for c in conditions}


# ---------------------------------------------------------------------------
# vwma_cross_dmi
# ---------------------------------------------------------------------------


class VWMACrossDMIGenerator(SignalGenerator):
    """VWMA cross, DI dominance and DX/ADX cross found within one sliding window."""

    name = "vwma_cross_dmi"
    config_cls = CrossoverConfig

    def _build_conditions(self):
        cfg = self.config
        self.vwma = VWMACross(cfg.vwma_fast, cfg.vwma_slow)
        self.di = DIDominance(cfg.dmi_period, prefer_crossover=True)
        self.dx = DXADXCross(cfg.dmi_period)
        return [self.vwma, self.di, self.dx]

    def _scan(self, start, end):
        out: list[Signal] = []
        for i in range(start, end + 1):
            self._set_horizon(i)
            self._evaluate(i, out)
        return out

    def _evaluate(self, i: int, out: list) -> None:
        window_start = max(i - self.config.window + 1, self._last_fire + 1, 0)
        unready = self._unready(i)
        if unready:
            self._track(i, window_start, i, TrackStatus.NOT_READY, "indicator unavailable", missing=unready)
            return
        found = _find_all(self.conditions, window_start, i)
        missing = [name for name, f in found.items() if f is None]
        if missing:
            self._track(i, window_start, i, TrackStatus.INCOMPLETE_WINDOW, "conditions missing in window",
                        found=[n for n in found if n not in missing], missing=missing)
            return

        vw, di, dx = found[self.vwma.name], found[self.di.name], found[self.dx.name]
        direction = side_of(vw.lean)
        trend = di.lean is vw.lean and dx.lean is Cross.UP and di.crossover
        mode = Mode.TREND if trend else Mode.COUNTER_TREND
        confidence = 0.8 if trend else 0.6
        meta = CrossoverMeta(
            mode=mode,
            vwma_fast=float(self.vwma.a[i]),
            vwma_slow=float(self.vwma.b[i]),
            plus_di=float(self.di.plus[i]),
            minus_di=float(self.di.minus[i]),
            dx=float(self.dx.dx[i]),
            adx=float(self.dx.adx[i]),
            vwma_cross_index=vw.index,
            di_index=di.index,
            dx_cross_index=dx.index,
            di_crossover=di.crossover,
        )

        emitted: list[Signal] = []
        if self._position is direction.opposite():
            self._emit(i, Action.EXIT, direction.opposite(), confidence, meta, emitted)
        self._emit(i, Action.ENTRY, direction, confidence, meta, emitted)
        if not emitted:
            self._track(i, window_start, i, TrackStatus.SUPPRESSED, f"{direction.value} already open",
                        found=found.keys(), direction=direction, action=Action.ENTRY)
            return
        self._last_fire = i
        self._track(i, window_start, i, TrackStatus.VALID, mode.value, found=found.keys(),
                    direction=direction, action=Action.ENTRY)
        out.extend(emitted)


# ---------------------------------------------------------------------------
# direction_dmi
# ---------------------------------------------------------------------------

# (VWMA slope, DI dominance, DX vs ADX) -> (entry direction, mode).
# The same row closes an open position in the opposite direction.
DECISION_MATRIX: dict[tuple[Cross, Cross, Cross], tuple[Direction, Mode]] = {
    (Cross.UP, Cross.UP, Cross.UP): (Direction.LONG, Mode.TREND),
    (Cross.UP, Cross.DOWN, Cross.DOWN): (Direction.LONG, Mode.COUNTER_TREND),
    (Cross.DOWN, Cross.DOWN, Cross.UP): (Direction.SHORT, Mode.TREND),
    (Cross.DOWN, Cross.UP, Cross.DOWN): (Direction.SHORT, Mode.COUNTER_TREND),
}

ENTRY_CONFIDENCE = {Mode.TREND: 0.9, Mode.COUNTER_TREND: 0.7}
EXIT_CONFIDENCE = {Mode.TREND: 0.8, Mode.COUNTER_TREND: 0.6}


def classify(vwma: Cross, di: Cross, dx: Cross) -> tuple[Direction, Mode] | None:
    """Map one combination of directional evidence to an entry side and mode."""
    return DECISION_MATRIX.get((vwma, di, dx))


class DirectionDMIGenerator(SignalGenerator):
    """Event-driven matcher: VWMA slope, DI dominance and DX/ADX cross in one window.

    A bar is evaluated when one of its conditions changes on it: a slope over
    the threshold, a DI leader change, or a crossover whose gap is confirmed
    on that bar.
    """

    name = "direction_dmi"
    config_cls = DirectionConfig

    def _build_conditions(self):
        cfg = self.config
        self.slope = VWMASlope(
            cfg.vwma_period, cfg.slope_period, cfg.slope_threshold,
            dynamic=cfg.dynamic_threshold, atr_period=cfg.atr_period, atr_coefficient=cfg.atr_coefficient,
        )
        self.di = DIDominance(cfg.dmi_period, gap_min=cfg.gap_di, gap_window=cfg.gap_window)
        self.dx = DXADXCross(cfg.dmi_period, gap_min=cfg.gap_dx, gap_window=cfg.gap_window)
        return [self.slope, self.di, self.dx]

    def _scan(self, start, end):
        out: list[Signal] = []
        for e in range(start, end + 1):
            self._set_horizon(e)
            if any(c.event(e) for c in self.conditions):
                self._evaluate(e, out)
        return out

    def _evaluate(self, e: int, out: list) -> None:
        cfg = self.config
        window_start = max(e - cfg.window + 1, self._last_fire + 1, 0)
        unready = self._unready(e)
        if unready:
            self._track(e, window_start, e, TrackStatus.NOT_READY, "indicator unavailable", missing=unready)
            return
        found = _find_all(self.conditions, window_start, e)
        missing = [name for name, f in found.items() if f is None]
        present = [name for name in found if name not in missing]
        if missing:
            gap_rejected = any(c.rejected_gap for c in self.conditions if c.name in missing)
            status = TrackStatus.GAP_INSUFFICIENT if gap_rejected else TrackStatus.INCOMPLETE_WINDOW
            self._track(e, window_start, e, status, "conditions missing in window", found=present, missing=missing)
            return

        vw, di, dx = found[self.slope.name], found[self.di.name], found[self.dx.name]
        if cfg.require_di_crossover and not di.crossover:
            self._track(e, window_start, e, TrackStatus.INCOMPLETE_WINDOW, "DI crossover required", found=present)
            return
        row = classify(vw.lean, di.lean, dx.lean)
        if row is None:
            self._track(e, window_start, e, TrackStatus.SUPPRESSED,
                        f"no strategy for {vw.lean.value}/{di.lean.value}/{dx.lean.value}", found=present)
            return
        direction, mode = row
        meta = DirectionMeta(
            mode=mode,
            vwma_slope=vw.values[0],
            slope_threshold=vw.values[1],
            plus_di=float(self.di.plus[e]),
            minus_di=float(self.di.minus[e]),
            dx=float(self.dx.dx[e]),
            adx=float(self.dx.adx[e]),
            di_crossover=di.crossover,
            window_start=window_start,
            window_end=e,
        )

        emitted: list[Signal] = []
        held = direction.opposite()
        if self._position is held:
            enabled = cfg.enable_exit_trend if mode is Mode.TREND else cfg.enable_exit_counter_trend
            if enabled:
                self._emit(e, Action.EXIT, held, EXIT_CONFIDENCE[mode], meta, emitted)
            else:
                self._track(e, window_start, e, TrackStatus.FLAG_DISABLED, f"exit {mode.value} disabled",
                            found=present, direction=held, action=Action.EXIT)

        enabled = cfg.enable_entry_trend if mode is Mode.TREND else cfg.enable_entry_counter_trend
        if not enabled:
            self._track(e, window_start, e, TrackStatus.FLAG_DISABLED, f"entry {mode.value} disabled",
                        found=present, direction=direction, action=Action.ENTRY)
        elif mode is Mode.TREND and not di.crossover:
            self._track(e, window_start, e, TrackStatus.INCOMPLETE_WINDOW, "TREND entry needs a DI crossover",
                        found=present, direction=direction, action=Action.ENTRY)
        elif self._emit(e, Action.ENTRY, direction, ENTRY_CONFIDENCE[mode], meta, emitted) is None:
            self._track(e, window_start, e, TrackStatus.SUPPRESSED, f"{direction.value} already open",
                        found=present, direction=direction, action=Action.ENTRY)

        if emitted:
            self._last_fire = e
            for signal in emitted:
                self._track(e, window_start, e, TrackStatus.VALID, mode.value, found=present,
                            direction=signal.direction, action=signal.action)
            out.extend(emitted)


# ---------------------------------------------------------------------------
# vwma_trend
# ---------------------------------------------------------------------------


def match_confidence(distance: int) -> float:
    """Confidence of a VWMA/DI match from the bars between the two crossovers."""
    if distance == 0:
        return 0.95
    if distance <= 3:
        return 0.85
    if distance <= 5:
        return 0.75
    return max(0.8 - 0.05 * distance, 0.3)


class TrendGenerator(SignalGenerator):
    """Gap-validated VWMA crossover matched with a DI crossover of the same side.

    The DI crossover also needs DX rising through ADX within ``gap_window``
    bars of it.  A match fires on the bar that completes it, provided that
    bar's candle passes the body filters; an open position is closed when
    the VWMAs cross back.
    """

    name = "vwma_trend"
    config_cls = TrendConfig

    def _build_conditions(self):
        cfg = self.config
        self.vwma = VWMACross(cfg.vwma_fast, cfg.vwma_slow, gap_atr=cfg.gap_vwma_atr, gap_window=cfg.gap_window,
                              atr_period=cfg.atr_period, volatility_min=cfg.volatility_min)
        self.di = DIDominance(cfg.dmi_period, gap_min=cfg.gap_di, gap_window=cfg.gap_window)
        self.dx = DXADXCross(cfg.dmi_period, gap_min=cfg.gap_dx)
        self.candle = CandleGate(cfg.atr_period, cfg.body_pct_min, cfg.body_atr_min)
        return [self.vwma, self.di, self.dx, self.candle]

    def _scan(self, start, end):
        out: list[Signal] = []
        for e in range(start, end + 1):
            self._set_horizon(e)
            self._evaluate(e, out)
        return out

    def _crossovers(self, condition, start: int, end: int) -> list[Finding]:
        found = (condition.crossover_at(i) for i in range(start, end + 1))
        return [f for f in found if f is not None]

    def _dx_rise(self, di_index: int, e: int) -> int | None:
        for k in range(di_index, min(di_index + self.config.gap_window, e) + 1):
            found = self.dx.crossover_at(k)
            if found is not None and found.lean is Cross.UP:
                return k
        return None

    def _match(self, e: int):
        """Closest VWMA/DI pair whose last confirmation lands on ``e``."""
        cfg = self.config
        start = max(e - cfg.window - cfg.gap_window, 0)
        best = None
        for vw in self._crossovers(self.vwma, start, e):
            for di in self._crossovers(self.di, start, e):
                distance = abs(vw.index - di.index)
                if di.lean is not vw.lean or distance > cfg.window:
                    continue
                dx_index = self._dx_rise(di.index, e)
                if dx_index is None:
                    continue
                done = max(self.vwma.confirmed_at(vw.index), self.di.confirmed_at(di.index), dx_index)
                if done == e and (best is None or distance < best[3]):
                    best = (vw, di, dx_index, distance)
        return best

    def _meta(self, e: int, reason: str, **extra) -> TrendMeta:
        atr_value = self.candle.stats(e)[2]
        return TrendMeta(
            reason=reason,
            vwma_fast=float(self.vwma.a[e]),
            vwma_slow=float(self.vwma.b[e]),
            plus_di=float(self.di.plus[e]),
            minus_di=float(self.di.minus[e]),
            atr_pct=atr_value / self._close(e) * 100.0 if self._close(e) else 0.0,
            **extra,
        )

    def _evaluate(self, e: int, out: list) -> None:
        cfg = self.config
        unready = self._unready(e)
        if unready:
            self._track(e, e, e, TrackStatus.NOT_READY, "indicator unavailable", missing=unready)
            return

        emitted: list[Signal] = []
        held = self._position
        if held is not None and cfg.enable_exit_vwma:
            lean = crossed(self.vwma.a, self.vwma.b, e)
            if lean is not None and side_of(lean) is held.opposite():
                self._emit(e, Action.EXIT, held, 0.8, self._meta(e, "vwma_inverse_cross"), emitted)

        match = self._match(e)
        if match is not None:
            vw, di, dx_index, distance = match
            side = side_of(vw.lean)
            window = (min(vw.index, di.index), e)
            body, body_pct, atr_value = self.candle.stats(e)
            colour_ok = not cfg.enforce_candle_direction or self.candle.colour(e) is side
            if not (self.candle.passes(e) and colour_ok):
                self._track(e, *window, TrackStatus.INCOMPLETE_WINDOW, "candle rejected",
                            found=(self.vwma.name, self.di.name, self.dx.name), missing=(self.candle.name,),
                            direction=side, action=Action.ENTRY)
            else:
                lead = "vwma" if vw.index < di.index else "dmi" if di.index < vw.index else "together"
                meta = self._meta(
                    e, "match", vwma_cross_index=vw.index, di_cross_index=di.index, dx_cross_index=dx_index,
                    distance_bars=distance, lead=lead, body_pct=body_pct,
                    body_to_atr=body / atr_value if atr_value > 0.0 else 0.0,
                )
                confidence = match_confidence(distance)
                if self._position is side.opposite():
                    self._emit(e, Action.EXIT, side.opposite(), confidence, meta, emitted)
                if self._emit(e, Action.ENTRY, side, confidence, meta, emitted) is None:
                    self._track(e, *window, TrackStatus.SUPPRESSED, f"{side.value} already open",
                                direction=side, action=Action.ENTRY)

        for signal in emitted:
            self._track(e, e, e, TrackStatus.VALID, signal.metadata.reason,
                        direction=signal.direction, action=signal.action)
        out.extend(emitted)


# ---------------------------------------------------------------------------
# vwma_direction
# ---------------------------------------------------------------------------


def interval_exit_confidence(duration: int, variation_pct: float) -> float:
    """Longer and larger directional intervals close with more confidence."""
    confidence = 0.5
    if duration >= 50:
        confidence = 0.9
    elif duration >= 20:
        confidence = 0.7
    elif duration >= 10:
        confidence = 0.6
    size = abs(variation_pct)
    if size >= 5.0:
        confidence += 0.1
    elif size >= 2.0:
        confidence += 0.05
    return min(max(confidence, 0.3), 1.0)


class SlopeDirectionGenerator(SignalGenerator):
    """Directional intervals of the VWMA slope.

    Once the slope clears the threshold for ``confirm_bars`` bars on a new
    side, the running interval is closed (EXIT) and the next one opened
    (ENTRY).  Flat stretches keep the current interval.
    """

    name = "vwma_direction"
    config_cls = SlopeConfig

    def _build_conditions(self):
        cfg = self.config
        self.slope = VWMASlope(
            cfg.vwma_period, cfg.slope_period, cfg.slope_threshold,
            dynamic=cfg.dynamic_threshold, atr_period=cfg.atr_period, atr_coefficient=cfg.atr_coefficient,
            confirm=cfg.confirm_bars,
        )
        return [self.slope]

    def _scan(self, start, end):
        out: list[Signal] = []
        for i in range(start, end + 1):
            self._evaluate(i, out)
        return out

    def _interval_start(self, i: int) -> int:
        entry_time = self._entry[0] if self._entry is not None else None
        if entry_time is None:
            return i
        return min(int(np.searchsorted(self._data["open_time"], entry_time)), i)

    def _evaluate(self, i: int, out: list) -> None:
        found = self.slope.observe(i)
        if found is None:
            return
        side = side_of(found.lean)
        if self._position is side:
            return
        slope, threshold = found.values
        vwma_value = float(self.slope.vwma[i])
        emitted: list[Signal] = []
        held = side.opposite()
        if self._position is held:
            start = self._interval_start(i)
            entry_price = self._entry[1]
            variation = (self._close(i) - entry_price) / entry_price * 100.0 if entry_price else 0.0
            meta = IntervalMeta(start_index=start, end_index=i, duration_bars=i - start, variation_pct=variation,
                                vwma=vwma_value, slope=slope, threshold=threshold)
            self._emit(i, Action.EXIT, held, interval_exit_confidence(i - start, variation), meta, emitted)
        meta = IntervalMeta(start_index=i, end_index=i, duration_bars=0, variation_pct=0.0,
                            vwma=vwma_value, slope=slope, threshold=threshold)
        self._emit(i, Action.ENTRY, side, 0.7, meta, emitted)
        for signal in emitted:
            self._track(i, i - self.config.confirm_bars + 1, i, TrackStatus.VALID, "direction change",
                        found=(self.slope.name,), direction=signal.direction, action=signal.action)
        out.extend(emitted)


# ---------------------------------------------------------------------------
# Candle based variants
# ---------------------------------------------------------------------------


def _filters_from(cfg: CandleFilterConfig, relative: bool = False) -> list[Condition]:
    """Optional filters enabled in a candle config, in evaluation order."""
    stoch = (cfg.stoch_k_period, cfg.stoch_k_smooth, cfg.stoch_d_period)
    stoch_rel = relative and getattr(cfg, "stoch_relative", False)
    dmi_rel = relative and getattr(cfg, "dmi_relative", False)
    vwma_rel = relative and getattr(cfg, "vwma_relative", False)
    out: list[Condition] = []
    if cfg.enable_stoch_extremes:
        out.append(StochExtremes(*stoch, long_max=cfg.stoch_long_max, short_min=cfg.stoch_short_min))
    if cfg.enable_stoch_cross:
        out.append(StochCross(*stoch, relative_mode=stoch_rel))
    if cfg.enable_dmi_cross:
        out.append(DICross(cfg.dmi_period, relative_mode=dmi_rel))
    if cfg.enable_vwma_cross:
        out.append(VWMACross(cfg.vwma_fast, cfg.vwma_slow, relative_mode=vwma_rel))
    if cfg.enable_macd_sign:
        out.append(MACDSign(cfg.macd_fast, cfg.macd_slow, cfg.macd_signal))
    if cfg.enable_macd_histogram:
        out.append(MACDHistogram(cfg.macd_fast, cfg.macd_slow, cfg.macd_signal))
    if cfg.enable_mfi:
        out.append(MFIBand(cfg.mfi_period, cfg.mfi_oversold, cfg.mfi_overbought))
    if cfg.enable_cci:
        out.append(CCIBand(cfg.cci_period, cfg.cci_oversold, cfg.cci_overbought))
    return out


def candle_confidence(body_pct: float, body_to_atr: float) -> float:
    confidence = 0.5
    if body_pct >= 0.6:
        confidence += 0.15
    if body_to_atr >= 0.8:
        confidence += 0.15
    return min(max(confidence, 0.4), 0.95)


class _CandleGenerator(SignalGenerator):
    """Shared plumbing for the candle-validated variants."""

    def _build_candle(self) -> None:
        cfg = self.config
        self.candle = CandleGate(cfg.atr_period, cfg.body_pct_min, cfg.body_atr_min,
                                 cfg.volume_ratio_min, cfg.volume_period)
        self.gate_enabled = cfg.candle_gate

    def has_gates(self) -> bool:
        return bool(self.filters) or self.gate_enabled

    def _label(self, i: int, side: Direction) -> Action:
        """ENTRY when the close clears the bodies of the two previous bars, EXIT otherwise."""
        if i < 2:
            return Action.ENTRY
        o, c = self._data["open"], self._data["close"]
        refs = []
        for j in (i - 1, i - 2):
            red = c[j] < o[j]
            if side is Direction.LONG:
                refs.append(o[j] if red else c[j])
            else:
                refs.append(c[j] if red else o[j])
        if side is Direction.LONG:
            return Action.ENTRY if c[i] >= max(refs) else Action.EXIT
        return Action.ENTRY if c[i] <= min(refs) else Action.EXIT

    def _candle_stats(self, i: int) -> tuple[float, float, float, float]:
        body, body_pct, atr_value = self.candle.stats(i)
        body_to_atr = body / atr_value if atr_value > 0.0 else 0.0
        return body, body_pct, atr_value, body_to_atr


class CandleFilterGenerator(_CandleGenerator):
    """A strong-bodied candle whose colour sets the side, confirmed by filters on the same bar."""

    name = "candle_filter"
    config_cls = CandleFilterConfig

    def _build_conditions(self):
        self._build_candle()
        self.filters = _filters_from(self.config)
        return [self.candle, *self.filters]

    def _scan(self, start, end):
        out: list[Signal] = []
        for i in range(start, end + 1):
            signal = self._evaluate(i)
            if signal is not None:
                out.append(signal)
        return out

    def _evaluate(self, i: int) -> Signal | None:
        side = self.candle.colour(i)
        if side is None:
            return None
        if self.gate_enabled and not self.candle.passes(i):
            return None
        unready = [f.name for f in self.filters if not f.ready(i)]
        if unready:
            self._track(i, i, i, TrackStatus.NOT_READY, "indicator unavailable", missing=unready, direction=side)
            return None
        failed = [f.name for f in self.filters if f.check(i, side) is None]
        passed = [f.name for f in self.filters if f.name not in failed]
        if failed:
            self._track(i, i, i, TrackStatus.INCOMPLETE_WINDOW, "filters rejected bar",
                        found=passed, missing=failed, direction=side)
            return None

        body, body_pct, atr_value, body_to_atr = self._candle_stats(i)
        action = self._label(i, side)
        meta = CandleMeta(body=body, body_pct=body_pct, atr=atr_value, body_to_atr=body_to_atr,
                          filters=tuple(passed))
        emitted: list[Signal] = []
        signal = self._emit(i, action, side, candle_confidence(body_pct, body_to_atr), meta, emitted)
        status = TrackStatus.VALID if signal is not None else TrackStatus.SUPPRESSED
        self._track(i, i, i, status, action.value, found=passed, direction=side, action=action)
        return signal


class AnchoredWindowGenerator(_CandleGenerator):
    """Crossover anchor, filters accumulated around it, candle validation on one bar.

    An anchor ``a`` opens the window ``[a - window//2 .. a + window]``.  Filters
    count once they were true anywhere from the window start to the bar being
    scanned.  Bars are walked in order; on bar ``j`` the earliest anchor (LONG
    before SHORT) whose candle validates on ``j`` with every filter satisfied
    fires, and only anchors after ``j`` stay open.
    """

    name = "anchored_window"
    config_cls = AnchoredConfig

    def _build_conditions(self):
        self._build_candle()
        self.filters = _filters_from(self.config, relative=True)
        self.crosses = [f for f in self.filters if f.anchors]
        return [self.candle, *self.filters]

    def _anchor_sides(self, a: int) -> list[Direction]:
        sides = set()
        if self.crosses:
            for cross in self.crosses:
                found = cross.observe(a)
                if found is not None:
                    sides.add(side_of(found.lean))
        elif not self.config.anchor_by_cross_only:
            if self.gate_enabled:
                found = self.candle.observe(a)
                if found is not None:
                    sides.add(side_of(found.lean))
            else:
                colour = self.candle.colour(a)
                if colour is not None:
                    sides.add(colour)
        return [d for d in (Direction.LONG, Direction.SHORT) if d in sides]

    def _run_window(self, a: int, side: Direction, end: int):
        """First trigger of one candidate window up to ``end``: ``(trigger, start, satisfied)``."""
        start = max(a - self.config.window // 2, self._last_fire + 1, 0)
        stop = min(a + self.config.window, end)
        satisfied: dict[str, Finding] = {}
        for j in range(start, stop + 1):
            for f in self.filters:
                if f.name not in satisfied:
                    hit = f.check(j, side)
                    if hit is not None:
                        satisfied[f.name] = hit
            if j < a:
                continue
            if self.gate_enabled and self.candle.check(j, side) is None:
                continue
            if len(satisfied) < len(self.filters) or not all(f.ready(j) for f in self.filters):
                continue
            return j, start, satisfied
        return None, start, satisfied

    def _scan(self, start, end):
        out: list[Signal] = []
        for j in range(start, end + 1):
            self._set_horizon(j)
            self._trigger_at(j, out)
        return out

    def _trigger_at(self, j: int, out: list) -> None:
        window = self.config.window
        for a in range(max(j - window, self._last_fire + 1, self.warmup), j + 1):
            for side in self._anchor_sides(a):
                trigger, w_start, satisfied = self._run_window(a, side, j)
                if trigger == j:
                    self._fire(a, j, side, w_start, satisfied, out)
                    return
                if trigger is None and j == a + window:
                    self._track(a, w_start, j, TrackStatus.INCOMPLETE_WINDOW, "window exhausted",
                                found=satisfied.keys(),
                                missing=[f.name for f in self.filters if f.name not in satisfied],
                                direction=side)

    def _fire(self, a, j, side, w_start, satisfied, out) -> None:
        body, body_pct, atr_value, body_to_atr = self._candle_stats(j)
        action = self._label(j, side)
        w_stop = a + self.config.window
        meta = AnchoredMeta(
            anchor_index=a, trigger_index=j, window_start=w_start, window_end=w_stop,
            body=body, body_pct=body_pct, atr=atr_value, satisfied=tuple(satisfied),
        )
        signal = self._emit(j, action, side, candle_confidence(body_pct, body_to_atr), meta, out)
        # every open window resets even when position gating drops the signal
        self._last_fire = j
        status = TrackStatus.VALID if signal is not None else TrackStatus.SUPPRESSED
        self._track(j, w_start, w_stop, status, action.value, found=satisfied.keys(),
                    direction=side, action=action)
