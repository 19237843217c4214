"""Position and trailing-stop execution model.

One ``ExecutionModel`` holds at most one open position.  It is closed by, in
order of arrival: an EXIT signal for its direction, an opposite-direction
ENTRY (close, then reopen), or a trailing-stop hit against the latest price.

Stop policies share one contract::

    stop = build_trailing(config, direction, entry_price, atr)
    stop.update(price, reference)      # tighten only, never widen
    hit, level = stop.hit(price)

``reference`` feeds anchored policies (the VWMA value for ``VWMATrailingStop``);
the others ignore it.  A LONG stop level never decreases, a SHORT one never
increases.
"""

import logging
import math
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field

from candlesig.errors import ConfigError
from candlesig.models import Action, ClosedPosition, Direction, ExitReason, Signal

logger = logging.getLogger(__name__)


def _missing(value) -> bool:
    return value is None or math.isnan(value)


# ---------------------------------------------------------------------------
# Stop policies
# ---------------------------------------------------------------------------


class TrailingStop(ABC):
    def __init__(self, direction: Direction, entry_price: float):
        if entry_price <= 0.0 or math.isnan(entry_price):
            raise ConfigError(f"entry price must be > 0, got {entry_price}")
        self.direction = direction
        self.entry_price = entry_price
        self.level: float | None = None

    @abstractmethod
    def update(self, price: float, reference: float | None = None) -> None: ...

    def _tighten(self, candidate: float) -> None:
        if self.level is None:
            self.level = candidate
        elif self.direction is Direction.LONG:
            self.level = max(self.level, candidate)
        else:
            self.level = min(self.level, candidate)

    def hit(self, price: float) -> tuple[bool, float | None]:
        if self.level is None:
            return False, None
        if self.direction is Direction.LONG:
            return price <= self.level, self.level
        return price >= self.level, self.level


class ATRTrailingStop(TrailingStop):
    """Fixed offset of ``min(ATR * coefficient, entry * cap_pct)`` trailing the price."""

    def __init__(self, direction, entry_price, atr: float | None, cap_pct: float = 0.005,
                 atr_coefficient: float = 1.0):
        super().__init__(direction, entry_price)
        if cap_pct <= 0.0:
            raise ConfigError(f"cap_pct must be > 0, got {cap_pct}")
        cap = entry_price * cap_pct
        self.offset = cap if _missing(atr) or atr <= 0.0 else min(atr * atr_coefficient, cap)
        self.level = entry_price - direction.sign * self.offset

    def update(self, price, reference=None):
        self._tighten(price - self.direction.sign * self.offset)


class PercentTrailingStop(TrailingStop):
    """Stop ``pct`` away from the best price reached since entry."""

    def __init__(self, direction, entry_price, pct: float = 0.01):
        super().__init__(direction, entry_price)
        if pct <= 0.0:
            raise ConfigError(f"pct must be > 0, got {pct}")
        self.pct = pct
        self.extreme = entry_price
        self.level = self._level_for(entry_price)

    def _current_pct(self) -> float:
        return self.pct

    def _level_for(self, extreme: float) -> float:
        return extreme * (1.0 - self.direction.sign * self._current_pct())

    def update(self, price, reference=None):
        if self.direction is Direction.LONG and price > self.extreme:
            self.extreme = price
        elif self.direction is Direction.SHORT and price < self.extreme:
            self.extreme = price
        else:
            return
        self._tighten(self._level_for(self.extreme))


class MultiStageTrailingStop(PercentTrailingStop):
    """Percent trailing whose offset narrows as unrealized profit crosses thresholds.

    ``stages`` is a sequence of ``(profit_threshold, pct)`` pairs; the pct of
    the highest threshold reached by the best price applies.
    """

    def __init__(self, direction, entry_price, stages: Sequence[tuple[float, float]] = ((0.0, 0.01),)):
        if not stages:
            raise ConfigError("multi-stage trailing needs at least one stage")
        ordered = sorted((float(t), float(p)) for t, p in stages)
        if any(p <= 0.0 for _, p in ordered):
            raise ConfigError("stage percentages must be > 0")
        self.stages = ordered
        super().__init__(direction, entry_price, pct=ordered[0][1])

    def profit(self) -> float:
        return self.direction.sign * (self.extreme - self.entry_price) / self.entry_price

    def _current_pct(self) -> float:
        profit = self.profit()
        pct = self.stages[0][1]
        for threshold, stage_pct in self.stages:
            if profit >= threshold:
                pct = stage_pct
        return pct


class VWMATrailingStop(TrailingStop):
    """Stop pinned ``offset_pct`` beyond a moving average; unset until the first value."""

    def __init__(self, direction, entry_price, offset_pct: float = 0.002):
        super().__init__(direction, entry_price)
        if offset_pct < 0.0:
            raise ConfigError(f"offset_pct must be >= 0, got {offset_pct}")
        self.offset_pct = offset_pct

    def update(self, price, reference=None):
        if _missing(reference):
            return
        self._tighten(reference * (1.0 - self.direction.sign * self.offset_pct))


# ---------------------------------------------------------------------------
# Policy config
# ---------------------------------------------------------------------------


@dataclass
class TrailingConfig:
    policy: str = "atr"
    cap_pct: float = 0.005
    atr_coefficient: float = 1.0
    atr_period: int = 3
    pct: float = 0.01
    vwma_period: int = 20
    offset_pct: float = 0.002
    stages: list[tuple[float, float]] = field(default_factory=lambda: [(0.0, 0.01), (0.02, 0.006), (0.05, 0.003)])

    def validate(self) -> None:
        if self.policy not in TRAILING_POLICIES and self.policy != "none":
            raise ConfigError(f"unknown trailing policy {self.policy!r}; choose from {sorted(TRAILING_POLICIES)}")
        if self.atr_period <= 0 or self.vwma_period <= 0:
            raise ConfigError("atr_period and vwma_period must be > 0")

    def build(self, direction: Direction, entry_price: float, atr: float | None = None) -> TrailingStop | None:
        if self.policy == "none":
            return None
        return TRAILING_POLICIES[self.policy](self, direction, entry_price, atr)


TRAILING_POLICIES = {
    "atr": lambda cfg, d, p, atr: ATRTrailingStop(d, p, atr, cfg.cap_pct, cfg.atr_coefficient),
    "percent": lambda cfg, d, p, atr: PercentTrailingStop(d, p, cfg.pct),
    "vwma": lambda cfg, d, p, atr: VWMATrailingStop(d, p, cfg.offset_pct),
    "multi_stage": lambda cfg, d, p, atr: MultiStageTrailingStop(d, p, cfg.stages),
}


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------


@dataclass
class Position:
    direction: Direction
    entry_time: int
    entry_price: float
    stop: TrailingStop | None = None

    def close(self, time: int, price: float, reason: ExitReason) -> ClosedPosition:
        return ClosedPosition(self.direction, self.entry_time, self.entry_price, time, price, reason)


class ExecutionModel:
    """Turns a signal stream into non-overlapping closed positions."""

    def __init__(self, trailing: TrailingConfig | None = None):
        self.trailing = trailing
        if trailing is not None:
            trailing.validate()
        self.position: Position | None = None
        self.closed: list[ClosedPosition] = []

    def _finish(self, time: int, price: float, reason: ExitReason) -> ClosedPosition:
        record = self.position.close(time, price, reason)
        self.position = None
        self.closed.append(record)
        logger.debug("closed %s %.6f -> %.6f (%s, %+.3f%%)", record.direction.value,
                     record.entry_price, record.exit_price, reason.value, record.captured_pct)
        return record

    def enter(self, direction: Direction, time: int, price: float, atr: float | None = None,
              reference: float | None = None) -> bool:
        """Open ``direction``; an opposite open position is closed first.  False if ignored."""
        if self.position is not None:
            if self.position.direction is direction:
                return False
            self._finish(time, price, ExitReason.REVERSAL)
        stop = self.trailing.build(direction, price, atr) if self.trailing is not None else None
        if stop is not None:
            stop.update(price, reference)
        self.position = Position(direction, time, price, stop)
        return True

    def exit(self, direction: Direction, time: int, price: float) -> ClosedPosition | None:
        if self.position is None or self.position.direction is not direction:
            return None
        return self._finish(time, price, ExitReason.SIGNAL)

    def apply(self, signal: Signal, price: float | None = None, time: int | None = None,
              atr: float | None = None) -> ClosedPosition | None:
        """Route one signal at ``price``/``time`` (default: the signal's own)."""
        price = signal.price if price is None else price
        time = signal.timestamp if time is None else time
        if signal.action is Action.EXIT:
            return self.exit(signal.direction, time, price)
        before = len(self.closed)
        self.enter(signal.direction, time, price, atr)
        return self.closed[-1] if len(self.closed) > before else None

    def on_price(self, time: int, price: float, reference: float | None = None) -> ClosedPosition | None:
        """Trail the open position's stop with ``price`` and close it on a hit."""
        if self.position is None or self.position.stop is None:
            return None
        stop = self.position.stop
        stop.update(price, reference)
        hit, level = stop.hit(price)
        if hit:
            return self._finish(time, level, ExitReason.TRAILING_STOP)
        return None

    def close_open(self, time: int, price: float) -> ClosedPosition | None:
        if self.position is None:
            return None
        return self._finish(time, price, ExitReason.END_OF_DATA)
