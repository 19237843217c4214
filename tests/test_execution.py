import math

import pytest

from candlesig.errors import ConfigError
from candlesig.execution import (
    ATRTrailingStop,
    ExecutionModel,
    MultiStageTrailingStop,
    PercentTrailingStop,
    TrailingConfig,
    VWMATrailingStop,
)
from candlesig.models import Action, Direction, ExitReason, Signal

LONG, SHORT = Direction.LONG, Direction.SHORT


def _signal(ts, action, direction, price):
    return Signal(ts, action, direction, price, 0.8)


# ---------------------------------------------------------------------------
# Position lifecycle
# ---------------------------------------------------------------------------


def test_entry_then_exit_captures_move():
    model = ExecutionModel()
    model.apply(_signal(1, Action.ENTRY, LONG, 100.0))
    closed = model.apply(_signal(2, Action.EXIT, LONG, 105.0))
    assert closed.captured_pct == pytest.approx(5.0)
    assert closed.exit_reason is ExitReason.SIGNAL
    assert model.position is None
    assert model.closed == [closed]


def test_short_capture_is_inverted():
    model = ExecutionModel()
    model.apply(_signal(1, Action.ENTRY, SHORT, 100.0))
    closed = model.apply(_signal(2, Action.EXIT, SHORT, 90.0))
    assert closed.captured_pct == pytest.approx(10.0)


def test_opposite_entry_reverses():
    model = ExecutionModel()
    model.apply(_signal(1, Action.ENTRY, LONG, 100.0))
    closed = model.apply(_signal(2, Action.ENTRY, SHORT, 98.0))
    assert closed.exit_reason is ExitReason.REVERSAL
    assert closed.captured_pct == pytest.approx(-2.0)
    assert model.position.direction is SHORT
    assert model.position.entry_price == 98.0


def test_same_direction_entry_and_unmatched_exit_are_ignored():
    model = ExecutionModel()
    assert model.apply(_signal(1, Action.EXIT, LONG, 100.0)) is None
    assert model.enter(LONG, 2, 100.0)
    assert not model.enter(LONG, 3, 110.0)
    assert model.position.entry_price == 100.0
    assert model.exit(SHORT, 4, 90.0) is None
    assert model.closed == []


def test_close_open_at_end_of_data():
    model = ExecutionModel()
    model.enter(SHORT, 1, 50.0)
    closed = model.close_open(9, 45.0)
    assert closed.exit_reason is ExitReason.END_OF_DATA
    assert closed.captured_pct == pytest.approx(10.0)
    assert model.close_open(10, 45.0) is None


def test_trailing_hit_closes_at_stop_level():
    model = ExecutionModel(TrailingConfig(policy="atr", cap_pct=0.02))
    model.enter(LONG, 1, 100.0, atr=10.0)
    assert model.on_price(2, 105.0) is None
    assert model.on_price(3, 104.0) is None
    closed = model.on_price(4, 102.5)
    assert closed.exit_reason is ExitReason.TRAILING_STOP
    assert closed.exit_price == pytest.approx(103.0)
    assert closed.exit_time == 4


def test_no_trailing_policy_never_stops():
    model = ExecutionModel(TrailingConfig(policy="none"))
    model.enter(LONG, 1, 100.0, atr=1.0)
    assert model.position.stop is None
    assert model.on_price(2, 1.0) is None


# ---------------------------------------------------------------------------
# Stop policies
# ---------------------------------------------------------------------------


def test_atr_stop_offset_is_capped():
    stop = ATRTrailingStop(LONG, 100.0, atr=10.0, cap_pct=0.02)
    assert stop.level == pytest.approx(98.0)
    stop.update(105.0)
    assert stop.level == pytest.approx(103.0)
    stop.update(104.0)
    assert stop.level == pytest.approx(103.0)
    assert stop.hit(102.5) == (True, pytest.approx(103.0))


def test_atr_stop_uses_atr_below_cap_and_cap_without_atr():
    assert ATRTrailingStop(LONG, 100.0, atr=0.5, cap_pct=0.02).level == pytest.approx(99.5)
    assert ATRTrailingStop(SHORT, 100.0, atr=math.nan, cap_pct=0.02).level == pytest.approx(102.0)
    assert ATRTrailingStop(LONG, 100.0, atr=1.0, cap_pct=0.02, atr_coefficient=1.5).level == pytest.approx(98.5)


def test_percent_stop_trails_best_price():
    stop = PercentTrailingStop(LONG, 100.0, pct=0.01)
    assert stop.level == pytest.approx(99.0)
    stop.update(110.0)
    assert stop.level == pytest.approx(108.9)
    stop.update(105.0)
    assert stop.level == pytest.approx(108.9)


def test_percent_stop_short():
    stop = PercentTrailingStop(SHORT, 100.0, pct=0.01)
    assert stop.level == pytest.approx(101.0)
    stop.update(90.0)
    assert stop.level == pytest.approx(90.9)
    assert stop.hit(91.0)[0]
    assert not stop.hit(90.5)[0]


def test_multi_stage_narrows_with_profit():
    stop = MultiStageTrailingStop(LONG, 100.0, stages=[(0.05, 0.01), (0.0, 0.02)])
    assert stop.level == pytest.approx(98.0)
    stop.update(104.0)
    assert stop.level == pytest.approx(101.92)
    stop.update(106.0)
    assert stop.level == pytest.approx(104.94)


def test_vwma_stop_waits_for_reference():
    stop = VWMATrailingStop(LONG, 100.0, offset_pct=0.002)
    assert stop.hit(1.0) == (False, None)
    stop.update(101.0, math.nan)
    assert stop.level is None
    stop.update(101.0, 100.0)
    assert stop.level == pytest.approx(99.8)
    stop.update(101.0, 99.0)
    assert stop.level == pytest.approx(99.8)


@pytest.mark.parametrize("direction", [LONG, SHORT])
@pytest.mark.parametrize("policy", ["atr", "percent", "multi_stage", "vwma"])
def test_levels_only_tighten(direction, policy):
    stop = TrailingConfig(policy=policy).build(direction, 100.0, atr=0.4)
    prices = [100.0, 101.5, 99.0, 103.0, 97.0, 102.0, 95.0, 104.0]
    levels = []
    for price in prices:
        stop.update(price, reference=price * 0.999)
        levels.append(stop.level)
    steps = [b - a for a, b in zip(levels, levels[1:])]
    if direction is LONG:
        assert all(s >= 0.0 for s in steps)
    else:
        assert all(s <= 0.0 for s in steps)


def test_invalid_stop_configuration():
    with pytest.raises(ConfigError):
        PercentTrailingStop(LONG, 0.0)
    with pytest.raises(ConfigError):
        PercentTrailingStop(LONG, 100.0, pct=0.0)
    with pytest.raises(ConfigError):
        MultiStageTrailingStop(LONG, 100.0, stages=[])
    with pytest.raises(ConfigError):
        ExecutionModel(TrailingConfig(policy="chandelier"))
