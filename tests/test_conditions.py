import numpy as np

from candlesig.conditions import DIDominance, VWMACross, VWMASlope
from candlesig.crossover import Cross
from candlesig.models import Direction


def _di(gap_min=5.0, gap_window=3):
    # +DI crosses above -DI at bar 2; the gap reaches 5 only on bar 4
    di = DIDominance(gap_min=gap_min, gap_window=gap_window)
    di._set_pair(np.array([10.0, 10.0, 12.0, 13.0, 20.0, 20.0]), np.array([12.0, 12.0, 11.0, 11.0, 11.0, 11.0]))
    return di


def test_crossover_waits_for_its_gap_confirmation():
    di = _di()
    di.horizon = 3
    assert di.crossover_at(2) is None
    assert di.rejected_gap

    di.horizon = 4
    found = di.crossover_at(2)
    assert found.index == 2 and found.lean is Cross.UP and found.crossover
    assert di.confirmed_at(2) == 4


def test_confirmation_bar_is_the_event():
    di = _di()
    di.horizon = 3
    assert not di.confirms_at(3)
    di.horizon = 4
    assert di.confirms_at(4)
    assert di.event(4)


def test_window_search_respects_horizon():
    di = _di()
    di.horizon = 3
    assert di.find_crossover(0, 3) is None
    di.horizon = 4
    assert di.find_crossover(0, 4, Direction.LONG).index == 2
    assert di.find_crossover(0, 4, Direction.SHORT) is None


def test_dominance_needs_the_gap():
    di = _di()
    di.horizon = 5
    assert di.dominance_at(3) is None
    assert di.dominance_at(4).lean is Cross.UP
    assert not di.dominance_at(4).crossover


def test_slope_confirmation_needs_consecutive_bars():
    slope = VWMASlope(threshold=0.1, confirm=2)
    slope.slope = np.array([0.5, 0.5, -0.5, 0.5, 0.5])
    slope.thresholds = np.full(5, 0.1)
    leans = [slope.observe(i) for i in range(5)]
    assert [f.lean if f else None for f in leans] == [None, Cross.UP, None, None, Cross.UP]


def test_slope_below_threshold_is_flat():
    slope = VWMASlope(threshold=0.1)
    slope.slope = np.array([0.05, -0.2, np.nan])
    slope.thresholds = np.full(3, 0.1)
    assert slope.observe(0) is None
    assert slope.observe(1).lean is Cross.DOWN
    assert slope.observe(2) is None


def test_vwma_cross_volatility_floor():
    cross = VWMACross(2, 3, volatility_min=0.5)
    cross._set_pair(np.array([1.0, 3.0, 3.0]), np.array([2.0, 2.0, 2.0]))
    cross.atr_pct = np.array([1.0, 0.2, 1.0])
    assert cross.ready(1)
    assert cross.crossover_at(1) is None

    cross.atr_pct = np.array([1.0, 0.8, 1.0])
    assert cross.crossover_at(1).lean is Cross.UP


def test_vwma_cross_unready_without_atr():
    cross = VWMACross(2, 3, gap_atr=0.5)
    cross._set_pair(np.array([1.0, 3.0]), np.array([2.0, 2.0]), gaps=np.array([0.2, 0.8]))
    cross.atr_pct = np.array([1.0, np.nan])
    assert cross.ready(0)
    assert not cross.ready(1)
