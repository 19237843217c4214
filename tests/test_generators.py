import math
from dataclasses import replace

import pytest
from conftest import make_candles

from candlesig.config import (
    AnchoredConfig,
    CandleFilterConfig,
    CrossoverConfig,
    DirectionConfig,
    SlopeConfig,
    TrendConfig,
)
from candlesig.crossover import Cross, crossed
from candlesig.errors import ConfigError, GeneratorError, InsufficientHistoryError
from candlesig.generators import (
    AnchoredWindowGenerator,
    CandleFilterGenerator,
    DirectionDMIGenerator,
    SlopeDirectionGenerator,
    TrendGenerator,
    VWMACrossDMIGenerator,
    candle_confidence,
    classify,
    interval_exit_confidence,
    match_confidence,
)
from candlesig.models import Action, AnchoredMeta, Direction, IntervalMeta, Mode, TrackStatus, TrendMeta

LOOSE_DIRECTION = dict(gap_di=0.0, gap_dx=0.0, slope_threshold=0.01, window=10)
ANCHORED_STOCH = dict(enable_stoch_extremes=False, enable_stoch_cross=True, body_pct_min=0.3, body_atr_min=0.3)
LOOSE_TREND = dict(volatility_min=0.0, gap_vwma_atr=0.0, gap_di=0.0, gap_dx=0.0, body_pct_min=0.1,
                   body_atr_min=0.0, enforce_candle_direction=False)
GAPPED_TREND = dict(volatility_min=0.0, gap_vwma_atr=0.2, gap_di=1.0, gap_dx=1.0, body_pct_min=0.2,
                    body_atr_min=0.2, enforce_candle_direction=False)

CASES = [
    (VWMACrossDMIGenerator, CrossoverConfig(window=10)),
    (DirectionDMIGenerator, DirectionConfig(**LOOSE_DIRECTION)),
    (TrendGenerator, TrendConfig(**LOOSE_TREND)),
    (SlopeDirectionGenerator, SlopeConfig()),
    (CandleFilterGenerator, CandleFilterConfig()),
    (AnchoredWindowGenerator, AnchoredConfig(**ANCHORED_STOCH)),
]
IDS = [cls.name for cls, _ in CASES]


def _run(cls, config, candles):
    generator = cls(config)
    generator.initialize()
    generator.compute_indicators(candles)
    return generator, generator.detect_signals(candles)


def _assert_position_gated(signals):
    open_side = None
    for s in signals:
        if s.action is Action.ENTRY:
            assert open_side is not s.direction
            open_side = s.direction
        else:
            assert open_side is s.direction
            open_side = None


# ---------------------------------------------------------------------------
# Shared contract
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("cls,config", CASES, ids=IDS)
def test_generators_emit_on_sample(sample_candles, cls, config):
    _, signals = _run(cls, config, sample_candles)
    assert signals
    assert all(0.0 <= s.confidence <= 1.0 for s in signals)


@pytest.mark.parametrize("cls,config", CASES, ids=IDS)
def test_forming_candle_is_never_evaluated(sample_candles, cls, config):
    _, signals = _run(cls, config, sample_candles)
    assert all(s.timestamp <= sample_candles[-2].open_time for s in signals)
    assert [s.timestamp for s in signals] == sorted(s.timestamp for s in signals)


@pytest.mark.parametrize("cls,config", CASES, ids=IDS)
def test_position_gating(sample_candles, cls, config):
    _, signals = _run(cls, config, sample_candles)
    _assert_position_gated(signals)
    for s in signals:
        if s.action is Action.EXIT:
            assert s.entry_time is not None and s.entry_time <= s.timestamp


@pytest.mark.parametrize("cls,config", CASES, ids=IDS)
def test_detection_is_deterministic_and_consumes_bars(sample_candles, cls, config):
    generator, first = _run(cls, config, sample_candles)
    _, again = _run(cls, config, sample_candles)
    assert first == again
    assert generator.detect_signals(sample_candles) == []


@pytest.mark.parametrize("cls,config", CASES, ids=IDS)
def test_incremental_detection_matches_batch(sample_candles, cls, config):
    _, batch = _run(cls, config, sample_candles)
    generator = cls(config)
    generator.initialize()
    head = sample_candles[:900]
    generator.compute_indicators(head)
    incremental = generator.detect_signals(head)
    generator.compute_indicators(sample_candles)
    incremental += generator.detect_signals(sample_candles)
    assert incremental == batch


PREFIX_CASES = CASES + [
    (DirectionDMIGenerator, DirectionConfig(slope_threshold=0.01, window=10, gap_di=2.0, gap_dx=2.0)),
    (TrendGenerator, TrendConfig(**GAPPED_TREND)),
]


@pytest.mark.parametrize("cls,config", PREFIX_CASES, ids=IDS + ["direction_dmi_gapped", "vwma_trend_gapped"])
def test_signals_only_read_closed_bars(sample_candles, cls, config):
    _, full = _run(cls, config, sample_candles)
    index = {c.open_time: i for i, c in enumerate(sample_candles)}
    for signal in full[:8]:
        e = index[signal.timestamp]
        _, cut = _run(cls, config, sample_candles[:e + 2])
        assert cut == [s for s in full if s.timestamp <= signal.timestamp]


@pytest.mark.parametrize("cls,config", CASES, ids=IDS)
def test_metrics_follow_signals(sample_candles, cls, config):
    generator, signals = _run(cls, config, sample_candles)
    metrics = generator.get_metrics()
    assert metrics.total_signals == len(signals)
    assert metrics.entry_signals + metrics.exit_signals == len(signals)
    assert metrics.long_signals + metrics.short_signals == len(signals)
    assert metrics.avg_confidence == pytest.approx(sum(s.confidence for s in signals) / len(signals))
    assert metrics.last_signal_time == signals[-1].timestamp


def test_tracking_does_not_change_output(sample_candles):
    _, plain = _run(DirectionDMIGenerator, DirectionConfig(**LOOSE_DIRECTION), sample_candles)
    tracked_gen, tracked = _run(DirectionDMIGenerator, DirectionConfig(track=True, **LOOSE_DIRECTION),
                                sample_candles)
    assert plain == tracked
    assert tracked_gen.tracked
    valid = [t for t in tracked_gen.tracked if t.status is TrackStatus.VALID]
    assert len(valid) == len(tracked)


# ---------------------------------------------------------------------------
# Lifecycle errors
# ---------------------------------------------------------------------------


def test_detect_before_compute_is_an_error(sample_candles):
    generator = VWMACrossDMIGenerator()
    generator.initialize()
    with pytest.raises(GeneratorError):
        generator.detect_signals(sample_candles)


def test_compute_before_initialize_is_an_error(sample_candles):
    with pytest.raises(GeneratorError):
        VWMACrossDMIGenerator().compute_indicators(sample_candles)


def test_detect_on_different_series_is_an_error(sample_candles):
    generator, _ = _run(VWMACrossDMIGenerator, CrossoverConfig(), sample_candles[:200])
    with pytest.raises(GeneratorError):
        generator.detect_signals(sample_candles[:300])


def test_insufficient_history(sample_candles):
    generator = VWMACrossDMIGenerator()
    generator.initialize()
    assert generator.warmup == 35
    with pytest.raises(InsufficientHistoryError):
        generator.compute_indicators(sample_candles[:35])
    generator.compute_indicators(sample_candles[:36])


@pytest.mark.parametrize(
    "cls,config",
    [
        (VWMACrossDMIGenerator, CrossoverConfig(window=0)),
        (VWMACrossDMIGenerator, CrossoverConfig(vwma_fast=36, vwma_slow=6)),
        (DirectionDMIGenerator, DirectionConfig(enable_exit_trend=False, enable_exit_counter_trend=False)),
        (DirectionDMIGenerator, DirectionConfig(gap_di=-1.0)),
        (CandleFilterGenerator, CandleFilterConfig(atr_period=0)),
        (CandleFilterGenerator, CandleFilterConfig(enable_cci=True, cci_period=1)),
        (CandleFilterGenerator, CandleFilterConfig(enable_mfi=True, mfi_oversold=90.0)),
        (AnchoredWindowGenerator, AnchoredConfig(window=0)),
        (TrendGenerator, TrendConfig(vwma_fast=15, vwma_slow=5)),
        (TrendGenerator, TrendConfig(body_pct_min=1.5)),
        (TrendGenerator, TrendConfig(gap_di=-1.0)),
        (SlopeDirectionGenerator, SlopeConfig(confirm_bars=0)),
        (SlopeDirectionGenerator, SlopeConfig(slope_threshold=-0.1)),
    ],
)
def test_invalid_config_rejected_at_initialize(cls, config):
    with pytest.raises(ConfigError):
        cls(config).initialize()


# ---------------------------------------------------------------------------
# Variant specifics
# ---------------------------------------------------------------------------


def test_decision_matrix():
    assert classify(Cross.UP, Cross.UP, Cross.UP) == (Direction.LONG, Mode.TREND)
    assert classify(Cross.UP, Cross.DOWN, Cross.DOWN) == (Direction.LONG, Mode.COUNTER_TREND)
    assert classify(Cross.DOWN, Cross.DOWN, Cross.UP) == (Direction.SHORT, Mode.TREND)
    assert classify(Cross.DOWN, Cross.UP, Cross.DOWN) == (Direction.SHORT, Mode.COUNTER_TREND)
    assert classify(Cross.UP, Cross.UP, Cross.DOWN) is None
    assert classify(Cross.DOWN, Cross.DOWN, Cross.DOWN) is None


def test_direction_confidences_follow_mode(sample_candles):
    _, signals = _run(DirectionDMIGenerator, DirectionConfig(**LOOSE_DIRECTION), sample_candles)
    expected = {
        (Action.ENTRY, Mode.TREND): 0.9,
        (Action.ENTRY, Mode.COUNTER_TREND): 0.7,
        (Action.EXIT, Mode.TREND): 0.8,
        (Action.EXIT, Mode.COUNTER_TREND): 0.6,
    }
    for s in signals:
        assert s.confidence == expected[(s.action, s.metadata.mode)]
        if s.action is Action.ENTRY and s.metadata.mode is Mode.TREND:
            assert s.metadata.di_crossover


def test_direction_flags_disable_entries(sample_candles):
    config = DirectionConfig(enable_entry_trend=False, enable_entry_counter_trend=False, **LOOSE_DIRECTION)
    _, signals = _run(DirectionDMIGenerator, config, sample_candles)
    assert signals == []


def test_crossover_trend_confidence(sample_candles):
    _, signals = _run(VWMACrossDMIGenerator, CrossoverConfig(window=10), sample_candles)
    for s in signals:
        assert s.confidence == (0.8 if s.metadata.mode is Mode.TREND else 0.6)
        assert s.metadata.kind == "crossover"


@pytest.mark.parametrize(
    "cls,config",
    [
        (CandleFilterGenerator, CandleFilterConfig(candle_gate=False, enable_stoch_extremes=False)),
        (AnchoredWindowGenerator, AnchoredConfig(candle_gate=False, enable_stoch_extremes=False)),
    ],
)
def test_no_gates_means_no_signals(sample_candles, cls, config):
    generator, signals = _run(cls, config, sample_candles)
    assert not generator.has_gates()
    assert signals == []


def test_candle_confidence():
    assert candle_confidence(0.7, 1.0) == pytest.approx(0.8)
    assert candle_confidence(0.7, 0.5) == pytest.approx(0.65)
    assert candle_confidence(0.3, 0.5) == pytest.approx(0.5)


def test_candle_filter_labels_against_previous_bodies():
    candles = make_candles([
        (10.0, 11.0, 9.9, 10.2),   # weak body
        (10.9, 11.2, 10.5, 10.6),  # weak body
        (10.6, 11.6, 10.5, 11.5),  # strong green clearing both bodies
        (11.5, 11.6, 11.0, 11.1),  # strong red, short side not cleared
        (11.1, 11.2, 10.0, 10.1),  # strong red below both bodies
        (10.1, 10.1, 10.1, 10.1),  # forming
    ])
    config = CandleFilterConfig(atr_period=1, body_pct_min=0.5, body_atr_min=0.0,
                                enable_stoch_extremes=False, track=True)
    generator, signals = _run(CandleFilterGenerator, config, candles)

    assert [(s.timestamp, s.action, s.direction) for s in signals] == [
        (candles[2].open_time, Action.ENTRY, Direction.LONG),
        (candles[4].open_time, Action.ENTRY, Direction.SHORT),
    ]
    assert signals[0].price == 11.5
    assert signals[0].confidence == pytest.approx(0.8)
    assert signals[0].metadata.body_pct == pytest.approx(0.9 / 1.1)
    suppressed = [t for t in generator.tracked if t.status is TrackStatus.SUPPRESSED]
    assert [(t.index, t.action, t.direction) for t in suppressed] == [(3, Action.EXIT, Direction.SHORT)]


def test_anchored_trigger_inside_its_window(sample_candles):
    config = AnchoredConfig(**ANCHORED_STOCH)
    _, signals = _run(AnchoredWindowGenerator, config, sample_candles)
    assert signals
    for s in signals:
        meta = s.metadata
        assert isinstance(meta, AnchoredMeta)
        assert meta.window_start <= meta.anchor_index <= meta.trigger_index <= meta.window_end
        assert meta.trigger_index - meta.anchor_index <= config.window
        assert s.timestamp == sample_candles[meta.trigger_index].open_time
        assert "stoch_cross" in meta.satisfied


def test_anchored_by_candle_when_no_cross(sample_candles):
    config = AnchoredConfig(enable_stoch_extremes=False, anchor_by_cross_only=False)
    _, signals = _run(AnchoredWindowGenerator, config, sample_candles)
    assert signals
    assert all(s.metadata.anchor_index == s.metadata.trigger_index for s in signals)

    strict = AnchoredConfig(enable_stoch_extremes=False, anchor_by_cross_only=True)
    assert _run(AnchoredWindowGenerator, strict, sample_candles)[1] == []


# ---------------------------------------------------------------------------
# Readiness and external position
# ---------------------------------------------------------------------------


def _silence(candles, start, stop):
    return [replace(c, volume=0.0) if start <= i < stop else c for i, c in enumerate(candles)]


@pytest.mark.parametrize(
    "cls,config,condition",
    [
        (VWMACrossDMIGenerator, CrossoverConfig(vwma_fast=2, vwma_slow=3, window=10, track=True), "vwma_cross"),
        (DirectionDMIGenerator, DirectionConfig(vwma_period=3, slope_period=2, track=True, **LOOSE_DIRECTION),
         "vwma_slope"),
    ],
    ids=["vwma_cross_dmi", "direction_dmi"],
)
def test_zero_volume_bars_are_not_ready(sample_candles, cls, config, condition):
    candles = _silence(sample_candles[:500], 200, 300)
    generator, signals = _run(cls, config, candles)
    index = {c.open_time: i for i, c in enumerate(candles)}

    assert not any(202 <= index[s.timestamp] < 300 for s in signals)
    for s in signals:
        values = [v for v in vars(s.metadata).values() if isinstance(v, float)]
        assert all(math.isfinite(v) for v in values)
    not_ready = [t for t in generator.tracked if t.status is TrackStatus.NOT_READY]
    assert not_ready
    assert all(condition in t.missing for t in not_ready if 202 <= t.index < 300)


def _label_candles():
    return make_candles([
        (10.0, 11.0, 9.9, 10.2),
        (10.9, 11.2, 10.5, 10.6),
        (10.6, 11.6, 10.5, 11.5),  # green clearing both bodies
        (11.5, 11.6, 11.0, 11.1),  # red, short side not cleared
        (11.1, 11.2, 10.0, 10.1),  # red below both bodies
        (10.1, 10.1, 10.1, 10.1),
    ])


def _label_generator(candles):
    config = CandleFilterConfig(atr_period=1, body_pct_min=0.5, body_atr_min=0.0, enable_stoch_extremes=False)
    generator = CandleFilterGenerator(config)
    generator.initialize()
    generator.compute_indicators(candles)
    return generator


def test_synced_position_gates_entries():
    candles = _label_candles()
    generator = _label_generator(candles)
    generator.sync_position(Direction.LONG, candles[0].open_time, 10.0)
    signals = generator.detect_signals(candles)
    assert [(s.timestamp, s.action, s.direction) for s in signals] == [
        (candles[4].open_time, Action.ENTRY, Direction.SHORT),
    ]


def test_synced_position_is_closed_with_its_entry():
    candles = _label_candles()
    generator = _label_generator(candles)
    first = generator.detect_signals(candles, last=2)
    assert [(s.action, s.direction) for s in first] == [(Action.ENTRY, Direction.LONG)]

    generator.sync_position(Direction.SHORT, 123, 10.0)
    rest = generator.detect_signals(candles)
    assert [(s.timestamp, s.action, s.direction) for s in rest] == [
        (candles[3].open_time, Action.EXIT, Direction.SHORT),
        (candles[4].open_time, Action.ENTRY, Direction.SHORT),
    ]
    assert rest[0].entry_time == 123 and rest[0].entry_price == 10.0


def test_detect_up_to_a_bar_then_resume(sample_candles):
    config = DirectionConfig(**LOOSE_DIRECTION)
    _, full = _run(DirectionDMIGenerator, config, sample_candles)
    generator = DirectionDMIGenerator(config)
    generator.initialize()
    generator.compute_indicators(sample_candles)
    head = generator.detect_signals(sample_candles, last=700)
    assert all(s.timestamp <= sample_candles[700].open_time for s in head)
    assert head + generator.detect_signals(sample_candles) == full


# ---------------------------------------------------------------------------
# vwma_trend and vwma_direction
# ---------------------------------------------------------------------------


def test_match_confidence():
    assert match_confidence(0) == 0.95
    assert match_confidence(3) == 0.85
    assert match_confidence(5) == 0.75
    assert match_confidence(6) == pytest.approx(0.5)
    assert match_confidence(20) == 0.3


def test_interval_exit_confidence():
    assert interval_exit_confidence(3, 0.5) == 0.5
    assert interval_exit_confidence(12, 2.5) == pytest.approx(0.65)
    assert interval_exit_confidence(25, -6.0) == pytest.approx(0.8)
    assert interval_exit_confidence(60, 10.0) == 1.0


def test_trend_entries_describe_their_match(sample_candles):
    config = TrendConfig(**LOOSE_TREND)
    generator, signals = _run(TrendGenerator, config, sample_candles)
    index = {c.open_time: i for i, c in enumerate(sample_candles)}
    entries = [s for s in signals if s.action is Action.ENTRY]
    assert entries
    for s in entries:
        meta = s.metadata
        e = index[s.timestamp]
        assert isinstance(meta, TrendMeta) and meta.reason == "match"
        assert meta.distance_bars == abs(meta.vwma_cross_index - meta.di_cross_index) <= config.window
        assert meta.di_cross_index <= meta.dx_cross_index <= meta.di_cross_index + config.gap_window
        assert max(meta.vwma_cross_index, meta.dx_cross_index) <= e
        assert s.confidence == match_confidence(meta.distance_bars)
        assert crossed(generator.vwma.a, generator.vwma.b, meta.vwma_cross_index) is (
            Cross.UP if s.direction is Direction.LONG else Cross.DOWN
        )


def test_trend_exits_on_inverse_vwma_cross(sample_candles):
    generator, signals = _run(TrendGenerator, TrendConfig(**LOOSE_TREND), sample_candles)
    index = {c.open_time: i for i, c in enumerate(sample_candles)}
    inverse = [s for s in signals if s.action is Action.EXIT and s.metadata.reason == "vwma_inverse_cross"]
    assert inverse
    for s in inverse:
        lean = crossed(generator.vwma.a, generator.vwma.b, index[s.timestamp])
        assert lean is (Cross.DOWN if s.direction is Direction.LONG else Cross.UP)
        assert s.confidence == 0.8

    _, kept = _run(TrendGenerator, TrendConfig(enable_exit_vwma=False, **LOOSE_TREND), sample_candles)
    assert not any(s.action is Action.EXIT and s.metadata.reason == "vwma_inverse_cross" for s in kept)


def test_direction_intervals_chain(sample_candles):
    _, signals = _run(SlopeDirectionGenerator, SlopeConfig(), sample_candles)
    assert signals[0].action is Action.ENTRY
    last_entry = signals[0]
    for prev, s in zip(signals, signals[1:]):
        if s.action is Action.EXIT:
            assert s.direction is last_entry.direction
            assert isinstance(s.metadata, IntervalMeta)
            assert s.metadata.start_index == last_entry.metadata.start_index
            assert s.metadata.duration_bars == s.metadata.end_index - s.metadata.start_index
            assert s.confidence == interval_exit_confidence(s.metadata.duration_bars, s.metadata.variation_pct)
        else:
            assert s.confidence == 0.7
            if prev.action is Action.EXIT:
                assert prev.timestamp == s.timestamp and prev.direction is s.direction.opposite()
            last_entry = s


def test_direction_confirmation_bars(sample_candles):
    generator, signals = _run(SlopeDirectionGenerator, SlopeConfig(confirm_bars=3), sample_candles)
    index = {c.open_time: i for i, c in enumerate(sample_candles)}
    assert signals
    for s in signals:
        if s.action is Action.ENTRY:
            lean = Cross.UP if s.direction is Direction.LONG else Cross.DOWN
            i = index[s.timestamp]
            assert all(generator.slope._lean(j) is lean for j in range(i - 2, i + 1))
