"""Example 2 - Direction DMI decision matrix, rolling kline replay
================================================================
Each closed bar starts a fresh generator over the last 300 closed candles plus
a synthetic forming candle, the way a live scalper would see the market.

The generator only looks at bars where something changed (VWMA slope
clears its threshold, DI dominance flips, DX crosses ADX) and classifies
the window:

  slope  DI     DX/ADX   ->  action
  UP     UP     UP           LONG   TREND          (needs a DI crossover)
  UP     DOWN   DOWN         LONG   COUNTER_TREND
  DOWN   DOWN   UP           SHORT  TREND          (needs a DI crossover)
  DOWN   UP     DOWN         SHORT  COUNTER_TREND

The same row closes an open position on the other side.  Here the slope
threshold is ATR-relative, and counter-trend entries are switched off so only
trend entries open positions while both kinds of exit stay active.

Set ``track=True`` to keep one diagnostic record per evaluated window; the
last few rejected windows are printed at the end.

Run:
    python examples/02_direction_rolling.py
"""

from collections import Counter

from candlesig.config import DirectionConfig
from candlesig.data import generate_sample, to_candles
from candlesig.engine import Backtester
from candlesig.execution import TrailingConfig
from candlesig.generators import DirectionDMIGenerator
from candlesig.logs import setup_logger

CONFIG = DirectionConfig(
    vwma_period=20,
    slope_period=6,
    dynamic_threshold=True,
    atr_coefficient=0.25,
    gap_di=3.0,
    gap_dx=3.0,
    gap_window=3,
    window=6,
    enable_entry_counter_trend=False,
)

TRAILING = TrailingConfig(policy="percent", pct=0.004)


def main():
    setup_logger()
    candles = to_candles(generate_sample(n=1500, seed=21))

    result = Backtester(lambda: DirectionDMIGenerator(CONFIG), trailing=TRAILING, window=300).run_klines(candles)
    print(f"{len(result.signals)} signals, {result.num_trades} closed positions, "
          f"captured {result.total_captured_pct:+.3f}% "
          f"(long {result.long_captured_pct:+.3f}%, short {result.short_captured_pct:+.3f}%)")
    print("exit reasons:", dict(Counter(p.exit_reason.value for p in result.positions)))

    # offline diagnostics on the full series
    tracked = DirectionDMIGenerator(DirectionConfig(**{**CONFIG.as_params(), "track": True}))
    tracked.initialize()
    tracked.compute_indicators(candles)
    tracked.detect_signals(candles)
    print("window outcomes:", dict(Counter(t.status.value for t in tracked.tracked)))
    for t in [t for t in tracked.tracked if t.missing][-5:]:
        print(f"  bar {t.index}: {t.status.value} missing={list(t.missing)}")


if __name__ == "__main__":
    main()
