"""Example 3 - Anchored window with trade-level trailing stops
=============================================================
A stochastic %K/%D cross anchors a window of 20 bars (plus 10 bars of
look-back).  MFI and CCI must each agree with the anchor's side somewhere in
the window, and a strong-bodied candle of the right colour after the anchor
pulls the trigger.

Positions are replayed against synthetic trades, so the multi-stage trailing
stop can fire inside a bar:

  profit < 2%    trail 1.0% behind the best price
  profit >= 2%   trail 0.6%
  profit >= 5%   trail 0.3%

Run:
    python examples/03_anchored_ticks.py
    python examples/03_anchored_ticks.py trades.csv    # timestamp,price columns
"""

import sys

from candlesig.config import AnchoredConfig
from candlesig.data import generate_sample, generate_trades, load_trades_csv, to_candles
from candlesig.engine import Backtester
from candlesig.execution import TrailingConfig
from candlesig.generators import AnchoredWindowGenerator

CONFIG = AnchoredConfig(
    window=20,
    enable_stoch_extremes=False,
    enable_stoch_cross=True,
    enable_mfi=True,
    enable_cci=True,
    body_pct_min=0.5,
    body_atr_min=0.5,
)

TRAILING = TrailingConfig(policy="multi_stage", stages=[(0.0, 0.01), (0.02, 0.006), (0.05, 0.003)])


def main():
    candles = to_candles(generate_sample(n=2000, seed=8))
    trades = load_trades_csv(sys.argv[1]) if len(sys.argv) > 1 else generate_trades(candles, per_candle=8)

    bt = Backtester(lambda: AnchoredWindowGenerator(CONFIG), trailing=TRAILING, window=200, close_at_end=True)
    result = bt.run_trades(candles, trades)

    print(f"{len(trades)} trades replayed, {len(result.signals)} signals, {result.num_trades} positions")
    for s in result.signals[:8]:
        meta = s.metadata
        print(f"  {s.action.value:<5} {s.direction.value:<5} anchor={meta.anchor_index} trigger={meta.trigger_index} "
              f"body={meta.body_pct:.0%} conf={s.confidence:.2f} satisfied={list(meta.satisfied)}")
    print(f"captured {result.total_captured_pct:+.3f}%  win rate {result.win_rate_pct:.1f}%")


if __name__ == "__main__":
    main()
