"""Example 1 - VWMA cross + DMI, offline batch replay
=====================================================
One generator runs over the whole series and its signals are routed with the
same fill rules as the live driver:

  EXIT   closes at the close of the bar that produced it
  ENTRY  opens at the open of the following bar

The crossover generator needs three pieces of evidence inside one sliding
window of closed bars:

  • VWMA(6) crossing VWMA(36)      sets the side
  • +DI / -DI dominance            agrees with the side, or fights it
  • DX crossing ADX                confirms strength when rising

All three aligned (DX rising, DI crossover on the VWMA side) is TREND and
scores 0.8; anything else is COUNTER_TREND at 0.6.

Run:
    python examples/01_crossover_batch.py --demo
    python examples/01_crossover_batch.py -s ETH/USDT -t 5m -n 3000
"""

import argparse

from candlesig.config import CrossoverConfig
from candlesig.data import fetch_ohlcv, generate_sample, to_candles
from candlesig.engine import Backtester
from candlesig.execution import TrailingConfig
from candlesig.generators import VWMACrossDMIGenerator
from candlesig.models import Mode

CONFIG = CrossoverConfig(vwma_fast=6, vwma_slow=36, dmi_period=14, window=8)

# ATR(3) trailing, capped at 0.5% of the entry price
TRAILING = TrailingConfig(policy="atr", atr_period=3, cap_pct=0.005)


def main():
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--demo", action="store_true")
    parser.add_argument("-s", "--symbol", default="BTC/USDT")
    parser.add_argument("-t", "--timeframe", default="1m")
    parser.add_argument("-n", "--limit", type=int, default=2000)
    args = parser.parse_args()

    df = generate_sample(n=args.limit) if args.demo else fetch_ohlcv(args.symbol, args.timeframe, limit=args.limit)
    candles = to_candles(df)

    result = Backtester(lambda: VWMACrossDMIGenerator(CONFIG), trailing=TRAILING).run_batch(candles)

    trend = sum(1 for s in result.signals if s.metadata.mode is Mode.TREND)
    print(f"{len(result.signals)} signals ({trend} TREND), {result.num_trades} closed positions")
    print(f"captured {result.total_captured_pct:+.3f}%  win rate {result.win_rate_pct:.1f}%  "
          f"PF {result.profit_factor:.2f}  maxDD {result.max_drawdown_pct:.3f}%")
    for p in result.positions[:10]:
        print(f"  {p.direction.value:<5} {p.entry_price:>10.2f} -> {p.exit_price:>10.2f} "
              f"{p.captured_pct:+.3f}%  {p.exit_reason.value}")


if __name__ == "__main__":
    main()
