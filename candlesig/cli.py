"""CLI entry point for candlesig."""

import argparse
import logging
import sys
import time
from datetime import datetime, timezone

from candlesig.data import fetch_ohlcv, generate_sample, generate_trades, load_csv, load_trades_csv, to_candles
from candlesig.engine import Backtester, BacktestResult
from candlesig.errors import ConfigError
from candlesig.execution import TrailingConfig
from candlesig.logs import setup_logger
from candlesig.registry import available, build_config, get_generator_cls


def _load_data(args):
    """Candles for the replay as a Polars DataFrame: synthetic, CSV or exchange."""
    if args.demo:
        df = generate_sample(n=args.limit)
        print(f"\n[*] Replay source: {len(df)} synthetic {args.timeframe} bars "
              f"(close {df['close'][0]:.2f} -> {df['close'][-1]:.2f})")
        return df
    if args.csv:
        df = load_csv(args.csv, start=args.start, end=args.end, timeframe=args.timeframe)
        print(f"\n[*] Replay source: {args.csv} ({len(df)} {args.timeframe} bars)")
        return df
    span = f"last {args.limit} bars"
    if args.start or args.end:
        span = f"{args.start or '...'} to {args.end or 'now'}"
    print(f"\n[*] Replay source: {args.exchange} {args.symbol} {args.timeframe}, {span}")
    return fetch_ohlcv(args.symbol, args.timeframe, args.exchange, args.limit, start=args.start, end=args.end)


def _parse_params(pairs):
    params = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ConfigError(f"expected key=value, got {pair!r}")
        params[key.strip()] = value.strip()
    return params


def _trailing_from_args(args):
    if args.trail == "none":
        return None
    return TrailingConfig(
        policy=args.trail,
        cap_pct=args.trail_cap / 100.0,
        atr_coefficient=args.trail_atr_coeff,
        atr_period=args.trail_atr_period,
        pct=args.trail_pct / 100.0,
        vwma_period=args.trail_vwma_period,
        offset_pct=args.trail_offset / 100.0,
    )


def _fmt_time(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def _display_results(result: BacktestResult, top: int):
    """Print the run summary and the first closed positions."""
    print(f"\n{'=' * 70}")
    print(f"  {result.generator.upper()}: {len(result.signals)} signals, {result.num_trades} closed positions")
    print(f"{'=' * 70}")

    header = f"{'#':>3} {'Side':<6} {'Entry time':<17} {'Entry':>11} {'Exit time':<17} {'Exit':>11} {'Capt%':>8}  Reason"
    print(header)
    print("-" * len(header) + "-" * 10)
    for i, p in enumerate(result.positions[:top], 1):
        print(
            f"{i:>3} {p.direction.value:<6} {_fmt_time(p.entry_time):<17} {p.entry_price:>11.2f} "
            f"{_fmt_time(p.exit_time):<17} {p.exit_price:>11.2f} {p.captured_pct:>+7.3f}%  {p.exit_reason.value}"
        )

    print(f"\n{'=' * 70}")
    print(f"  Captured: {result.total_captured_pct:+.3f}% "
          f"(long {result.long_captured_pct:+.3f}% | short {result.short_captured_pct:+.3f}%)")
    print(f"  Win Rate: {result.win_rate_pct:.2f}% | Trades: {result.num_trades} | "
          f"Profit Factor: {result.profit_factor:.3f} | MaxDD: {result.max_drawdown_pct:.3f}%")
    print(f"  Params: {result.params}")
    print(f"{'=' * 70}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="candlesig - candlestick signal generators with trailing-stop backtests",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  candlesig candle_filter --demo
  candlesig anchored_window --demo --ticks 6 -p enable_stoch_cross=true
  candlesig direction_dmi -s BTC/USDT -t 1m -n 3000 --trail percent --trail-pct 0.4
  candlesig vwma_trend --demo --batch -p volatility_min=0
  candlesig vwma_direction --demo -p confirm_bars=2
  candlesig vwma_cross_dmi --csv data.csv --trades trades.csv
        """,
    )
    parser.add_argument("generator", choices=available(), help="Signal generator to run")
    parser.add_argument("-p", "--param", action="append", metavar="KEY=VALUE",
                        help="Generator parameter override (repeatable)")
    parser.add_argument("-s", "--symbol", default="BTC/USDT", help="Trading pair (default: BTC/USDT)")
    parser.add_argument("-t", "--timeframe", default="1m", help="Candle timeframe (default: 1m)")
    parser.add_argument("-e", "--exchange", default="binance", help="Exchange (default: binance)")
    parser.add_argument("-n", "--limit", type=int, default=2000, help="Number of candles (default: 2000)")
    parser.add_argument("--start", metavar="DATE", help="Start date YYYY-MM-DD (inclusive)")
    parser.add_argument("--end", metavar="DATE", help="End date YYYY-MM-DD (inclusive)")
    parser.add_argument("--csv", help="Load OHLCV from CSV file instead of exchange")
    parser.add_argument("--demo", action="store_true", help="Use synthetic data (no API needed)")
    parser.add_argument("--trades", metavar="CSV", help="Replay trades (timestamp,price) for intrabar stops")
    parser.add_argument("--ticks", type=int, metavar="N", help="Replay N synthetic trades per candle")
    parser.add_argument("--batch", action="store_true", help="Offline mode: one generator over the full series")
    parser.add_argument("--window", type=int, default=300, help="Rolling window in closed candles (default: 300)")
    parser.add_argument("--trail", default="atr", choices=["atr", "percent", "vwma", "multi_stage", "none"],
                        help="Trailing stop policy (default: atr)")
    parser.add_argument("--trail-cap", type=float, default=0.5, help="ATR policy cap, %% of entry (default: 0.5)")
    parser.add_argument("--trail-atr-coeff", type=float, default=1.0, help="ATR multiplier (default: 1.0)")
    parser.add_argument("--trail-atr-period", type=int, default=3, help="ATR period for stops (default: 3)")
    parser.add_argument("--trail-pct", type=float, default=1.0, help="Percent policy offset (default: 1.0)")
    parser.add_argument("--trail-vwma-period", type=int, default=20, help="VWMA period for stops (default: 20)")
    parser.add_argument("--trail-offset", type=float, default=0.2, help="VWMA policy offset %% (default: 0.2)")
    parser.add_argument("--close-at-end", action="store_true", help="Close an open position on the last candle")
    parser.add_argument("--top", type=int, default=20, help="Positions to list (default: 20)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    args = parser.parse_args(argv)
    setup_logger("candlesig", logging.DEBUG if args.verbose else logging.WARNING)

    try:
        config = build_config(args.generator, _parse_params(args.param))
        generator_cls = get_generator_cls(args.generator)
        backtester = Backtester(
            lambda: generator_cls(config),
            trailing=_trailing_from_args(args),
            window=args.window,
            close_at_end=args.close_at_end,
        )
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    print("=" * 70)
    print("  CANDLESIG - Signal Generator Backtest")
    print("=" * 70)

    t0 = time.perf_counter()
    candles = to_candles(_load_data(args))
    print(f"    {len(candles)} candles loaded in {time.perf_counter() - t0:.2f}s")

    t1 = time.perf_counter()
    if args.batch:
        mode = "batch"
        result = backtester.run_batch(candles)
    elif args.trades or args.ticks:
        trades = load_trades_csv(args.trades) if args.trades else generate_trades(candles, per_candle=args.ticks)
        mode = f"trades ({len(trades)})"
        result = backtester.run_trades(candles, trades)
    else:
        mode = "klines"
        result = backtester.run_klines(candles)
    print(f"\n[*] Replayed {mode} in {time.perf_counter() - t1:.2f}s")

    _display_results(result, args.top)
    print(f"\nTotal time: {time.perf_counter() - t0:.2f}s")
    return 0


if __name__ == "__main__":
    sys.exit(main())
