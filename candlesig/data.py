"""Market data: ccxt download, CSV files, synthetic bars and trades.

Frames are Polars DataFrames with columns timestamp (epoch ms), open, high,
low, close, volume.  ``to_candles`` turns one into the sorted, deduplicated
``Candle`` list the generators expect.  Trades are ``(timestamp_ms, price)``
tuples in ascending order.

Suspicious data (holes in the timeline, high below low, negative volume) is
reported with ``warnings.warn`` and passed through untouched.
"""

import math
import warnings
from collections.abc import Iterator
from datetime import datetime, timezone

import numba as nb
import numpy as np
import polars as pl

from candlesig.models import Candle

COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]
_SCHEMA = {"timestamp": pl.Int64, **{c: pl.Float64 for c in COLUMNS[1:]}}
_UNIT_SECONDS = {"m": 60, "h": 3600, "d": 86400, "w": 604800}
_DAY_MS = 86_400_000
_PAGE = 1000


def timeframe_ms(timeframe: str) -> int:
    """Bar size of a ccxt timeframe string ("1m", "15m", "4h", "1d", ...)."""
    count, unit = timeframe[:-1], timeframe[-1:]
    if unit not in _UNIT_SECONDS or not count.isdigit() or int(count) == 0:
        raise ValueError(f"unsupported timeframe {timeframe!r}")
    return int(count) * _UNIT_SECONDS[unit] * 1000


def _day_ms(day: str) -> int:
    """Midnight UTC of a YYYY-MM-DD date, in epoch milliseconds."""
    return int(datetime.strptime(day, "%Y-%m-%d").replace(tzinfo=timezone.utc).timestamp() * 1000)


def _date_bounds(start: str | None, end: str | None) -> tuple[int | None, int | None]:
    """Half-open ``[since, until)`` window; ``end`` is inclusive of its whole day."""
    return (_day_ms(start) if start else None, _day_ms(end) + _DAY_MS if end else None)


def _warn_on_problems(df: pl.DataFrame, interval_ms: int, gap_factor: float = 2.5) -> None:
    if df.height < 2:
        return
    steps = df.select(pl.col("timestamp").diff().alias("step")).drop_nulls()["step"]
    holes = steps.filter(steps > interval_ms * gap_factor)
    if holes.len():
        warnings.warn(
            f"{holes.len()} temporal gap(s) in the series, largest {holes.max() / interval_ms:.1f} bars; "
            f"indicator windows across a gap mix distant prices",
            stacklevel=3,
        )
    broken = df.filter(
        (pl.col("high") < pl.col("low"))
        | (pl.col("close") > pl.col("high"))
        | (pl.col("close") < pl.col("low"))
        | (pl.col("volume") < 0)
    ).height
    if broken:
        warnings.warn(f"{broken} bar(s) with inconsistent OHLC or negative volume", stacklevel=3)


def _frame(rows: list) -> pl.DataFrame:
    if not rows:
        return pl.DataFrame(schema=_SCHEMA)
    return (
        pl.DataFrame(rows, schema=COLUMNS, orient="row")
        .cast(_SCHEMA)
        .unique("timestamp", keep="first")
        .sort("timestamp")
    )


# ---------------------------------------------------------------------------
# Exchange
# ---------------------------------------------------------------------------


def _pages(exchange, symbol: str, timeframe: str, since: int, until: int | None,
           wanted: int | None) -> Iterator[list]:
    """Yield ccxt OHLCV pages from ``since`` until ``until`` or ``wanted`` rows."""
    got = 0
    while wanted is None or got < wanted:
        size = _PAGE if wanted is None else min(_PAGE, wanted - got)
        page = exchange.fetch_ohlcv(symbol, timeframe, since=since, limit=size)
        if until is not None:
            page = [row for row in page if row[0] < until]
        if not page:
            return
        yield page
        got += len(page)
        since = page[-1][0] + 1


def fetch_ohlcv(
    symbol: str = "BTC/USDT",
    timeframe: str = "1m",
    exchange_id: str = "binance",
    limit: int = 1000,
    start: str | None = None,
    end: str | None = None,
) -> pl.DataFrame:
    """Download OHLCV bars through ccxt.

    With ``start``/``end`` (YYYY-MM-DD, both inclusive) the whole date range
    is paged in; otherwise the most recent ``limit`` bars.  Network and
    exchange errors from ccxt propagate unchanged.
    """
    import ccxt

    exchange = getattr(ccxt, exchange_id)({"enableRateLimit": True})
    exchange.load_markets()
    interval = exchange.parse_timeframe(timeframe) * 1000
    since, until = _date_bounds(start, end)
    ranged = since is not None or until is not None
    if since is None:
        since = (until if until is not None else exchange.milliseconds()) - limit * interval

    rows = [row for page in _pages(exchange, symbol, timeframe, since, until, None if ranged else limit)
            for row in page]
    df = _frame(rows)
    _warn_on_problems(df, interval)
    return df


def fetch_candles(symbol: str, timeframe: str = "1m", count: int = 1000,
                  exchange_id: str = "binance") -> list[Candle]:
    """The ``count`` most recent candles, ascending and deduplicated."""
    return to_candles(fetch_ohlcv(symbol, timeframe, exchange_id, limit=count))


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


def load_csv(path: str, start: str | None = None, end: str | None = None, timeframe: str = "1m") -> pl.DataFrame:
    """OHLCV bars from a CSV with a header row naming the six columns."""
    df = pl.read_csv(path).select(COLUMNS).cast(_SCHEMA).sort("timestamp")
    since, until = _date_bounds(start, end)
    if since is not None:
        df = df.filter(pl.col("timestamp") >= since)
    if until is not None:
        df = df.filter(pl.col("timestamp") < until)
    _warn_on_problems(df, timeframe_ms(timeframe))
    return df


def load_trades_csv(path: str) -> list[tuple[int, float]]:
    """Trades from a CSV with ``timestamp`` (ms) and ``price`` columns, oldest first."""
    df = pl.read_csv(path).select("timestamp", "price").sort("timestamp", maintain_order=True)
    return [(int(ts), float(price)) for ts, price in df.iter_rows()]


def to_candles(df: pl.DataFrame) -> list[Candle]:
    df = df.unique("timestamp", keep="first").sort("timestamp")
    return [
        Candle(int(ts), float(o), float(h), float(lo), float(c), float(v))
        for ts, o, h, lo, c, v in df.select(COLUMNS).iter_rows()
    ]


# ---------------------------------------------------------------------------
# Synthetic data
# ---------------------------------------------------------------------------


@nb.njit(cache=True)
def _garch_returns(shocks, drift, omega, alpha, beta):
    """GARCH(1,1) log returns driven by unit shocks, plus a per-bar drift."""
    n = len(shocks)
    out = np.empty(n)
    var = omega / (1.0 - alpha - beta)
    for i in range(n):
        eps = math.sqrt(var) * shocks[i]
        out[i] = drift[i] + eps
        var = omega + alpha * eps * eps + beta * var
    return out


def generate_sample(n: int = 5000, seed: int = 42, interval_ms: int = 60_000) -> pl.DataFrame:
    """Synthetic 1-minute-like bars: clustered volatility, fat tails, trending regimes."""
    if n == 0:
        return pl.DataFrame(schema=_SCHEMA)
    rng = np.random.default_rng(seed)

    # slow regimes of a few hours give the trend-following rules something to find
    regime = 240
    drift = np.repeat(rng.normal(0.0, 2.5e-4, n // regime + 1), regime)[:n]
    shocks = rng.standard_t(5, n) / math.sqrt(5.0 / 3.0)
    log_ret = _garch_returns(shocks, drift, 4e-8, 0.08, 0.90)

    close = 30_000.0 * np.exp(np.cumsum(log_ret))
    open_ = np.concatenate(([close[0] / math.exp(log_ret[0])], close[:-1]))
    open_ *= 1.0 + rng.normal(0.0, 1e-4, n)
    top, bottom = np.maximum(open_, close), np.minimum(open_, close)
    high = top * (1.0 + rng.exponential(3e-4, n))
    low = bottom * (1.0 - rng.exponential(3e-4, n))
    volume = rng.lognormal(3.0, 0.6, n) * (1.0 + 400.0 * np.abs(log_ret))

    return pl.DataFrame({
        "timestamp": np.arange(n, dtype=np.int64) * interval_ms,
        "open": open_,
        "high": high,
        "low": low,
        "close": close,
        "volume": volume,
    })


def generate_trades(candles, per_candle: int = 6, seed: int = 7) -> list[tuple[int, float]]:
    """Synthetic trades walking each candle open -> extremes -> close inside its bar."""
    if per_candle < 4:
        raise ValueError(f"per_candle must be >= 4, got {per_candle}")
    if len(candles) < 2:
        return []
    rng = np.random.default_rng(seed)
    step = (candles[1].open_time - candles[0].open_time) // per_candle
    trades: list[tuple[int, float]] = []
    for c in candles:
        # bullish bars dip first, bearish bars spike first
        first, second = (c.low, c.high) if c.bullish else (c.high, c.low)
        middle = rng.uniform(c.low, c.high, per_candle - 4).tolist()
        prices = [c.open, first, *middle, second, c.close]
        trades.extend((c.open_time + k * step, float(p)) for k, p in enumerate(prices))
    return trades
