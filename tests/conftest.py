import logging
import sys
from pathlib import Path

import pytest

# make the top-level package importable without an install
ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from candlesig.data import generate_sample, to_candles  # noqa: E402
from candlesig.models import Candle  # noqa: E402

MINUTE = 60_000


def make_candles(rows, start: int = 0, interval: int = MINUTE) -> list[Candle]:
    """Candles from (open, high, low, close[, volume]) tuples."""
    out = []
    for i, row in enumerate(rows):
        o, h, lo, c = row[:4]
        v = row[4] if len(row) > 4 else 1.0
        out.append(Candle(start + i * interval, float(o), float(h), float(lo), float(c), float(v)))
    return out


@pytest.fixture(scope="session")
def sample_candles() -> list[Candle]:
    return to_candles(generate_sample(n=1500, seed=11))


@pytest.fixture(scope="session")
def short_candles() -> list[Candle]:
    return to_candles(generate_sample(n=420, seed=5))


@pytest.fixture(autouse=True)
def _reset_package_logger():
    # the CLI installs a console handler bound to the captured stderr of its test
    yield
    logger = logging.getLogger("candlesig")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
