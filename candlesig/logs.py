import logging

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def setup_logger(name: str = "candlesig", level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    # one console handler, even when called again (tests, repeated CLI runs)
    if not any(getattr(h, "_candlesig", False) for h in logger.handlers):
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(LOG_FORMAT))
        ch._candlesig = True
        logger.addHandler(ch)
    return logger
