"""Exception types raised by the signal pipeline."""


class ConfigError(ValueError):
    """Invalid generator, indicator or stop configuration."""


class InsufficientHistoryError(ValueError):
    """Candle series too short for the configured periods to ever warm up."""


class GeneratorError(RuntimeError):
    """Generator used out of order (e.g. detection before indicator computation)."""
