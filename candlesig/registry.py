"""Generator registry: name -> (generator class, config dataclass)."""

import dataclasses
import logging
from collections.abc import Mapping
from typing import Any

from candlesig.errors import ConfigError
from candlesig.generators import (
    AnchoredWindowGenerator,
    CandleFilterGenerator,
    DirectionDMIGenerator,
    SignalGenerator,
    SlopeDirectionGenerator,
    TrendGenerator,
    VWMACrossDMIGenerator,
)

logger = logging.getLogger(__name__)

_REGISTRY: dict[str, type[SignalGenerator]] = {}


def register_generator(cls: type[SignalGenerator]) -> type[SignalGenerator]:
    _REGISTRY[cls.name] = cls
    return cls


for _cls in (
    VWMACrossDMIGenerator,
    DirectionDMIGenerator,
    TrendGenerator,
    SlopeDirectionGenerator,
    CandleFilterGenerator,
    AnchoredWindowGenerator,
):
    register_generator(_cls)


def available() -> list[str]:
    return sorted(_REGISTRY)


def get_generator_cls(name: str) -> type[SignalGenerator]:
    if name not in _REGISTRY:
        raise ConfigError(f"Unknown generator: {name} (available: {', '.join(available())})")
    return _REGISTRY[name]


def _coerce(kind, value: Any) -> Any:
    """Convert CLI strings to the field's declared type."""
    if not isinstance(value, str) or kind is str:
        return value
    if kind is bool:
        lowered = value.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ConfigError(f"not a boolean: {value!r}")
    try:
        if kind is int:
            return int(value)
        if kind is float:
            return float(value)
    except ValueError as exc:
        raise ConfigError(f"cannot parse {value!r} as {kind.__name__}") from exc
    return value


def build_config(name: str, params: Mapping[str, Any] | None = None):
    """Config dataclass for ``name`` from a flat parameter mapping.

    Unknown keys are dropped with a warning so shared parameter files can
    carry settings for several generators.
    """
    cls = get_generator_cls(name)
    known = {f.name: f for f in dataclasses.fields(cls.config_cls)}
    kwargs = {}
    for key, value in (params or {}).items():
        if key not in known:
            logger.warning("%s: ignoring unknown parameter %r", name, key)
            continue
        kwargs[key] = _coerce(known[key].type, value)
    return cls.config_cls(**kwargs)


def build_generator(name: str, params: Mapping[str, Any] | None = None, initialize: bool = True) -> SignalGenerator:
    generator = get_generator_cls(name)(build_config(name, params))
    if initialize:
        generator.initialize()
    return generator
