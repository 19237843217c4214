"""Generator configurations.

Each generator takes one of these dataclasses; ``validate()`` raises
``ConfigError`` and runs from ``SignalGenerator.initialize()``.  Defaults are
the 1-minute scalping presets the generators were tuned on.
"""

from dataclasses import dataclass, fields

from candlesig.errors import ConfigError


def _require_positive(**values) -> None:
    for name, value in values.items():
        if value <= 0:
            raise ConfigError(f"{name} must be > 0, got {value}")


def _require_band(name: str, oversold: float, overbought: float) -> None:
    if oversold >= overbought:
        raise ConfigError(f"{name} oversold ({oversold}) must be below overbought ({overbought})")


@dataclass
class BaseConfig:
    track: bool = False

    def validate(self) -> None:
        pass

    def as_params(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class CrossoverConfig(BaseConfig):
    vwma_fast: int = 6
    vwma_slow: int = 36
    dmi_period: int = 14
    window: int = 5

    def validate(self) -> None:
        _require_positive(
            vwma_fast=self.vwma_fast,
            vwma_slow=self.vwma_slow,
            dmi_period=self.dmi_period,
            window=self.window,
        )
        if self.vwma_fast >= self.vwma_slow:
            raise ConfigError(f"vwma_fast ({self.vwma_fast}) must be shorter than vwma_slow ({self.vwma_slow})")


@dataclass
class DirectionConfig(BaseConfig):
    vwma_period: int = 20
    slope_period: int = 6
    slope_threshold: float = 0.1
    dynamic_threshold: bool = False
    atr_period: int = 14
    atr_coefficient: float = 0.25
    dmi_period: int = 14
    gap_di: float = 5.0
    gap_dx: float = 5.0
    gap_window: int = 3
    window: int = 5
    enable_entry_trend: bool = True
    enable_entry_counter_trend: bool = True
    enable_exit_trend: bool = True
    enable_exit_counter_trend: bool = True
    require_di_crossover: bool = False

    def validate(self) -> None:
        _require_positive(
            vwma_period=self.vwma_period,
            slope_period=self.slope_period,
            atr_period=self.atr_period,
            dmi_period=self.dmi_period,
            window=self.window,
        )
        if self.dynamic_threshold:
            _require_positive(atr_coefficient=self.atr_coefficient)
        for name in ("slope_threshold", "gap_di", "gap_dx", "gap_window"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be >= 0, got {getattr(self, name)}")
        if not (self.enable_exit_trend or self.enable_exit_counter_trend):
            raise ConfigError("at least one exit condition must be enabled")


@dataclass
class CandleFilterConfig(BaseConfig):
    atr_period: int = 3
    body_pct_min: float = 0.6
    body_atr_min: float = 0.6
    candle_gate: bool = True
    volume_ratio_min: float = 0.0
    volume_period: int = 20
    stoch_k_period: int = 14
    stoch_k_smooth: int = 3
    stoch_d_period: int = 3
    stoch_long_max: float = 40.0
    stoch_short_min: float = 60.0
    enable_stoch_extremes: bool = True
    enable_stoch_cross: bool = False
    enable_vwma_cross: bool = False
    vwma_fast: int = 6
    vwma_slow: int = 36
    enable_dmi_cross: bool = False
    dmi_period: int = 14
    enable_mfi: bool = False
    mfi_period: int = 14
    mfi_oversold: float = 20.0
    mfi_overbought: float = 80.0
    enable_cci: bool = False
    cci_period: int = 20
    cci_oversold: float = -100.0
    cci_overbought: float = 100.0
    enable_macd_histogram: bool = False
    enable_macd_sign: bool = False
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9

    def validate(self) -> None:
        _require_positive(
            atr_period=self.atr_period,
            volume_period=self.volume_period,
            stoch_k_period=self.stoch_k_period,
            stoch_k_smooth=self.stoch_k_smooth,
            stoch_d_period=self.stoch_d_period,
            vwma_fast=self.vwma_fast,
            vwma_slow=self.vwma_slow,
            dmi_period=self.dmi_period,
            mfi_period=self.mfi_period,
            macd_fast=self.macd_fast,
            macd_slow=self.macd_slow,
            macd_signal=self.macd_signal,
        )
        if self.cci_period < 2:
            raise ConfigError(f"cci_period must be >= 2, got {self.cci_period}")
        if not 0.0 <= self.body_pct_min <= 1.0:
            raise ConfigError(f"body_pct_min must be within [0, 1], got {self.body_pct_min}")
        if self.body_atr_min < 0 or self.volume_ratio_min < 0:
            raise ConfigError("body_atr_min and volume_ratio_min must be >= 0")
        if self.enable_mfi:
            _require_band("MFI", self.mfi_oversold, self.mfi_overbought)
        if self.enable_cci:
            _require_band("CCI", self.cci_oversold, self.cci_overbought)


@dataclass
class AnchoredConfig(CandleFilterConfig):
    window: int = 20
    anchor_by_cross_only: bool = True
    stoch_relative: bool = False
    dmi_relative: bool = False
    vwma_relative: bool = False

    def validate(self) -> None:
        super().validate()
        _require_positive(window=self.window)


@dataclass
class TrendConfig(BaseConfig):
    vwma_fast: int = 5
    vwma_slow: int = 15
    dmi_period: int = 5
    atr_period: int = 3
    # VWMA separation in ATRs; DI and DX gaps in index points
    gap_vwma_atr: float = 0.5
    gap_di: float = 2.0
    gap_dx: float = 2.0
    gap_window: int = 5
    volatility_min: float = 0.1
    window: int = 10
    body_pct_min: float = 0.6
    body_atr_min: float = 0.6
    enforce_candle_direction: bool = True
    enable_exit_vwma: bool = True

    def validate(self) -> None:
        _require_positive(
            vwma_fast=self.vwma_fast,
            vwma_slow=self.vwma_slow,
            dmi_period=self.dmi_period,
            atr_period=self.atr_period,
            window=self.window,
        )
        if self.vwma_fast >= self.vwma_slow:
            raise ConfigError(f"vwma_fast ({self.vwma_fast}) must be shorter than vwma_slow ({self.vwma_slow})")
        for name in ("gap_vwma_atr", "gap_di", "gap_dx", "gap_window", "volatility_min", "body_atr_min"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be >= 0, got {getattr(self, name)}")
        if not 0.0 <= self.body_pct_min <= 1.0:
            raise ConfigError(f"body_pct_min must be within [0, 1], got {self.body_pct_min}")


@dataclass
class SlopeConfig(BaseConfig):
    vwma_period: int = 3
    slope_period: int = 2
    slope_threshold: float = 0.1
    confirm_bars: int = 1
    dynamic_threshold: bool = True
    atr_period: int = 8
    atr_coefficient: float = 0.1

    def validate(self) -> None:
        _require_positive(
            vwma_period=self.vwma_period,
            slope_period=self.slope_period,
            confirm_bars=self.confirm_bars,
            atr_period=self.atr_period,
        )
        if self.dynamic_threshold:
            _require_positive(atr_coefficient=self.atr_coefficient)
        if self.slope_threshold < 0:
            raise ConfigError(f"slope_threshold must be >= 0, got {self.slope_threshold}")
