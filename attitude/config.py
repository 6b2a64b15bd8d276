"""Configuration dataclasses for calibration, filtering and sensor scaling."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional


class ReadFailurePolicy(Enum):
    """What a calibration loop does when the sample source reports ok=False."""
    ABORT = "abort"
    RETRY = "retry"


class GainConvention(Enum):
    """
    Accelerometer gain formula used by the six-point calibration.

    SCALE_RATIO  gain = expected * 2 / |mean+ - mean-|   (1.0 on a perfect sensor)
    HALF_SPAN    gain = (mean+ - mean-) / 2              (counts per reference unit)
    """
    SCALE_RATIO = "scale_ratio"
    HALF_SPAN = "half_span"


@dataclass(frozen=True)
class SensorPreset:
    """Full-scale sensitivities of one chip configuration."""
    name: str
    accel_lsb: float    # LSB per g
    gyro_lsb: float     # LSB per deg/s


# Sensitivities match each driver's default full-scale range.
SENSOR_PRESETS: Dict[str, SensorPreset] = {
    "icm20948": SensorPreset("icm20948", accel_lsb=8192.0, gyro_lsb=65.534),   # +-4 g, +-500 dps
    "mpu9250": SensorPreset("mpu9250", accel_lsb=8192.0, gyro_lsb=65.534),     # +-4 g, +-500 dps
    "icm42688": SensorPreset("icm42688", accel_lsb=2048.0, gyro_lsb=16.384),   # +-16 g, +-2000 dps
}


@dataclass
class GyroCalConfig:
    n_samples: int = 200
    max_outlier_deviation: float = 1.0      # same units as the samples
    min_accepted: int = 150
    period: float = 0.02                    # s between reads
    read_failure: ReadFailurePolicy = ReadFailurePolicy.ABORT
    retry_delay: float = 0.2                # s
    max_read_retries: int = 10              # consecutive failures before giving up


# Reads allowed per pose before the six-point procedure times out.
MAX_ATTEMPTS_PER_FACE = 10_000


@dataclass
class AccelCalConfig:
    expected_gain: float = 8192.0           # reference reading for 1 g
    tolerance: float = 819.2                # 10 % of 1 g
    samples_per_face: int = 500
    gain_convention: GainConvention = GainConvention.SCALE_RATIO
    max_attempts_per_face: Optional[int] = MAX_ATTEMPTS_PER_FACE
    period: float = 0.002                   # s between reads
    cooldown: float = 1.0                   # s pause after a rejected sample

    @classmethod
    def for_preset(cls, preset: SensorPreset, **overrides) -> "AccelCalConfig":
        """Reference gain and 10 % tolerance derived from a chip preset."""
        kw = dict(expected_gain=preset.accel_lsb, tolerance=0.1 * preset.accel_lsb)
        kw.update(overrides)
        return cls(**kw)


@dataclass
class FilterConfig:
    time_constant: float = 0.2              # s; larger trusts the gyro longer
    gimbal_limit: float = 75.0              # deg; |pitch| at which blending stops
    rate_hz: float = 50.0                   # control loop rate
