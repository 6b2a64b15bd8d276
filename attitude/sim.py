"""
sim.py -- Simulated IMU for exercising the pipeline without hardware.

:class:`SimulatedIMU` is a :class:`SampleSource` producing raw int16 counts
from a known truth: per-axis biases, per-axis accelerometer sensitivity,
white noise, a held tilt (or one of the six calibration poses) and a
constant body rate.
"""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

import numpy as np

from .imu_driver import Reading
from .vector import gravity_vector

INT16_MIN, INT16_MAX = -32768, 32767

_POSE_AXES = {"X": 0, "Y": 1, "Z": 2}


class SimulatedIMU:
    """
    Parameters
    ----------
    accel_lsb, gyro_lsb : float
        Nominal sensitivities (counts per g, counts per deg/s).
    accel_scale : 3-vector
        Per-axis sensitivity error; actual counts per g = accel_lsb * scale.
    gyro_bias, accel_bias : 3-vector
        Offsets in counts.
    gyro_noise, accel_noise : float
        White-noise standard deviation in counts.
    fail_reads : iterable of int
        Read indices (counting gyro and accel reads together, from 0) that
        report ok=False.
    """

    def __init__(self,
                 accel_lsb: float = 8192.0,
                 gyro_lsb: float = 65.534,
                 accel_scale: Sequence[float] = (1.0, 1.0, 1.0),
                 gyro_bias: Sequence[float] = (0.0, 0.0, 0.0),
                 accel_bias: Sequence[float] = (0.0, 0.0, 0.0),
                 gyro_noise: float = 0.0,
                 accel_noise: float = 0.0,
                 seed: Optional[int] = 0,
                 fail_reads: Iterable[int] = ()):
        self.accel_lsb = accel_lsb
        self.gyro_lsb = gyro_lsb
        self.accel_scale = np.asarray(accel_scale, dtype=float)
        self.gyro_bias = np.asarray(gyro_bias, dtype=float)
        self.accel_bias = np.asarray(accel_bias, dtype=float)
        self.gyro_noise = gyro_noise
        self.accel_noise = accel_noise
        self.rng = np.random.default_rng(seed)
        self.fail_reads = set(fail_reads)
        self.reads = 0

        self.roll = 0.0
        self.pitch = 0.0
        self.rate = np.zeros(3)                 # deg/s
        self._pose: Optional[np.ndarray] = None

    # -- Truth control ---------------------------------------------------------

    def hold_tilt(self, roll: float, pitch: float) -> None:
        self.roll, self.pitch = roll, pitch
        self._pose = None

    def hold_pose(self, label: str) -> None:
        """Orient one axis along gravity: ``"X+"``, ``"Z-"`` ..."""
        g = np.zeros(3)
        g[_POSE_AXES[label[0].upper()]] = 1.0 if label[1] == "+" else -1.0
        self._pose = g

    def set_rate(self, rate: Sequence[float]) -> None:
        self.rate = np.asarray(rate, dtype=float)

    def gravity(self) -> np.ndarray:
        """True specific force in g, body frame."""
        if self._pose is not None:
            return self._pose.copy()
        return gravity_vector(self.roll, self.pitch)

    # -- SampleSource ----------------------------------------------------------

    def _counts(self, value: np.ndarray, noise: float) -> np.ndarray:
        if noise > 0:
            value = value + self.rng.normal(0.0, noise, 3)
        return np.clip(np.rint(value), INT16_MIN, INT16_MAX).astype(np.int64)

    def _next_fails(self) -> bool:
        n = self.reads
        self.reads += 1
        return n in self.fail_reads

    def read_gyro(self) -> Reading:
        if self._next_fails():
            return np.zeros(3, dtype=np.int64), False
        raw = self.rate * self.gyro_lsb + self.gyro_bias
        return self._counts(raw, self.gyro_noise), True

    def read_accel(self) -> Reading:
        if self._next_fails():
            return np.zeros(3, dtype=np.int64), False
        raw = self.gravity() * self.accel_lsb * self.accel_scale + self.accel_bias
        return self._counts(raw, self.accel_noise), True
