#!/usr/bin/env python3
"""
calibration.py — Startup calibration of the gyroscope and accelerometer.

Produces the three vectors the attitude estimator needs:
  • gyro bias : running mean of a still capture, outliers rejected
  • accel bias: midpoint of the +1 g / -1 g readings of each axis
  • accel gain: per-axis scale from the same six-pose capture

Both procedures block for their whole sampling time and assume the bus and
the device pose are theirs alone.  Failures are reported in the result
(``ok`` / ``failure``), never raised; a failed result must not be used.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Iterable, Optional, Protocol, Tuple

import numpy as np

from .config import (
    MAX_ATTEMPTS_PER_FACE, AccelCalConfig, GainConvention, GyroCalConfig, ReadFailurePolicy,
)
from .errors import CalibrationFailedError, InvalidCalibrationError
from .imu_driver import Reading, SampleSource
from .vector import VectorLike, as_vector3

logger = logging.getLogger(__name__)

GAIN_EPSILON = 1e-9

# Pose order is fixed: axis index advances every two poses, sign alternates.
POSES: Tuple[Tuple[str, int, int], ...] = (
    ("X+", 0, +1), ("X-", 0, -1),
    ("Y+", 1, +1), ("Y-", 1, -1),
    ("Z+", 2, +1), ("Z-", 2, -1),
)


class CancelToken(Protocol):
    def is_set(self) -> bool: ...


Notify = Callable[..., None]


def log_notify(msg: str, level: int = logging.INFO) -> None:
    """Default operator notification: the module logger."""
    logger.log(level, msg)


def no_notify(msg: str, level: int = logging.INFO) -> None:
    pass


class CalibrationFailure(Enum):
    NONE = "none"
    INSUFFICIENT_SAMPLES = "insufficient_samples"
    READ_FAILURE = "read_failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


def _cancelled(cancel: Optional[CancelToken]) -> bool:
    return cancel is not None and cancel.is_set()


# ── Calibration set ─────────────────────────────────────────────────────────

@dataclass(frozen=True, eq=False)
class CalibrationSet:
    """
    The vectors the estimator applies to every raw sample.

        gyro  = raw - gyro_bias
        accel = (raw - accel_bias) / accel_gain

    Arrays are copied and frozen on construction.  A zero, near-zero or
    non-finite gain raises :class:`InvalidCalibrationError`.
    """
    gyro_bias: np.ndarray
    accel_bias: np.ndarray
    accel_gain: np.ndarray

    def __post_init__(self):
        for name in ("gyro_bias", "accel_bias", "accel_gain"):
            try:
                arr = as_vector3(getattr(self, name))
            except ValueError as e:
                raise InvalidCalibrationError(f"{name}: {e}") from None
            if not np.all(np.isfinite(arr)):
                raise InvalidCalibrationError(f"{name} is not finite: {arr}")
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)
        if np.any(np.abs(self.accel_gain) <= GAIN_EPSILON):
            raise InvalidCalibrationError(
                f"accel_gain has a zero component: {self.accel_gain}")

    @classmethod
    def identity(cls) -> "CalibrationSet":
        return cls(np.zeros(3), np.zeros(3), np.ones(3))

    def summary(self) -> str:
        bg, ba, ga = self.gyro_bias, self.accel_bias, self.accel_gain
        return (
            f"Calibration set\n"
            f"  Gyro bias : [{bg[0]:+.4f}, {bg[1]:+.4f}, {bg[2]:+.4f}]\n"
            f"  Accel bias: [{ba[0]:+.4f}, {ba[1]:+.4f}, {ba[2]:+.4f}]\n"
            f"  Accel gain: [{ga[0]:+.6f}, {ga[1]:+.6f}, {ga[2]:+.6f}]\n"
        )


# ── Gyro zero-bias ──────────────────────────────────────────────────────────

@dataclass
class GyroCalibration:
    """Outcome of a gyro bias capture."""
    bias: np.ndarray
    ok: bool
    failure: CalibrationFailure = CalibrationFailure.NONE
    accepted: int = 0           # samples folded into the mean (seed included)
    rejected: int = 0           # outliers
    attempted: int = 0          # samples offered to the estimator
    read_failures: int = 0

    def summary(self) -> str:
        b = self.bias
        status = "OK" if self.ok else f"FAILED ({self.failure.value})"
        return (
            f"Gyro calibration {status}\n"
            f"  Bias      : [{b[0]:+.4f}, {b[1]:+.4f}, {b[2]:+.4f}]\n"
            f"  Accepted  : {self.accepted}/{self.attempted} "
            f"({self.rejected} outliers, {self.read_failures} read failures)\n"
        )


def estimate_bias(samples: Iterable[VectorLike],
                  max_outlier_deviation: float,
                  min_accepted: Optional[int] = None) -> GyroCalibration:
    """
    Incremental mean of still gyro samples with outlier rejection.

    The first sample seeds the mean.  A later sample whose deviation from
    the current mean exceeds *max_outlier_deviation* on any axis is dropped
    without touching the mean or the count; otherwise

        count += 1
        mean  += (x - mean) / count

    Fewer than *min_accepted* accepted samples (or none at all) is a failed
    calibration with a zero bias.
    """
    mean: Optional[np.ndarray] = None
    count = rejected = attempted = 0

    for s in samples:
        x = as_vector3(s)
        attempted += 1
        if mean is None:
            mean = x
            count = 1
            continue
        dev = x - mean
        if np.any(np.abs(dev) > max_outlier_deviation):
            rejected += 1
            continue
        count += 1
        mean += dev / count

    needed = max(1, min_accepted or 0)
    if mean is None or count < needed:
        return GyroCalibration(
            bias=np.zeros(3), ok=False,
            failure=CalibrationFailure.INSUFFICIENT_SAMPLES,
            accepted=count, rejected=rejected, attempted=attempted,
        )
    return GyroCalibration(bias=mean, ok=True, accepted=count,
                           rejected=rejected, attempted=attempted)


class GyroCalibrator:
    """Reads a still capture from a :class:`SampleSource` and reduces it."""

    def __init__(self, source: SampleSource,
                 config: Optional[GyroCalConfig] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 notify: Notify = log_notify):
        self.source = source
        self.config = config or GyroCalConfig()
        self.sleep = sleep
        self.notify = notify

    def _fail(self, failure: CalibrationFailure, n: int,
              read_failures: int) -> GyroCalibration:
        self.notify(f"Gyro calibration failed: {failure.value}", logging.ERROR)
        return GyroCalibration(bias=np.zeros(3), ok=False, failure=failure,
                               attempted=n, read_failures=read_failures)

    def run(self, cancel: Optional[CancelToken] = None) -> GyroCalibration:
        cfg = self.config
        self.notify(f"Gyro calibration: hold still ({cfg.n_samples} samples)")

        samples = []
        read_failures = 0
        streak = 0
        while len(samples) < cfg.n_samples:
            if _cancelled(cancel):
                return self._fail(CalibrationFailure.CANCELLED,
                                  len(samples), read_failures)
            v, ok = self.source.read_gyro()
            if not ok:
                read_failures += 1
                streak += 1
                self.notify("Gyro calibration: sensor disconnected", logging.WARNING)
                if (cfg.read_failure is ReadFailurePolicy.ABORT
                        or streak > cfg.max_read_retries):
                    return self._fail(CalibrationFailure.READ_FAILURE,
                                      len(samples), read_failures)
                self.sleep(cfg.retry_delay)
                continue
            streak = 0
            samples.append(v)
            self.sleep(cfg.period)

        result = estimate_bias(samples, cfg.max_outlier_deviation, cfg.min_accepted)
        result = replace(result, read_failures=read_failures)
        if result.ok:
            b = result.bias
            self.notify(f"Gyro calibration done: bias "
                        f"[{b[0]:+.4f}, {b[1]:+.4f}, {b[2]:+.4f}]")
        else:
            self.notify(f"Gyro calibration failed: only {result.accepted} of "
                        f"{result.attempted} samples accepted", logging.ERROR)
        return result


# ── Six-point accelerometer ─────────────────────────────────────────────────

@dataclass
class AccelCalibration:
    """Outcome of a six-pose accelerometer capture."""
    bias: np.ndarray
    gain: np.ndarray
    ok: bool
    failure: CalibrationFailure = CalibrationFailure.NONE
    face_means: np.ndarray = field(default_factory=lambda: np.zeros(6))  # X+ X- Y+ Y- Z+ Z-
    rejected: int = 0
    convention: GainConvention = GainConvention.SCALE_RATIO

    def divisor(self) -> np.ndarray:
        """
        Per-axis value the estimator divides ``raw - bias`` by.

        A SCALE_RATIO gain is the reciprocal of the axis sensitivity error,
        so it is inverted; a HALF_SPAN gain already is the sensitivity.
        """
        if self.convention is GainConvention.SCALE_RATIO:
            return 1.0 / self.gain
        return self.gain

    def summary(self) -> str:
        b, g = self.bias, self.gain
        status = "OK" if self.ok else f"FAILED ({self.failure.value})"
        return (
            f"Accel calibration {status}\n"
            f"  Bias      : [{b[0]:+.4f}, {b[1]:+.4f}, {b[2]:+.4f}]\n"
            f"  Gain      : [{g[0]:+.6f}, {g[1]:+.6f}, {g[2]:+.6f}]\n"
            f"  Rejected  : {self.rejected}\n"
        )


def _accel_failed(failure: CalibrationFailure, rejected: int,
                  convention: GainConvention) -> AccelCalibration:
    return AccelCalibration(bias=np.zeros(3), gain=np.ones(3), ok=False,
                            failure=failure, rejected=rejected,
                            convention=convention)


def six_point_calibrate(read_axis: Callable[[int], Reading],
                        expected_gain: float,
                        tolerance: float,
                        samples_per_face: int,
                        *,
                        gain_convention: GainConvention = GainConvention.SCALE_RATIO,
                        max_attempts_per_face: Optional[int] = MAX_ATTEMPTS_PER_FACE,
                        cooldown: float = 0.0,
                        period: float = 0.0,
                        cancel: Optional[CancelToken] = None,
                        sleep: Callable[[float], None] = time.sleep,
                        notify: Notify = log_notify) -> AccelCalibration:
    """
    Bias and gain of each accelerometer axis from six held poses.

    Parameters
    ----------
    read_axis : callable(axis_index) -> (raw vector, ok)
        Current reading while the operator holds the pose for *axis_index*.
    expected_gain : float
        Reading of the reference (1 g) on a perfect sensor.
    tolerance : float
        A sample is accepted only if its target-axis value is within this
        distance of ``±expected_gain``.
    samples_per_face : int
        Accepted samples averaged for each pose.
    max_attempts_per_face : int or None
        Reads allowed per pose before giving up with ``TIMEOUT`` (default
        10 000).  ``None`` retries until accepted or cancelled.

    Returns
    -------
    AccelCalibration
        ``bias[a] = (mean+ + mean-) / 2`` and a gain per *gain_convention*.
        Any read failure aborts with ``READ_FAILURE``; partial means are
        discarded.
    """
    if expected_gain <= 0:
        raise ValueError(f"expected_gain must be positive, got {expected_gain}")
    if not 0 < tolerance < expected_gain:
        raise ValueError(f"tolerance must be in (0, {expected_gain}), got {tolerance}")
    if samples_per_face < 1:
        raise ValueError(f"samples_per_face must be >= 1, got {samples_per_face}")

    notify("Start 6-point accelerometer calibration")
    means = np.zeros(6)
    rejected = 0

    for i, (label, axis, sign) in enumerate(POSES):
        notify(f"Pose: {label}")
        target = sign * expected_gain
        total = 0.0
        accepted = attempts = 0

        while accepted < samples_per_face:
            if _cancelled(cancel):
                notify("Accel calibration cancelled", logging.WARNING)
                return _accel_failed(CalibrationFailure.CANCELLED, rejected, gain_convention)
            if max_attempts_per_face is not None and attempts >= max_attempts_per_face:
                notify(f"Accel calibration timed out holding pose {label} "
                       f"({accepted}/{samples_per_face} accepted)", logging.ERROR)
                return _accel_failed(CalibrationFailure.TIMEOUT, rejected, gain_convention)
            attempts += 1

            v, ok = read_axis(axis)
            if not ok:
                notify("Accel calibration: sensor disconnected", logging.ERROR)
                return _accel_failed(CalibrationFailure.READ_FAILURE, rejected, gain_convention)

            value = float(v[axis])
            if abs(value - target) < tolerance:
                total += value
                accepted += 1
            else:
                rejected += 1
                notify(f"Pose error ({label}): {value:.1f}", logging.WARNING)
                if cooldown > 0:
                    sleep(cooldown)
            if period > 0:
                sleep(period)

        means[i] = total / samples_per_face

    pos, neg = means[0::2], means[1::2]
    bias = (pos + neg) / 2.0
    if gain_convention is GainConvention.SCALE_RATIO:
        gain = expected_gain * 2.0 / np.abs(pos - neg)
    else:
        gain = (pos - neg) / 2.0

    result = AccelCalibration(bias=bias, gain=gain, ok=True,
                              face_means=means, rejected=rejected,
                              convention=gain_convention)
    notify(f"Accel calibration done: bias [{bias[0]:+.2f}, {bias[1]:+.2f}, "
           f"{bias[2]:+.2f}]  gain [{gain[0]:.6f}, {gain[1]:.6f}, {gain[2]:.6f}]")
    return result


class AccelCalibrator:
    """:func:`six_point_calibrate` bound to a :class:`SampleSource`."""

    def __init__(self, source: SampleSource,
                 config: Optional[AccelCalConfig] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 notify: Notify = log_notify):
        self.source = source
        self.config = config or AccelCalConfig()
        self.sleep = sleep
        self.notify = notify

    def run(self, cancel: Optional[CancelToken] = None) -> AccelCalibration:
        cfg = self.config
        return six_point_calibrate(
            lambda axis: self.source.read_accel(),
            cfg.expected_gain, cfg.tolerance, cfg.samples_per_face,
            gain_convention=cfg.gain_convention,
            max_attempts_per_face=cfg.max_attempts_per_face,
            cooldown=cfg.cooldown,
            period=cfg.period,
            cancel=cancel,
            sleep=self.sleep,
            notify=self.notify,
        )


def calibration_set(gyro: GyroCalibration, accel: AccelCalibration) -> CalibrationSet:
    """Combine two successful results; a failed one raises."""
    if not gyro.ok:
        raise CalibrationFailedError(f"gyro calibration failed: {gyro.failure.value}")
    if not accel.ok:
        raise CalibrationFailedError(f"accel calibration failed: {accel.failure.value}")
    return CalibrationSet(gyro.bias, accel.bias, accel.divisor())
