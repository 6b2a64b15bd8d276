#!/usr/bin/env python3
"""
estimator.py -- Complementary-filter attitude estimator.

Each tick blends two roll/pitch estimates:

  * **Gyro prediction** -- last attitude plus calibrated rate * dt.  Smooth
    and responsive, but drifts with any residual bias.
  * **Accelerometer tilt** -- roll/pitch of the measured gravity vector.
    Drift-free but noisy, and wrong while the body accelerates.

With time constant T the blend weight is ``alpha = T / (T + dt)``; the
gyro prediction keeps weight alpha and the accelerometer pulls the state by
``(1 - alpha)`` of the (shortest-arc) error.  Near +-90 deg pitch the Euler
roll becomes ill-conditioned, so past ``gimbal_limit`` the tick is pure
gyro integration.

Yaw has no absolute reference here: it is integrated from the gyro alone
and drifts without bound.  It is never reset.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .calibration import CalibrationSet
from .errors import InvalidCalibrationError
from .vector import VectorLike, accel_tilt, shortest_angle, wrap_angle


@dataclass(frozen=True)
class AttitudeState:
    """Euler attitude in degrees, each angle in (-180, 180]."""
    roll: float = 0.0
    pitch: float = 0.0
    yaw: float = 0.0

    def as_array(self) -> np.ndarray:
        return np.array([self.roll, self.pitch, self.yaw])


class AttitudeEstimator:
    """
    Roll/pitch complementary filter with gyro-only yaw.

    Parameters
    ----------
    calibration : CalibrationSet
        Applied to every raw sample.  Owned by this instance.
    time_constant : float
        T in seconds.  Larger trusts the gyro longer.
    gimbal_limit : float
        |pitch| (deg) at or beyond which blending is skipped.
    gyro_sensitivity : float
        Gyro counts per deg/s.  Leave at 1.0 when the gyro input and bias
        are already in deg/s.
    """

    def __init__(self,
                 calibration: CalibrationSet,
                 time_constant: float = 0.2,
                 gimbal_limit: float = 75.0,
                 gyro_sensitivity: float = 1.0):
        if not isinstance(calibration, CalibrationSet):
            raise InvalidCalibrationError(
                f"Expected a CalibrationSet, got {type(calibration).__name__}")
        if time_constant <= 0:
            raise ValueError(f"time_constant must be positive, got {time_constant}")
        if gyro_sensitivity <= 0:
            raise ValueError(f"gyro_sensitivity must be positive, got {gyro_sensitivity}")

        self.cal = calibration
        self.time_constant = time_constant
        self.gimbal_limit = gimbal_limit
        self.gyro_sensitivity = gyro_sensitivity
        self._state = AttitudeState()

    # -- Public interface ------------------------------------------------------

    @property
    def state(self) -> AttitudeState:
        return self._state

    def reset(self, state: Optional[AttitudeState] = None) -> None:
        self._state = state if state is not None else AttitudeState()

    def alpha(self, dt: float) -> float:
        """Weight kept by the gyro prediction for a step of *dt* seconds."""
        return self.time_constant / (self.time_constant + dt)

    def calibrate_gyro(self, gyro_raw: VectorLike) -> np.ndarray:
        return (np.asarray(gyro_raw, dtype=float) - self.cal.gyro_bias) / self.gyro_sensitivity

    def calibrate_accel(self, accel_raw: VectorLike) -> np.ndarray:
        return (np.asarray(accel_raw, dtype=float) - self.cal.accel_bias) / self.cal.accel_gain

    @staticmethod
    def accel_tilt(accel: VectorLike) -> Tuple[float, float]:
        """(roll, pitch) in degrees from a calibrated accelerometer reading."""
        return accel_tilt(accel)

    def update(self, gyro_raw: VectorLike, accel_raw: VectorLike,
               dt: float) -> AttitudeState:
        """Advance one tick of *dt* seconds.  Returns the new attitude."""
        gyro = self.calibrate_gyro(gyro_raw)
        accel = self.calibrate_accel(accel_raw)
        accel_roll, accel_pitch = accel_tilt(accel)

        last = self._state
        pred_roll = float(gyro[0]) * dt + last.roll
        pred_pitch = float(gyro[1]) * dt + last.pitch
        pred_yaw = float(gyro[2]) * dt + last.yaw

        if abs(pred_pitch) < self.gimbal_limit:
            k = 1.0 - self.alpha(dt)
            roll = pred_roll + k * shortest_angle(accel_roll, pred_roll)
            pitch = pred_pitch + k * shortest_angle(accel_pitch, pred_pitch)
        else:
            # Gimbal lock: pure integration
            roll, pitch = pred_roll, pred_pitch

        self._state = AttitudeState(
            roll=wrap_angle(roll),
            pitch=wrap_angle(pitch),
            yaw=wrap_angle(pred_yaw),
        )
        return self._state
