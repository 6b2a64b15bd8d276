"""
vector.py -- Vector3 and angle primitives shared by calibration and estimation.

Vectors are plain ``numpy`` arrays of shape ``(3,)`` laid out ``[x, y, z]``.
Angles are in degrees unless the name says otherwise.
"""

from __future__ import annotations

import math
from typing import Sequence, Tuple, Union

import numpy as np

# -- Constants -----------------------------------------------------------------
DEG2RAD = math.pi / 180.0
RAD2DEG = 180.0 / math.pi

VectorLike = Union[np.ndarray, Sequence[float]]


def as_vector3(v: VectorLike, dtype=float) -> np.ndarray:
    """Coerce *v* to a fresh ``(3,)`` array, rejecting any other shape."""
    arr = np.array(v, dtype=dtype)
    if arr.shape != (3,):
        raise ValueError(f"Expected a 3-vector, got shape {arr.shape}")
    return arr


# -- Angle helpers -------------------------------------------------------------

def wrap_angle(angle: float) -> float:
    """
    Fold *angle* (deg) into ``(-180, 180]`` with a single +-360 step.

    Inputs are assumed to be at most one turn out of range, which holds for
    one integration step added to an already-wrapped angle.
    """
    if angle > 180.0:
        return angle - 360.0
    if angle <= -180.0:
        return angle + 360.0
    return angle


def shortest_angle(target: float, current: float) -> float:
    """Signed error ``target - current`` taken along the shorter arc (deg)."""
    err = target - current
    if err > 180.0:
        err -= 360.0
    elif err < -180.0:
        err += 360.0
    return err


# -- Tilt geometry -------------------------------------------------------------

def accel_tilt(accel: VectorLike) -> Tuple[float, float]:
    """
    Roll and pitch (deg) implied by a gravity-dominated accelerometer reading.

    roll  = atan2(a_y, a_z)
    pitch = atan2(-a_x, sqrt(a_y^2 + a_z^2))

    Scale-free: any positive common factor on the reading gives the same tilt.
    """
    ax, ay, az = accel
    roll = math.atan2(ay, az) * RAD2DEG
    pitch = math.atan2(-ax, math.sqrt(ay * ay + az * az)) * RAD2DEG
    return roll, pitch


def gravity_vector(roll: float, pitch: float,
                   magnitude: float = 1.0) -> np.ndarray:
    """
    Body-frame accelerometer reading of a sensor at rest with the given tilt.

    Inverse of :func:`accel_tilt` for ``|pitch| < 90``.
    """
    r = roll * DEG2RAD
    p = pitch * DEG2RAD
    return magnitude * np.array([
        -math.sin(p),
        math.sin(r) * math.cos(p),
        math.cos(r) * math.cos(p),
    ])
