#!/usr/bin/env python3
"""
test_estimator.py -- Tests for the complementary-filter attitude estimator.

Tests cover:
  * Angle wrap and shortest-arc error
  * Accelerometer tilt geometry
  * Calibration applied to raw samples
  * Convergence to a held tilt (steady state and end-to-end)
  * Gimbal-lock guard (pure integration past 75 deg pitch)
  * Yaw gyro-only integration and wrap
  * Construction-time rejection of invalid calibration

Run:  python3 -m pytest attitude/tests/test_estimator.py -v
"""

import math
import numpy as np
import pytest

# Allow running from repo root
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from attitude.calibration import CalibrationSet
from attitude.errors import InvalidCalibrationError
from attitude.estimator import AttitudeEstimator, AttitudeState
from attitude.vector import (
    accel_tilt, as_vector3, gravity_vector, shortest_angle, wrap_angle,
)


# ── Fixtures ────────────────────────────────────────────────────────────────

def _ideal_cal() -> CalibrationSet:
    return CalibrationSet.identity()


def _run(est, gyro, accel, dt=0.02, n=100) -> AttitudeState:
    state = est.state
    for _ in range(n):
        state = est.update(gyro, accel, dt)
    return state


# ── Angle helpers ───────────────────────────────────────────────────────────

class TestWrapAngle:
    @pytest.mark.parametrize("a", [0.0, 45.0, -45.0, 179.9, -179.9, 180.0, 90.0])
    def test_in_range_is_noop(self, a):
        assert wrap_angle(a) == a

    def test_190_wraps_to_minus_170(self):
        assert wrap_angle(190.0) == pytest.approx(-170.0)

    def test_minus_185_wraps_to_175(self):
        assert wrap_angle(-185.0) == pytest.approx(175.0)

    def test_minus_180_maps_to_180(self):
        assert wrap_angle(-180.0) == 180.0

    def test_idempotent(self):
        for a in (190.0, -185.0, 359.0, -359.0):
            w = wrap_angle(a)
            assert wrap_angle(w) == w

    def test_shortest_angle_across_boundary(self):
        assert shortest_angle(-170.0, 170.0) == pytest.approx(20.0)
        assert shortest_angle(170.0, -170.0) == pytest.approx(-20.0)
        assert shortest_angle(30.0, 10.0) == pytest.approx(20.0)


class TestTiltGeometry:
    def test_level(self):
        roll, pitch = accel_tilt([0.0, 0.0, 1.0])
        assert roll == pytest.approx(0.0)
        assert pitch == pytest.approx(0.0)

    def test_gravity_vector_inverts_tilt(self):
        for r, p in [(10.0, 5.0), (-30.0, 20.0), (150.0, -60.0), (-170.0, 0.0)]:
            roll, pitch = accel_tilt(gravity_vector(r, p))
            assert roll == pytest.approx(r, abs=1e-9)
            assert pitch == pytest.approx(p, abs=1e-9)

    def test_scale_free(self):
        g = gravity_vector(25.0, -12.0)
        np.testing.assert_allclose(accel_tilt(g * 8192.0), accel_tilt(g), atol=1e-9)

    def test_as_vector3_rejects_bad_shape(self):
        with pytest.raises(ValueError):
            as_vector3([1.0, 2.0])


# ── Construction ────────────────────────────────────────────────────────────

class TestConstruction:
    def test_initial_state_zero(self):
        est = AttitudeEstimator(_ideal_cal())
        assert est.state == AttitudeState(0.0, 0.0, 0.0)

    def test_zero_gain_rejected(self):
        with pytest.raises(InvalidCalibrationError):
            AttitudeEstimator(CalibrationSet(np.zeros(3), np.zeros(3), [1.0, 0.0, 1.0]))

    def test_near_zero_gain_rejected(self):
        with pytest.raises(InvalidCalibrationError):
            CalibrationSet(np.zeros(3), np.zeros(3), [1.0, 1.0, 1e-12])

    def test_non_calibration_set_rejected(self):
        with pytest.raises(InvalidCalibrationError):
            AttitudeEstimator({"accel_gain": [1, 1, 1]})

    def test_bad_time_constant(self):
        with pytest.raises(ValueError):
            AttitudeEstimator(_ideal_cal(), time_constant=0.0)

    def test_alpha(self):
        est = AttitudeEstimator(_ideal_cal(), time_constant=0.2)
        assert est.alpha(0.02) == pytest.approx(0.2 / 0.22)


# ── Calibration applied ─────────────────────────────────────────────────────

class TestCalibrationApplied:
    def test_gyro_bias_removed(self):
        cal = CalibrationSet([1.0, -2.0, 3.0], np.zeros(3), np.ones(3))
        est = AttitudeEstimator(cal)
        state = _run(est, [1.0, -2.0, 3.0], [0.0, 0.0, 1.0], n=50)
        assert state.roll == pytest.approx(0.0, abs=1e-12)
        assert state.pitch == pytest.approx(0.0, abs=1e-12)
        assert state.yaw == pytest.approx(0.0, abs=1e-12)

    def test_accel_bias_and_gain_removed(self):
        bias = np.array([120.0, -80.0, 200.0])
        gain = np.array([8355.0, 8030.0, 8270.0])
        cal = CalibrationSet(np.zeros(3), bias, gain)
        est = AttitudeEstimator(cal)
        raw = gravity_vector(20.0, -10.0) * gain + bias
        np.testing.assert_allclose(est.calibrate_accel(raw), gravity_vector(20.0, -10.0))
        state = _run(est, np.zeros(3), raw, n=200)
        assert state.roll == pytest.approx(20.0, abs=0.01)
        assert state.pitch == pytest.approx(-10.0, abs=0.01)

    def test_gyro_sensitivity_scales_counts(self):
        est = AttitudeEstimator(_ideal_cal(), gyro_sensitivity=65.534)
        np.testing.assert_allclose(est.calibrate_gyro([65.534, 0.0, -131.068]),
                                   [1.0, 0.0, -2.0])


# ── Complementary filter ────────────────────────────────────────────────────

class TestComplementaryFilter:
    def test_steady_state_converges(self):
        """Zero rate, accel at (10, 5) held for 3 s -> within 0.1 deg."""
        est = AttitudeEstimator(_ideal_cal(), time_constant=0.2)
        state = _run(est, np.zeros(3), gravity_vector(10.0, 5.0), dt=0.02, n=150)
        assert abs(state.roll - 10.0) < 0.1
        assert abs(state.pitch - 5.0) < 0.1

    def test_end_to_end_roll_30(self):
        est = AttitudeEstimator(CalibrationSet([0, 0, 0], [0, 0, 0], [1, 1, 1]))
        g = 1.0
        accel = [0.0, math.sin(math.radians(30)) * g, math.cos(math.radians(30)) * g]
        state = _run(est, [0.0, 0.0, 0.0], accel, dt=0.02, n=100)
        assert abs(state.roll - 30.0) < 0.5
        assert abs(state.pitch) < 0.5

    def test_single_step_blend(self):
        """One tick moves (1 - alpha) of the way toward the accel tilt."""
        est = AttitudeEstimator(_ideal_cal(), time_constant=0.2)
        state = est.update(np.zeros(3), gravity_vector(10.0, 0.0), 0.02)
        k = 1.0 - 0.2 / 0.22
        assert state.roll == pytest.approx(10.0 * k)
        assert state.pitch == pytest.approx(0.0, abs=1e-12)

    def test_error_takes_shortest_path(self):
        est = AttitudeEstimator(_ideal_cal(), time_constant=0.2)
        est.reset(AttitudeState(roll=170.0))
        state = est.update(np.zeros(3), gravity_vector(-170.0, 0.0), 0.02)
        k = 1.0 - 0.2 / 0.22
        assert state.roll == pytest.approx(170.0 + 20.0 * k)

    def test_converges_across_180(self):
        est = AttitudeEstimator(_ideal_cal())
        est.reset(AttitudeState(roll=175.0))
        state = _run(est, np.zeros(3), gravity_vector(-175.0, 0.0), n=200)
        assert state.roll == pytest.approx(-175.0, abs=0.01)

    def test_gyro_prediction_integrates(self):
        """Rate with matching accel: state follows the gyro."""
        est = AttitudeEstimator(_ideal_cal())
        state = est.update([5.0, 0.0, 0.0], gravity_vector(0.1, 0.0), 0.02)
        assert state.roll == pytest.approx(0.1)

    def test_returns_new_value_each_tick(self):
        est = AttitudeEstimator(_ideal_cal())
        first = est.update(np.zeros(3), gravity_vector(10.0, 0.0), 0.02)
        second = est.update(np.zeros(3), gravity_vector(10.0, 0.0), 0.02)
        assert first is not second
        assert second.roll > first.roll
        assert est.state is second


# ── Gimbal-lock guard ───────────────────────────────────────────────────────

class TestGimbalGuard:
    def _pure_integration(self, start, gyro, dt, n):
        r, p, y = start
        out = []
        for _ in range(n):
            r = wrap_angle(gyro[0] * dt + r)
            p = wrap_angle(gyro[1] * dt + p)
            y = wrap_angle(gyro[2] * dt + y)
            out.append((r, p, y))
        return out

    def test_pure_integration_past_limit(self):
        est = AttitudeEstimator(_ideal_cal())
        est.reset(AttitudeState(roll=5.0, pitch=80.0, yaw=-30.0))
        gyro = [3.0, 2.0, -4.0]
        level = [0.0, 0.0, 1.0]     # would pull pitch to 0 if blended
        expected = self._pure_integration((5.0, 80.0, -30.0), gyro, 0.02, 50)
        for exp in expected:
            s = est.update(gyro, level, 0.02)
            np.testing.assert_allclose(s.as_array(), exp, atol=1e-9)

    def test_negative_pitch_limit(self):
        est = AttitudeEstimator(_ideal_cal())
        est.reset(AttitudeState(pitch=-76.0))
        s = est.update(np.zeros(3), [0.0, 0.0, 1.0], 0.02)
        assert s.pitch == pytest.approx(-76.0)

    def test_blends_just_below_limit(self):
        est = AttitudeEstimator(_ideal_cal())
        est.reset(AttitudeState(pitch=74.0))
        s = est.update(np.zeros(3), [0.0, 0.0, 1.0], 0.02)
        assert s.pitch < 74.0

    def test_configurable_limit(self):
        est = AttitudeEstimator(_ideal_cal(), gimbal_limit=60.0)
        est.reset(AttitudeState(pitch=65.0))
        s = est.update(np.zeros(3), [0.0, 0.0, 1.0], 0.02)
        assert s.pitch == pytest.approx(65.0)


# ── Yaw ─────────────────────────────────────────────────────────────────────

class TestYaw:
    def test_yaw_gyro_only(self):
        est = AttitudeEstimator(_ideal_cal())
        state = _run(est, [0.0, 0.0, 10.0], [0.0, 0.0, 1.0], dt=0.02, n=20)
        assert state.yaw == pytest.approx(4.0)

    def test_yaw_wraps(self):
        est = AttitudeEstimator(_ideal_cal())
        est.reset(AttitudeState(yaw=179.0))
        state = est.update([0.0, 0.0, 100.0], [0.0, 0.0, 1.0], 0.02)
        assert state.yaw == pytest.approx(-179.0)

    def test_yaw_never_reset(self):
        """With no rate the drifted yaw is held, not pulled back to zero."""
        est = AttitudeEstimator(_ideal_cal())
        est.reset(AttitudeState(yaw=42.0))
        state = _run(est, np.zeros(3), [0.0, 0.0, 1.0], n=500)
        assert state.yaw == pytest.approx(42.0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
