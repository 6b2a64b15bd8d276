#!/usr/bin/env python3
"""
simulate_attitude.py
====================
Behavioral simulation of the full calibration + attitude pipeline against
a simulated IMU with known biases, sensitivity errors and noise.

Stages:
  1. Gyro zero-bias capture      – recovered bias vs truth
  2. Six-point accel calibration – recovered bias / gain vs truth
  3. Complementary filter        – static tilt, tilt step, gimbal region
  4. Persistence                 – save / restore of the calibration set

Each check prints [PASS] / [FAIL] and a final summary.

Usage:
  python3 scripts/simulate_attitude.py
  python3 scripts/simulate_attitude.py --seed 7 --noise 2.0
"""

import argparse
import logging
import sys
import tempfile

import numpy as np

from attitude.calibration import (
    AccelCalibrator, GyroCalibrator, calibration_set, no_notify,
)
from attitude.config import SENSOR_PRESETS, AccelCalConfig, GyroCalConfig
from attitude.estimator import AttitudeEstimator
from attitude.sim import SimulatedIMU
from attitude.storage import CalibrationStore, FileBlobStore

# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────
PASS = 0; FAIL = 0

def chk(cond, msg):
    global PASS, FAIL
    if cond:
        print(f"  [PASS] {msg}")
        PASS += 1
    else:
        print(f"  [FAIL] {msg}")
        FAIL += 1


def _no_sleep(_):
    pass


def run_filter(est, imu, seconds, dt):
    state = est.state
    for _ in range(int(round(seconds / dt))):
        g, _ = imu.read_gyro()
        a, _ = imu.read_accel()
        state = est.update(g, a, dt)
    return state


def main():
    ap = argparse.ArgumentParser(description="Attitude pipeline simulation")
    ap.add_argument("--seed", type=int, default=0)
    ap.add_argument("--noise", type=float, default=1.0,
                    help="Noise multiplier (1.0 = 3 gyro / 20 accel counts)")
    ap.add_argument("--chip", choices=sorted(SENSOR_PRESETS), default="icm20948")
    args = ap.parse_args()
    logging.basicConfig(level=logging.WARNING)

    preset = SENSOR_PRESETS[args.chip]
    truth_gyro_bias = np.array([35.0, -20.0, 12.0])
    truth_accel_bias = np.array([120.0, -80.0, 200.0])
    truth_scale = np.array([1.02, 0.98, 1.01])

    imu = SimulatedIMU(
        accel_lsb=preset.accel_lsb, gyro_lsb=preset.gyro_lsb,
        accel_scale=truth_scale, gyro_bias=truth_gyro_bias,
        accel_bias=truth_accel_bias,
        gyro_noise=3.0 * args.noise, accel_noise=20.0 * args.noise,
        seed=args.seed,
    )

    # ═══════════════════════════════════════════════════════════════
    # 1. GYRO BIAS
    # ═══════════════════════════════════════════════════════════════
    print("\n1. Gyro zero-bias capture")
    imu.hold_tilt(0.0, 0.0)
    gyro_cfg = GyroCalConfig(n_samples=500, min_accepted=375, period=0.0,
                             max_outlier_deviation=preset.gyro_lsb)
    gyro = GyroCalibrator(imu, gyro_cfg, sleep=_no_sleep, notify=no_notify).run()
    chk(gyro.ok, f"calibration ok ({gyro.accepted}/{gyro.attempted} accepted)")
    chk(np.all(np.abs(gyro.bias - truth_gyro_bias) < 1.0),
        f"bias {np.round(gyro.bias, 2)} ~ {truth_gyro_bias}")

    # ═══════════════════════════════════════════════════════════════
    # 2. SIX-POINT ACCEL
    # ═══════════════════════════════════════════════════════════════
    print("\n2. Six-point accelerometer calibration")

    def operator(msg, level=logging.INFO):
        # The simulated operator turns the board on every pose prompt.
        if msg.startswith("Pose: "):
            imu.hold_pose(msg[len("Pose: "):])

    accel_cfg = AccelCalConfig.for_preset(preset, samples_per_face=300,
                                          cooldown=0.0, period=0.0)
    accel = AccelCalibrator(imu, accel_cfg, sleep=_no_sleep, notify=operator).run()
    chk(accel.ok, f"calibration ok ({accel.rejected} rejected)")
    chk(np.all(np.abs(accel.bias - truth_accel_bias) < 5.0),
        f"bias {np.round(accel.bias, 1)} ~ {truth_accel_bias}")
    chk(np.allclose(accel.divisor(), truth_scale, atol=2e-3),
        f"sensitivity {np.round(accel.divisor(), 4)} ~ {truth_scale}")

    cal = calibration_set(gyro, accel)

    # ═══════════════════════════════════════════════════════════════
    # 3. COMPLEMENTARY FILTER
    # ═══════════════════════════════════════════════════════════════
    print("\n3. Complementary filter")
    dt = 0.02
    est = AttitudeEstimator(cal, gyro_sensitivity=preset.gyro_lsb)

    imu.hold_tilt(10.0, 5.0)
    s = run_filter(est, imu, 3.0, dt)
    chk(abs(s.roll - 10.0) < 0.5 and abs(s.pitch - 5.0) < 0.5,
        f"static tilt (10, 5) -> ({s.roll:.2f}, {s.pitch:.2f})")

    imu.hold_tilt(-30.0, 20.0)
    s = run_filter(est, imu, 3.0, dt)
    chk(abs(s.roll + 30.0) < 0.5 and abs(s.pitch - 20.0) < 0.5,
        f"tilt step (-30, 20) -> ({s.roll:.2f}, {s.pitch:.2f})")

    imu.hold_tilt(0.0, 0.0)
    imu.set_rate([0.0, 0.0, 10.0])
    s = run_filter(est, imu, 2.0, dt)
    chk(abs(s.yaw - 20.0) < 1.0, f"yaw integrates 10 deg/s for 2 s -> {s.yaw:.2f}")
    imu.set_rate([0.0, 0.0, 0.0])

    est.reset()
    imu.hold_tilt(0.0, 80.0)
    s = run_filter(est, imu, 3.0, dt)
    # Correction stops once the prediction crosses 75 deg; only the gyro moves it after.
    chk(74.0 < s.pitch < 77.0,
        f"gimbal guard: pitch toward 80 held near the limit at {s.pitch:.2f}")

    # ═══════════════════════════════════════════════════════════════
    # 4. PERSISTENCE
    # ═══════════════════════════════════════════════════════════════
    print("\n4. Persistence")
    with tempfile.TemporaryDirectory() as tmp:
        store = CalibrationStore(FileBlobStore(tmp))
        store.save(cal)
        restored = store.load()
    chk(restored is not None
        and np.array_equal(restored.gyro_bias, cal.gyro_bias)
        and np.array_equal(restored.accel_bias, cal.accel_bias)
        and np.array_equal(restored.accel_gain, cal.accel_gain),
        "calibration set survives save / load")

    print(f"\n{'='*50}\n  {PASS} passed, {FAIL} failed\n{'='*50}")
    sys.exit(1 if FAIL else 0)


if __name__ == "__main__":
    main()
