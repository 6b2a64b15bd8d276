#!/usr/bin/env python3
"""
app.py -- Attitude estimation application.

Brings up an IMU, calibrates it (or restores a saved calibration), then
runs the complementary filter at a fixed rate and streams roll / pitch /
yaw to the console.

Usage
-----
  python3 -m attitude.app                          # UART stream, auto-detect port
  python3 -m attitude.app /dev/ttyUSB1             # explicit port
  python3 -m attitude.app --chip icm20948 --i2c-bus 1
  python3 -m attitude.app --recalibrate            # ignore the saved calibration
  python3 -m attitude.app --csv > attitude.csv     # log to CSV

Workflow
--------
1. Hold the sensor STILL -> gyro bias capture (a few seconds).
2. Follow the pose prompts X+, X-, Y+, Y-, Z+, Z- -> accel bias / gain.
3. The calibration is saved and reused on the next start.
4. Ctrl+C aborts a calibration or stops the loop.

Yaw is integrated from the gyro alone and drifts; only roll and pitch are
corrected.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import Callable, Optional, Tuple

import numpy as np

from .calibration import (
    AccelCalibration, AccelCalibrator, CalibrationSet, GyroCalibrator,
    calibration_set,
)
from .config import (
    SENSOR_PRESETS, AccelCalConfig, FilterConfig, GainConvention,
    GyroCalConfig, ReadFailurePolicy,
)
from .errors import AttitudeError, SensorUnavailableError
from .estimator import AttitudeEstimator, AttitudeState
from .imu_driver import CHIPS, SampleSource, SerialIMU, SMBusRegisterBus, find_port
from .storage import CalibrationStore, FileBlobStore
from .timing import Rate

logger = logging.getLogger("attitude")


def open_source(args: argparse.Namespace) -> SampleSource:
    """
    Construct the configured sample source.

    Raises :class:`SensorUnavailableError` if the port or bus cannot be
    opened or the chip does not answer.
    """
    if args.chip == "icm42688":
        port = args.port or find_port()
        if not port:
            raise SensorUnavailableError("No serial port found.")
        print(f"  Port: {port}")
        try:
            return SerialIMU(port, args.baud)
        except OSError as e:
            raise SensorUnavailableError(f"cannot open {port}: {e}") from e

    try:
        chip = CHIPS[args.chip](SMBusRegisterBus(args.i2c_bus))
    except OSError as e:
        raise SensorUnavailableError(f"cannot open I2C bus {args.i2c_bus}: {e}") from e
    if not chip.init():
        raise SensorUnavailableError(
            f"{chip.NAME} not responding on I2C bus {args.i2c_bus}.")
    print(f"  Chip: {chip.NAME} @ 0x{chip.address:02X}")
    return chip


def obtain_calibration(source: SampleSource,
                       store: Optional[CalibrationStore],
                       gyro_cfg: GyroCalConfig,
                       accel_cfg: AccelCalConfig,
                       cancel: threading.Event,
                       recalibrate: bool = False,
                       skip_accel: bool = False) -> CalibrationSet:
    """
    Restore the stored calibration or run both procedures and store the result.

    Raises :class:`CalibrationFailedError` if either procedure fails.
    """
    if store is not None and not recalibrate:
        cal = store.load()
        if cal is not None:
            return cal

    gyro = GyroCalibrator(source, gyro_cfg).run(cancel)
    print(gyro.summary())

    if skip_accel:
        accel = AccelCalibration(bias=np.zeros(3), gain=np.ones(3), ok=True)
    else:
        accel = AccelCalibrator(source, accel_cfg).run(cancel)
        print(accel.summary())

    cal = calibration_set(gyro, accel)
    if store is not None:
        store.save(cal)
    return cal


def run_loop(source: SampleSource,
             estimator: AttitudeEstimator,
             rate: Rate,
             stop: threading.Event,
             on_state: Callable[[int, float, AttitudeState], None],
             dt_nominal: float,
             max_ticks: Optional[int] = None) -> int:
    """
    Fixed-rate control loop.  Returns the number of estimator updates.

    A tick whose reads fail is skipped; the state is left untouched.
    """
    count = 0
    failures = 0
    while not stop.is_set():
        if max_ticks is not None and count + failures >= max_ticks:
            break
        dt = rate.sleep()
        if dt <= 0 or dt > 5 * dt_nominal:
            dt = dt_nominal

        gyro, ok_g = source.read_gyro()
        accel, ok_a = source.read_accel()
        if not (ok_g and ok_a):
            failures += 1
            logger.warning("sensor read failed (%d so far)", failures)
            continue

        state = estimator.update(gyro, accel, dt)
        count += 1
        on_state(count, dt, state)
    return count


def calibration_configs(args: argparse.Namespace) -> Tuple[GyroCalConfig, AccelCalConfig]:
    """Calibration settings for the chosen chip and command-line overrides."""
    preset = SENSOR_PRESETS[args.chip]
    gyro_cfg = GyroCalConfig(
        n_samples=args.gyro_samples,
        min_accepted=max(1, args.gyro_samples * 3 // 4),
        max_outlier_deviation=preset.gyro_lsb,          # 1 deg/s in counts
        read_failure=ReadFailurePolicy(args.read_failure),
    )
    accel_cfg = AccelCalConfig.for_preset(
        preset,
        samples_per_face=args.face_samples,
        gain_convention=GainConvention(args.gain_convention),
        max_attempts_per_face=args.max_attempts or None,
    )
    return gyro_cfg, accel_cfg


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="IMU attitude estimation (complementary filter)")
    ap.add_argument("port", nargs="?", help="Serial port (auto-detect)")
    ap.add_argument("-b", "--baud", type=int, default=115_200)
    ap.add_argument("--chip", choices=sorted(SENSOR_PRESETS), default="icm42688",
                    help="Sensor (icm42688 = UART stream, others = I2C)")
    ap.add_argument("--i2c-bus", type=int, default=1)
    ap.add_argument("--rate", type=float, default=FilterConfig.rate_hz,
                    help="Control loop rate in Hz (default 50)")
    ap.add_argument("--time-constant", type=float, default=FilterConfig.time_constant)
    ap.add_argument("--cal-dir", default="calibration",
                    help="Directory holding the saved calibration blobs")
    ap.add_argument("--recalibrate", action="store_true",
                    help="Ignore the saved calibration")
    ap.add_argument("--no-save", action="store_true",
                    help="Neither load nor save a calibration")
    ap.add_argument("--skip-accel-cal", action="store_true",
                    help="Gyro calibration only; identity accel correction")
    ap.add_argument("--gyro-samples", type=int, default=GyroCalConfig.n_samples)
    ap.add_argument("--face-samples", type=int, default=AccelCalConfig.samples_per_face)
    ap.add_argument("--max-attempts", type=int, default=AccelCalConfig.max_attempts_per_face,
                    help="Reads per pose before timing out (0 = unbounded)")
    ap.add_argument("--gain-convention", choices=[c.value for c in GainConvention],
                    default=GainConvention.SCALE_RATIO.value)
    ap.add_argument("--read-failure", choices=[p.value for p in ReadFailurePolicy],
                    default=ReadFailurePolicy.ABORT.value)
    ap.add_argument("--csv", action="store_true", help="CSV output mode")
    ap.add_argument("-v", "--verbose", action="store_true")
    return ap


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="  >> %(message)s",
        stream=sys.stderr,
    )

    stop = threading.Event()

    def _sigint(*_):
        stop.set()
    signal.signal(signal.SIGINT, _sigint)

    preset = SENSOR_PRESETS[args.chip]
    filt = FilterConfig(time_constant=args.time_constant, rate_hz=args.rate)
    gyro_cfg, accel_cfg = calibration_configs(args)

    print(f"\n{'='*62}")
    print(f"  Attitude -- complementary filter ({preset.name})")
    print(f"{'='*62}")
    try:
        source = open_source(args)
    except SensorUnavailableError as e:
        sys.exit(f"ERROR: {e}")
    print(f"{'='*62}\n")

    store = None if args.no_save else CalibrationStore(FileBlobStore(args.cal_dir))
    try:
        cal = obtain_calibration(source, store, gyro_cfg, accel_cfg, stop,
                                 recalibrate=args.recalibrate,
                                 skip_accel=args.skip_accel_cal)
    except AttitudeError as e:
        sys.exit(f"ERROR: {e}")
    print(cal.summary())

    estimator = AttitudeEstimator(cal, time_constant=filt.time_constant,
                                  gimbal_limit=filt.gimbal_limit,
                                  gyro_sensitivity=preset.gyro_lsb)

    if args.csv:
        print("n,dt,roll,pitch,yaw")

    def _emit(n: int, dt: float, s: AttitudeState) -> None:
        if args.csv:
            print(f"{n},{dt:.5f},{s.roll:.3f},{s.pitch:.3f},{s.yaw:.3f}")
        else:
            sys.stdout.write(f"\r  roll={s.roll:+8.2f}  pitch={s.pitch:+8.2f}  "
                             f"yaw={s.yaw:+8.2f}  ({n} ticks)")
            sys.stdout.flush()

    count = run_loop(source, estimator, Rate(filt.rate_hz), stop, _emit,
                     dt_nominal=1.0 / filt.rate_hz)

    if not args.csv:
        print(f"\n\n{'='*62}")
        print(f"  Processed {count} ticks")
        print(f"{'='*62}\n")


if __name__ == "__main__":
    main()
