#!/usr/bin/env python3
"""
dashboard.py — Real-time attitude dashboard with matplotlib.

Four-panel live visualization:
  ┌─────────────────┬─────────────────┐
  │  Roll           │  Pitch          │
  │  filter vs acc  │  filter vs acc  │
  ├─────────────────┼─────────────────┤
  │  Yaw (gyro      │  Gyro rate      │
  │  only, drifts)  │  (deg/s)        │
  └─────────────────┴─────────────────┘

Accepts every option of ``attitude.app`` plus ``--window``.

Usage
-----
  python3 -m attitude.dashboard                    # UART stream, auto-detect port
  python3 -m attitude.dashboard --chip mpu9250     # I2C chip
  python3 -m attitude.dashboard --window 10.0      # 10 s rolling window
"""

from __future__ import annotations

import logging
import signal
import threading
import time

import numpy as np
import matplotlib.pyplot as plt
import matplotlib.gridspec as gridspec
from matplotlib.animation import FuncAnimation

from .app import (
    build_parser, calibration_configs, obtain_calibration, open_source, run_loop,
)
from .config import SENSOR_PRESETS
from .errors import AttitudeError
from .estimator import AttitudeEstimator, AttitudeState
from .storage import CalibrationStore, FileBlobStore
from .timing import Rate
from .vector import accel_tilt

logger = logging.getLogger("attitude.dashboard")


# ── Circular buffer for rolling plots ──────────────────────────────────────

class RingBuffer:
    """Fixed-size ring buffer backed by numpy arrays."""
    def __init__(self, maxlen: int, ncols: int = 1):
        self.maxlen = maxlen
        self.ncols = ncols
        self.data = np.zeros((maxlen, ncols))
        self.idx = 0
        self.full = False

    def append(self, row) -> None:
        self.data[self.idx] = row
        self.idx += 1
        if self.idx >= self.maxlen:
            self.idx = 0
            self.full = True

    def get(self) -> np.ndarray:
        if self.full:
            return np.roll(self.data, -self.idx, axis=0)
        return self.data[:self.idx]


# ── Shared state between IMU thread and plot thread ────────────────────────

class SharedState:
    def __init__(self, ring_len: int):
        self.lock = threading.Lock()
        self.attitude = RingBuffer(ring_len, 3)  # roll, pitch, yaw (filter)
        self.tilt = RingBuffer(ring_len, 2)      # roll, pitch (accel only)
        self.rate = RingBuffer(ring_len, 3)      # calibrated gyro (deg/s)
        self.time_buf = RingBuffer(ring_len, 1)  # relative time (s)
        self.count = 0
        self.hz = 0.0
        self.cal_done = False
        self.error: str | None = None


class _RecordingEstimator(AttitudeEstimator):
    """Estimator that also publishes its inputs for plotting."""

    def __init__(self, shared: SharedState, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.shared = shared
        self.t_start = time.monotonic()

    def update(self, gyro_raw, accel_raw, dt: float) -> AttitudeState:
        state = super().update(gyro_raw, accel_raw, dt)
        tilt = accel_tilt(self.calibrate_accel(accel_raw))
        rate = self.calibrate_gyro(gyro_raw)
        t_rel = time.monotonic() - self.t_start
        with self.shared.lock:
            self.shared.count += 1
            self.shared.time_buf.append([t_rel])
            self.shared.attitude.append(state.as_array())
            self.shared.tilt.append(tilt)
            self.shared.rate.append(rate)
            if t_rel > 0:
                self.shared.hz = self.shared.count / t_rel
        return state


# ── IMU processing thread ──────────────────────────────────────────────────

def _imu_thread(shared: SharedState, args, stop: threading.Event) -> None:
    preset = SENSOR_PRESETS[args.chip]
    gyro_cfg, accel_cfg = calibration_configs(args)

    try:
        source = open_source(args)
        store = None if args.no_save else CalibrationStore(FileBlobStore(args.cal_dir))
        cal = obtain_calibration(source, store, gyro_cfg, accel_cfg, stop,
                                 recalibrate=args.recalibrate,
                                 skip_accel=args.skip_accel_cal)
    except AttitudeError as e:
        logger.error("startup failed: %s", e)
        with shared.lock:
            shared.error = str(e)
        return

    est = _RecordingEstimator(shared, cal, time_constant=args.time_constant,
                              gyro_sensitivity=preset.gyro_lsb)
    with shared.lock:
        shared.cal_done = True

    run_loop(source, est, Rate(args.rate), stop, lambda *_: None,
             dt_nominal=1.0 / args.rate)


# ── Dashboard ──────────────────────────────────────────────────────────────

def _build_dashboard(shared: SharedState, window_sec: float):
    plt.style.use("dark_background")
    fig = plt.figure(figsize=(14, 8))
    fig.canvas.manager.set_window_title("Attitude Dashboard")

    gs = gridspec.GridSpec(2, 2, hspace=0.35, wspace=0.30,
                           left=0.08, right=0.96, top=0.92, bottom=0.08)

    def _panel(cell, title, ylabel, ylim):
        ax = fig.add_subplot(cell)
        ax.set_title(title, fontsize=11, pad=8)
        ax.set_ylabel(ylabel)
        ax.set_xlabel("time (s)")
        ax.set_ylim(*ylim)
        ax.grid(alpha=0.2)
        return ax

    ax_roll = _panel(gs[0, 0], "Roll", "degrees", (-180, 180))
    line_roll, = ax_roll.plot([], [], lw=1.5, color="#DA77F2", label="filter")
    line_roll_acc, = ax_roll.plot([], [], lw=0.8, color="#868E96", label="accel")
    ax_roll.legend(loc="upper right", fontsize=8)

    ax_pitch = _panel(gs[0, 1], "Pitch", "degrees", (-90, 90))
    line_pitch, = ax_pitch.plot([], [], lw=1.5, color="#20C997", label="filter")
    line_pitch_acc, = ax_pitch.plot([], [], lw=0.8, color="#868E96", label="accel")
    ax_pitch.axhspan(75, 90, color="#FF6B6B", alpha=0.15)
    ax_pitch.axhspan(-90, -75, color="#FF6B6B", alpha=0.15)
    ax_pitch.legend(loc="upper right", fontsize=8)

    ax_yaw = _panel(gs[1, 0], "Yaw (gyro only)", "degrees", (-180, 180))
    line_yaw, = ax_yaw.plot([], [], lw=1.5, color="#FCC419")

    ax_rate = _panel(gs[1, 1], "Gyro rate", "deg/s", (-50, 50))
    line_gx, = ax_rate.plot([], [], lw=1, color="#FF6B6B", label="X")
    line_gy, = ax_rate.plot([], [], lw=1, color="#51CF66", label="Y")
    line_gz, = ax_rate.plot([], [], lw=1, color="#339AF0", label="Z")
    ax_rate.legend(loc="upper right", fontsize=8)

    status_text = fig.text(0.5, 0.97, "Calibrating …", ha="center", fontsize=12,
                           color="#FCC419", fontweight="bold")

    def _update(frame):
        with shared.lock:
            t = shared.time_buf.get().flatten()
            att = shared.attitude.get()
            tilt = shared.tilt.get()
            rate = shared.rate.get()
            hz = shared.hz
            count = shared.count
            cal_done = shared.cal_done
            error = shared.error

        if error:
            status_text.set_text(f"Error: {error}")
            status_text.set_color("#FF6B6B")
            return []
        if not cal_done:
            status_text.set_text("Calibrating …  follow the console prompts")
            status_text.set_color("#FCC419")
            return []
        if len(t) < 2:
            return []

        t_max = t[-1]
        t_min = max(0, t_max - window_sec)

        line_roll.set_data(t, att[:, 0])
        line_roll_acc.set_data(t, tilt[:, 0])
        line_pitch.set_data(t, att[:, 1])
        line_pitch_acc.set_data(t, tilt[:, 1])
        line_yaw.set_data(t, att[:, 2])
        line_gx.set_data(t, rate[:, 0])
        line_gy.set_data(t, rate[:, 1])
        line_gz.set_data(t, rate[:, 2])
        r_max = max(np.abs(rate).max() * 1.2, 10)
        ax_rate.set_ylim(-r_max, r_max)
        for ax in (ax_roll, ax_pitch, ax_yaw, ax_rate):
            ax.set_xlim(t_min, t_max)

        r, p, y = att[-1]
        gimbal = abs(p) >= 75.0
        status_text.set_text(
            f"Roll {r:+7.2f}°   │   Pitch {p:+7.2f}°   │   Yaw {y:+7.2f}°   │   "
            f"{hz:.0f} Hz   │   Ticks: {count}" + ("   │   GIMBAL" if gimbal else "")
        )
        status_text.set_color("#FF6B6B" if gimbal else "#51CF66")
        return []

    ani = FuncAnimation(fig, _update, interval=50, blit=False, cache_frame_data=False)
    return fig, ani


def _stop_handler(stop: threading.Event):
    """SIGINT handler: stop the IMU thread and close the window."""
    def _sigint(*_):
        stop.set()
        plt.close("all")
    return _sigint


# ── Main ────────────────────────────────────────────────────────────────────

def main(argv=None) -> None:
    ap = build_parser()
    ap.description = "Attitude dashboard — real-time visualization"
    ap.add_argument("--window", type=float, default=5.0,
                    help="Rolling plot window in seconds (default 5)")
    args = ap.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="  >> %(message)s")

    plt.switch_backend("TkAgg")
    shared = SharedState(int(args.window * args.rate))
    stop = threading.Event()

    signal.signal(signal.SIGINT, _stop_handler(stop))

    t = threading.Thread(target=_imu_thread, args=(shared, args, stop), daemon=True)
    t.start()

    print(f"\n  Attitude Dashboard — {SENSOR_PRESETS[args.chip].name}")
    print(f"  Hold sensor still for calibration …\n")

    fig, ani = _build_dashboard(shared, args.window)
    plt.show()
    stop.set()


if __name__ == "__main__":
    main()
