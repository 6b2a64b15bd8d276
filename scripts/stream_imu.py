#!/usr/bin/env python3
"""
stream_imu.py — Read & verify raw IMU packets from the FPGA UART

Shows raw signed 16-bit counts (what the calibration routines consume)
and die temperature in °C, and reports link quality.

Packet format (18 bytes):
  [0xAA][0x55]                           — header
  [AX_H][AX_L][AY_H][AY_L][AZ_H][AZ_L]  — accel  (signed 16-bit, ±16g)
  [GX_H][GX_L][GY_H][GY_L][GZ_H][GZ_L]  — gyro   (signed 16-bit, ±2000dps)
  [T_H][T_L]                             — temp   (signed 16-bit)
  [0x0D][0x0A]                           — CRLF

Usage:
  python3 scripts/stream_imu.py                    # live stream (Ctrl+C to stop)
  python3 scripts/stream_imu.py /dev/ttyUSB1       # explicit port
  python3 scripts/stream_imu.py -n 200             # stop after 200 packets
  python3 scripts/stream_imu.py --verify           # capture & verify report
  python3 scripts/stream_imu.py --csv > data.csv   # CSV of raw counts
"""

import argparse
import signal
import sys
import time

import serial

from attitude.imu_driver import BAUD, PacketDecoder, find_port


class Stats:
    def __init__(self):
        self.good = 0
        self.t0 = self.tN = None

    def rate(self):
        if self.t0 and self.tN and self.good > 1:
            dt = self.tN - self.t0
            return (self.good - 1) / dt if dt > 0 else 0
        return 0

    def report(self, bad_trailers):
        r = self.rate()
        ok = self.good > 0 and bad_trailers == 0
        return (
            f"\n{'═'*56}\n"
            f"  STREAM VERIFICATION SUMMARY\n"
            f"{'═'*56}\n"
            f"  Valid packets     : {self.good}\n"
            f"  Bad trailer       : {bad_trailers}\n"
            f"  Packet rate       : {r:.1f} Hz\n"
            f"{'═'*56}\n"
            f"  {'ALL GOOD' if ok else 'ISSUES DETECTED' if self.good else 'NO PACKETS — check wiring & FPGA'}\n"
        )


def main():
    ap = argparse.ArgumentParser(description="Raw IMU stream viewer")
    ap.add_argument("port", nargs="?", help="Serial port (auto-detect if omitted)")
    ap.add_argument("-n", "--num", type=int, default=0, help="Stop after N good packets (0=forever)")
    ap.add_argument("-b", "--baud", type=int, default=BAUD)
    ap.add_argument("--csv", action="store_true", help="CSV output")
    ap.add_argument("--verify", action="store_true", help="Capture 500 packets & report")
    args = ap.parse_args()

    port = args.port or find_port()
    if not port:
        sys.exit("ERROR: No serial port found. Is the board connected?")
    if args.verify and args.num == 0:
        args.num = 500

    stop = False
    def _sigint(*_):
        nonlocal stop
        stop = True
    signal.signal(signal.SIGINT, _sigint)

    st = Stats()
    decoder = PacketDecoder()

    if args.csv:
        print("pkt,ax,ay,az,gx,gy,gz,temp_c")
    else:
        print(f"\nOpening {port} @ {args.baud} baud …\n")
        print(f"{'#':>6}  {'Ax':>7} {'Ay':>7} {'Az':>7}  "
              f"{'Gx':>7} {'Gy':>7} {'Gz':>7}  {'T(°C)':>7}  {'Hz':>6}")
        print("─" * 72)

    with serial.Serial(port, args.baud, timeout=0.5) as ser:
        ser.reset_input_buffer()
        while not stop and not (0 < args.num <= st.good):
            chunk = ser.read(max(ser.in_waiting, 1))
            for s in decoder.feed(chunk):
                now = time.monotonic()
                if st.t0 is None:
                    st.t0 = now
                st.tN = now
                st.good += 1

                if args.csv:
                    print(f"{st.good},{s.ax_raw},{s.ay_raw},{s.az_raw},"
                          f"{s.gx_raw},{s.gy_raw},{s.gz_raw},{s.temp:.2f}")
                else:
                    line = (f"{st.good:6d}  {s.ax_raw:+7d} {s.ay_raw:+7d} {s.az_raw:+7d}  "
                            f"{s.gx_raw:+7d} {s.gy_raw:+7d} {s.gz_raw:+7d}  "
                            f"{s.temp:+7.2f}  {st.rate():6.0f}")
                    sys.stdout.write(f"\r{line}")
                    sys.stdout.flush()
                    if st.good % 100 == 0:
                        sys.stdout.write("\n")
                if 0 < args.num <= st.good:
                    break

    if not args.csv:
        print()
    print(st.report(decoder.bad_trailers))


if __name__ == "__main__":
    main()
