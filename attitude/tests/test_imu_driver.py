#!/usr/bin/env python3
"""
test_imu_driver.py -- Tests for the raw sample sources.

Tests cover:
  * UART packet decode and stream resync
  * SerialIMU over a fake port
  * ICM20948 / MPU9250 register drivers over a fake bus
  * SimulatedIMU truth and failure injection

Run:  python3 -m pytest attitude/tests/test_imu_driver.py -v
"""

import struct
import threading

import numpy as np
import pytest
import serial

# Allow running from repo root
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from attitude.app import run_loop
from attitude.calibration import CalibrationSet
from attitude.estimator import AttitudeEstimator
from attitude.imu_driver import (
    ACCEL_LSB, GYRO_LSB, HEADER, TEMP_OFF, TRAILER,
    ICM20948, MPU9250, PacketDecoder, SerialIMU, decode_packet,
)
from attitude.sim import SimulatedIMU


# ── Fixtures ────────────────────────────────────────────────────────────────

def _packet(ax=0, ay=0, az=2048, gx=0, gy=0, gz=0, temp=0, trailer=TRAILER):
    return HEADER + struct.pack(">7h", ax, ay, az, gx, gy, gz, temp) + trailer


class FakeSerial:
    def __init__(self, data=b"", error=None):
        self.data = bytearray(data)
        self.error = error
        self.closed = False

    @property
    def in_waiting(self):
        return len(self.data)

    def read(self, n):
        if self.error:
            raise self.error
        out = bytes(self.data[:n])
        del self.data[:n]
        return out

    def close(self):
        self.closed = True


class FixedRate:
    def sleep(self):
        return 0.02


class FakeBus:
    """Register file keyed by (bank, reg); bank tracked through REG_BANK_SEL."""

    def __init__(self, regs=None, bank_reg=None, fail=False):
        self.regs = dict(regs or {})
        self.bank_reg = bank_reg
        self.bank = 0
        self.fail = fail
        self.writes = []

    def read_bytes(self, addr, reg, length):
        if self.fail:
            raise OSError("bus error")
        return bytes(self.regs.get((self.bank, reg + i), 0) for i in range(length))

    def write_byte(self, addr, reg, value):
        if self.fail:
            raise OSError("bus error")
        if reg == self.bank_reg:
            self.bank = value >> 4
            return
        self.writes.append((self.bank, reg, value))
        self.regs[(self.bank, reg)] = value


def _load_triple(regs, bank, reg, values):
    for i, b in enumerate(struct.pack(">3h", *values)):
        regs[(bank, reg + i)] = b


# ── Packet decode ───────────────────────────────────────────────────────────

class TestDecodePacket:
    def test_fields(self):
        s = decode_packet(_packet(ax=2048, ay=-1024, az=4096,
                                  gx=1638, gy=-16384, gz=0, temp=0), seq=7, t=1.5)
        assert s.seq == 7
        assert s.t == 1.5
        assert s.ax == pytest.approx(1.0)
        assert s.ay == pytest.approx(-0.5)
        assert s.az == pytest.approx(2.0)
        assert s.gy == pytest.approx(-16384 / GYRO_LSB)
        assert s.temp == pytest.approx(TEMP_OFF)
        np.testing.assert_array_equal(s.accel_raw, [2048, -1024, 4096])
        np.testing.assert_array_equal(s.gyro_raw, [1638, -16384, 0])

    def test_signed_extremes(self):
        s = decode_packet(_packet(ax=-32768, ay=32767))
        assert s.ax_raw == -32768
        assert s.ay_raw == 32767
        assert s.ax == pytest.approx(-32768 / ACCEL_LSB)

    def test_bad_framing(self):
        assert decode_packet(_packet(trailer=b"\x00\x00")) is None
        assert decode_packet(b"\x00\x55" + _packet()[2:]) is None
        assert decode_packet(_packet()[:-1]) is None


class TestPacketDecoder:
    def test_split_across_chunks(self):
        d = PacketDecoder()
        stream = _packet(ax=1) + _packet(ax=2)
        out = d.feed(stream[:5]) + d.feed(stream[5:25]) + d.feed(stream[25:])
        assert [s.ax_raw for s in out] == [1, 2]
        assert [s.seq for s in out] == [1, 2]

    def test_skips_leading_garbage(self):
        d = PacketDecoder()
        out = d.feed(b"\x01\x02\x03" + _packet(gz=-5))
        assert len(out) == 1
        assert out[0].gz_raw == -5

    def test_resync_after_bad_trailer(self):
        d = PacketDecoder()
        out = d.feed(_packet(ax=9, trailer=b"\xFF\xFF") + _packet(ax=3))
        assert d.bad_trailers == 1
        assert [s.ax_raw for s in out] == [3]

    def test_partial_packet_waits(self):
        d = PacketDecoder()
        assert d.feed(_packet()[:10]) == []
        assert len(d.feed(_packet()[10:])) == 1


# ── SerialIMU ───────────────────────────────────────────────────────────────

class TestSerialIMU:
    def test_returns_newest_packet(self):
        ser = FakeSerial(_packet(ax=1, gx=10) + _packet(ax=2, gx=20))
        imu = SerialIMU(ser=ser)
        v, ok = imu.read_accel()
        assert ok
        np.testing.assert_array_equal(v, [2, 0, 2048])
        assert imu.last.gx_raw == 20

    def test_gyro_counts(self):
        imu = SerialIMU(ser=FakeSerial(_packet(gx=-3, gy=4, gz=5)))
        v, ok = imu.read_gyro()
        assert ok
        assert v.dtype == np.int64
        np.testing.assert_array_equal(v, [-3, 4, 5])

    def test_no_data_fails(self):
        imu = SerialIMU(ser=FakeSerial())
        v, ok = imu.read_gyro()
        assert not ok
        np.testing.assert_array_equal(v, np.zeros(3))

    def test_serial_error_fails(self):
        imu = SerialIMU(ser=FakeSerial(error=serial.SerialException("unplugged")))
        _, ok = imu.read_accel()
        assert not ok

    def test_one_packet_serves_gyro_and_accel(self):
        imu = SerialIMU(ser=FakeSerial(_packet(gx=5, az=2048)))
        g, ok_g = imu.read_gyro()
        a, ok_a = imu.read_accel()
        assert ok_g and ok_a
        np.testing.assert_array_equal(g, [5, 0, 0])
        np.testing.assert_array_equal(a, [0, 0, 2048])

    def test_pairs_follow_the_stream(self):
        ser = FakeSerial(_packet(ax=1, gx=10))
        imu = SerialIMU(ser=ser)
        assert imu.read_gyro()[0][0] == 10
        assert imu.read_accel()[0][0] == 1
        ser.data.extend(_packet(ax=2, gx=20))
        assert imu.read_gyro()[0][0] == 20
        assert imu.read_accel()[0][0] == 2

    def test_newer_packet_wins_over_pairing(self):
        ser = FakeSerial(_packet(ax=1, gx=10))
        imu = SerialIMU(ser=ser)
        imu.read_gyro()
        ser.data.extend(_packet(ax=2, gx=20))
        a, ok = imu.read_accel()
        assert ok
        assert a[0] == 2

    def test_same_sensor_needs_new_packet(self):
        imu = SerialIMU(ser=FakeSerial(_packet(gx=5)))
        assert imu.read_gyro()[1]
        assert not imu.read_gyro()[1]

    def test_control_loop_tick(self):
        imu = SerialIMU(ser=FakeSerial(_packet(ax=0, az=2048) + _packet(ay=2048, az=0)))
        est = AttitudeEstimator(CalibrationSet.identity(), gyro_sensitivity=GYRO_LSB)
        states = []
        n = run_loop(imu, est, FixedRate(), threading.Event(),
                     lambda i, dt, s: states.append(s), dt_nominal=0.02,
                     max_ticks=1)
        assert n == 1
        assert states[0].roll > 0.0            # newest packet: y axis up

    def test_close(self):
        ser = FakeSerial()
        SerialIMU(ser=ser).close()
        assert ser.closed


# ── Register drivers ────────────────────────────────────────────────────────

class TestICM20948:
    def _bus(self):
        regs = {(0, ICM20948.WHO_AM_I): 0xEA}
        _load_triple(regs, 0, ICM20948.ACCEL_XOUT_H, (100, -200, 8192))
        _load_triple(regs, 0, ICM20948.GYRO_XOUT_H, (-1, 2, -3))
        return FakeBus(regs, bank_reg=ICM20948.REG_BANK_SEL)

    def test_init_and_read(self):
        chip = ICM20948(self._bus())
        assert chip.init()
        g, ok = chip.read_gyro()
        assert ok
        np.testing.assert_array_equal(g, [-1, 2, -3])
        a, ok = chip.read_accel()
        assert ok
        np.testing.assert_array_equal(a, [100, -200, 8192])

    def test_configuration_banks(self):
        bus = self._bus()
        chip = ICM20948(bus)
        chip.init()
        assert (0, ICM20948.PWR_MGMT_1, 0x01) in bus.writes
        assert (2, ICM20948.GYRO_CONFIG_1, 0x03) in bus.writes
        assert (2, ICM20948.ACCEL_CONFIG, 0x03) in bus.writes
        assert bus.bank == 0

    def test_wrong_identity(self):
        bus = self._bus()
        bus.regs[(0, ICM20948.WHO_AM_I)] = 0x71
        chip = ICM20948(bus)
        assert not chip.init()
        _, ok = chip.read_gyro()
        assert not ok

    def test_read_before_init(self):
        _, ok = ICM20948(self._bus()).read_accel()
        assert not ok

    def test_bus_error(self):
        bus = self._bus()
        chip = ICM20948(bus)
        assert chip.init()
        bus.fail = True
        v, ok = chip.read_gyro()
        assert not ok
        np.testing.assert_array_equal(v, np.zeros(3))

    def test_invalid_bank(self):
        with pytest.raises(ValueError):
            ICM20948(self._bus())._select_bank(4)


class TestMPU9250:
    @pytest.mark.parametrize("who", [0x71, 0x75, 0x70])
    def test_identities(self, who):
        assert MPU9250(FakeBus({(0, MPU9250.WHO_AM_I): who})).init()

    def test_configuration(self):
        bus = FakeBus({(0, MPU9250.WHO_AM_I): 0x71})
        MPU9250(bus, gyro_config=0x10).init()
        regs = [(reg, val) for _, reg, val in bus.writes]
        assert regs[0] == (MPU9250.PWR_MGMT_1, 0x01)
        assert (MPU9250.GYRO_CONFIG, 0x10) in regs
        assert (MPU9250.ACCEL_CONFIG, 0x08) in regs

    def test_read(self):
        regs = {(0, MPU9250.WHO_AM_I): 0x71}
        _load_triple(regs, 0, MPU9250.ACCEL_XOUT_H, (0, 0, 8192))
        chip = MPU9250(FakeBus(regs), address=0x69)
        assert chip.init()
        assert chip.address == 0x69
        a, ok = chip.read_accel()
        assert ok
        np.testing.assert_array_equal(a, [0, 0, 8192])

    def test_absent_chip(self):
        assert not MPU9250(FakeBus(fail=True)).init()


# ── Simulated IMU ───────────────────────────────────────────────────────────

class TestSimulatedIMU:
    def test_level_counts(self):
        imu = SimulatedIMU(accel_bias=[5, -5, 0])
        a, ok = imu.read_accel()
        assert ok
        np.testing.assert_array_equal(a, [5, -5, 8192])

    def test_pose(self):
        imu = SimulatedIMU(accel_scale=[1.0, 1.0, 0.5])
        imu.hold_pose("Z-")
        a, _ = imu.read_accel()
        np.testing.assert_array_equal(a, [0, 0, -4096])

    def test_rate(self):
        imu = SimulatedIMU(gyro_lsb=10.0)
        imu.set_rate([1.0, -2.0, 0.5])
        g, _ = imu.read_gyro()
        np.testing.assert_array_equal(g, [10, -20, 5])

    def test_clipped_to_int16(self):
        imu = SimulatedIMU(accel_lsb=40000.0)
        a, _ = imu.read_accel()
        assert a[2] == 32767

    def test_fail_reads(self):
        imu = SimulatedIMU(fail_reads={1})
        assert imu.read_gyro()[1]
        assert not imu.read_accel()[1]
        assert imu.read_gyro()[1]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
