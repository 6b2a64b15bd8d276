#!/usr/bin/env python3
"""
imu_driver.py — Raw IMU sample sources.

Everything the calibration and estimation code needs from hardware is the
:class:`SampleSource` protocol: ``read_gyro()`` and ``read_accel()`` each
return ``(vector, ok)`` with raw signed 16-bit counts and ``ok=False`` on a
bus or link failure.  Two families of sources are provided:

  • :class:`SerialIMU`: decodes the FPGA UART packet stream (pyserial)

      [0xAA][0x55][AX_H][AX_L][AY_H][AY_L][AZ_H][AZ_L]
      [GX_H][GX_L][GY_H][GY_L][GZ_H][GZ_L][T_H][T_L][0x0D][0x0A]

  • :class:`IMUChip` register drivers (:class:`ICM20948`, :class:`MPU9250`)
    talking to the chip over a :class:`RegisterBus` such as
    :class:`SMBusRegisterBus` (smbus2).
"""

from __future__ import annotations

import glob
import logging
import time
from dataclasses import dataclass
from typing import Generator, List, Optional, Protocol, Tuple

import numpy as np
import serial
import serial.tools.list_ports
from smbus2 import SMBus

logger = logging.getLogger(__name__)

# ── Sensor / link constants ─────────────────────────────────────────────────
BAUD       = 115_200
PKT_LEN    = 18
HEADER     = b"\xAA\x55"
TRAILER    = b"\x0D\x0A"
ACCEL_LSB  = 2048.0     # LSB/g   (±16 g)
GYRO_LSB   = 16.384     # LSB/dps (±2000 dps)  32768/2000
TEMP_SENS  = 132.48     # LSB/°C
TEMP_OFF   = 25.0       # °C

Reading = Tuple[np.ndarray, bool]


class SampleSource(Protocol):
    """Anything that can hand out raw gyro and accel triples on demand."""

    def read_gyro(self) -> Reading: ...

    def read_accel(self) -> Reading: ...


def _failed() -> Reading:
    return np.zeros(3, dtype=np.int64), False


def _s16(hi: int, lo: int) -> int:
    v = (hi << 8) | lo
    return v - 0x10000 if v >= 0x8000 else v


def _s16_triple(raw: bytes) -> np.ndarray:
    return np.array([_s16(raw[0], raw[1]),
                     _s16(raw[2], raw[3]),
                     _s16(raw[4], raw[5])], dtype=np.int64)


# ── UART packet stream ──────────────────────────────────────────────────────

@dataclass
class IMUSample:
    """One decoded UART packet."""
    t: float              # monotonic timestamp (s)
    ax: float = 0.0       # accel  X  (g)
    ay: float = 0.0       # accel  Y  (g)
    az: float = 0.0       # accel  Z  (g)
    gx: float = 0.0       # gyro   X  (°/s)
    gy: float = 0.0       # gyro   Y  (°/s)
    gz: float = 0.0       # gyro   Z  (°/s)
    temp: float = 0.0     # die temperature (°C)
    seq: int = 0          # packet sequence number

    # Raw counts, what the calibration routines consume
    ax_raw: int = 0
    ay_raw: int = 0
    az_raw: int = 0
    gx_raw: int = 0
    gy_raw: int = 0
    gz_raw: int = 0
    temp_raw: int = 0

    @property
    def accel_raw(self) -> np.ndarray:
        return np.array([self.ax_raw, self.ay_raw, self.az_raw], dtype=np.int64)

    @property
    def gyro_raw(self) -> np.ndarray:
        return np.array([self.gx_raw, self.gy_raw, self.gz_raw], dtype=np.int64)


def decode_packet(pkt: bytes, seq: int = 0,
                  t: Optional[float] = None) -> Optional[IMUSample]:
    """Decode one 18-byte packet; ``None`` if framing is wrong."""
    if len(pkt) != PKT_LEN or pkt[:2] != HEADER or pkt[-2:] != TRAILER:
        return None

    ax_r = _s16(pkt[2],  pkt[3])
    ay_r = _s16(pkt[4],  pkt[5])
    az_r = _s16(pkt[6],  pkt[7])
    gx_r = _s16(pkt[8],  pkt[9])
    gy_r = _s16(pkt[10], pkt[11])
    gz_r = _s16(pkt[12], pkt[13])
    t_r  = _s16(pkt[14], pkt[15])

    return IMUSample(
        t=time.monotonic() if t is None else t, seq=seq,
        ax=ax_r / ACCEL_LSB, ay=ay_r / ACCEL_LSB, az=az_r / ACCEL_LSB,
        gx=gx_r / GYRO_LSB,  gy=gy_r / GYRO_LSB,  gz=gz_r / GYRO_LSB,
        temp=t_r / TEMP_SENS + TEMP_OFF,
        ax_raw=ax_r, ay_raw=ay_r, az_raw=az_r,
        gx_raw=gx_r, gy_raw=gy_r, gz_raw=gz_r,
        temp_raw=t_r,
    )


class PacketDecoder:
    """
    Incremental byte-stream framer.

    Handles header sync, trailer verification, and byte-level resync: a
    packet with a bad trailer is dropped two bytes past its header and the
    search restarts from there.
    """

    def __init__(self):
        self.buf = bytearray()
        self.seq = 0
        self.bad_trailers = 0

    def feed(self, chunk: bytes) -> List[IMUSample]:
        self.buf.extend(chunk)
        out: List[IMUSample] = []

        while len(self.buf) >= PKT_LEN:
            idx = self.buf.find(HEADER)
            if idx < 0:
                self.buf = self.buf[-1:]
                break
            if idx > 0:
                self.buf = self.buf[idx:]
            if len(self.buf) < PKT_LEN:
                break

            pkt = bytes(self.buf[:PKT_LEN])
            self.buf = self.buf[PKT_LEN:]

            if pkt[-2:] != TRAILER:
                self.bad_trailers += 1
                self.buf = bytearray(pkt[2:]) + self.buf
                continue

            self.seq += 1
            out.append(decode_packet(pkt, self.seq))
        return out


def find_port() -> Optional[str]:
    """Auto-detect the FPGA serial port."""
    for p in serial.tools.list_ports.comports():
        d = ((p.description or "") + (p.manufacturer or "")).lower()
        if any(k in d for k in ("ftdi", "ft2232", "digilent", "arty", "uart")):
            return p.device
    usbs = sorted(glob.glob("/dev/ttyUSB*"))
    return usbs[1] if len(usbs) >= 2 else (usbs[0] if usbs else None)


def stream(port: Optional[str] = None,
           baud: int = BAUD) -> Generator[IMUSample, None, None]:
    """Open *port* and yield one :class:`IMUSample` per valid packet."""
    port = port or find_port()
    if port is None:
        raise RuntimeError("No serial port found.  Is the board connected?")

    with serial.Serial(port, baud, timeout=0.5) as ser:
        ser.reset_input_buffer()
        decoder = PacketDecoder()
        while True:
            chunk = ser.read(max(ser.in_waiting, 1))
            if chunk:
                yield from decoder.feed(chunk)


class SerialIMU:
    """
    :class:`SampleSource` over the UART packet stream.

    Each read returns the newest packet available, waiting up to the port
    timeout for one.  No packet in time, or a serial error, gives ok=False.

    One packet carries both sensors: a gyro read followed by an accel read
    (or the reverse) with no newer packet waiting returns the two halves of
    the same packet.  Repeated reads of one sensor always take a new packet.
    """

    def __init__(self, port: Optional[str] = None, baud: int = BAUD,
                 timeout: float = 0.5, ser=None):
        if ser is None:
            port = port or find_port()
            if port is None:
                raise RuntimeError("No serial port found.  Is the board connected?")
            ser = serial.Serial(port, baud, timeout=timeout)
            ser.reset_input_buffer()
        self.ser = ser
        self.decoder = PacketDecoder()
        self.last: Optional[IMUSample] = None
        self._unread: Optional[str] = None     # half of self.last not yet served

    def _latest(self) -> Optional[IMUSample]:
        try:
            newest = None
            while True:
                chunk = self.ser.read(max(self.ser.in_waiting, 1))
                if not chunk:
                    break
                packets = self.decoder.feed(chunk)
                if packets:
                    newest = packets[-1]
                if newest is not None and self.ser.in_waiting == 0:
                    break
        except serial.SerialException as e:
            logger.warning("serial read failed: %s", e)
            return None
        if newest is not None:
            self.last = newest
        return newest

    def _newer_waiting(self) -> bool:
        try:
            return len(self.decoder.buf) + self.ser.in_waiting >= PKT_LEN
        except serial.SerialException:
            return True

    def _read(self, kind: str) -> Optional[IMUSample]:
        if self._unread == kind and not self._newer_waiting():
            self._unread = None
            return self.last
        s = self._latest()
        self._unread = None if s is None else ("accel" if kind == "gyro" else "gyro")
        return s

    def read_gyro(self) -> Reading:
        s = self._read("gyro")
        return (s.gyro_raw, True) if s is not None else _failed()

    def read_accel(self) -> Reading:
        s = self._read("accel")
        return (s.accel_raw, True) if s is not None else _failed()

    def close(self) -> None:
        self.ser.close()


# ── I2C register drivers ────────────────────────────────────────────────────

class RegisterBus(Protocol):
    """Byte-register access to one bus; errors surface as ``OSError``."""

    def read_bytes(self, addr: int, reg: int, length: int) -> bytes: ...

    def write_byte(self, addr: int, reg: int, value: int) -> None: ...


class SMBusRegisterBus:
    """:class:`RegisterBus` on a Linux I2C adapter via smbus2."""

    def __init__(self, bus_num: int = 1):
        self.bus = SMBus(bus_num)

    def read_bytes(self, addr: int, reg: int, length: int) -> bytes:
        return bytes(self.bus.read_i2c_block_data(addr, reg, length))

    def write_byte(self, addr: int, reg: int, value: int) -> None:
        self.bus.write_byte_data(addr, reg, value)

    def close(self) -> None:
        self.bus.close()


class IMUChip:
    """
    Common wake / probe / init / read sequence for register-mapped IMUs.

    Subclasses supply the register map through class attributes and override
    :meth:`_configure` (and :meth:`_select_bank` for banked parts).
    """

    NAME = "imu"
    DEFAULT_ADDR = 0x68
    WHO_AM_I = 0x75
    WHO_AM_I_VALUES: Tuple[int, ...] = ()
    PWR_MGMT_1 = 0x6B
    WAKE_VALUE = 0x01           # leave sleep, auto-select clock
    ACCEL_XOUT_H = 0x3B
    GYRO_XOUT_H = 0x43
    DATA_BANK = 0

    def __init__(self, bus: RegisterBus, address: Optional[int] = None):
        self.bus = bus
        self.address = self.DEFAULT_ADDR if address is None else address
        self.success = False

    def _select_bank(self, bank: int) -> None:
        """Register banks are a no-op on flat register maps."""

    def _write(self, reg: int, value: int, bank: int = 0) -> None:
        self._select_bank(bank)
        self.bus.write_byte(self.address, reg, value)

    def _read(self, reg: int, length: int, bank: int = 0) -> bytes:
        self._select_bank(bank)
        return self.bus.read_bytes(self.address, reg, length)

    def connective(self) -> bool:
        """True if the WHO_AM_I register identifies this chip."""
        try:
            who = self._read(self.WHO_AM_I, 1)[0]
        except OSError as e:
            logger.error("%s: WHO_AM_I read failed: %s", self.NAME, e)
            return False
        return who in self.WHO_AM_I_VALUES

    def wake_up(self) -> bool:
        try:
            self._write(self.PWR_MGMT_1, self.WAKE_VALUE)
        except OSError as e:
            logger.error("%s: wake-up failed: %s", self.NAME, e)
            return False
        return True

    def _configure(self) -> None:
        raise NotImplementedError

    def init(self) -> bool:
        """Wake, verify identity and program default ranges."""
        self.success = False
        if not self.wake_up() or not self.connective():
            logger.error("%s: init failed (not connected)", self.NAME)
            return False
        try:
            self._configure()
        except OSError as e:
            logger.error("%s: configuration failed: %s", self.NAME, e)
            return False
        self.success = True
        logger.info("%s: initialised at 0x%02X", self.NAME, self.address)
        return True

    def _read_triple(self, reg: int) -> Reading:
        if not self.success:
            return _failed()
        try:
            raw = self._read(reg, 6, self.DATA_BANK)
        except OSError as e:
            logger.warning("%s: read 0x%02X failed: %s", self.NAME, reg, e)
            return _failed()
        return _s16_triple(raw), True

    def read_gyro(self) -> Reading:
        return self._read_triple(self.GYRO_XOUT_H)

    def read_accel(self) -> Reading:
        return self._read_triple(self.ACCEL_XOUT_H)


class MPU9250(IMUChip):
    NAME = "MPU9250"
    WHO_AM_I_VALUES = (0x71, 0x75, 0x70)    # MPU9250 / MPU9255 / MPU6500 die

    SMPLRT_DIV = 0x19
    CONFIG = 0x1A
    GYRO_CONFIG = 0x1B
    ACCEL_CONFIG = 0x1C
    ACCEL_CONFIG_2 = 0x1D

    def __init__(self, bus: RegisterBus, address: Optional[int] = None,
                 smplrt_div: int = 0x01, gyro_config: int = 0x08,
                 config: int = 0x00, accel_config: int = 0x08,
                 accel_config_2: int = 0x00):
        super().__init__(bus, address)
        self.settings = (
            (self.SMPLRT_DIV, smplrt_div),
            (self.GYRO_CONFIG, gyro_config),        # ±500 dps
            (self.CONFIG, config),
            (self.ACCEL_CONFIG, accel_config),      # ±4 g
            (self.ACCEL_CONFIG_2, accel_config_2),
        )

    def _configure(self) -> None:
        for reg, value in self.settings:
            self._write(reg, value)


class ICM20948(IMUChip):
    NAME = "ICM20948"
    WHO_AM_I = 0x00
    WHO_AM_I_VALUES = (0xEA,)
    PWR_MGMT_1 = 0x06
    ACCEL_XOUT_H = 0x2D
    GYRO_XOUT_H = 0x33

    REG_BANK_SEL = 0x7F
    PWR_MGMT_2 = 0x07
    # bank 2
    GYRO_SMPLRT_DIV = 0x00
    GYRO_CONFIG_1 = 0x01
    ACCEL_SMPLRT_DIV_1 = 0x10
    ACCEL_SMPLRT_DIV_2 = 0x11
    ACCEL_CONFIG = 0x14

    def __init__(self, bus: RegisterBus, address: Optional[int] = None,
                 pwr_mgmt_2: int = 0x00, gyro_config_1: int = 0x03,
                 gyro_smplrt_div: int = 0x00, accel_config: int = 0x03,
                 accel_smplrt_div_1: int = 0x00, accel_smplrt_div_2: int = 0x00):
        super().__init__(bus, address)
        self.settings = (
            (0, self.PWR_MGMT_2, pwr_mgmt_2),
            (2, self.GYRO_CONFIG_1, gyro_config_1),         # DLPF on, ±500 dps
            (2, self.GYRO_SMPLRT_DIV, gyro_smplrt_div),
            (2, self.ACCEL_CONFIG, accel_config),           # DLPF on, ±4 g
            (2, self.ACCEL_SMPLRT_DIV_1, accel_smplrt_div_1),
            (2, self.ACCEL_SMPLRT_DIV_2, accel_smplrt_div_2),
        )

    def _select_bank(self, bank: int) -> None:
        if bank not in (0, 1, 2, 3):
            raise ValueError(f"Invalid user bank {bank}")
        self.bus.write_byte(self.address, self.REG_BANK_SEL, bank << 4)

    def _configure(self) -> None:
        for bank, reg, value in self.settings:
            self._write(reg, value, bank)
        self._select_bank(0)


CHIPS = {
    "icm20948": ICM20948,
    "mpu9250": MPU9250,
}
