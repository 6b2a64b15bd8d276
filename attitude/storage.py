"""
storage.py — Persist a CalibrationSet between boots.

Each vector is stored as its own fixed-size blob of three little-endian
IEEE-754 doubles (24 bytes) under a fixed key:

    rawGyroBias   gyro bias
    rawAccelBias  accel bias
    rawAccelGain  accel gain
"""

from __future__ import annotations

import logging
import struct
from pathlib import Path
from typing import Dict, Optional, Protocol, Union

import numpy as np

from .calibration import CalibrationSet
from .errors import StorageError

logger = logging.getLogger(__name__)

KEY_GYRO_BIAS = "rawGyroBias"
KEY_ACCEL_BIAS = "rawAccelBias"
# Holds CalibrationSet.accel_gain, the per-axis divisor.  For SCALE_RATIO
# that is 1 / gain, so a blob that stores the ratio itself loads inverted.
KEY_ACCEL_GAIN = "rawAccelGain"
KEYS = (KEY_GYRO_BIAS, KEY_ACCEL_BIAS, KEY_ACCEL_GAIN)

_VEC = struct.Struct("<3d")
BLOB_SIZE = _VEC.size


class BlobStore(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def put(self, key: str, data: bytes) -> None: ...


class MemoryBlobStore:
    """Dict-backed store, for tests and dry runs."""

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}

    def get(self, key: str) -> Optional[bytes]:
        return self.blobs.get(key)

    def put(self, key: str, data: bytes) -> None:
        self.blobs[key] = bytes(data)


class FileBlobStore:
    """One ``<key>.bin`` file per key under *directory*."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.bin"

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def put(self, key: str, data: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp = self._path(key).with_suffix(".tmp")
        tmp.write_bytes(data)
        tmp.replace(self._path(key))


def pack_vector(v: np.ndarray) -> bytes:
    return _VEC.pack(*(float(c) for c in v))


def unpack_vector(blob: bytes, key: str = "?") -> np.ndarray:
    if len(blob) != BLOB_SIZE:
        raise StorageError(f"{key}: expected {BLOB_SIZE} bytes, got {len(blob)}")
    return np.array(_VEC.unpack(blob))


class CalibrationStore:
    """Save and restore a :class:`CalibrationSet` through a :class:`BlobStore`."""

    def __init__(self, blobs: BlobStore):
        self.blobs = blobs

    def save(self, cal: CalibrationSet) -> None:
        self.blobs.put(KEY_GYRO_BIAS, pack_vector(cal.gyro_bias))
        self.blobs.put(KEY_ACCEL_BIAS, pack_vector(cal.accel_bias))
        self.blobs.put(KEY_ACCEL_GAIN, pack_vector(cal.accel_gain))
        logger.info("calibration saved under %s", ", ".join(KEYS))

    def load(self) -> Optional[CalibrationSet]:
        """
        Restore the saved set, or ``None`` if any key is missing.

        A blob of the wrong size raises :class:`StorageError`; values that
        fail validation raise :class:`InvalidCalibrationError`.
        """
        raw = {key: self.blobs.get(key) for key in KEYS}
        missing = [k for k, v in raw.items() if v is None]
        if missing:
            logger.info("no stored calibration (missing %s)", ", ".join(missing))
            return None
        vecs = {k: unpack_vector(v, k) for k, v in raw.items()}
        cal = CalibrationSet(
            gyro_bias=vecs[KEY_GYRO_BIAS],
            accel_bias=vecs[KEY_ACCEL_BIAS],
            accel_gain=vecs[KEY_ACCEL_GAIN],
        )
        logger.info("calibration restored")
        return cal
