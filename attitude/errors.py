"""Exception types raised by the attitude pipeline."""


class AttitudeError(Exception):
    """Base class for all pipeline errors."""


class InvalidCalibrationError(AttitudeError, ValueError):
    """A calibration vector violates its invariant (e.g. zero gain)."""


class CalibrationFailedError(AttitudeError, RuntimeError):
    """A calibration flagged as failed was about to be used."""


class StorageError(AttitudeError, RuntimeError):
    """A persisted calibration blob is missing or malformed."""


class SensorUnavailableError(AttitudeError, RuntimeError):
    """The configured sample source could not be opened or identified."""
