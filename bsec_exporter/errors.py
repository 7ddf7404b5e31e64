from __future__ import annotations


class BsecExporterError(Exception):
    """Base class for all errors raised by the exporter."""


class ConfigurationError(BsecExporterError):
    """Invalid or unusable configuration, detected before sampling starts."""


class SensorReadError(BsecExporterError):
    """Transient failure to obtain a sample from the sensor (e.g. I2C bus error)."""


class EngineProcessError(BsecExporterError):
    """
    Error reported by the fusion engine.

    `fatal` is decided by the ErrorClassifier: recoverable errors skip the
    current cycle, fatal errors stop the sampling loop.
    """

    def __init__(self, message: str, code: int | None = None, fatal: bool = False) -> None:
        super().__init__(message)
        self.code = code
        self.fatal = fatal

    def __str__(self) -> str:
        base = super().__str__()
        if self.code is None:
            return base
        return f"{base} (code {self.code})"


class EngineInUseError(EngineProcessError):
    """The BSEC library keeps global state; only one engine may exist per process."""

    def __init__(self) -> None:
        super().__init__("BSEC engine is already in use by this process", fatal=True)


class PersistenceError(BsecExporterError):
    """Saving or loading the engine state failed. Degrades durability only."""
