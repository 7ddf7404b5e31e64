# bsec_exporter/engine/interface.py
from __future__ import annotations
import enum
from dataclasses import dataclass
from typing import Protocol, Sequence, Tuple

from ..sensors.interface import MeasurementSettings, RawSample


class SampleRate(str, enum.Enum):
    DISABLED = "disabled"
    ULP = "ulp"
    LP = "lp"
    CONTINUOUS = "continuous"

    @property
    def hz(self) -> float:
        return _SAMPLE_RATE_HZ[self]

    @property
    def interval_s(self) -> float | None:
        """Nominal seconds between samples, None when disabled."""
        if self is SampleRate.DISABLED:
            return None
        return _SAMPLE_RATE_INTERVAL_S[self]


# Values expected by bsec_update_subscription()
_SAMPLE_RATE_HZ = {
    SampleRate.DISABLED: 65535.0,
    SampleRate.ULP: 0.0033333,
    SampleRate.LP: 0.33333,
    SampleRate.CONTINUOUS: 1.0,
}

_SAMPLE_RATE_INTERVAL_S = {
    SampleRate.ULP: 300.0,
    SampleRate.LP: 3.0,
    SampleRate.CONTINUOUS: 1.0,
}


class Accuracy(enum.IntEnum):
    UNRELIABLE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3


# Virtual sensor outputs the engine can be subscribed to.
KNOWN_OUTPUTS: Tuple[str, ...] = (
    "iaq",
    "static_iaq",
    "co2_equivalent",
    "breath_voc_equivalent",
    "raw_temperature",
    "raw_pressure",
    "raw_humidity",
    "raw_gas",
    "stabilization_status",
    "run_in_status",
    "sensor_heat_compensated_temperature",
    "sensor_heat_compensated_humidity",
    "debug_compensated_gas",
    "gas_percentage",
)

# Output used to carry the ambient temperature estimate into the next cycle.
AMBIENT_TEMPERATURE_OUTPUT = "sensor_heat_compensated_temperature"


@dataclass(frozen=True)
class Subscription:
    name: str
    sample_rate: SampleRate


@dataclass(frozen=True)
class EngineOutput:
    name: str
    value: float
    accuracy: Accuracy
    timestamp_ns: int


@dataclass(frozen=True)
class EngineResult:
    outputs: Tuple[EngineOutput, ...]
    next_call_ns: int


@dataclass(frozen=True)
class EngineVersion:
    major: int = 0
    minor: int = 0
    major_bugfix: int = 0
    minor_bugfix: int = 0

    def as_tuple(self) -> Tuple[int, int, int, int]:
        return (self.major, self.minor, self.major_bugfix, self.minor_bugfix)

    def __str__(self) -> str:
        return ".".join(str(p) for p in self.as_tuple())


class FusionEngine(Protocol):
    """
    Capability interface of the signal-fusion engine.

    The engine decides when it needs the next sample; `next_call_ns` is 0
    until the engine has been asked for measurement settings at least once.
    """

    version: EngineVersion

    @property
    def next_call_ns(self) -> int:
        ...

    def update_subscription(self, subscriptions: Sequence[Subscription]) -> None:
        ...

    def measurement_settings(self, timestamp_ns: int) -> MeasurementSettings:
        """Ask the engine what to measure at `timestamp_ns`. Updates next_call_ns."""
        ...

    def process(self, sample: RawSample, heat_source_offset: float) -> EngineResult:
        """Feed one sample. Raises EngineProcessError."""
        ...

    def get_state(self) -> bytes:
        ...

    def set_state(self, blob: bytes) -> None:
        ...

    def close(self) -> None:
        """Release the engine. No other method may be called afterwards."""
        ...
