from __future__ import annotations
import itertools
import logging
import random
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping, Sequence, Tuple

from .engine.interface import (
    Accuracy,
    EngineOutput,
    EngineResult,
    EngineVersion,
    SampleRate,
    Subscription,
)
from .errors import EngineProcessError, SensorReadError
from .sensors.interface import MeasurementSettings, RawSample

logger = logging.getLogger(__name__)

_STATE_PREFIX = b"scripted:"
_DEFAULT_INTERVAL_S = 3.0


class SimulatedSensor:
    """
    Stand-in for the BME680 used in sim mode.

    Values follow a bounded random walk around typical indoor conditions.
    With jitter=0 every read returns the base values, which makes it usable
    as a deterministic fixture.
    """

    def __init__(
        self,
        temperature: float = 22.0,
        humidity: float = 40.0,
        pressure: float = 1013.25,
        gas_resistance: float = 50_000.0,
        jitter: float = 0.02,
        failure_rate: float = 0.0,
        seed: int | None = None,
    ) -> None:
        self._base = (temperature, humidity, pressure, gas_resistance)
        self._current = list(self._base)
        self._jitter = jitter
        self._failure_rate = failure_rate
        self._rng = random.Random(seed)
        self.reads = 0
        self.closed = False

    def close(self) -> None:
        self.closed = True

    def read(
        self,
        settings: MeasurementSettings,
        ambient_temperature: float,
        timestamp_ns: int,
    ) -> RawSample:
        self.reads += 1
        if self._failure_rate and self._rng.random() < self._failure_rate:
            raise SensorReadError("simulated I2C read failure")

        if self._jitter:
            for i, base in enumerate(self._base):
                step = self._rng.uniform(-self._jitter, self._jitter) * base * 0.1
                # pull back towards the base value so the walk stays bounded
                self._current[i] += step + (base - self._current[i]) * 0.05

        temperature, humidity, pressure, gas = self._current
        return RawSample(
            temperature=temperature,
            humidity=humidity,
            pressure=pressure,
            gas_resistance=gas if settings.run_gas else 0.0,
            timestamp_ns=timestamp_ns,
        )


@dataclass
class ScriptedStep:
    """One scripted response of ScriptedEngine.process()."""

    outputs: Mapping[str, float] = field(default_factory=dict)
    next_call_delta_s: float | None = None
    accuracy: Accuracy = Accuracy.UNRELIABLE
    error: EngineProcessError | None = None


class ScriptedEngine:
    """
    Deterministic FusionEngine. Each process() call consumes the next
    ScriptedStep; when the script runs out only echoed raw inputs are
    returned.

    With echo_raw=True the raw_* and sensor_heat_compensated_* outputs are
    derived from the sample itself, as the real engine does.
    """

    def __init__(
        self,
        steps: Iterable[ScriptedStep] = (),
        version: EngineVersion = EngineVersion(),
        echo_raw: bool = False,
    ) -> None:
        self._steps: Iterator[ScriptedStep] = iter(steps)
        self._subscriptions: Dict[str, SampleRate] = {}
        self._next_call_ns = 0
        self._echo_raw = echo_raw
        self.version = version
        self.cycles = 0
        self.loaded_state: bytes | None = None
        self.processed: List[Tuple[RawSample, float]] = []
        self.closed = False

    @property
    def next_call_ns(self) -> int:
        return self._next_call_ns

    def update_subscription(self, subscriptions: Sequence[Subscription]) -> None:
        self._subscriptions = {s.name: s.sample_rate for s in subscriptions}

    def _active(self) -> Dict[str, SampleRate]:
        return {n: r for n, r in self._subscriptions.items() if r is not SampleRate.DISABLED}

    def _default_interval_s(self) -> float:
        intervals = [r.interval_s for r in self._active().values() if r.interval_s]
        return min(intervals) if intervals else _DEFAULT_INTERVAL_S

    def measurement_settings(self, timestamp_ns: int) -> MeasurementSettings:
        self._next_call_ns = timestamp_ns + int(self._default_interval_s() * 1e9)
        trigger = bool(self._active()) or not self._subscriptions
        return MeasurementSettings(next_call_ns=self._next_call_ns, trigger_measurement=trigger)

    def _wanted(self, name: str) -> bool:
        if not self._subscriptions:
            return True
        return name in self._active()

    def _echo(self, sample: RawSample, heat_source_offset: float) -> Dict[str, float]:
        return {
            "raw_temperature": sample.temperature,
            "raw_humidity": sample.humidity,
            "raw_pressure": sample.pressure * 100.0,
            "raw_gas": sample.gas_resistance,
            "sensor_heat_compensated_temperature": sample.temperature - heat_source_offset,
            "sensor_heat_compensated_humidity": sample.humidity,
        }

    def process(self, sample: RawSample, heat_source_offset: float) -> EngineResult:
        self.processed.append((sample, heat_source_offset))
        step = next(self._steps, None) or ScriptedStep()
        if step.error is not None:
            raise step.error

        self.cycles += 1
        values: Dict[str, float] = {}
        if self._echo_raw:
            values.update(self._echo(sample, heat_source_offset))
        values.update(step.outputs)
        if step.next_call_delta_s is not None:
            self._next_call_ns = sample.timestamp_ns + int(step.next_call_delta_s * 1e9)

        outputs = tuple(
            EngineOutput(
                name=name,
                value=float(value),
                accuracy=step.accuracy,
                timestamp_ns=sample.timestamp_ns,
            )
            for name, value in values.items()
            if self._wanted(name)
        )
        return EngineResult(outputs=outputs, next_call_ns=self._next_call_ns)

    def close(self) -> None:
        self.closed = True

    def get_state(self) -> bytes:
        return _STATE_PREFIX + str(self.cycles).encode("ascii")

    def set_state(self, blob: bytes) -> None:
        if not blob.startswith(_STATE_PREFIX):
            raise EngineProcessError("state blob rejected", code=-104)
        self.loaded_state = blob
        self.cycles = int(blob[len(_STATE_PREFIX):] or b"0")


def simulated_steps(seed: int | None = None) -> Iterator[ScriptedStep]:
    """
    Endless script for sim mode: an IAQ random walk whose accuracy improves
    the way BSEC's does while it calibrates.
    """
    rng = random.Random(seed)
    iaq = 50.0
    for cycle in itertools.count():
        iaq = min(max(iaq + rng.uniform(-2.0, 2.0), 0.0), 500.0)
        accuracy = Accuracy(min(cycle // 100, Accuracy.HIGH))
        yield ScriptedStep(
            outputs={
                "iaq": iaq,
                "static_iaq": iaq * 0.9,
                "co2_equivalent": 500.0 + iaq * 4.0,
                "breath_voc_equivalent": 0.5 + iaq / 100.0,
                "gas_percentage": min(iaq / 5.0, 100.0),
                "stabilization_status": 1.0 if cycle >= 20 else 0.0,
                "run_in_status": 1.0 if cycle >= 100 else 0.0,
            },
            accuracy=accuracy,
        )
