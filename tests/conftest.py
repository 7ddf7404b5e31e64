"""
Shared fixtures and fakes.

The environment is set before any bsec_exporter module is imported so the
service defaults to sim mode and never touches /etc or /var/lib.
"""
import os

os.environ["BSEC_EXPORTER_MODE"] = "sim"
os.environ["BSEC_EXPORTER_CONFIG"] = os.path.join(os.path.dirname(__file__), "does-not-exist.toml")

import threading
from typing import List, Optional

import pytest

from bsec_exporter.errors import PersistenceError, SensorReadError
from bsec_exporter.sensors.interface import MeasurementSettings, RawSample
from bsec_exporter.simulator import SimulatedSensor
from bsec_exporter.state import PersistedState


class FakeClock:
    """Clock whose wait() advances time instantly."""

    def __init__(self, start_ns: int = 1_000_000_000) -> None:
        self.now = start_ns
        self.waits: List[float] = []

    def now_ns(self) -> int:
        return self.now

    def wait(self, seconds: float, shutdown: threading.Event) -> bool:
        self.waits.append(seconds)
        self.now += int(seconds * 1e9)
        return shutdown.is_set()


class MemoryStore:
    """In-memory StateStore recording every save."""

    def __init__(self, state: Optional[PersistedState] = None, fail: bool = False) -> None:
        self.state = state
        self.fail = fail
        self.saved: List[PersistedState] = []

    def save(self, state: PersistedState) -> None:
        if self.fail:
            raise PersistenceError("disk full")
        self.saved.append(state)
        self.state = state

    def load(self) -> Optional[PersistedState]:
        return self.state


class FlakySensor:
    """Constant readings; the reads listed in `fail_on` (1-based) raise `fail_with`."""

    def __init__(self, fail_on=(), fail_with=SensorReadError, **values) -> None:
        values.setdefault("jitter", 0.0)
        self._sensor = SimulatedSensor(**values)
        self.fail_on = set(fail_on)
        self.fail_with = fail_with
        self.reads = 0
        self.ambient: List[float] = []
        self.closed = False

    def close(self) -> None:
        self.closed = True

    def read(self, settings: MeasurementSettings, ambient_temperature: float, timestamp_ns: int) -> RawSample:
        self.reads += 1
        self.ambient.append(ambient_temperature)
        if self.reads in self.fail_on:
            raise self.fail_with("bus error")
        return self._sensor.read(settings, ambient_temperature, timestamp_ns)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()
