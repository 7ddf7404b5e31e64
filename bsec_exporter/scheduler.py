from __future__ import annotations
import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from .bridge import MetricsBridge
from .engine.interface import AMBIENT_TEMPERATURE_OUTPUT, FusionEngine
from .errors import EngineProcessError, SensorReadError
from .metrics import ExporterMetrics
from .sensors.interface import SensorPort
from .state import RestoreOutcome, StatePersister

logger = logging.getLogger(__name__)


def compute_wait(next_call_ns: int, now_ns: int) -> float:
    """Seconds until the engine's next call, never negative."""
    return max(0, next_call_ns - now_ns) / 1e9


class Clock(Protocol):
    def now_ns(self) -> int:
        ...

    def wait(self, seconds: float, shutdown: threading.Event) -> bool:
        """Block for `seconds` or until shutdown is set. True if shutdown was requested."""
        ...


class MonotonicClock:
    def now_ns(self) -> int:
        return time.monotonic_ns()

    def wait(self, seconds: float, shutdown: threading.Event) -> bool:
        if seconds <= 0:
            return shutdown.is_set()
        return shutdown.wait(seconds)


@dataclass(frozen=True)
class Backoff:
    """Capped exponential delay after consecutive sensor failures."""

    initial_s: float = 1.0
    max_s: float = 60.0
    factor: float = 2.0

    def delay(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        return min(self.initial_s * self.factor ** (failures - 1), self.max_s)


@dataclass
class SchedulerClock:
    next_wake_ns: int = 0
    cycles: int = 0
    consecutive_failures: int = 0


class CycleOutcome(str, enum.Enum):
    PUBLISHED = "published"
    IDLE = "idle"                    # engine did not ask for a measurement
    SENSOR_FAILED = "sensor_failed"
    SKIPPED = "skipped"              # recoverable engine error
    FATAL = "fatal"


class SamplingScheduler:
    """
    Owns the sample → process → publish loop.

    Runs in one background thread. The only blocking points are the wait for
    the engine's next call (interruptible by request_shutdown()) and the
    sensor/engine/state-file I/O, which is never interrupted once started.
    """

    def __init__(
        self,
        sensor: SensorPort,
        engine: FusionEngine,
        bridge: MetricsBridge,
        persister: StatePersister,
        *,
        heat_source_offset: float = 0.0,
        initial_ambient_temperature: float = 20.0,
        backoff: Backoff = Backoff(),
        failure_alert_threshold: int = 5,
        clock: Clock | None = None,
        metrics: ExporterMetrics | None = None,
        on_terminated: Optional[Callable[["SamplingScheduler"], None]] = None,
    ) -> None:
        self.sensor = sensor
        self.engine = engine
        self.bridge = bridge
        self.persister = persister
        self.heat_source_offset = heat_source_offset
        self.ambient_temperature = initial_ambient_temperature
        self.backoff = backoff
        self.failure_alert_threshold = failure_alert_threshold
        self.clock: Clock = clock or MonotonicClock()
        self.metrics = metrics or ExporterMetrics()
        self.on_terminated = on_terminated

        self.state = SchedulerClock()
        self.restore_outcome: RestoreOutcome | None = None
        self.fatal_error: EngineProcessError | None = None
        self._shutdown = threading.Event()
        self._thread: threading.Thread | None = None
        self._running = False

    # --- lifecycle ---------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._thread is not None:
            return
        self._shutdown.clear()
        self._running = True
        self._thread = threading.Thread(target=self.run, name="bsec-sampling", daemon=True)
        self._thread.start()
        logger.info("Sampling scheduler started")

    def request_shutdown(self) -> None:
        self._shutdown.set()

    def stop(self, grace_s: float = 5.0) -> bool:
        """Request shutdown and wait up to grace_s for the final save. True if the thread exited."""
        self.request_shutdown()
        if self._thread is None:
            return True
        self._thread.join(grace_s)
        if self._thread.is_alive():
            logger.error(f"Sampling thread did not stop within {grace_s}s; abandoning it")
            return False
        logger.info("Sampling scheduler stopped")
        return True

    # --- loop --------------------------------------------------------------

    def next_delay(self) -> float:
        if self.state.consecutive_failures:
            return self.backoff.delay(self.state.consecutive_failures)
        self.state.next_wake_ns = self.engine.next_call_ns
        return compute_wait(self.state.next_wake_ns, self.clock.now_ns())

    def run(self) -> None:
        self._running = True
        try:
            self.restore_outcome = self.persister.restore(self.engine)
            while True:
                if self.clock.wait(self.next_delay(), self._shutdown):
                    logger.info("Shutdown requested")
                    break
                if self.run_cycle() is CycleOutcome.FATAL:
                    break
        finally:
            self.persister.final_save(self.engine)
            self._running = False
            if self.on_terminated is not None:
                self.on_terminated(self)

    def run_cycle(self) -> CycleOutcome:
        now_ns = self.clock.now_ns()
        try:
            settings = self.engine.measurement_settings(now_ns)
            if not settings.trigger_measurement:
                return CycleOutcome.IDLE
            sample = self.sensor.read(settings, self.ambient_temperature, now_ns)
            result = self.engine.process(sample, self.heat_source_offset)
        except SensorReadError as e:
            self._sensor_failed(e)
            return CycleOutcome.SENSOR_FAILED
        except EngineProcessError as e:
            return self._engine_failed(e)
        except Exception as e:
            # driver or binding bug; retried like a failed read so the loop keeps sampling
            logger.exception(f"Unexpected error in sampling cycle: {e!r}")
            self._sensor_failed(e)
            return CycleOutcome.SENSOR_FAILED

        if self.state.consecutive_failures:
            logger.info(
                f"Sensor recovered after {self.state.consecutive_failures} failed reads"
            )
            self.state.consecutive_failures = 0
            self.metrics.consecutive_sensor_failures.set(0)
            self.metrics.sensor_degraded.set(0)

        self.bridge.publish(result.outputs)
        for output in result.outputs:
            if output.name == AMBIENT_TEMPERATURE_OUTPUT:
                self.ambient_temperature = output.value
        self.state.cycles += 1
        self.metrics.cycles.inc()
        self.metrics.last_publish.set_to_current_time()

        self.persister.maybe_save(self.engine)
        return CycleOutcome.PUBLISHED

    def _sensor_failed(self, error: Exception) -> None:
        self.state.consecutive_failures += 1
        failures = self.state.consecutive_failures
        self.metrics.sensor_read_errors.inc()
        self.metrics.consecutive_sensor_failures.set(failures)
        delay = self.backoff.delay(failures)
        if failures >= self.failure_alert_threshold:
            self.metrics.sensor_degraded.set(1)
            logger.error(
                f"Sensor read failed {failures} times in a row, serving stale values: {error}"
            )
        else:
            logger.warning(f"Sensor read failed ({error}); retrying in {delay:.1f}s")

    def _engine_failed(self, error: EngineProcessError) -> CycleOutcome:
        if error.fatal:
            self.metrics.engine_errors.labels(severity="fatal").inc()
            logger.critical(f"Fatal engine error, stopping sampling: {error}")
            self.fatal_error = error
            return CycleOutcome.FATAL
        self.metrics.engine_errors.labels(severity="recoverable").inc()
        logger.warning(f"Engine error, skipping cycle: {error}")
        return CycleOutcome.SKIPPED
