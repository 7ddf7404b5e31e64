from __future__ import annotations
import logging
from typing import Callable, List, Optional

from .bridge import MetricsBridge, MetricsSnapshot
from .config import MODE, load_settings
from .engine.classifier import ErrorClassifier
from .engine.interface import FusionEngine, SampleRate, Subscription
from .errors import ConfigurationError
from .metrics import ExporterMetrics, create_registry, render
from .models import Settings
from .scheduler import Backoff, Clock, SamplingScheduler
from .sensors.interface import SensorPort
from .simulator import ScriptedEngine, SimulatedSensor, simulated_steps
from .state import StateFile, StatePersister, StateStore

logger = logging.getLogger(__name__)


def _subscriptions(settings: Settings) -> List[Subscription]:
    return [Subscription(name, rate) for name, rate in settings.bsec.subscriptions.items()]


def _open_real_engine(settings: Settings) -> FusionEngine:
    from .engine.bsec import BsecEngine

    try:
        with open(settings.bsec.config, "rb") as f:
            blob = f.read()
    except OSError as e:
        raise ConfigurationError(f"cannot read BSEC configuration {settings.bsec.config}: {e}") from e

    classifier = ErrorClassifier.with_overrides(
        recoverable=settings.bsec.recoverable_codes,
        fatal=settings.bsec.fatal_codes,
    )
    try:
        engine = BsecEngine.open(settings.bsec.library, classifier)
    except OSError as e:
        raise ConfigurationError(f"cannot load BSEC library {settings.bsec.library}: {e}") from e
    try:
        engine.set_configuration(blob)
    except Exception:
        engine.close()
        raise
    return engine


def _open_real_sensor(settings: Settings) -> SensorPort:
    from .sensors.bme680_client import Bme680Client

    return Bme680Client(settings.sensor.device, settings.sensor.address)


class ExporterService:
    """
    Wires sensor, engine, persistence and the metrics bridge together.

    In "real" mode the BME680 and the BSEC library are opened; in "sim" mode
    a SimulatedSensor and a ScriptedEngine stand in for them. Explicit
    sensor/engine arguments take precedence over the mode.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        mode: str | None = None,
        *,
        sensor: SensorPort | None = None,
        engine: FusionEngine | None = None,
        state_store: StateStore | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.mode = (mode or MODE).lower()
        if self.mode not in ("real", "sim"):
            raise ConfigurationError(f"unknown mode {self.mode!r}, expected 'real' or 'sim'")
        self.settings = settings if settings is not None else load_settings()
        self.on_terminated: Optional[Callable[[], None]] = None
        self._closed = False

        subscriptions = _subscriptions(self.settings)
        active = [s.name for s in subscriptions if s.sample_rate is not SampleRate.DISABLED]
        if not active:
            logger.warning("No output is subscribed; the engine will never request a sample")

        self.metrics = ExporterMetrics()
        self.bridge = MetricsBridge(active)
        self.registry = create_registry(self.bridge, self.metrics)

        # only what is opened here is closed again if startup fails
        opened: List[Callable[[], None]] = []
        try:
            if engine is None:
                engine = (
                    _open_real_engine(self.settings)
                    if self.mode == "real"
                    else ScriptedEngine(simulated_steps(), echo_raw=True)
                )
                opened.append(engine.close)
            if sensor is None:
                sensor = (
                    _open_real_sensor(self.settings)
                    if self.mode == "real"
                    else SimulatedSensor(temperature=self.settings.sensor.initial_ambient_temp_celsius)
                )
                opened.append(sensor.close)
            engine.update_subscription(subscriptions)
        except Exception:
            for close in reversed(opened):
                close()
            raise

        sched = self.settings.scheduler
        persister = StatePersister(
            state_store or StateFile(self.settings.bsec.state_file),
            save_interval_s=sched.save_interval_s,
            save_every_cycles=sched.save_every_cycles,
            metrics=self.metrics,
        )
        self.scheduler = SamplingScheduler(
            sensor,
            engine,
            self.bridge,
            persister,
            heat_source_offset=self.settings.bsec.temperature_offset_celsius,
            initial_ambient_temperature=self.settings.sensor.initial_ambient_temp_celsius,
            backoff=Backoff(initial_s=sched.backoff_initial_s, max_s=sched.backoff_max_s),
            failure_alert_threshold=sched.failure_alert_threshold,
            clock=clock,
            metrics=self.metrics,
            on_terminated=self._scheduler_terminated,
        )
        logger.info(f"Exporter service ready in {self.mode} mode, subscribed to {len(active)} outputs")

    # lifecycle
    def start(self) -> None:
        self.scheduler.start()

    def stop(self) -> bool:
        """Stop sampling, then release the sensor and the engine. False if the thread hung."""
        stopped = self.scheduler.stop(self.settings.scheduler.shutdown_grace_s)
        if not stopped:
            # the sampling thread may still be inside a sensor or engine call
            logger.error("Leaving sensor and engine open, sampling thread still running")
            return False
        self.close()
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.scheduler.sensor.close()
        except Exception as e:
            logger.warning(f"Failed to close sensor: {e}")
        self.scheduler.engine.close()
        logger.info("Sensor and engine closed")

    def _scheduler_terminated(self, scheduler: SamplingScheduler) -> None:
        if scheduler.fatal_error is not None and self.on_terminated is not None:
            self.on_terminated()

    # read
    def latest(self) -> MetricsSnapshot:
        return self.bridge.read()

    def render_metrics(self) -> bytes:
        return render(self.registry)

    @property
    def healthy(self) -> bool:
        return (
            self.scheduler.running
            and self.scheduler.fatal_error is None
            and self.scheduler.state.consecutive_failures < self.scheduler.failure_alert_threshold
        )
