from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterator, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge
from prometheus_client.core import GaugeMetricFamily, Metric
from prometheus_client.exposition import CONTENT_TYPE_LATEST, generate_latest

from .engine.interface import EngineOutput

__all__ = [
    "CONTENT_TYPE_LATEST",
    "BridgeCollector",
    "ExporterMetrics",
    "GaugeSpec",
    "OUTPUT_GAUGES",
    "create_registry",
    "gauge_spec",
    "render",
]


@dataclass(frozen=True)
class GaugeSpec:
    name: str
    help: str
    unit: Optional[str] = None          # appended to the metric name
    unit_display: Optional[str] = None  # shown in the help text

    @property
    def metric_name(self) -> str:
        return f"{self.name}_{self.unit}" if self.unit else self.name

    @property
    def value_help(self) -> str:
        if self.unit:
            return f"{self.help} ({self.unit_display or self.unit})"
        return self.help


OUTPUT_GAUGES: Dict[str, GaugeSpec] = {
    "iaq": GaugeSpec("iaq", "Indoor-air-quality estimate [0-500]"),
    "static_iaq": GaugeSpec("static_iaq", "Unscaled indoor-air-quality estimate"),
    "co2_equivalent": GaugeSpec("co2_equivalent", "CO2 equivalent estimate", "ppm"),
    "breath_voc_equivalent": GaugeSpec(
        "breath_voc_equivalent", "Breath VOC concentration estimate", "ppm"
    ),
    "raw_temperature": GaugeSpec("raw_temperature", "Temperature sensor signal", "celsius", "°C"),
    "raw_pressure": GaugeSpec("raw_pressure", "Pressure sensor signal", "Pa"),
    "raw_humidity": GaugeSpec("raw_humidity", "Relative humidity sensor signal", "percent", "%"),
    "raw_gas": GaugeSpec("raw_gas", "Gas sensor signal", "ohm", "Ω"),
    "stabilization_status": GaugeSpec(
        "stabilization_status", "Gas sensor stabilization status (boolean)"
    ),
    "run_in_status": GaugeSpec("run_in_status", "Gas sensor run-in status (boolean)"),
    "sensor_heat_compensated_temperature": GaugeSpec(
        "temperature", "Sensor heat compensated temperature", "celsius", "°C"
    ),
    "sensor_heat_compensated_humidity": GaugeSpec(
        "humidity", "Sensor heat compensated humidity", "percent", "%"
    ),
    "debug_compensated_gas": GaugeSpec("debug_compensated_gas", "Reserved internal debug output"),
    "gas_percentage": GaugeSpec(
        "gas", "Percentage of min and max filtered gas value", "percent", "%"
    ),
}


def gauge_spec(name: str) -> GaugeSpec:
    return OUTPUT_GAUGES.get(name) or GaugeSpec(name, name.replace("_", " "))


class BridgeCollector:
    """
    Collector reading one MetricsBridge snapshot per scrape.

    Each available output yields a value gauge and a <name>_accuracy gauge;
    outputs the engine has not produced yet are left out.
    """

    def __init__(self, bridge) -> None:
        self.bridge = bridge

    def collect(self) -> Iterator[Metric]:
        snapshot = self.bridge.read()
        for output in snapshot.available():
            yield from self._families(output)

    @staticmethod
    def _families(output: EngineOutput) -> Iterator[Metric]:
        spec = gauge_spec(output.name)
        yield GaugeMetricFamily(spec.metric_name, spec.value_help, value=output.value)
        yield GaugeMetricFamily(
            f"{spec.name}_accuracy", f"{spec.help} (accuracy)", value=int(output.accuracy)
        )


class ExporterMetrics:
    """Counters and gauges describing the health of the sampling loop."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        r = self.registry
        self.cycles = Counter(
            "bsec_exporter_cycles", "Sampling cycles whose outputs were published", registry=r
        )
        self.sensor_read_errors = Counter(
            "bsec_exporter_sensor_read_errors", "Failed sensor reads", registry=r
        )
        self.engine_errors = Counter(
            "bsec_exporter_engine_errors",
            "Errors reported by the fusion engine",
            ["severity"],
            registry=r,
        )
        self.persistence_errors = Counter(
            "bsec_exporter_persistence_errors", "Failed engine state saves", registry=r
        )
        self.consecutive_sensor_failures = Gauge(
            "bsec_exporter_consecutive_sensor_failures",
            "Sensor reads failed in a row",
            registry=r,
        )
        self.sensor_degraded = Gauge(
            "bsec_exporter_sensor_degraded",
            "1 while consecutive sensor failures exceed the alert threshold",
            registry=r,
        )
        self.cold_start = Gauge(
            "bsec_exporter_cold_start",
            "1 if the engine started without usable persisted state",
            registry=r,
        )
        self.last_publish = Gauge(
            "bsec_exporter_last_publish_timestamp_seconds",
            "Unix time of the last published cycle",
            registry=r,
        )


def create_registry(bridge, metrics: ExporterMetrics | None = None) -> CollectorRegistry:
    """Registry exposing the bridge outputs, plus the loop metrics if given."""
    registry = metrics.registry if metrics is not None else CollectorRegistry()
    registry.register(BridgeCollector(bridge))
    return registry


def render(registry: CollectorRegistry) -> bytes:
    return generate_latest(registry)
