from __future__ import annotations
from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, conint, field_validator

from .engine.interface import KNOWN_OUTPUTS, SampleRate

NonNegativeInt = conint(ge=0)
AtLeastOneInt = conint(ge=1)

# Subscribed by default: everything but iaq, static_iaq and debug_compensated_gas.
DEFAULT_SUBSCRIPTIONS: Dict[str, SampleRate] = {
    name: SampleRate.LP
    for name in (
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
        "gas_percentage",
    )
}


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SensorConfig(_Section):
    """[sensor] section: the BME680 on the I2C bus."""
    device: str = Field(default="/dev/i2c-1", description="Path to the I2C device")
    address: Literal["primary", "secondary"] = Field(default="primary", description="I2C address selector")
    initial_ambient_temp_celsius: float = Field(
        default=20.0, description="Ambient temperature assumed for the first measurement cycle"
    )


class BsecConfig(_Section):
    """[bsec] section: the fusion engine."""
    library: str = Field(default="libalgobsec.so", description="Path or name of the BSEC shared library")
    config: str = Field(default="/etc/bsec-exporter/bsec.conf", description="BSEC configuration blob")
    temperature_offset_celsius: float = Field(
        default=0.0, description="Heat source offset of the sensor relative to ambient"
    )
    state_file: str = Field(default="/var/lib/bsec-exporter/bsec-state.bin")
    subscriptions: Dict[str, SampleRate] = Field(default_factory=lambda: dict(DEFAULT_SUBSCRIPTIONS))
    fatal_codes: List[int] = Field(default_factory=list, description="Engine codes to treat as fatal")
    recoverable_codes: List[int] = Field(default_factory=list, description="Engine codes to treat as recoverable")

    @field_validator("subscriptions")
    @classmethod
    def _known_outputs(cls, v: Dict[str, SampleRate]) -> Dict[str, SampleRate]:
        unknown = sorted(set(v) - set(KNOWN_OUTPUTS))
        if unknown:
            raise ValueError(
                f"unknown output(s) {', '.join(unknown)}; expected one of {', '.join(KNOWN_OUTPUTS)}"
            )
        return v


class SchedulerConfig(_Section):
    """[scheduler] section: loop and persistence policy."""
    save_interval_s: PositiveFloat = 300.0
    save_every_cycles: NonNegativeInt = 0
    backoff_initial_s: PositiveFloat = 1.0
    backoff_max_s: PositiveFloat = 60.0
    failure_alert_threshold: AtLeastOneInt = 5
    shutdown_grace_s: PositiveFloat = 5.0


class ExporterConfig(_Section):
    """[exporter] section: where /metrics is served."""
    listen_addrs: List[str] = Field(default_factory=lambda: ["localhost:3953"])

    @field_validator("listen_addrs")
    @classmethod
    def _parse_addrs(cls, v: List[str]) -> List[str]:
        from .config import parse_listen_addr

        if not v:
            raise ValueError("at least one listen address is required")
        for addr in v:
            parse_listen_addr(addr)
        return v


class Settings(_Section):
    sensor: SensorConfig = Field(default_factory=SensorConfig)
    bsec: BsecConfig = Field(default_factory=BsecConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    exporter: ExporterConfig = Field(default_factory=ExporterConfig)


# --- API models ---------------------------------------------------------------

class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(description="'ok' while sampling, 'degraded' otherwise")
    mode: str = Field(description="Current operation mode: 'real' (BME680 + BSEC) or 'sim'")
    running: bool = Field(description="Whether the sampling loop is running")
    cycles: int = Field(description="Published sampling cycles since startup")
    consecutive_sensor_failures: int = Field(description="Sensor reads failed in a row")
    restore: Optional[str] = Field(default=None, description="Outcome of restoring the engine state")


class OutputResponse(BaseModel):
    name: str
    available: bool = Field(description="False until the engine has produced this output")
    value: Optional[float] = None
    accuracy: Optional[int] = Field(default=None, description="0 unreliable .. 3 high")
    timestamp_ns: Optional[int] = None
