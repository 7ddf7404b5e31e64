# bsec_exporter/sensors/interface.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class RawSample:
    temperature: float      # °C
    humidity: float         # %RH
    pressure: float         # hPa
    gas_resistance: float   # Ω
    timestamp_ns: int       # engine clock, same value passed to measurement_settings()


@dataclass(frozen=True)
class MeasurementSettings:
    """
    What the engine wants the sensor to do in the current cycle.

    Oversampling values use the BME680 register encoding
    (0 = skipped, 1 = 1x, 2 = 2x, 3 = 4x, 4 = 8x, 5 = 16x).
    """

    next_call_ns: int
    trigger_measurement: bool = True
    process_data: int = 0
    heater_temperature: int = 320   # °C
    heating_duration_ms: int = 150
    run_gas: bool = True
    temperature_oversampling: int = 2
    pressure_oversampling: int = 1
    humidity_oversampling: int = 1


class SensorPort(Protocol):
    """
    Minimal interface a sensor driver must implement.
    One instance owns one physical device for the lifetime of the process.
    """

    def read(
        self,
        settings: MeasurementSettings,
        ambient_temperature: float,
        timestamp_ns: int,
    ) -> RawSample:
        """
        Perform one forced-mode measurement using `settings` and return it.

        `ambient_temperature` is the last known ambient estimate; drivers use
        it to compute the gas heater resistance.

        Raises SensorReadError on transient bus or device failures.
        """
        ...

    def close(self) -> None:
        ...
