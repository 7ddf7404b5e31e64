# bsec_exporter/sensors/bme680_client.py
from __future__ import annotations
import logging

import bme680  # pip install bme680
import smbus2  # pip install smbus2

from ..errors import SensorReadError
from .interface import MeasurementSettings, RawSample, SensorPort

logger = logging.getLogger(__name__)

I2C_ADDRESSES = {
    "primary": bme680.I2C_ADDR_PRIMARY,
    "secondary": bme680.I2C_ADDR_SECONDARY,
}


class Bme680Client(SensorPort):
    """
    Driver for a single BME680 on a Linux I2C bus.

    Register access is done by the `bme680` package; this class only applies
    the measurement settings requested by the engine and runs one forced-mode
    measurement per read().
    """

    def __init__(self, device: str, address: str = "primary", read_attempts: int = 3) -> None:
        self.device = device
        self.address = address
        self.read_attempts = read_attempts
        try:
            self._bus = smbus2.SMBus(device)
            self._dev = bme680.BME680(i2c_addr=I2C_ADDRESSES[address], i2c_device=self._bus)
            self._dev.set_filter(bme680.FILTER_SIZE_0)
            self._dev.select_gas_heater_profile(0)
        except (OSError, RuntimeError) as e:
            raise SensorReadError(f"BME680 not available at {device} ({address}): {e}") from e
        logger.info(f"Bme680Client opened {device} at address {address}")

    def __repr__(self) -> str:
        return f"Bme680Client({self.device!r}, {self.address!r})"

    def close(self) -> None:
        self._bus.close()

    # --- low-level helpers -------------------------------------------------

    def _apply(self, settings: MeasurementSettings, ambient_temperature: float) -> None:
        dev = self._dev
        # oversampling values share the register encoding with bme680.OS_*
        dev.set_temperature_oversample(settings.temperature_oversampling)
        dev.set_pressure_oversample(settings.pressure_oversampling)
        dev.set_humidity_oversample(settings.humidity_oversampling)
        if settings.run_gas:
            # heater resistance is computed from the ambient temperature
            dev.ambient_temperature = int(round(ambient_temperature))
            dev.set_gas_status(bme680.ENABLE_GAS_MEAS)
            dev.set_gas_heater_temperature(settings.heater_temperature, nb_profile=0)
            dev.set_gas_heater_duration(settings.heating_duration_ms, nb_profile=0)
        else:
            dev.set_gas_status(bme680.DISABLE_GAS_MEAS)

    # --- public API --------------------------------------------------------

    def read(
        self,
        settings: MeasurementSettings,
        ambient_temperature: float,
        timestamp_ns: int,
    ) -> RawSample:
        try:
            self._apply(settings, ambient_temperature)
            for _ in range(self.read_attempts):
                # triggers a forced-mode measurement and polls for new data
                if self._dev.get_sensor_data():
                    break
            else:
                raise SensorReadError(f"no new data after {self.read_attempts} attempts")
        except OSError as e:
            raise SensorReadError(f"I2C error on {self.device}: {e}") from e

        data = self._dev.data
        gas = float(data.gas_resistance) if settings.run_gas else 0.0
        if settings.run_gas and not data.heat_stable:
            logger.debug("BME680 gas heater not stable for this measurement")
        return RawSample(
            temperature=float(data.temperature),
            humidity=float(data.humidity),
            pressure=float(data.pressure),
            gas_resistance=gas,
            timestamp_ns=timestamp_ns,
        )
