# bsec_exporter/engine/bsec.py
"""
ctypes binding to the Bosch BSEC library (libalgobsec.so).

BSEC is distributed as a closed-source static/shared library with a small C
API. This module wraps the calls needed by the sampling loop:

  bsec_init, bsec_get_version, bsec_set_configuration,
  bsec_update_subscription, bsec_sensor_control, bsec_do_steps,
  bsec_get_state, bsec_set_state

Structure layouts follow bsec_datatypes.h of BSEC 1.4.x.
"""
from __future__ import annotations
import ctypes
import ctypes.util
import logging
import threading
from typing import Dict, List, Sequence

from ..errors import EngineInUseError, EngineProcessError
from ..sensors.interface import MeasurementSettings, RawSample
from .classifier import ErrorClassifier, Severity, code_name
from .interface import Accuracy, EngineOutput, EngineResult, EngineVersion, Subscription

logger = logging.getLogger(__name__)

BSEC_MAX_PHYSICAL_SENSOR = 8
BSEC_NUMBER_OUTPUTS = 14
BSEC_MAX_PROPERTY_BLOB_SIZE = 454
BSEC_MAX_STATE_BLOB_SIZE = 139
BSEC_MAX_WORKBUFFER_SIZE = 2048

# Physical inputs (bsec_physical_sensor_t)
INPUT_PRESSURE = 1
INPUT_HUMIDITY = 2
INPUT_TEMPERATURE = 3
INPUT_GASRESISTOR = 5
INPUT_HEATSOURCE = 14

# Virtual outputs (bsec_virtual_sensor_t)
OUTPUT_IDS: Dict[str, int] = {
    "iaq": 1,
    "static_iaq": 2,
    "co2_equivalent": 3,
    "breath_voc_equivalent": 4,
    "raw_temperature": 6,
    "raw_pressure": 7,
    "raw_humidity": 8,
    "raw_gas": 9,
    "stabilization_status": 12,
    "run_in_status": 13,
    "sensor_heat_compensated_temperature": 14,
    "sensor_heat_compensated_humidity": 15,
    "debug_compensated_gas": 18,
    "gas_percentage": 21,
}
OUTPUT_NAMES: Dict[int, str] = {v: k for k, v in OUTPUT_IDS.items()}


class BsecVersion(ctypes.Structure):
    _fields_ = [
        ("major", ctypes.c_uint8),
        ("minor", ctypes.c_uint8),
        ("major_bugfix", ctypes.c_uint8),
        ("minor_bugfix", ctypes.c_uint8),
    ]


class BsecInput(ctypes.Structure):
    _fields_ = [
        ("time_stamp", ctypes.c_int64),
        ("signal", ctypes.c_float),
        ("signal_dimensions", ctypes.c_uint8),
        ("sensor_id", ctypes.c_uint8),
    ]


class BsecOutput(ctypes.Structure):
    _fields_ = [
        ("time_stamp", ctypes.c_int64),
        ("signal", ctypes.c_float),
        ("signal_dimensions", ctypes.c_uint8),
        ("sensor_id", ctypes.c_uint8),
        ("accuracy", ctypes.c_uint8),
    ]


class BsecSensorConfiguration(ctypes.Structure):
    _fields_ = [
        ("sample_rate", ctypes.c_float),
        ("sensor_id", ctypes.c_uint8),
    ]


class BsecBmeSettings(ctypes.Structure):
    _fields_ = [
        ("next_call", ctypes.c_int64),
        ("process_data", ctypes.c_uint32),
        ("heater_temperature", ctypes.c_uint16),
        ("heating_duration", ctypes.c_uint16),
        ("run_gas", ctypes.c_uint8),
        ("pressure_oversampling", ctypes.c_uint8),
        ("temperature_oversampling", ctypes.c_uint8),
        ("humidity_oversampling", ctypes.c_uint8),
        ("trigger_measurement", ctypes.c_uint8),
    ]


def process_flag(input_id: int) -> int:
    """Bit in bsec_bme_settings_t.process_data for a physical input."""
    return 1 << (input_id - 1)


def strip_config_length_prefix(data: bytes) -> bytes:
    """
    The bsec_iaq.config files shipped with BSEC start with a 4 byte
    little-endian length of the remaining blob. bsec_set_configuration()
    wants the blob without it.
    """
    if len(data) >= 4 and int.from_bytes(data[:4], "little") == len(data) - 4:
        return data[4:]
    return data


def load_library(path: str) -> ctypes.CDLL:
    """Open libalgobsec and declare the signatures used by BsecEngine."""
    resolved = path
    if "/" not in path:
        resolved = ctypes.util.find_library(path.removeprefix("lib").split(".so")[0]) or path
    lib = ctypes.CDLL(resolved)

    u8p = ctypes.POINTER(ctypes.c_uint8)
    lib.bsec_init.argtypes = []
    lib.bsec_init.restype = ctypes.c_int
    lib.bsec_get_version.argtypes = [ctypes.POINTER(BsecVersion)]
    lib.bsec_get_version.restype = ctypes.c_int
    lib.bsec_set_configuration.argtypes = [u8p, ctypes.c_uint32, u8p, ctypes.c_uint32]
    lib.bsec_set_configuration.restype = ctypes.c_int
    lib.bsec_update_subscription.argtypes = [
        ctypes.POINTER(BsecSensorConfiguration),
        ctypes.c_uint8,
        ctypes.POINTER(BsecSensorConfiguration),
        u8p,
    ]
    lib.bsec_update_subscription.restype = ctypes.c_int
    lib.bsec_sensor_control.argtypes = [ctypes.c_int64, ctypes.POINTER(BsecBmeSettings)]
    lib.bsec_sensor_control.restype = ctypes.c_int
    lib.bsec_do_steps.argtypes = [
        ctypes.POINTER(BsecInput),
        ctypes.c_uint8,
        ctypes.POINTER(BsecOutput),
        u8p,
    ]
    lib.bsec_do_steps.restype = ctypes.c_int
    lib.bsec_get_state.argtypes = [
        ctypes.c_uint8,
        u8p,
        ctypes.c_uint32,
        u8p,
        ctypes.c_uint32,
        ctypes.POINTER(ctypes.c_uint32),
    ]
    lib.bsec_get_state.restype = ctypes.c_int
    lib.bsec_set_state.argtypes = [u8p, ctypes.c_uint32, u8p, ctypes.c_uint32]
    lib.bsec_set_state.restype = ctypes.c_int
    logger.info(f"Loaded BSEC library from {resolved}")
    return lib


_in_use_lock = threading.Lock()
_in_use = False


class BsecEngine:
    """
    FusionEngine backed by the real BSEC library.

    BSEC keeps its state in library globals, so only one BsecEngine may be
    open at a time; a second one raises EngineInUseError until close().
    """

    def __init__(self, lib, classifier: ErrorClassifier | None = None) -> None:
        global _in_use
        with _in_use_lock:
            if _in_use:
                raise EngineInUseError()
            _in_use = True

        self._lib = lib
        self._classifier = classifier or ErrorClassifier()
        self._next_call_ns = 0
        self._process_data = 0
        self._work_buffer = (ctypes.c_uint8 * BSEC_MAX_WORKBUFFER_SIZE)()
        try:
            self._check(self._lib.bsec_init(), "bsec_init")
            raw_version = BsecVersion()
            self._check(self._lib.bsec_get_version(ctypes.byref(raw_version)), "bsec_get_version")
        except Exception:
            self.close()
            raise
        self.version = EngineVersion(
            raw_version.major,
            raw_version.minor,
            raw_version.major_bugfix,
            raw_version.minor_bugfix,
        )
        logger.info(f"BSEC {self.version} initialized")

    @classmethod
    def open(cls, library_path: str, classifier: ErrorClassifier | None = None) -> "BsecEngine":
        return cls(load_library(library_path), classifier)

    def close(self) -> None:
        global _in_use
        with _in_use_lock:
            _in_use = False

    # --- low-level helpers -------------------------------------------------

    def _check(self, code: int, call: str) -> None:
        severity = self._classifier.classify(code)
        if severity is Severity.OK:
            return
        if severity is Severity.WARNING:
            logger.warning(f"{call} returned warning {code_name(code)}")
            return
        raise EngineProcessError(
            f"{call} failed: {code_name(code)}",
            code=code,
            fatal=severity is Severity.FATAL,
        )

    @staticmethod
    def _buffer(data: bytes):
        return (ctypes.c_uint8 * max(len(data), 1)).from_buffer_copy(data or b"\x00")

    # --- configuration -----------------------------------------------------

    def set_configuration(self, blob: bytes) -> None:
        blob = strip_config_length_prefix(blob)
        self._check(
            self._lib.bsec_set_configuration(
                self._buffer(blob), len(blob), self._work_buffer, len(self._work_buffer)
            ),
            "bsec_set_configuration",
        )

    def update_subscription(self, subscriptions: Sequence[Subscription]) -> None:
        requested = (BsecSensorConfiguration * max(len(subscriptions), 1))()
        for i, sub in enumerate(subscriptions):
            requested[i].sensor_id = OUTPUT_IDS[sub.name]
            requested[i].sample_rate = sub.sample_rate.hz
        required = (BsecSensorConfiguration * BSEC_MAX_PHYSICAL_SENSOR)()
        n_required = ctypes.c_uint8(BSEC_MAX_PHYSICAL_SENSOR)
        self._check(
            self._lib.bsec_update_subscription(
                requested, len(subscriptions), required, ctypes.byref(n_required)
            ),
            "bsec_update_subscription",
        )
        subscribed = ", ".join(f"{s.name}={s.sample_rate.value}" for s in subscriptions)
        logger.info(f"BSEC subscribed to {subscribed}")

    # --- sampling ----------------------------------------------------------

    @property
    def next_call_ns(self) -> int:
        return self._next_call_ns

    def measurement_settings(self, timestamp_ns: int) -> MeasurementSettings:
        raw = BsecBmeSettings()
        self._check(
            self._lib.bsec_sensor_control(timestamp_ns, ctypes.byref(raw)),
            "bsec_sensor_control",
        )
        self._next_call_ns = raw.next_call
        self._process_data = raw.process_data
        return MeasurementSettings(
            next_call_ns=raw.next_call,
            trigger_measurement=bool(raw.trigger_measurement),
            process_data=raw.process_data,
            heater_temperature=raw.heater_temperature,
            heating_duration_ms=raw.heating_duration,
            run_gas=bool(raw.run_gas),
            temperature_oversampling=raw.temperature_oversampling,
            pressure_oversampling=raw.pressure_oversampling,
            humidity_oversampling=raw.humidity_oversampling,
        )

    def _inputs(self, sample: RawSample, heat_source_offset: float) -> List[tuple[int, float]]:
        wanted = self._process_data
        inputs: List[tuple[int, float]] = []
        if wanted & process_flag(INPUT_TEMPERATURE):
            inputs.append((INPUT_TEMPERATURE, sample.temperature))
            inputs.append((INPUT_HEATSOURCE, heat_source_offset))
        if wanted & process_flag(INPUT_HUMIDITY):
            inputs.append((INPUT_HUMIDITY, sample.humidity))
        if wanted & process_flag(INPUT_PRESSURE):
            # BSEC expects Pa
            inputs.append((INPUT_PRESSURE, sample.pressure * 100.0))
        if wanted & process_flag(INPUT_GASRESISTOR):
            inputs.append((INPUT_GASRESISTOR, sample.gas_resistance))
        return inputs

    def process(self, sample: RawSample, heat_source_offset: float) -> EngineResult:
        inputs = self._inputs(sample, heat_source_offset)
        if not inputs:
            return EngineResult(outputs=(), next_call_ns=self._next_call_ns)

        raw_inputs = (BsecInput * len(inputs))()
        for i, (sensor_id, signal) in enumerate(inputs):
            raw_inputs[i].time_stamp = sample.timestamp_ns
            raw_inputs[i].signal = signal
            raw_inputs[i].sensor_id = sensor_id
        raw_outputs = (BsecOutput * BSEC_NUMBER_OUTPUTS)()
        n_outputs = ctypes.c_uint8(BSEC_NUMBER_OUTPUTS)
        self._check(
            self._lib.bsec_do_steps(raw_inputs, len(inputs), raw_outputs, ctypes.byref(n_outputs)),
            "bsec_do_steps",
        )

        outputs: List[EngineOutput] = []
        for raw in raw_outputs[: n_outputs.value]:
            name = OUTPUT_NAMES.get(raw.sensor_id)
            if name is None:
                logger.debug(f"Ignoring unknown BSEC output id {raw.sensor_id}")
                continue
            outputs.append(
                EngineOutput(
                    name=name,
                    value=float(raw.signal),
                    accuracy=Accuracy(min(raw.accuracy, Accuracy.HIGH)),
                    timestamp_ns=raw.time_stamp,
                )
            )
        return EngineResult(outputs=tuple(outputs), next_call_ns=self._next_call_ns)

    # --- state -------------------------------------------------------------

    def get_state(self) -> bytes:
        state = (ctypes.c_uint8 * BSEC_MAX_PROPERTY_BLOB_SIZE)()
        n_state = ctypes.c_uint32(0)
        self._check(
            self._lib.bsec_get_state(
                0,
                state,
                len(state),
                self._work_buffer,
                len(self._work_buffer),
                ctypes.byref(n_state),
            ),
            "bsec_get_state",
        )
        return bytes(state[: n_state.value])

    def set_state(self, blob: bytes) -> None:
        self._check(
            self._lib.bsec_set_state(
                self._buffer(blob), len(blob), self._work_buffer, len(self._work_buffer)
            ),
            "bsec_set_state",
        )
