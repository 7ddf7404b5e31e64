from __future__ import annotations
import contextlib
import enum
import logging
import os
import struct
import tempfile
import time
import zlib
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from .engine.interface import EngineVersion, FusionEngine
from .errors import BsecExporterError, PersistenceError
from .metrics import ExporterMetrics

logger = logging.getLogger(__name__)

# magic, envelope version, engine version (4 bytes), blob length, crc32
_HEADER = struct.Struct(">4sB4BII")
_MAGIC = b"BSST"
_ENVELOPE_VERSION = 1


@dataclass(frozen=True)
class PersistedState:
    """Engine state blob plus the engine version that produced it. Never inspected."""

    blob: bytes
    version: EngineVersion = EngineVersion()


def encode_state(state: PersistedState) -> bytes:
    header = _HEADER.pack(
        _MAGIC,
        _ENVELOPE_VERSION,
        *state.version.as_tuple(),
        len(state.blob),
        zlib.crc32(state.blob),
    )
    return header + state.blob


def decode_state(data: bytes) -> PersistedState:
    """Inverse of encode_state(). Raises PersistenceError for anything but a complete file."""
    if len(data) < _HEADER.size:
        raise PersistenceError(f"state file truncated ({len(data)} bytes)")
    magic, envelope, v0, v1, v2, v3, length, crc = _HEADER.unpack_from(data)
    if magic != _MAGIC:
        raise PersistenceError("not a state file (bad magic)")
    if envelope != _ENVELOPE_VERSION:
        raise PersistenceError(f"unsupported state file version {envelope}")
    blob = data[_HEADER.size:]
    if len(blob) != length:
        raise PersistenceError(f"state blob length mismatch: expected {length}, got {len(blob)}")
    if zlib.crc32(blob) != crc:
        raise PersistenceError("state blob checksum mismatch")
    return PersistedState(blob=blob, version=EngineVersion(v0, v1, v2, v3))


class StateStore(Protocol):
    def save(self, state: PersistedState) -> None:
        ...

    def load(self) -> Optional[PersistedState]:
        ...


class StateFile:
    """
    Durable storage for the engine state.

    save() writes a temporary file next to the target, fsyncs it and renames
    it over the target, so a reader sees either the old or the new file,
    never a partial one.
    """

    def __init__(self, path: str) -> None:
        self.path = path

    def __repr__(self) -> str:
        return f"StateFile({self.path!r})"

    def save(self, state: PersistedState) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{os.path.basename(self.path)}.", suffix=".tmp", dir=directory
            )
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(encode_state(state))
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            except BaseException:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(tmp_path)
                raise
            self._fsync_dir(directory)
        except OSError as e:
            raise PersistenceError(f"Failed to save state to {self.path}: {e}") from e

    @staticmethod
    def _fsync_dir(directory: str) -> None:
        # persists the rename itself; not supported on every platform
        try:
            dir_fd = os.open(directory, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            pass
        finally:
            os.close(dir_fd)

    def load(self) -> Optional[PersistedState]:
        """None if there is no state file; PersistenceError if it is unreadable."""
        try:
            with open(self.path, "rb") as f:
                data = f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"Failed to read state from {self.path}: {e}") from e
        return decode_state(data)


class RestoreOutcome(str, enum.Enum):
    RESTORED = "restored"
    COLD_START = "cold_start"                        # no state file
    COLD_START_UNREADABLE = "cold_start_unreadable"  # file present but unusable


class StatePersister:
    """
    Decides when the engine state is written. Only ever called from the
    scheduler thread, so there is never more than one writer.
    """

    def __init__(
        self,
        store: StateStore,
        save_interval_s: float = 300.0,
        save_every_cycles: int = 0,
        clock: Callable[[], float] = time.monotonic,
        metrics: ExporterMetrics | None = None,
    ) -> None:
        self.store = store
        self.save_interval_s = save_interval_s
        self.save_every_cycles = save_every_cycles
        self._clock = clock
        self._metrics = metrics or ExporterMetrics()
        self._last_save = clock()
        self._cycles_since_save = 0
        self.saves = 0

    def restore(self, engine: FusionEngine) -> RestoreOutcome:
        self._last_save = self._clock()
        try:
            state = self.store.load()
        except PersistenceError as e:
            logger.warning(f"Ignoring unreadable engine state in {self.store!r}: {e}")
            return self._cold_start(RestoreOutcome.COLD_START_UNREADABLE)

        if state is None:
            logger.warning(
                f"No engine state found in {self.store!r}; starting uncalibrated"
            )
            return self._cold_start(RestoreOutcome.COLD_START)

        if state.version != engine.version:
            logger.warning(
                f"Engine state was written by version {state.version}, "
                f"running {engine.version}; starting uncalibrated"
            )
            return self._cold_start(RestoreOutcome.COLD_START_UNREADABLE)

        try:
            engine.set_state(state.blob)
        except BsecExporterError as e:
            logger.warning(f"Engine rejected persisted state: {e}")
            return self._cold_start(RestoreOutcome.COLD_START_UNREADABLE)

        logger.info(f"Restored engine state ({len(state.blob)} bytes) from {self.store!r}")
        self._metrics.cold_start.set(0)
        return RestoreOutcome.RESTORED

    def _cold_start(self, outcome: RestoreOutcome) -> RestoreOutcome:
        self._metrics.cold_start.set(1)
        return outcome

    def due(self) -> bool:
        if self.save_every_cycles and self._cycles_since_save >= self.save_every_cycles:
            return True
        return self._clock() - self._last_save >= self.save_interval_s

    def maybe_save(self, engine: FusionEngine) -> bool:
        """Called once per successful cycle."""
        self._cycles_since_save += 1
        if not self.due():
            return False
        return self.save_now(engine)

    def save_now(self, engine: FusionEngine) -> bool:
        # reset the timers even on failure so a broken disk is not hammered every cycle
        self._last_save = self._clock()
        self._cycles_since_save = 0
        try:
            state = PersistedState(blob=engine.get_state(), version=engine.version)
            self.store.save(state)
        except BsecExporterError as e:
            logger.error(f"Failed to persist engine state: {e}")
            self._metrics.persistence_errors.inc()
            return False
        self.saves += 1
        logger.debug(f"Persisted engine state ({len(state.blob)} bytes)")
        return True

    def final_save(self, engine: FusionEngine) -> bool:
        logger.info("Saving engine state before shutdown")
        return self.save_now(engine)
