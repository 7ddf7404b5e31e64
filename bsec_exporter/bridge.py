from __future__ import annotations
import logging
import threading
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Tuple

from .engine.interface import EngineOutput

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetricsSnapshot:
    """
    Latest output per subscribed name at one instant.

    A value of None means the engine has not produced that output yet
    (e.g. during warm-up). Snapshots are never modified after creation.
    """

    outputs: Mapping[str, Optional[EngineOutput]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    sequence: int = 0
    published_at: float | None = None

    def get(self, name: str) -> Optional[EngineOutput]:
        return self.outputs.get(name)

    def available(self) -> Tuple[EngineOutput, ...]:
        return tuple(o for o in self.outputs.values() if o is not None)

    def missing(self) -> Tuple[str, ...]:
        return tuple(name for name, o in self.outputs.items() if o is None)


class MetricsBridge:
    """
    Hands the latest engine outputs from the sampling thread to scrape
    handlers.

    publish() builds a complete new snapshot and swaps the reference; read()
    returns whatever snapshot is current. The lock only guards the swap, so
    readers and the writer never wait on each other for longer than that.
    """

    def __init__(self, subscribed: Iterable[str]) -> None:
        names = tuple(dict.fromkeys(subscribed))
        self._lock = threading.Lock()
        self._snapshot = MetricsSnapshot(outputs=MappingProxyType({n: None for n in names}))

    @property
    def subscribed(self) -> Tuple[str, ...]:
        return tuple(self.read().outputs.keys())

    def read(self) -> MetricsSnapshot:
        with self._lock:
            return self._snapshot

    def publish(self, outputs: Iterable[EngineOutput]) -> MetricsSnapshot:
        # single writer: only the scheduler thread calls publish()
        current = self.read()
        merged = dict(current.outputs)
        for output in outputs:
            if output.name not in merged:
                logger.debug(f"Ignoring output {output.name!r}: not subscribed")
                continue
            merged[output.name] = output

        snapshot = MetricsSnapshot(
            outputs=MappingProxyType(merged),
            sequence=current.sequence + 1,
            published_at=time.time(),
        )
        with self._lock:
            self._snapshot = snapshot
        return snapshot
