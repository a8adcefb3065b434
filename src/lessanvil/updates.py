"""Progress updates sent from a running compaction to its consumer."""

import queue
import threading
from dataclasses import asdict, dataclass
from pathlib import Path

from .errors import RegionProcessingError


@dataclass(frozen=True)
class RegionFile:
    """A region file on disk and the region coordinates parsed from its name."""

    path: Path
    x: int
    z: int


@dataclass(frozen=True)
class RegionResult:
    """Outcome of a successfully processed region file."""

    x: int
    z: int
    total_chunks: int
    deleted_chunks: int


@dataclass(frozen=True)
class Report:
    """Summary of a whole run."""

    time_taken: float
    total_freed_space: int
    total_regions: int
    total_chunks: int
    total_deleted_chunks: int
    failed_regions: int = 0
    cancelled: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Starting:
    """Sent once before any region is processed."""

    total_files: int


@dataclass(frozen=True)
class ProcessedRegion:
    """Sent once per region file, carrying either its result or its error."""

    region: RegionFile
    result: RegionResult | None = None
    error: RegionProcessingError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class Finished:
    """Sent last, only when the run was not cancelled."""

    report: Report


_END = object()


class UpdateStream:
    """
    Unbounded single-consumer channel of run updates.

    The producer side calls :meth:`send` and finally :meth:`end`. The consumer
    iterates the stream or calls :meth:`get`. Calling :meth:`close` from the
    consumer side disconnects it: further sends are refused, which the engine
    treats as a request to stop starting new region files.
    """

    def __init__(self):
        self._queue: queue.SimpleQueue = queue.SimpleQueue()
        self._closed = threading.Event()
        self._ended = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def ended(self) -> bool:
        return self._ended.is_set()

    def send(self, update) -> bool:
        """Queue an update. Returns False if the consumer has disconnected."""
        if self._closed.is_set():
            return False
        self._queue.put(update)
        return True

    def end(self) -> None:
        """Signal that no more updates will be sent."""
        if not self._ended.is_set():
            self._ended.set()
            self._queue.put(_END)

    def close(self) -> None:
        """Disconnect the consumer."""
        self._closed.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the producer has ended. Returns False on timeout."""
        return self._ended.wait(timeout)

    def get(self, timeout: float | None = None):
        """
        Return the next update, or None once the producer has ended.

        Raises:
            queue.Empty: If nothing arrives within ``timeout`` seconds
        """
        update = self._queue.get(timeout=timeout)
        if update is _END:
            # Keep the marker so later calls also see the end
            self._queue.put(_END)
            return None
        return update

    def __iter__(self):
        while True:
            update = self.get()
            if update is None:
                return
            yield update
            if isinstance(update, Finished):
                return
