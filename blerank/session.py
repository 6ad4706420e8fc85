"""One scanning session: observation inbox plus the atomic ingest cycle."""

import logging
import queue
from dataclasses import dataclass
from typing import List, NamedTuple, Optional

from blerank.anchor import ScrollAnchor, ViewState
from blerank.device import HISTORY_SIZE, DeviceRecord
from blerank.registry import DeviceRegistry, Snapshot

_LOGGER = logging.getLogger(__name__)


class Observation(NamedTuple):
    address: Optional[str]
    name: Optional[str]
    rssi: int


@dataclass(frozen=True)
class CycleResult:
    snapshot: Snapshot
    changed: DeviceRecord
    scroll_to_top: bool = False

    @property
    def rank(self) -> int:
        """Zero-based position of the changed record in the snapshot."""
        for i, record in enumerate(self.snapshot):
            if record.address == self.changed.address:
                return i
        return -1


class ObservationInbox:
    """Thread-safe FIFO between radio callbacks and the processing loop."""

    def __init__(self):
        self._queue: "queue.SimpleQueue[Observation]" = queue.SimpleQueue()

    def put(self, observation: Observation):
        self._queue.put(observation)

    def drain(self) -> List[Observation]:
        """Return every pending observation in arrival order."""
        pending = []
        while True:
            try:
                pending.append(self._queue.get_nowait())
            except queue.Empty:
                return pending

    def empty(self) -> bool:
        return self._queue.empty()


class ScanSession:
    """Owns the registry and the scroll anchor for one scan.

    All mutation goes through :meth:`process`, which must be called from a
    single thread; observations from other threads go through an
    :class:`ObservationInbox` first.
    """

    def __init__(self, history_size: int = HISTORY_SIZE,
                 keep_known_name: bool = True):
        self.registry = DeviceRegistry(history_size=history_size,
                                       keep_known_name=keep_known_name)
        self.anchor = ScrollAnchor()

    def snapshot(self) -> Snapshot:
        return self.registry.snapshot()

    def process(self, observation: Observation,
                view: Optional[ViewState] = None) -> Optional[CycleResult]:
        """Run capture, ingest and reconciliation for one observation.

        Observations without an address are ignored and yield None.
        """
        self.anchor.clear()
        if not observation.address:
            _LOGGER.debug("Ignoring observation without address (rssi %s)",
                          observation.rssi)
            return None

        self.anchor.capture(view or ViewState.hidden())
        snapshot, changed = self.registry.ingest(
            observation.address, observation.name, observation.rssi)
        scroll_to_top = self.anchor.reconcile(snapshot)
        return CycleResult(snapshot, changed, scroll_to_top)

    def reset(self):
        self.registry.reset()
        self.anchor.clear()
