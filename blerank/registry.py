"""Device registry: applies observations and produces ranked snapshots."""

import logging
from typing import Dict, Optional, Tuple

from blerank.device import HISTORY_SIZE, DeviceRecord

_LOGGER = logging.getLogger(__name__)

Snapshot = Tuple[DeviceRecord, ...]


def rank_key(record: DeviceRecord) -> Tuple[float, str]:
    """Sort key: strongest smoothed signal first, then address ascending.

    Addresses are unique, so the key is a strict total order and the result
    does not depend on insertion order or sort stability.
    """
    return (-record.smoothed_value, record.address)


def rank(records) -> Snapshot:
    return tuple(sorted(records, key=rank_key))


class DeviceRegistry:
    """All device records of one scanning session, keyed by address.

    The registry is the only writer of records.  Consumers only ever see
    immutable snapshots returned by :meth:`ingest` and :meth:`snapshot`.
    """

    def __init__(self, history_size: int = HISTORY_SIZE,
                 keep_known_name: bool = True):
        if history_size < 1:
            raise ValueError(
                f"history_size must be at least 1, got {history_size}")
        self.history_size = history_size
        # When True an observation without a name never clears a known name
        self.keep_known_name = keep_known_name
        self._devices: Dict[str, DeviceRecord] = {}

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, address: str) -> bool:
        return address in self._devices

    def get(self, address: str) -> Optional[DeviceRecord]:
        return self._devices.get(address)

    def snapshot(self) -> Snapshot:
        """Return the current canonical ordering of all records."""
        return rank(self._devices.values())

    def ingest(self, address: str, name: Optional[str],
               raw_value: int) -> Tuple[Snapshot, DeviceRecord]:
        """Apply one observation and return ``(snapshot, changed_record)``."""
        if not address:
            raise ValueError("device address must be a non-empty string")

        existing = self._devices.get(address)
        if existing is None:
            record = DeviceRecord.create(address, name, raw_value)
            _LOGGER.debug("New device: %s (%s), RSSI: %d",
                          address, name or "no name", raw_value)
        else:
            record = existing.apply_reading(raw_value, self.history_size)
            if name is not None or not self.keep_known_name:
                record = record.with_name(name)
            _LOGGER.debug("Updated device: %s, RSSI: %d, smoothed: %.2f "
                          "over %d readings", address, raw_value,
                          record.smoothed_value, record.samples)
        self._devices[address] = record
        return self.snapshot(), record

    def reset(self):
        """Forget every record; used when a new scan starts."""
        self._devices.clear()
