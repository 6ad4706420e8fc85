"""Per-device signal state: bounded RSSI history and its sliding-window mean."""

from dataclasses import dataclass, replace
from typing import Optional, Tuple

# Default number of raw readings kept per device for smoothing
HISTORY_SIZE = 5


def _mean(values: Tuple[int, ...]) -> float:
    return sum(values) / len(values)


@dataclass(frozen=True)
class DeviceRecord:
    """One uniquely addressed peer and its smoothed signal history.

    Records are immutable; every reading produces a new record via
    :meth:`apply_reading`.  ``history`` is oldest-first and never empty.
    """

    address: str
    name: Optional[str]
    current_reading: int
    history: Tuple[int, ...]
    smoothed_value: float

    @classmethod
    def create(cls, address: str, name: Optional[str],
               initial_reading: int) -> "DeviceRecord":
        """Seed a record from its first observation."""
        return cls(
            address=address,
            name=name,
            current_reading=initial_reading,
            history=(initial_reading,),
            smoothed_value=float(initial_reading),
        )

    def apply_reading(self, raw_value: int,
                      history_size: int = HISTORY_SIZE) -> "DeviceRecord":
        """Return a copy with *raw_value* appended to the sliding window.

        The oldest readings are dropped once the window exceeds
        *history_size*; the mean covers only the retained window.  Any
        integer is accepted, including out-of-range sentinels like 127.
        """
        if history_size < 1:
            raise ValueError(
                f"history_size must be at least 1, got {history_size}")
        history = (self.history + (raw_value,))[-history_size:]
        return replace(
            self,
            current_reading=raw_value,
            history=history,
            smoothed_value=_mean(history),
        )

    def with_name(self, name: Optional[str]) -> "DeviceRecord":
        if name == self.name:
            return self
        return replace(self, name=name)

    @property
    def samples(self) -> int:
        return len(self.history)

    def as_dict(self) -> dict:
        return {
            "address": self.address,
            "name": self.name,
            "rssi": self.current_reading,
            "smoothed_rssi": self.smoothed_value,
            "history": list(self.history),
        }
