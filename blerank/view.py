"""Presentation helpers shared by the terminal and browser lists."""

from typing import List, Optional, Sequence

from blerank.anchor import ViewState
from blerank.device import DeviceRecord

UNKNOWN_NAME = "Unknown Device"

# Signal range mapped onto a bar: -100 dBm is empty, -50 dBm is full
BAR_MIN_RSSI = -100.0
BAR_MAX_RSSI = -50.0


def display_name(name: Optional[str]) -> str:
    return name if name else UNKNOWN_NAME


def format_rssi(smoothed: float) -> str:
    return f"{smoothed:.0f} dBm"


def signal_fraction(smoothed: float) -> float:
    """Map a smoothed RSSI onto 0.0 (weak) .. 1.0 (strong)."""
    clamped = min(max(smoothed, BAR_MIN_RSSI), BAR_MAX_RSSI)
    return (clamped - BAR_MIN_RSSI) / (BAR_MAX_RSSI - BAR_MIN_RSSI)


def signal_bar(smoothed: float, width: int = 10) -> str:
    filled = round(signal_fraction(smoothed) * width)
    return "#" * filled + "." * (width - filled)


def device_payload(record: DeviceRecord, rank: int) -> dict:
    """Row data for one record, as sent to the browser and written out."""
    return {
        "rank": rank,
        "address": record.address,
        "name": display_name(record.name),
        "rssi": record.current_reading,
        "smoothed_rssi": round(record.smoothed_value, 2),
        "samples": record.samples,
        "signal": round(signal_fraction(record.smoothed_value), 3),
    }


class ListViewport:
    """Scroll position over a ranked list, anchored to the first visible item.

    After a re-sort the row that was first on screen stays first on screen
    (wherever it moved to), unless the new snapshot arrives with a
    scroll-to-top directive.
    """

    def __init__(self, rows: int = 10):
        self.rows = max(1, rows)
        self.offset = 0
        self._items: Sequence[DeviceRecord] = ()

    @property
    def items(self) -> Sequence[DeviceRecord]:
        return self._items

    def view_state(self) -> ViewState:
        """Row 0 is fully visible only when the list is not scrolled."""
        if self.offset != 0:
            return ViewState(False, None)
        top = self._items[0].address if self._items else None
        return ViewState(True, top)

    def apply(self, snapshot: Sequence[DeviceRecord],
              scroll_to_top: bool = False):
        first = self._items[self.offset].address if self._items else None
        self._items = snapshot
        if scroll_to_top:
            self.offset = 0
            return
        if first is not None:
            for i, record in enumerate(snapshot):
                if record.address == first:
                    self.offset = i
                    break
        self._clamp()

    def resize(self, rows: int):
        self.rows = max(1, rows)
        self._clamp()

    def scroll(self, delta: int):
        self.offset += delta
        self._clamp()

    def page(self, pages: int):
        self.scroll(pages * self.rows)

    def home(self):
        self.offset = 0

    def end(self):
        self.offset = len(self._items)
        self._clamp()

    def visible(self) -> List[DeviceRecord]:
        return list(self._items[self.offset:self.offset + self.rows])

    def _clamp(self):
        last = max(0, len(self._items) - self.rows)
        self.offset = min(max(self.offset, 0), last)
