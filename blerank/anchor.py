"""Scroll anchor: decides when a re-sort should jump the view back to the top."""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from blerank.device import DeviceRecord

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ViewState:
    """What the presentation layer shows right before a cycle.

    ``top_visible`` is True when row 0 is fully visible; ``top_address`` is
    the address rendered in that row, or None when the list is empty.
    """

    top_visible: bool = False
    top_address: Optional[str] = None

    @classmethod
    def hidden(cls) -> "ViewState":
        return cls(False, None)


class ScrollAnchor:
    """Single-slot anchor state machine (``NoAnchor`` / ``AnchorSet``).

    :meth:`capture` runs before each re-sort, :meth:`reconcile` once on the
    resulting snapshot.  The anchor is consumed by every reconciliation.
    """

    def __init__(self):
        self._anchor: Optional[str] = None

    @property
    def anchor(self) -> Optional[str]:
        return self._anchor

    def clear(self):
        self._anchor = None

    def capture(self, view: ViewState) -> Optional[str]:
        if view.top_visible and view.top_address:
            self._anchor = view.top_address
            _LOGGER.debug("Anchored top row: %s", view.top_address)
        else:
            self._anchor = None
            if view.top_visible:
                _LOGGER.debug("Scrolled to top but list is empty, no anchor")
            else:
                _LOGGER.debug("Not scrolled to top, no anchor")
        return self._anchor

    def reconcile(self, snapshot: Sequence[DeviceRecord]) -> bool:
        """Return True when the view must scroll to the top.

        That is the case only when the anchored address is still listed but
        no longer first.
        """
        anchored = self._anchor
        self._anchor = None
        if anchored is None:
            return False

        index = next((i for i, record in enumerate(snapshot)
                      if record.address == anchored), -1)
        if index > 0:
            _LOGGER.debug("Anchored device %s moved to %d, scrolling to top",
                          anchored, index)
            return True
        if index == 0:
            _LOGGER.debug("Anchored device %s is still at the top", anchored)
        else:
            _LOGGER.debug("Anchored device %s not in the new list", anchored)
        return False
