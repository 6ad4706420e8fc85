#!/usr/bin/env python3
"""Unit tests for the blerank core: records, ranking, scroll anchor, session.

Run with:  python -m pytest test_blerank.py -v
"""

import random
import threading

import pytest

from blerank.anchor import ScrollAnchor, ViewState
from blerank.device import HISTORY_SIZE, DeviceRecord
from blerank.registry import DeviceRegistry, rank, rank_key
from blerank.session import (
    CycleResult,
    Observation,
    ObservationInbox,
    ScanSession,
)


def _addresses(snapshot):
    return [r.address for r in snapshot]


def _record(address, smoothed, name=None):
    reading = int(smoothed)
    return DeviceRecord(address, name, reading, (reading,), float(smoothed))


# ------------------------------------------------------------------
# DeviceRecord.create
# ------------------------------------------------------------------

class TestCreate:
    """Tests for DeviceRecord.create — first observation of an address."""

    def test_initial_values(self):
        rec = DeviceRecord.create("00:11:22:33:44:55", "TestDevice", -50)
        assert rec.address == "00:11:22:33:44:55"
        assert rec.name == "TestDevice"
        assert rec.current_reading == -50
        assert rec.history == (-50,)
        assert rec.smoothed_value == -50.0
        assert isinstance(rec.smoothed_value, float)

    def test_name_can_be_none(self):
        rec = DeviceRecord.create("AA", None, -60)
        # No placeholder substituted at this layer
        assert rec.name is None

    def test_is_immutable(self):
        rec = DeviceRecord.create("AA", "x", -60)
        with pytest.raises(AttributeError):
            rec.address = "BB"


# ------------------------------------------------------------------
# DeviceRecord.apply_reading
# ------------------------------------------------------------------

class TestApplyReading:
    """Tests for the sliding window update."""

    def test_updates_current_and_history(self):
        rec = DeviceRecord.create("AA", "x", -50).apply_reading(-60)
        assert rec.current_reading == -60
        assert rec.history == (-50, -60)
        assert rec.smoothed_value == pytest.approx(-55.0)

    def test_returns_new_record(self):
        original = DeviceRecord.create("AA", "x", -50)
        updated = original.apply_reading(-60)
        assert updated is not original
        assert original.history == (-50,)
        assert original.smoothed_value == -50.0

    def test_five_readings_kept(self):
        rec = DeviceRecord.create("A", None, -70)
        for raw in (-71, -72, -73, -74):
            rec = rec.apply_reading(raw)
        assert rec.history == (-70, -71, -72, -73, -74)
        assert rec.smoothed_value == pytest.approx(-72.0)

    def test_sixth_reading_drops_oldest(self):
        rec = DeviceRecord.create("A", None, -70)
        for raw in (-71, -72, -73, -74, -75):
            rec = rec.apply_reading(raw)
        assert rec.history == (-71, -72, -73, -74, -75)
        assert -70 not in rec.history
        assert rec.smoothed_value == pytest.approx(-73.0)

    def test_history_bound_holds_for_long_runs(self):
        rng = random.Random(7)
        values = [rng.randint(-110, -20) for _ in range(50)]
        rec = DeviceRecord.create("A", None, values[0])
        for i, raw in enumerate(values[1:], 2):
            rec = rec.apply_reading(raw)
            assert len(rec.history) <= HISTORY_SIZE
            assert rec.history == tuple(values[:i][-HISTORY_SIZE:])
            assert rec.smoothed_value == pytest.approx(
                sum(rec.history) / len(rec.history))

    def test_custom_window(self):
        rec = DeviceRecord.create("A", None, -100)
        rec = rec.apply_reading(-50, history_size=2)
        rec = rec.apply_reading(-60, history_size=2)
        assert rec.history == (-50, -60)
        assert rec.smoothed_value == pytest.approx(-55.0)

    def test_window_of_one_tracks_latest(self):
        rec = DeviceRecord.create("A", None, -100).apply_reading(-40, 1)
        assert rec.history == (-40,)
        assert rec.smoothed_value == -40.0

    def test_out_of_range_values_accepted(self):
        # 127 is a common "RSSI unavailable" sentinel
        rec = DeviceRecord.create("A", None, -60).apply_reading(127)
        assert rec.current_reading == 127
        assert rec.smoothed_value == pytest.approx((127 - 60) / 2)

    def test_invalid_window(self):
        rec = DeviceRecord.create("A", None, -60)
        with pytest.raises(ValueError, match="at least 1"):
            rec.apply_reading(-50, history_size=0)

    def test_keeps_name_and_address(self):
        rec = DeviceRecord.create("A", "Alice", -60).apply_reading(-50)
        assert rec.address == "A"
        assert rec.name == "Alice"

    def test_as_dict(self):
        rec = DeviceRecord.create("A", None, -60).apply_reading(-61)
        assert rec.as_dict() == {
            "address": "A",
            "name": None,
            "rssi": -61,
            "smoothed_rssi": -60.5,
            "history": [-60, -61],
        }


# ------------------------------------------------------------------
# Ranking
# ------------------------------------------------------------------

class TestRanking:
    """Tests for the canonical strongest-first ordering."""

    def test_sorts_by_smoothed_descending(self):
        devices = [_record("BB:00", -70), _record("AA:00", -50),
                   _record("CC:00", -60)]
        assert _addresses(rank(devices)) == ["AA:00", "CC:00", "BB:00"]

    def test_tie_break_by_address(self):
        devices = [_record("BB", -60), _record("AA", -60)]
        assert _addresses(rank(devices)) == ["AA", "BB"]

    def test_empty(self):
        assert rank([]) == ()

    def test_single(self):
        assert _addresses(rank([_record("A", -1)])) == ["A"]

    def test_mixed_ties(self):
        devices = [
            _record("DD", -65), _record("BB", -60), _record("EE", -70),
            _record("AA", -60), _record("CC", -65),
        ]
        assert _addresses(rank(devices)) == ["AA", "BB", "CC", "DD", "EE"]

    def test_independent_of_insertion_order(self):
        devices = [_record(f"{i:02X}", -50 - (i % 4)) for i in range(20)]
        expected = rank(devices)
        rng = random.Random(3)
        for _ in range(10):
            shuffled = list(devices)
            rng.shuffle(shuffled)
            assert rank(shuffled) == expected

    def test_total_order(self):
        devices = [_record(f"{i:02X}", -50 - (i % 3)) for i in range(12)]
        for a in devices:
            for b in devices:
                if a.address != b.address:
                    assert (rank_key(a) < rank_key(b)) != (rank_key(b) < rank_key(a))

    def test_fractional_means(self):
        a = DeviceRecord.create("A", None, -60).apply_reading(-61)  # -60.5
        b = _record("B", -60)
        assert _addresses(rank([a, b])) == ["B", "A"]


# ------------------------------------------------------------------
# DeviceRegistry
# ------------------------------------------------------------------

class TestRegistry:
    """Tests for DeviceRegistry.ingest / reset."""

    def test_new_device(self):
        reg = DeviceRegistry()
        snapshot, changed = reg.ingest("A", "Alice", -60)
        assert snapshot == (changed,)
        assert changed.history == (-60,)
        assert len(reg) == 1
        assert "A" in reg

    def test_scenario_two_devices(self):
        reg = DeviceRegistry()
        reg.ingest("A", "Alice", -60)
        snapshot, _ = reg.ingest("B", "Bob", -70)
        assert _addresses(snapshot) == ["A", "B"]
        assert [r.smoothed_value for r in snapshot] == [-60.0, -70.0]

    def test_known_device_updated(self):
        reg = DeviceRegistry()
        reg.ingest("A", "Alice", -60)
        snapshot, changed = reg.ingest("A", "Alice", -70)
        assert len(snapshot) == 1
        assert changed.history == (-60, -70)
        assert reg.get("A") == changed

    def test_reordering_after_update(self):
        reg = DeviceRegistry()
        reg.ingest("A", None, -60)
        reg.ingest("B", None, -70)
        snapshot, _ = reg.ingest("B", None, -40)  # B mean -55
        assert _addresses(snapshot) == ["B", "A"]

    def test_snapshot_is_immutable_point_in_time(self):
        reg = DeviceRegistry()
        first, _ = reg.ingest("A", None, -60)
        reg.ingest("B", None, -50)
        assert isinstance(first, tuple)
        assert _addresses(first) == ["A"]

    def test_name_overwritten_by_new_name(self):
        reg = DeviceRegistry()
        reg.ingest("A", "Old", -60)
        _, changed = reg.ingest("A", "New", -60)
        assert changed.name == "New"

    def test_name_learned_later(self):
        reg = DeviceRegistry()
        reg.ingest("A", None, -60)
        _, changed = reg.ingest("A", "Alice", -60)
        assert changed.name == "Alice"

    def test_missing_name_keeps_known_name_by_default(self):
        reg = DeviceRegistry()
        reg.ingest("A", "Alice", -60)
        _, changed = reg.ingest("A", None, -60)
        assert changed.name == "Alice"

    def test_missing_name_clears_when_configured(self):
        reg = DeviceRegistry(keep_known_name=False)
        reg.ingest("A", "Alice", -60)
        _, changed = reg.ingest("A", None, -60)
        assert changed.name is None

    def test_history_size_applied(self):
        reg = DeviceRegistry(history_size=2)
        for raw in (-10, -20, -30):
            _, changed = reg.ingest("A", None, raw)
        assert changed.history == (-20, -30)

    def test_invalid_history_size(self):
        with pytest.raises(ValueError):
            DeviceRegistry(history_size=0)

    def test_empty_address_rejected(self):
        reg = DeviceRegistry()
        with pytest.raises(ValueError, match="non-empty"):
            reg.ingest("", "x", -60)
        assert len(reg) == 0

    def test_reset(self):
        reg = DeviceRegistry()
        reg.ingest("A", None, -60)
        reg.ingest("B", None, -70)
        reg.reset()
        assert len(reg) == 0
        assert reg.snapshot() == ()
        _, changed = reg.ingest("A", None, -80)
        assert changed.history == (-80,)

    def test_same_final_order_for_any_arrival_order(self):
        observations = [("A", -60), ("B", -60), ("C", -55), ("D", -70)]
        orders = set()
        for perm in (observations, observations[::-1],
                     observations[1:] + observations[:1]):
            reg = DeviceRegistry()
            for addr, raw in perm:
                reg.ingest(addr, None, raw)
            orders.add(tuple(_addresses(reg.snapshot())))
        assert orders == {("C", "A", "B", "D")}


# ------------------------------------------------------------------
# ScrollAnchor
# ------------------------------------------------------------------

class TestScrollAnchor:
    """Tests for the capture / reconcile state machine."""

    def test_initially_empty(self):
        assert ScrollAnchor().anchor is None

    def test_capture_at_top(self):
        anchor = ScrollAnchor()
        assert anchor.capture(ViewState(True, "A")) == "A"
        assert anchor.anchor == "A"

    def test_no_capture_when_scrolled(self):
        anchor = ScrollAnchor()
        anchor.capture(ViewState(True, "A"))
        assert anchor.capture(ViewState(False, "A")) is None
        assert anchor.anchor is None

    def test_no_capture_for_empty_list(self):
        anchor = ScrollAnchor()
        assert anchor.capture(ViewState(True, None)) is None

    def test_displaced_anchor_scrolls(self):
        anchor = ScrollAnchor()
        anchor.capture(ViewState(True, "A"))
        snapshot = rank([_record("A", -60), _record("C", -50)])
        assert anchor.reconcile(snapshot) is True

    def test_anchor_still_on_top(self):
        anchor = ScrollAnchor()
        anchor.capture(ViewState(True, "A"))
        snapshot = rank([_record("A", -40), _record("C", -50)])
        assert anchor.reconcile(snapshot) is False

    def test_anchor_missing(self):
        anchor = ScrollAnchor()
        anchor.capture(ViewState(True, "Z"))
        assert anchor.reconcile(rank([_record("A", -40)])) is False

    def test_no_anchor_no_directive(self):
        assert ScrollAnchor().reconcile(rank([_record("A", -40)])) is False

    def test_single_shot(self):
        anchor = ScrollAnchor()
        anchor.capture(ViewState(True, "A"))
        snapshot = rank([_record("A", -60), _record("C", -50)])
        assert anchor.reconcile(snapshot) is True
        assert anchor.anchor is None
        assert anchor.reconcile(snapshot) is False

    def test_clear(self):
        anchor = ScrollAnchor()
        anchor.capture(ViewState(True, "A"))
        anchor.clear()
        assert anchor.anchor is None


# ------------------------------------------------------------------
# ScanSession
# ------------------------------------------------------------------

class TestScanSession:
    """Tests for one full capture → ingest → reconcile cycle."""

    def test_end_to_end_scenario(self):
        session = ScanSession()
        session.process(Observation("A", "Alice", -60))
        result = session.process(Observation("B", "Bob", -70))
        assert _addresses(result.snapshot) == ["A", "B"]

        top = result.snapshot[0].address
        result = session.process(Observation("C", "Carl", -50),
                                 ViewState(True, top))
        assert _addresses(result.snapshot) == ["C", "A", "B"]
        assert [r.smoothed_value for r in result.snapshot] == [-50.0, -60.0, -70.0]
        assert result.scroll_to_top is True
        assert session.anchor.anchor is None

    def test_no_directive_when_top_unchanged(self):
        session = ScanSession()
        session.process(Observation("A", None, -60))
        session.process(Observation("B", None, -70))
        result = session.process(Observation("A", None, -58),
                                 ViewState(True, "A"))
        assert result.snapshot[0].address == "A"
        assert result.scroll_to_top is False

    def test_no_directive_when_not_at_top(self):
        session = ScanSession()
        session.process(Observation("A", None, -60))
        result = session.process(Observation("C", None, -30),
                                 ViewState(False, None))
        assert _addresses(result.snapshot) == ["C", "A"]
        assert result.scroll_to_top is False

    def test_default_view_is_hidden(self):
        session = ScanSession()
        session.process(Observation("A", None, -60))
        result = session.process(Observation("C", None, -30))
        assert result.scroll_to_top is False

    def test_directive_once_per_cycle(self):
        session = ScanSession()
        session.process(Observation("A", None, -60))
        first = session.process(Observation("C", None, -50), ViewState(True, "A"))
        # The view did not react; the next cycle anchors on whatever it reports
        second = session.process(Observation("D", None, -90), ViewState(True, "C"))
        assert first.scroll_to_top is True
        assert second.scroll_to_top is False

    def test_missing_address_ignored(self):
        session = ScanSession()
        session.process(Observation("A", None, -60))
        assert session.process(Observation("", "ghost", -10),
                               ViewState(True, "A")) is None
        assert session.process(Observation(None, None, -10)) is None
        assert _addresses(session.snapshot()) == ["A"]
        assert session.anchor.anchor is None

    def test_changed_record_and_rank(self):
        session = ScanSession()
        session.process(Observation("A", None, -60))
        result = session.process(Observation("B", None, -70))
        assert isinstance(result, CycleResult)
        assert result.changed.address == "B"
        assert result.rank == 1

    def test_reset(self):
        session = ScanSession(history_size=3)
        session.process(Observation("A", None, -60))
        session.anchor.capture(ViewState(True, "A"))
        session.reset()
        assert session.snapshot() == ()
        assert session.anchor.anchor is None
        assert session.registry.history_size == 3

    def test_name_policy_passed_through(self):
        session = ScanSession(keep_known_name=False)
        session.process(Observation("A", "Alice", -60))
        result = session.process(Observation("A", None, -60))
        assert result.changed.name is None


# ------------------------------------------------------------------
# ObservationInbox
# ------------------------------------------------------------------

class TestObservationInbox:
    """Tests for the callback → processing loop queue."""

    def test_drain_in_arrival_order(self):
        inbox = ObservationInbox()
        for i in range(3):
            inbox.put(Observation(f"A{i}", None, -60 - i))
        assert [o.address for o in inbox.drain()] == ["A0", "A1", "A2"]
        assert inbox.empty()
        assert inbox.drain() == []

    def test_put_from_other_threads(self):
        inbox = ObservationInbox()

        def produce(prefix):
            for i in range(100):
                inbox.put(Observation(f"{prefix}{i}", None, -i))

        threads = [threading.Thread(target=produce, args=(p,)) for p in "XYZ"]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(inbox.drain()) == 300
