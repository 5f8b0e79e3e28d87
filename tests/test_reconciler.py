"""Tests for shift reconciliation."""

import json
from datetime import date, datetime, timedelta
from decimal import Decimal

from aba_billing.ingestion import (
    ColumnMapping,
    EventBasedReconciler,
    FingerprintScannerReconciler,
    IngestionStrategy,
    StandardReconciler,
    extract_punches,
    group_punches,
    reconcile,
)

PUNCH_MAPPING = ColumnMapping(work_date="date", employee_name="emp", in_time="time", out_time="time")
EVENT_MAPPING = ColumnMapping(
    work_date="date", employee_name="emp", in_time="time", out_time="time", event_type="event"
)
SHIFT_MAPPING = ColumnMapping(
    work_date="date",
    employee_name="emp",
    in_time="in",
    out_time="out",
    minutes_worked="minutes",
    hours_worked="hours",
)


def _punch(emp, day, at):
    return {"emp": emp, "date": day, "time": at}


class TestGrouping:
    """Punch extraction and grouping."""

    def test_skips_rows_without_employee_date_or_time(self):
        rows = [
            _punch("A", "2024-01-01", "08:00"),
            _punch("", "2024-01-01", "09:00"),
            _punch("A", "garbage", "10:00"),
            _punch("A", "2024-01-01", ""),
        ]
        punches, skipped = extract_punches(rows, PUNCH_MAPPING)
        assert [p.index for p in punches] == [0]
        assert skipped == [1, 2, 3]

    def test_falls_back_to_out_column(self):
        """A row with IN empty reads its punch from OUT."""
        mapping = ColumnMapping(work_date="date", employee_name="emp", in_time="in", out_time="out")
        rows = [{"emp": "A", "date": "2024-01-01", "in": None, "out": "16:00"}]
        punches, skipped = extract_punches(rows, mapping)
        assert skipped == []
        assert punches[0].time_value == "16:00"

    def test_groups_keep_first_seen_order(self):
        rows = [
            _punch("B", "2024-01-01", "08:00"),
            _punch("A", "2024-01-01", "08:00"),
            _punch("B", "2024-01-01", "16:00"),
        ]
        punches, _ = extract_punches(rows, PUNCH_MAPPING)
        groups = group_punches(punches)
        assert list(groups) == [("B", date(2024, 1, 1)), ("A", date(2024, 1, 1))]
        assert [p.index for p in groups[("B", date(2024, 1, 1))]] == [0, 2]


class TestFingerprintScanner:
    """Sequential pairing of undifferentiated punches."""

    def test_single_pair(self):
        """Two punches on one day make one 510 minute shift."""
        rows = [_punch("A", "2024-01-01", "08:00"), _punch("A", "2024-01-01", "16:30")]
        result = reconcile(rows, PUNCH_MAPPING)

        assert result.strategy is IngestionStrategy.FINGERPRINT_SCANNER
        assert len(result.rows) == 1
        shift = result.rows[0]
        assert shift.in_time == datetime(2024, 1, 1, 8, 0)
        assert shift.out_time == datetime(2024, 1, 1, 16, 30)
        assert shift.minutes_worked == 510
        assert shift.hours_worked == Decimal("8.50")
        assert shift.is_incomplete is False
        assert result.skipped_count == 0

    def test_odd_punch_becomes_incomplete_row(self):
        """08:00, 12:00, 13:00 pair the first two; 13:00 is IN only."""
        rows = [
            _punch("A", "2024-01-01", "08:00"),
            _punch("A", "2024-01-01", "12:00"),
            _punch("A", "2024-01-01", "13:00"),
        ]
        result = reconcile(rows, PUNCH_MAPPING)

        assert len(result.rows) == 2
        first, second = result.rows
        assert first.minutes_worked == 240
        assert second.in_time == datetime(2024, 1, 1, 13, 0)
        assert second.out_time is None
        assert second.minutes_worked is None
        assert second.is_incomplete is True
        assert second.raw_json["originalOutIndex"] is None

    def test_unsorted_punches_are_sorted_chronologically(self):
        rows = [_punch("A", "2024-01-01", "4:30 PM"), _punch("A", "2024-01-01", "8:00 AM")]
        result = reconcile(rows, PUNCH_MAPPING)
        shift = result.rows[0]
        assert shift.in_time == datetime(2024, 1, 1, 8, 0)
        assert shift.raw_json["originalInIndex"] == 1
        assert shift.raw_json["originalOutIndex"] == 0

    def test_overnight_pair(self):
        """23:00 then 01:00 is a two hour shift ending the next day."""
        reconciler = FingerprintScannerReconciler()
        rows = [_punch("A", "2024-01-01", "23:00"), _punch("A", "2024-01-01", "01:00")]
        punches, _ = extract_punches(rows, PUNCH_MAPPING)
        shifts, skipped = reconciler.pair_group(punches)

        # chronological sort puts 01:00 first, so the pair is 01:00 -> 23:00
        assert skipped == []
        assert shifts[0].minutes_worked == 22 * 60

        mapping = ColumnMapping(work_date="date", employee_name="emp", in_time="in", out_time="out")
        result = StandardReconciler().reconcile(
            [{"emp": "A", "date": "2024-01-01", "in": "23:00", "out": "01:00"}], mapping
        )
        assert result.rows[0].out_time == datetime(2024, 1, 2, 1, 0)
        assert result.rows[0].minutes_worked == 120

    def test_unparseable_in_skips_the_pair(self):
        """A pair whose IN cannot be parsed is skipped, both source rows."""
        rows = [
            _punch("A", "2024-01-01", "08:00"),
            _punch("A", "2024-01-01", "12:00"),
            _punch("A", "2024-01-01", "soon"),
            _punch("A", "2024-01-01", "later"),
        ]
        result = reconcile(rows, PUNCH_MAPPING)
        assert len(result.rows) == 1
        assert result.skipped_indices == [2, 3]

    def test_rows_are_renumbered_across_groups(self):
        rows = [
            _punch("A", "2024-01-01", "08:00"),
            _punch("B", "2024-01-01", "09:00"),
            _punch("A", "2024-01-01", "12:00"),
            _punch("B", "2024-01-01", "17:00"),
        ]
        result = reconcile(rows, PUNCH_MAPPING)
        assert [row.row_index for row in result.rows] == [0, 1]
        assert [row.employee_name_raw for row in result.rows] == ["A", "B"]

    def test_every_source_row_accounted_for(self):
        rows = [
            _punch("A", "2024-01-01", "08:00"),
            _punch("A", "2024-01-01", "12:00"),
            _punch("A", "2024-01-01", "13:00"),
            _punch("", "2024-01-01", "14:00"),
        ]
        result = reconcile(rows, PUNCH_MAPPING)
        used = set(result.skipped_indices)
        for shift in result.rows:
            used.add(shift.raw_json["originalInIndex"])
            if shift.raw_json["originalOutIndex"] is not None:
                used.add(shift.raw_json["originalOutIndex"])
        assert used == {0, 1, 2, 3}


class TestEventBased:
    """Pairing by clock-in/clock-out markers."""

    def _rows(self, *events):
        return [{"emp": "A", "date": "2024-01-01", "time": at, "event": kind} for at, kind in events]

    def test_pairs_in_and_out(self):
        rows = self._rows(("08:00", "Clock In"), ("16:00", "Clock Out"))
        result = reconcile(rows, EVENT_MAPPING)

        assert result.strategy is IngestionStrategy.EVENT_BASED
        shift = result.rows[0]
        assert shift.minutes_worked == 480
        assert shift.raw_json["originalInIndex"] == 0
        assert shift.raw_json["originalOutIndex"] == 1
        assert shift.raw_json["pairedWith"]["event"] == "Clock Out"

    def test_out_without_in_is_skipped(self):
        rows = self._rows(("08:00", "Clock Out"), ("09:00", "Clock In"), ("12:00", "Clock Out"))
        result = reconcile(rows, EVENT_MAPPING)
        assert len(result.rows) == 1
        assert result.rows[0].minutes_worked == 180
        assert result.skipped_indices == [0]

    def test_second_in_while_pending_is_ignored(self):
        rows = self._rows(("08:00", "IN"), ("08:05", "IN"), ("12:00", "OUT"))
        result = reconcile(rows, EVENT_MAPPING)
        assert result.rows[0].in_time == datetime(2024, 1, 1, 8, 0)
        assert result.skipped_indices == [1]

    def test_trailing_in_is_unpaired(self):
        rows = self._rows(("08:00", "IN"), ("12:00", "OUT"), ("13:00", "IN"))
        result = reconcile(rows, EVENT_MAPPING)
        assert len(result.rows) == 2
        trailing = result.rows[1]
        assert trailing.raw_json["unpaired"] is True
        assert trailing.raw_json["originalIndex"] == 2
        assert trailing.is_incomplete is True

    def test_orders_by_raw_text(self):
        """Events are ordered by their text, so "9:00" sorts after "10:00"."""
        reconciler = EventBasedReconciler()
        rows = self._rows(("9:00", "IN"), ("10:00", "OUT"))
        punches, _ = extract_punches(rows, EVENT_MAPPING)
        shifts, skipped = reconciler.pair_group(punches)
        # "10:00" (OUT) comes first with nothing pending, then "9:00" (IN) stays unpaired
        assert skipped == [1]
        assert len(shifts) == 1
        assert shifts[0].raw_json["unpaired"] is True


class TestStandard:
    """One row per shift."""

    def test_in_and_out_columns(self):
        rows = [{"emp": "A", "date": "2024-01-01", "in": "08:00", "out": "16:30"}]
        result = StandardReconciler().reconcile(rows, SHIFT_MAPPING)
        assert result.rows[0].minutes_worked == 510
        assert result.rows[0].raw_json["originalIndex"] == 0

    def test_identical_raw_in_and_out_discards_out(self):
        """Identical source IN and OUT looks like a mapping error; OUT is dropped."""
        rows = [{"emp": "A", "date": "2024-01-01", "in": "08:00", "out": "08:00"}]
        result = StandardReconciler().reconcile(rows, SHIFT_MAPPING)

        shift = result.rows[0]
        assert shift.out_time is None
        assert shift.raw_json["ambiguousOut"] is True
        assert shift.is_incomplete is True
        assert any("identical" in warning for warning in result.warnings)

    def test_identical_raw_in_and_out_rejected_by_policy(self):
        rows = [{"emp": "A", "date": "2024-01-01", "in": "08:00", "out": "08:00"}]
        result = StandardReconciler(reject_ambiguous_out=True).reconcile(rows, SHIFT_MAPPING)
        assert result.rows == []
        assert result.skipped_indices == [0]

    def test_identical_parsed_times_drop_out(self):
        rows = [{"emp": "A", "date": "2024-01-01", "in": "08:00", "out": "8:00 AM"}]
        result = StandardReconciler().reconcile(rows, SHIFT_MAPPING)
        assert result.rows[0].out_time is None
        assert result.rows[0].raw_json["ambiguousOut"] is True

    def test_minutes_column(self):
        rows = [{"emp": "A", "date": "2024-01-01", "minutes": "450.9"}]
        result = StandardReconciler().reconcile(rows, SHIFT_MAPPING)
        assert result.rows[0].minutes_worked == 450
        assert result.rows[0].hours_worked == Decimal("7.50")
        assert result.rows[0].is_incomplete is False

    def test_hours_column(self):
        rows = [{"emp": "A", "date": "2024-01-01", "hours": "7.25"}]
        result = StandardReconciler().reconcile(rows, SHIFT_MAPPING)
        assert result.rows[0].hours_worked == Decimal("7.25")
        assert result.rows[0].minutes_worked == 435

    def test_duration_cells(self):
        """Elapsed-time cells count as hours or minutes and stay JSON safe."""
        rows = [
            {"emp": "A", "date": "2024-01-01", "hours": timedelta(hours=7, minutes=15)},
            {"emp": "A", "date": "2024-01-02", "minutes": timedelta(hours=1, seconds=59.9999)},
        ]
        result = StandardReconciler().reconcile(rows, SHIFT_MAPPING)

        assert result.rows[0].hours_worked == Decimal("7.25")
        assert result.rows[0].minutes_worked == 435
        assert result.rows[0].raw_json["hours"] == "7:15:00"
        assert result.rows[1].minutes_worked == 61
        assert json.dumps(result.rows[1].raw_json)

    def test_row_without_time_information_is_skipped(self):
        rows = [
            {"emp": "A", "date": "2024-01-01"},
            {"emp": "A", "date": "2024-01-02", "minutes": "60"},
        ]
        result = StandardReconciler().reconcile(rows, SHIFT_MAPPING)
        assert result.skipped_indices == [0]
        assert result.rows[0].row_index == 1
