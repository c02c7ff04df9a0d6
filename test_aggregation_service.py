# test_aggregation_service.py
"""
Tests for aggregation_service: last calibration / next due from history,
single and bulk lookups, partial failures.
Run with: python -m pytest test_aggregation_service.py -v
"""

import sqlite3
import unittest
from datetime import date
from unittest import mock

from database import CalibrationRepository, get_connection, initialize_db
from domain.errors import AggregationPartialFailure, NotFoundError
from domain.instrument_types import InstrumentType
from domain.models import CalibrationRecord, CalibrationSummary
from services import aggregation_service, instrument_service

PCM = InstrumentType.PHASE_CONTRAST_MICROSCOPE


def make_repo():
    conn = get_connection(":memory:")
    initialize_db(conn)
    return CalibrationRepository(conn)


def rec(key, cal_date, due=None, instrument_type=PCM):
    return CalibrationRecord(
        instrument_key=key,
        instrument_type=instrument_type,
        calibration_date=date.fromisoformat(cal_date),
        next_calibration=date.fromisoformat(due) if due else None,
        outcome="Pass",
    )


class TestSummarize(unittest.TestCase):
    def test_max_event_date_and_max_due_date(self):
        records = [
            rec("M-1", "2024-01-01", "2025-01-01"),
            rec("M-1", "2024-06-01", "2024-12-01"),  # later event, earlier due
            rec("M-1", "2024-03-01", None),
        ]
        summary = aggregation_service.summarize(records)
        self.assertEqual(summary.last_calibration, date(2024, 6, 1))
        self.assertEqual(summary.calibration_due, date(2025, 1, 1))

    def test_empty_history(self):
        self.assertEqual(aggregation_service.summarize([]), CalibrationSummary(None, None))

    def test_records_without_due_dates(self):
        summary = aggregation_service.summarize([rec("M-1", "2024-01-01")])
        self.assertEqual(summary.last_calibration, date(2024, 1, 1))
        self.assertIsNone(summary.calibration_due)


class TestAggregateSummary(unittest.TestCase):
    def setUp(self):
        self.repo = make_repo()
        for ref in ("M-1", "M-2", "M-3"):
            instrument_service.add_instrument(self.repo, ref, PCM)
        instrument_service.add_instrument(self.repo, "RI-1", InstrumentType.RI_LIQUIDS)
        self.repo.insert_calibration(rec("M-1", "2024-01-01", "2025-01-01"))
        self.repo.insert_calibration(rec("m-1 ", "2024-02-01", "2025-02-01"))
        self.repo.insert_calibration(rec("M-2", "2023-05-05", "2024-05-05"))
        self.repo.insert_calibration(rec("RI-1", "2024-04-01", "2024-10-01", InstrumentType.RI_LIQUIDS))

    def tearDown(self):
        self.repo.conn.close()

    def test_single_instrument(self):
        summary = aggregation_service.aggregate_summary(self.repo, "m-1")
        self.assertEqual(summary, CalibrationSummary(date(2024, 2, 1), date(2025, 2, 1)))

    def test_single_unknown_instrument(self):
        with self.assertRaises(NotFoundError):
            aggregation_service.aggregate_summary(self.repo, "NOPE")

    def test_bulk_matches_single(self):
        result = aggregation_service.aggregate_summary(self.repo, ["M-1", "M-2", "M-3"], PCM)
        self.assertEqual(result.failures, [])
        for key in ("M-1", "M-2", "M-3"):
            self.assertEqual(result.get(key), aggregation_service.aggregate_summary(self.repo, key))
        self.assertEqual(result.get("M-3"), CalibrationSummary())

    def test_bulk_reads_once(self):
        with mock.patch.object(
            self.repo, "list_calibrations", side_effect=AssertionError("per-instrument read")
        ):
            result = aggregation_service.aggregate_summary(self.repo, ["M-1", "M-2"], PCM)
        self.assertEqual(result.get("M-2").last_calibration, date(2023, 5, 5))

    def test_bulk_without_type_groups_by_instrument(self):
        result = aggregation_service.aggregate_summary(self.repo, ["M-1", "RI-1", "GHOST"])
        self.assertEqual(result.get("RI-1").calibration_due, date(2024, 10, 1))
        self.assertEqual(result.get("M-1").last_calibration, date(2024, 2, 1))
        self.assertEqual([f.instrument_key for f in result.failures], ["GHOST"])
        self.assertEqual(result.get("GHOST"), CalibrationSummary())

    def test_archived_records_excluded(self):
        first = self.repo.list_calibrations("M-1")[-1]
        self.repo.tag_archived([first.id], "test")
        self.repo.insert_calibration(rec("M-1", "2023-01-01", "2026-01-01"))
        self.repo.tag_archived([self.repo.list_calibrations("M-1")[-1].id], "test")
        summary = aggregation_service.aggregate_summary(self.repo, "M-1")
        self.assertEqual(summary.calibration_due, date(2025, 2, 1))

    def test_unreadable_row_fails_only_that_instrument(self):
        self.repo.conn.execute(
            "UPDATE calibration_records SET details_json = '{not json' WHERE instrument_key = 'M-2'"
        )
        self.repo.conn.commit()
        result = aggregation_service.aggregate_summary(self.repo, ["M-1", "M-2"], PCM)
        self.assertEqual(len(result.failures), 1)
        self.assertIsInstance(result.failures[0], AggregationPartialFailure)
        self.assertEqual(result.failures[0].instrument_key, "M-2")
        self.assertEqual(result.get("M-2"), CalibrationSummary())
        self.assertEqual(result.get("M-1").last_calibration, date(2024, 2, 1))

    def test_bulk_query_failure_falls_back_per_instrument(self):
        real = self.repo.list_calibrations

        def flaky(key, *args, **kwargs):
            if key == "M-2":
                raise sqlite3.OperationalError("database is locked")
            return real(key, *args, **kwargs)

        with mock.patch.object(
            self.repo, "list_calibration_rows_for_type", side_effect=sqlite3.OperationalError("boom")
        ), mock.patch.object(self.repo, "list_calibrations", side_effect=flaky):
            result = aggregation_service.aggregate_summary(self.repo, ["M-1", "M-2"], PCM)

        self.assertEqual(result.get("M-1").calibration_due, date(2025, 2, 1))
        self.assertEqual([f.instrument_key for f in result.failures], ["M-2"])


if __name__ == "__main__":
    unittest.main()
