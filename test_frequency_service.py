# test_frequency_service.py
"""
Unit tests for frequency_service: interval resolution, month arithmetic,
frequency config maintenance.
Run with: python -m pytest test_frequency_service.py -v
"""

import unittest
from datetime import date

from config import EngineSettings
from database import CalibrationRepository, get_connection, initialize_db
from domain.errors import ValidationError
from domain.instrument_types import InstrumentType
from domain.models import FrequencyConfig, FrequencyUnit, InstrumentStatus
from services import calibration_service, frequency_service, instrument_service, status_service

ROLLOVER = EngineSettings(month_overflow="rollover")


def make_repo():
    conn = get_connection(":memory:")
    initialize_db(conn)
    return CalibrationRepository(conn)


class TestResolveFrequency(unittest.TestCase):
    def test_config_in_years_beats_instrument_override(self):
        cfg = FrequencyConfig(InstrumentType.FURNACE, 2, FrequencyUnit.YEARS)
        self.assertEqual(frequency_service.resolve_frequency(InstrumentType.FURNACE, 18, cfg), 24)

    def test_config_in_months(self):
        cfg = FrequencyConfig(InstrumentType.FURNACE, 9, FrequencyUnit.MONTHS)
        self.assertEqual(frequency_service.resolve_frequency("furnace", None, cfg), 9)

    def test_instrument_override_used_without_config(self):
        self.assertEqual(frequency_service.resolve_frequency(InstrumentType.HSE_TEST_SLIDE, 18), 18)

    def test_type_fallbacks(self):
        self.assertEqual(frequency_service.resolve_frequency(InstrumentType.HSE_TEST_SLIDE), 60)
        self.assertEqual(frequency_service.resolve_frequency(InstrumentType.RI_LIQUIDS), 6)
        self.assertEqual(frequency_service.resolve_frequency(InstrumentType.GRATICULE), 12)
        self.assertEqual(frequency_service.resolve_frequency(InstrumentType.AIR_PUMP), 12)

    def test_no_fallback_is_indefinite(self):
        self.assertIsNone(frequency_service.resolve_frequency(InstrumentType.FUME_HOOD))

    def test_out_of_bounds_override_rejected(self):
        with self.assertRaises(ValidationError):
            frequency_service.resolve_frequency(InstrumentType.FURNACE, 0)
        with self.assertRaises(ValidationError):
            frequency_service.resolve_frequency(InstrumentType.FURNACE, 121)
        with self.assertRaises(ValidationError):
            frequency_service.resolve_frequency(InstrumentType.FURNACE, float("nan"))

    def test_unknown_type_rejected(self):
        with self.assertRaises(ValidationError):
            frequency_service.resolve_frequency("Toaster")


class TestAddMonths(unittest.TestCase):
    def test_plain_addition(self):
        self.assertEqual(frequency_service.add_months(date(2024, 3, 15), 12), date(2025, 3, 15))
        self.assertEqual(frequency_service.add_months(date(2024, 11, 1), 3), date(2025, 2, 1))

    def test_clamp_to_end_of_month(self):
        self.assertEqual(frequency_service.add_months(date(2023, 1, 31), 1), date(2023, 2, 28))
        self.assertEqual(frequency_service.add_months(date(2024, 1, 31), 1), date(2024, 2, 29))
        self.assertEqual(frequency_service.add_months(date(2024, 8, 31), 1), date(2024, 9, 30))

    def test_rollover_carries_surplus_days(self):
        self.assertEqual(frequency_service.add_months(date(2023, 1, 31), 1, "rollover"), date(2023, 3, 3))
        self.assertEqual(frequency_service.add_months(date(2024, 1, 31), 1, "rollover"), date(2024, 3, 2))
        self.assertEqual(frequency_service.add_months(date(2024, 3, 15), 1, "rollover"), date(2024, 4, 15))

    def test_unknown_rule(self):
        with self.assertRaises(ValidationError):
            frequency_service.add_months(date(2024, 1, 1), 1, "sideways")


class TestComputeNextDue(unittest.TestCase):
    def test_deterministic_for_every_configured_type(self):
        start = date(2024, 1, 31)
        for t in InstrumentType:
            cfg = FrequencyConfig(t, 1, FrequencyUnit.YEARS)
            months = frequency_service.resolve_frequency(t, None, cfg)
            first = frequency_service.compute_next_due(start, months)
            second = frequency_service.compute_next_due(start, months)
            self.assertEqual(first, second)
            self.assertEqual(first, date(2025, 1, 31))

    def test_indefinite_has_no_due_date(self):
        self.assertIsNone(frequency_service.compute_next_due(date(2024, 1, 1), None))

    def test_uses_configured_overflow_rule(self):
        self.assertEqual(frequency_service.compute_next_due(date(2023, 1, 31), 1, ROLLOVER), date(2023, 3, 3))

    def test_missing_date_rejected(self):
        with self.assertRaises(ValidationError):
            frequency_service.compute_next_due(None, 12)


class TestToMonths(unittest.TestCase):
    def test_conversion(self):
        self.assertEqual(frequency_service.to_months(2, "years"), 24)
        self.assertEqual(frequency_service.to_months("6", "Months"), 6)

    def test_bad_values(self):
        for value, unit in [(0, "months"), (-1, "years"), ("x", "months"), (3, "weeks")]:
            with self.assertRaises(ValidationError):
                frequency_service.to_months(value, unit)


class TestFrequencyConfigMaintenance(unittest.TestCase):
    def setUp(self):
        self.repo = make_repo()
        instrument_service.add_instrument(self.repo, "FH-1", InstrumentType.FUME_HOOD)
        instrument_service.add_instrument(self.repo, "FH-2", InstrumentType.FUME_HOOD)
        instrument_service.add_instrument(self.repo, "FU-1", InstrumentType.FURNACE)

    def tearDown(self):
        self.repo.conn.close()

    def test_save_propagates_and_recalculates(self):
        created = calibration_service.create_calibration_record(
            self.repo, "FH-1", "2024-01-31", outcome="Pass"
        )
        # Fume hoods have no default frequency
        self.assertIsNone(created.record.next_calibration)

        cfg = frequency_service.save_frequency_config(
            self.repo, "Fume Hood", 1, "years", actor="alice"
        )
        self.assertEqual(cfg.months, 12)
        self.assertEqual(cfg.updated_by, "alice")

        for ref in ("FH-1", "FH-2"):
            self.assertEqual(self.repo.get_instrument_by_key(ref).calibration_frequency, 12)
        self.assertIsNone(self.repo.get_instrument_by_key("FU-1").calibration_frequency)

        rec = self.repo.get_calibration(created.record.id)
        self.assertEqual(rec.next_calibration, date(2025, 1, 31))

    def test_save_replaces_existing_config(self):
        frequency_service.save_frequency_config(self.repo, InstrumentType.FURNACE, 6, "months")
        frequency_service.save_frequency_config(self.repo, InstrumentType.FURNACE, 2, "years")
        self.assertEqual(len(self.repo.list_frequency_configs()), 1)
        self.assertEqual(self.repo.get_frequency_config(InstrumentType.FURNACE).months, 24)

    def test_save_rejects_out_of_bounds(self):
        with self.assertRaises(ValidationError):
            frequency_service.save_frequency_config(self.repo, InstrumentType.FURNACE, 11, "years")
        self.assertIsNone(self.repo.get_frequency_config(InstrumentType.FURNACE))

    def test_delete_falls_back(self):
        frequency_service.save_frequency_config(self.repo, InstrumentType.FURNACE, 3, "months")
        self.assertTrue(frequency_service.delete_frequency_config(self.repo, InstrumentType.FURNACE))
        self.assertFalse(frequency_service.delete_frequency_config(self.repo, InstrumentType.FURNACE))
        # Instrument override written by the save is still there
        inst = self.repo.get_instrument_by_key("FU-1")
        months = frequency_service.resolve_frequency_for(
            self.repo, InstrumentType.FURNACE, inst.calibration_frequency
        )
        self.assertEqual(months, 3)

    def test_recalculate_due_dates_counts_changes(self):
        calibration_service.create_calibration_record(self.repo, "FU-1", "2024-05-31", outcome="Pass")
        changed = frequency_service.recalculate_due_dates(self.repo, "fu-1", 3)
        self.assertEqual(changed, 1)
        rec = self.repo.list_calibrations("FU-1")[0]
        self.assertEqual(rec.next_calibration, date(2024, 8, 31))
        self.assertEqual(frequency_service.recalculate_due_dates(self.repo, "FU-1", 3), 0)

    def test_save_rewrites_stored_air_pump_summary(self):
        instrument_service.add_instrument(self.repo, "AP-1", InstrumentType.AIR_PUMP)
        calibration_service.create_calibration_record(
            self.repo, "AP-1", "2024-01-01",
            test_results=[{"set_flowrate": 1000, "actual_flowrate": 1000}],
        )
        self.assertEqual(self.repo.get_instrument_by_key("AP-1").calibration_due, date(2025, 1, 1))

        frequency_service.save_frequency_config(self.repo, InstrumentType.AIR_PUMP, 6, "months")

        inst = self.repo.get_instrument_by_key("AP-1")
        self.assertEqual(inst.last_calibration, date(2024, 1, 1))
        self.assertEqual(inst.calibration_due, date(2024, 7, 1))
        reports = status_service.evaluate_instruments(
            self.repo, InstrumentType.AIR_PUMP, today=date(2024, 8, 1)
        )
        self.assertEqual([r.status for r in reports], [InstrumentStatus.OVERDUE])
        self.assertEqual(reports[0].calibration_due, date(2024, 7, 1))

    def test_recalculate_without_type_rewrites_stored_summary(self):
        instrument_service.add_instrument(self.repo, "AP-2", InstrumentType.AIR_PUMP)
        calibration_service.create_calibration_record(
            self.repo, "AP-2", "2024-01-01",
            test_results=[{"set_flowrate": 1000, "actual_flowrate": 1000}],
        )
        self.assertEqual(frequency_service.recalculate_due_dates(self.repo, "ap-2", 3), 1)
        self.assertEqual(self.repo.get_instrument_by_key("AP-2").calibration_due, date(2024, 4, 1))


if __name__ == "__main__":
    unittest.main()
