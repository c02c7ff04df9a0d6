# test_main.py
"""
End-to-end tests for the command-line entry point against a temporary database.
Run with: python -m pytest test_main.py -v
"""

import contextlib
import io
import logging
import sys
import tempfile
import unittest
from pathlib import Path

import main
from database import CalibrationRepository, get_connection


class TestCommandLine(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.dir = Path(self.tmpdir.name)
        self.db = self.dir / "cal.db"
        self.addCleanup(setattr, sys, "excepthook", sys.excepthook)
        root = logging.getLogger()
        self.addCleanup(self._drop_new_handlers, list(root.handlers))

    def _drop_new_handlers(self, before):
        root = logging.getLogger()
        for h in list(root.handlers):
            if h not in before:
                root.removeHandler(h)
                h.close()

    def tearDown(self):
        self.tmpdir.cleanup()

    def run_cli(self, *args):
        out, err = io.StringIO(), io.StringIO()
        argv = ["--db", str(self.db), "--log-dir", str(self.dir / "logs"), *args]
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            code = main.main(argv)
        return code, out.getvalue(), err.getvalue()

    def test_register_calibrate_and_report(self):
        self.assertEqual(self.run_cli("add-instrument", "ri-1", "RI Liquids")[0], 0)
        code, out, _ = self.run_cli("calibrate", "RI-1", "2024-01-31", "--outcome", "Pass")
        self.assertEqual(code, 0)
        self.assertIn("next due 2024-07-31", out)

        code, out, _ = self.run_cli("calibrate", "RI-1", "2024-03-01", "--outcome", "Pass")
        self.assertIn("Archived 1 earlier record(s)", out)

        code, out, _ = self.run_cli("status", "--today", "2024-08-15")
        self.assertEqual(code, 0)
        self.assertIn("RI-1", out)
        self.assertIn("Active", out)

        export = self.dir / "status.csv"
        code, out, _ = self.run_cli("status", "--today", "2024-10-01", "--export", str(export))
        self.assertEqual(code, 0)
        self.assertIn("Calibration Overdue", export.read_text(encoding="utf-8"))
        self.assertTrue((self.dir / "logs" / "calibration_lifecycle.log").exists())

    def test_restore_and_set_frequency(self):
        self.run_cli("add-instrument", "FU-1", "Furnace")
        self.run_cli("calibrate", "FU-1", "2023-01-01", "--outcome", "Pass")
        self.run_cli("calibrate", "FU-1", "2024-01-01", "--outcome", "Pass")

        conn = get_connection(self.db)
        try:
            archived = CalibrationRepository(conn).list_tagged_archived("Furnace")
        finally:
            conn.close()
        self.assertEqual(len(archived), 1)

        code, out, _ = self.run_cli("restore", "Furnace", str(archived[0].id), "--actor", "fay")
        self.assertEqual(code, 0)
        self.assertIn("Restored calibration record", out)

        code, out, _ = self.run_cli("set-frequency", "Furnace", "2", "years")
        self.assertEqual(code, 0)
        self.assertIn("every 24 month(s)", out)

    def test_domain_errors_exit_2(self):
        code, _, err = self.run_cli("calibrate", "GHOST", "2024-01-01")
        self.assertEqual(code, 2)
        self.assertIn("GHOST", err)

        code, _, err = self.run_cli("add-instrument", "X-1", "Toaster")
        self.assertEqual(code, 2)
        self.assertIn("Unknown instrument type", err)


if __name__ == "__main__":
    unittest.main()
