# test_locks.py
"""
Tests for services.locks: one lock per canonical instrument key.
Run with: python -m pytest test_locks.py -v
"""

import threading
import unittest

from services.locks import InstrumentLockRegistry


class TestInstrumentLockRegistry(unittest.TestCase):
    def test_same_lock_for_same_canonical_key(self):
        locks = InstrumentLockRegistry()
        self.assertIs(locks.lock_for("ap-1"), locks.lock_for(" AP-1 "))
        self.assertIsNot(locks.lock_for("AP-1"), locks.lock_for("AP-2"))
        self.assertEqual(len(locks), 2)

    def test_hold_is_reentrant(self):
        locks = InstrumentLockRegistry()
        with locks.hold("GR-1"):
            with locks.hold("gr-1"):
                pass

    def test_other_instruments_not_blocked(self):
        locks = InstrumentLockRegistry()
        entered = threading.Event()

        def worker():
            with locks.hold("B"):
                entered.set()

        with locks.hold("A"):
            t = threading.Thread(target=worker)
            t.start()
            self.assertTrue(entered.wait(2))
        t.join(2)

    def test_same_instrument_serialized(self):
        locks = InstrumentLockRegistry()
        entered = threading.Event()

        def worker():
            with locks.hold("a"):
                entered.set()

        with locks.hold("A"):
            t = threading.Thread(target=worker)
            t.start()
            self.assertFalse(entered.wait(0.2))
        t.join(2)
        self.assertTrue(entered.is_set())


if __name__ == "__main__":
    unittest.main()
