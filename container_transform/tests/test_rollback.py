#!/usr/bin/env python3
"""
Tests for the rollback ledger and cancel token.
"""

import threading
import time
import unittest

from container_transform.transform.rollback import CancelToken, Rollback


class TestRollback(unittest.TestCase):
    """Test cases for Rollback."""

    def setUp(self):
        """Set up test fixtures."""
        self.token = CancelToken()
        self.calls = []

    def _record(self, name):
        return lambda: self.calls.append(name)

    def test_run_is_lifo(self):
        rb = Rollback(self.token, "lifo")
        for name in ("bundle", "storage", "shm"):
            rb.register(self._record(name))

        rb.run()

        self.assertEqual(self.calls, ["shm", "storage", "bundle"])
        self.assertTrue(rb.executed)

    def test_run_at_most_once(self):
        rb = Rollback(self.token, "once")
        rb.register(self._record("bundle"))

        threads = [threading.Thread(target=rb.run) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        rb.run()

        self.assertEqual(self.calls, ["bundle"])

    def test_failing_action_does_not_stop_others(self):
        rb = Rollback(self.token, "errors")
        rb.register(self._record("bundle"))

        def broken():
            raise OSError("device busy")
        rb.register(broken)

        with self.assertLogs("container_transform.transform.rollback", level="WARNING"):
            rb.run()
        self.assertEqual(self.calls, ["bundle"])

    def test_cancel_triggers_run(self):
        rb = Rollback(self.token, "cancel")
        rb.wait()
        rb.register(self._record("bundle"))
        rb.register(self._record("storage"))

        self.token.cancel()
        rb.join(timeout=5)

        self.assertEqual(self.calls, ["storage", "bundle"])
        self.assertTrue(rb.close())

    def test_close_before_cancel_skips_rollback(self):
        rb = Rollback(self.token, "closed")
        rb.wait()
        rb.register(self._record("bundle"))

        self.assertFalse(rb.close())
        rb.join(timeout=5)
        self.token.cancel()
        time.sleep(0.05)

        self.assertEqual(self.calls, [])
        self.assertFalse(rb.executed)

    def test_run_after_close_is_noop(self):
        rb = Rollback(self.token, "noop")
        rb.register(self._record("bundle"))
        rb.close()
        rb.run()
        self.assertEqual(self.calls, [])

    def test_late_registration_runs_immediately(self):
        rb = Rollback(self.token, "late")
        rb.run()
        rb.register(self._record("shm"))
        self.assertEqual(self.calls, ["shm"])

    def test_cancel_waits_for_running_step(self):
        """A step in flight finishes and registers its undo before rollback starts."""
        rb = Rollback(self.token, "step")
        rb.wait()
        rb.register(self._record("bundle"))

        with rb.step():
            self.token.cancel()
            time.sleep(0.05)
            self.assertFalse(rb.executed)
            rb.register(self._record("storage"))
        rb.join(timeout=5)

        self.assertEqual(self.calls, ["storage", "bundle"])
        self.assertTrue(rb.close())

    def test_one_token_many_ledgers(self):
        ledgers = [Rollback(self.token, str(i)) for i in range(4)]
        for i, rb in enumerate(ledgers):
            rb.wait()
            rb.register(self._record(i))
        ledgers[0].close()

        self.token.cancel()
        for rb in ledgers:
            rb.join(timeout=5)

        self.assertEqual(sorted(self.calls), [1, 2, 3])


class TestCancelToken(unittest.TestCase):
    """Test cases for CancelToken."""

    def test_wait_until_predicate(self):
        token = CancelToken()
        done = []
        self.assertFalse(token.wait_until(lambda: True))

        def waiter():
            done.append(token.wait_until(lambda: False))

        t = threading.Thread(target=waiter)
        t.start()
        token.cancel()
        t.join(timeout=5)

        self.assertEqual(done, [True])
        self.assertTrue(token.cancelled)


if __name__ == '__main__':
    unittest.main()
