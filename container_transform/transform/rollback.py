#!/usr/bin/env python3
"""
Rollback support for the per-container transformation pipeline.

A Rollback collects compensating actions while a pipeline advances and
runs them in reverse order when the pipeline fails or when the shared
CancelToken is cancelled (operator interrupt). One CancelToken is shared
by every pipeline of a run; each pipeline owns its own Rollback.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

RollbackFunc = Callable[[], None]


class CancelToken:
    """Process-wide cancellation flag that listeners can block on."""

    def __init__(self):
        self._cond = threading.Condition()
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        with self._cond:
            return self._cancelled

    def cancel(self):
        with self._cond:
            self._cancelled = True
            self._cond.notify_all()

    def notify(self):
        """Wake waiters so they re-check their own predicate."""
        with self._cond:
            self._cond.notify_all()

    def wait_until(self, predicate: Callable[[], bool]) -> bool:
        """
        Block until the token is cancelled or predicate() is true.

        Returns:
            bool: True if the token was cancelled
        """
        with self._cond:
            self._cond.wait_for(lambda: self._cancelled or predicate())
            return self._cancelled


class Rollback:
    """Stack of compensating actions for one container."""

    def __init__(self, token: CancelToken, name: str = ""):
        """
        Args:
            token: Cancellation token shared by the whole run
            name: Label used for the listener thread and log messages
        """
        self.name = name
        self._token = token
        self._actions: List[RollbackFunc] = []
        self._executed = False
        self._closed = False
        self._lock = threading.Lock()
        self._step_lock = threading.Lock()
        self._listener: Optional[threading.Thread] = None

    @property
    def executed(self) -> bool:
        with self._lock:
            return self._executed

    def wait(self):
        """Start listening for cancellation; pair with exactly one close()."""
        self._listener = threading.Thread(
            target=self._listen,
            name=f"rollback-{self.name}",
            daemon=True
        )
        self._listener.start()

    def _listen(self):
        if self._token.wait_until(lambda: self._closed):
            self.run()

    @contextmanager
    def step(self):
        """
        Hold off run() while a pipeline step is in flight.

        A rollback triggered by cancellation starts only after the running
        step has finished and registered its own undo.
        """
        with self._step_lock:
            yield

    def register(self, action: RollbackFunc):
        """
        Push a compensating action.

        If the rollback already ran the action runs at once, so the
        resource is still compensated.
        """
        with self._lock:
            if not self._executed:
                self._actions.append(action)
                return
        logger.warning(f"rollback {self.name}: already executed, compensate late registration now")
        self._invoke(action)

    def run(self):
        """Run registered actions in reverse order, at most once and never after close()."""
        with self._step_lock, self._lock:
            if self._closed or self._executed:
                return
            self._executed = True
            actions = list(reversed(self._actions))
            self._actions = []
            logger.info(f"rollback {self.name}: running {len(actions)} actions")
            for action in actions:
                self._invoke(action)

    def _invoke(self, action: RollbackFunc):
        try:
            action()
        except Exception as e:
            logger.warning(f"rollback {self.name}: compensating action failed: {e}")

    def close(self) -> bool:
        """
        Stop listening; later cancellation no longer triggers run().

        Returns:
            bool: True if the rollback had already executed
        """
        with self._lock:
            self._closed = True
            executed = self._executed
        self._token.notify()
        return executed

    def join(self, timeout: Optional[float] = None):
        """Wait for the listener, including any rollback it started."""
        if self._listener is not None:
            self._listener.join(timeout)
