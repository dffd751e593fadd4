"""
Run lifecycle shared by solvers and estimators.

An instance is IDLE until its first run, RUNNING while solve()/estimate()
executes and DONE after a successful run (back to IDLE after a failure).
Configuration may only change while not RUNNING.
"""

import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Callable, Optional

from rsl_core.errors import LockedError
from rsl_core.metrics import get_metrics
from rsl_core.proto.estimates import EstimationEvent, EstimatorState, EventType

Listener = Callable[[EstimationEvent], None]


class LockableEstimator:
    """
    Base class guarding configuration with an explicit run state.

    Subclasses wrap their run in `with self._running():` and call
    `self._check_unlocked()` from every setter.
    """

    def __init__(self, listener: Optional[Listener] = None):
        self._state = EstimatorState.IDLE
        self._state_lock = threading.Lock()
        self._listener = listener
        self._config = None

    @property
    def metrics(self):
        """Global metrics collector."""
        return get_metrics()

    @property
    def state(self) -> EstimatorState:
        return self._state

    @property
    def is_locked(self) -> bool:
        """True while a run is in progress."""
        return self._state == EstimatorState.RUNNING

    @property
    def config(self):
        return self._config

    @config.setter
    def config(self, config):
        self._check_unlocked()
        self._config = config

    @property
    def listener(self) -> Optional[Listener]:
        return self._listener

    @listener.setter
    def listener(self, listener: Optional[Listener]):
        self._check_unlocked()
        self._listener = listener

    def _check_unlocked(self):
        if self._state == EstimatorState.RUNNING:
            raise LockedError(f"{type(self).__name__} is running")

    def _replace_config(self, **changes):
        """Return a copy of self.config with changes applied and re-validated."""
        self._check_unlocked()
        return replace(self.config, **changes)

    def configure(self, **changes):
        """
        Update configuration fields.

        Raises:
            LockedError: if a run is in progress
            ValueError: if the resulting configuration is invalid
        """
        self.config = self._replace_config(**changes)

    @contextmanager
    def _running(self):
        """Hold the RUNNING state for the duration of a run."""
        with self._state_lock:
            if self._state == EstimatorState.RUNNING:
                raise LockedError(f"{type(self).__name__} is already running")
            self._state = EstimatorState.RUNNING

        succeeded = False
        try:
            yield
            succeeded = True
        finally:
            with self._state_lock:
                self._state = EstimatorState.DONE if succeeded else EstimatorState.IDLE

    def _notify(self, event_type: EventType, iteration: int = None,
                progress: float = None, source=None):
        if self._listener is not None:
            self._listener(EstimationEvent(
                type=event_type,
                source=source if source is not None else self,
                iteration=iteration,
                progress=progress,
            ))
