# services/progress.py
"""
Progress reporting and cooperative cancellation for long-running mining passes.

The reporter is a narrow capability with a single `report()` call. Everything
else a stage needs while it runs (cancellation signal, abort bookkeeping, a
result sink that several workers may append to) lives on ExecutionContext, which
the caller builds and hands to the stage.
"""

import logging
import threading
from typing import Any, List, Optional, Protocol

logger = logging.getLogger(__name__)


class MiningAborted(Exception):
    """The cancellation signal fired while a mining pass was running."""


class ProgressReporter(Protocol):
    def report(self, units_done: int, units_total: int, is_final: bool) -> Optional[bool]:
        """Receive a checkpoint. Returning False asks the running pass to stop."""
        ...


class NullProgressReporter:
    def report(self, units_done: int, units_total: int, is_final: bool) -> Optional[bool]:
        return None


class LoggingProgressReporter:
    """Default reporter: logs checkpoints, never requests a stop."""

    def __init__(self, name: str = "role_analysis", level: int = logging.DEBUG):
        self._logger = logging.getLogger(f"{__name__}.{name}")
        self._level = level

    def report(self, units_done: int, units_total: int, is_final: bool) -> Optional[bool]:
        self._logger.log(
            self._level,
            "progress %d/%d%s",
            units_done,
            units_total,
            " (final)" if is_final else "",
        )
        return None


class ExecutionContext:
    """
    Progress + cancellation + result sink for one analysis run.

    Safe to share between worker threads. The reporter is always invoked outside
    the internal lock so a slow or re-entrant reporter cannot block other workers.
    """

    def __init__(
            self,
            reporter: Optional[ProgressReporter] = None,
            cancel_event: Optional[threading.Event] = None,
            poll_interval: int = 10000,
    ):
        self.reporter = reporter or LoggingProgressReporter()
        self._cancel_event = cancel_event or threading.Event()
        self._lock = threading.Lock()
        self._aborted = False
        self._results: List[Any] = []
        self.poll_interval = max(1, int(poll_interval))

    # ---- cancellation ----

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def aborted(self) -> bool:
        with self._lock:
            return self._aborted

    def mark_aborted(self, phase: str = "") -> None:
        with self._lock:
            already = self._aborted
            self._aborted = True
        if not already:
            logger.warning("Role analysis aborted%s", f" during {phase}" if phase else "")

    def poll(self) -> None:
        """Raise MiningAborted if cancellation was requested."""
        if self._cancel_event.is_set():
            raise MiningAborted()

    # ---- progress ----

    def checkpoint(self, phase: str, done: int, total: int, final: bool = False) -> None:
        """Report progress for `phase`, then honour any pending stop request."""
        logger.debug("checkpoint phase=%s done=%d total=%d final=%s", phase, done, total, final)
        keep_going = self.reporter.report(done, total, final)
        if keep_going is False:
            self.cancel()
        self.poll()

    # ---- result sink ----

    def collect(self, item: Any) -> None:
        with self._lock:
            self._results.append(item)

    def results(self) -> List[Any]:
        with self._lock:
            return list(self._results)


def ensure_context(context: Optional[ExecutionContext]) -> ExecutionContext:
    return context if context is not None else ExecutionContext()
