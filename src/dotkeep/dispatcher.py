"""Fan-out of independent state checks with results collected in arrival order."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from queue import Empty, Queue

from .models import EntryStateResult, PackageCheckResult, PathState, SubEntryKey

logger = logging.getLogger(__name__)

CheckResult = EntryStateResult | PackageCheckResult

DEFAULT_WORKERS = 8


class CheckDispatcher:
    """Runs one task per entry (or package) off the owner's thread.

    Every task reports exactly one tagged result into a queue; the owner
    pulls whatever has arrived with :meth:`drain` and never blocks on a task.
    """

    def __init__(self, max_workers: int = DEFAULT_WORKERS) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dotkeep-check")
        self._results: Queue[CheckResult] = Queue()
        self._lock = threading.Lock()
        self._pending: set[Future[None]] = set()

    def submit_entry(self, key: SubEntryKey, check: Callable[[], PathState]) -> None:
        def task() -> None:
            try:
                state = check()
            except Exception:  # noqa: BLE001
                logger.exception("state check for %s failed", key)
                state = PathState.MISSING
            self._results.put(EntryStateResult(key=key, state=state))

        self._track(self._executor.submit(task))

    def submit_package(self, app: int, check: Callable[[], tuple[str, bool]]) -> None:
        def task() -> None:
            try:
                method, installed = check()
            except Exception:  # noqa: BLE001
                logger.exception("package check for application %d failed", app)
                method, installed = "none", False
            self._results.put(PackageCheckResult(app=app, method=method, installed=installed))

        self._track(self._executor.submit(task))

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def drain(self) -> list[CheckResult]:
        """Return every result that has arrived so far without blocking."""

        results: list[CheckResult] = []
        while True:
            try:
                results.append(self._results.get_nowait())
            except Empty:
                return results

    def wait(self, timeout: float | None = None) -> bool:
        """Block until all submitted tasks finish. Returns ``False`` on timeout."""

        with self._lock:
            pending = set(self._pending)
        if not pending:
            return True
        _done, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True, cancel_futures=True)

    def _track(self, future: Future[None]) -> None:
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future[None]) -> None:
        with self._lock:
            self._pending.discard(future)
