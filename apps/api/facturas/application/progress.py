"""
Progress notifications for observers of batch ingestion.

The pipeline publishes three typed signals on a ProgressChannel that is
handed to it explicitly:

- BatchCreated: a submission was accepted, with the number of files expected.
- BatchVisible: the submission's active batches show up in persisted state.
- BatchReady: persisted batches account for every expected file.

ProgressMonitor turns snapshots of batch rows into the last two signals.
PendingIndicator is an observer that keeps an optimistic file count until
the submission is ready or a safety timeout expires.
"""

import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from facturas.core import config
from facturas.core.domain.batch import BatchJob

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchCreated:
    submission_id: str
    expected_files: int


@dataclass(frozen=True)
class BatchVisible:
    submission_id: str
    current_total: int


@dataclass(frozen=True)
class BatchReady:
    submission_id: str


ProgressSignal = Union[BatchCreated, BatchVisible, BatchReady]
Subscriber = Callable[[ProgressSignal], None]


class ProgressChannel:
    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, signal: ProgressSignal) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(signal)
            except Exception:
                # One broken observer must not stop the pipeline or the others.
                logger.exception("Progress subscriber failed on %s", type(signal).__name__)


class ProgressMonitor:
    def __init__(
        self,
        channel: ProgressChannel,
        *,
        safety_timeout: float = config.PROGRESS_SAFETY_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.channel = channel
        self._safety_timeout = safety_timeout
        self._clock = clock
        self._expected: Dict[str, Tuple[int, float]] = {}
        self._visible: Set[str] = set()
        self._lock = threading.Lock()

    def batch_created(self, submission_id: str, expected_files: int) -> None:
        with self._lock:
            self._expected[submission_id] = (expected_files, self._clock())
        self.channel.publish(BatchCreated(submission_id, expected_files))

    def observe(self, batches: Iterable[BatchJob]) -> None:
        """Feed a snapshot of active or recent batch rows and emit what changed."""
        active_totals: Dict[str, int] = defaultdict(int)
        persisted_totals: Dict[str, int] = defaultdict(int)
        for batch in batches:
            persisted_totals[batch.submission_id] += batch.total_files
            if batch.is_active:
                active_totals[batch.submission_id] += batch.total_files

        signals: List[ProgressSignal] = []
        with self._lock:
            for submission_id in list(self._visible):
                if active_totals.get(submission_id, 0) == 0:
                    self._visible.discard(submission_id)
            for submission_id, total in active_totals.items():
                if total > 0 and submission_id not in self._visible:
                    self._visible.add(submission_id)
                    signals.append(BatchVisible(submission_id, total))

            now = self._clock()
            for submission_id, (expected, created_at) in list(self._expected.items()):
                if persisted_totals.get(submission_id, 0) >= expected:
                    del self._expected[submission_id]
                    signals.append(BatchReady(submission_id))
                elif now - created_at > self._safety_timeout:
                    del self._expected[submission_id]
                    logger.warning(
                        "Submission %s never reached %s files; no longer waiting",
                        submission_id,
                        expected,
                    )

        for signal in signals:
            self.channel.publish(signal)


class PendingIndicator:
    """Optimistic file counter shown until a submission's batches are persisted."""

    def __init__(
        self,
        channel: ProgressChannel,
        *,
        timeout: float = config.PROGRESS_SAFETY_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._timeout = timeout
        self._clock = clock
        self._pending: Dict[str, Tuple[int, float]] = {}
        self._aggregated: Dict[str, int] = {}
        # Signals arrive on request and worker threads while readers take snapshots.
        self._lock = threading.RLock()
        self.unsubscribe = channel.subscribe(self.handle)

    def handle(self, signal: ProgressSignal) -> None:
        with self._lock:
            if isinstance(signal, BatchCreated):
                self._pending[signal.submission_id] = (signal.expected_files, self._clock())
                self._aggregated.pop(signal.submission_id, None)
            elif isinstance(signal, BatchVisible):
                self._aggregated[signal.submission_id] = signal.current_total
            elif isinstance(signal, BatchReady):
                self._pending.pop(signal.submission_id, None)
                self._aggregated.pop(signal.submission_id, None)

    def displayed_total(self, submission_id: str) -> Optional[int]:
        with self._lock:
            pending = self._pending.get(submission_id)
            if pending is None:
                return None
            expected, started = pending
            if self._clock() - started > self._timeout:
                self._pending.pop(submission_id, None)
                self._aggregated.pop(submission_id, None)
                logger.info("Giving up on pending indicator for submission %s", submission_id)
                return None
            return max(expected, self._aggregated.get(submission_id, 0))

    def snapshot(self) -> Dict[str, int]:
        totals = {}
        with self._lock:
            for submission_id in list(self._pending):
                total = self.displayed_total(submission_id)
                if total is not None:
                    totals[submission_id] = total
        return totals

    def is_pending(self, submission_id: str) -> bool:
        return self.displayed_total(submission_id) is not None
