import threading

from facturas.application.progress import (
    BatchCreated,
    BatchReady,
    BatchVisible,
    PendingIndicator,
    ProgressChannel,
    ProgressMonitor,
)
from facturas.core.domain.batch import BatchJob, BatchStatus


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _job(job_id, submission_id, total, status=BatchStatus.PENDING):
    return BatchJob(id=job_id, submission_id=submission_id, status=status, total_files=total)


def _recorder(channel):
    received = []
    channel.subscribe(received.append)
    return received


def test_signals_arrive_in_order_and_visible_fires_once():
    channel = ProgressChannel()
    received = _recorder(channel)
    monitor = ProgressMonitor(channel, clock=FakeClock())

    monitor.batch_created("sub-1", 30)
    monitor.observe([_job("b1", "sub-1", 25)])
    monitor.observe([_job("b1", "sub-1", 25)])
    monitor.observe([_job("b1", "sub-1", 25), _job("b2", "sub-1", 5)])

    assert received == [BatchCreated("sub-1", 30), BatchVisible("sub-1", 25), BatchReady("sub-1")]


def test_ready_counts_finished_chunks_completed_out_of_order():
    channel = ProgressChannel()
    received = _recorder(channel)
    monitor = ProgressMonitor(channel, clock=FakeClock())
    monitor.batch_created("sub-1", 4)

    monitor.observe([_job("b2", "sub-1", 2, BatchStatus.COMPLETED)])
    assert BatchReady("sub-1") not in received

    monitor.observe(
        [_job("b2", "sub-1", 2, BatchStatus.COMPLETED), _job("b1", "sub-1", 2, BatchStatus.FAILED)]
    )

    assert received[-1] == BatchReady("sub-1")
    assert not any(isinstance(signal, BatchVisible) for signal in received)


def test_expectation_is_dropped_after_safety_timeout():
    clock = FakeClock()
    channel = ProgressChannel()
    received = _recorder(channel)
    monitor = ProgressMonitor(channel, safety_timeout=60, clock=clock)
    monitor.batch_created("sub-1", 10)

    clock.now = 61
    monitor.observe([])
    monitor.observe([_job("b1", "sub-1", 10, BatchStatus.COMPLETED)])

    assert received == [BatchCreated("sub-1", 10)]


def test_subscriber_failure_does_not_reach_other_subscribers():
    channel = ProgressChannel()

    def broken(signal):
        raise RuntimeError("observer down")

    channel.subscribe(broken)
    received = _recorder(channel)

    channel.publish(BatchReady("sub-1"))

    assert received == [BatchReady("sub-1")]


def test_unsubscribe_stops_delivery():
    channel = ProgressChannel()
    received = []
    unsubscribe = channel.subscribe(received.append)

    unsubscribe()
    channel.publish(BatchReady("sub-1"))

    assert received == []


def test_pending_indicator_shows_largest_known_total():
    clock = FakeClock()
    channel = ProgressChannel()
    indicator = PendingIndicator(channel, timeout=60, clock=clock)

    channel.publish(BatchCreated("sub-1", 30))
    assert indicator.snapshot() == {"sub-1": 30}

    channel.publish(BatchVisible("sub-1", 25))
    assert indicator.displayed_total("sub-1") == 30

    channel.publish(BatchVisible("sub-1", 40))
    assert indicator.displayed_total("sub-1") == 40

    channel.publish(BatchReady("sub-1"))
    assert indicator.snapshot() == {}
    assert not indicator.is_pending("sub-1")


def test_pending_indicator_gives_up_after_timeout():
    clock = FakeClock()
    channel = ProgressChannel()
    indicator = PendingIndicator(channel, timeout=60, clock=clock)
    channel.publish(BatchCreated("sub-1", 5))

    clock.now = 59
    assert indicator.is_pending("sub-1")
    clock.now = 61
    assert indicator.displayed_total("sub-1") is None
    assert indicator.snapshot() == {}


def test_pending_indicator_handles_signals_from_several_threads():
    channel = ProgressChannel()
    indicator = PendingIndicator(channel, timeout=60)
    errors = []

    def publisher(worker):
        try:
            for n in range(300):
                submission_id = f"sub-{worker}-{n}"
                indicator.handle(BatchCreated(submission_id, 3))
                indicator.handle(BatchVisible(submission_id, 2))
                if n % 2:
                    indicator.handle(BatchReady(submission_id))
        except Exception as exc:
            errors.append(exc)

    def reader():
        try:
            for _ in range(300):
                for total in indicator.snapshot().values():
                    assert total == 3
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=publisher, args=(i,)) for i in range(4)]
    threads += [threading.Thread(target=reader) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(indicator.snapshot()) == 4 * 150
