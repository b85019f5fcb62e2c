import threading
import time

from harvester_provider.services.workqueue import WorkQueue


KEY = ("team-a", "alpha-cp-0")


def test_duplicate_adds_are_collapsed():
    queue = WorkQueue()
    queue.add(KEY)
    queue.add(KEY)
    assert len(queue) == 1
    assert queue.get(timeout=0) == KEY
    assert queue.get(timeout=0) is None


def test_key_in_flight_is_not_handed_out_twice():
    queue = WorkQueue()
    queue.add(KEY)
    assert queue.get(timeout=0) == KEY

    queue.add(KEY)
    assert queue.get(timeout=0.05) is None

    queue.done(KEY)
    assert queue.get(timeout=0) == KEY


def test_done_without_readd_leaves_queue_empty():
    queue = WorkQueue()
    queue.add(KEY)
    queue.get(timeout=0)
    queue.done(KEY)
    assert len(queue) == 0


def test_add_after_delays_delivery():
    queue = WorkQueue()
    queue.add_after(KEY, 0.1)
    assert queue.get(timeout=0) is None

    started = time.monotonic()
    assert queue.get(timeout=2) == KEY
    assert time.monotonic() - started >= 0.05


def test_earliest_deadline_wins():
    queue = WorkQueue()
    queue.add_after(KEY, 60)
    queue.add_after(KEY, 0.05)
    assert queue.get(timeout=2) == KEY


def test_rate_limited_backoff_doubles_and_caps():
    queue = WorkQueue(backoff_base_sec=0.01, backoff_max_sec=0.03)
    assert queue.add_rate_limited(KEY) == 0.01
    assert queue.add_rate_limited(KEY) == 0.02
    assert queue.add_rate_limited(KEY) == 0.03
    assert queue.num_requeues(KEY) == 3

    queue.forget(KEY)
    assert queue.num_requeues(KEY) == 0
    assert queue.get(timeout=2) == KEY


def test_get_wakes_on_add_from_other_thread():
    queue = WorkQueue()
    timer = threading.Timer(0.05, queue.add, args=(KEY,))
    timer.start()
    try:
        assert queue.get(timeout=2) == KEY
    finally:
        timer.cancel()


def test_shutdown_releases_waiters_and_drops_adds():
    queue = WorkQueue()
    results = []
    waiter = threading.Thread(target=lambda: results.append(queue.get()))
    waiter.start()

    queue.shutdown()
    waiter.join(timeout=2)

    assert results == [None]
    queue.add(KEY)
    assert len(queue) == 0
    assert queue.is_shutdown
