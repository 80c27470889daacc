# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

import pytest

from workqueue import RateLimitingQueue, ShutDown


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def queue(clock):
    return RateLimitingQueue(base_delay=0.5, max_delay=4.0, clock=clock)


def test_add_coalesces_keys(queue):
    """Check a key added twice before being processed is queued once."""
    queue.add("a")
    queue.add("a")
    queue.add("b")

    assert len(queue) == 2
    assert queue.get() == "a"
    assert queue.get() == "b"


def test_key_added_while_processing(queue):
    """Check a key is never handed out twice at the same time."""
    queue.add("a")
    assert queue.get() == "a"

    queue.add("a")
    assert len(queue) == 0

    queue.done("a")
    assert len(queue) == 1
    assert queue.get() == "a"


def test_add_after(queue, clock):
    """Check delayed keys are handed out once they are due."""
    queue.add_after("a", 5)
    with pytest.raises(TimeoutError):
        queue.get(timeout=0)

    clock.now += 5
    assert queue.get(timeout=0) == "a"


def test_add_after_without_delay(queue):
    """Check keys without delay are queued at once."""
    queue.add_after("a", 0)
    assert len(queue) == 1


def test_backoff(queue):
    """Check the backoff doubles per failure up to its maximum and resets on forget."""
    assert [queue.when("a") for _ in range(5)] == [0.5, 1.0, 2.0, 4.0, 4.0]
    assert queue.num_requeues("a") == 5
    assert queue.when("b") == 0.5

    queue.forget("a")
    assert queue.num_requeues("a") == 0
    assert queue.when("a") == 0.5


def test_add_rate_limited(queue, clock):
    """Check failed keys come back after their backoff delay."""
    queue.add_rate_limited("a")
    with pytest.raises(TimeoutError):
        queue.get(timeout=0)

    clock.now += 0.5
    assert queue.get(timeout=0) == "a"


def test_shut_down(queue):
    """Check a shut down queue hands out its remaining keys, then stops."""
    queue.add("a")
    queue.shut_down()
    queue.add("b")

    assert queue.shutting_down
    assert queue.get() == "a"
    with pytest.raises(ShutDown):
        queue.get()
