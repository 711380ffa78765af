from __future__ import annotations

import threading

import pytest

from nerdy_k8s_backup_controller.workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue


def test_add_with_duplicate_key_queues_it_once() -> None:
    queue: RateLimitingQueue[str] = RateLimitingQueue()

    queue.add("storage-system/backup-1")
    queue.add("storage-system/backup-1")
    queue.add("storage-system/backup-2")

    assert len(queue) == 2
    assert queue.get(timeout=0) == ("storage-system/backup-1", False)
    assert queue.get(timeout=0) == ("storage-system/backup-2", False)


def test_add_while_processing_requeues_only_after_done() -> None:
    queue: RateLimitingQueue[str] = RateLimitingQueue()
    queue.add("key")
    item, _ = queue.get(timeout=0)

    queue.add("key")

    assert len(queue) == 0
    queue.done(item)
    assert queue.get(timeout=0) == ("key", False)


def test_get_with_empty_queue_and_timeout_returns_none() -> None:
    queue: RateLimitingQueue[str] = RateLimitingQueue()

    assert queue.get(timeout=0.01) == (None, False)


def test_shut_down_unblocks_waiting_consumer() -> None:
    queue: RateLimitingQueue[str] = RateLimitingQueue()
    results: list[tuple[str | None, bool]] = []
    consumer = threading.Thread(target=lambda: results.append(queue.get()))
    consumer.start()

    queue.shut_down()
    consumer.join(timeout=5)

    assert results == [(None, True)]
    assert queue.shutting_down() is True


def test_add_after_shut_down_is_ignored() -> None:
    queue: RateLimitingQueue[str] = RateLimitingQueue()
    queue.shut_down()

    queue.add("key")
    queue.add_after("key", 0.01)

    assert len(queue) == 0


def test_add_after_delivers_item_once_delay_elapses() -> None:
    queue: RateLimitingQueue[str] = RateLimitingQueue()

    queue.add_after("key", 0.01)

    assert queue.get(timeout=5) == ("key", False)


def test_add_after_with_zero_delay_adds_immediately() -> None:
    queue: RateLimitingQueue[str] = RateLimitingQueue()

    queue.add_after("key", 0)

    assert len(queue) == 1


def test_rate_limiter_with_repeated_failures_doubles_delay_until_cap() -> None:
    limiter: ItemExponentialFailureRateLimiter[str] = ItemExponentialFailureRateLimiter(
        base_delay_seconds=0.005,
        max_delay_seconds=0.02,
    )

    delays = [limiter.when("key") for _ in range(5)]

    assert delays == [0.005, 0.01, 0.02, 0.02, 0.02]
    assert limiter.num_requeues("key") == 5
    assert limiter.num_requeues("other") == 0


def test_rate_limiter_forget_resets_backoff() -> None:
    limiter: ItemExponentialFailureRateLimiter[str] = ItemExponentialFailureRateLimiter()
    limiter.when("key")
    limiter.when("key")

    limiter.forget("key")

    assert limiter.num_requeues("key") == 0
    assert limiter.when("key") == pytest.approx(0.005)


def test_rate_limiter_with_negative_delay_rejects_configuration() -> None:
    with pytest.raises(ValueError, match="backoff delays"):
        ItemExponentialFailureRateLimiter(base_delay_seconds=-1)


def test_add_rate_limited_counts_requeues_and_delivers_item() -> None:
    queue: RateLimitingQueue[str] = RateLimitingQueue(
        ItemExponentialFailureRateLimiter(base_delay_seconds=0.001, max_delay_seconds=0.01)
    )

    queue.add_rate_limited("key")

    assert queue.num_requeues("key") == 1
    assert queue.get(timeout=5) == ("key", False)

    queue.forget("key")
    assert queue.num_requeues("key") == 0
