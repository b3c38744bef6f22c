"""
Unit tests for the retry queue and its backoff.
"""
from datetime import timedelta

from taskmatrix.domain.tasks.retry import RetryItem, RetryPolicy, RetryQueue

from .fakes import T0


def test_backoff_doubles_and_caps():
    policy = RetryPolicy(base_delay=0.5, factor=2.0, max_delay=3.0)
    assert [policy.delay(n).total_seconds() for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_items_become_due_after_their_delay():
    queue = RetryQueue()
    queue.push(RetryItem(task_ids=("a",)), T0)

    assert queue.pop_due(T0) == []
    due = queue.pop_due(T0 + timedelta(seconds=1))
    assert [i.task_ids for i in due] == [("a",)]
    assert len(queue) == 0


def test_gives_up_after_max_attempts_but_keeps_failure_visible():
    queue = RetryQueue(RetryPolicy(max_attempts=3))
    assert queue.push(RetryItem(task_ids=("a",), attempts=3, last_error="boom"), T0) is None
    assert len(queue) == 0
    assert queue.failed_ids() == {"a"}

    queue.forget(["a"])
    assert queue.failed_ids() == set()


def test_forget_keeps_items_with_work_left():
    queue = RetryQueue()
    queue.push(RetryItem(task_ids=("a", "b")), T0)
    queue.push(RetryItem(task_ids=("a",)), T0)
    queue.push(RetryItem(task_ids=("a",), whole_list=True), T0)

    queue.forget(["a"])
    assert [(i.task_ids, i.whole_list) for i in queue.items()] == [(("b",), False), ((), True)]
