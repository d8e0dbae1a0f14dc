import threading
import time

import pytest

from courier.context import Context, ErrorGroup, background
from courier.exceptions import Cancelled, DeadlineExceeded, SiblingCancelled


def test_cancel_runs_callbacks_once():
    ctx = background()
    seen = []
    ctx.add_callback(seen.append)
    ctx.cancel()
    ctx.cancel(DeadlineExceeded())

    assert ctx.done()
    assert len(seen) == 1
    assert isinstance(seen[0], Cancelled)
    assert not isinstance(ctx.err(), DeadlineExceeded)


def test_removed_callback_does_not_run():
    ctx = background()
    seen = []
    handle = ctx.add_callback(seen.append)
    ctx.remove_callback(handle)
    ctx.cancel()
    assert seen == []


def test_callback_on_done_context_runs_immediately():
    ctx = background()
    ctx.cancel()
    seen = []
    ctx.add_callback(seen.append)
    assert len(seen) == 1


def test_parent_cancels_child():
    parent = background()
    child = parent.child()
    parent.cancel()
    assert child.done()
    with pytest.raises(Cancelled):
        child.check()


def test_deadline():
    ctx = Context(timeout=0.01)
    assert ctx.wait(5)
    assert isinstance(ctx.err(), DeadlineExceeded)
    assert ctx.remaining() == 0.0


def test_child_deadline_capped_by_parent():
    parent = Context(timeout=10)
    child = parent.child(timeout=100)
    assert child.deadline == parent.deadline
    parent.cancel()


def test_error_group_success():
    ctx = background()
    results = []
    group = ErrorGroup(ctx, "test")
    for i in range(3):
        group.submit(lambda c, i=i: results.append(i), f"t{i}")
    group.wait()

    assert sorted(results) == [0, 1, 2]
    assert group.failed is None
    assert not ctx.done()


def test_error_group_first_failure_cancels_siblings():
    """
    Test the first error wins and siblings observe cancellation
    """
    ctx = background()
    started = threading.Event()
    observed = []

    def slow(c):
        started.set()
        if not c.wait(5):
            raise AssertionError("sibling was not cancelled")
        observed.append(c.err())
        c.check()

    def fail(c):
        started.wait(5)
        raise ValueError("boom")

    group = ErrorGroup(ctx, "test")
    group.submit(slow, "slow")
    group.submit(fail, "fail")

    with pytest.raises(ValueError, match="boom"):
        group.wait()

    assert group.failed == "fail"
    assert isinstance(observed[0], SiblingCancelled)
    assert not ctx.done()


def test_error_group_waits_for_all():
    ctx = background()
    done = []

    def task(c):
        time.sleep(0.05)
        done.append(1)

    group = ErrorGroup(ctx)
    group.submit(task)
    group.submit(task)
    group.wait()
    assert len(done) == 2
