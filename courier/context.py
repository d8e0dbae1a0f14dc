"""Cancellation contexts and the parallel fan-out primitive.

Every remote operation receives a `Context`. Cancelling a context (or
reaching its deadline) cancels all of its children and runs the
callbacks registered on it, which is how in-flight sessions learn that
they have to stop. `ErrorGroup` runs one thread per task and cancels its
own child context as soon as the first task fails.
"""

from collections.abc import Callable
from itertools import count
from logging import getLogger
import threading
import time
from typing import Any

from .exceptions import Cancelled, DeadlineExceeded, SiblingCancelled

logger = getLogger("courier.context")

_ids = count(1)


class Context:
    """A cancellation scope with an optional deadline."""

    def __init__(
        self, parent: "Context | None" = None, timeout: float | None = None
    ) -> None:
        """Initializes the context.

        Args:
            parent: The context this one is derived from; cancelling the
                parent cancels this context too.
            timeout: Seconds until the context expires on its own.
        """
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._error: Cancelled | None = None
        self._callbacks: dict[int, Callable[[Cancelled], Any]] = {}
        self._timer: threading.Timer | None = None
        self._parent = parent
        self._parent_handle: int | None = None

        self.deadline: float | None = parent.deadline if parent else None
        if timeout is not None:
            deadline = time.monotonic() + timeout
            if self.deadline is None or deadline < self.deadline:
                self.deadline = deadline

        if parent is not None:
            self._parent_handle = parent.add_callback(self.cancel)

        if self.deadline is not None and not self._event.is_set():
            remaining = max(0.0, self.deadline - time.monotonic())
            self._timer = threading.Timer(remaining, self._expire)
            self._timer.daemon = True
            self._timer.start()

    def __enter__(self) -> "Context":
        return self

    def __exit__(self, *exc) -> None:
        self.cancel()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} done={self.done()} deadline={self.deadline}>"

    def child(self, timeout: float | None = None) -> "Context":
        return Context(self, timeout)

    def _expire(self) -> None:
        self.cancel(DeadlineExceeded())

    def cancel(self, error: Cancelled | None = None) -> None:
        """Cancels the context and all of its children.

        Only the first cancellation has an effect; its error is the one
        reported by `err()`.

        Args:
            error: The reason, `Cancelled` when not given.
        """
        with self._lock:
            if self._event.is_set():
                return
            self._error = error if error is not None else Cancelled()
            self._event.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()

        if self._timer is not None:
            self._timer.cancel()
        if self._parent is not None and self._parent_handle is not None:
            self._parent.remove_callback(self._parent_handle)

        for cb in callbacks:
            try:
                cb(self._error)
            except Exception:
                logger.exception("cancel callback %r failed", cb)

    def done(self) -> bool:
        return self._event.is_set()

    def err(self) -> Cancelled | None:
        """Returns the cancellation reason, None while the context is alive."""
        return self._error

    def check(self) -> None:
        """Raises the cancellation reason if the context is done."""
        if self._error is not None:
            raise self._error

    def wait(self, timeout: float | None = None) -> bool:
        """Blocks until the context is done or the timeout passes."""
        return self._event.wait(timeout)

    def remaining(self) -> float | None:
        """Seconds until the deadline, None without deadline."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def add_callback(self, fn: Callable[[Cancelled], Any]) -> int:
        """Registers a function to run once on cancellation.

        When the context is already done the function runs immediately.

        Returns:
            A handle for `remove_callback`.
        """
        handle = next(_ids)
        with self._lock:
            if not self._event.is_set():
                self._callbacks[handle] = fn
                return handle
        fn(self._error)  # type: ignore
        return handle

    def remove_callback(self, handle: int) -> None:
        with self._lock:
            self._callbacks.pop(handle, None)


def background() -> Context:
    """Returns a fresh context that is never cancelled on its own."""
    return Context()


class ErrorGroup:
    """Runs tasks concurrently and stops all of them on the first error.

    Each task is started on its own thread and receives the group
    context. The first task to raise cancels that context with
    `SiblingCancelled`; `wait()` re-raises the first error and logs the
    others.
    """

    def __init__(self, ctx: Context, name: str = "group") -> None:
        self.ctx = ctx.child()
        self.name = name
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._errors: list[tuple[str, BaseException]] = []
        self.failed: str | None = None

    def submit(self, fn: Callable[[Context], Any], label: str = "") -> None:
        """Starts `fn(ctx)` on a new thread.

        Args:
            fn: The task, called with the group context.
            label: Name of the task used in logs, e.g. the host address.
        """
        label = label or f"{self.name}-{len(self._threads)}"

        def run() -> None:
            try:
                fn(self.ctx)
            except BaseException as e:
                with self._lock:
                    self._errors.append((label, e))
                    first = len(self._errors) == 1
                if first:
                    logger.debug("%s: %s failed, cancelling siblings", self.name, label)
                    self.ctx.cancel(SiblingCancelled())

        thread = threading.Thread(target=run, name=f"{self.name}:{label}", daemon=True)
        self._threads.append(thread)
        thread.start()

    def wait(self) -> None:
        """Waits for every task and raises the first error, if any."""
        try:
            for thread in self._threads:
                thread.join()
        finally:
            self.ctx.cancel()

        if not self._errors:
            return

        self.failed, first = self._errors[0]
        for label, e in self._errors[1:]:
            if isinstance(e, SiblingCancelled):
                logger.debug("%s: %s: %s", self.name, label, e)
            else:
                logger.warning("%s: %s: %s", self.name, label, e)
        raise first
