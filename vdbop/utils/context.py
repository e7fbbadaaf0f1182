import threading
import time

from vdbop.errors import ReconcileCancelled


class Context:
    """Cancellation and deadline signal carried through a reconcile pass.

    Every blocking call into the Kubernetes API or a pod checks the context
    first, so a cancelled pass stops at the next remote call.
    """

    def __init__(self, deadline: float | None = None, parent: "Context | None" = None):
        self.deadline = deadline
        self.parent = parent
        self._cancelled = threading.Event()

    @classmethod
    def background(cls) -> "Context":
        return cls()

    def with_timeout(self, seconds: float) -> "Context":
        deadline = time.monotonic() + seconds
        if self.deadline is not None:
            deadline = min(deadline, self.deadline)
        return Context(deadline=deadline, parent=self)

    def cancel(self):
        self._cancelled.set()

    def cancelled(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self.parent is not None and self.parent.cancelled()

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def done(self) -> bool:
        return self.cancelled() or self.expired()

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(self.deadline - time.monotonic(), 0.0)

    def raise_if_done(self):
        if self.cancelled():
            raise ReconcileCancelled("reconcile pass was cancelled")
        if self.expired():
            raise ReconcileCancelled("reconcile pass ran past its deadline")
