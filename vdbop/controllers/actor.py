from abc import ABC, abstractmethod
from dataclasses import dataclass

from vdbop.utils.context import Context


@dataclass(frozen=True)
class ReconcileResult:
    """Verdict of a reconcile step.

    The default instance means done. Errors are not part of the verdict;
    they are raised and abort the pass on their own.
    """

    requeue: bool = False
    requeue_after: float = 0.0


DONE = ReconcileResult()
REQUEUE = ReconcileResult(requeue=True)


def requeue_after(seconds: float) -> ReconcileResult:
    return ReconcileResult(requeue_after=seconds)


def is_reconcile_aborted(res: ReconcileResult) -> bool:
    return res.requeue or res.requeue_after > 0


class ReconcileActor(ABC):
    @abstractmethod
    def reconcile(self, ctx: Context) -> ReconcileResult:
        pass
