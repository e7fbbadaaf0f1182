from .actor import DONE, REQUEUE, ReconcileActor, ReconcileResult, is_reconcile_aborted, requeue_after

__all__ = ["DONE", "REQUEUE", "ReconcileActor", "ReconcileResult", "is_reconcile_aborted", "requeue_after"]
