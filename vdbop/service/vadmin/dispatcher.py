from abc import ABC, abstractmethod

from vdbop.controllers.actor import ReconcileResult
from vdbop.service.vadmin.opts import (
    DescribeDBOptions,
    FetchNodeStateOptions,
    ReIPOptions,
    RestartNodeOptions,
    ReviveDBOptions,
    StartDBOptions,
)
from vdbop.utils.context import Context

STATE_UP = "UP"
STATE_DOWN = "DOWN"


class Dispatcher(ABC):
    """Runs admin commands against the database from an initiator pod.

    Each call returns a verdict. A requeue verdict means the command hit a
    condition worth retrying on the next pass. Failures are raised.
    """

    @abstractmethod
    def fetch_node_state(self, ctx: Context, opts: FetchNodeStateOptions) -> tuple[dict[str, str], ReconcileResult]:
        """Return the cluster-wide state of each requested vnode, keyed by vnode name."""

    @abstractmethod
    def restart_node(self, ctx: Context, opts: RestartNodeOptions) -> ReconcileResult:
        pass

    @abstractmethod
    def re_ip(self, ctx: Context, opts: ReIPOptions) -> ReconcileResult:
        pass

    @abstractmethod
    def start_db(self, ctx: Context, opts: StartDBOptions) -> ReconcileResult:
        pass

    @abstractmethod
    def revive_db(self, ctx: Context, opts: ReviveDBOptions) -> ReconcileResult:
        pass

    @abstractmethod
    def describe_db(self, ctx: Context, opts: DescribeDBOptions) -> tuple[str, ReconcileResult]:
        """Return the raw description of the database found in communal storage."""
