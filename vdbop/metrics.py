from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

VDB_LABELS = ["namespace", "verticadb"]


class OperatorMetrics:
    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.nodes_restart_duration = Histogram(
            "vertica_nodes_restart_time_seconds",
            "The number of seconds it took to restart database nodes",
            VDB_LABELS,
            registry=registry,
        )
        self.nodes_restart_attempt = Counter(
            "vertica_nodes_restart_attempted",
            "The number of times we attempted to restart down nodes",
            VDB_LABELS,
            registry=registry,
        )
        self.nodes_restart_failed = Counter(
            "vertica_nodes_restart_failed",
            "The number of times we failed when attempting to restart down nodes",
            VDB_LABELS,
            registry=registry,
        )
        self.cluster_restart_duration = Histogram(
            "vertica_cluster_restart_time_seconds",
            "The number of seconds it took to do a full cluster restart",
            VDB_LABELS,
            registry=registry,
        )
        self.cluster_restart_attempt = Counter(
            "vertica_cluster_restart_attempted",
            "The number of times we attempted a full cluster restart",
            VDB_LABELS,
            registry=registry,
        )
        self.cluster_restart_failure = Counter(
            "vertica_cluster_restart_failed",
            "The number of times we failed when attempting a full cluster restart",
            VDB_LABELS,
            registry=registry,
        )


_metrics: OperatorMetrics | None = None


def get_metrics() -> OperatorMetrics:
    global _metrics
    if _metrics is None:
        _metrics = OperatorMetrics()
    return _metrics


def make_vdb_labels(vdb) -> dict[str, str]:
    return {"namespace": vdb.namespace, "verticadb": vdb.name}
