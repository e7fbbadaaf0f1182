from typing import NamedTuple


class NamespacedName(NamedTuple):
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


def gen_k8s_name(sc) -> str:
    """Subcluster names may contain underscores, which object names cannot."""
    return sc.name.replace("_", "-").lower()


def gen_sts_name(vdb, sc) -> NamespacedName:
    return NamespacedName(vdb.namespace, f"{vdb.name}-{gen_k8s_name(sc)}")


def gen_pod_name(vdb, sc, pod_index: int) -> NamespacedName:
    return NamespacedName(vdb.namespace, f"{vdb.name}-{gen_k8s_name(sc)}-{pod_index}")


def gen_vdb_label_selector(vdb) -> str:
    from vdbop.api.meta import VDB_INSTANCE_LABEL

    return f"{VDB_INSTANCE_LABEL}={vdb.name}"
