import copy

import pytest
import yaml
from kubernetes import client
from kubernetes.client.rest import ApiException

from vdbop import paths
from vdbop.api.meta import (
    KUBERNETES_VERSION_ANNOTATION,
    SUBCLUSTER_NAME_LABEL,
    VDB_INSTANCE_LABEL,
)
from vdbop.api.vdb import VerticaDB
from vdbop.config import OperatorConfig
from vdbop.controllers.actor import DONE
from vdbop.controllers.gather import GatherState
from vdbop.controllers.podfacts import PodFact, PodFacts
from vdbop.controllers.vdb_reconciler import VerticaDBReconciler
from vdbop.names import NamespacedName, gen_pod_name, gen_sts_name
from vdbop.reviveplanner.planner import Planner
from vdbop.service.kubectl import KubeCtl
from vdbop.service.vadmin.dispatcher import Dispatcher
from vdbop.utils.context import Context


class FakeKubeCtl(KubeCtl):
    """In-memory stand-in for the API server. Update and retry logic comes from KubeCtl."""

    def __init__(self):
        self.pods: dict[NamespacedName, client.V1Pod] = {}
        self.statefulsets: dict[NamespacedName, client.V1StatefulSet] = {}
        self.vdbs: dict[NamespacedName, dict] = {}
        self.secrets: dict[NamespacedName, dict] = {}
        self.events: list = []
        self.deleted_pods: list[NamespacedName] = []
        self.replaced: list[dict] = []
        self.status_replaced: list[dict] = []
        self.conflicts_to_raise = 0
        self.sts_error: ApiException | None = None
        self.calls = 0

    def add_vdb(self, vdb: VerticaDB):
        obj = vdb.to_dict()
        obj["metadata"].setdefault("resourceVersion", "1")
        self.vdbs[vdb.extract_namespaced_name()] = obj

    def get_pod(self, ctx, nm):
        self.calls += 1
        return self.pods.get(nm)

    def delete_pod(self, ctx, nm):
        self.calls += 1
        self.deleted_pods.append(nm)
        self.pods.pop(nm, None)

    def get_statefulset(self, ctx, nm):
        self.calls += 1
        if self.sts_error is not None:
            raise self.sts_error
        return self.statefulsets.get(nm)

    def list_statefulsets(self, ctx, namespace, label_selector):
        self.calls += 1
        key, _, value = label_selector.partition("=")
        return [
            sts
            for nm, sts in self.statefulsets.items()
            if nm.namespace == namespace and (sts.metadata.labels or {}).get(key) == value
        ]

    def get_vdb(self, ctx, nm):
        self.calls += 1
        obj = self.vdbs.get(nm)
        if obj is None:
            return None
        return VerticaDB.from_dict(copy.deepcopy(obj))

    def _replace(self, vdb: VerticaDB, log: list) -> VerticaDB:
        if self.conflicts_to_raise > 0:
            self.conflicts_to_raise -= 1
            raise ApiException(status=409, reason="Conflict")
        obj = vdb.to_dict()
        rv = int(obj["metadata"].get("resourceVersion", "1")) + 1
        obj["metadata"]["resourceVersion"] = str(rv)
        self.vdbs[vdb.extract_namespaced_name()] = obj
        log.append(obj)
        return VerticaDB.from_dict(copy.deepcopy(obj))

    def replace_vdb(self, ctx, vdb):
        self.calls += 1
        return self._replace(vdb, self.replaced)

    def replace_vdb_status(self, ctx, vdb):
        self.calls += 1
        return self._replace(vdb, self.status_replaced)

    def read_secret(self, ctx, nm):
        self.calls += 1
        return self.secrets.get(nm)

    def create_event(self, ctx, namespace, body):
        self.events.append(body)


class FakePodRunner:
    """Records every command and answers with canned output matched by substring."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.copied: list[tuple[NamespacedName, str, str]] = []
        self.gather_output: dict[NamespacedName, str] = {}
        self._responses: list[tuple] = []

    def respond(
        self,
        substring: str,
        stdout: str = "",
        pod: NamespacedName | None = None,
        exc: Exception | None = None,
    ):
        self._responses.append((substring, pod, stdout, exc))

    def exec_in_pod(self, ctx, pod, container, *command):
        ctx.raise_if_done()
        self.calls.append(("exec", pod, command))
        return self._lookup(pod, " ".join(command))

    def copy_to_pod(self, ctx, pod, container, source_file, dest_file, *execute_cmd):
        ctx.raise_if_done()
        with open(source_file) as f:
            content = f.read()
        self.copied.append((pod, dest_file, content))
        self.calls.append(("copy", pod, (dest_file, *execute_cmd)))
        if dest_file == paths.POD_FACT_GATHER_SCRIPT:
            return self.gather_output.get(pod, gather_yaml()), ""
        if not execute_cmd:
            return "", ""
        return self._lookup(pod, " ".join(execute_cmd))

    def exec_vsql(self, ctx, pod, container, *args):
        ctx.raise_if_done()
        self.calls.append(("vsql", pod, args))
        return self._lookup(pod, " ".join(args))

    def commands(self, kind: str | None = None) -> list[tuple]:
        return [c for c in self.calls if kind is None or c[0] == kind]

    def _lookup(self, pod, text):
        for substring, rpod, stdout, exc in self._responses:
            if substring in text and (rpod is None or rpod == pod):
                if exc is not None:
                    raise exc
                return stdout, ""
        return "", ""


class FakeDispatcher(Dispatcher):
    def __init__(self):
        self.calls: list[tuple[str, object]] = []
        self.node_state: dict[str, str] = {}
        self.describe_output = ""
        self.results: dict[str, object] = {}

    def _record(self, name, opts):
        self.calls.append((name, opts))
        return self.results.get(name, DONE)

    def fetch_node_state(self, ctx, opts):
        return dict(self.node_state), self._record("fetch_node_state", opts)

    def restart_node(self, ctx, opts):
        return self._record("restart_node", opts)

    def re_ip(self, ctx, opts):
        return self._record("re_ip", opts)

    def start_db(self, ctx, opts):
        return self._record("start_db", opts)

    def revive_db(self, ctx, opts):
        return self._record("revive_db", opts)

    def describe_db(self, ctx, opts):
        return self.describe_output, self._record("describe_db", opts)

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


class FakePlanner(Planner):
    def __init__(self, compatible: bool = True, reason: str = "", change=None):
        self.compatible = compatible
        self.reason = reason
        self.change = change
        self.parsed: list[str] = []
        self.applied = 0

    def parse(self, op):
        self.parsed.append(op)

    def is_compatible(self):
        return self.reason, self.compatible

    def apply_changes(self, vdb):
        self.applied += 1
        if self.change is None:
            return False
        return self.change(vdb)


class RecordingEvents:
    def __init__(self):
        self.events: list[tuple[str, str, str]] = []

    def event(self, vdb, event_type, reason, message):
        self.events.append((event_type, reason, message))

    def reasons(self) -> list[str]:
        return [reason for _, reason, _ in self.events]


def make_vdb(subclusters=(("sc1", 3),), name="vertdb", namespace="default", status=None, annotations=None, **spec):
    spec = {"subclusters": [{"name": n, "size": s} for n, s in subclusters], **spec}
    obj = {
        "metadata": {"name": name, "namespace": namespace, "uid": "abcd-1234", "annotations": annotations or {}},
        "spec": spec,
    }
    if status is not None:
        obj["status"] = status
    return VerticaDB.from_dict(obj)


def make_pod(
    vdb,
    sc_index: int,
    pod_index: int,
    running: bool = True,
    ip: str | None = None,
    labels: dict | None = None,
    dc_annotations: bool = True,
    liveness_probe: client.V1Probe | None = None,
    started: bool | None = None,
    env: list | None = None,
) -> client.V1Pod:
    sc = vdb.spec.subclusters[sc_index]
    nm = gen_pod_name(vdb, sc, pod_index)
    annotations = {KUBERNETES_VERSION_ANNOTATION: "v1.25.0"} if dc_annotations else {}
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=nm.name, namespace=nm.namespace, labels=labels or {}, annotations=annotations),
        spec=client.V1PodSpec(
            hostname=nm.name,
            subdomain=vdb.name,
            containers=[
                client.V1Container(name="server", image=vdb.spec.image, env=env, liveness_probe=liveness_probe)
            ],
        ),
        status=client.V1PodStatus(
            phase="Running" if running else "Pending",
            pod_ip=ip or f"10.0.{sc_index}.{pod_index + 1}",
            container_statuses=[
                client.V1ContainerStatus(
                    name="server",
                    image=vdb.spec.image,
                    image_id="",
                    ready=running,
                    restart_count=0,
                    started=started,
                )
            ],
        ),
    )


def make_sts(vdb, sc_index: int, replicas: int | None = None, update_revision: str = "rev-1", sc_name=None):
    sc = vdb.spec.subclusters[sc_index] if sc_name is None else None
    name = gen_sts_name(vdb, sc) if sc is not None else NamespacedName(vdb.namespace, f"{vdb.name}-{sc_name}")
    labels = {VDB_INSTANCE_LABEL: vdb.name, SUBCLUSTER_NAME_LABEL: sc.name if sc is not None else sc_name}
    sts = client.V1StatefulSet(
        metadata=client.V1ObjectMeta(name=name.name, namespace=name.namespace, labels=labels),
        spec=client.V1StatefulSetSpec(
            replicas=replicas if replicas is not None else (sc.size if sc is not None else 0),
            selector=client.V1LabelSelector(match_labels=labels),
            service_name=vdb.name,
            template=client.V1PodTemplateSpec(),
        ),
        status=client.V1StatefulSetStatus(replicas=replicas or 0, update_revision=update_revision),
    )
    return name, sts


def gather_yaml(**fields) -> str:
    return yaml.safe_dump(GatherState(**fields).model_dump(by_alias=True))


def pod_fact(vdb, sc_index: int, pod_index: int, **kw) -> PodFact:
    sc = vdb.spec.subclusters[sc_index]
    nm = gen_pod_name(vdb, sc, pod_index)
    defaults = dict(
        subcluster_name=sc.name,
        pod_index=pod_index,
        is_primary=sc.is_primary,
        exists=True,
        is_pod_running=True,
        managed_by_parent=True,
        dns_name=f"{nm.name}.{vdb.name}",
        pod_ip=f"10.0.{sc_index}.{pod_index + 1}",
        has_dc_table_annotations=True,
        eula_accepted=True,
        vnode_name=f"v_vertdb_node{sc_index * 10 + pod_index + 1:04d}",
    )
    defaults.update(kw)
    return PodFact(name=nm, **defaults)


def preset_pfacts(vrec, prunner, *pods: PodFact) -> PodFacts:
    """PodFacts that already hold a collected snapshot, so collect() is a no-op."""
    pfacts = PodFacts(vrec, prunner)
    pfacts.detail = {pf.name: pf for pf in pods}
    pfacts.collected_generation = pfacts.generation
    return pfacts


@pytest.fixture
def ctx():
    return Context.background()


@pytest.fixture
def kubectl():
    return FakeKubeCtl()


@pytest.fixture
def prunner():
    return FakePodRunner()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def recorder():
    return RecordingEvents()


@pytest.fixture
def vrec(kubectl, dispatcher, recorder):
    return VerticaDBReconciler(kubectl, dispatcher, events=recorder, config=OperatorConfig())


__all__ = [
    "FakeDispatcher",
    "FakeKubeCtl",
    "FakePlanner",
    "FakePodRunner",
    "RecordingEvents",
    "gather_yaml",
    "make_pod",
    "make_sts",
    "make_vdb",
    "pod_fact",
    "preset_pfacts",
]
