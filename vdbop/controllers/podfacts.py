import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import Callable

from kubernetes.client.rest import ApiException

from vdbop import names, paths
from vdbop.api.meta import (
    CATALOG_PATH_ENV,
    KUBERNETES_VERSION_ANNOTATION,
    PRIMARY_SUBCLUSTER_TYPE,
    STS_REVISION_LABEL,
    SUBCLUSTER_NAME_LABEL,
    SUBCLUSTER_TRANSIENT_LABEL,
    SUBCLUSTER_TYPE_LABEL,
)
from vdbop.api.vdb import NODES_HAVE_READ_ONLY_STATE_VERSION, InitPolicy, Subcluster, VerticaDB
from vdbop.controllers.gather import GatherState, gen_gather_script, parse_gather_state
from vdbop.errors import GatherError, PodExecError, QueryParseError
from vdbop.names import NamespacedName
from vdbop.utils.context import Context

logger = logging.getLogger(__name__)


@dataclass
class PodFact:
    """Observed state of one pod at the time facts were collected."""

    name: NamespacedName
    subcluster_name: str = ""
    subcluster_oid: str = ""
    pod_index: int = 0
    is_primary: bool = False
    is_transient: bool = False

    exists: bool = False
    is_pod_running: bool = False
    # The pod index is within the replica count of its StatefulSet
    managed_by_parent: bool = False
    # The pod index is beyond the declared subcluster size
    pending_delete: bool = False
    sts_revision_pending: bool = False
    dns_name: str = ""
    pod_ip: str = ""
    image: str = ""
    catalog_path: str = ""
    has_dc_table_annotations: bool = False

    is_installed: bool = False
    # admintools.conf exists but no install indicator; must be moved aside before install
    has_stale_admintools_conf: bool = False
    compat21_node_name: str = ""

    db_exists: bool = False
    vnode_name: str = ""
    shard_subscriptions: int = 0

    up_node: bool = False
    read_only: bool = False
    startup_in_progress: bool = False

    eula_accepted: bool = False
    dir_exists: dict[str, bool] = field(default_factory=dict)
    file_exists: dict[str, bool] = field(default_factory=dict)
    config_logrotate_writable: bool = False
    local_data_size: int = 0
    local_data_avail: int = 0
    max_depot_size: int = 0
    depot_disk_percent_size: str = ""
    agent_running: bool = False
    image_has_agent_keys: bool = False
    is_http_server_running: bool = False

    def set_depot_details(self, op: str):
        op = op.strip()
        if not op:
            return
        cols = op.splitlines()[0].split("|")
        if len(cols) != 2:
            raise QueryParseError(f"expected 2 columns from storage_locations query but got {len(cols)}")
        try:
            self.max_depot_size = int(cols[0])
        except ValueError as e:
            raise QueryParseError(f"depot max size is not a number: {cols[0]!r}") from e
        self.depot_disk_percent_size = cols[1]

    def need_agent_keys_copy(self) -> bool:
        if not self.image_has_agent_keys:
            return False
        return not (
            self.file_exists.get(paths.AGENT_KEY_FILE)
            and self.file_exists.get(paths.AGENT_CERT_FILE)
            and self.file_exists.get(paths.VERTICA_API_KEYS_FILE)
        )


CheckerFunc = Callable[[Context, VerticaDB, PodFact, GatherState], None]


def check_is_installed(vdb: VerticaDB, pf: PodFact, gs: GatherState):
    pf.is_installed = False
    scs = vdb.find_subcluster_status(pf.subcluster_name)
    if scs is not None:
        pf.is_installed = scs.install_count > pf.pod_index
    if not pf.is_pod_running:
        return

    if vdb.spec.init_policy == InitPolicy.SCHEDULE_ONLY:
        # No install indicator is ever written in this mode, so go by
        # admintools.conf. The compat21 node name can't be known.
        if not pf.is_installed:
            pf.is_installed = gs.file_exists.get(paths.ADMINTOOLS_CONF, False)
        pf.compat21_node_name = ""
        return

    pf.is_installed = gs.install_indicator_exists
    if not pf.is_installed:
        pf.has_stale_admintools_conf = gs.file_exists.get(paths.ADMINTOOLS_CONF, False)
    else:
        pf.compat21_node_name = gs.compat21_node_name


def check_is_db_created(vdb: VerticaDB, pf: PodFact, gs: GatherState):
    pf.db_exists = False
    scs = vdb.find_subcluster_status(pf.subcluster_name)
    if scs is not None:
        pf.db_exists = scs.added_to_db_count > pf.pod_index
        if pf.pod_index < len(scs.detail):
            pf.vnode_name = scs.detail[pf.pod_index].vnode_name
    if not pf.is_pod_running:
        return
    pf.db_exists = gs.db_exists
    pf.vnode_name = gs.vnode_name


def check_for_simple_gather_state_mapping(vdb: VerticaDB, pf: PodFact, gs: GatherState):
    if not pf.is_pod_running:
        return
    pf.eula_accepted = gs.eula_accepted
    pf.dir_exists = dict(gs.dir_exists)
    pf.file_exists = dict(gs.file_exists)
    pf.config_logrotate_writable = gs.config_logrotate_writable
    pf.local_data_size = gs.local_data_size
    pf.local_data_avail = gs.local_data_avail
    pf.agent_running = gs.agent_running
    pf.image_has_agent_keys = gs.image_has_agent_keys
    pf.is_http_server_running = gs.is_http_server_running
    # Matches the liveness probe, which only checks for the process.
    pf.up_node = pf.db_exists and gs.vertica_pid_running


def check_if_node_is_doing_startup(vdb: VerticaDB, pf: PodFact, gs: GatherState):
    pf.startup_in_progress = False
    if not pf.db_exists or not pf.is_pod_running or pf.up_node or not gs.vertica_pid_running:
        return
    pf.startup_in_progress = not gs.startup_complete


def parse_node_state_and_read_only(stdout: str) -> tuple[bool, str]:
    """Parse a ``subcluster_oid[|is_readonly]`` row into (read_only, subcluster_oid)."""
    stdout = stdout.strip()
    if not stdout:
        return False, ""
    cols = stdout.splitlines()[0].split("|")
    if len(cols) > 2:
        raise QueryParseError(f"expected at most 2 columns from node query but got {len(cols)}")
    read_only = len(cols) == 2 and cols[1] == "t"
    return read_only, cols[0]


def set_shard_subscription(op: str, pf: PodFact):
    op = op.strip()
    if not op:
        return
    line = op.splitlines()[0]
    try:
        pf.shard_subscriptions = int(line)
    except ValueError as e:
        raise QueryParseError(f"shard subscription count is not a number: {line!r}") from e


def _without_ctx(fn) -> CheckerFunc:
    def checker(ctx: Context, vdb: VerticaDB, pf: PodFact, gs: GatherState):
        fn(vdb, pf, gs)

    checker.__name__ = fn.__name__
    return checker


def gen_pod_names(pods: list[PodFact]) -> str:
    return ", ".join(pf.name.name for pf in pods)


def get_host_list(pods: list[PodFact]) -> list[str]:
    return [pf.pod_ip for pf in pods]


class PodFacts:
    """Snapshot of every pod of a VerticaDB.

    Facts are collected once per generation. Anything that changes the state
    of the pods or the database must call invalidate() so that the next
    collect() goes back out to the pods.
    """

    def __init__(self, vrec, prunner, override_func: CheckerFunc | None = None):
        self.vrec = vrec
        self.prunner = prunner
        self.override_func = override_func
        self.detail: dict[NamespacedName, PodFact] = {}
        self.generation = 1
        self.collected_generation = 0

    @property
    def need_collection(self) -> bool:
        return self.collected_generation != self.generation

    def invalidate(self):
        self.generation += 1

    def collect(self, ctx: Context, vdb: VerticaDB):
        if not self.need_collection:
            return
        generation = self.generation
        self.detail = {}
        for sc in self._find_subclusters(ctx, vdb):
            self._collect_subcluster(ctx, vdb, sc)
        self.collected_generation = generation

    def _find_subclusters(self, ctx: Context, vdb: VerticaDB) -> list[Subcluster]:
        """Subclusters in the spec plus any whose StatefulSet outlived its removal from the spec."""
        subclusters = list(vdb.spec.subclusters)
        declared = {sc.name for sc in subclusters}
        for sts in self.vrec.kubectl.list_statefulsets(ctx, vdb.namespace, names.gen_vdb_label_selector(vdb)):
            labels = sts.metadata.labels or {}
            sc_name = labels.get(SUBCLUSTER_NAME_LABEL)
            if not sc_name or sc_name in declared:
                continue
            declared.add(sc_name)
            # Size 0 puts every pod of the subcluster in pending delete
            subclusters.append(
                Subcluster(
                    name=sc_name,
                    size=0,
                    is_primary=labels.get(SUBCLUSTER_TYPE_LABEL) == PRIMARY_SUBCLUSTER_TYPE,
                )
            )
        return subclusters

    def _collect_subcluster(self, ctx: Context, vdb: VerticaDB, sc: Subcluster):
        sts = self.vrec.kubectl.get_statefulset(ctx, names.gen_sts_name(vdb, sc))
        max_sts_size = sc.size
        if sts is not None and sts.spec.replicas is not None and sts.spec.replicas > max_sts_size:
            max_sts_size = sts.spec.replicas
        for i in range(max_sts_size):
            self._collect_pod_by_sts_index(ctx, vdb, sc, sts, i)

    def _collect_pod_by_sts_index(self, ctx: Context, vdb: VerticaDB, sc: Subcluster, sts, pod_index: int):
        pf = PodFact(
            name=names.gen_pod_name(vdb, sc, pod_index),
            subcluster_name=sc.name,
            is_primary=sc.is_primary,
            pod_index=pod_index,
        )
        if sts is not None and sts.spec.replicas is not None:
            pf.managed_by_parent = pod_index < sts.spec.replicas

        pod = self.vrec.kubectl.get_pod(ctx, pf.name)
        if pod is not None:
            container = server_container(pod, self.vrec.config.exec.server_container)
            labels = pod.metadata.labels or {}
            pf.exists = True
            pf.is_pod_running = pod.status is not None and pod.status.phase == "Running"
            pf.dns_name = f"{pod.spec.hostname}.{pod.spec.subdomain}"
            pf.pod_ip = (pod.status.pod_ip if pod.status is not None else None) or ""
            pf.is_transient = labels.get(SUBCLUSTER_TRANSIENT_LABEL, "").lower() in ("1", "t", "true")
            pf.pending_delete = pod_index >= sc.size
            pf.image = container.image or ""
            pf.has_dc_table_annotations = KUBERNETES_VERSION_ANNOTATION in (pod.metadata.annotations or {})
            pf.catalog_path = _get_env_value(container, CATALOG_PATH_ENV, vdb.spec.local.get_catalog_path())
            pf.sts_revision_pending = _is_sts_revision_pending(sts, pod)

        gs = GatherState()
        for fn in self._checkers():
            fn(ctx, vdb, pf, gs)

        self.detail[pf.name] = pf

    def _checkers(self) -> list[CheckerFunc]:
        fns: list[CheckerFunc] = [
            self.run_gather,
            _without_ctx(check_is_installed),
            _without_ctx(check_is_db_created),
            _without_ctx(check_for_simple_gather_state_mapping),
            self.check_node_status,
            _without_ctx(check_if_node_is_doing_startup),
            self.check_shard_subscriptions,
            self.query_depot_details,
        ]
        if self.override_func is not None:
            fns.append(self.override_func)
        return fns

    def run_gather(self, ctx: Context, vdb: VerticaDB, pf: PodFact, gs: GatherState):
        if not pf.is_pod_running:
            return
        fd, tmp_name = tempfile.mkstemp(prefix="gather_pod.sh.")
        try:
            with os.fdopen(fd, "w") as tmp:
                tmp.write(gen_gather_script(vdb, pf))
            try:
                out, _ = self.prunner.copy_to_pod(
                    ctx,
                    pf.name,
                    self.vrec.config.exec.server_container,
                    tmp_name,
                    paths.POD_FACT_GATHER_SCRIPT,
                    "bash",
                    paths.POD_FACT_GATHER_SCRIPT,
                )
            except (PodExecError, ApiException) as e:
                raise GatherError(f"failed to copy and execute the gather script in pod {pf.name}: {e}") from e
        finally:
            os.remove(tmp_name)
        parsed = parse_gather_state(out)
        for key, value in parsed:
            setattr(gs, key, value)

    def check_node_status(self, ctx: Context, vdb: VerticaDB, pf: PodFact, gs: GatherState):
        if not pf.up_node:
            return
        cols = "subcluster_oid" if vdb.is_eon() else "''"
        vinf = vdb.make_version_info()
        if vinf is not None and vinf.is_equal_or_newer(NODES_HAVE_READ_ONLY_STATE_VERSION):
            cols = f"{cols}, is_readonly"
        if vdb.is_eon():
            sql = (
                f"select {cols} from nodes as n, subclusters as s "
                "where s.node_oid = n.node_id and n.node_name in (select node_name from current_session)"
            )
        else:
            sql = f"select {cols} from nodes as n where n.node_name in (select node_name from current_session)"
        stdout = self._query(ctx, pf, sql)
        if stdout is None:
            return
        pf.read_only, pf.subcluster_oid = parse_node_state_and_read_only(stdout)

    def check_shard_subscriptions(self, ctx: Context, vdb: VerticaDB, pf: PodFact, gs: GatherState):
        if not pf.up_node:
            return
        stdout = self._query(
            ctx,
            pf,
            "select count(*) from v_catalog.node_subscriptions "
            f"where node_name = '{pf.vnode_name}' and shard_name != 'replica'",
        )
        if stdout is None:
            return
        set_shard_subscription(stdout, pf)

    def query_depot_details(self, ctx: Context, vdb: VerticaDB, pf: PodFact, gs: GatherState):
        if not pf.up_node:
            return
        stdout = self._query(
            ctx,
            pf,
            "select max_size, disk_percent from storage_locations "
            f"where location_usage = 'DEPOT' and node_name = '{pf.vnode_name}'",
        )
        if stdout is None:
            return
        pf.set_depot_details(stdout)

    def _query(self, ctx: Context, pf: PodFact, sql: str) -> str | None:
        """Run sql in the pod. None means the query failed, taken as the server being down."""
        try:
            stdout, _ = self.prunner.exec_vsql(ctx, pf.name, self.vrec.config.exec.server_container, "-tAc", sql)
        except (PodExecError, ApiException) as e:
            logger.info(f"Query failed in pod {pf.name}, assuming the server is down: {e}")
            return None
        return stdout

    def does_db_exist(self) -> bool:
        return any(v.db_exists for v in self.detail.values())

    def filter_pods(self, filter_func: Callable[[PodFact], bool]) -> list[PodFact]:
        return [v for v in self.detail.values() if filter_func(v)]

    def find_first_pod_sorted(self, filter_func: Callable[[PodFact], bool]) -> PodFact | None:
        pods = self.filter_pods(filter_func)
        if not pods:
            return None
        return min(pods, key=lambda v: v.dns_name)

    def find_pod_to_run_vsql(self, allow_read_only: bool, sc_name: str = "") -> PodFact | None:
        return self.find_first_pod_sorted(
            lambda v: (not sc_name or v.subcluster_name == sc_name) and v.up_node and (allow_read_only or not v.read_only)
        )

    def find_pod_to_run_admintools_any(self) -> PodFact | None:
        for tier in _ADMINTOOLS_POD_PREFERENCE:
            pod = self.find_first_pod_sorted(tier)
            if pod is not None:
                return pod
        return None

    def find_pod_to_run_admintools_offline(self) -> PodFact | None:
        """Pick a pod that has an install but is not running the server."""
        return self.find_first_pod_sorted(lambda v: v.is_installed and v.is_pod_running and not v.up_node)

    def find_running_pod(self) -> PodFact | None:
        return self.find_first_pod_sorted(lambda v: v.is_pod_running)

    def find_restartable_pods(self, restart_read_only: bool, restart_transient: bool) -> list[PodFact]:
        def restartable(v: PodFact) -> bool:
            if not restart_transient and v.is_transient:
                return False
            return (
                (not v.up_node or (restart_read_only and v.read_only))
                and v.db_exists
                and v.is_pod_running
                and v.has_dc_table_annotations
            )

        return self.filter_pods(restartable)

    def find_installed_pods(self) -> list[PodFact]:
        return self.filter_pods(lambda v: v.is_installed and v.is_pod_running)

    def find_re_ip_pods(self, only_pods_without_dbs: bool) -> list[PodFact]:
        def needs_re_ip(v: PodFact) -> bool:
            if not v.exists or not v.is_pod_running or not v.is_installed:
                return False
            return not (only_pods_without_dbs and v.db_exists)

        return self.filter_pods(needs_re_ip)

    def find_pods_low_on_disk_space(self, avail_threshold: int) -> list[PodFact]:
        return self.filter_pods(lambda v: v.is_pod_running and v.local_data_avail <= avail_threshold)

    def are_all_pods_running_and_zero_installed(self) -> bool:
        for v in self.detail.values():
            if ((not v.exists or not v.is_pod_running) and v.managed_by_parent) or v.is_installed:
                return False
        return True

    def count_pods(self, count_func: Callable[[PodFact], bool]) -> int:
        return sum(1 for v in self.detail.values() if count_func(v))

    def count_running_and_installed(self) -> int:
        return self.count_pods(lambda v: v.is_pod_running and v.is_installed)

    def count_installed_and_not_restartable(self) -> int:
        return self.count_pods(
            lambda v: v.is_installed and v.managed_by_parent and (not v.is_pod_running or not v.has_dc_table_annotations)
        )

    def count_up_primary_nodes(self) -> int:
        return self.count_pods(lambda v: v.up_node and v.is_primary)

    def count_not_read_only_with_old_image(self, new_image: str) -> int:
        return self.count_pods(lambda v: v.is_pod_running and v.up_node and not v.read_only and v.image != new_image)

    def get_up_node_count(self) -> int:
        return self.count_pods(lambda v: v.up_node)

    def get_up_node_and_not_read_only_count(self) -> int:
        return self.count_pods(lambda v: v.up_node and not v.read_only)

    def any_installed_pods_not_running(self) -> NamespacedName | None:
        for v in self.detail.values():
            if not v.is_pod_running and v.is_installed:
                return v.name
        return None

    def any_uninstalled_transient_pods_not_running(self) -> NamespacedName | None:
        for v in self.detail.values():
            if v.is_transient and not v.is_pod_running and not v.is_installed:
                return v.name
        return None


# Order of preference when picking a pod to run admintools from
_ADMINTOOLS_POD_PREFERENCE: tuple[Callable[[PodFact], bool], ...] = (
    lambda v: v.up_node and not v.read_only and not v.pending_delete,
    lambda v: v.up_node and not v.read_only,
    lambda v: v.up_node,
    lambda v: v.is_installed and v.is_pod_running,
)


def server_container(pod, container_name: str):
    for c in pod.spec.containers:
        if c.name == container_name:
            return c
    return pod.spec.containers[0]


def _get_env_value(container, env_name: str, default: str) -> str:
    for env in container.env or []:
        if env.name == env_name:
            return env.value or ""
    return default


def _is_sts_revision_pending(sts, pod) -> bool:
    pod_revision = (pod.metadata.labels or {}).get(STS_REVISION_LABEL)
    if pod_revision is None or sts is None or sts.status is None:
        return False
    return sts.status.update_revision != pod_revision
