import logging
import time

from vdbop import events, names, paths
from vdbop.api.vdb import InitPolicy
from vdbop.controllers.actor import DONE, REQUEUE, ReconcileActor, ReconcileResult, is_reconcile_aborted
from vdbop.controllers.dbinit import DatabaseInitializer, GenericDatabaseInitializer
from vdbop.controllers.podfacts import PodFact, PodFacts
from vdbop.errors import VdbOpError
from vdbop.names import NamespacedName
from vdbop.reviveplanner.planner import Planner
from vdbop.service.vadmin.opts import DescribeDBOptions, ReviveDBOptions
from vdbop.utils.context import Context

logger = logging.getLogger(__name__)


class ReviveDBReconciler(ReconcileActor, DatabaseInitializer):
    """Revives a database from communal storage when the init policy is Revive."""

    def __init__(self, vrec, vdb, prunner, pfacts: PodFacts, dispatcher, planner: Planner):
        self.vrec = vrec
        self.vdb = vdb
        self.prunner = prunner
        self.pfacts = pfacts
        self.dispatcher = dispatcher
        self.planr = planner
        self.configuration_params: dict[str, str] = {}

    def reconcile(self, ctx: Context) -> ReconcileResult:
        if self.vdb.spec.init_policy != InitPolicy.REVIVE:
            return DONE
        g = GenericDatabaseInitializer(
            self, self.vrec, self.vdb, self.prunner, self.pfacts, self.configuration_params
        )
        return g.check_and_run_init(ctx)

    def exec_cmd(self, ctx: Context, initiator_pod: NamespacedName, host_list: list[str]) -> ReconcileResult:
        opts = self.gen_revive_opts(initiator_pod, host_list)
        self.vrec.events.event(self.vdb, events.EVENT_TYPE_NORMAL, events.REVIVE_DB_START, "Starting revive database")
        start = time.monotonic()
        res = self.dispatcher.revive_db(ctx, opts)
        if is_reconcile_aborted(res):
            return res
        self.vrec.events.event(
            self.vdb,
            events.EVENT_TYPE_NORMAL,
            events.REVIVE_DB_SUCCEEDED,
            f"Successfully revived database. It took {time.monotonic() - start:.1f}s",
        )
        return DONE

    def pre_cmd_setup(self, ctx: Context, initiator_pod: NamespacedName, pod_list: list[PodFact]) -> ReconcileResult:
        res = self.delete_revision_pending_pods(ctx, pod_list)
        if is_reconcile_aborted(res):
            return res

        stdout, res = self.run_revive_prepass(ctx, initiator_pod)
        if is_reconcile_aborted(res):
            return res

        return self.run_revive_planner(ctx, stdout)

    def post_cmd_cleanup(self, ctx: Context) -> ReconcileResult:
        return DONE

    def get_pod_list(self) -> list[PodFact] | None:
        """Order the pods by the revive order, then every remaining pod by subcluster.

        Returns None, after recording a ReviveOrderBad event, if the revive
        order points at a subcluster or pod that doesn't exist.
        """
        subclusters = self.vdb.spec.subclusters
        pods_left = {i: sc.size for i, sc in enumerate(subclusters)}
        pod_list: list[PodFact] = []

        def log_bad_revive_order(reason: str):
            self.vrec.events.event(
                self.vdb,
                events.EVENT_TYPE_WARNING,
                events.REVIVE_ORDER_BAD,
                f"revive_db failed because the reviveOrder specified is bad: {reason}",
            )

        def add_pods_from_subcluster(sc_index: int, pods_to_add: int) -> bool:
            sc = subclusters[sc_index]
            for _ in range(pods_to_add):
                pod_index = sc.size - pods_left[sc_index]
                pn = names.gen_pod_name(self.vdb, sc, pod_index)
                pf = self.pfacts.detail.get(pn)
                if pf is None:
                    log_bad_revive_order(f"pod '{pn.name}' not found")
                    return False
                pod_list.append(pf)
                pods_left[sc_index] -= 1
            return True

        for cur in self.vdb.spec.revive_order:
            if cur.subcluster_index < 0 or cur.subcluster_index >= len(subclusters):
                log_bad_revive_order(f"subcluster index '{cur.subcluster_index}' out of bounds")
                return None
            pods_to_add = cur.pod_count
            left = pods_left[cur.subcluster_index]
            # A count of 0 or less means the rest of the subcluster
            if left < pods_to_add or pods_to_add <= 0:
                pods_to_add = left
            if not add_pods_from_subcluster(cur.subcluster_index, pods_to_add):
                return None

        for i in range(len(subclusters)):
            if not add_pods_from_subcluster(i, pods_left[i]):
                return None
        return pod_list

    def find_pod_to_run_init(self) -> PodFact | None:
        return self.pfacts.find_pod_to_run_admintools_offline()

    def gen_revive_opts(self, initiator_pod: NamespacedName, host_list: list[str]) -> ReviveDBOptions:
        opts = ReviveDBOptions(
            initiator=initiator_pod,
            hosts=host_list,
            db_name=self.vdb.spec.db_name,
            ignore_cluster_lease=self.vdb.spec.ignore_cluster_lease,
        )
        if self.vdb.is_eon():
            opts.communal_path = self.vdb.get_communal_path()
            opts.communal_storage_params = paths.AUTH_PARMS_FILE
            opts.configuration_params = dict(self.configuration_params)
        return opts

    def gen_describe_opts(self, initiator_pod: NamespacedName) -> DescribeDBOptions:
        return DescribeDBOptions(
            initiator=initiator_pod,
            db_name=self.vdb.spec.db_name,
            communal_path=self.vdb.get_communal_path(),
            communal_storage_params=paths.AUTH_PARMS_FILE,
            configuration_params=dict(self.configuration_params),
        )

    def delete_revision_pending_pods(self, ctx: Context, pod_list: list[PodFact]) -> ReconcileResult:
        """Delete pods running an old StatefulSet revision so they come back with the current one."""
        num_pods_deleted = 0
        for pf in pod_list:
            if not pf.sts_revision_pending:
                continue
            logger.info(f"Deleting pod that has a pending STS revision update. name={pf.name.name}")
            if self.vrec.kubectl.get_pod(ctx, pf.name) is None:
                raise VdbOpError(f"could not fetch pod for revive pre_cmd_setup {pf.name.name}")
            self.vrec.kubectl.delete_pod(ctx, pf.name)
            num_pods_deleted += 1
        if num_pods_deleted > 0:
            logger.info("Requeue to wait for deleted pods to be rescheduled")
            return REQUEUE
        return DONE

    def run_revive_prepass(self, ctx: Context, initiator_pod: NamespacedName) -> tuple[str, ReconcileResult]:
        return self.dispatcher.describe_db(ctx, self.gen_describe_opts(initiator_pod))

    def run_revive_planner(self, ctx: Context, op: str) -> ReconcileResult:
        self.planr.parse(op)
        msg, ok = self.planr.is_compatible()
        if not ok:
            self.vrec.events.event(self.vdb, events.EVENT_TYPE_WARNING, events.REVIVE_DB_FAILED, msg)
            return REQUEUE

        vdb_changed = self.vrec.kubectl.update_vdb(ctx, self.vdb.extract_namespaced_name(), self.planr.apply_changes)
        if vdb_changed:
            logger.info("Updated vdb from revive planner")
        return ReconcileResult(requeue=vdb_changed)
