import logging
import time
from typing import Callable

from vdbop import events, names
from vdbop.api.vdb import AUTO_RESTART_VERTICA_CONDITION, InitPolicy, KSafety, VerticaDBCondition
from vdbop.controllers.actor import (
    DONE,
    REQUEUE,
    ReconcileActor,
    ReconcileResult,
    is_reconcile_aborted,
    requeue_after,
)
from vdbop.controllers.common import accept_eula_if_missing
from vdbop.controllers.podfacts import PodFact, PodFacts, gen_pod_names, server_container
from vdbop.errors import VdbOpError
from vdbop.metrics import get_metrics, make_vdb_labels
from vdbop.names import NamespacedName
from vdbop.service.vadmin import STATE_UP
from vdbop.service.vadmin.opts import (
    FetchNodeStateOptions,
    HostVNode,
    ReIPHost,
    ReIPOptions,
    RestartNodeOptions,
    StartDBOptions,
)
from vdbop.utils.context import Context

logger = logging.getLogger(__name__)

KILL_MARKER = "Killing process"


class RestartReconciler(ReconcileActor):
    """Restarts the database process in pods where it went down.

    With no writable node up the whole cluster is started with start_db.
    Otherwise the down nodes are restarted one set at a time.
    """

    def __init__(self, vrec, vdb, prunner, pfacts: PodFacts, restart_read_only: bool, dispatcher):
        self.vrec = vrec
        self.vdb = vdb
        self.prunner = prunner
        self.pfacts = pfacts
        self.restart_read_only = restart_read_only
        self.dispatcher = dispatcher
        self.container = vrec.config.exec.server_container
        # Pod admin commands are run from, picked once per pass
        self.initiator_pod: NamespacedName | None = None
        self.initiator_pod_ip = ""

    def reconcile(self, ctx: Context) -> ReconcileResult:
        if not self.vdb.spec.auto_restart_vertica:
            self.vrec.kubectl.update_vdb_condition(
                ctx, self.vdb, VerticaDBCondition(type=AUTO_RESTART_VERTICA_CONDITION, status="False")
            )
            return DONE

        self.vrec.kubectl.update_vdb_condition(
            ctx, self.vdb, VerticaDBCondition(type=AUTO_RESTART_VERTICA_CONDITION, status="True")
        )

        self.pfacts.collect(ctx, self.vdb)

        if (
            self.pfacts.get_up_node_and_not_read_only_count() == 0
            and self.vdb.spec.init_policy != InitPolicy.SCHEDULE_ONLY
        ):
            return self.reconcile_cluster(ctx)
        return self.reconcile_nodes(ctx)

    def reconcile_cluster(self, ctx: Context) -> ReconcileResult:
        logger.info("Restart of entire cluster is needed")
        if self.pfacts.are_all_pods_running_and_zero_installed():
            logger.info("All pods are running and none of them have an installation. Nothing to restart.")
            return DONE
        if self.pfacts.count_running_and_installed() == 0:
            logger.info("Waiting for pods to come online that may need a Vertica restart")
            return REQUEUE
        # With k-safety 0 every node must be present for quorum
        if self.vdb.spec.k_safety == KSafety.ZERO and self.pfacts.count_installed_and_not_restartable() > 0:
            logger.info("Waiting for all installed pods to be running before attempting a cluster restart")
            return REQUEUE

        if not self.set_at_pod(self.pfacts.find_pod_to_run_admintools_offline):
            logger.info("No pod found to run admintools from. Requeue reconciliation.")
            return REQUEUE

        down_pods = self.pfacts.find_restartable_pods(self.restart_read_only, True)

        res = self.kill_read_only_processes(ctx, down_pods)
        if is_reconcile_aborted(res):
            return res

        _, removed = self.filter_non_active_startup_probe(ctx, down_pods)
        if removed:
            logger.info(
                "Some pods have active livenessProbes. Waiting for them to be rescheduled "
                f"before trying a restart. podCount={removed}"
            )
            return self.make_result_for_liveness_probe_wait(ctx)

        _, removed = self.filter_slow_startup(down_pods)
        if removed:
            logger.info(
                "Some pods are slow starting up. Waiting for them to finish or abort "
                f"before trying a cluster restart. podCount={removed}"
            )
            return self.make_result_for_liveness_probe_wait(ctx)

        self.accept_eula_if_missing(ctx)

        res = self.reip_nodes(ctx, self.pfacts.find_re_ip_pods(False))
        if is_reconcile_aborted(res):
            return res

        if not self.pfacts.does_db_exist():
            return DONE

        res = self.restart_cluster(ctx, down_pods)
        if is_reconcile_aborted(res):
            return res

        self.pfacts.invalidate()
        return DONE

    def reconcile_nodes(self, ctx: Context) -> ReconcileResult:
        logger.info("Restart of individual nodes is needed")
        down_pods = self.pfacts.find_restartable_pods(self.restart_read_only, False)
        # Any admin command needs the EULA accepted first
        self.accept_eula_if_missing(ctx)
        if down_pods:
            if not self.set_at_pod(self.pfacts.find_pod_to_run_admintools_any):
                logger.info("No pod found to run admintools from. Requeue reconciliation.")
                return REQUEUE
            res = self.restart_pods(ctx, down_pods)
            if is_reconcile_aborted(res):
                return res

        if self.vdb.spec.init_policy == InitPolicy.SCHEDULE_ONLY:
            return ReconcileResult(requeue=self.should_requeue_if_pods_not_running())

        re_ip_pods = self.pfacts.find_re_ip_pods(True)
        if re_ip_pods:
            if not self.set_at_pod(self.pfacts.find_pod_to_run_admintools_any):
                logger.info("No pod found to run admintools from. Requeue reconciliation.")
                return REQUEUE
            res = self.reip_nodes(ctx, re_ip_pods)
            if is_reconcile_aborted(res):
                return res

        return ReconcileResult(requeue=self.should_requeue_if_pods_not_running())

    def restart_pods(self, ctx: Context, pods: list[PodFact]) -> ReconcileResult:
        down_pods, res = self.remove_pods_with_cluster_up_state(ctx, pods)
        if is_reconcile_aborted(res):
            return res
        if not down_pods:
            logger.info("Pods are down but the cluster state doesn't show that yet. Requeue the reconciliation.")
            return self.make_result_for_liveness_probe_wait(ctx)

        res = self.kill_read_only_processes(ctx, down_pods)
        if is_reconcile_aborted(res):
            return res

        down_pods, removed = self.filter_non_active_startup_probe(ctx, down_pods)
        if not down_pods:
            logger.info(
                "Some pod(s) have active livenessProbes. Waiting for them to be rescheduled "
                f"before trying a restart. podCount={removed}"
            )
            return self.make_result_for_liveness_probe_wait(ctx)

        down_pods, _ = self.filter_slow_startup(down_pods)
        if not down_pods:
            logger.info(
                "Some pod(s) are still starting up. Waiting for them to finish or abort "
                "(via health probes) before trying to restart again"
            )
            return self.make_result_for_liveness_probe_wait(ctx)

        res = self.exec_restart_pods(ctx, down_pods)
        if is_reconcile_aborted(res):
            return res

        self.pfacts.invalidate()

        # Some pods were skipped, so come back once their state settles
        if len(pods) > len(down_pods):
            return self.make_result_for_liveness_probe_wait(ctx)
        return DONE

    def remove_pods_with_cluster_up_state(
        self, ctx: Context, pods: list[PodFact]
    ) -> tuple[list[PodFact], ReconcileResult]:
        """Drop pods the cluster already reports as UP even though the pod facts say down."""
        cluster_state, res = self.fetch_cluster_node_status(ctx, pods)
        if is_reconcile_aborted(res):
            return [], res
        return [pf for pf in pods if cluster_state.get(pf.vnode_name) != STATE_UP], DONE

    def fetch_cluster_node_status(self, ctx: Context, pods: list[PodFact]) -> tuple[dict[str, str], ReconcileResult]:
        opts = FetchNodeStateOptions(
            initiator=self.initiator_pod,
            initiator_ip=self.initiator_pod_ip,
            hosts=[HostVNode(vnode=pf.vnode_name, ip=pf.pod_ip) for pf in pods],
        )
        return self.dispatcher.fetch_node_state(ctx, opts)

    def exec_restart_pods(self, ctx: Context, down_pods: list[PodFact]) -> ReconcileResult:
        opts = RestartNodeOptions(
            initiator=self.initiator_pod,
            initiator_ip=self.initiator_pod_ip,
            hosts=[HostVNode(vnode=pf.vnode_name, ip=pf.pod_ip) for pf in down_pods],
        )
        self.vrec.events.event(
            self.vdb,
            events.EVENT_TYPE_NORMAL,
            events.NODE_RESTART_STARTED,
            f"Starting database restart node of the following pods: {gen_pod_names(down_pods)}",
        )
        metrics = get_metrics()
        labels = make_vdb_labels(self.vdb)
        start = time.monotonic()
        try:
            res = self.dispatcher.restart_node(ctx, opts)
        except Exception:
            metrics.nodes_restart_failed.labels(**labels).inc()
            raise
        finally:
            elapsed = time.monotonic() - start
            metrics.nodes_restart_duration.labels(**labels).observe(elapsed)
            metrics.nodes_restart_attempt.labels(**labels).inc()
        if is_reconcile_aborted(res):
            metrics.nodes_restart_failed.labels(**labels).inc()
            return res
        self.vrec.events.event(
            self.vdb,
            events.EVENT_TYPE_NORMAL,
            events.NODE_RESTART_SUCCEEDED,
            f"Successfully restarted database nodes and it took {int(elapsed)}s",
        )
        return DONE

    def reip_nodes(self, ctx: Context, pods: list[PodFact]) -> ReconcileResult:
        if not pods:
            logger.info("No pods qualify for possible re-ip. Need to requeue restart reconciler.")
            return REQUEUE
        hosts = []
        for pf in pods:
            if not pf.is_pod_running:
                logger.info(f"Not all pods are running. Need to requeue restart reconciler. pod={pf.name}")
                return REQUEUE
            hosts.append(ReIPHost(vnode=pf.vnode_name, compat21_node=pf.compat21_node_name, ip=pf.pod_ip))
        opts = ReIPOptions(initiator=self.initiator_pod, initiator_ip=self.initiator_pod_ip, hosts=hosts)
        return self.dispatcher.re_ip(ctx, opts)

    def restart_cluster(self, ctx: Context, down_pods: list[PodFact]) -> ReconcileResult:
        opts = StartDBOptions(
            initiator=self.initiator_pod,
            initiator_ip=self.initiator_pod_ip,
            hosts=[pf.pod_ip for pf in down_pods],
        )
        self.vrec.events.event(
            self.vdb, events.EVENT_TYPE_NORMAL, events.CLUSTER_RESTART_STARTED, "Starting restart of the cluster"
        )
        metrics = get_metrics()
        labels = make_vdb_labels(self.vdb)
        start = time.monotonic()
        try:
            res = self.dispatcher.start_db(ctx, opts)
        except Exception:
            metrics.cluster_restart_failure.labels(**labels).inc()
            raise
        finally:
            elapsed = time.monotonic() - start
            metrics.cluster_restart_duration.labels(**labels).observe(elapsed)
            metrics.cluster_restart_attempt.labels(**labels).inc()
        if is_reconcile_aborted(res):
            metrics.cluster_restart_failure.labels(**labels).inc()
            return res
        self.vrec.events.event(
            self.vdb,
            events.EVENT_TYPE_NORMAL,
            events.CLUSTER_RESTART_SUCCEEDED,
            f"Successfully restarted the cluster and it took {int(elapsed)}s",
        )
        return DONE

    def kill_read_only_processes(self, ctx: Context, pods: list[PodFact]) -> ReconcileResult:
        """SIGKILL the server in read-only pods. A read-only node must stop fully to rejoin writable."""
        killed_at_least_one_pid = False
        cmd = [
            "bash",
            "-c",
            f'for pid in $(pgrep ^vertica$); do echo "{KILL_MARKER} $pid"; kill -n SIGKILL $pid; done',
        ]
        for pf in pods:
            if not pf.read_only:
                continue
            stdout, _ = self.prunner.exec_in_pod(ctx, pf.name, self.container, *cmd)
            if KILL_MARKER in stdout:
                killed_at_least_one_pid = True
        if killed_at_least_one_pid:
            logger.info("Requeue. Killed at least one read-only vertica process.")
            return REQUEUE
        return DONE

    def filter_non_active_startup_probe(self, ctx: Context, pods: list[PodFact]) -> tuple[list[PodFact], int]:
        """Drop pods past their startup probe; the liveness probe is about to restart them."""
        new_pod_list = []
        for pf in pods:
            if not self.is_startup_probe_active(ctx, pf.name):
                logger.info(
                    "Not restarting pod because its startupProbe is not active anymore. "
                    f"Wait for livenessProbe to reschedule the pod. pod={pf.name}"
                )
                continue
            new_pod_list.append(pf)
        return new_pod_list, len(pods) - len(new_pod_list)

    def filter_slow_startup(self, pods: list[PodFact]) -> tuple[list[PodFact], int]:
        new_pod_list = [pf for pf in pods if not pf.startup_in_progress]
        return new_pod_list, len(pods) - len(new_pod_list)

    def make_result_for_liveness_probe_wait(self, ctx: Context) -> ReconcileResult:
        """Wait for a fraction of the liveness probe window of a sample pod."""
        pn = names.gen_pod_name(self.vdb, self.vdb.spec.subclusters[0], 0)
        pod = self.vrec.kubectl.get_pod(ctx, pn)
        if pod is None:
            logger.info(f"Could not read sample pod for livenessProbe timeout. Default to exponential backoff. pod={pn}")
            return REQUEUE
        probe = server_container(pod, self.container).liveness_probe
        if probe is None:
            return REQUEUE
        cfg = self.vrec.config.restart
        # Kubernetes defaults when the fields are unset
        period = probe.period_seconds or 10
        failure_threshold = probe.failure_threshold or 3
        time_to_wait = int(period * failure_threshold * cfg.pct_of_liveness_probe_wait)
        return requeue_after(max(time_to_wait, cfg.min_liveness_wait_seconds))

    def is_startup_probe_active(self, ctx: Context, nm: NamespacedName) -> bool:
        pod = self.vrec.kubectl.get_pod(ctx, nm)
        if pod is None:
            raise VdbOpError(f"failed to fetch pod {nm} to check its startup probe")
        if server_container(pod, self.container).liveness_probe is None:
            logger.info(f"Pod doesn't have a livenessProbe. Okay to restart. pod={nm}")
            return True
        for cstat in (pod.status.container_statuses if pod.status else None) or []:
            if cstat.name == self.container:
                logger.info(f"Pod container status. pod={nm} started={cstat.started}")
                return not cstat.started
        return True

    def set_at_pod(self, find_func: Callable[[], PodFact | None]) -> bool:
        if self.initiator_pod is None:
            at_pod = find_func()
            if at_pod is None:
                return False
            self.initiator_pod = at_pod.name
            self.initiator_pod_ip = at_pod.pod_ip
        return True

    def should_requeue_if_pods_not_running(self) -> bool:
        if self.pfacts.count_installed_and_not_restartable() > 0:
            logger.info("Requeue. Some installed pods are not yet running.")
            return True
        return False

    def accept_eula_if_missing(self, ctx: Context):
        accept_eula_if_missing(ctx, self.pfacts, self.prunner, self.container)
