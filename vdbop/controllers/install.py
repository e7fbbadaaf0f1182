import logging
import os
import tempfile

from vdbop import events, names, paths
from vdbop.api.vdb import HTTP_SERVER_MIN_VERSION, InitPolicy
from vdbop.atconf.writer import AdmintoolsConfWriter
from vdbop.controllers.actor import DONE, REQUEUE, ReconcileActor, ReconcileResult
from vdbop.controllers.common import (
    accept_eula_if_missing,
    debug_dump_admintools_conf_for_pods,
    distribute_admintools_conf,
    find_at_base_pod,
)
from vdbop.controllers.podfacts import PodFact, PodFacts
from vdbop.errors import PodExecError, VdbOpError
from vdbop.httpconf import HTTPServerConfGenerator
from vdbop.utils.context import Context

logger = logging.getLogger(__name__)


class InstallReconciler(ReconcileActor):
    """Adds pods to admintools.conf, one subcluster index at a time."""

    def __init__(self, vrec, vdb, prunner, pfacts: PodFacts, at_writer: AdmintoolsConfWriter | None = None):
        self.vrec = vrec
        self.vdb = vdb
        self.prunner = prunner
        self.pfacts = pfacts
        self.container = vrec.config.exec.server_container
        self.at_writer = at_writer or AdmintoolsConfWriter(vdb, prunner, self.container)

    def reconcile(self, ctx: Context) -> ReconcileResult:
        if self.vdb.spec.init_policy == InitPolicy.SCHEDULE_ONLY:
            return DONE
        self.pfacts.collect(ctx, self.vdb)
        return self.analyze_facts(ctx)

    def analyze_facts(self, ctx: Context) -> ReconcileResult:
        # admintools.conf is synced to every installed pod, so all of them must be up
        pod = self.pfacts.any_installed_pods_not_running()
        if pod is not None:
            logger.info(f"At least one installed pod isn't running. Aborting the install. pod={pod}")
            return REQUEUE
        pod = self.pfacts.any_uninstalled_transient_pods_not_running()
        if pod is not None:
            logger.info(f"At least one transient pod isn't running and doesn't have an install. pod={pod}")
            return REQUEUE

        for fn in (
            self.accept_eula_if_missing,
            self.create_config_dirs_if_necessary,
            self.add_hosts_to_at_conf,
            self.generate_http_certs,
        ):
            fn(ctx)
        return DONE

    def accept_eula_if_missing(self, ctx: Context):
        accept_eula_if_missing(ctx, self.pfacts, self.prunner, self.container)

    def create_config_dirs_if_necessary(self, ctx: Context):
        for pf in self.pfacts.detail.values():
            self._create_config_dirs_for_pod_if_necessary(ctx, pf)

    def _create_config_dirs_for_pod_if_necessary(self, ctx: Context, pf: PodFact):
        if not pf.is_pod_running:
            return
        script = self.gen_create_config_dirs_script(pf)
        if not script:
            return
        fd, tmp_name = tempfile.mkstemp(prefix="create_config_dirs.sh.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(script)
            self.prunner.copy_to_pod(
                ctx,
                pf.name,
                self.container,
                tmp_name,
                paths.CREATE_CONFIG_DIRS_SCRIPT,
                "bash",
                paths.CREATE_CONFIG_DIRS_SCRIPT,
            )
        finally:
            os.remove(tmp_name)

    def gen_create_config_dirs_script(self, pf: PodFact) -> str:
        cmds = []
        if pf.dir_exists.get(paths.CONFIG_LOGROTATE_PATH) and not pf.config_logrotate_writable:
            cmds.append(f"sudo chown -R dbadmin:verticadba {paths.CONFIG_LOGROTATE_PATH}")
        if not pf.dir_exists.get(paths.CONFIG_SHARE_PATH):
            cmds.append(f"mkdir {paths.CONFIG_SHARE_PATH}")
        if not self.do_http_install(log_event=False) and not pf.dir_exists.get(paths.HTTP_TLS_CONF_DIR):
            cmds.append(f"mkdir -p {paths.HTTP_TLS_CONF_DIR}")
        if not cmds:
            return ""
        return "set -o errexit\n" + "\n".join(cmds) + "\n"

    def add_hosts_to_at_conf(self, ctx: Context):
        pods = self.get_install_targets(ctx)
        if not pods:
            return

        installed_pods = self.pfacts.find_installed_pods()
        ips_to_install = [pf.pod_ip for pf in pods]
        # On the very first install there is no admintools.conf to start from
        base_pod = find_at_base_pod(self.pfacts).name if installed_pods else None

        at_conf_temp_file = self.at_writer.add_hosts(ctx, base_pod, ips_to_install)
        try:
            if self.vrec.config.dev_mode:
                debug_dump_admintools_conf_for_pods(ctx, self.prunner, self.container, installed_pods)
            all_pods = installed_pods + pods
            distribute_admintools_conf(ctx, self.prunner, self.container, all_pods, at_conf_temp_file)
            if self.vrec.config.dev_mode:
                debug_dump_admintools_conf_for_pods(ctx, self.prunner, self.container, all_pods)
        finally:
            os.remove(at_conf_temp_file)

        self.pfacts.invalidate()
        self.create_install_indicators(ctx, pods)

    def get_install_targets(self, ctx: Context) -> list[PodFact]:
        """Return the pods to install, in index order within each subcluster.

        Scanning a subcluster stops at its first pod that isn't running. The
        install count can't tell a pod that is down from one that was never
        installed, so later indices have to wait for it.
        """
        pod_list = []
        for sc in self.vdb.spec.subclusters:
            scs = self.vdb.find_subcluster_status(sc.name)
            start_pod_index = scs.install_count if scs is not None else 0
            for i in range(start_pod_index, sc.size):
                pf = self.pfacts.detail.get(names.gen_pod_name(self.vdb, sc, i))
                if pf is None:
                    break
                if pf.is_installed or pf.db_exists:
                    continue
                if not pf.is_pod_running:
                    break
                if pf.has_stale_admintools_conf:
                    try:
                        self.prunner.exec_in_pod(ctx, pf.name, self.container, *self.gen_cmd_remove_old_config())
                    except PodExecError as e:
                        raise VdbOpError(f"failed to remove old admintools.conf in pod {pf.name}: {e}") from e
                pod_list.append(pf)
        return pod_list

    def create_install_indicators(self, ctx: Context, pods: list[PodFact]):
        for pf in pods:
            logger.info(f"Create installer indicator file in pod {pf.name}")
            self.prunner.exec_in_pod(ctx, pf.name, self.container, *self.gen_cmd_create_install_indicator(pf))

    def gen_cmd_create_install_indicator(self, pf: PodFact) -> list[str]:
        return [
            "bash",
            "-c",
            f"grep -E '^node[0-9]{{4}} = {pf.pod_ip},' {paths.ADMINTOOLS_CONF}"
            f" | head -1 | cut -d' ' -f1 | tee {self.vdb.gen_installer_indicator_file_name()}",
        ]

    def gen_cmd_remove_old_config(self) -> list[str]:
        return ["mv", paths.ADMINTOOLS_CONF, f"{paths.ADMINTOOLS_CONF}.uid.{self.vdb.uid}"]

    def do_http_install(self, log_event: bool) -> bool:
        if not self.vdb.is_http_server_enabled():
            return False
        vinf = self.vdb.make_version_info()
        if vinf is None or not vinf.is_equal_or_newer(HTTP_SERVER_MIN_VERSION):
            if log_event:
                self.vrec.events.event(
                    self.vdb,
                    events.EVENT_TYPE_WARNING,
                    events.HTTP_SERVER_NOT_SETUP,
                    "Skipping http server cert setup because the Vertica version doesn't have support for it. "
                    f"A Vertica version of '{HTTP_SERVER_MIN_VERSION}' or newer is needed",
                )
            return False
        return True

    def generate_http_certs(self, ctx: Context):
        if not self.do_http_install(log_event=True):
            return
        for pf in self.pfacts.detail.values():
            if not pf.is_pod_running or pf.file_exists.get(paths.HTTP_TLS_CONF_FILE):
                continue
            fname = HTTPServerConfGenerator(self.vrec.kubectl, self.vdb).gen_conf(ctx)
            staged = f"/tmp/{paths.HTTP_TLS_CONF_FILE_NAME}"
            try:
                self.prunner.copy_to_pod(
                    ctx,
                    pf.name,
                    self.container,
                    fname,
                    staged,
                    "bash",
                    "-c",
                    f"mkdir -p {paths.HTTP_TLS_CONF_DIR} && mv {staged} {paths.HTTP_TLS_CONF_FILE}",
                )
            finally:
                os.remove(fname)
