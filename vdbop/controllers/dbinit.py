import logging
import os
import tempfile
from abc import ABC, abstractmethod
from urllib.parse import urlparse

from vdbop import paths
from vdbop.controllers.actor import DONE, REQUEUE, ReconcileResult, is_reconcile_aborted
from vdbop.controllers.podfacts import PodFact, PodFacts, get_host_list
from vdbop.errors import VdbOpError
from vdbop.httpconf import decode_secret_value
from vdbop.names import NamespacedName
from vdbop.utils.context import Context

logger = logging.getLogger(__name__)

S3_PREFIX = "s3://"
ACCESS_KEY = "accesskey"
SECRET_KEY = "secretkey"


class DatabaseInitializer(ABC):
    """Callbacks a create or revive reconciler supplies to GenericDatabaseInitializer."""

    @abstractmethod
    def get_pod_list(self) -> list[PodFact] | None:
        """Pods the command runs against, in order. None means the list could not be built."""

    @abstractmethod
    def find_pod_to_run_init(self) -> PodFact | None:
        pass

    @abstractmethod
    def pre_cmd_setup(self, ctx: Context, initiator_pod: NamespacedName, pod_list: list[PodFact]) -> ReconcileResult:
        pass

    @abstractmethod
    def exec_cmd(self, ctx: Context, initiator_pod: NamespacedName, host_list: list[str]) -> ReconcileResult:
        pass

    @abstractmethod
    def post_cmd_cleanup(self, ctx: Context) -> ReconcileResult:
        pass


class GenericDatabaseInitializer:
    """Control flow shared by the reconcilers that bring a database into existence."""

    def __init__(
        self,
        initializer: DatabaseInitializer,
        vrec,
        vdb,
        prunner,
        pfacts: PodFacts,
        configuration_params: dict[str, str],
    ):
        self.initializer = initializer
        self.vrec = vrec
        self.vdb = vdb
        self.prunner = prunner
        self.pfacts = pfacts
        self.configuration_params = configuration_params
        self.container = vrec.config.exec.server_container

    def check_and_run_init(self, ctx: Context) -> ReconcileResult:
        self.pfacts.collect(ctx, self.vdb)
        if self.pfacts.does_db_exist():
            return DONE

        pod_list = self.initializer.get_pod_list()
        if pod_list is None:
            logger.info("Aborting reconciliation as not all of the required pods could be found")
            return REQUEUE

        for pf in pod_list:
            if not pf.is_pod_running:
                logger.info(f"Not all pods are running. Requeue reconciliation. pod={pf.name}")
                return REQUEUE
            if not pf.is_installed:
                logger.info(f"Not all pods have an install. Requeue reconciliation. pod={pf.name}")
                return REQUEUE

        at_pod = self.initializer.find_pod_to_run_init()
        if at_pod is None:
            logger.info("Could not find a pod to run the init command from. Requeue reconciliation.")
            return REQUEUE

        if self.vdb.is_eon():
            self.construct_config_parms()
            self.construct_auth_parms(ctx, at_pod)

        res = self.initializer.pre_cmd_setup(ctx, at_pod.name, pod_list)
        if is_reconcile_aborted(res):
            return res

        res = self.initializer.exec_cmd(ctx, at_pod.name, get_host_list(pod_list))
        if is_reconcile_aborted(res):
            return res

        self.pfacts.invalidate()
        return self.initializer.post_cmd_cleanup(ctx)

    def construct_config_parms(self):
        """Fill configuration_params with the communal storage settings.

        Parameter names are case insensitive, so keys are stored lower case.
        """
        communal = self.vdb.spec.communal
        if communal.endpoint:
            endpoint = urlparse(communal.endpoint)
            self.configuration_params["awsendpoint"] = endpoint.netloc or endpoint.path
            self.configuration_params["awsenablehttps"] = "1" if endpoint.scheme == "https" else "0"
        if communal.region:
            self.configuration_params["awsregion"] = communal.region
        if communal.ca_file:
            self.configuration_params["awscafile"] = communal.ca_file

    def construct_auth_parms(self, ctx: Context, at_pod: PodFact):
        """Write the communal storage auth file into the initiator pod."""
        lines = [f"{k} = {v}" for k, v in self.configuration_params.items()]
        if self.vdb.get_communal_path().startswith(S3_PREFIX) and self.vdb.spec.communal.credential_secret:
            nm = NamespacedName(self.vdb.namespace, self.vdb.spec.communal.credential_secret)
            data = self.vrec.kubectl.read_secret(ctx, nm)
            if data is None:
                raise VdbOpError(f"communal credential secret {nm} not found")
            if ACCESS_KEY not in data or SECRET_KEY not in data:
                raise VdbOpError(f"communal credential secret {nm} must have '{ACCESS_KEY}' and '{SECRET_KEY}'")
            lines.insert(0, f"awsauth = {decode_secret_value(data[ACCESS_KEY])}:{decode_secret_value(data[SECRET_KEY])}")

        fd, tmp_name = tempfile.mkstemp(prefix="auth_parms.conf.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write("\n".join(lines) + "\n")
            self.prunner.copy_to_pod(ctx, at_pod.name, self.container, tmp_name, paths.AUTH_PARMS_FILE)
        finally:
            os.remove(tmp_name)
