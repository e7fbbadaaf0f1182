import logging

from vdbop.api.vdb import InitPolicy
from vdbop.config import OperatorConfig, get_operator_config
from vdbop.controllers.actor import DONE, ReconcileActor, ReconcileResult, is_reconcile_aborted
from vdbop.controllers.install import InstallReconciler
from vdbop.controllers.podfacts import PodFacts
from vdbop.controllers.restart import RestartReconciler
from vdbop.controllers.revivedb import ReviveDBReconciler
from vdbop.events import EventRecorder
from vdbop.names import NamespacedName
from vdbop.reviveplanner.planner import Planner
from vdbop.service.pod_runner import PodRunner
from vdbop.utils.context import Context

logger = logging.getLogger(__name__)


class VerticaDBReconciler:
    """Runs one reconcile pass of a VerticaDB through the actors in order.

    The pass stops at the first actor that asks for a requeue. Errors
    propagate to the caller, which owns the retry schedule.
    """

    def __init__(
        self,
        kubectl,
        dispatcher,
        planner: Planner | None = None,
        events: EventRecorder | None = None,
        config: OperatorConfig | None = None,
        prunner=None,
    ):
        self.kubectl = kubectl
        self.dispatcher = dispatcher
        self.planner = planner
        self.events = events or EventRecorder(kubectl)
        self.config = config or get_operator_config()
        self.prunner = prunner

    def reconcile(self, ctx: Context, nm: NamespacedName) -> ReconcileResult:
        vdb = self.kubectl.get_vdb(ctx, nm)
        if vdb is None:
            logger.info(f"VerticaDB {nm} not found. Ignoring since object must be deleted")
            return DONE

        prunner = self.prunner or PodRunner(self.kubectl, self.config.read_vsql_password())
        pfacts = PodFacts(self, prunner)
        for actor in self.construct_actors(vdb, prunner, pfacts):
            logger.debug(f"Running {type(actor).__name__} for {nm}")
            res = actor.reconcile(ctx)
            if is_reconcile_aborted(res):
                logger.info(f"{type(actor).__name__} requested a requeue for {nm}: {res}")
                return res
        return DONE

    def construct_actors(self, vdb, prunner, pfacts: PodFacts) -> list[ReconcileActor]:
        actors: list[ReconcileActor] = [
            InstallReconciler(self, vdb, prunner, pfacts),
            RestartReconciler(self, vdb, prunner, pfacts, True, self.dispatcher),
        ]
        if self.planner is not None:
            actors.append(ReviveDBReconciler(self, vdb, prunner, pfacts, self.dispatcher, self.planner))
        elif vdb.spec.init_policy == InitPolicy.REVIVE:
            logger.warning(f"VerticaDB {vdb.name} has init policy Revive but no revive planner is configured")
        return actors
