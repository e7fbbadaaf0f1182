"""Steps shared by more than one reconciler."""

import logging
import os
import tempfile
from textwrap import dedent

from vdbop import paths
from vdbop.controllers.podfacts import PodFact, PodFacts
from vdbop.errors import PodExecError, VdbOpError
from vdbop.utils.context import Context

logger = logging.getLogger(__name__)

EULA_ACCEPTANCE_SCRIPT = dedent(
    """\
    import vertica.shared.logging
    import vertica.tools.eula_checker
    vertica.shared.logging.setup_admintool_logging()
    vertica.tools.eula_checker.EulaChecker().write_acceptance()
    """
)


def accept_eula_if_missing(ctx: Context, pfacts: PodFacts, prunner, container: str):
    """Write the EULA acceptance file in every running pod that doesn't have one."""
    pods = pfacts.filter_pods(lambda v: v.is_pod_running and not v.eula_accepted)
    if not pods:
        return
    fd, script = tempfile.mkstemp(prefix="accept_eula.py.")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(EULA_ACCEPTANCE_SCRIPT)
        for pf in pods:
            prunner.copy_to_pod(
                ctx,
                pf.name,
                container,
                script,
                paths.EULA_ACCEPTANCE_SCRIPT,
                paths.VERTICA_PYTHON,
                paths.EULA_ACCEPTANCE_SCRIPT,
            )
            logger.info(f"Accepted EULA in pod {pf.name}")
    finally:
        os.remove(script)


def find_at_base_pod(pfacts: PodFacts) -> PodFact:
    """Pick the installed pod whose admintools.conf new hosts get merged into."""
    pf = pfacts.find_first_pod_sorted(lambda v: v.is_installed and v.is_pod_running)
    if pf is None:
        raise VdbOpError("no installed and running pod found to read admintools.conf from")
    return pf


def distribute_admintools_conf(ctx: Context, prunner, container: str, pods: list[PodFact], at_conf_file: str):
    for pf in pods:
        prunner.copy_to_pod(ctx, pf.name, container, at_conf_file, paths.ADMINTOOLS_CONF)


def debug_dump_admintools_conf_for_pods(ctx: Context, prunner, container: str, pods: list[PodFact]):
    for pf in pods:
        try:
            stdout, _ = prunner.exec_in_pod(ctx, pf.name, container, "cat", paths.ADMINTOOLS_CONF)
        except PodExecError as e:
            logger.debug(f"Could not read admintools.conf in pod {pf.name}: {e}")
            continue
        logger.debug(f"admintools.conf in pod {pf.name}:\n{stdout}")
