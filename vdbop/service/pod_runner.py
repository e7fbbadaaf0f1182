import base64
import logging
import shlex

from kubernetes import stream

from vdbop.config import get_operator_config
from vdbop.errors import PodExecError, ReconcileCancelled
from vdbop.names import NamespacedName
from vdbop.utils.context import Context

logger = logging.getLogger(__name__)


class PodRunner:
    """Runs commands inside pods over the exec subresource."""

    def __init__(self, kubectl, vsql_password: str = ""):
        self.kubectl = kubectl
        self.vsql_password = vsql_password

    def exec_in_pod(self, ctx: Context, pod: NamespacedName, container: str, *command: str) -> tuple[str, str]:
        """Run command in the container and return (stdout, stderr).

        Raises PodExecError if the command exits non-zero or does not finish
        before the exec timeout. If the context deadline is what cut the
        command short, ReconcileCancelled is raised instead.
        """
        ctx.raise_if_done()
        timeout = get_operator_config().exec.timeout_seconds
        remaining = ctx.remaining()
        if remaining is not None:
            # run_forever treats a zero timeout as no limit at all
            if remaining <= 0:
                raise ReconcileCancelled("reconcile pass ran past its deadline")
            timeout = min(timeout, remaining)

        logger.debug(f"exec in pod {pod}: {self._redact(command)}")
        resp = stream.stream(
            self.kubectl.core_v1_api.connect_get_namespaced_pod_exec,
            name=pod.name,
            namespace=pod.namespace,
            container=container,
            command=list(command),
            stderr=True,
            stdin=False,
            stdout=True,
            tty=False,
            _preload_content=False,
        )
        try:
            resp.run_forever(timeout=timeout)
            if resp.is_open():
                ctx.raise_if_done()
                logger.warning(f"exec in pod {pod} timed out after {timeout}s: {self._redact(command)}")
                raise PodExecError(pod, self._redact(command), stderr=f"timed out after {timeout}s")
            stdout = resp.read_stdout(timeout=0) or ""
            stderr = resp.read_stderr(timeout=0) or ""
            returncode = resp.returncode
        finally:
            resp.close()

        if returncode != 0:
            raise PodExecError(pod, self._redact(command), stdout, stderr, returncode)
        return stdout, stderr

    def copy_to_pod(
        self,
        ctx: Context,
        pod: NamespacedName,
        container: str,
        source_file: str,
        dest_file: str,
        *execute_cmd: str,
    ) -> tuple[str, str]:
        """Copy a local file into the pod, then optionally run a command there."""
        with open(source_file, "rb") as f:
            payload = base64.b64encode(f.read()).decode()
        self.exec_in_pod(
            ctx,
            pod,
            container,
            "bash",
            "-c",
            f"echo {payload} | base64 --decode > {shlex.quote(dest_file)}",
        )
        if not execute_cmd:
            return "", ""
        return self.exec_in_pod(ctx, pod, container, *execute_cmd)

    def exec_vsql(self, ctx: Context, pod: NamespacedName, container: str, *args: str) -> tuple[str, str]:
        cmd = ["vsql"]
        if self.vsql_password:
            cmd.extend(["--password", self.vsql_password])
        cmd.extend(args)
        return self.exec_in_pod(ctx, pod, container, *cmd)

    def _redact(self, command) -> str:
        text = " ".join(command)
        if self.vsql_password:
            text = text.replace(self.vsql_password, "*******")
        return text
