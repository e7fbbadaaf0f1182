class VdbOpError(Exception):
    """Base class for errors that abort a reconcile pass."""


class PodExecError(VdbOpError):
    """A command run inside a pod failed."""

    def __init__(self, pod, command, stdout: str = "", stderr: str = "", returncode: int | None = None):
        self.pod = pod
        self.command = command
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(f"command {command!r} failed in pod {pod} (rc={returncode}): {stderr.strip()}")


class GatherError(VdbOpError):
    """The pod fact probe could not be run or its output could not be read."""


class QueryParseError(VdbOpError):
    """Output of a vsql query did not have the expected shape."""


class ReconcileCancelled(VdbOpError):
    """The pass was cancelled or ran past its deadline."""
