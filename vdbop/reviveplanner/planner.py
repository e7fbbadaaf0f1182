from abc import ABC, abstractmethod

from vdbop.api.vdb import VerticaDB


class Planner(ABC):
    """Checks a revive target against the description of the database on disk."""

    @abstractmethod
    def parse(self, op: str):
        """Parse describe_db output. Raises on output it cannot read."""

    @abstractmethod
    def is_compatible(self) -> tuple[str, bool]:
        """Return (reason, ok). reason explains why the vdb cannot be revived as is."""

    @abstractmethod
    def apply_changes(self, vdb: VerticaDB) -> bool:
        """Adjust vdb so it matches the database being revived.

        Must only touch the passed in object, since it can be called again
        on a re-fetched copy after a conflict. Returns True if vdb changed.
        """
