import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from vdbop import paths
from vdbop.api.meta import VERSION_ANNOTATION
from vdbop.names import NamespacedName

GROUP = "vertica.com"
VERSION = "v1beta1"
PLURAL = "verticadbs"
KIND = "VerticaDB"

# Minimum server versions for optional behaviour
NODES_HAVE_READ_ONLY_STATE_VERSION = "v11.0.2"
HTTP_SERVER_MIN_VERSION = "v12.0.1"

AUTO_RESTART_VERTICA_CONDITION = "AutoRestartVertica"


class _CRModel(BaseModel):
    # Unknown fields are kept so a replace never drops what we don't model.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class InitPolicy(str, Enum):
    CREATE = "Create"
    REVIVE = "Revive"
    SCHEDULE_ONLY = "ScheduleOnly"
    CREATE_SKIP_PACKAGE_INSTALL = "CreateSkipPackageInstall"


class KSafety(str, Enum):
    ZERO = "0"
    ONE = "1"


class HTTPServerMode(str, Enum):
    ENABLED = "Enabled"
    DISABLED = "Disabled"
    AUTO = ""


class ObjectMeta(_CRModel):
    name: str
    namespace: str = "default"
    uid: str = ""
    resource_version: str | None = None
    generation: int | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)


class Subcluster(_CRModel):
    name: str
    size: int = 3
    is_primary: bool = True
    image_override: str | None = None


class ReviveOrderEntry(_CRModel):
    subcluster_index: int
    pod_count: int = 0


class CommunalStorage(_CRModel):
    path: str = ""
    endpoint: str = ""
    region: str = ""
    ca_file: str = ""
    credential_secret: str = ""
    include_uid_in_path: bool = Field(default=False, alias="includeUIDInPath")


class LocalStorage(_CRModel):
    data_path: str = "/data"
    depot_path: str = "/depot"
    catalog_path: str = ""

    def get_catalog_path(self) -> str:
        return self.catalog_path or self.data_path


class VerticaDBSpec(_CRModel):
    image: str = "vertica/vertica-k8s:latest"
    init_policy: InitPolicy = InitPolicy.CREATE
    db_name: str = "vertdb"
    shard_count: int = 0
    k_safety: KSafety = KSafety.ONE
    auto_restart_vertica: bool = True
    ignore_cluster_lease: bool = False
    subclusters: list[Subcluster] = Field(default_factory=list)
    revive_order: list[ReviveOrderEntry] = Field(default_factory=list)
    communal: CommunalStorage = Field(default_factory=CommunalStorage)
    local: LocalStorage = Field(default_factory=LocalStorage)
    http_server_mode: HTTPServerMode = HTTPServerMode.AUTO
    http_server_tls_secret: str = Field(default="", alias="httpServerTLSSecret")


class SubclusterPodStatus(_CRModel):
    installed: bool = False
    added_to_db: bool = Field(default=False, alias="addedToDB")
    vnode_name: str = ""


class SubclusterStatus(_CRModel):
    name: str
    oid: str = ""
    install_count: int = 0
    added_to_db_count: int = Field(default=0, alias="addedToDBCount")
    up_node_count: int = 0
    detail: list[SubclusterPodStatus] = Field(default_factory=list)


class VerticaDBCondition(_CRModel):
    type: str
    status: str
    last_transition_time: str | None = None


class VerticaDBStatus(_CRModel):
    install_count: int = 0
    up_node_count: int = 0
    subclusters: list[SubclusterStatus] = Field(default_factory=list)
    conditions: list[VerticaDBCondition] = Field(default_factory=list)


class VersionInfo:
    """Server version parsed from the version annotation, e.g. ``v12.0.1-0``."""

    _pattern = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)")

    def __init__(self, vdb_ver: str, major: int, minor: int, patch: int):
        self.vdb_ver = vdb_ver
        self.major = major
        self.minor = minor
        self.patch = patch

    @classmethod
    def parse(cls, ver: str) -> "VersionInfo | None":
        m = cls._pattern.match(ver or "")
        if m is None:
            return None
        return cls(ver, int(m.group(1)), int(m.group(2)), int(m.group(3)))

    def as_tuple(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def is_equal_or_newer(self, min_ver: str) -> bool:
        other = VersionInfo.parse(min_ver)
        if other is None:
            raise ValueError(f"invalid version string: {min_ver}")
        return self.as_tuple() >= other.as_tuple()

    def __repr__(self) -> str:
        return f"VersionInfo({self.vdb_ver!r})"


class VerticaDB(_CRModel):
    api_version: str = f"{GROUP}/{VERSION}"
    kind: str = KIND
    metadata: ObjectMeta
    spec: VerticaDBSpec = Field(default_factory=VerticaDBSpec)
    status: VerticaDBStatus = Field(default_factory=VerticaDBStatus)

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "VerticaDB":
        return cls.model_validate(obj)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def uid(self) -> str:
        return self.metadata.uid

    def extract_namespaced_name(self) -> NamespacedName:
        return NamespacedName(self.namespace, self.name)

    def is_eon(self) -> bool:
        return self.spec.shard_count > 0

    def get_communal_path(self) -> str:
        if not self.spec.communal.include_uid_in_path:
            return self.spec.communal.path
        return f"{self.spec.communal.path.rstrip('/')}/{self.uid}"

    def gen_installer_indicator_file_name(self) -> str:
        return paths.INSTALLER_INDICATOR_FILE + self.uid

    def find_subcluster_status(self, sc_name: str) -> SubclusterStatus | None:
        for ss in self.status.subclusters:
            if ss.name == sc_name:
                return ss
        return None

    def make_version_info(self) -> VersionInfo | None:
        return VersionInfo.parse(self.metadata.annotations.get(VERSION_ANNOTATION, ""))

    def is_http_server_enabled(self) -> bool:
        return self.spec.http_server_mode == HTTPServerMode.ENABLED

    def set_condition(self, cond: VerticaDBCondition) -> bool:
        """Add or update a condition. Returns True if the status changed."""
        for existing in self.status.conditions:
            if existing.type != cond.type:
                continue
            if existing.status == cond.status:
                return False
            existing.status = cond.status
            existing.last_transition_time = cond.last_transition_time
            return True
        self.status.conditions.append(cond)
        return True
