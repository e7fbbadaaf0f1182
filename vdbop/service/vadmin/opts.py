from dataclasses import dataclass, field

from vdbop.names import NamespacedName


@dataclass
class HostVNode:
    vnode: str
    ip: str


@dataclass
class FetchNodeStateOptions:
    initiator: NamespacedName
    initiator_ip: str
    hosts: list[HostVNode] = field(default_factory=list)


@dataclass
class RestartNodeOptions:
    initiator: NamespacedName
    initiator_ip: str
    hosts: list[HostVNode] = field(default_factory=list)


@dataclass
class ReIPHost:
    vnode: str
    compat21_node: str
    ip: str


@dataclass
class ReIPOptions:
    initiator: NamespacedName
    initiator_ip: str
    hosts: list[ReIPHost] = field(default_factory=list)


@dataclass
class StartDBOptions:
    initiator: NamespacedName
    initiator_ip: str
    hosts: list[str] = field(default_factory=list)


@dataclass
class ReviveDBOptions:
    initiator: NamespacedName
    hosts: list[str]
    db_name: str
    communal_path: str = ""
    communal_storage_params: str = ""
    configuration_params: dict[str, str] = field(default_factory=dict)
    ignore_cluster_lease: bool = False


@dataclass
class DescribeDBOptions:
    initiator: NamespacedName
    db_name: str
    communal_path: str = ""
    communal_storage_params: str = ""
    configuration_params: dict[str, str] = field(default_factory=dict)
