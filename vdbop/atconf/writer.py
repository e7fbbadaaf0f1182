import configparser
import logging
import os
import re
import tempfile

from vdbop import paths
from vdbop.names import NamespacedName
from vdbop.utils.context import Context

logger = logging.getLogger(__name__)

_NODE_KEY = re.compile(r"^node(\d{4})$")

# Starting point for admintools.conf when no pod has one yet
DEFAULT_CONF = {
    "Configuration": {
        "format": "3",
        "install_opts": "",
        "default_base": paths.DBADMIN_HOME,
        "controlmode": "pt2pt",
        "controlsubnet": "default",
        "spreadlog": "False",
        "last_port": "5433",
        "tmp_dir": "/tmp",
        "atdebug": "False",
        "atgui_default_license": "False",
        "unreachablehosttimeout": "30",
        "ipv6": "False",
    },
    "Cluster": {"hosts": ""},
    "Nodes": {},
    "SSHConfig": {"ssh_user": "", "ssh_ident": "", "ssh_options": "-oConnectTimeout=30 -o TCPKeepAlive=no"},
}


class AdmintoolsConfWriter:
    """Builds an admintools.conf with extra hosts added to it."""

    def __init__(self, vdb, prunner, container: str):
        self.vdb = vdb
        self.prunner = prunner
        self.container = container

    def add_hosts(self, ctx: Context, source_pod: NamespacedName | None, ips: list[str]) -> str:
        """Write a copy of the source pod's admintools.conf with ips added.

        With no source pod the new file starts from a default config. The
        caller owns the returned temp file and must remove it.
        """
        parser = self._load(ctx, source_pod)
        hosts = [h.strip() for h in parser.get("Cluster", "hosts", fallback="").split(",") if h.strip()]
        known_ips = {v.split(",")[0] for _, v in parser.items("Nodes")}
        next_node = self._next_node_number(parser)
        for ip in ips:
            if ip not in hosts:
                hosts.append(ip)
            if ip in known_ips:
                continue
            parser.set("Nodes", f"node{next_node:04d}", self._node_entry(ip))
            known_ips.add(ip)
            next_node += 1
        parser.set("Cluster", "hosts", ",".join(hosts))

        fd, name = tempfile.mkstemp(prefix="admintools.conf.")
        with os.fdopen(fd, "w") as f:
            parser.write(f)
        logger.info(f"Generated admintools.conf with hosts {hosts} in {name}")
        return name

    def _load(self, ctx: Context, source_pod: NamespacedName | None) -> configparser.ConfigParser:
        parser = configparser.ConfigParser(interpolation=None)
        if source_pod is None:
            parser.read_dict(DEFAULT_CONF)
            return parser
        stdout, _ = self.prunner.exec_in_pod(ctx, source_pod, self.container, "cat", paths.ADMINTOOLS_CONF)
        parser.read_string(stdout)
        for section in ("Cluster", "Nodes"):
            if not parser.has_section(section):
                parser.add_section(section)
        return parser

    def _next_node_number(self, parser: configparser.ConfigParser) -> int:
        numbers = [int(m.group(1)) for key in parser.options("Nodes") if (m := _NODE_KEY.match(key))]
        return max(numbers, default=0) + 1

    def _node_entry(self, ip: str) -> str:
        local = self.vdb.spec.local
        return f"{ip},{local.get_catalog_path()},{local.data_path}"
