import configparser
import os

import pytest
from conftest import make_vdb

from vdbop import paths
from vdbop.atconf import AdmintoolsConfWriter
from vdbop.names import NamespacedName

SOURCE_POD = NamespacedName("default", "vertdb-sc1-0")

EXISTING = """\
[Configuration]
format = 3
ipv6 = False

[Cluster]
hosts = 10.0.0.1,10.0.0.5

[Nodes]
node0001 = 10.0.0.1,/data,/data
node0005 = 10.0.0.5,/data,/data
v_vertdb_node0001 = 10.0.0.1,/data/vertdb/v_vertdb_node0001_catalog,/data/vertdb/v_vertdb_node0001_data
"""


@pytest.fixture
def read_conf():
    created = []

    def read(name):
        created.append(name)
        parser = configparser.ConfigParser(interpolation=None)
        with open(name) as f:
            parser.read_file(f)
        return parser

    yield read
    for name in created:
        os.remove(name)


def test_new_conf_from_defaults(ctx, prunner, read_conf):
    vdb = make_vdb(local={"dataPath": "/data", "catalogPath": "/catalog"})
    writer = AdmintoolsConfWriter(vdb, prunner, "server")
    conf = read_conf(writer.add_hosts(ctx, None, ["10.0.0.1", "10.0.0.2"]))

    assert prunner.calls == []
    assert conf.get("Configuration", "format") == "3"
    assert conf.get("Cluster", "hosts") == "10.0.0.1,10.0.0.2"
    assert conf.get("Nodes", "node0001") == "10.0.0.1,/catalog,/data"
    assert conf.get("Nodes", "node0002") == "10.0.0.2,/catalog,/data"


def test_hosts_added_to_source_pod_conf(ctx, prunner, read_conf):
    vdb = make_vdb()
    prunner.respond(f"cat {paths.ADMINTOOLS_CONF}", EXISTING, pod=SOURCE_POD)
    writer = AdmintoolsConfWriter(vdb, prunner, "server")
    conf = read_conf(writer.add_hosts(ctx, SOURCE_POD, ["10.0.0.5", "10.0.0.7"]))

    assert prunner.commands("exec") == [("exec", SOURCE_POD, ("cat", paths.ADMINTOOLS_CONF))]
    assert conf.get("Cluster", "hosts") == "10.0.0.1,10.0.0.5,10.0.0.7"
    # Known hosts keep their entry, new ones number past the highest
    assert conf.get("Nodes", "node0005") == "10.0.0.5,/data,/data"
    assert conf.get("Nodes", "node0006") == "10.0.0.7,/data,/data"
    assert not conf.has_option("Nodes", "node0007")
    assert conf.has_option("Nodes", "v_vertdb_node0001")
    assert conf.get("Configuration", "ipv6") == "False"


def test_source_conf_without_cluster_sections(ctx, prunner, read_conf):
    vdb = make_vdb()
    prunner.respond("cat", "[Configuration]\nformat = 3\n", pod=SOURCE_POD)
    writer = AdmintoolsConfWriter(vdb, prunner, "server")
    conf = read_conf(writer.add_hosts(ctx, SOURCE_POD, ["10.0.0.9"]))
    assert conf.get("Cluster", "hosts") == "10.0.0.9"
    assert conf.get("Nodes", "node0001") == "10.0.0.9,/data,/data"
