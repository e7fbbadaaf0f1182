import base64
import json
import logging
import os
import tempfile

from vdbop.errors import VdbOpError
from vdbop.names import NamespacedName
from vdbop.utils.context import Context

logger = logging.getLogger(__name__)

TLS_KEY = "tls.key"
TLS_CERT = "tls.crt"
CA_CERT = "ca.crt"


class HTTPServerConfGenerator:
    """Renders the http server TLS config from the VerticaDB's TLS secret."""

    def __init__(self, kubectl, vdb):
        self.kubectl = kubectl
        self.vdb = vdb

    def gen_conf(self, ctx: Context) -> str:
        """Write the TLS json to a temp file and return its name. The caller removes it."""
        secret_name = self.vdb.spec.http_server_tls_secret
        if not secret_name:
            raise VdbOpError(f"VerticaDB {self.vdb.name} has the http server enabled but no TLS secret set")
        nm = NamespacedName(self.vdb.namespace, secret_name)
        data = self.kubectl.read_secret(ctx, nm)
        if data is None:
            raise VdbOpError(f"http server TLS secret {nm} not found")
        missing = [k for k in (TLS_KEY, TLS_CERT, CA_CERT) if k not in data]
        if missing:
            raise VdbOpError(f"http server TLS secret {nm} is missing keys: {', '.join(missing)}")

        conf = {
            "name": "server",
            "privateKey": decode_secret_value(data[TLS_KEY]),
            "certificate": decode_secret_value(data[TLS_CERT]),
            "certificateAuthorities": [decode_secret_value(data[CA_CERT])],
        }
        fd, name = tempfile.mkstemp(prefix="httpstls.json.")
        with os.fdopen(fd, "w") as f:
            json.dump(conf, f, indent=2)
        logger.debug(f"Generated http server TLS config from secret {nm}")
        return name


def decode_secret_value(value: str) -> str:
    return base64.b64decode(value).decode()
