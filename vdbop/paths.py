from pathlib import PurePosixPath

# Locations inside the server container
CONFIG_DIR = PurePosixPath("/opt/vertica/config")
ADMINTOOLS_CONF = str(CONFIG_DIR / "admintools.conf")
CONFIG_SHARE_PATH = str(CONFIG_DIR / "share")
CONFIG_LICENSING_PATH = str(CONFIG_DIR / "licensing")
CONFIG_LOGROTATE_PATH = str(CONFIG_DIR / "logrotate")
LOGROTATE_AT_FILE = str(CONFIG_DIR / "logrotate" / "admintool.logrotate")
LOGROTATE_BASE_CONF_FILE = str(CONFIG_DIR / "logrotate_base.conf")
CE_LICENSE_FILE = str(CONFIG_DIR / "licensing" / "vertica_community_edition.license.key")
EULA_ACCEPTANCE_FILE = str(CONFIG_DIR / "d5415f948449e9d4c421b568f2411140.dat")
INSTALLER_INDICATOR_FILE = str(CONFIG_DIR / "share" / "installer-indicator-")

# http server TLS
HTTP_TLS_CONF_DIR = str(CONFIG_DIR / "https_certs")
HTTP_TLS_CONF_FILE_NAME = "httpstls.json"
HTTP_TLS_CONF_FILE = str(PurePosixPath(HTTP_TLS_CONF_DIR) / HTTP_TLS_CONF_FILE_NAME)
HTTP_SERVER_PORT = 8443

# Agent
AGENT_CERT_FILE = str(CONFIG_DIR / "share" / "agent.cert")
AGENT_KEY_FILE = str(CONFIG_DIR / "share" / "agent.key")
VERTICA_API_KEYS_FILE = str(CONFIG_DIR / "apikeys.dat")

# Scratch files copied into the pod
POD_FACT_GATHER_SCRIPT = "/tmp/gather_pod.sh"
CREATE_CONFIG_DIRS_SCRIPT = "/tmp/create_config_dirs.sh"
EULA_ACCEPTANCE_SCRIPT = "/tmp/accept_eula.py"
AUTH_PARMS_FILE = "/tmp/auth_parms.conf"

# Tools shipped in the image
VERTICA_PYTHON = "/opt/vertica/oss/python3/bin/python3"
DBADMIN_HOME = "/home/dbadmin"
