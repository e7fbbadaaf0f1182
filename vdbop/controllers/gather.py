"""Pod fact probe.

A single shell script is copied into each running pod. Its output is YAML
that maps one to one onto GatherState, so any line added to the script
needs a matching field below and the other way around.
"""

from textwrap import dedent

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from vdbop import paths
from vdbop.errors import GatherError

GATHER_DIRS = (
    paths.CONFIG_LOGROTATE_PATH,
    paths.CONFIG_SHARE_PATH,
    paths.CONFIG_LICENSING_PATH,
    paths.HTTP_TLS_CONF_DIR,
)

GATHER_FILES = (
    paths.ADMINTOOLS_CONF,
    paths.CE_LICENSE_FILE,
    paths.LOGROTATE_AT_FILE,
    paths.LOGROTATE_BASE_CONF_FILE,
    paths.HTTP_TLS_CONF_FILE,
    paths.AGENT_CERT_FILE,
    paths.AGENT_KEY_FILE,
    paths.VERTICA_API_KEYS_FILE,
)


class GatherState(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    install_indicator_exists: bool = False
    eula_accepted: bool = False
    dir_exists: dict[str, bool] = Field(default_factory=dict)
    file_exists: dict[str, bool] = Field(default_factory=dict)
    config_logrotate_writable: bool = False
    db_exists: bool = Field(default=False, alias="dbExists")
    vertica_pid_running: bool = Field(default=False, alias="verticaPIDRunning")
    startup_complete: bool = False
    compat21_node_name: str = ""
    vnode_name: str = Field(default="", alias="vnodeName")
    local_data_size: int = 0
    local_data_avail: int = 0
    agent_running: bool = False
    image_has_agent_keys: bool = False
    is_http_server_running: bool = Field(default=False, alias="isHTTPServerRunning")


def _exists_lines(test_flag: str, items) -> str:
    lines = []
    for item in items:
        lines.append(f"echo -n '  {item}: '")
        lines.append(f"test {test_flag} {item} && echo true || echo false")
    return "\n".join(lines)


def gen_gather_script(vdb, pf) -> str:
    indicator = vdb.gen_installer_indicator_file_name()
    db_name = vdb.spec.db_name
    catalog_dir = f"{pf.catalog_path}/{db_name}/v_{db_name.lower()}_node????_catalog"
    startup_log = f"{pf.catalog_path}/{db_name}/*_catalog/startup.log"
    header = dedent(
        f"""\
        set -o errexit
        echo -n 'installIndicatorExists: '
        test -f {indicator} && echo true || echo false
        echo -n 'eulaAccepted: '
        test -f {paths.EULA_ACCEPTANCE_FILE} && echo true || echo false
        echo    'dirExists:'
        """
    )
    files_header = "echo    'fileExists:'\n"
    body = dedent(
        f"""\
        echo -n 'configLogrotateWritable: '
        test -w {paths.CONFIG_LOGROTATE_PATH} && echo true || echo false
        echo -n 'dbExists: '
        ls --almost-all --hide-control-chars -1 {catalog_dir} 2> /dev/null | grep --quiet . && echo true || echo false
        echo -n 'compat21NodeName: '
        test -f {indicator} && echo -n '"' && echo -n $(cat {indicator}) && echo '"' || echo '""'
        echo -n 'vnodeName: '
        cd {catalog_dir} 2> /dev/null && basename $(pwd) | rev | cut -c9- | rev || echo ""
        echo -n 'verticaPIDRunning: '
        [[ $(pgrep ^vertica) ]] && echo true || echo false
        echo -n 'startupComplete: '
        grep --quiet -e 'Startup Complete' -e 'Database Halted' {startup_log} 2> /dev/null && echo true || echo false
        echo -n 'localDataSize: '
        df --block-size=1 --output=size {pf.catalog_path} | tail -1
        echo -n 'localDataAvail: '
        df --block-size=1 --output=avail {pf.catalog_path} | tail -1
        echo -n 'agentRunning: '
        /opt/vertica/sbin/vertica_agent status | grep --quiet "running" && echo true || echo false
        echo -n 'imageHasAgentKeys: '
        ls --almost-all --hide-control-chars -1 {paths.DBADMIN_HOME}/agent 2> /dev/null | grep --quiet . && echo true || echo false
        echo -n 'isHTTPServerRunning: '
        ss -tulpn 2> /dev/null | grep LISTEN | grep --quiet ":{paths.HTTP_SERVER_PORT}" && echo true || echo false
        """
    )
    return (
        header
        + _exists_lines("-d", GATHER_DIRS)
        + "\n"
        + files_header
        + _exists_lines("-f", GATHER_FILES)
        + "\n"
        + body
    )


def parse_gather_state(output: str) -> GatherState:
    """Turn the probe output into a GatherState.

    Keys the probe printed with an empty value are left at their defaults.
    """
    try:
        raw = yaml.safe_load(output)
    except yaml.YAMLError as e:
        raise GatherError(f"failed to parse the output of the pod fact gather script: {e}") from e
    if not isinstance(raw, dict):
        raise GatherError(f"unexpected output from the pod fact gather script: {output!r}")
    raw = {k: v for k, v in raw.items() if v is not None}
    try:
        return GatherState.model_validate(raw)
    except ValidationError as e:
        raise GatherError(f"pod fact gather output does not match the expected fields: {e}") from e
