import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field


class ExecConfig(BaseModel):
    timeout_seconds: int = Field(default=300, gt=0)
    server_container: str = "server"


class RestartConfig(BaseModel):
    pct_of_liveness_probe_wait: float = 0.25
    min_liveness_wait_seconds: int = 10


class RetryConfig(BaseModel):
    conflict_attempts: int = 5
    conflict_initial_delay: float = 0.01
    conflict_max_delay: float = 1.0


class OperatorConfig(BaseModel):
    dev_mode: bool = Field(default=False)
    vsql_password_file: str | None = None
    exec: ExecConfig = Field(default_factory=ExecConfig)
    restart: RestartConfig = Field(default_factory=RestartConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    def read_vsql_password(self) -> str:
        if not self.vsql_password_file:
            return ""
        with open(self.vsql_password_file) as f:
            return f.read().strip()


_config: OperatorConfig | None = None


def load_operator_config(path: str | Path | None = None) -> OperatorConfig:
    global _config

    if path is None:
        path = os.environ.get("VDBOP_CONFIG") or (
            Path(os.path.dirname(os.path.abspath(__file__))).parent / "vdbop_config.yaml"
        )

    path = Path(path)
    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        _config = OperatorConfig(**raw)
    else:
        _config = OperatorConfig()

    return _config


def get_operator_config() -> OperatorConfig:
    global _config
    if _config is None:
        _config = load_operator_config()
    return _config
