from __future__ import annotations

import os
import socket
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# YAML sections are only namespaces; their keys are Settings field names.
YAML_SECTIONS = ("master", "limits", "worker", "sandbox", "logging")


class Settings(BaseSettings):
    # ---- master ----
    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: List[str] = ["*"]
    database_url: str = "sqlite:///./coderunner.db"
    max_attempts: int = Field(default=3, ge=1)
    ack_timeout_s: float = Field(default=10.0, gt=0)
    heartbeat_interval_s: float = Field(default=2.0, gt=0)
    heartbeat_grace_s: float = Field(default=10.0, gt=0)
    scheduler_tick_s: float = Field(default=0.5, gt=0)

    # ---- submission limits ----
    default_time_limit_ms: int = 2000
    min_time_limit_ms: int = 100
    max_time_limit_ms: int = 30000
    default_memory_limit_mb: int = 128
    min_memory_limit_mb: int = 16
    max_memory_limit_mb: int = 1024

    # ---- worker ----
    master_url: str = "http://127.0.0.1:8080"
    worker_id: Optional[str] = None
    worker_address: str = Field(default_factory=socket.gethostname)
    worker_capacity: int = Field(default_factory=lambda: os.cpu_count() or 1, ge=1)
    worker_languages: Optional[List[str]] = None
    poll_interval_s: float = Field(default=0.5, gt=0)
    request_timeout_s: float = Field(default=10.0, gt=0)
    work_dir: Path = Path("/tmp/coderunner")
    sandbox_retries: int = Field(default=1, ge=0)

    # ---- sandbox ----
    executor: str = "docker"  # "docker" | "host"
    docker_url: Optional[str] = None
    docker_cpus: float = 1.0
    pids_limit: int = 64
    use_cgroups: bool = True
    cgroup_base: Path = Path("/sys/fs/cgroup/coderunner")
    isolate_network: bool = True
    compile_timeout_ms: int = 60000
    compile_memory_mb: int = 512
    output_limit_bytes: int = 16 * 1024 * 1024
    kill_grace_s: float = 2.0
    languages_file: Optional[Path] = None

    # ---- logging ----
    log_level: str = "INFO"
    log_json: bool = True

    # env prefix CODERUNNER_*
    model_config = SettingsConfigDict(env_prefix="CODERUNNER_", extra="ignore")


def _flatten(data: Dict[str, Any]) -> Dict[str, Any]:
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        if key in YAML_SECTIONS and isinstance(value, dict):
            flat.update(value)
        else:
            flat[key] = value
    return flat


def read_yaml_config(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: config root must be a mapping")
    return _flatten(data)


def load_settings(config_file: str | Path | None = None, **overrides: Any) -> Settings:
    # 0) env CODERUNNER_* first, to know which fields the environment pinned
    env_settings = Settings()

    # 1) conf/coderunner.yaml (or CODERUNNER_CONF)
    path = Path(config_file or os.environ.get("CODERUNNER_CONF", "conf/coderunner.yaml"))
    file_values = read_yaml_config(path)

    # 2) YAML fills whatever the environment left unset; explicit overrides win over both
    values = {
        key: value
        for key, value in file_values.items()
        if key in Settings.model_fields and key not in env_settings.model_fields_set
    }
    values.update(overrides)
    return Settings(**values)
