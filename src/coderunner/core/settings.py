from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError
from .models import Limits


class Settings(BaseSettings):
    """Load defaults, then conf/runner.yaml + conf/limits.yaml, with CODERUNNER_* env overrides."""

    # ---- runtime selection ----
    # local without use_namespaces leaves the host filesystem visible; dev only
    runtime: Literal["local", "docker"] = "docker"
    scratch_root: Path = Path("/tmp/coderunner")

    # ---- phase timing ----
    compile_wall_time_ms: int = 30_000
    kill_grace_ms: int = 2_000

    # ---- default limits (per submission) ----
    cpu_time_ms: int = 5_000
    wall_time_ms: int = 10_000
    memory_bytes: int = 256 * 1024 * 1024
    max_output_bytes: int = 1024 * 1024
    max_open_files: int = 64
    max_processes: int = 64

    # ---- ceilings a request can never exceed ----
    max_cpu_time_ms: int = 20_000
    max_wall_time_ms: int = 60_000
    max_memory_bytes: int = 1024 * 1024 * 1024
    max_output_bytes_ceiling: int = 16 * 1024 * 1024

    # ---- local runtime isolation ----
    use_cgroup: bool = False
    cgroup_base: Optional[Path] = None
    use_namespaces: bool = False
    allow_network: bool = False
    run_as_uid: Optional[int] = None
    run_as_gid: Optional[int] = None

    # ---- docker runtime ----
    docker_bin: str = "docker"
    docker_user: str = "65534:65534"

    # ---- config files ----
    conf_file: Path = Path("conf/runner.yaml")
    limits_file: Path = Path("conf/limits.yaml")
    languages_file: Optional[Path] = Path("conf/languages.yaml")

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="CODERUNNER_", extra="ignore")

    def default_limits(self) -> Limits:
        return Limits(
            cpu_time_ms=self.cpu_time_ms,
            wall_time_ms=self.wall_time_ms,
            memory_bytes=self.memory_bytes,
            max_output_bytes=self.max_output_bytes,
            max_open_files=self.max_open_files,
            max_processes=self.max_processes,
        )

    def ceiling_limits(self) -> Limits:
        return Limits(
            cpu_time_ms=self.max_cpu_time_ms,
            wall_time_ms=self.max_wall_time_ms,
            memory_bytes=self.max_memory_bytes,
            max_output_bytes=self.max_output_bytes_ceiling,
            max_open_files=self.max_open_files,
            max_processes=self.max_processes,
        )


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml in {path}: {e}", {"path": str(path)}) from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping", {"path": str(path)})
    return data


def load_settings(**overrides: Any) -> Settings:
    # 0) base from env CODERUNNER_*
    s = Settings(**overrides)

    # 1) conf/runner.yaml (or CODERUNNER_CONF); env vars win over the file
    conf = Path(os.environ.get("CODERUNNER_CONF", str(s.conf_file)))
    data = _read_yaml(conf)

    # 2) conf/limits.yaml, flat keys matching the limit fields
    limits_file = Path(str(data.get("limits_file", s.limits_file)))
    data.update(_read_yaml(limits_file))

    update: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in Settings.model_fields or key in overrides:
            continue
        if os.environ.get(f"CODERUNNER_{key.upper()}") is not None:
            continue
        update[key] = value

    if not update:
        return s
    try:
        return Settings(**{**s.model_dump(), **update, **overrides})
    except ValueError as e:
        raise ConfigError(f"invalid configuration: {e}", {"path": str(conf)}) from e
