from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import Limits


class Settings(BaseSettings):
    # ---- engine ----
    backend: str = "docker"  # docker | host
    workspace_root: Path = Path("temp")
    pool_size: int = 2
    queue_alert_depth: int = 100
    max_source_bytes: int = 64 * 1024
    retention_s: int = 3600

    # ---- per-execution limits ----
    timeout_s: float = 10
    memory_mb: int = 128
    cpus: float = 0.5
    pids_max: int = 64
    nofile: int = 64

    # ---- docker backend ----
    docker_bin: str = "docker"
    images: Dict[str, str] = {}

    # ---- host backend ----
    host_toolchains: Dict[str, List[str]] = {}
    host_unshare: bool = False
    use_cgroup: bool = False
    cgroup_base: Optional[Path] = None

    # ---- http boundary ----
    host: str = "127.0.0.1"
    port: int = 3000
    cors_origins: List[str] = ["*"]

    # env prefix CR_*
    model_config = SettingsConfigDict(env_prefix="CR_", extra="ignore")

    @property
    def limits(self) -> Limits:
        return Limits(
            memory_mb=self.memory_mb,
            cpus=self.cpus,
            timeout_s=self.timeout_s,
            pids_max=self.pids_max,
            nofile=self.nofile,
        )


def load_settings(path: Optional[Path] = None) -> Settings:
    """Settings from CR_* env, then overlaid with conf/runner.yaml (or CODERUNNER_CONF)."""
    s = Settings()

    conf = Path(path or os.environ.get("CODERUNNER_CONF", "conf/runner.yaml"))
    try:
        data = yaml.safe_load(conf.read_text(encoding="utf-8")) or {}
    except FileNotFoundError:
        data = {}
    if not isinstance(data, dict):
        data = {}

    # limits: {timeout_s, memory_mb, ...} is flattened onto the top level
    limits = data.pop("limits", None) or {}
    if isinstance(limits, dict):
        data.update(limits)

    known = {k: v for k, v in data.items() if k in Settings.model_fields}
    # env wins over the file
    for name in list(known):
        if f"CR_{name.upper()}" in os.environ:
            del known[name]

    if not known:
        return s
    return Settings.model_validate({**s.model_dump(), **known})
