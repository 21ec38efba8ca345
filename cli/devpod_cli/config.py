from __future__ import annotations

import os
import tomllib
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import tomli_w
from platformdirs import site_config_dir

from devpod_core.lifecycle import DEFAULT_LOCK_PATH, HostSettings
from devpod_core.maintenance import DEFAULT_JOB_PATH, DEFAULT_SCHEDULE, validate_schedule
from devpod_core.params import (
    DEFAULT_ADMIN_USER,
    DEFAULT_BACKUP_DIR,
    DEFAULT_CFG_DIR,
    DEFAULT_DATA_DIR,
    DEFAULT_LOG_DIR,
    DEFAULT_SSH_PORT,
)
from devpod_core.render import DEFAULT_PROJECT_NAME, DEFAULT_RETENTION_DAYS
from devpod_core.stack import default_topology
from devpod_core.topology import Topology, load_topology

from . import console

APP_NAME = "devpod"
CONFIG_FILENAME = "config.toml"
ENV_CONFIG_PATH = "DEVPOD_CONFIG"
DEFAULT_ADMIN_EMAIL = "admin@localhost.localdomain"


@dataclass
class AppConfig:
    cfg_dir: str = DEFAULT_CFG_DIR
    data_dir: str = DEFAULT_DATA_DIR
    log_dir: str = DEFAULT_LOG_DIR
    backup_dir: str = DEFAULT_BACKUP_DIR
    ssh_port: int = DEFAULT_SSH_PORT
    admin_user: str = DEFAULT_ADMIN_USER
    admin_email: str = DEFAULT_ADMIN_EMAIL
    project_name: str = DEFAULT_PROJECT_NAME
    cron_file: str = str(DEFAULT_JOB_PATH)
    lock_path: str = str(DEFAULT_LOCK_PATH)
    backup_schedule: str = DEFAULT_SCHEDULE
    backup_retention_days: int = DEFAULT_RETENTION_DAYS
    pull_attempts: int = 3
    pull_backoff_s: float = 2.0
    topology_file: str = ""


SETTING_KEYS = tuple(f.name for f in fields(AppConfig))


def config_path() -> str:
    override = os.getenv(ENV_CONFIG_PATH, "").strip()
    if override:
        return override
    return f"{site_config_dir(APP_NAME)}/{CONFIG_FILENAME}"


def default_config() -> AppConfig:
    return AppConfig()


def ensure_parent_dir(path: str) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)


def _coerce(name: str, value: Any, default: Any) -> Any:
    if isinstance(default, bool):
        return value if isinstance(value, bool) else default
    if isinstance(default, int):
        if isinstance(value, bool):
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            console.warn(f"Ignoring invalid setting {name}={value!r}")
            return default
    if isinstance(default, float):
        try:
            return float(value)
        except (TypeError, ValueError):
            console.warn(f"Ignoring invalid setting {name}={value!r}")
            return default
    return str(value).strip() if value is not None else default


def from_toml(data: dict[str, Any]) -> AppConfig:
    cfg = default_config()
    section = data.get("devpod") if isinstance(data.get("devpod"), dict) else data
    for f in fields(AppConfig):
        if f.name not in section:
            continue
        setattr(cfg, f.name, _coerce(f.name, section[f.name], getattr(cfg, f.name)))
    try:
        cfg.backup_schedule = validate_schedule(cfg.backup_schedule)
    except ValueError as exc:
        console.warn(f"{exc}; using {DEFAULT_SCHEDULE!r}")
        cfg.backup_schedule = DEFAULT_SCHEDULE
    if cfg.backup_retention_days < 1:
        cfg.backup_retention_days = DEFAULT_RETENTION_DAYS
    if cfg.pull_attempts < 1:
        cfg.pull_attempts = 1
    return cfg


def to_toml(cfg: AppConfig) -> dict[str, Any]:
    return {"devpod": asdict(cfg)}


def load_config() -> AppConfig:
    path = config_path()
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError:
        return default_config()
    return from_toml(data)


def save_config(cfg: AppConfig) -> str:
    path = config_path()
    ensure_parent_dir(path)
    with open(path, "wb") as f:
        f.write(tomli_w.dumps(to_toml(cfg)).encode("utf-8"))
    os.chmod(path, 0o600)
    return path


def set_value(cfg: AppConfig, key: str, raw: str) -> AppConfig:
    k = key.strip().lower()
    if k not in SETTING_KEYS:
        raise KeyError(key)
    default = getattr(default_config(), k)
    if isinstance(default, int) and not raw.strip().lstrip("-").isdigit():
        raise ValueError(f"{k} expects an integer, got {raw!r}")
    if k == "backup_schedule":
        raw = validate_schedule(raw)
    setattr(cfg, k, _coerce(k, raw, default))
    return cfg


def host_settings(cfg: AppConfig) -> HostSettings:
    return HostSettings(
        cfg_dir=Path(cfg.cfg_dir),
        project_name=cfg.project_name,
        job_path=Path(cfg.cron_file),
        lock_path=Path(cfg.lock_path),
        backup_schedule=cfg.backup_schedule,
        retention_days=cfg.backup_retention_days,
        pull_attempts=cfg.pull_attempts,
        pull_backoff_s=cfg.pull_backoff_s,
    )


def resolve_topology(cfg: AppConfig) -> Topology:
    if cfg.topology_file:
        return load_topology(Path(cfg.topology_file).expanduser())
    return default_topology()
