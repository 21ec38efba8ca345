from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .errors import MissingParameter, PreconditionFailed

DEFAULT_CFG_DIR = "/opt/devpod"
DEFAULT_DATA_DIR = "/srv/devpod"
DEFAULT_LOG_DIR = "/var/log/devpod"
DEFAULT_BACKUP_DIR = "/srv/devpod-backups"
DEFAULT_SSH_PORT = 2222
DEFAULT_ADMIN_USER = "admin"

_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_USER_RE = re.compile(r"^[a-z_][a-z0-9_.-]{0,31}$")

ENV_KEYS = (
    "DOMAIN",
    "EMAIL",
    "ADMIN_USER",
    "SSH_PORT",
    "CFG_DIR",
    "DATA_DIR",
    "LOG_DIR",
    "BACKUP_DIR",
    "WORKSPACE_DIR",
    "TRAEFIK_DIR",
    "COMPOSE_FILE",
)


def normalize_domain(value: str) -> str:
    domain = (value or "").strip().lower().rstrip(".")
    if not domain:
        raise ValueError("Domain cannot be empty.")
    if len(domain) > 253:
        raise ValueError(f"Domain is too long: {domain}")
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValueError(f"Domain must contain at least two labels: {domain}")
    for label in labels:
        if not _LABEL_RE.match(label):
            raise ValueError(f"Invalid domain label '{label}' in {domain}")
    return domain


def normalize_email(value: str) -> str:
    email = (value or "").strip()
    if not _EMAIL_RE.match(email):
        raise ValueError(f"Invalid email address: {value!r}")
    return email


@dataclass(frozen=True)
class StackParameters:
    domain: str
    email: str
    admin_user: str = DEFAULT_ADMIN_USER
    ssh_port: int = DEFAULT_SSH_PORT
    cfg_dir: Path = Path(DEFAULT_CFG_DIR)
    data_dir: Path = Path(DEFAULT_DATA_DIR)
    log_dir: Path = Path(DEFAULT_LOG_DIR)
    backup_dir: Path = Path(DEFAULT_BACKUP_DIR)
    workspace_dir: Path = Path(DEFAULT_DATA_DIR) / "workspace"

    @classmethod
    def create(
        cls,
        *,
        domain: str,
        email: str,
        admin_user: str = DEFAULT_ADMIN_USER,
        ssh_port: int = DEFAULT_SSH_PORT,
        cfg_dir: str | Path = DEFAULT_CFG_DIR,
        data_dir: str | Path = DEFAULT_DATA_DIR,
        log_dir: str | Path = DEFAULT_LOG_DIR,
        backup_dir: str | Path = DEFAULT_BACKUP_DIR,
        workspace_dir: str | Path | None = None,
    ) -> "StackParameters":
        """Validate raw input and build an immutable parameter set.

        Raises PreconditionFailed with a readable message on any bad value.
        """
        try:
            domain = normalize_domain(domain)
            email = normalize_email(email)
        except ValueError as exc:
            raise PreconditionFailed(str(exc)) from exc
        admin_user = (admin_user or "").strip()
        if not _USER_RE.match(admin_user):
            raise PreconditionFailed(f"Invalid admin user name: {admin_user!r}")
        try:
            port = int(ssh_port)
        except (TypeError, ValueError) as exc:
            raise PreconditionFailed(f"SSH port must be an integer: {ssh_port!r}") from exc
        if not 1 <= port <= 65535:
            raise PreconditionFailed(f"SSH port out of range (1-65535): {port}")
        if port in (80, 443):
            raise PreconditionFailed(f"SSH port {port} collides with the HTTP entry points.")

        dirs = {
            "cfg_dir": Path(cfg_dir),
            "data_dir": Path(data_dir),
            "log_dir": Path(log_dir),
            "backup_dir": Path(backup_dir),
        }
        dirs["workspace_dir"] = Path(workspace_dir) if workspace_dir else dirs["data_dir"] / "workspace"
        for name, path in dirs.items():
            if not path.is_absolute():
                raise PreconditionFailed(f"{name} must be an absolute path: {path}")
        return cls(domain=domain, email=email, admin_user=admin_user, ssh_port=port, **dirs)

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "StackParameters":
        missing = [key for key in ("DOMAIN", "EMAIL", "CFG_DIR", "DATA_DIR", "LOG_DIR", "BACKUP_DIR") if not env.get(key)]
        if missing:
            raise MissingParameter("environment-file", missing)
        return cls.create(
            domain=env["DOMAIN"],
            email=env["EMAIL"],
            admin_user=env.get("ADMIN_USER") or DEFAULT_ADMIN_USER,
            ssh_port=env.get("SSH_PORT") or DEFAULT_SSH_PORT,
            cfg_dir=env["CFG_DIR"],
            data_dir=env["DATA_DIR"],
            log_dir=env["LOG_DIR"],
            backup_dir=env["BACKUP_DIR"],
            workspace_dir=env.get("WORKSPACE_DIR") or None,
        )

    def env_items(self) -> dict[str, str]:
        return {
            "DOMAIN": self.domain,
            "EMAIL": self.email,
            "ADMIN_USER": self.admin_user,
            "SSH_PORT": str(self.ssh_port),
            "CFG_DIR": str(self.cfg_dir),
            "DATA_DIR": str(self.data_dir),
            "LOG_DIR": str(self.log_dir),
            "BACKUP_DIR": str(self.backup_dir),
            "WORKSPACE_DIR": str(self.workspace_dir),
            "TRAEFIK_DIR": str(self.traefik_dir),
            "COMPOSE_FILE": str(self.compose_path),
        }

    def same_identity(self, other: "StackParameters") -> bool:
        return (self.domain, self.email) == (other.domain, other.email)

    @property
    def env_path(self) -> Path:
        return self.cfg_dir / ".env"

    @property
    def compose_path(self) -> Path:
        return self.cfg_dir / "docker-compose.yml"

    @property
    def traefik_dir(self) -> Path:
        return self.cfg_dir / "traefik"

    @property
    def authelia_dir(self) -> Path:
        return self.cfg_dir / "authelia"

    @property
    def users_path(self) -> Path:
        return self.authelia_dir / "users.yml"

    @property
    def backup_script_path(self) -> Path:
        return self.cfg_dir / "backup.sh"

    @property
    def state_path(self) -> Path:
        return self.cfg_dir / "state.toml"

    @property
    def backup_log_path(self) -> Path:
        return self.log_dir / "backup.log"

    def directories(self) -> list[Path]:
        return [
            self.cfg_dir,
            self.data_dir,
            self.log_dir,
            self.backup_dir,
            self.workspace_dir,
            self.traefik_dir / "dynamic",
            self.traefik_dir / "acme",
            self.authelia_dir,
        ]


def read_env_file(path: Path) -> dict[str, str]:
    if not path.exists():
        return {}
    return read_env_content(path.read_text(encoding="utf-8"))


def read_env_content(content: str) -> dict[str, str]:
    data: dict[str, str] = {}
    for raw in content.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        data[key.strip()] = value.strip()
    return data


def load_installed(env_path: Path) -> dict[str, str] | None:
    """Return the stored parameter file as a mapping, or None when absent."""
    if not env_path.is_file():
        return None
    return read_env_file(env_path)
