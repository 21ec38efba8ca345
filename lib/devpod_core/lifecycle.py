from __future__ import annotations

import fcntl
import logging
import os
import shutil
import time
import tomllib
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator

import tomli_w
import yaml

from . import host
from .compose import DEFAULT_START_TIMEOUT_S, CommandRunner, ComposeProject, ServiceState, local_command_runner
from .credentials import SecretBundle, generate_bundle
from .errors import NotInstalled, PreconditionFailed
from .fsutil import atomic_write
from .maintenance import DEFAULT_JOB_PATH, DEFAULT_SCHEDULE, backup_command, register_recurring_job, unregister_recurring_job
from .params import DEFAULT_CFG_DIR, StackParameters, load_installed
from .render import (
    DEFAULT_PROJECT_NAME,
    DEFAULT_RETENTION_DAYS,
    IDENTITY_USERS,
    MAINTENANCE_SCRIPT,
    TOPOLOGY_FILE,
    RenderedArtifact,
    artifact_paths,
    build_params,
    plan_artifacts,
    write_artifact,
)
from .topology import Topology

logger = logging.getLogger(__name__)

HTTP_PORTS = (80, 443)
DEFAULT_LOCK_PATH = Path("/run/devpod.lock")
# uid/gid the editor container runs as (PUID/PGID)
SERVICE_UID = 1000

STEP_PREFLIGHT = "preflight"
STEP_RUNTIME = "runtime"
STEP_DIRECTORIES = "directories"
STEP_RENDER = "render"
STEP_PULL = "pull"
STEP_START = "start"
STEP_JOB = "maintenance-job"


@dataclass(frozen=True)
class HostSettings:
    cfg_dir: Path = Path(DEFAULT_CFG_DIR)
    project_name: str = DEFAULT_PROJECT_NAME
    job_path: Path = DEFAULT_JOB_PATH
    lock_path: Path = DEFAULT_LOCK_PATH
    backup_schedule: str = DEFAULT_SCHEDULE
    retention_days: int = DEFAULT_RETENTION_DAYS
    pull_attempts: int = 3
    pull_backoff_s: float = 2.0
    start_timeout_s: float = DEFAULT_START_TIMEOUT_S

    @property
    def env_path(self) -> Path:
        return self.cfg_dir / ".env"


@dataclass
class InstallState:
    path: Path
    domain: str = ""
    completed: list[str] = field(default_factory=list)

    @classmethod
    def load(cls, path: Path) -> "InstallState":
        try:
            with path.open("rb") as f:
                data = tomllib.load(f)
        except FileNotFoundError:
            return cls(path=path)
        completed = data.get("completed") or []
        return cls(
            path=path,
            domain=str(data.get("domain") or ""),
            completed=[str(step) for step in completed if isinstance(step, str)],
        )

    @property
    def complete(self) -> bool:
        return STEP_JOB in self.completed

    def mark(self, step: str) -> None:
        if step not in self.completed:
            self.completed.append(step)
        payload = {
            "domain": self.domain,
            "completed": self.completed,
            "updated_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        atomic_write(self.path, tomli_w.dumps(payload), mode=0o600)


@dataclass
class InstallResult:
    stack: StackParameters
    secrets: SecretBundle
    resumed: bool
    started: list[str]
    artifacts: list[Path]
    hosts: dict[str, str]


@dataclass
class UpgradeResult:
    recreated: list[str]
    unchanged: list[str]


@contextmanager
def stack_lock(path: Path) -> Iterator[None]:
    """Exclusive, non-blocking lock held for one operation."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a+") as handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise PreconditionFailed(f"Another devpod operation is running (lock held: {path}).") from None
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def ensure_directories(stack: StackParameters) -> None:
    for path in stack.directories():
        path.mkdir(parents=True, exist_ok=True)
    (stack.traefik_dir / "acme").chmod(0o700)
    # the editor runs as SERVICE_UID and writes into the default workspace under data_dir
    chown_tree(stack.data_dir, SERVICE_UID, SERVICE_UID)


def chown_tree(root: Path, uid: int, gid: int) -> None:
    try:
        os.chown(root, uid, gid, follow_symlinks=False)
        for dirpath, dirnames, filenames in os.walk(root):
            for name in dirnames + filenames:
                os.chown(os.path.join(dirpath, name), uid, gid, follow_symlinks=False)
    except OSError as exc:
        logger.debug("chown %s to %d:%d failed: %s", root, uid, gid, exc)


def existing_password_hash(users_path: Path, user: str) -> str | None:
    try:
        data = yaml.safe_load(users_path.read_text(encoding="utf-8")) or {}
    except (FileNotFoundError, yaml.YAMLError):
        return None
    entry = (data.get("users") or {}).get(user) if isinstance(data, dict) else None
    if not isinstance(entry, dict):
        return None
    value = str(entry.get("password") or "")
    return value if value.startswith("$argon2") else None


def _needs_recreate(state: ServiceState, wanted_hash: str | None, wanted_image: str | None) -> bool:
    if not state.running:
        return True
    if wanted_hash and state.config_hash and wanted_hash != state.config_hash:
        return True
    if wanted_image and state.image_id and wanted_image != state.image_id:
        return True
    return False


class StackDriver:
    """Runs install/upgrade/uninstall for one stack, one external call at a time."""

    def __init__(
        self,
        settings: HostSettings,
        topology: Topology,
        *,
        runner: CommandRunner | None = None,
        on_step: Callable[[str], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.topology = topology
        self._runner = runner or local_command_runner()
        self._on_step = on_step
        self._sleep = sleep

    def _step(self, message: str) -> None:
        logger.info(message)
        if self._on_step is not None:
            self._on_step(message)

    def project(self, stack: StackParameters) -> ComposeProject:
        return ComposeProject(
            stack.compose_path,
            stack.env_path,
            project_name=self.settings.project_name,
            runner=self._runner,
            pull_attempts=self.settings.pull_attempts,
            pull_backoff_s=self.settings.pull_backoff_s,
            sleep=self._sleep,
        )

    def load(self) -> tuple[StackParameters, SecretBundle]:
        env = load_installed(self.settings.env_path)
        if env is None:
            raise NotInstalled(str(self.settings.env_path))
        return StackParameters.from_env(env), SecretBundle.from_env(env)

    def _params(self, stack: StackParameters, secrets: SecretBundle, admin_password_hash: str | None = None) -> dict:
        return build_params(
            stack,
            secrets,
            self.topology,
            project_name=self.settings.project_name,
            admin_password_hash=admin_password_hash,
            retention_days=self.settings.retention_days,
        )

    def _write_artifacts(self, project: ComposeProject, artifacts: list[RenderedArtifact], params: dict) -> list[Path]:
        variables = {key: str(value) for key, value in params.items() if key.isupper() and isinstance(value, str)}
        for artifact in artifacts:
            if artifact.template_id == TOPOLOGY_FILE:
                project.check_config(artifact.content, variables)
        written = []
        for artifact in artifacts:
            written.append(write_artifact(artifact))
            logger.debug("wrote %s (%o)", artifact.path, artifact.mode)
        return written

    def _start_in_order(self, project: ComposeProject) -> list[str]:
        started = []
        for name in self.topology.startup_order():
            self._step(f"Starting {name}")
            project.start(name)
            project.wait_started(name, timeout=self.settings.start_timeout_s)
            started.append(name)
        return started

    def _pull_all(self, project: ComposeProject) -> None:
        for name in self.topology.startup_order():
            self._step(f"Pulling {name}")
            project.pull(name)

    def install(self, stack: StackParameters) -> InstallResult:
        host.require_root()
        self.topology.validate()

        existing = load_installed(stack.env_path)
        resumed = existing is not None
        if existing is not None:
            stored = StackParameters.from_env(existing)
            if not stored.same_identity(stack):
                raise PreconditionFailed(
                    f"A stack for {stored.domain} ({stored.email}) is already installed in {stored.cfg_dir}. "
                    "Run uninstall first to change the domain or email."
                )
            stack = stored
            secrets = SecretBundle.from_env(existing)
        else:
            secrets = generate_bundle()

        # Render everything except the users file up front so bad input fails before any mutation.
        sso = bool(self.topology.sso_service)
        pre_templates = None
        if sso:
            pre_templates = [tid for tid, _, _ in artifact_paths(stack, self.topology) if tid != IDENTITY_USERS]
        plan_artifacts(stack, self._params(stack, secrets), self.topology, only=pre_templates)

        with stack_lock(self.settings.lock_path):
            state = InstallState(path=stack.state_path, domain=stack.domain)
            if resumed:
                state = InstallState.load(stack.state_path)
                state.domain = stack.domain
                if state.complete:
                    self._step(f"{stack.domain} is already installed; re-applying configuration")
                else:
                    done = ", ".join(state.completed) or "nothing"
                    self._step(f"Interrupted install detected for {stack.domain}; resuming (completed: {done})")
            else:
                self._step("Checking that ports are free")
                host.check_ports_free((*HTTP_PORTS, stack.ssh_port))

            self._step("Ensuring container runtime")
            host.ensure_runtime(self._runner, on_step=self._step)

            self._step("Creating directories")
            ensure_directories(stack)
            state.mark(STEP_PREFLIGHT)
            state.mark(STEP_RUNTIME)
            state.mark(STEP_DIRECTORIES)

            project = self.project(stack)
            password_hash = None
            if sso:
                password_hash = existing_password_hash(stack.users_path, stack.admin_user)
                if password_hash is None:
                    self._step("Hashing admin password")
                    sso_image = self.topology.service(self.topology.sso_service).image
                    password_hash = project.hash_password(sso_image, secrets["ADMIN_PASSWORD"])

            self._step("Rendering configuration")
            params = self._params(stack, secrets, password_hash)
            artifacts = plan_artifacts(stack, params, self.topology)
            written = self._write_artifacts(project, artifacts, params)
            state.mark(STEP_RENDER)

            self._pull_all(project)
            state.mark(STEP_PULL)

            started = self._start_in_order(project)
            state.mark(STEP_START)

            self._step("Registering backup job")
            register_recurring_job(
                self.settings.backup_schedule,
                backup_command(stack),
                job_path=self.settings.job_path,
            )
            state.mark(STEP_JOB)

        return InstallResult(
            stack=stack,
            secrets=secrets,
            resumed=resumed,
            started=started,
            artifacts=[*written, self.settings.job_path],
            hosts=self.topology.hosts(stack.domain),
        )

    def upgrade(self) -> UpgradeResult:
        host.require_root()
        stack, secrets = self.load()
        self.topology.validate()
        params = self._params(stack, secrets)
        artifacts = plan_artifacts(stack, params, self.topology, only=(TOPOLOGY_FILE, MAINTENANCE_SCRIPT))

        with stack_lock(self.settings.lock_path):
            project = self.project(stack)
            self._step("Refreshing topology file")
            self._write_artifacts(project, artifacts, params)

            self._pull_all(project)

            hashes = project.config_hashes()
            recreated: list[str] = []
            unchanged: list[str] = []
            for name in self.topology.startup_order():
                svc = self.topology.service(name)
                wanted_image = None if "$" in svc.image else project.image_id(svc.image)
                state = project.service_state(name)
                if not _needs_recreate(state, hashes.get(name), wanted_image):
                    unchanged.append(name)
                    continue
                self._step(f"Recreating {name}")
                project.recreate(name)
                project.wait_started(name, timeout=self.settings.start_timeout_s)
                recreated.append(name)
        return UpgradeResult(recreated=recreated, unchanged=unchanged)

    def uninstall(self) -> list[Path]:
        host.require_root()
        stack, _ = self.load()
        removed: list[Path] = []
        with stack_lock(self.settings.lock_path):
            if stack.compose_path.exists():
                self._step("Stopping services and removing volumes")
                self.project(stack).down(volumes=True)
            for path in (stack.cfg_dir, stack.data_dir, stack.backup_dir):
                if path.exists():
                    self._step(f"Deleting {path}")
                    shutil.rmtree(path)
                    removed.append(path)
            if unregister_recurring_job(self.settings.job_path):
                removed.append(self.settings.job_path)
        return removed

    def status(self) -> list[ServiceState]:
        host.require_root()
        stack, _ = self.load()
        project = self.project(stack)
        return [project.service_state(name) for name in self.topology.startup_order()]
