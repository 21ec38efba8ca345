from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Mapping

from .errors import ArtifactRejected, OrchestratorError, OrchestratorUnavailable
from .render import TOPOLOGY_FILE

logger = logging.getLogger(__name__)

CommandRunner = Callable[..., subprocess.CompletedProcess]

DEFAULT_PULL_ATTEMPTS = 3
DEFAULT_PULL_BACKOFF_S = 2.0
DEFAULT_START_TIMEOUT_S = 120.0
DEFAULT_START_INTERVAL_S = 2.0
CONFIG_HASH_LABEL = "com.docker.compose.config-hash"


def local_command_runner() -> CommandRunner:
    def _run(
        cmd: list[str],
        *,
        input: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        logger.debug("exec: %s", " ".join(shlex.quote(part) for part in cmd))
        run_env = None
        if env is not None:
            run_env = {**os.environ, **env}
        try:
            return subprocess.run(cmd, text=True, capture_output=True, input=input, env=run_env)
        except FileNotFoundError as exc:
            return subprocess.CompletedProcess(cmd, 127, "", str(exc))

    return _run


def _tail(text: str | None, limit: int = 12) -> str:
    lines = [line for line in (text or "").splitlines() if line.strip()]
    return "\n".join(lines[-limit:])


@dataclass(frozen=True)
class ServiceState:
    name: str
    running: bool
    container_id: str | None = None
    image_id: str | None = None
    config_hash: str | None = None


class ComposeProject:
    """Thin driver around `docker compose` for one project/compose file pair.

    Every call is synchronous. Pulls are retried with exponential backoff;
    start/stop failures are raised immediately.
    """

    def __init__(
        self,
        compose_path: Path,
        env_path: Path,
        *,
        project_name: str = "devpod",
        runner: CommandRunner | None = None,
        pull_attempts: int = DEFAULT_PULL_ATTEMPTS,
        pull_backoff_s: float = DEFAULT_PULL_BACKOFF_S,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if pull_attempts < 1:
            raise ValueError("pull_attempts must be >= 1")
        self.compose_path = Path(compose_path)
        self.env_path = Path(env_path)
        self.project_name = project_name
        self._run = runner or local_command_runner()
        self._pull_attempts = pull_attempts
        self._pull_backoff_s = pull_backoff_s
        self._sleep = sleep

    def _compose_cmd(self, args: Iterable[str]) -> list[str]:
        return [
            "docker",
            "compose",
            "-p",
            self.project_name,
            "--env-file",
            str(self.env_path),
            "-f",
            str(self.compose_path),
            *args,
        ]

    def compose(self, args: Iterable[str], **kwargs) -> subprocess.CompletedProcess[str]:
        return self._run(self._compose_cmd(args), **kwargs)

    def docker(self, args: Iterable[str], **kwargs) -> subprocess.CompletedProcess[str]:
        return self._run(["docker", *args], **kwargs)

    def available(self) -> bool:
        return self.docker(["compose", "version"]).returncode == 0

    def check_config(self, content: str, variables: Mapping[str, str]) -> None:
        """Ask compose to parse `content` without touching the files on disk."""
        res = self._run(
            ["docker", "compose", "-p", self.project_name, "-f", "-", "config", "-q"],
            input=content,
            env=dict(variables),
        )
        if res.returncode != 0:
            raise ArtifactRejected(TOPOLOGY_FILE, _tail(res.stderr) or _tail(res.stdout))

    def pull(self, service: str) -> None:
        last_err = ""
        for attempt in range(1, self._pull_attempts + 1):
            res = self.compose(["pull", "--quiet", service])
            if res.returncode == 0:
                return
            last_err = _tail(res.stderr) or f"exit code {res.returncode}"
            logger.warning("pull %s failed (attempt %d/%d): %s", service, attempt, self._pull_attempts, last_err)
            if attempt < self._pull_attempts:
                self._sleep(self._pull_backoff_s * (2 ** (attempt - 1)))
        raise OrchestratorUnavailable(
            f"Failed to pull images for {service} after {self._pull_attempts} attempts: {last_err}"
        )

    def start(self, service: str) -> None:
        res = self.compose(["up", "-d", "--no-deps", service])
        if res.returncode != 0:
            raise OrchestratorError(f"Failed to start {service}.", _tail(res.stderr))

    def recreate(self, service: str) -> None:
        res = self.compose(["up", "-d", "--no-deps", "--force-recreate", service])
        if res.returncode != 0:
            raise OrchestratorError(f"Failed to recreate {service}.", _tail(res.stderr))

    def down(self, *, volumes: bool = True) -> None:
        args = ["down", "--remove-orphans"]
        if volumes:
            args.append("-v")
        res = self.compose(args)
        if res.returncode != 0:
            raise OrchestratorError("Failed to stop the stack.", _tail(res.stderr))

    def exec(self, service: str, command: list[str]) -> subprocess.CompletedProcess[str]:
        return self.compose(["exec", "-T", service, *command])

    def container_id(self, service: str) -> str | None:
        res = self.compose(["ps", "-q", service])
        if res.returncode != 0:
            return None
        ids = [line.strip() for line in (res.stdout or "").splitlines() if line.strip()]
        return ids[0] if ids else None

    def config_hashes(self) -> dict[str, str]:
        """Per-service config hashes as compose computes them for the current files."""
        res = self.compose(["config", "--hash", "*"])
        if res.returncode != 0:
            raise OrchestratorError("Failed to compute service config hashes.", _tail(res.stderr))
        hashes: dict[str, str] = {}
        for line in (res.stdout or "").splitlines():
            parts = line.split()
            if len(parts) == 2:
                hashes[parts[0]] = parts[1]
        return hashes

    def image_id(self, image: str) -> str | None:
        res = self.docker(["image", "inspect", "--format", "{{.Id}}", image])
        if res.returncode != 0:
            return None
        return (res.stdout or "").strip() or None

    def service_state(self, service: str) -> ServiceState:
        cid = self.container_id(service)
        if not cid:
            return ServiceState(name=service, running=False)
        res = self.docker(["inspect", "--format", "{{json .}}", cid])
        if res.returncode != 0:
            return ServiceState(name=service, running=False, container_id=cid)
        try:
            data = json.loads(res.stdout or "{}")
        except ValueError:
            data = {}
        if isinstance(data, list):
            data = data[0] if data else {}
        state = data.get("State") or {}
        labels = (data.get("Config") or {}).get("Labels") or {}
        return ServiceState(
            name=service,
            running=bool(state.get("Running")),
            container_id=cid,
            image_id=data.get("Image"),
            config_hash=labels.get(CONFIG_HASH_LABEL),
        )

    def wait_started(
        self,
        service: str,
        *,
        timeout: float = DEFAULT_START_TIMEOUT_S,
        interval: float = DEFAULT_START_INTERVAL_S,
    ) -> ServiceState:
        deadline = time.monotonic() + timeout
        while True:
            state = self.service_state(service)
            if state.running:
                return state
            if time.monotonic() >= deadline:
                raise OrchestratorError(f"{service} did not report running within {int(timeout)}s.")
            self._sleep(interval)

    def hash_password(self, image: str, password: str) -> str:
        res = self.docker(
            ["run", "--rm", image, "authelia", "crypto", "hash", "generate", "argon2", "--password", password]
        )
        if res.returncode != 0:
            raise OrchestratorError("Failed to hash the admin password.", _tail(res.stderr))
        for line in (res.stdout or "").splitlines():
            text = line.strip()
            if text.startswith("Digest:"):
                text = text[len("Digest:") :].strip()
            if text.startswith("$argon2"):
                return text
        raise OrchestratorError("Password hash output not recognized.", _tail(res.stdout))
