from __future__ import annotations

import logging
import os
import platform
import shutil
import socket
from pathlib import Path
from typing import Iterable

import httpx

from .compose import CommandRunner, local_command_runner
from .errors import DependencyInstallFailed, PortInUse, PreconditionFailed

logger = logging.getLogger(__name__)

BASE_PACKAGES = ("curl", "gnupg", "git", "jq", "lsb-release", "openssl", "ca-certificates")
DOCKER_INSTALL_SCRIPT = "https://get.docker.com"
COMPOSE_RELEASE_API = "https://api.github.com/repos/docker/compose/releases/latest"
COMPOSE_DOWNLOAD_URL = "https://github.com/docker/compose/releases/download/{tag}/docker-compose-linux-{arch}"
COMPOSE_PLUGIN_PATH = Path("/usr/local/lib/docker/cli-plugins/docker-compose")


def require_root() -> None:
    if not hasattr(os, "geteuid") or os.geteuid() != 0:
        raise PreconditionFailed("This operation requires root. Re-run with sudo.")


def port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    """A port is taken if something answers on loopback or the wildcard bind fails."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(1.0)
        if sock.connect_ex((host, port)) == 0:
            return True
    # catches listeners bound to a single non-loopback address
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        # TIME_WAIT leftovers are ignored, live listeners still make bind fail
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind(("0.0.0.0", port))
        except OSError:
            return True
    return False


def check_ports_free(ports: Iterable[int]) -> None:
    for port in ports:
        if port_in_use(port):
            raise PortInUse(port)


def _command_exists(cmd: str) -> bool:
    return shutil.which(cmd) is not None


def docker_installed() -> bool:
    return _command_exists("docker")


def compose_installed(runner: CommandRunner) -> bool:
    return runner(["docker", "compose", "version"]).returncode == 0


def install_base_packages(runner: CommandRunner, packages: Iterable[str] = BASE_PACKAGES) -> None:
    env = {"DEBIAN_FRONTEND": "noninteractive"}
    for cmd in (["apt-get", "update", "-qq"], ["apt-get", "install", "-yqq", *packages]):
        res = runner(cmd, env=env)
        if res.returncode != 0:
            raise DependencyInstallFailed(f"{' '.join(cmd[:2])} failed: {(res.stderr or '').strip()}")


def install_docker(runner: CommandRunner) -> None:
    res = runner(["sh", "-c", f"curl -fsSL {DOCKER_INSTALL_SCRIPT} | sh"])
    if res.returncode != 0:
        raise DependencyInstallFailed(f"Docker installation failed: {(res.stderr or '').strip()}")


def _compose_arch() -> str:
    machine = platform.machine().lower()
    return {"amd64": "x86_64", "arm64": "aarch64"}.get(machine, machine)


def install_compose_plugin(target: Path = COMPOSE_PLUGIN_PATH, *, timeout_s: float = 60.0) -> str:
    """Download the latest compose release binary into the CLI plugin dir; returns the tag."""
    try:
        resp = httpx.get(COMPOSE_RELEASE_API, timeout=timeout_s, follow_redirects=True)
        resp.raise_for_status()
        tag = str(resp.json().get("tag_name") or "").strip()
        if not tag:
            raise DependencyInstallFailed("Compose release metadata has no tag_name.")
        url = COMPOSE_DOWNLOAD_URL.format(tag=tag, arch=_compose_arch())
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(f".{target.name}.download")
        with httpx.stream("GET", url, timeout=timeout_s, follow_redirects=True) as stream:
            stream.raise_for_status()
            with tmp.open("wb") as f:
                for chunk in stream.iter_bytes():
                    f.write(chunk)
    except (httpx.HTTPError, ValueError, OSError) as exc:
        raise DependencyInstallFailed(f"Compose plugin download failed: {exc}") from exc
    tmp.chmod(0o755)
    os.replace(tmp, target)
    return tag


def ensure_runtime(runner: CommandRunner | None = None, *, on_step=None) -> None:
    """Install missing runtime pieces; already-present tools are left alone."""
    run = runner or local_command_runner()
    notify = on_step or (lambda _msg: None)
    if not docker_installed():
        # the docker convenience script needs curl and gnupg
        notify("Installing base packages")
        install_base_packages(run)
        notify("Installing Docker")
        install_docker(run)
    if not compose_installed(run):
        notify("Installing Docker Compose plugin")
        tag = install_compose_plugin()
        logger.info("Installed docker compose %s", tag)
        if not compose_installed(run):
            raise DependencyInstallFailed("docker compose is still unavailable after installing the plugin.")
    if run(["docker", "info"]).returncode != 0:
        raise DependencyInstallFailed("Docker daemon is not running.")
