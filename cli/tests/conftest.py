from __future__ import annotations

import json
import subprocess

import pytest

from devpod_core import host
from devpod_core.credentials import ALPHABET, SECRET_LENGTH
from devpod_core.lifecycle import HostSettings, StackDriver
from devpod_core.params import StackParameters
from devpod_core.stack import default_topology

FAKE_HASH = "$argon2id$v=19$m=65536,t=3,p=4$c2FsdHNhbHQ$ZmFrZWhhc2g"


def is_secret(value: str) -> bool:
    return len(value) >= SECRET_LENGTH and set(value) <= set(ALPHABET)


class FakeDocker:
    """Stands in for the docker CLI; keeps just enough container state for the driver."""

    def __init__(self, topology):
        self.topology = topology
        self.calls: list[list[str]] = []
        self.containers: dict[str, dict] = {}
        self.hashes = {name: f"hash-{name}" for name in topology.names}
        self.pull_failures: dict[str, int] = {}
        self.exec_result = subprocess.CompletedProcess([], 0, "-- dump --\n", "")
        self.config_ok = True
        self._seq = 0

    def __call__(self, cmd, *, input=None, env=None):
        self.calls.append(list(cmd))
        if cmd[:2] == ["docker", "compose"]:
            return self._compose(cmd)
        return self._docker(cmd[1:])

    def _ok(self, stdout: str = "", code: int = 0, stderr: str = "") -> subprocess.CompletedProcess:
        return subprocess.CompletedProcess([], code, stdout, stderr)

    def _compose(self, cmd):
        i = 2
        while i < len(cmd) and cmd[i] in ("-p", "--env-file", "-f"):
            i += 2
        args = cmd[i:]
        sub = args[0] if args else ""
        if sub == "version":
            return self._ok("Docker Compose version v2.24.0")
        if sub == "config" and "--hash" in args:
            return self._ok("".join(f"{name} {value}\n" for name, value in self.hashes.items()))
        if sub == "config":
            return self._ok() if self.config_ok else self._ok(code=1, stderr="services.x: invalid")
        if sub == "pull":
            svc = args[-1]
            if self.pull_failures.get(svc, 0) > 0:
                self.pull_failures[svc] -= 1
                return self._ok(code=1, stderr="toomanyrequests: rate limit")
            return self._ok()
        if sub == "up":
            svc = args[-1]
            self._seq += 1
            self.containers[svc] = {
                "id": f"c{self._seq:04d}{svc}",
                "hash": self.hashes[svc],
                "image": f"sha256:{self.topology.service(svc).image}",
                "running": True,
            }
            return self._ok()
        if sub == "ps":
            container = self.containers.get(args[-1])
            return self._ok(f"{container['id']}\n" if container else "")
        if sub == "down":
            self.containers.clear()
            return self._ok()
        if sub == "exec":
            return self.exec_result
        return self._ok(code=1, stderr=f"unexpected compose call: {args}")

    def _docker(self, args):
        if args[:1] == ["info"]:
            return self._ok()
        if args[:1] == ["run"]:
            return self._ok(f"Digest: {FAKE_HASH}\n")
        if args[:2] == ["image", "inspect"]:
            return self._ok(f"sha256:{args[-1]}\n")
        if args[:1] == ["inspect"]:
            for container in self.containers.values():
                if container["id"] == args[-1]:
                    data = {
                        "State": {"Running": container["running"]},
                        "Image": container["image"],
                        "Config": {"Labels": {"com.docker.compose.config-hash": container["hash"]}},
                    }
                    return self._ok(json.dumps(data))
            return self._ok(code=1, stderr="No such object")
        return self._ok(code=1, stderr=f"unexpected docker call: {args}")

    def compose_calls(self, sub: str) -> list[list[str]]:
        out = []
        for call in self.calls:
            if call[:2] != ["docker", "compose"]:
                continue
            i = 2
            while i < len(call) and call[i] in ("-p", "--env-file", "-f"):
                i += 2
            if call[i:i + 1] == [sub]:
                out.append(call[i:])
        return out


@pytest.fixture
def as_root(monkeypatch):
    monkeypatch.setattr(host, "require_root", lambda: None)
    monkeypatch.setattr(host, "check_ports_free", lambda ports: None)
    monkeypatch.setattr(host, "ensure_runtime", lambda runner=None, on_step=None: None)


@pytest.fixture
def stack(tmp_path) -> StackParameters:
    return StackParameters.create(
        domain="example.com",
        email="admin@example.com",
        cfg_dir=tmp_path / "opt" / "devpod",
        data_dir=tmp_path / "srv" / "devpod",
        log_dir=tmp_path / "log" / "devpod",
        backup_dir=tmp_path / "srv" / "devpod-backups",
    )


@pytest.fixture
def settings(tmp_path, stack) -> HostSettings:
    return HostSettings(
        cfg_dir=stack.cfg_dir,
        job_path=tmp_path / "cron.d" / "devpod-backup",
        lock_path=tmp_path / "run" / "devpod.lock",
        pull_backoff_s=0.5,
    )


@pytest.fixture
def docker() -> FakeDocker:
    return FakeDocker(default_topology())


@pytest.fixture
def driver(settings, docker) -> StackDriver:
    sleeps: list[float] = []
    drv = StackDriver(settings, docker.topology, runner=docker, sleep=sleeps.append)
    drv.sleeps = sleeps
    return drv
