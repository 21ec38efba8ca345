import os
import stat

import pytest

from devpod_core import host
from devpod_core.credentials import SECRET_NAMES
from devpod_core.errors import NotInstalled, OrchestratorUnavailable, PortInUse, PreconditionFailed
from devpod_core.lifecycle import SERVICE_UID, STEP_JOB, InstallState, stack_lock
from devpod_core.params import StackParameters, read_env_file

from conftest import FAKE_HASH, is_secret


def test_install_writes_parameters_and_starts_in_order(as_root, driver, docker, stack, settings) -> None:
    result = driver.install(stack)

    env = read_env_file(stack.env_path)
    assert env["DOMAIN"] == "example.com"
    assert env["EMAIL"] == "admin@example.com"
    secrets = [env[name] for name in SECRET_NAMES]
    assert len(set(secrets)) == 6
    assert all(is_secret(value) for value in secrets)
    assert stat.S_IMODE(stack.env_path.stat().st_mode) == 0o600

    started = [call[-1] for call in docker.compose_calls("up")]
    assert started == driver.topology.startup_order() == result.started
    assert result.hosts["git.example.com"] == "gitea"
    assert result.hosts["code.example.com"] == "code"
    assert FAKE_HASH in stack.users_path.read_text(encoding="utf-8")

    job = settings.job_path.read_text(encoding="utf-8")
    assert job == f"0 3 * * * root {stack.backup_script_path} >>{stack.backup_log_path} 2>&1\n"
    assert InstallState.load(stack.state_path).complete


def test_install_resumes_with_stored_secrets(as_root, driver, docker, stack) -> None:
    first = driver.install(stack)
    state = InstallState.load(stack.state_path)
    state.completed.remove(STEP_JOB)
    state.mark("render")

    second = driver.install(stack)
    assert second.resumed
    assert dict(second.secrets) == dict(first.secrets)
    hash_calls = [call for call in docker.calls if call[:2] == ["docker", "run"]]
    assert len(hash_calls) == 1
    assert InstallState.load(stack.state_path).complete


def test_install_refuses_other_identity(as_root, driver, stack) -> None:
    driver.install(stack)
    before = stack.env_path.read_text(encoding="utf-8")
    other = StackParameters.create(
        domain="other.example.org",
        email=stack.email,
        cfg_dir=stack.cfg_dir,
        data_dir=stack.data_dir,
        log_dir=stack.log_dir,
        backup_dir=stack.backup_dir,
    )
    with pytest.raises(PreconditionFailed):
        driver.install(other)
    assert stack.env_path.read_text(encoding="utf-8") == before


def test_install_stops_before_mutation_when_port_busy(as_root, monkeypatch, driver, docker, stack) -> None:
    def _busy(ports):
        raise PortInUse(443)

    monkeypatch.setattr(host, "check_ports_free", _busy)
    with pytest.raises(PortInUse) as exc:
        driver.install(stack)
    assert exc.value.port == 443
    assert not stack.cfg_dir.exists()
    assert docker.calls == []


def test_pull_is_retried_with_backoff(as_root, driver, docker, stack) -> None:
    docker.pull_failures["postgres"] = 2
    driver.install(stack)
    assert driver.sleeps == [0.5, 1.0]


def test_pull_gives_up_after_attempts(as_root, driver, docker, stack) -> None:
    docker.pull_failures["postgres"] = 3
    with pytest.raises(OrchestratorUnavailable):
        driver.install(stack)
    assert docker.compose_calls("up") == []
    assert not InstallState.load(stack.state_path).complete


def test_second_upgrade_recreates_nothing(as_root, driver, docker, stack) -> None:
    driver.install(stack)
    docker.hashes["grafana"] = "hash-grafana-2"
    docker.containers["redis"]["running"] = False

    first = driver.upgrade()
    assert first.recreated == ["redis", "grafana"]

    second = driver.upgrade()
    assert second.recreated == []
    assert sorted(second.unchanged) == sorted(driver.topology.names)


def test_upgrade_never_rewrites_secrets(as_root, driver, docker, stack) -> None:
    driver.install(stack)
    before = stack.env_path.read_bytes()
    docker.hashes["gitea"] = "hash-gitea-2"

    driver.upgrade()
    driver.upgrade()
    assert stack.env_path.read_bytes() == before


def test_install_hands_data_dir_to_editor_user(as_root, monkeypatch, driver, stack) -> None:
    owners: dict[str, tuple[int, int]] = {}

    def _chown(path, uid, gid, *, follow_symlinks=True):
        owners[str(path)] = (uid, gid)

    monkeypatch.setattr(os, "chown", _chown)
    driver.install(stack)
    assert owners[str(stack.data_dir)] == (SERVICE_UID, SERVICE_UID)
    assert owners[str(stack.workspace_dir)] == (SERVICE_UID, SERVICE_UID)
    assert str(stack.cfg_dir) not in owners


def test_chown_failure_does_not_stop_install(as_root, monkeypatch, driver, stack) -> None:
    def _chown(path, uid, gid, *, follow_symlinks=True):
        raise PermissionError(1, "Operation not permitted", str(path))

    monkeypatch.setattr(os, "chown", _chown)
    assert driver.install(stack).started


def test_upgrade_requires_install(as_root, driver) -> None:
    with pytest.raises(NotInstalled):
        driver.upgrade()


def test_uninstall_without_install_mutates_nothing(as_root, driver, docker, stack, settings) -> None:
    with pytest.raises(NotInstalled):
        driver.uninstall()
    assert not stack.cfg_dir.exists()
    assert not settings.job_path.exists()
    assert docker.calls == []


def test_uninstall_removes_everything(as_root, driver, docker, stack, settings) -> None:
    driver.install(stack)
    removed = driver.uninstall()
    assert docker.compose_calls("down") == [["down", "--remove-orphans", "-v"]]
    assert stack.cfg_dir in removed and stack.data_dir in removed
    assert not stack.cfg_dir.exists()
    assert not stack.data_dir.exists()
    assert not settings.job_path.exists()


def test_status_reports_each_service(as_root, driver, stack) -> None:
    driver.install(stack)
    states = driver.status()
    assert [s.name for s in states] == driver.topology.startup_order()
    assert all(s.running for s in states)


def test_lock_is_exclusive(tmp_path) -> None:
    lock = tmp_path / "devpod.lock"
    with stack_lock(lock):
        with pytest.raises(PreconditionFailed):
            with stack_lock(lock):
                pass
    with stack_lock(lock):
        pass
