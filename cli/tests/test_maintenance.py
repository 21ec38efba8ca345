import os
import stat
import subprocess
from datetime import datetime

import pytest

from devpod_core.compose import ComposeProject
from devpod_core.errors import PartialFailure
from devpod_core.maintenance import (
    backup_command,
    job_line,
    prune_backups,
    register_recurring_job,
    run_backup,
    unregister_recurring_job,
    validate_schedule,
)


def test_job_line_format() -> None:
    assert job_line("0 3 * * *", "/opt/devpod/backup.sh") == "0 3 * * * root /opt/devpod/backup.sh\n"
    assert job_line(" */15  *  * * 1-5 ", "run", user="backup") == "*/15 * * * 1-5 backup run\n"


@pytest.mark.parametrize("schedule", ["", "0 3 * *", "0 3 * * * *", "@daily", "0 3 * * mon"])
def test_invalid_schedules(schedule) -> None:
    with pytest.raises(ValueError):
        validate_schedule(schedule)


def test_job_line_rejects_multiline_command() -> None:
    with pytest.raises(ValueError):
        job_line("0 3 * * *", "echo a\nrm -rf /")


def test_register_and_unregister(tmp_path, stack) -> None:
    job_path = tmp_path / "cron.d" / "devpod-backup"
    artifact = register_recurring_job("0 3 * * *", backup_command(stack), job_path=job_path)
    assert job_path.read_text(encoding="utf-8") == artifact.content
    assert artifact.content.startswith("0 3 * * * root ")
    assert stat.S_IMODE(job_path.stat().st_mode) == 0o644

    assert unregister_recurring_job(job_path)
    assert not job_path.exists()
    assert not unregister_recurring_job(job_path)


def test_prune_uses_retention_window(tmp_path) -> None:
    now = datetime(2024, 6, 10).timestamp()
    old = tmp_path / "2024-06-01"
    fresh = tmp_path / "2024-06-09"
    for path, age_days in ((old, 9), (fresh, 1)):
        path.mkdir()
        ts = now - age_days * 86400
        os.utime(path, (ts, ts))
    (tmp_path / "notes.txt").write_text("kept", encoding="utf-8")

    assert prune_backups(tmp_path, 7, now=now) == [old]
    assert fresh.exists()
    assert (tmp_path / "notes.txt").exists()


def _project(stack, docker) -> ComposeProject:
    return ComposeProject(stack.compose_path, stack.env_path, runner=docker)


def test_backup_runs_every_step(stack, docker) -> None:
    stack.data_dir.mkdir(parents=True)
    (stack.data_dir / "file.txt").write_text("data", encoding="utf-8")

    report = run_backup(stack, _project(stack, docker), today=lambda: datetime(2024, 6, 10))
    assert report.ok
    assert report.succeeded == ["dump", "archive", "prune"]
    assert (report.destination / "postgres.sql").read_text(encoding="utf-8") == "-- dump --\n"
    assert (report.destination / "data.tar.gz").exists()
    assert report.destination.name == "2024-06-10"


def test_failed_dump_does_not_stop_archive(stack, docker) -> None:
    stack.data_dir.mkdir(parents=True)
    docker.exec_result = subprocess.CompletedProcess([], 1, "", "service \"postgres\" is not running")

    with pytest.raises(PartialFailure) as exc:
        run_backup(stack, _project(stack, docker), today=lambda: datetime(2024, 6, 10))
    assert exc.value.failed == ["dump"]
    assert exc.value.total == 3
    report = exc.value.report
    assert report.succeeded == ["archive", "prune"]
    assert (report.destination / "data.tar.gz").exists()


def test_backup_without_database(stack, docker) -> None:
    with pytest.raises(PartialFailure) as exc:
        run_backup(stack, _project(stack, docker), database_service=None, today=lambda: datetime(2024, 6, 10))
    assert exc.value.failed == ["archive"]
    assert exc.value.total == 2
    assert not any(call[:2] == ["docker", "compose"] for call in docker.calls)
