from __future__ import annotations

import logging
import re
import shutil
import tarfile
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable

from .compose import ComposeProject
from .errors import PartialFailure
from .fsutil import atomic_write
from .params import StackParameters
from .render import DEFAULT_RETENTION_DAYS, RenderedArtifact

logger = logging.getLogger(__name__)

DEFAULT_SCHEDULE = "0 3 * * *"
DEFAULT_JOB_PATH = Path("/etc/cron.d/devpod-backup")
_CRON_FIELD_RE = re.compile(r"^[0-9*/,\-]+$")
_CRON_USER_RE = re.compile(r"^[a-z_][a-z0-9_.-]*$")


def validate_schedule(schedule: str) -> str:
    fields = schedule.split()
    if len(fields) != 5 or not all(_CRON_FIELD_RE.match(f) for f in fields):
        raise ValueError(f"Schedule must have five cron fields: {schedule!r}")
    return " ".join(fields)


def job_line(schedule: str, command: str, *, user: str = "root") -> str:
    if not _CRON_USER_RE.match(user):
        raise ValueError(f"Invalid cron user: {user!r}")
    if not command.strip() or "\n" in command:
        raise ValueError("Cron command must be a single non-empty line.")
    return f"{validate_schedule(schedule)} {user} {command.strip()}\n"


def backup_command(stack: StackParameters) -> str:
    return f"{stack.backup_script_path} >>{stack.backup_log_path} 2>&1"


def register_recurring_job(
    schedule: str,
    command: str,
    *,
    job_path: Path = DEFAULT_JOB_PATH,
    user: str = "root",
) -> RenderedArtifact:
    # cron.d ignores files that are group/other writable
    artifact = RenderedArtifact("recurring-job", job_path, job_line(schedule, command, user=user), 0o644)
    atomic_write(artifact.path, artifact.content, mode=artifact.mode)
    logger.debug("registered recurring job at %s", job_path)
    return artifact


def unregister_recurring_job(job_path: Path = DEFAULT_JOB_PATH) -> bool:
    try:
        job_path.unlink()
    except FileNotFoundError:
        return False
    return True


@dataclass
class BackupReport:
    destination: Path
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    pruned: list[Path] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def dump_database(project: ComposeProject, service: str, dest: Path) -> Path:
    target = dest / "postgres.sql"
    res = project.exec(service, ["pg_dumpall", "-U", "postgres"])
    if res.returncode != 0:
        raise RuntimeError((res.stderr or "").strip() or f"pg_dumpall exited with {res.returncode}")
    target.write_text(res.stdout or "", encoding="utf-8")
    target.chmod(0o600)
    return target


def archive_directory(source: Path, dest: Path) -> Path:
    if not source.is_dir():
        raise FileNotFoundError(f"Data directory not found: {source}")
    target = dest / "data.tar.gz"
    with tarfile.open(target, "w:gz") as tar:
        for entry in sorted(source.iterdir()):
            tar.add(str(entry), arcname=entry.name)
    return target


def prune_backups(backup_dir: Path, retention_days: int, *, now: float | None = None) -> list[Path]:
    """Remove backup sets whose modification time is older than the retention window."""
    cutoff = (now if now is not None else time.time()) - retention_days * 86400
    removed = []
    for entry in sorted(backup_dir.iterdir()):
        if not entry.is_dir():
            continue
        if entry.stat().st_mtime < cutoff:
            shutil.rmtree(entry)
            removed.append(entry)
    return removed


def run_backup(
    stack: StackParameters,
    project: ComposeProject,
    *,
    retention_days: int = DEFAULT_RETENTION_DAYS,
    database_service: str | None = "postgres",
    today: Callable[[], datetime] = datetime.now,
) -> BackupReport:
    """Dump, archive and prune as independent steps.

    All steps are attempted; if any failed, PartialFailure is raised after the
    last one with the report attached.
    """
    dest = stack.backup_dir / today().strftime("%Y-%m-%d")
    dest.mkdir(parents=True, exist_ok=True)
    report = BackupReport(destination=dest)

    steps: list[tuple[str, Callable[[], object]]] = []
    if database_service:
        steps.append(("dump", lambda: dump_database(project, database_service, dest)))
    steps.append(("archive", lambda: archive_directory(stack.data_dir, dest)))
    steps.append(("prune", lambda: report.pruned.extend(prune_backups(stack.backup_dir, retention_days))))

    for name, step in steps:
        try:
            step()
        except Exception as exc:
            logger.error("backup step %s failed: %s", name, exc)
            report.failed[name] = str(exc)
            continue
        logger.info("backup step %s ok", name)
        report.succeeded.append(name)

    if report.failed:
        raise PartialFailure(list(report.failed), total=len(steps), report=report)
    return report
