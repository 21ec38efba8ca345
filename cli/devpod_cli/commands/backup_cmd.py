from __future__ import annotations

from devpod_core import host
from devpod_core.errors import DevpodError, PartialFailure
from devpod_core.maintenance import run_backup
from devpod_core.stack import DATABASE_SERVICE

from .. import console
from ..config import load_config
from . import stack_cmd


def backup():
    """Dump the database, archive the data directory and prune old backups."""
    cfg = load_config()
    try:
        driver = stack_cmd.stack_driver(cfg)
        host.require_root()
        stack, _ = driver.load()
        database = DATABASE_SERVICE if DATABASE_SERVICE in driver.topology else None
        report = run_backup(
            stack,
            driver.project(stack),
            retention_days=cfg.backup_retention_days,
            database_service=database,
        )
    except PartialFailure as exc:
        report = exc.report
        if report is not None:
            for step, reason in report.failed.items():
                console.err(f"{step}: {reason}")
        raise stack_cmd.fail(exc) from exc
    except DevpodError as exc:
        raise stack_cmd.fail(exc) from exc

    for path in report.pruned:
        console.info(f"Pruned {path}")
    console.ok(f"Backup written to {report.destination} ({', '.join(report.succeeded)}).")
