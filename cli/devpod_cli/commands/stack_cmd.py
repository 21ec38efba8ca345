from __future__ import annotations

import os
import pwd
from pathlib import Path

import typer
from rich.prompt import Prompt
from rich.table import Table

from devpod_core import host
from devpod_core.compose import ComposeProject, local_command_runner
from devpod_core.credentials import generate_bundle
from devpod_core.errors import ArtifactRejected, DevpodError
from devpod_core.lifecycle import InstallResult, StackDriver
from devpod_core.params import StackParameters
from devpod_core.render import IDENTITY_USERS, TOPOLOGY_FILE, artifact_paths, build_params, plan_artifacts, relocate, write_artifact

from .. import console
from ..config import AppConfig, host_settings, load_config, resolve_topology

# install/render count their own positional arguments so a bad count exits with 1
RAW_ARGS = {"allow_extra_args": True, "ignore_unknown_options": True}

AFFIRMATIVE = ("y", "yes")


def fail(exc: Exception) -> typer.Exit:
    console.err(str(exc))
    console.detail(getattr(exc, "stderr", None))
    return typer.Exit(code=1)


def _positional(ctx: typer.Context, domain: str | None, email: str | None, cfg: AppConfig) -> tuple[str, str]:
    if not domain or ctx.args:
        extra = f" (unexpected: {' '.join(ctx.args)})" if ctx.args else ""
        console.err(f"Usage: devpod {ctx.info_name} <domain> [email]{extra}")
        raise typer.Exit(code=1)
    return domain, email or cfg.admin_email


def _confirmed(question: str) -> bool:
    """Only an explicit yes counts; anything else, including EOF, is a no."""
    try:
        answer = Prompt.ask(question, default="", show_default=False, console=console.console)
    except EOFError:
        return False
    return answer.strip().lower() in AFFIRMATIVE


def _workspace_dir(cfg: AppConfig) -> Path | None:
    """Mount the invoking user's home into the editor when run through sudo."""
    sudo_user = os.getenv("SUDO_USER", "").strip()
    if not sudo_user or sudo_user == "root":
        return None
    try:
        return Path(pwd.getpwnam(sudo_user).pw_dir)
    except KeyError:
        console.warn(f"SUDO_USER {sudo_user} has no passwd entry; using {cfg.data_dir}/workspace")
        return None


def _stack_parameters(cfg: AppConfig, domain: str, email: str) -> StackParameters:
    return StackParameters.create(
        domain=domain,
        email=email,
        admin_user=cfg.admin_user,
        ssh_port=cfg.ssh_port,
        cfg_dir=cfg.cfg_dir,
        data_dir=cfg.data_dir,
        log_dir=cfg.log_dir,
        backup_dir=cfg.backup_dir,
        workspace_dir=_workspace_dir(cfg),
    )


def stack_driver(cfg: AppConfig) -> StackDriver:
    return StackDriver(host_settings(cfg), resolve_topology(cfg), on_step=console.step)


def _print_summary(result: InstallResult, show_secrets: bool) -> None:
    table = Table(title=f"devpod @ {result.stack.domain}", show_header=True, header_style="bold")
    table.add_column("URL")
    table.add_column("Service")
    for hostname, service in sorted(result.hosts.items()):
        table.add_row(f"https://{hostname}", service)
    console.print(table)

    password = console.redact(result.secrets["ADMIN_PASSWORD"], show=show_secrets)
    console.info(f"Admin login: {result.stack.admin_user} / {password}")
    if not show_secrets:
        console.info(f"Credentials are stored in {result.stack.env_path} (root only).")
    console.info(f"Git over SSH: ssh://git@git.{result.stack.domain}:{result.stack.ssh_port}")


def install(
        ctx: typer.Context,
        domain: str | None = typer.Argument(None, help="Base domain, e.g. example.com."),
        email: str | None = typer.Argument(None, help="Contact email for ACME certificates."),
        show_secrets: bool = typer.Option(False, "--show-secrets", help="Print generated credentials."),
):
    """Install the stack, or resume an interrupted install."""
    cfg = load_config()
    domain, email = _positional(ctx, domain, email, cfg)
    try:
        stack = _stack_parameters(cfg, domain, email)
        result = stack_driver(cfg).install(stack)
    except DevpodError as exc:
        raise fail(exc) from exc

    if result.resumed:
        console.ok(f"Stack for {result.stack.domain} is up to date.")
    else:
        console.ok(f"Installed {len(result.started)} services for {result.stack.domain}.")
    _print_summary(result, show_secrets)


def upgrade():
    """Re-render the topology, pull images and recreate changed services."""
    cfg = load_config()
    try:
        result = stack_driver(cfg).upgrade()
    except DevpodError as exc:
        raise fail(exc) from exc
    if result.recreated:
        console.ok(f"Recreated: {', '.join(result.recreated)}")
    else:
        console.ok("All services are up to date.")


def uninstall(
        yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """Stop everything and delete all stack data. Irreversible."""
    cfg = load_config()
    try:
        host.require_root()
        driver = stack_driver(cfg)
        stack, _ = driver.load()
    except DevpodError as exc:
        raise fail(exc) from exc

    if not yes:
        console.warn(
            f"This removes every container and volume of {stack.domain} and deletes "
            f"{stack.cfg_dir}, {stack.data_dir} and {stack.backup_dir}."
        )
        if not _confirmed("Continue? (y/N)"):
            console.info("Aborted.")
            raise typer.Exit(code=0)

    try:
        removed = driver.uninstall()
    except DevpodError as exc:
        raise fail(exc) from exc
    for path in removed:
        console.info(f"Removed {path}")
    console.ok(f"Uninstalled {stack.domain}.")


def status():
    """Show the running state of every service."""
    cfg = load_config()
    try:
        driver = stack_driver(cfg)
        stack, _ = driver.load()
        states = driver.status()
    except DevpodError as exc:
        raise fail(exc) from exc

    table = Table(title=f"devpod @ {stack.domain}", show_header=True, header_style="bold")
    table.add_column("Service")
    table.add_column("State")
    table.add_column("Container")
    for state in states:
        label = "[green]running[/]" if state.running else "[red]stopped[/]"
        table.add_row(state.name, label, (state.container_id or "-")[:12])
    console.print(table)
    if not all(state.running for state in states):
        raise typer.Exit(code=1)


def render(
        ctx: typer.Context,
        domain: str | None = typer.Argument(None, help="Base domain, e.g. example.com."),
        email: str | None = typer.Argument(None, help="Contact email for ACME certificates."),
        out: Path = typer.Option(..., "--out", help="Directory to write the rendered files into."),
):
    """Render every configuration file into a directory without touching the host."""
    cfg = load_config()
    domain, email = _positional(ctx, domain, email, cfg)
    try:
        stack = _stack_parameters(cfg, domain, email)
        topology = resolve_topology(cfg).validate()
        params = build_params(
            stack,
            generate_bundle(),
            topology,
            project_name=cfg.project_name,
            retention_days=cfg.backup_retention_days,
        )
        # the users file needs a password hash from the identity image
        wanted = [tid for tid, _, _ in artifact_paths(stack, topology) if tid != IDENTITY_USERS]
        artifacts = plan_artifacts(stack, params, topology, only=wanted)
    except DevpodError as exc:
        raise fail(exc) from exc

    project = ComposeProject(stack.compose_path, stack.env_path, project_name=cfg.project_name, runner=local_command_runner())
    if project.available():
        variables = {key: value for key, value in params.items() if key.isupper() and isinstance(value, str)}
        topology_file = next(a for a in artifacts if a.template_id == TOPOLOGY_FILE)
        try:
            project.check_config(topology_file.content, variables)
        except ArtifactRejected as exc:
            raise fail(exc) from exc
    else:
        console.warn("docker compose not available; skipping topology validation.")

    for artifact in relocate(artifacts, stack, out.expanduser().resolve()):
        write_artifact(artifact)
        console.info(f"Wrote {artifact.path}")
    console.ok(f"Rendered {len(artifacts)} files for {stack.domain} (throwaway secrets).")
