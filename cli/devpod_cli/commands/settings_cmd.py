from __future__ import annotations

import os

import typer

from .. import console
from ..config import SETTING_KEYS, config_path, default_config, load_config, save_config, set_value, to_toml

app = typer.Typer(help="Manage operator settings (config.toml, see DEVPOD_CONFIG).")


@app.command("init")
def init_settings(
        force: bool = typer.Option(False, "--force", help="Overwrite existing config."),
        admin_email: str = typer.Option(
            ...,
            "--admin-email",
            prompt="Admin email",
            help="Default contact email for certificates and the admin account.",
        ),
):
    path = config_path()
    if os.path.exists(path) and not force:
        console.info(f"Config already exists: {path}")
        console.info("Use --force to overwrite.")
        return

    cfg = default_config()
    cfg.admin_email = admin_email.strip()
    if not cfg.admin_email:
        console.err("Admin email cannot be empty.")
        raise typer.Exit(code=2)
    saved = save_config(cfg)
    console.ok(f"Config written: {saved}")


@app.command("show")
def show_settings():
    cfg = load_config()
    for key, value in to_toml(cfg)["devpod"].items():
        console.console.print(f"{key}={value}", highlight=False)


@app.command("get")
def get_setting(
        key: str = typer.Argument(..., help=f"Setting key ({', '.join(SETTING_KEYS)})."),
):
    cfg = load_config()
    k = key.strip().lower()
    if k not in SETTING_KEYS:
        console.err(f"Unknown setting: {key}")
        raise typer.Exit(code=2)
    console.console.print(str(getattr(cfg, k)), highlight=False)


@app.command("set")
def set_setting(
        key: str = typer.Argument(..., help="Setting key."),
        value: str = typer.Argument(..., help="New value."),
):
    cfg = load_config()
    try:
        set_value(cfg, key, value)
    except KeyError:
        console.err(f"Unknown setting: {key}")
        raise typer.Exit(code=2)
    except ValueError as exc:
        console.err(str(exc))
        raise typer.Exit(code=2)
    saved = save_config(cfg)
    console.ok(f"Settings updated: {saved}")
