from __future__ import annotations

import typer

from .commands import backup_cmd, settings_cmd, stack_cmd
from .logging_ import setup_logging


def _build_app() -> typer.Typer:
    app = typer.Typer(
        name="devpod",
        help="Provision a self-hosted developer platform on this host.",
        no_args_is_help=True,
    )

    app.command("install", context_settings=stack_cmd.RAW_ARGS)(stack_cmd.install)
    app.command("upgrade")(stack_cmd.upgrade)
    app.command("uninstall")(stack_cmd.uninstall)
    app.command("status")(stack_cmd.status)
    app.command("render", context_settings=stack_cmd.RAW_ARGS)(stack_cmd.render)
    app.command("backup")(backup_cmd.backup)
    app.add_typer(settings_cmd.app, name="settings")

    @app.callback()
    def _main(
            verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose logs."),
    ):
        setup_logging(verbose)

    return app


app = _build_app()


def main() -> None:
    app()


if __name__ == "__main__":
    main()
