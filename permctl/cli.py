"""CLI entrypoint for permctl."""

import logging
import sys
from pathlib import Path

import click

from . import __version__


def _setup_logging(debug: bool) -> None:
    from rich.console import Console
    from rich.logging import RichHandler

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _load(ctx: click.Context):
    """Load config and build the manager on first use (init needs neither)."""
    from .config import load_config
    from .errors import PermctlError
    from .manager import PermissionManager

    if "manager" not in ctx.obj:
        try:
            config = load_config(ctx.obj["config_path"])
        except PermctlError as e:
            raise click.ClickException(e.message) from e
        if config.debug and not ctx.obj["debug"]:
            logging.getLogger().setLevel(logging.DEBUG)
        ctx.obj["manager"] = PermissionManager(config)
    return ctx.obj["manager"]


@click.group()
@click.version_option(__version__, prog_name="permctl")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to config file (defaults to $PERMCTL_CONFIG or /etc/permctl/config.yaml)",
)
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, debug: bool) -> None:
    """permctl - Temporary elevated permissions for Linux users.

    Grants are recorded in a ledger and projected into a managed sudoers
    drop-in; expired grants are retracted by `permctl cleanup`.
    """
    from .config import default_config_path

    ctx.ensure_object(dict)
    _setup_logging(debug)
    ctx.obj["config_path"] = config_path or default_config_path()
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("user")
@click.argument("command")
@click.option(
    "--duration",
    "-d",
    type=int,
    default=None,
    help="Duration in minutes (defaults to the command's configured default)",
)
@click.pass_context
def grant(ctx: click.Context, user: str, command: str, duration: int | None) -> None:
    """Grant USER temporary permission to run COMMAND.

    Examples:

        permctl grant alice /usr/bin/docker

        permctl grant bob /usr/bin/apt --duration 120
    """
    from .commands.grant_cmd import run_grant

    exit_code = run_grant(_load(ctx), user, command, duration)
    sys.exit(exit_code)


@cli.command()
@click.argument("user")
@click.argument("command")
@click.pass_context
def revoke(ctx: click.Context, user: str, command: str) -> None:
    """Revoke USER's active permission for COMMAND."""
    from .commands.grant_cmd import run_revoke

    exit_code = run_revoke(_load(ctx), user, command)
    sys.exit(exit_code)


@cli.command("list")
@click.option("--all", "-a", "show_all", is_flag=True, help="Include revoked and expired grants")
@click.option("--user", "-u", default=None, help="Show permissions for a specific user")
@click.option("--json", "output_json", is_flag=True, help="Output results as JSON")
@click.pass_context
def list_cmd(ctx: click.Context, show_all: bool, user: str | None, output_json: bool) -> None:
    """List permissions, soonest expiry first."""
    from .commands.list_cmd import run_list

    exit_code = run_list(_load(ctx), user=user, show_all=show_all, output_json=output_json)
    sys.exit(exit_code)


@cli.command()
@click.option("--verbose", "-v", is_flag=True, help="Show duration bounds and group requirements")
@click.pass_context
def commands(ctx: click.Context, verbose: bool) -> None:
    """Show commands that may be granted."""
    from .commands.list_cmd import run_commands

    exit_code = run_commands(_load(ctx).config, verbose=verbose)
    sys.exit(exit_code)


@cli.command()
@click.pass_context
def cleanup(ctx: click.Context) -> None:
    """Expire overdue grants and regenerate the sudoers file.

    Intended to be run periodically (e.g. by a systemd timer). Always
    regenerates the file, even if nothing expired.
    """
    from .commands.maintenance_cmd import run_cleanup

    exit_code = run_cleanup(_load(ctx))
    sys.exit(exit_code)


@cli.command()
@click.option("--force", "-f", is_flag=True, help="Overwrite existing configuration (a .bak copy is kept)")
@click.pass_context
def init(ctx: click.Context, force: bool) -> None:
    """Create the default configuration, ledger and sudoers file."""
    from .commands.maintenance_cmd import run_init

    exit_code = run_init(ctx.obj["config_path"], force=force)
    sys.exit(exit_code)


@cli.command()
@click.pass_context
def verify(ctx: click.Context) -> None:
    """Check the sudoers file against the ledger without changing anything.

    Drift is reported as a warning; run `permctl cleanup` to regenerate.
    """
    from .commands.maintenance_cmd import run_verify

    exit_code = run_verify(_load(ctx))
    sys.exit(exit_code)


@cli.command()
@click.option("--last", "-n", "last_n", type=int, default=20, show_default=True, help="Number of entries to show")
@click.option("--json", "output_json", is_flag=True, help="Output entries as JSON lines")
@click.pass_context
def audit(ctx: click.Context, last_n: int, output_json: bool) -> None:
    """Show recent audit log entries."""
    from .commands.list_cmd import run_audit

    exit_code = run_audit(_load(ctx).config, last_n=last_n, output_json=output_json)
    sys.exit(exit_code)


def main() -> None:
    """Main entrypoint."""
    cli()


if __name__ == "__main__":
    main()
