"""
The cli module defines Stratum's CLI interface. It does not have any domain logic of its own. It is
dedicated to parsing, resolving arguments, and delegating to the appropriate module.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

import click

from stratum.common import VERSION
from stratum.config import Config

logger = logging.getLogger(__name__)


@dataclass
class Context:
    config: Config


# fmt: off
@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Emit verbose logging.")
@click.option("--config", "-c", type=click.Path(path_type=Path), help="Override the config file location.")
@click.version_option(VERSION, prog_name="stratum")
@click.pass_context
# fmt: on
def cli(cc: click.Context, verbose: bool, config: Path | None = None) -> None:
    """A union filesystem over a read-only and a read-write directory."""
    cc.obj = Context(
        config=Config.parse(config_path_override=config),
    )
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


@cli.group()
def fs() -> None:
    """Manage the union filesystem."""


# fmt: off
@fs.command()
@click.option("--foreground", "-f", is_flag=True, help="Run the FUSE controller in the foreground (default: daemon).")
@click.pass_obj
# fmt: on
def mount(ctx: Context, foreground: bool) -> None:
    """Mount the union filesystem."""
    from stratum.virtualfs import mount_virtualfs

    if not foreground:
        daemonize()

    debug = logging.getLogger().getEffectiveLevel() == logging.DEBUG
    mount_virtualfs(ctx.config, debug=debug)


@fs.command()
@click.pass_obj
def unmount(ctx: Context) -> None:
    """Unmount the union filesystem."""
    from stratum.virtualfs import unmount_virtualfs

    unmount_virtualfs(ctx.config)


@cli.command()
@click.argument("path", type=str, nargs=1)
@click.pass_obj
def resolve(ctx: Context, path: str) -> None:
    """Print which branch backs a logical path (e.g. /docs/readme)."""
    from stratum.attributes import get_attributes
    from stratum.resolver import resolve as resolve_path

    loc = resolve_path(ctx.config, path)
    click.echo(f"{loc.path}: {loc.origin}")
    if loc.origin == "NONE":
        return
    attrs = get_attributes(ctx.config, loc.path, loc)
    click.echo(f"  concrete: {loc.concrete}")
    click.echo(f"  mode: {attrs.st_mode:o} uid: {attrs.st_uid} gid: {attrs.st_gid} size: {attrs.st_size}")


# fmt: off
@cli.command()
@click.option("--repair", "-r", is_flag=True, help="Repair the inconsistencies found.")
@click.pass_obj
# fmt: on
def check(ctx: Context, repair: bool) -> None:
    """Check the read-write branch for inconsistent whiteouts, records, and temporaries."""
    from stratum.check import check_union, repair_union

    issues = check_union(ctx.config)
    for i in issues:
        click.echo(str(i))
    if not issues:
        click.echo("No inconsistencies found.")
        return
    if repair:
        n = repair_union(ctx.config, issues)
        click.echo(f"Repaired {n} inconsistencies.")
        return
    raise click.exceptions.Exit(1)


def daemonize() -> None:
    """Forks into a background daemon and exits the foreground process."""
    pid = os.fork()
    if pid == 0:
        # Child process. Detach and keep going!
        os.setsid()
        return
    # Parent process, let's exit now!
    os._exit(0)
