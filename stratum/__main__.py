import sys

import click

from stratum.cli import cli
from stratum.common import StratumExpectedError


def main() -> None:
    try:
        cli()
    except StratumExpectedError as e:
        click.secho(f"{e.__class__.__module__}.{e.__class__.__name__}: ", fg="red", nl=False)
        click.secho(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
