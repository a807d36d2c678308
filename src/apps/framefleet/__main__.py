"""Console entry point for the FrameFleet CLI application."""

from __future__ import annotations

import sys
from typing import Sequence

import click
import typer

from apps.framefleet.app import app
from apps.framefleet.utils.errors import ExitCode, FrameFleetError


def _handle_cli_error(exc: FrameFleetError) -> ExitCode:
    typer.secho(f"{exc.heading}: {exc}", fg=typer.colors.RED, err=True)
    return exc.exit_code


def main(argv: Sequence[str] | None = None) -> int:
    """Run the ``framefleet`` command and translate failures into exit codes.

    Click usage errors keep click's own formatting and exit status; a
    :class:`FrameFleetError` is printed as ``heading: message`` on stderr.
    """

    try:
        result = app(
            args=list(argv) if argv is not None else None,
            standalone_mode=False,
        )
    except FrameFleetError as exc:
        return int(_handle_cli_error(exc))
    except click.ClickException as exc:
        exc.show()
        return exc.exit_code
    except click.Abort:
        typer.secho("Aborted.", fg=typer.colors.RED, err=True)
        return 1
    return int(ExitCode.SUCCESS) if result is None else int(result)


if __name__ == "__main__":
    sys.exit(main())
