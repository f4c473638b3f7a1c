"""CLI scaffolding for powerlock (Typer-based).

Provides :func:`build_cli` which constructs a Typer app that parses
service-level options (``--version``, ``--log-level``,
``--log-format``, ``--env-file``, ``--config``) and hands off to the
application's async lifecycle.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from typing import TYPE_CHECKING, Annotated, get_args

import typer
from pydantic import ValidationError

from powerlock._settings import LoggingSettings, load_settings

if TYPE_CHECKING:
    from powerlock._app import PowerLockApp
    from powerlock._settings import Settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 3

# ---------------------------------------------------------------------------
# Allowed values (extracted from LoggingSettings Literal types)
# ---------------------------------------------------------------------------

_VALID_LOG_LEVELS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["level"].annotation,
)
_VALID_LOG_FORMATS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["format"].annotation,
)


def build_cli(app: PowerLockApp) -> typer.Typer:
    """Construct a Typer CLI from a :class:`PowerLockApp`.

    The returned Typer app exposes a single default command.  When
    invoked it loads settings, applies CLI overrides, and delegates
    to :meth:`PowerLockApp._run_async`.  The same loader, overrides
    included, is used again on every ``SIGHUP`` reload.
    """
    name = app.name
    version = app.version

    cli = typer.Typer(
        help=f"{name} v{version} — {app._description}",
    )

    @cli.callback(invoke_without_command=True)
    def main(
        version_flag: Annotated[
            bool | None,
            typer.Option(
                "--version",
                is_eager=True,
                help="Show version and exit.",
            ),
        ] = None,
        log_level: Annotated[
            str | None,
            typer.Option("--log-level", help="Override log level."),
        ] = None,
        log_format: Annotated[
            str | None,
            typer.Option("--log-format", help="Override log format."),
        ] = None,
        env_file: Annotated[
            str,
            typer.Option("--env-file", help="Path to .env file."),
        ] = ".env",
        config_file: Annotated[
            str | None,
            typer.Option(
                "--config",
                help="JSON configuration file (overrides the environment).",
            ),
        ] = None,
    ) -> None:
        if version_flag:
            typer.echo(f"{name} v{version}")
            raise typer.Exit()

        if log_level is not None and log_level.upper() not in _VALID_LOG_LEVELS:
            raise typer.BadParameter(
                f"Invalid log level '{log_level}'. "
                f"Choose from: {', '.join(_VALID_LOG_LEVELS)}",
                param_hint="'--log-level'",
            )

        if log_format is not None and log_format.lower() not in _VALID_LOG_FORMATS:
            raise typer.BadParameter(
                f"Invalid log format '{log_format}'. "
                f"Choose from: {', '.join(_VALID_LOG_FORMATS)}",
                param_hint="'--log-format'",
            )

        def load() -> Settings:
            settings = load_settings(
                app._settings_class,
                env_file=env_file,
                config_file=config_file,
            )
            if log_level is not None:
                settings.logging = settings.logging.model_copy(
                    update={"level": log_level.upper()},
                )
            if log_format is not None:
                settings.logging = settings.logging.model_copy(
                    update={"format": log_format.lower()},
                )
            return settings

        try:
            settings = load()
        except (ValidationError, OSError, ValueError) as exc:
            logger.error("Configuration error: %s", exc)
            raise SystemExit(EXIT_CONFIG_ERROR) from exc

        try:
            with contextlib.suppress(KeyboardInterrupt):
                asyncio.run(app._run_async(settings=settings, settings_loader=load))
        except SystemExit:
            raise
        except Exception as exc:
            logger.error("Runtime error: %s", exc)
            sys.exit(EXIT_RUNTIME_ERROR)

    return cli
