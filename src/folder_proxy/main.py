"""CLI entrypoint for folder-proxy."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from folder_proxy import __version__
from folder_proxy.broker.errors import BrokerError
from folder_proxy.config import LOG_LEVELS
from folder_proxy.controllers import (
    BackRunCommand,
    BrokerCliController,
    FrontSendCommand,
    FrontServeCommand,
    StoreInitCommand,
    StoreInspectCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = BrokerCliController()

_STORE_ROOT_OPTION = click.option(
    "--root",
    "store_root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Shared folder root. Defaults to FOLDER_PROXY_STORE_ROOT.",
)


@click.group()
@click.version_option(version=__version__, prog_name="folder-proxy")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Logging level. Defaults to FOLDER_PROXY_LOG_LEVEL or INFO.",
)
@click.pass_context
def folder_proxy(ctx: click.Context, log_level: str | None) -> None:
    """Relay HTTP requests between two hosts through a shared folder."""

    default_level = os.getenv("FOLDER_PROXY_LOG_LEVEL", os.getenv("LOG_LEVEL", "INFO"))
    level = (log_level or default_level).upper()
    if level not in LOG_LEVELS:
        raise click.ClickException(
            f"FOLDER_PROXY_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}: {level!r}",
        )
    ctx.obj = level
    logging.basicConfig(
        level=level,
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


@folder_proxy.group()
def store() -> None:
    """Shared folder maintenance commands."""


@store.command("init")
@_STORE_ROOT_OPTION
@click.option(
    "--reset/--no-reset",
    default=False,
    show_default=True,
    help="Delete existing request and response records first.",
)
def store_init(store_root: Path | None, reset: bool) -> None:
    """Create the request and response folders."""

    _run(lambda: CONTROLLER.init_store(StoreInitCommand(store_root=store_root, reset=reset)))


@store.command("status")
@_STORE_ROOT_OPTION
def store_status(store_root: Path | None) -> None:
    """Count records, completion markers and locks in the shared folder."""

    _run(lambda: CONTROLLER.status(StoreInspectCommand(store_root=store_root)))


@store.command("sweep")
@_STORE_ROOT_OPTION
def store_sweep(store_root: Path | None) -> None:
    """Remove orphaned records and stale lock markers once."""

    _run(lambda: CONTROLLER.sweep(StoreInspectCommand(store_root=store_root)))


@folder_proxy.group()
def front() -> None:
    """Front (client-facing) commands."""


@front.command("serve")
@_STORE_ROOT_OPTION
@click.option("--host", default=None, help="Listen address. Defaults to FOLDER_PROXY_FRONT_HOST.")
@click.option(
    "--port",
    type=click.IntRange(min=1, max=65535),
    default=None,
    help="Listen port. Defaults to FOLDER_PROXY_FRONT_PORT.",
)
def front_serve(store_root: Path | None, host: str | None, port: int | None) -> None:
    """Accept HTTP requests and relay them through the shared folder."""

    _run(
        lambda: CONTROLLER.serve_front(
            FrontServeCommand(
                store_root=store_root,
                host=host,
                port=port,
                log_level=_log_level(),
            ),
        ),
    )


@front.command("send")
@click.argument("method")
@click.argument("path")
@_STORE_ROOT_OPTION
@click.option(
    "--header",
    "headers",
    multiple=True,
    help="Request header as 'Name: value'. Can be repeated.",
)
@click.option("--data", default=None, help="Request body text.")
@click.option(
    "--deadline",
    "deadline_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds to wait for the response. Defaults to FOLDER_PROXY_FRONT_DEADLINE_SECONDS.",
)
def front_send(  # noqa: PLR0913
    method: str,
    path: str,
    store_root: Path | None,
    headers: tuple[str, ...],
    data: str | None,
    deadline_seconds: float | None,
) -> None:
    """Relay one request and print the response."""

    if not path.startswith("/"):
        raise click.BadParameter("PATH must start with '/'.", param_hint="PATH")
    _run(
        lambda: CONTROLLER.send(
            FrontSendCommand(
                store_root=store_root,
                method=method,
                path=path,
                headers=headers,
                data=data,
                deadline_seconds=deadline_seconds,
                log_level=_log_level(),
            ),
        ),
    )


@folder_proxy.group()
def back() -> None:
    """Back (target-facing) commands."""


@back.command("run")
@_STORE_ROOT_OPTION
@click.option(
    "--target-url",
    default=None,
    help="Base URL of the target API. Defaults to FOLDER_PROXY_TARGET_URL.",
)
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Process one discovery tick and exit.",
)
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop the loop after this many ticks (default: run until interrupted).",
)
def back_run(
    store_root: Path | None,
    target_url: str | None,
    once: bool,
    max_ticks: int | None,
) -> None:
    """Poll the shared folder and execute requests against the target API."""

    _run(
        lambda: CONTROLLER.run_back(
            BackRunCommand(
                store_root=store_root,
                target_url=target_url,
                once=once,
                max_ticks=max_ticks,
                log_level=_log_level(),
            ),
        ),
    )


def _log_level() -> str | None:
    return click.get_current_context().find_root().obj


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (BrokerError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    folder_proxy()
