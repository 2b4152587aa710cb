"""Entry-point for the Image Optimizer service."""

from __future__ import annotations

import inspect
import logging
from enum import Enum
from pathlib import Path
from typing import Optional

import uvicorn
import typer

from image_optimizer.bootstrap import initialize_app
from image_optimizer.config import get_max_upload_bytes
from image_optimizer.logging_utils import DEFAULT_LOG_FORMAT, build_file_handler, configure_logging
from image_optimizer.services.layout import AssetLayout
from image_optimizer.services.reconciliation import SessionReconciler
from image_optimizer.services.storage import SessionRepository
from image_optimizer.ui.console import ConsoleUI
from image_optimizer.ui.modern import ModernUI
from image_optimizer.web import create_app


LOGGER = logging.getLogger("image_optimizer.cli")


cli = typer.Typer(add_completion=False, help="Image Optimizer management commands")


def _prepare_logging(storage_root: Path) -> None:
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
    configure_logging(handlers=[build_file_handler(storage_root), stream_handler])


class UIStyle(str, Enum):
    MODERN = "modern"
    CONSOLE = "console"


style_option = typer.Option(
    UIStyle.MODERN,
    "--style",
    "-s",
    help="Select the overview presentation style.",
    show_default=True,
)


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None)


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="IMAGE_OPTIMIZER_ROOT_PATH",
    ),
) -> None:
    """Run the FastAPI conversion service."""

    app_config = initialize_app()
    _prepare_logging(app_config.storage_root)

    repository = SessionRepository(app_config)
    app = create_app(repository, config=app_config, root_path=root_path)

    config_kwargs = {}
    max_upload_bytes = get_max_upload_bytes()
    if max_upload_bytes > 0:
        config_signature = inspect.signature(uvicorn.Config.__init__)
        if "limit_max_request_size" in config_signature.parameters:
            config_kwargs["limit_max_request_size"] = max_upload_bytes
        else:
            LOGGER.warning(
                "Ignoring max upload size limit; uvicorn.Config does not support "
                "'limit_max_request_size'.",
            )

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=app.root_path,
        **config_kwargs,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server
    LOGGER.info("Serving Image Optimizer on http://%s:%s%s", host, port, app.root_path or "/")
    server.run()


@cli.command()
def overview(style: UIStyle = style_option) -> None:
    """Render an overview of stored sessions using the chosen UI style."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    repository = SessionRepository(config)
    try:
        if style is UIStyle.MODERN:
            ui = ModernUI(repository)
        else:
            ui = ConsoleUI(repository)
        ui.run()
    finally:
        repository.close()


@cli.command()
def reap(
    max_age_hours: float = typer.Option(
        24.0,
        "--max-age-hours",
        min=0.0,
        help="Delete sessions with no new files for this many hours",
        show_default=True,
    ),
) -> None:
    """Delete idle sessions and session directories without a database entry."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    repository = SessionRepository(config)
    try:
        reconciler = SessionReconciler(repository, AssetLayout(config.sessions_root))
        summary = reconciler.reap_idle_sessions(max_age_hours)
    finally:
        repository.close()

    typer.echo(
        f"Removed {summary.sessions_removed} session(s) and "
        f"{summary.directories_removed} stray director"
        f"{'y' if summary.directories_removed == 1 else 'ies'}."
    )


if __name__ == "__main__":
    cli()
