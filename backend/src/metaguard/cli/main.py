"""MetaGuard CLI entry point."""

import logging

import click


@click.group()
def cli():
    """MetaGuard: metadata-driven entity access CLI."""
    pass


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Interface to bind.")
@click.option("--port", default=None, type=int, help="Port to bind (default: METAGUARD_PORT or 8000).")
@click.option("--reload", is_flag=True, default=False, help="Reload on code changes.")
def serve(host: str, port: int | None, reload: bool):
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from metaguard.core.config import Settings

    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level.upper())
    uvicorn.run(
        "metaguard.api.app:app",
        host=host,
        port=port or settings.port,
        reload=reload,
        log_level=settings.log_level,
    )


# Register subcommand groups
from metaguard.cli.metadata_cmd import metadata  # noqa: E402

cli.add_command(metadata)
