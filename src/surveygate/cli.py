from __future__ import annotations

import logging
from datetime import timedelta

import typer

from surveygate.config import Settings

cli = typer.Typer(add_completion=False)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)


def run_server(host: str | None, port: int | None) -> None:
    import uvicorn

    from surveygate.app import create_app

    settings = Settings()
    configure_logging(settings)
    resolved_host = host or settings.host
    resolved_port = port if port is not None else settings.port
    uvicorn.run(create_app(settings), host=resolved_host, port=resolved_port)


@cli.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    host: str | None = typer.Option(None, help="Address to bind"),
    port: int | None = typer.Option(None, help="Port to bind"),
) -> None:
    ctx.obj = {"host": host, "port": port}
    if ctx.invoked_subcommand is None:
        run_server(host, port)


@cli.command()
def run(
    ctx: typer.Context,
    host: str | None = typer.Option(None, help="Address to bind"),
    port: int | None = typer.Option(None, help="Port to bind"),
) -> None:
    base = ctx.obj or {}
    resolved_host = host or base.get("host")
    resolved_port = port if port is not None else base.get("port")
    run_server(resolved_host, resolved_port)


@cli.command()
def sweep() -> None:
    """Open due surveys and archive expired ones, once."""
    from surveygate.scheduler import SurveyScheduler
    from surveygate.storage import init_storage

    settings = Settings()
    configure_logging(settings)
    storage = init_storage(settings)
    opened, archived = SurveyScheduler(storage.surveys).run_once()
    typer.echo(f"opened={opened} archived={archived}")


@cli.command("owner-token")
def owner_token(
    owner_id: str = typer.Argument(..., help="Owner id to embed as subject"),
    minutes: int | None = typer.Option(None, help="Token lifetime in minutes"),
) -> None:
    from surveygate.auth import issue_owner_token

    settings = Settings()
    ttl = timedelta(minutes=minutes if minutes is not None else settings.owner_token_ttl_minutes)
    typer.echo(issue_owner_token(settings.token_secret, owner_id, ttl))


if __name__ == "__main__":
    cli()
