from __future__ import annotations

import click

from classroom_live.cli import cli as main


@main.command("serve")
@click.option("--host", default="127.0.0.1", show_default=True, help="Host to bind to.")
@click.option("--port", "-p", default=8080, show_default=True, help="Port to bind to.")
@click.pass_context
def serve_command(ctx: click.Context, host: str, port: int) -> None:
    """Start the JSON + server-sent-events preview server."""
    try:
        from classroom_live.web.server import run_server
    except ImportError:
        raise click.ClickException(
            "Web dependencies not installed. Install with: pip install 'classroom-live[web]'"
        ) from None

    click.echo(f"Serving classroom-live at http://{host}:{port}")
    click.echo("Press Ctrl+C to stop.")
    run_server(host=host, port=port, db_path=ctx.obj.get("db_path"))


if __name__ == "__main__":
    main()
