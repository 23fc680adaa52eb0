"""Autopilot RPC server command."""

import click
from rich.console import Console

console = Console()


@click.command()
@click.option(
    "--host",
    "-h",
    default="127.0.0.1",
    help="Host to bind to (default: 127.0.0.1)",
)
@click.option(
    "--port",
    "-p",
    default=10020,
    type=int,
    help="Port to bind to (default: 10020)",
)
@click.option(
    "--reload",
    "-r",
    is_flag=True,
    help="Enable auto-reload for development",
)
def serve_command(host: str, port: int, reload: bool) -> None:
    """Serve the workflow operations over HTTP.

    Every endpoint takes the project root in its request body, so one
    server can drive workflows in several projects.

    Examples:
        autopilot serve                  # http://127.0.0.1:10020
        autopilot serve --port 3000
    """
    try:
        from autopilot.web.server import run_server
    except ImportError as e:
        console.print(f"[red]Failed to import server dependencies:[/red] {e}")
        console.print("[yellow]Make sure FastAPI and uvicorn are installed[/yellow]")
        raise click.ClickException("Server dependencies not installed")

    console.print("[blue]Starting autopilot RPC server...[/blue]")
    console.print(f"[green]✓[/green] API available at: http://{host}:{port}/api/autopilot")
    console.print(f"[green]✓[/green] API documentation at: http://{host}:{port}/docs")
    console.print("[dim]Press Ctrl+C to stop the server[/dim]")

    try:
        run_server(host=host, port=port, reload=reload)
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped[/yellow]")
