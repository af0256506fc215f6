"""CLI entry point for termrelay."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import os
import shutil
import signal
import sys
from typing import Any, Awaitable, Callable

import httpx
import typer
from rich.console import Console
from rich.table import Table

from termrelay.config import RelayConfig
from termrelay.errors import RelayError

app = typer.Typer(
    name="termrelay",
    help="Durable, shareable terminal sessions for interactive programs.",
    no_args_is_help=True,
)

console = Console()

DEFAULT_URL = "http://127.0.0.1:8080"
DETACH_KEY = b"\x1d"  # Ctrl-]

_STATUS_STYLES = {
    "running": "green",
    "idle": "yellow",
    "done": "blue",
    "error": "red",
}


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _run_admin(url: str, call: Callable[[Any], Awaitable[Any]]) -> Any:
    """Run one AdminClient call, turning relay errors into a clean exit."""
    from termrelay.client.admin import AdminClient

    async def _go() -> Any:
        async with AdminClient(url) as client:
            return await call(client)

    try:
        return asyncio.run(_go())
    except RelayError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    except httpx.TransportError as e:
        typer.echo(f"Error: cannot reach relay at {url}: {e}", err=True)
        raise typer.Exit(1)


def _age(timestamp: float) -> str:
    delta = dt.timedelta(seconds=int(max(0.0, dt.datetime.now().timestamp() - timestamp)))
    return f"{delta} ago"


@app.command()
def serve(
    host: str | None = typer.Option(None, help="Listen address."),
    port: int | None = typer.Option(None, help="Listen port."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Path to JSON config file."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    """Run the relay server."""
    import uvicorn

    from termrelay.server.app import create_app

    setup_logging(verbose)
    config = RelayConfig.load(config_file)
    if host:
        config.server.host = host
    if port:
        config.server.port = port

    typer.echo(f"termrelay listening on {config.server.host}:{config.server.port}")
    typer.echo(f"Catalog: {os.path.expanduser(config.catalog_path)}")
    typer.echo(f"Program: {' '.join(config.backend.program)}")
    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level="debug" if verbose else "info",
    )


@app.command("ls")
def list_sessions(
    show_all: bool = typer.Option(False, "--all", "-a", help="Include archived."),
    url: str = typer.Option(DEFAULT_URL, "--url", envvar="TERMRELAY_URL"),
) -> None:
    """List sessions."""
    sessions = _run_admin(url, lambda c: c.list(include_archived=show_all))
    if not sessions:
        typer.echo("No sessions.")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Name")
    table.add_column("Group")
    table.add_column("Status")
    table.add_column("Last activity")
    table.add_column("Preview", overflow="ellipsis", max_width=60)
    for s in sessions:
        status = s["status"]
        name = ("* " if s.get("pinned") else "") + s["name"]
        if s.get("archived"):
            name += " [dim](archived)[/dim]"
        table.add_row(
            s["id"][:8],
            name,
            s.get("group") or "",
            f"[{_STATUS_STYLES.get(status, 'white')}]{status}[/]",
            _age(s["lastActivity"]),
            s.get("preview") or "",
        )
    console.print(table)


@app.command()
def new(
    name: str = typer.Argument(help="Session name."),
    group: str | None = typer.Option(None, "--group", "-g", help="Project/group."),
    working_dir: str | None = typer.Option(None, "--dir", "-d", help="Working directory."),
    message: str | None = typer.Option(
        None, "--message", "-m", help="Text typed into the program once it starts."
    ),
    url: str = typer.Option(DEFAULT_URL, "--url", envvar="TERMRELAY_URL"),
) -> None:
    """Create a session."""
    if working_dir:
        working_dir = os.path.abspath(os.path.expanduser(working_dir))
    record = _run_admin(
        url,
        lambda c: c.create(name, group=group, working_dir=working_dir, message=message),
    )
    typer.echo(record["id"])


@app.command()
def rm(
    session_id: str = typer.Argument(help="Session id."),
    url: str = typer.Option(DEFAULT_URL, "--url", envvar="TERMRELAY_URL"),
) -> None:
    """Delete a session and kill its process."""
    _run_admin(url, lambda c: c.delete(session_id))
    typer.echo(f"Deleted {session_id}")


@app.command()
def meta(
    session_id: str = typer.Argument(help="Session id."),
    name: str | None = typer.Option(None, "--name", help="Display name."),
    project: str | None = typer.Option(None, "--project", help="Project/group."),
    pinned: bool | None = typer.Option(None, "--pin/--unpin"),
    archived: bool | None = typer.Option(None, "--archive/--unarchive"),
    url: str = typer.Option(DEFAULT_URL, "--url", envvar="TERMRELAY_URL"),
) -> None:
    """Update a session's display metadata."""
    record = _run_admin(
        url,
        lambda c: c.patch_meta(
            session_id,
            custom_name=name,
            project=project,
            pinned=pinned,
            archived=archived,
        ),
    )
    typer.echo(f"{record['id']}  {record['name']}  group={record.get('group') or '-'}")


@app.command()
def attach(
    session_id: str = typer.Argument(help="Session id."),
    url: str = typer.Option(DEFAULT_URL, "--url", envvar="TERMRELAY_URL"),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Path to JSON config file."
    ),
) -> None:
    """Attach this terminal to a session (Ctrl-] detaches)."""
    if not sys.stdin.isatty():
        typer.echo("Error: attach needs an interactive terminal", err=True)
        raise typer.Exit(1)

    from termrelay.client.admin import stream_url

    config = RelayConfig.load(config_file)
    url = stream_url(url, session_id)
    code = asyncio.run(_attach(url, config))
    typer.echo(f"\r\n[detached, code={code if code is not None else '-'}]")


async def _attach(stream_url: str, config: RelayConfig) -> int | None:
    import termios
    import tty

    from termrelay.client.backoff import ReconnectBackoff
    from termrelay.client.stream import RelayStreamClient

    loop = asyncio.get_running_loop()
    out = sys.stdout.buffer

    def _write(data: bytes) -> None:
        out.write(data)
        out.flush()

    def _size() -> tuple[int, int]:
        size = shutil.get_terminal_size()
        return size.columns, size.lines

    client = RelayStreamClient(
        stream_url,
        on_output=_write,
        backoff=ReconnectBackoff.from_config(config.client),
        size=_size,
        # Replay follows every (re)connect
        on_connect=lambda: _write(b"\x1b[2J\x1b[H"),
    )

    fd = sys.stdin.fileno()
    saved = termios.tcgetattr(fd)
    # Strong references until each send finishes
    pending: set[asyncio.Task] = set()

    def _spawn(coro) -> None:
        task = loop.create_task(coro)
        pending.add(task)
        task.add_done_callback(pending.discard)

    def _on_stdin() -> None:
        data = os.read(fd, 4096)
        if not data or DETACH_KEY in data:
            _spawn(client.stop())
            return
        _spawn(client.send_input(data))

    def _on_winch() -> None:
        _spawn(client.send_resize(*_size()))

    tty.setraw(fd)
    loop.add_reader(fd, _on_stdin)
    loop.add_signal_handler(signal.SIGWINCH, _on_winch)
    try:
        return await client.run()
    finally:
        loop.remove_signal_handler(signal.SIGWINCH)
        loop.remove_reader(fd)
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
