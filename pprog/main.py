"""Command-line entry point for pprog."""

import asyncio
import signal
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel

from pprog import __version__
from pprog.config import LOCAL_CONFIG_FILENAME, Config, detect_check_cmd, set_config
from pprog.exceptions import PprogError
from pprog.logging import configure_logging, log
from pprog.orchestrator import ChatService
from pprog.session import SessionManager
from pprog.tools import TerminalPrivilegedInput, ToolResult

app = typer.Typer(help="pprog - a coding agent that edits, runs and checks your project")
console = Console()

_EXIT_COMMANDS = {"/exit", "/quit", "exit", "quit"}


def _load_config(config: str, provider: str, model: str) -> Config:
    cfg = Config.load(Path(config) if config else None)
    if provider:
        cfg.model.provider = provider
    if model:
        cfg.model.model = model
    set_config(cfg)
    return cfg


def _show_tool_output(name: str, arguments: dict, result: ToolResult) -> None:
    status = "[green]ok[/green]" if result.success else "[red]error[/red]"
    target = arguments.get("path") or arguments.get("command") or ""
    console.print(f"[dim]tool[/dim] {name} {target} {status}", highlight=False)


async def _read_line(prompt: str) -> str | None:
    try:
        return await asyncio.to_thread(console.input, prompt)
    except EOFError:
        return None


async def run_chat(cfg: Config, session_id: str) -> None:
    """Interactive loop over one session."""
    session_manager = SessionManager(cfg.session.path) if cfg.session.persist else None
    service = ChatService(
        config=cfg,
        session_manager=session_manager,
        privileged_input=TerminalPrivilegedInput(),
        tool_output_callback=_show_tool_output,
    )
    loop = asyncio.get_running_loop()

    console.print(
        Panel(
            f"Project: {cfg.resolved_project_root()}\n"
            f"Model: {cfg.model.provider}/{cfg.model.model}\n"
            "Type /clear to reset the conversation, /exit to quit. "
            "Ctrl+C stops the current turn after the running tool.",
            title=f"pprog v{__version__}",
        )
    )

    try:
        while True:
            line = await _read_line("[bold cyan]you>[/bold cyan] ")
            if line is None or line.strip() in _EXIT_COMMANDS:
                break
            text = line.strip()
            if not text:
                continue
            if text == "/clear":
                await service.clear(session_id)
                console.print("[dim]Conversation cleared.[/dim]")
                continue

            abort_event = asyncio.Event()
            try:
                loop.add_signal_handler(signal.SIGINT, abort_event.set)
            except (NotImplementedError, RuntimeError):
                pass
            try:
                reply = await service.submit_user_message(session_id, text, abort_event=abort_event)
            except PprogError as e:
                console.print(f"[red]{e.kind}[/red]: {e}", highlight=False)
                continue
            finally:
                try:
                    loop.remove_signal_handler(signal.SIGINT)
                except (NotImplementedError, RuntimeError):
                    pass
            console.print(reply.text() or "[dim](no text)[/dim]")
    finally:
        await service.close()


@app.command()
def chat(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    session: str = typer.Option("default", "-s", "--session", help="Session id to resume"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start an interactive session in the current project."""
    cfg = _load_config(config, provider, model)
    configure_logging("DEBUG" if verbose else None)

    try:
        asyncio.run(run_chat(cfg, session))
    except KeyboardInterrupt:
        log.info("Shutting down...")
        sys.exit(0)


@app.command()
def init(
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config file"),
) -> None:
    """Write pprog.yaml for the current directory."""
    path = Path.cwd() / LOCAL_CONFIG_FILENAME
    if path.exists() and not force:
        console.print(f"[yellow]{path} already exists; use --force to overwrite.[/yellow]")
        raise typer.Exit(code=1)

    cfg = Config()
    cfg.tools.check_cmd = detect_check_cmd(Path.cwd())
    saved = cfg.save(path)

    console.print(f"Wrote {saved}")
    if cfg.tools.check_cmd:
        console.print(f"Check command: [bold]{cfg.tools.check_cmd}[/bold]")
    else:
        console.print("[yellow]No check command detected; set tools.check_cmd by hand.[/yellow]")


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"pprog v{__version__}")


if __name__ == "__main__":
    app()
