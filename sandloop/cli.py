"""
SANDLOOP CLI — The Interface

Main mode:
  sandloop run "<task>" --repo <path>      (autonomous loop in a sandbox)

Plus utilities:
  - sandloop prompt "<text>"     (one-off prompt, streamed)
  - sandloop models              (list configured models)
  - sandloop select-model        (choose the default model)
  - sandloop status              (check config + API keys)
"""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from sandloop.identity import __codename__, __tagline__, __version__, BANNER
from sandloop.config_loader import SandLoopConfig, load_config, validate_api_keys
from sandloop.controller import Controller, RunResult
from sandloop.model_store import ModelStore, resolve_model_selection
from sandloop.router import ROLES, ChatMessage, ModelRequestError, Router
from sandloop.workspace.diff import FileChange

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".sandloop" / ".env")

app = typer.Typer(
    name="sandloop",
    help=f"{__codename__} — {__tagline__}\nAn autonomous coding agent that works in a sandbox.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def run(
    task: str = typer.Argument(..., help="What the agent should do"),
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the workspace"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model to use for this run"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Apply changes without asking"),
    no_apply: bool = typer.Option(False, "--no-apply", help="Report changes but never apply them"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run the agent loop on a task."""
    _print_banner()
    _configure_logging(verbose)

    repo = repo.resolve()
    if not repo.is_dir():
        console.print(f"[red]Workspace not found: {repo}[/]")
        raise typer.Exit(1)

    if not task.strip():
        console.print("[red]No task provided.[/]")
        raise typer.Exit(1)

    config = load_config(repo)
    selected = _resolve_model(config, model)

    if no_apply:
        confirm = _decline_changes
    elif yes or not config.intervention.confirm_before_apply:
        confirm = None
    else:
        confirm = _confirm_changes

    controller = Controller(
        repo_path=repo,
        config=config,
        router=Router(config, selected_model=selected),
        progress=_print_progress,
        confirm_changes=confirm,
    )

    console.print(Panel(
        f"[bold]{escape(task)}[/]\n\n"
        f"[dim]Workspace: {repo}\nModel: {selected}\n"
        f"Max iterations: {config.limits.max_iterations}[/]",
        title="Task",
        border_style="bright_green",
    ))

    result = asyncio.run(_run_cancellable(controller, task))
    _print_result(result)
    _print_usage(controller.router)

    if result.status in ("failed", "cancelled", "sandbox_error"):
        raise typer.Exit(1)


@app.command()
def prompt(
    text: str = typer.Argument(..., help="Prompt to send"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model to use"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r", help="Workspace whose config to load"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Send a one-off prompt and stream the reply."""
    _configure_logging(verbose)

    config = load_config(repo.resolve() if repo else None)
    router = Router(config, selected_model=_resolve_model(config, model))

    try:
        asyncio.run(_stream_prompt(router, text))
    except ModelRequestError as e:
        console.print(f"\n[red]LLM request failed: {escape(str(e))}[/]")
        raise typer.Exit(1)


@app.command()
def models(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """List the models that can be selected."""
    config = load_config(repo.resolve() if repo else None)
    selected = ModelStore(config.state_path).get()

    table = Table(title="Models", border_style="cyan")
    table.add_column("Model")
    table.add_column("")

    for name in config.routing.models():
        marks = []
        if name == selected:
            marks.append("[green]selected[/]")
        if name == config.routing.default:
            marks.append("[dim]default[/]")
        table.add_row(name, " ".join(marks))

    console.print(table)


@app.command("select-model")
def select_model(
    model: Optional[str] = typer.Argument(None, help="Model to remember as the default"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Choose the default model for future runs."""
    config = load_config(repo.resolve() if repo else None)
    available = config.routing.models()
    store = ModelStore(config.state_path)

    if model is None:
        model = _pick_model(available)
    elif model not in available:
        console.print(f"[red]Unknown model: {escape(model)}[/]")
        console.print(f"[dim]Available: {', '.join(available)}[/]")
        raise typer.Exit(1)

    store.set(model)
    console.print(f"[green]Default model set to {model}[/]")


@app.command()
def status(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Check SANDLOOP configuration and readiness."""
    _print_banner()

    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")

    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)

    console.print(key_table)

    config = load_config(repo.resolve() if repo else None)
    router = Router(config, selected_model=ModelStore(config.state_path).get())

    console.print("\n[bold]Routing:[/]")
    console.print(f"  Default:   {router.default_model}")
    for role in ROLES:
        console.print(f"  {role.capitalize():<10} {router.resolve_model(role)}")

    console.print("\n[bold]Limits:[/]")
    console.print(f"  Max iterations:  {config.limits.max_iterations}")
    console.print(f"  Output chars:    {config.limits.max_output_chars:,}")
    console.print(f"  Context chars:   {config.limits.max_context_chars:,}")
    console.print(f"  Script timeout:  {config.sandbox.script_timeout}s")

    console.print("\n[bold]Sandbox:[/]")
    console.print(f"  Interpreter:     {config.sandbox.interpreter or 'current Python'}")
    console.print(f"  Copy-on-write:   {'preferred' if config.sandbox.prefer_copy_on_write else 'off'}")
    console.print(f"  State file:      {config.state_path}")
    console.print(f"  Transcripts:     {config.log_path if config.workspace.transcripts else 'off'}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _resolve_model(config: SandLoopConfig, explicit: str | None = None) -> str:
    if explicit:
        return explicit
    available = config.routing.models()
    store = ModelStore(config.state_path)
    chosen = resolve_model_selection(available, store)
    if chosen:
        return chosen

    try:
        model = _pick_model(available)
    except EOFError:
        logger.warning(f"[MODELS] No model selected, using {config.routing.default}")
        return config.routing.default
    store.set(model)
    return model


def _pick_model(available: list[str]) -> str:
    for i, name in enumerate(available, 1):
        console.print(f"  [cyan]{i}[/]. {name}")
    choice = Prompt.ask(
        "Select a model",
        choices=[str(i) for i in range(1, len(available) + 1)],
        default="1",
    )
    return available[int(choice) - 1]


async def _run_cancellable(controller: Controller, task: str) -> RunResult:
    """Run the controller with Ctrl-C wired to its cancel event."""
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False

    try:
        return await controller.run(task, cancel_event)
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)


async def _stream_prompt(router: Router, text: str) -> None:
    async for fragment in router.stream(
        [ChatMessage.user(text)],
        justification="Ad-hoc prompt from the command line.",
    ):
        console.print(fragment, end="", markup=False, highlight=False)
    console.print()


def _print_progress(text: str) -> None:
    console.print(f"  [cyan]{escape(text)}[/]")


def _print_changes(changes: list[FileChange], title: str = "Changes") -> None:
    table = Table(title=title, border_style="cyan")
    table.add_column("Kind")
    table.add_column("Path")

    colors = {"created": "green", "modified": "yellow", "deleted": "red"}
    for change in changes:
        color = colors.get(change.kind.value, "white")
        table.add_row(f"[{color}]{change.kind.value}[/]", change.path)

    console.print(table)


def _confirm_changes(changes: list[FileChange]) -> bool:
    _print_changes(changes, title="Proposed Changes")
    return Confirm.ask("Apply these changes to the workspace?", default=True)


def _decline_changes(changes: list[FileChange]) -> bool:
    return False


def _print_result(result: RunResult) -> None:
    status_color = {
        "completed": "green",
        "iteration_limit": "yellow",
        "cancelled": "yellow",
    }.get(result.status, "red")

    if result.changes:
        _print_changes(result.changes)

    for line in result.applied:
        color = "red" if line.startswith("FAIL") else "cyan"
        console.print(f"  [{color}]{escape(line)}[/]")

    body = result.answer if result.status == "completed" else result.message
    console.print(Panel(
        escape(body or "(no answer)"),
        title=f"Result: {result.status}",
        border_style=status_color,
    ))
    console.print(f"[dim]Iterations: {result.iterations}[/]")


def _print_usage(router: Router) -> None:
    usage = router.usage.summary()
    console.print(
        f"[dim]Model calls: {usage['call_count']} | "
        f"fragments: {usage['fragment_count']:,} | "
        f"prompt chars: {usage['prompt_chars']:,} | "
        f"completion chars: {usage['completion_chars']:,} | "
        f"latency: {usage['total_latency_ms'] / 1000:.1f}s[/]"
    )


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(str(msg))}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(str(msg))}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


if __name__ == "__main__":
    app()
