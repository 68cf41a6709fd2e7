"""CLI entry point for Content Processor.

Runs URL lists through extraction and rewriting and manages the persisted
settings and kill-switch flags.
"""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

import orjson
import typer
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from . import __version__
from .core.config import AppSettings, get_settings
from .core.exceptions import ConfigurationError
from .core.settings_store import get_settings_store
from .orchestration import (
    LOCK_MESSAGE,
    PipelineOrchestrator,
    Provider,
    RunResult,
    UsageGovernor,
)
from .output import DocumentWriter
from .types import Job, JobStatus

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# CLI app
app = typer.Typer(
    name="content-processor",
    help="Content Processor - Extract web pages and rewrite them with an LLM",
    add_completion=False,
)

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"content-processor version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        help="Show version and exit",
    ),
) -> None:
    """Content Processor - Extract web pages and rewrite them with an LLM."""
    pass


def _persist_trip(providers: list[Provider], reason: str) -> None:
    store = get_settings_store()
    store.set_provider_flags(
        tavily=False if Provider.EXTRACTION in providers else None,
        gemini=False if Provider.REWRITE in providers else None,
    )


def _persist_reset(enabled: list[Provider]) -> None:
    store = get_settings_store()
    store.set_provider_flags(
        tavily=Provider.EXTRACTION in enabled,
        gemini=Provider.REWRITE in enabled,
    )


def _read_urls(urls: Optional[list[str]], url_file: Optional[Path]) -> list[str]:
    collected = list(urls or [])
    if url_file is not None:
        collected.extend(url_file.read_text(encoding="utf-8").splitlines())
    return collected


@app.command()
def run(
    urls: Optional[list[str]] = typer.Argument(
        None,
        help="URLs to process (defaults to the stored URL list)",
    ),
    url_file: Optional[Path] = typer.Option(
        None,
        "--file",
        "-f",
        exists=True,
        dir_okay=False,
        help="File with one URL per line",
    ),
    output_dir: Path = typer.Option(
        Path("."),
        "--output-dir",
        "-o",
        help="Output directory",
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Keep provider payloads and write a job dump",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable verbose logging",
    ),
) -> None:
    """Extract and rewrite a list of URLs into one Markdown document."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    settings = get_settings()
    if debug:
        settings.debug_mode = True

    # Validate configuration
    errors = settings.validate()
    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  - {error}")
        console.print("\nUse `content-processor settings --set key=value` or a .env file.")
        raise typer.Exit(1)

    if not settings.tavily_allow or not settings.gemini_allow:
        console.print(f"[red]{LOCK_MESSAGE}[/red]")
        console.print("Run `content-processor unlock` to reset the kill switch.")
        raise typer.Exit(1)

    url_list = _read_urls(urls, url_file) or settings.urls
    if not url_list:
        console.print("[yellow]No URLs specified.[/yellow]")
        raise typer.Exit(1)

    result = asyncio.run(run_cli_pipeline(url_list, settings, output_dir))
    if result.aborted or result.completed_count == 0:
        raise typer.Exit(1)


async def run_cli_pipeline(
    urls: list[str],
    settings: AppSettings,
    output_dir: Path,
) -> RunResult:
    """Run the pipeline with progress display and write the output."""
    governor = UsageGovernor.from_settings(
        settings, on_trip=_persist_trip, on_reset=_persist_reset
    )

    console.print("\n[bold]Content Processor[/bold]")
    console.print(f"Output: {output_dir / settings.output_filename}")
    console.print()

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Processing...", total=None)
        finished: set[str] = set()

        def progress_callback(job: Job) -> None:
            if job.status.is_terminal:
                finished.add(job.id)
            progress.update(
                task,
                completed=len(finished),
                description=f"{job.status.label}: {job.url}",
            )

        orchestrator = PipelineOrchestrator(governor, progress_callback=progress_callback)

        try:
            await orchestrator.start(urls, settings)
        except ConfigurationError as e:
            console.print(f"[red]Configuration error:[/red] {e}")
            raise typer.Exit(1)
        progress.update(task, total=len(orchestrator.jobs))

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(
                signal.SIGINT, lambda: asyncio.ensure_future(orchestrator.stop())
            )
        except NotImplementedError:
            logger.debug("Signal handlers unavailable; Ctrl-C will not stop gracefully")

        result = await orchestrator.wait()

        progress.update(task, description="Writing output...")
        writer = DocumentWriter(
            output_dir,
            output_filename=settings.output_filename,
            debug=settings.debug_mode,
        )
        output_path = writer.write(result)

    _print_summary(result, governor)
    console.print(f"[bold]Output:[/bold] {output_path}")
    return result


def _print_summary(result: RunResult, governor: UsageGovernor) -> None:
    console.print()
    table = Table(title="Run Summary")
    table.add_column("URL", style="cyan", overflow="fold")
    table.add_column("Status")
    table.add_column("Lines", justify="right")
    table.add_column("Detail")

    for job in result.jobs:
        style = "green" if job.status == JobStatus.COMPLETED else "red"
        lines = str(job.processed_stats.lines) if job.processed_stats else "-"
        table.add_row(
            job.url,
            f"[{style}]{job.status.label}[/{style}]",
            lines,
            escape(job.error or ""),
        )

    console.print(table)

    usage = result.token_usage
    console.print()
    if result.aborted:
        console.print("[yellow]Run was aborted.[/yellow]")
    console.print(
        f"[bold]Completed:[/bold] {result.completed_count}  "
        f"[bold]Failed:[/bold] {result.error_count}"
    )
    console.print(
        f"[bold]Output size:[/bold] {result.output_stats.lines} lines, "
        f"{result.output_stats.size} bytes"
    )
    console.print(
        f"[bold]Tokens:[/bold] {usage.total_tokens} total "
        f"({usage.prompt_tokens} prompt, {usage.candidates_tokens} output, "
        f"{usage.thoughts_tokens} thinking)"
    )
    console.print(f"[bold]Duration:[/bold] {result.duration_seconds:.1f}s")
    if governor.lock_message:
        console.print(f"[red]{governor.lock_message}[/red]")


def _mask(value: str) -> str:
    if not value:
        return "[red]missing[/red]"
    return f"{value[:4]}..."


@app.command()
def check() -> None:
    """Check configuration and kill-switch state."""
    settings = get_settings()

    console.print("[bold]Configuration Check[/bold]\n")
    console.print(f"Settings file: {get_settings_store().path}")
    console.print(f"Tavily API key: {_mask(settings.effective_tavily_key)}")
    console.print(f"Gemini API key: {_mask(settings.effective_gemini_key)}")
    console.print(
        f"Limits: Tavily {settings.max_tavily_calls} calls / "
        f"{settings.max_tavily_errors} errors, Gemini {settings.max_gemini_calls} "
        f"calls / {settings.max_gemini_errors} errors ({settings.trip_scope} scope)"
    )
    console.print(f"Model: {settings.rewrite.model}")

    for name, allowed in (("Tavily", settings.tavily_allow), ("Gemini", settings.gemini_allow)):
        state = "[green]enabled[/green]" if allowed else "[red]disabled by kill switch[/red]"
        console.print(f"{name} calls: {state}")

    errors = settings.validate()
    if errors:
        console.print("\n[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  - {error}")
        raise typer.Exit(1)

    console.print("\n[green]Configuration is valid.[/green]")


def _parse_value(raw: str):
    """Interpret a --set value as JSON, falling back to a plain string."""
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError:
        return raw


@app.command("settings")
def settings_cmd(
    assignments: Optional[list[str]] = typer.Option(
        None,
        "--set",
        "-s",
        help="Set a value, e.g. --set extraction.batch_size=10",
    ),
) -> None:
    """Show or update persisted settings."""
    store = get_settings_store()

    for assignment in assignments or []:
        key, sep, raw = assignment.partition("=")
        if not sep or not key.strip():
            console.print(f"[red]Invalid assignment:[/red] {assignment}")
            raise typer.Exit(1)
        try:
            store.update(key.strip(), _parse_value(raw))
        except ConfigurationError as e:
            console.print(f"[red]{escape(str(e))}[/red]")
            raise typer.Exit(1)
        console.print(f"Set [cyan]{key.strip()}[/cyan]")

    settings = store.load_settings()

    table = Table(title="Settings")
    table.add_column("Key", style="cyan")
    table.add_column("Value", overflow="fold")

    for key, value in settings.to_dict().items():
        if key.endswith("api_key"):
            value = _mask(value)
        elif isinstance(value, dict):
            value = ", ".join(f"{k}={v!r}" for k, v in value.items())
        table.add_row(key, value if key.endswith("api_key") else escape(str(value)))

    console.print(table)

    errors = settings.validate()
    if errors:
        console.print("[yellow]Warnings:[/yellow]")
        for error in errors:
            console.print(f"  - {error}")


@app.command()
def unlock() -> None:
    """Reset the kill switch and re-enable providers with valid keys."""
    settings = get_settings()
    governor = UsageGovernor.from_settings(settings, on_reset=_persist_reset)
    enabled = governor.reset()

    for provider in Provider:
        if provider in enabled:
            console.print(f"[green]{provider.display_name} enabled[/green]")
        else:
            console.print(f"[red]{provider.display_name} disabled (missing API key)[/red]")


if __name__ == "__main__":
    app()
