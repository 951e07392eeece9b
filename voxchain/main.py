"""
Main CLI interface for voxchain.

This module provides the Typer-based command-line interface with commands for:
- Silence removal on recorded audio files
- Managing the processing unit and pipeline library
- Planning and running post-processing pipelines on transcripts
- Importing legacy inline post-processing configurations
"""

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

import pyperclip
import typer
from pydantic import TypeAdapter, ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .core.audio import AudioProcessingError, SilenceConfig, TrimLimits, load_wav, save_wav, trim_recording
from .core.config import ConfigurationError, config, ensure_project_env, load_project_env
from .core.executor import PipelineExecutionError, PipelineExecutor, execute_many
from .core.history import ExecutionHistory
from .core.planner import plan
from .core.progress import reporter
from .core.store import LegacyPostProcessing, StoreError, UnitStore
from .core.types import ExecutionResult, Pipeline, ProcessingUnit, PromptPayload, Provider, TextReplacementPayload

app = typer.Typer(
    name="voxchain",
    help="voxchain CLI - Trim silence from recordings and run post-processing pipelines on transcripts",
    no_args_is_help=True,
)

console = Console()
logger = logging.getLogger(__name__)


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Show engine log output")):
    """Load the project-scoped environment and configure logging."""
    load_project_env()
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def _open_store(library: Optional[str]) -> UnitStore:
    try:
        return UnitStore(Path(library) if library else config.library_path)
    except StoreError as e:
        console.print(f"[bold red]Library Error:[/bold red] {e}")
        sys.exit(1)


def _find_pipeline(store: UnitStore, key: str) -> Pipeline:
    pipeline = store.find_pipeline(key)
    if pipeline is None:
        console.print(f"[bold red]Error:[/bold red] Pipeline not found: {key}")
        sys.exit(1)
    return pipeline


def _set_debug(debug: bool) -> None:
    # CLI flag always overrides .env
    if debug:
        os.environ["VC_DEBUG"] = "1"
    elif os.environ.get("VC_DEBUG") != "1":
        os.environ["VC_DEBUG"] = "0"


@app.command()
def init(project_root: str = typer.Option(".", "--project-root", help="Project root directory")):
    """Create a .voxchain/.env template for the project."""
    env_path = ensure_project_env(project_root)
    console.print(f"[bold green]Project environment:[/bold green] {env_path}")


@app.command()
def trim(
    path: str = typer.Argument(..., help="Path to a WAV/FLAC/OGG recording"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output path (default: <name>_nosilence.wav)"),
    threshold: Optional[float] = typer.Option(None, "--threshold", help="RMS silence threshold (default from SILENCE_THRESHOLD)"),
    min_silence_ms: Optional[int] = typer.Option(None, "--min-silence-ms", help="Minimum silence length to remove"),
    force: bool = typer.Option(False, "--force", help="Write the trimmed audio even if a safety limit trips"),
):
    """
    Remove long silent stretches from a recording.

    Examples:
        voxchain trim meeting.wav
        voxchain trim memo.wav --threshold 0.02 --min-silence-ms 1000 -o memo_short.wav
    """
    try:
        with reporter.initialize(console, "Reading audio…"):
            buffer = load_wav(path)

            reporter.step("Analyzing silence…")
            silence_config = SilenceConfig(
                threshold=threshold if threshold is not None else config.silence_threshold,
                min_duration_ms=min_silence_ms if min_silence_ms is not None else config.min_silence_ms,
            )
            limits = TrimLimits(min_original_s=0.0, max_reduction_percent=100.0, min_result_s=0.0) if force else TrimLimits()
            outcome = trim_recording(buffer, silence_config, limits)

            out_path = None
            if outcome.applied:
                reporter.step("Writing trimmed audio…")
                source = Path(path)
                out_path = save_wav(outcome.buffer, output or str(source.with_name(f"{source.stem}_nosilence.wav")))
            reporter.complete_step()

        analysis = outcome.analysis
        table = Table(title="Silence Analysis")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="white")
        table.add_row("RMS min / avg / max", f"{analysis.min_rms:.4f} / {analysis.avg_rms:.4f} / {analysis.max_rms:.4f}")
        table.add_row("Threshold", f"{silence_config.threshold:.4f}")
        table.add_row("Regions removed", str(len(analysis.regions)) if outcome.applied else "0")
        table.add_row("Original duration", f"{analysis.original_duration:.2f}s")
        table.add_row("New duration", f"{outcome.buffer.duration:.2f}s")
        table.add_row("Reduction", f"{analysis.reduction_percent:.1f}%" if outcome.applied else "0.0%")
        console.print(table)

        if out_path is not None:
            console.print(f"[bold green]Silence removed:[/bold green] {out_path}")
        else:
            console.print(f"[yellow]Original audio kept ({outcome.reason})[/yellow]")

    except FileNotFoundError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        sys.exit(1)
    except AudioProcessingError as e:
        console.print(f"[bold red]Audio Error:[/bold red] {e}")
        sys.exit(1)


@app.command()
def units(library: Optional[str] = typer.Option(None, "--library", help="Path to the library file")):
    """List processing units in the library."""
    store = _open_store(library)
    items = store.list_units()
    if not items:
        console.print("[yellow]No processing units defined[/yellow]")
        return

    table = Table(title="Processing Units")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Details", style="white")
    for unit in items:
        table.add_row(unit.id, unit.name, unit.kind, _describe_unit(unit))
    console.print(table)


def _describe_unit(unit: ProcessingUnit) -> str:
    payload = unit.payload
    if isinstance(payload, PromptPayload):
        return f"{payload.provider.value} - {payload.model}"
    flags = [flag for flag, on in (("regex", payload.is_regex), ("ignore case", not payload.case_sensitive)) if on]
    suffix = f" ({', '.join(flags)})" if flags else ""
    return f"'{payload.find}' → '{payload.replace}'{suffix}"


@app.command("add-prompt")
def add_prompt(
    name: str = typer.Argument(..., help="Unit name"),
    system_prompt: str = typer.Option("", "--system", "-s", help="System prompt"),
    user_prompt: str = typer.Option("{{input}}", "--user", "-u", help="User prompt template; {{input}} is replaced with the text"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model name (default from LLM_MODEL)"),
    provider: Provider = typer.Option(Provider.OPENAI, "--provider", help="Completion provider"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    library: Optional[str] = typer.Option(None, "--library", help="Path to the library file"),
):
    """
    Add a prompt unit to the library.

    Examples:
        voxchain add-prompt "Fix grammar" -s "You are a careful editor." -u "Correct this text: {{input}}"
    """
    store = _open_store(library)
    payload = PromptPayload(provider=provider, model=model or config.llm_model, system_prompt=system_prompt, user_prompt_template=user_prompt)
    unit = store.save_unit(ProcessingUnit(name=name, description=description, payload=payload))
    console.print(f"[bold green]Unit created:[/bold green] {unit.name} ({unit.id})")


@app.command("add-replacement")
def add_replacement(
    name: str = typer.Argument(..., help="Unit name"),
    find: str = typer.Option(..., "--find", "-f", help="Text or pattern to find"),
    replace: str = typer.Option("", "--replace", "-r", help="Replacement text"),
    regex: bool = typer.Option(False, "--regex", help="Treat --find as a regular expression"),
    ignore_case: bool = typer.Option(False, "--ignore-case", "-i", help="Case-insensitive matching"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    library: Optional[str] = typer.Option(None, "--library", help="Path to the library file"),
):
    """Add a text replacement unit to the library."""
    store = _open_store(library)
    payload = TextReplacementPayload(find=find, replace=replace, is_regex=regex, case_sensitive=not ignore_case)
    unit = store.save_unit(ProcessingUnit(name=name, description=description, payload=payload))
    console.print(f"[bold green]Unit created:[/bold green] {unit.name} ({unit.id})")


@app.command("delete-unit")
def delete_unit(
    unit_id: str = typer.Argument(..., help="Unit ID"),
    library: Optional[str] = typer.Option(None, "--library", help="Path to the library file"),
):
    """Delete a unit and remove it from every pipeline."""
    store = _open_store(library)
    if not store.delete_unit(unit_id):
        console.print(f"[bold red]Error:[/bold red] Unit not found: {unit_id}")
        sys.exit(1)
    console.print(f"[bold green]Unit deleted:[/bold green] {unit_id}")


@app.command()
def pipelines(library: Optional[str] = typer.Option(None, "--library", help="Path to the library file")):
    """List pipelines in the library."""
    store = _open_store(library)
    items = store.list_pipelines()
    if not items:
        console.print("[yellow]No pipelines defined[/yellow]")
        return

    table = Table(title="Pipelines")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Enabled")
    table.add_column("Units", style="white")
    for pipeline in items:
        names = []
        for ref in pipeline.unit_references:
            unit = store.get_unit(ref.unit_id)
            label = unit.name if unit else f"[red]missing {ref.unit_id}[/red]"
            names.append(label if ref.enabled else f"[dim]{label} (off)[/dim]")
        marker = " *" if pipeline.id == store.last_used_pipeline_id else ""
        table.add_row(pipeline.id, pipeline.name + marker, "Yes" if pipeline.enabled else "No", " → ".join(names))
    console.print(table)


@app.command("create-pipeline")
def create_pipeline(
    name: str = typer.Argument(..., help="Pipeline name"),
    unit_ids: List[str] = typer.Option([], "--unit", "-u", help="Unit ID, in execution order (repeatable)"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    disabled: bool = typer.Option(False, "--disabled", help="Create the pipeline disabled"),
    library: Optional[str] = typer.Option(None, "--library", help="Path to the library file"),
):
    """
    Create a pipeline from existing units.

    Examples:
        voxchain create-pipeline "Clean up" -u <grammar-unit-id> -u <summary-unit-id>
    """
    store = _open_store(library)
    missing = [unit_id for unit_id in unit_ids if store.get_unit(unit_id) is None]
    if missing:
        console.print(f"[bold red]Error:[/bold red] Unknown unit(s): {', '.join(missing)}")
        sys.exit(1)

    pipeline = Pipeline(name=name, description=description, enabled=not disabled)
    for unit_id in unit_ids:
        pipeline.add_unit(unit_id)
    store.save_pipeline(pipeline)
    console.print(f"[bold green]Pipeline created:[/bold green] {pipeline.name} ({pipeline.id})")


@app.command("delete-pipeline")
def delete_pipeline(
    key: str = typer.Argument(..., help="Pipeline ID or name"),
    library: Optional[str] = typer.Option(None, "--library", help="Path to the library file"),
):
    """Delete a pipeline."""
    store = _open_store(library)
    pipeline = _find_pipeline(store, key)
    store.delete_pipeline(pipeline.id)
    console.print(f"[bold green]Pipeline deleted:[/bold green] {pipeline.name}")


@app.command("plan")
def plan_command(
    key: str = typer.Argument(..., help="Pipeline ID or name"),
    no_optimize: bool = typer.Option(False, "--no-optimize", help="Disable prompt chaining"),
    library: Optional[str] = typer.Option(None, "--library", help="Path to the library file"),
):
    """Show how a pipeline would be batched, without calling any model."""
    store = _open_store(library)
    pipeline = _find_pipeline(store, key)
    resolved, issues = store.resolve(pipeline)
    for issue in issues:
        console.print(f"[yellow]Warning:[/yellow] {issue}")

    optimize = config.optimization_enabled and not no_optimize
    batches = plan(resolved, optimize=optimize)

    table = Table(title=f"Execution Plan: {pipeline.name}")
    table.add_column("#", style="dim")
    table.add_column("Units", style="cyan")
    table.add_column("Calls")
    table.add_column("Mode", style="white")
    for index, batch in enumerate(batches, 1):
        names = ", ".join(unit.name for unit in batch.units)
        calls = 1 if batch.optimizable else sum(1 for unit in batch.units if unit.is_prompt)
        mode = f"chained ({batch.provider.value}/{batch.model})" if batch.optimizable else "sequential"
        table.add_row(str(index), names, str(calls), mode)
    console.print(table)

    saved = sum(len(batch.units) - 1 for batch in batches if batch.optimizable)
    if saved:
        console.print(f"[bold green]⚡ {saved} API call(s) saved by chaining[/bold green]")


@app.command()
def run(
    keys: List[str] = typer.Option(..., "--pipeline", "-p", help="Pipeline ID or name (repeatable; runs concurrently)"),
    text: Optional[str] = typer.Option(None, "--text", "-t", help="Transcript text to process"),
    file: Optional[str] = typer.Option(None, "--file", help="Path to file containing transcript text"),
    no_optimize: bool = typer.Option(False, "--no-optimize", help="Disable prompt chaining"),
    output_format: str = typer.Option("rich", "--format", "-f", help="Output format (rich, text, json)"),
    debug: bool = typer.Option(False, "--debug", help="Write prompts and responses to .voxchain/debug"),
    library: Optional[str] = typer.Option(None, "--library", help="Path to the library file"),
):
    """
    Run one or more pipelines on a transcript.

    Examples:
        voxchain run -p "Clean up" --text "so um basically we should ship friday"
        voxchain run -p "Clean up" -p "Summary" --file transcript.txt --format json
    """
    if text and file:
        console.print("[bold red]Error:[/bold red] Cannot specify both --text and --file options")
        sys.exit(1)
    if not text and not file:
        console.print("[bold red]Error:[/bold red] Must specify either --text or --file option")
        sys.exit(1)

    if file:
        file_path = Path(file)
        if not file_path.exists():
            console.print(f"[bold red]Error:[/bold red] File not found: {file}")
            sys.exit(1)
        text = file_path.read_text(encoding="utf-8")
    assert text is not None, "Text should not be None after validation"

    _set_debug(debug)
    store = _open_store(library)
    selected = [_find_pipeline(store, key) for key in keys]
    executor = PipelineExecutor(store, optimization_enabled=False if no_optimize else None)
    history = ExecutionHistory()
    history.start_new_session(text)

    try:
        if output_format == "rich":
            with reporter.initialize(console, f"Running {len(selected)} pipeline(s)…"):
                results = asyncio.run(execute_many(executor, selected, text))
                reporter.complete_step()
        else:
            # Keep text/json output machine-readable
            results = asyncio.run(execute_many(executor, selected, text))
    except PipelineExecutionError as e:
        label = "Configuration Error" if isinstance(e.cause, ConfigurationError) else "Pipeline Error"
        console.print(f"[bold red]{label}:[/bold red] {e}")
        sys.exit(1)

    for pipeline, result in zip(selected, results):
        history.add_result(pipeline, result)
    store.last_used_pipeline_id = selected[-1].id

    _display_results(selected, results, output_format)
    if output_format == "rich" and len(history.results) > 1:
        _display_history(history)
    _copy_to_clipboard(results[-1].output_text)


def _display_history(history: ExecutionHistory) -> None:
    """Show this transcription's pipeline results, newest first."""
    table = Table(title="Session History")
    table.add_column("Pipeline", style="cyan")
    table.add_column("Time", style="dim")
    table.add_column("Result", style="white")
    for entry in history.results:
        preview = entry.result_text if len(entry.result_text) <= 60 else entry.result_text[:57] + "..."
        table.add_row(entry.pipeline_name, f"{entry.execution_time:.2f}s", preview)
    console.print(table)


def _display_results(selected: List[Pipeline], results: List[ExecutionResult], output_format: str) -> None:
    """Display pipeline results in the specified format."""
    if output_format == "json":
        output = [{"pipeline": p.name, "pipeline_id": p.id, **r.model_dump(mode="json")} for p, r in zip(selected, results)]
        console.print(json.dumps(output, indent=2, ensure_ascii=False))
        return

    if output_format == "text":
        for result in results:
            console.print(result.output_text)
        return

    for pipeline, result in zip(selected, results):
        for warning in result.warnings:
            console.print(f"[yellow]Warning:[/yellow] {warning}")

        console.print(f"\n[bold green]Result ({pipeline.name}):[/bold green]")
        console.print(Panel(result.output_text, border_style="green"))

        if not result.log_entries:
            console.print("[dim]Pipeline skipped (disabled or no enabled units)[/dim]")
            continue

        log_table = Table(title="Execution Log", show_lines=False)
        log_table.add_column("Step", style="cyan")
        log_table.add_column("Duration", style="white")
        log_table.add_column("Chars in → out", style="dim")
        for entry in result.log_entries:
            step = f"⚡ {entry.label}" if entry.optimized else entry.label
            log_table.add_row(step, f"{entry.duration:.2f}s", f"{len(entry.input_text)} → {len(entry.output_text)}")
        console.print(log_table)

        summary = f"Total: {result.total_duration:.2f}s"
        if result.calls_saved:
            summary += f" | {result.calls_saved} API call(s) saved"
        console.print(f"[dim]{summary}[/dim]")


def _copy_to_clipboard(text: str) -> None:
    try:
        pyperclip.copy(text)
    except pyperclip.PyperclipException as e:
        logger.debug(f"Clipboard unavailable: {e}")


@app.command()
def migrate(
    path: str = typer.Argument(..., help="JSON file with a list of legacy post-processing configurations"),
    library: Optional[str] = typer.Option(None, "--library", help="Path to the library file"),
):
    """Import legacy inline post-processing configurations as units and pipelines (one time)."""
    source = Path(path)
    if not source.exists():
        console.print(f"[bold red]Error:[/bold red] File not found: {path}")
        sys.exit(1)

    try:
        configs = TypeAdapter(List[LegacyPostProcessing]).validate_json(source.read_text(encoding="utf-8"))
    except ValidationError as e:
        console.print(f"[bold red]Error:[/bold red] Invalid legacy configuration: {e}")
        sys.exit(1)

    store = _open_store(library)
    if store.legacy_migrated:
        console.print("[yellow]Legacy configurations were already migrated[/yellow]")
        return

    created = store.migrate_legacy(configs)
    console.print(f"[bold green]Migrated {len(created)} pipeline(s)[/bold green]")
    for pipeline in created:
        console.print(f"  • {pipeline.name} ({len(pipeline.unit_references)} units)")


if __name__ == "__main__":
    app()
