"""
SVGTrace CLI - Raster to vector conversion from the command line.

Every command goes through a ConversionService, so conversions started by
``batch`` share one admission gate exactly as concurrent uploads would.
"""

import asyncio
import json
import logging
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Annotated

import typer
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from svgtrace.config import ServiceConfig, TRACER_ENGINES
from svgtrace.errors import BusyError, ConversionError, ValidationError, error_payload
from svgtrace.models import ConversionResult, PreprocessMode, TraceParameters, TurnPolicy
from svgtrace.service import ConversionService

app = typer.Typer(
    name="svgtrace",
    help="[bold cyan]SVGTrace[/] - Convert PNG/JPEG bitmaps into clean SVG outlines.",
    rich_markup_mode="rich",
    no_args_is_help=True,
    pretty_exceptions_show_locals=False,
)

console = Console()
error_console = Console(stderr=True, style="bold red")

EXIT_FAILED = 1
EXIT_BUSY = 2


class EngineChoice(str, Enum):
    potrace = "potrace"
    vtracer = "vtracer"


def configure_logging(verbose: bool) -> None:
    """Route library logging through rich; debug level when verbose."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def build_service(
    max_concurrent: Optional[int] = None,
    max_queued: Optional[int] = None,
    engine: Optional[EngineChoice] = None,
) -> ConversionService:
    config = ServiceConfig.from_env()
    overrides: Dict[str, Any] = {}
    if max_concurrent is not None:
        overrides["max_concurrent"] = max_concurrent
    if max_queued is not None:
        overrides["max_queued"] = max_queued
    if engine is not None:
        overrides["tracer_engine"] = engine.value
    return ConversionService.create(replace(config, **overrides))


def build_parameters(**form: Any) -> TraceParameters:
    """TraceParameters from CLI options, reporting bad values as usage errors."""
    try:
        return TraceParameters.from_form({k: v for k, v in form.items() if v is not None})
    except ValidationError as e:
        raise typer.BadParameter(e.message)


def _output_path(input_path: Path, output: Optional[Path], out_dir: Optional[Path] = None) -> Path:
    if output is not None:
        return output if output.suffix.lower() == ".svg" else output.with_suffix(".svg")
    target = input_path.with_suffix(".svg")
    return (out_dir / target.name) if out_dir is not None else target


def _report_error(exc: BaseException, verbose: bool) -> int:
    status, body, headers = error_payload(exc)
    if isinstance(exc, BusyError):
        error_console.print(f"⏳ {body['error']} Retry in {exc.retry_after_seconds}s.")
        return EXIT_BUSY
    message = exc.message if isinstance(exc, ConversionError) else body["error"]
    error_console.print(f"❌ Conversion failed ({status}): {message}")
    if verbose and not isinstance(exc, ValidationError):
        console.print_exception()
    return EXIT_FAILED


async def convert_with_retry(service: ConversionService, path: Path,
                             params: TraceParameters, retries: int) -> ConversionResult:
    """Convert a file, waiting out busy rejections up to ``retries`` times."""
    attempt = 0
    while True:
        try:
            return await service.convert_file(path, params)
        except BusyError as e:
            if attempt >= retries:
                raise
            attempt += 1
            await asyncio.sleep(e.retry_after_ms / 1000)


# ============================================================================
# COMMANDS
# ============================================================================

@app.command("convert", rich_help_panel="Commands")
def convert(
    input_file: Annotated[Path, typer.Argument(help="PNG or JPEG image to trace", exists=True, dir_okay=False)],
    output_file: Annotated[
        Optional[Path],
        typer.Argument(help="Output SVG [dim](default: input_name.svg)[/]", show_default=False),
    ] = None,
    threshold: Annotated[int, typer.Option("--threshold", "-t", min=0, max=255,
                                           help="Ink cutoff (0-255)", rich_help_panel="Tracing")] = 224,
    turd_size: Annotated[int, typer.Option("--turd-size", min=0,
                                           help="Drop speckles up to this area", rich_help_panel="Tracing")] = 2,
    opt_tolerance: Annotated[float, typer.Option("--opt-tolerance",
                                                 help="Curve optimization tolerance", rich_help_panel="Tracing")] = 0.28,
    turn_policy: Annotated[TurnPolicy, typer.Option("--turn-policy", rich_help_panel="Tracing")] = TurnPolicy.minority,
    preprocess: Annotated[PreprocessMode, typer.Option("--preprocess", "-p",
                                                       help="[bold]edge[/] extracts outlines from photos",
                                                       rich_help_panel="Preprocessing")] = PreprocessMode.none,
    blur_sigma: Annotated[float, typer.Option("--blur-sigma", rich_help_panel="Preprocessing")] = 0.8,
    edge_boost: Annotated[float, typer.Option("--edge-boost", rich_help_panel="Preprocessing")] = 1.0,
    line_color: Annotated[str, typer.Option("--line-color", "-c", rich_help_panel="Styling")] = "#000000",
    background: Annotated[Optional[str], typer.Option("--background", "-b",
                                                      help="Background color [dim](default: transparent)[/]",
                                                      rich_help_panel="Styling")] = None,
    invert: Annotated[bool, typer.Option("--invert", help="White lines on a dark background",
                                         rich_help_panel="Styling")] = False,
    engine: Annotated[Optional[EngineChoice], typer.Option("--engine", "-e")] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print the response body as JSON")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show debug logging")] = False,
):
    """
    🎨 Trace one image into an SVG.

    [bold]Examples:[/]

      $ svgtrace convert logo.png
      $ svgtrace convert photo.jpg outline.svg -p edge --edge-boost 1.25
      $ svgtrace convert sprite.png --background "#ffffff" -c "#1e3a8a"
    """
    configure_logging(verbose)
    params = build_parameters(
        threshold=threshold, turdSize=turd_size, optTolerance=opt_tolerance,
        turnPolicy=turn_policy.value, lineColor=line_color, invert=invert,
        transparent=background is None, bgColor=background,
        preprocess=preprocess.value, blurSigma=blur_sigma, edgeBoost=edge_boost,
    )
    service = build_service(engine=engine)
    output_path = _output_path(input_file, output_file)

    try:
        result = asyncio.run(service.convert_file(input_file, params))
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠️ Operation cancelled by user.[/]")
        raise typer.Exit(130)
    except Exception as e:
        raise typer.Exit(_report_error(e, verbose))

    output_path.write_text(result.svg, encoding="utf-8")

    if as_json:
        console.print_json(json.dumps(result.to_dict()))
        return

    table = Table(box=box.ROUNDED, show_header=False, border_style="dim")
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    table.add_row("📁 Input", str(input_file))
    table.add_row("📄 Output", str(output_path))
    table.add_row("📐 Size", f"{result.width} × {result.height}")
    table.add_row("🔧 Engine", service.tracer.name)
    if result.preprocess_fallback.value != "none":
        table.add_row("↩️ Fallback", result.preprocess_fallback.value)
    console.print(Panel(table, title="✅ Converted", border_style="green"))


@app.command("batch", rich_help_panel="Commands")
def batch(
    inputs: Annotated[List[Path], typer.Argument(help="Images to trace", exists=True, dir_okay=False)],
    out_dir: Annotated[Path, typer.Option("--out-dir", "-o", help="Directory for SVG files")] = Path("."),
    preprocess: Annotated[PreprocessMode, typer.Option("--preprocess", "-p")] = PreprocessMode.none,
    threshold: Annotated[int, typer.Option("--threshold", "-t", min=0, max=255)] = 224,
    line_color: Annotated[str, typer.Option("--line-color", "-c")] = "#000000",
    max_concurrent: Annotated[Optional[int], typer.Option("--max-concurrent", min=1,
                                                          rich_help_panel="Admission")] = None,
    max_queued: Annotated[Optional[int], typer.Option("--max-queued", min=0,
                                                      rich_help_panel="Admission")] = None,
    retries: Annotated[int, typer.Option("--retries", min=0,
                                         help="Resubmit busy rejections after the retry hint",
                                         rich_help_panel="Admission")] = 0,
    engine: Annotated[Optional[EngineChoice], typer.Option("--engine", "-e")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
):
    """
    📦 Trace many images at once through one shared admission gate.

    Files beyond the gate's capacity and queue are rejected as busy unless
    [bold]--retries[/] is given.
    """
    configure_logging(verbose)
    params = build_parameters(threshold=threshold, lineColor=line_color, preprocess=preprocess.value)
    service = build_service(max_concurrent, max_queued, engine)
    out_dir.mkdir(parents=True, exist_ok=True)

    async def run_all():
        return await asyncio.gather(
            *(convert_with_retry(service, path, params, retries) for path in inputs),
            return_exceptions=True,
        )

    outcomes = asyncio.run(run_all())

    table = Table(title="Batch results", box=box.ROUNDED)
    table.add_column("File", style="cyan")
    table.add_column("Status")
    table.add_column("Detail", style="dim")
    exit_code = 0
    for path, outcome in zip(inputs, outcomes):
        if isinstance(outcome, ConversionResult):
            target = _output_path(path, None, out_dir)
            target.write_text(outcome.svg, encoding="utf-8")
            table.add_row(path.name, "[green]converted[/]", f"{outcome.width}×{outcome.height} → {target}")
        elif isinstance(outcome, BusyError):
            exit_code = max(exit_code, EXIT_BUSY)
            table.add_row(path.name, "[yellow]busy[/]", f"retry after {outcome.retry_after_ms} ms")
        else:
            exit_code = EXIT_FAILED if exit_code != EXIT_BUSY else exit_code
            _, body, _ = error_payload(outcome)
            detail = outcome.message if isinstance(outcome, ConversionError) else body["error"]
            table.add_row(path.name, "[red]failed[/]", detail)
    console.print(table)
    if exit_code:
        raise typer.Exit(exit_code)


@app.command("limits", rich_help_panel="Utilities")
def limits():
    """📏 Show the effective limits and admission settings."""
    cfg = ServiceConfig.from_env()
    table = Table(box=box.ROUNDED, show_header=False, border_style="dim")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Max upload", f"{cfg.max_upload_mb} MB")
    table.add_row("Max megapixels", f"{cfg.max_megapixels:g} MP")
    table.add_row("Max side", f"{cfg.max_side} px")
    table.add_row("Downscale to", f"{cfg.downscale_side} px")
    table.add_row("Allowed types", ", ".join(sorted(cfg.allowed_mime)))
    table.add_row("Max concurrent", str(cfg.max_concurrent))
    table.add_row("Max queued", str(cfg.max_queued))
    table.add_row("Estimated job", f"{cfg.estimated_job_ms} ms")
    table.add_row("Tracer", f"{cfg.tracer_engine} [dim](of {', '.join(TRACER_ENGINES)})[/]")
    console.print(Panel(table, title="SVGTrace limits", border_style="cyan"))


def run():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    app()
