"""CLI commands for genpipe using Typer and Rich.

Commands:
- split-grid: Split a local composite image into panels and print its scenes
- extract: Recover a structured document from saved model output
- analyze: Run a storyboard/character prompt through the text model
- generate-grid: Generate a composite with the image model and split it
"""

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from genpipe.config import Settings, load_settings
from genpipe.errors import GenPipeError
from genpipe.schemas.scenes import GridLayout, Scene, VideoMode
from genpipe.schemas.storyboard import SCHEMAS
from genpipe.services.extractor import ParseStatus, StructuredExtractor
from genpipe.services.grid import GridDecomposer
from genpipe.services.scenes import SceneAssembler

app = typer.Typer(name="genpipe", help="Resilient generation calls and grid-to-scene assembly")
console = Console()

_STATUS_COLORS = {
    ParseStatus.OK: "green",
    ParseStatus.REPAIRED: "yellow",
    ParseStatus.FAILED: "red",
}


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
):
    """Configure logging and settings sources."""
    load_dotenv()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    ctx.obj = {"config": config}


def _settings(ctx: typer.Context) -> Settings:
    return load_settings(config_path=(ctx.obj or {}).get("config"))


def _scene_table(scenes: list[Scene], title: str) -> Table:
    table = Table(title=title)
    table.add_column("Scene", justify="right", style="cyan")
    table.add_column("Start panel", justify="right")
    table.add_column("End panel", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Status")
    for scene in scenes:
        table.add_row(
            str(scene.scene_index),
            str(scene.start_panel_index),
            "-" if scene.end_panel_index is None else str(scene.end_panel_index),
            f"{scene.duration_seconds}s",
            scene.status.value,
        )
    return table


@app.command("split-grid")
def split_grid(
    ctx: typer.Context,
    image: Path = typer.Argument(..., exists=True, dir_okay=False, help="Composite grid image"),
    layout: GridLayout = typer.Option(GridLayout.THREE_BY_THREE, "--layout", "-l", help="Grid layout"),
    mode: VideoMode = typer.Option(VideoMode.PER_CUT, "--mode", "-m", help="Scene segmentation"),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Directory for panel PNGs"),
):
    """Split a composite image into panels and show the resulting scenes."""
    try:
        grid, panels = GridDecomposer().split(image.read_bytes(), layout)
    except GenPipeError as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        raise typer.Exit(code=1)

    if out is not None:
        out.mkdir(parents=True, exist_ok=True)
        for panel in panels:
            (out / f"panel_{panel.index}.png").write_bytes(panel.data)
        console.print(f"[green]Wrote {len(panels)} panels to[/green] {out}")

    settings = _settings(ctx)
    assembler = SceneAssembler(
        default_duration=settings.pipeline.default_duration,
        allowed_durations=settings.pipeline.allowed_durations,
    )
    scenes = assembler.assemble(panels, mode)
    console.print(
        f"[bold]{grid.width}x{grid.height}[/bold] -> {len(panels)} panels of "
        f"{grid.panel_width}x{grid.panel_height}"
    )
    console.print(_scene_table(scenes, f"Scenes ({mode.value})"))


@app.command()
def extract(
    ctx: typer.Context,
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Saved model output"),
    schema: str = typer.Option("storyboard", "--schema", "-s", help="storyboard | characters"),
):
    """Recover a structured document from raw model text."""
    if schema not in SCHEMAS:
        console.print(f"[red]Error:[/red] Unknown schema: {schema}")
        console.print(f"Allowed: {', '.join(sorted(SCHEMAS))}")
        raise typer.Exit(code=1)

    settings = _settings(ctx)
    extractor = StructuredExtractor(settings.pipeline.truncatable_fields)
    doc = extractor.extract(file.read_text(encoding="utf-8"), SCHEMAS[schema])

    color = _STATUS_COLORS[doc.parse_status]
    info_lines = [
        f"[bold]Status:[/bold] [{color}]{doc.parse_status.value}[/{color}]",
        f"[bold]Dropped items:[/bold] {doc.dropped_items}",
    ]
    if doc.error:
        info_lines.append(f"[bold]Error:[/bold] [red]{doc.error}[/red]")
    console.print(Panel("\n".join(info_lines), title="[bold]Extraction[/bold]", border_style="blue"))

    if doc.parsed is None:
        raise typer.Exit(code=1)
    console.print_json(json.dumps(doc.parsed.to_wire(), ensure_ascii=False))


@app.command()
def analyze(
    ctx: typer.Context,
    prompt_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Prompt text file"),
    schema: str = typer.Option("storyboard", "--schema", "-s", help="storyboard | characters"),
):
    """Run a prompt through the text model and print the validated document."""
    if schema not in SCHEMAS:
        console.print(f"[red]Error:[/red] Unknown schema: {schema}")
        raise typer.Exit(code=1)
    asyncio.run(_analyze_async(_settings(ctx), prompt_file.read_text(encoding="utf-8"), schema))


async def _analyze_async(settings: Settings, prompt: str, schema: str):
    from genpipe.pipeline.storyboard import analyze as run_analysis
    from genpipe.services.resilience import ResilientInvoker

    invoker = ResilientInvoker.from_settings(settings)
    try:
        document = await run_analysis(invoker, prompt, SCHEMAS[schema], settings)
    except GenPipeError as e:
        console.print(f"[red]✗ {e.user_message}[/red] {str(e)}")
        raise typer.Exit(code=1)
    console.print_json(json.dumps(document.to_wire(), ensure_ascii=False))


@app.command("generate-grid")
def generate_grid(
    ctx: typer.Context,
    prompt: str = typer.Argument(..., help="Composite image prompt"),
    layout: GridLayout = typer.Option(GridLayout.THREE_BY_THREE, "--layout", "-l", help="Grid layout"),
    mode: VideoMode = typer.Option(VideoMode.PER_CUT, "--mode", "-m", help="Scene segmentation"),
    out: Path = typer.Option(Path("output"), "--out", "-o", help="Artifact directory"),
):
    """Generate a composite with the image model, split it and store the panels."""
    asyncio.run(_generate_grid_async(_settings(ctx), prompt, layout, mode, out))


async def _generate_grid_async(
    settings: Settings, prompt: str, layout: GridLayout, mode: VideoMode, out: Path
):
    from genpipe.pipeline.grid import generate_grid_scenes
    from genpipe.services.resilience import ResilientInvoker
    from genpipe.services.storage import InMemoryRecordStore, LocalBlobStore

    invoker = ResilientInvoker.from_settings(settings)
    project_id = uuid.uuid4().hex[:12]
    try:
        run = await generate_grid_scenes(
            invoker,
            settings,
            LocalBlobStore(out),
            InMemoryRecordStore(),
            project_id=project_id,
            prompt=prompt,
            layout=layout,
            mode=mode,
        )
    except GenPipeError as e:
        console.print(f"[red]✗ {e.user_message}[/red] {str(e)}")
        raise typer.Exit(code=1)

    console.print(f"[green]✓ Grid stored:[/green] {run.grid_url}")
    console.print(_scene_table(run.scenes, f"Project {project_id} ({mode.value})"))
