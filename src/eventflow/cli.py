"""EventFlow CLI - typer application entry point."""

from __future__ import annotations

import asyncio
import atexit
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, TypeVar

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from eventflow.catalog import StoryCatalog
from eventflow.config import (
    CONFIG_FILENAME,
    ConfigError,
    ProjectConfig,
    create_default_config,
    load_project_config,
    write_project_config,
)
from eventflow.graph.errors import (
    EntityNotFoundError,
    EventFlowError,
    ValidationError,
)
from eventflow.graph.mutations import MutationEngine
from eventflow.graph.normalize import display_percentages
from eventflow.graph.sqlite_store import open_sqlite_database
from eventflow.graph.store import StoryDatabase
from eventflow.graph.validation import validate_graph
from eventflow.models.story import ConnectionKind, parse_skill_value
from eventflow.observability import close_file_logging, configure_logging, get_logger

# Load environment variables from .env file
load_dotenv()

if TYPE_CHECKING:
    from eventflow.export.importer import ImportReport
    from eventflow.graph.validation_types import ValidationReport

T = TypeVar("T")

app = typer.Typer(
    name="eventflow",
    help="EventFlow: branching narrative graph editor.",
    no_args_is_help=True,
)
story_app = typer.Typer(help="Create, list and delete stories.", no_args_is_help=True)
storyline_app = typer.Typer(help="Create, list and delete storylines.", no_args_is_help=True)
event_app = typer.Typer(help="Edit events and their options.", no_args_is_help=True)
app.add_typer(story_app, name="story")
app.add_typer(storyline_app, name="storyline")
app.add_typer(event_app, name="event")

console = Console()

# Default directory for projects
DEFAULT_PROJECTS_DIR = Path("projects")

# Global state for logging flags (set by callback, used by commands)
_verbose: int = 0
_log_enabled: bool = False
_projects_dir: Path = DEFAULT_PROJECTS_DIR

ProjectOption = Annotated[
    Path | None,
    typer.Option(
        "--project",
        "-p",
        help="Project directory. Can be a path or name (looks in --projects-dir).",
    ),
]


@app.callback()
def main(
    verbose: Annotated[
        int,
        typer.Option(
            "-v",
            "--verbose",
            count=True,
            help="Increase verbosity: -v for INFO, -vv for DEBUG.",
        ),
    ] = 0,
    log: Annotated[
        bool,
        typer.Option(
            "--log",
            help="Enable file logging to {project}/logs/debug.jsonl.",
        ),
    ] = False,
    projects_dir: Annotated[
        Path,
        typer.Option(
            "--projects-dir",
            "-d",
            help="Base directory for projects (default: ./projects).",
            envvar="EVENTFLOW_PROJECTS_DIR",
        ),
    ] = DEFAULT_PROJECTS_DIR,
) -> None:
    """EventFlow: branching narrative graph editor."""
    global _verbose, _log_enabled, _projects_dir
    _verbose = verbose
    _log_enabled = log
    _projects_dir = projects_dir

    # Configure console logging (file logging configured later when project is known)
    configure_logging(verbosity=verbose)


# =============================================================================
# Helpers
# =============================================================================


def _configure_project_logging(project_path: Path) -> None:
    """Configure file logging if --log flag was set."""
    if _log_enabled:
        configure_logging(verbosity=_verbose, log_to_file=True, project_path=project_path)
        atexit.register(close_file_logging)


def _resolve_project_path(project: Path | None) -> Path:
    """Resolve project path from argument.

    Resolution order:
    1. If project is None, use current directory
    2. If project exists as given, use it
    3. If project is a name (no path separators), look in _projects_dir
    """
    if project is None:
        return Path()

    if project.exists():
        return project

    if len(project.parts) == 1:
        projects_path = _projects_dir / project
        if projects_path.exists():
            return projects_path

    # Return as-is (will fail in _load_config with helpful error)
    return project


def _load_config(project_path: Path) -> ProjectConfig:
    """Load project.yaml, exiting with an error if it is missing or invalid."""
    if not (project_path / CONFIG_FILENAME).exists():
        console.print(
            f"[red]Error:[/red] No {CONFIG_FILENAME} found. "
            "Run 'eventflow init <name>' first or use --project."
        )
        raise typer.Exit(1)
    try:
        return load_project_config(project_path)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1) from None


def _run(
    project: Path | None,
    action: Callable[[StoryDatabase, ProjectConfig, Path], Awaitable[T]],
) -> T:
    """Open the project database, run *action*, and map errors to exit code 1."""
    project_path = _resolve_project_path(project)
    config = _load_config(project_path)
    _configure_project_logging(project_path)

    log = get_logger(__name__)
    db = open_sqlite_database(config.get_database_path(project_path))
    try:
        return asyncio.run(action(db, config, project_path))
    except ValidationError as e:
        console.print(f"[red]Error:[/red] {escape(e.describe())}")
        raise typer.Exit(1) from None
    except EventFlowError as e:
        log.error("command_failed", error=str(e), error_type=type(e).__name__)
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1) from None
    finally:
        db.close()


async def _load_engine(db: StoryDatabase, config: ProjectConfig, storyline_id: str) -> MutationEngine:
    try:
        policy = config.editor.get_disconnect_policy()
    except ValueError as e:
        raise ConfigError(Path(CONFIG_FILENAME), f"invalid disconnect policy: {e}") from e
    return await MutationEngine.load(
        db,
        storyline_id,
        disconnect_policy=policy,
        option_label=config.editor.option_label,
    )


async def _engine_for_event(db: StoryDatabase, config: ProjectConfig, event_id: str) -> MutationEngine:
    """Load the engine of the storyline that owns *event_id*."""
    row = await db.events.get(event_id)
    if row is None or not row.get("storylineId"):
        known = [r["id"] for r in await db.events.get_all()]
        raise EntityNotFoundError(event_id, kind="event", available=known)
    return await _load_engine(db, config, row["storylineId"])


def _print_option_table(engine: MutationEngine, event_id: str) -> None:
    event = engine.graph.get_event(event_id)
    table = Table(title=f"{event.title or event.id} ({event.id})")
    table.add_column("#", style="dim")
    table.add_column("Option", style="cyan")
    table.add_column("Mode")
    table.add_column("Targets")

    for index, option in enumerate(event.options):
        if option.skill_check is not None:
            mode = f"skill {option.skill_check.skill} >= {option.skill_check.min_value}"
            targets = ", ".join(
                f"[green]✓[/green] {t.event_id}" if t.is_success else f"[red]✗[/red] {t.event_id}"
                for t in option.targets
            )
        else:
            mode = "probability"
            targets = ", ".join(
                f"{t.event_id} ({pct}%)"
                for t, pct in zip(option.targets, display_percentages(option.targets), strict=True)
            )
        table.add_row(str(index), escape(option.text), mode, targets or "[dim]unconnected[/dim]")

    console.print(table)


# =============================================================================
# Project commands
# =============================================================================


@app.command()
def version() -> None:
    """Show version information."""
    from eventflow import __version__

    console.print(f"EventFlow v{__version__}")


def _init_project(name: str, parent_dir: Path) -> Path:
    """Create a new project directory with config and an empty database.

    Raises:
        typer.Exit: If the directory already exists.
    """
    parent_dir.mkdir(parents=True, exist_ok=True)

    project_path = parent_dir / name
    if project_path.exists():
        console.print(f"[red]Error:[/red] Directory '{project_path}' already exists")
        raise typer.Exit(1)

    project_path.mkdir(parents=True)

    config = create_default_config(name)
    write_project_config(config, project_path)

    open_sqlite_database(config.get_database_path(project_path)).close()
    return project_path


@app.command()
def init(
    name: Annotated[str, typer.Argument(help="Project name")],
    path: Annotated[
        Path | None,
        typer.Option(
            "--path",
            help="Parent directory for the project (default: --projects-dir).",
        ),
    ] = None,
) -> None:
    """Initialize a new project.

    Creates a project directory with project.yaml and an empty database.
    """
    parent_dir = path if path is not None else _projects_dir
    project_path = _init_project(name, parent_dir)

    console.print(f"[green]✓[/green] Created project: [bold]{name}[/bold]")
    console.print(f"  Location: {project_path.absolute()}")
    console.print()
    console.print("Next steps:")
    console.print(f"  eventflow story create --project {name} --title 'My Story'")


@app.command()
def sample(project: ProjectOption = None) -> None:
    """Seed the sample story (skipped if the project has stories)."""
    from eventflow.samples import seed_sample_data

    async def _seed(db: StoryDatabase, _config: ProjectConfig, _path: Path) -> str | None:
        return await seed_sample_data(db)

    story_id = _run(project, _seed)
    if story_id is None:
        console.print("[yellow]Project already has stories; sample not added.[/yellow]")
    else:
        console.print(f"[green]✓[/green] Sample story created: [cyan]{story_id}[/cyan]")


# =============================================================================
# Stories and storylines
# =============================================================================


@story_app.command("create")
def story_create(
    title: Annotated[str | None, typer.Option("--title", "-t", help="Story title")] = None,
    description: Annotated[str | None, typer.Option("--description", help="Description")] = None,
    author: Annotated[str | None, typer.Option("--author", help="Author name")] = None,
    project: ProjectOption = None,
) -> None:
    """Create a story."""

    async def _create(db: StoryDatabase, _config: ProjectConfig, _path: Path) -> str:
        story = await StoryCatalog(db).create_story(title, description, author)
        return story.id

    story_id = _run(project, _create)
    console.print(f"[green]✓[/green] Created story [cyan]{story_id}[/cyan]")


@story_app.command("list")
def story_list(project: ProjectOption = None) -> None:
    """List stories."""

    async def _list(db: StoryDatabase, _config: ProjectConfig, _path: Path) -> None:
        stories = await StoryCatalog(db).list_stories()
        table = Table(title="Stories")
        table.add_column("ID", style="cyan")
        table.add_column("Title", style="bold")
        table.add_column("Author")
        table.add_column("Published")
        for story in stories:
            table.add_row(
                story.id,
                escape(story.title),
                escape(story.author),
                "[green]yes[/green]" if story.published else "[dim]no[/dim]",
            )
        console.print(table)

    _run(project, _list)


@story_app.command("delete")
def story_delete(
    story_id: Annotated[str, typer.Argument(help="Story ID")],
    project: ProjectOption = None,
) -> None:
    """Delete a story with all of its storylines and events."""

    async def _delete(db: StoryDatabase, _config: ProjectConfig, _path: Path) -> int:
        return await StoryCatalog(db).delete_story(story_id)

    removed = _run(project, _delete)
    console.print(f"[green]✓[/green] Deleted story {story_id} ({removed} event(s))")


@storyline_app.command("create")
def storyline_create(
    story_id: Annotated[str, typer.Argument(help="Owning story ID")],
    title: Annotated[str | None, typer.Option("--title", "-t", help="Storyline title")] = None,
    description: Annotated[str, typer.Option("--description", help="Description")] = "",
    project: ProjectOption = None,
) -> None:
    """Create an empty storyline in a story."""

    async def _create(db: StoryDatabase, _config: ProjectConfig, _path: Path) -> str:
        storyline = await StoryCatalog(db).create_storyline(story_id, title, description)
        return storyline.id

    storyline_id = _run(project, _create)
    console.print(f"[green]✓[/green] Created storyline [cyan]{storyline_id}[/cyan]")


@storyline_app.command("list")
def storyline_list(
    story_id: Annotated[str, typer.Argument(help="Story ID")],
    project: ProjectOption = None,
) -> None:
    """List the storylines of a story."""

    async def _list(db: StoryDatabase, _config: ProjectConfig, _path: Path) -> None:
        catalog = StoryCatalog(db)
        story = await catalog.get_story(story_id)
        table = Table(title=f"Storylines: {escape(story.title)}")
        table.add_column("ID", style="cyan")
        table.add_column("Title", style="bold")
        table.add_column("Starter", style="dim")
        for storyline in await catalog.list_storylines(story_id):
            table.add_row(storyline.id, escape(storyline.title), storyline.starter_event_id or "-")
        console.print(table)

    _run(project, _list)


@storyline_app.command("delete")
def storyline_delete(
    storyline_id: Annotated[str, typer.Argument(help="Storyline ID")],
    project: ProjectOption = None,
) -> None:
    """Delete a storyline and its events."""

    async def _delete(db: StoryDatabase, _config: ProjectConfig, _path: Path) -> int:
        return await StoryCatalog(db).delete_storyline(storyline_id)

    removed = _run(project, _delete)
    console.print(f"[green]✓[/green] Deleted storyline {storyline_id} ({removed} event(s))")


# =============================================================================
# Events and options
# =============================================================================


@event_app.command("add")
def event_add(
    storyline_id: Annotated[str, typer.Argument(help="Storyline ID")],
    title: Annotated[str | None, typer.Option("--title", "-t", help="Event title")] = None,
    content: Annotated[str | None, typer.Option("--content", help="Event text")] = None,
    x: Annotated[float, typer.Option("--x", help="Canvas x position")] = 0.0,
    y: Annotated[float, typer.Option("--y", help="Canvas y position")] = 0.0,
    project: ProjectOption = None,
) -> None:
    """Add an event. The first event of a storyline becomes its starter."""

    async def _add(db: StoryDatabase, config: ProjectConfig, _path: Path) -> tuple[str, bool]:
        engine = await _load_engine(db, config, storyline_id)
        event_id = await engine.create_event(title=title, content=content, position=(x, y))
        return event_id, engine.graph.starter_id == event_id

    event_id, is_starter = _run(project, _add)
    suffix = " (starter)" if is_starter else ""
    console.print(f"[green]✓[/green] Created event [cyan]{event_id}[/cyan]{suffix}")


@event_app.command("delete")
def event_delete(
    event_id: Annotated[str, typer.Argument(help="Event ID")],
    project: ProjectOption = None,
) -> None:
    """Delete an event and every connection pointing at it."""

    async def _delete(db: StoryDatabase, config: ProjectConfig, _path: Path) -> list[str]:
        engine = await _engine_for_event(db, config, event_id)
        return await engine.delete_event(event_id)

    cleaned = _run(project, _delete)
    console.print(f"[green]✓[/green] Deleted event {event_id}")
    if cleaned:
        console.print(f"  Removed connections from: {', '.join(cleaned)}")


@event_app.command("starter")
def event_starter(
    event_id: Annotated[str, typer.Argument(help="Event ID")],
    project: ProjectOption = None,
) -> None:
    """Make an event the starter of its storyline."""

    async def _set(db: StoryDatabase, config: ProjectConfig, _path: Path) -> None:
        engine = await _engine_for_event(db, config, event_id)
        await engine.set_starter(event_id)

    _run(project, _set)
    console.print(f"[green]✓[/green] {event_id} is now the starter event")


@event_app.command("option")
def event_option(
    event_id: Annotated[str, typer.Argument(help="Event ID")],
    text: Annotated[str | None, typer.Option("--text", help="Option label")] = None,
    remove: Annotated[
        int | None, typer.Option("--remove", help="Remove the option at this index instead")
    ] = None,
    project: ProjectOption = None,
) -> None:
    """Append an option to an event (or remove one with --remove)."""

    async def _edit(db: StoryDatabase, config: ProjectConfig, _path: Path) -> MutationEngine:
        engine = await _engine_for_event(db, config, event_id)
        if remove is not None:
            await engine.remove_option(event_id, remove)
        else:
            await engine.add_option(event_id, text)
        return engine

    engine = _run(project, _edit)
    _print_option_table(engine, event_id)


@event_app.command("weights")
def event_weights(
    event_id: Annotated[str, typer.Argument(help="Event ID")],
    option_index: Annotated[int, typer.Argument(help="Option index")],
    weights: Annotated[list[float], typer.Argument(help="One weight per target")],
    project: ProjectOption = None,
) -> None:
    """Set branch weights of a probability option (normalized to sum to 1)."""

    async def _set(db: StoryDatabase, config: ProjectConfig, _path: Path) -> MutationEngine:
        engine = await _engine_for_event(db, config, event_id)
        await engine.set_probabilities(event_id, option_index, weights)
        return engine

    engine = _run(project, _set)
    _print_option_table(engine, event_id)


@event_app.command("show")
def event_show(
    storyline_id: Annotated[str, typer.Argument(help="Storyline ID")],
    project: ProjectOption = None,
) -> None:
    """Show the events and options of a storyline."""

    async def _load(db: StoryDatabase, config: ProjectConfig, _path: Path) -> MutationEngine:
        return await _load_engine(db, config, storyline_id)

    engine = _run(project, _load)
    graph = engine.graph
    console.print(f"[bold]{escape(graph.storyline.title)}[/bold] ({graph.storyline_id})")
    if len(graph) == 0:
        console.print("  [dim]No events yet.[/dim]")
        return
    for event in graph:
        marker = " [green](starter)[/green]" if event.is_starter else ""
        console.print()
        console.print(f"[cyan]{event.id}[/cyan]{marker}")
        if event.options:
            _print_option_table(engine, event.id)
        else:
            console.print("  [dim]No options.[/dim]")


# =============================================================================
# Connections
# =============================================================================

KindOption = Annotated[
    ConnectionKind,
    typer.Option("--kind", "-k", help="plain, skill_success or skill_failure"),
]


@app.command()
def connect(
    source_id: Annotated[str, typer.Argument(help="Source event ID")],
    option_index: Annotated[int, typer.Argument(help="Option index on the source event")],
    target_id: Annotated[str, typer.Argument(help="Destination event ID")],
    kind: KindOption = ConnectionKind.PLAIN,
    project: ProjectOption = None,
) -> None:
    """Connect an option to a destination event."""

    async def _connect(db: StoryDatabase, config: ProjectConfig, _path: Path) -> MutationEngine:
        engine = await _engine_for_event(db, config, source_id)
        await engine.connect(source_id, option_index, target_id, kind)
        return engine

    engine = _run(project, _connect)
    _print_option_table(engine, source_id)


@app.command()
def disconnect(
    source_id: Annotated[str, typer.Argument(help="Source event ID")],
    option_index: Annotated[int, typer.Argument(help="Option index on the source event")],
    target_id: Annotated[str, typer.Argument(help="Destination event ID")],
    kind: KindOption = ConnectionKind.PLAIN,
    project: ProjectOption = None,
) -> None:
    """Remove a connection from an option."""

    async def _disconnect(db: StoryDatabase, config: ProjectConfig, _path: Path) -> MutationEngine:
        engine = await _engine_for_event(db, config, source_id)
        await engine.disconnect(source_id, option_index, target_id, kind)
        return engine

    engine = _run(project, _disconnect)
    _print_option_table(engine, source_id)


@app.command("skill-check")
def skill_check(
    event_id: Annotated[str, typer.Argument(help="Event ID")],
    option_index: Annotated[int, typer.Argument(help="Option index")],
    skill: Annotated[str | None, typer.Option("--skill", "-s", help="Skill to check")] = None,
    min_value: Annotated[
        str, typer.Option("--min", help="Minimum skill value (unparseable input counts as 0)")
    ] = "0",
    clear: Annotated[bool, typer.Option("--clear", help="Remove the skill check")] = False,
    project: ProjectOption = None,
) -> None:
    """Put an option into skill-check mode, or take it out with --clear."""
    if not clear and not skill:
        console.print("[red]Error:[/red] Pass --skill, or --clear to remove the check.")
        raise typer.Exit(1)

    async def _apply(db: StoryDatabase, config: ProjectConfig, _path: Path) -> MutationEngine:
        engine = await _engine_for_event(db, config, event_id)
        if clear:
            await engine.clear_skill_check(event_id, option_index)
        else:
            await engine.set_skill_check(
                event_id, option_index, skill or "", parse_skill_value(min_value)
            )
        return engine

    engine = _run(project, _apply)
    _print_option_table(engine, event_id)


# =============================================================================
# Import / export / inspection
# =============================================================================


@app.command()
def export(
    storyline_id: Annotated[str, typer.Argument(help="Storyline ID")],
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Output directory (default: export.directory)"),
    ] = None,
    project: ProjectOption = None,
) -> None:
    """Export a storyline as storyline_<id>.json."""
    from eventflow.export import JsonExporter

    async def _export(db: StoryDatabase, config: ProjectConfig, project_path: Path) -> Path:
        engine = await _load_engine(db, config, storyline_id)
        output_dir = output if output is not None else config.get_export_dir(project_path)
        return JsonExporter(indent=config.export.indent).export(engine.graph, output_dir)

    output_file = _run(project, _export)
    console.print(f"[green]✓[/green] Exported to [cyan]{output_file}[/cyan]")


@app.command("import")
def import_(
    storyline_id: Annotated[str, typer.Argument(help="Storyline to import into")],
    document: Annotated[Path, typer.Argument(help="JSON document to import")],
    project: ProjectOption = None,
) -> None:
    """Import events from a JSON document into a storyline.

    Event ids are always replaced with fresh ones.
    """
    from eventflow.export import import_parsed, read_document

    if not document.exists():
        console.print(f"[red]Error:[/red] File not found: {document}")
        raise typer.Exit(1)

    async def _import(db: StoryDatabase, config: ProjectConfig, _path: Path) -> ImportReport:
        parsed = read_document(document)
        engine = await _load_engine(db, config, storyline_id)
        return await import_parsed(engine, parsed)

    report = _run(project, _import)
    for dropped in report.dropped_targets:
        console.print(f"  [yellow]![/yellow] Dropped target outside document: {escape(dropped)}")
    if report.is_partial:
        console.print(f"[red]✗[/red] Partial import: {escape(report.summary)}")
        console.print("  Events imported before the failure were kept.")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] {report.summary}")


@app.command()
def validate(
    storyline_id: Annotated[str, typer.Argument(help="Storyline ID")],
    project: ProjectOption = None,
) -> None:
    """Check a storyline's graph for integrity problems."""

    async def _validate(db: StoryDatabase, config: ProjectConfig, _path: Path) -> ValidationReport:
        engine = await _load_engine(db, config, storyline_id)
        return validate_graph(engine.graph)

    report = _run(project, _validate)

    icons = {
        "pass": "[green]✓[/green]",
        "warn": "[yellow]![/yellow]",
        "fail": "[red]✗[/red]",
    }
    table = Table(title=f"Validation: {storyline_id}")
    table.add_column("Check", style="cyan")
    table.add_column("Result")
    table.add_column("Details", style="dim")
    for check in report.checks:
        table.add_row(check.name, icons[check.severity], escape(check.message))
    console.print(table)
    console.print(report.summary)

    if report.has_failures:
        raise typer.Exit(1)


@app.command()
def visualize(
    storyline_id: Annotated[str, typer.Argument(help="Storyline ID")],
    fmt: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format: dot or mermaid"),
    ] = "dot",
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write to file instead of stdout"),
    ] = None,
    no_labels: Annotated[
        bool,
        typer.Option("--no-labels", help="Omit option labels on edges"),
    ] = False,
    project: ProjectOption = None,
) -> None:
    """Render a storyline's flow as DOT or Mermaid."""
    from eventflow.visualization import build_flow, render_dot, render_mermaid

    renderers = {"dot": render_dot, "mermaid": render_mermaid}
    renderer = renderers.get(fmt)
    if renderer is None:
        console.print(f"[red]Error:[/red] Unknown format '{fmt}'. Supported: dot, mermaid")
        raise typer.Exit(1)

    async def _render(db: StoryDatabase, config: ProjectConfig, _path: Path) -> str:
        engine = await _load_engine(db, config, storyline_id)
        return renderer(build_flow(engine.graph), no_labels=no_labels)

    markup = _run(project, _render)
    if output is None:
        typer.echo(markup)
        return
    output.write_text(markup, encoding="utf-8")
    console.print(f"[green]✓[/green] Wrote {fmt} to [cyan]{output}[/cyan]")


if __name__ == "__main__":
    app()
