"""CLI interface for kg-merge."""

import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from kg_merge.config import KgMergeConfig
from kg_merge.errors import KgMergeError, QualityGateRejected

app = typer.Typer(
    name="kgm",
    help="Quality-gated merges of extracted entities into a versioned knowledge graph",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()


def _load_ontology(config: KgMergeConfig, bundled_name: str = "company"):
    """Load ontology from user path or bundled name.

    Priority: --ontology CLI flag > KGM_ONTOLOGY_PATH env > kgm.yaml > bundled default

    The ontology value from kgm.yaml can be a file path or a bundled name.
    If the path doesn't exist as a file, it's tried as a bundled ontology name.
    """
    from kg_merge.ontology.loader import OntologyLoader

    loader = OntologyLoader()
    if config.ontology_path:
        if config.ontology_path.exists():
            return loader.load_from_path(config.ontology_path)
        name = str(config.ontology_path)
        if name in loader.list_bundled():
            return loader.load_bundled(name)
        return loader.load_from_path(config.ontology_path)  # let it raise
    return loader.load_bundled(bundled_name)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging level."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s",
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def _config(output: str | None = None, ontology: str | None = None) -> KgMergeConfig:
    config = KgMergeConfig()
    if output:
        config.output_dir = Path(output).resolve()
        config.output_dir.mkdir(parents=True, exist_ok=True)
    if ontology:
        config.ontology_path = Path(ontology)
    return config


def _gate(config: KgMergeConfig):
    from kg_merge.quality.gate import QualityGate

    return QualityGate(config.to_quality_config(), records_dir=config.output_dir / "quality")


def _store(config: KgMergeConfig):
    from kg_merge.graph.sqlite_store import SQLiteGraphStore

    return SQLiteGraphStore(config.graph_database)


def _fail(e: Exception) -> None:
    console.print(f"[red]Error:[/red] {e}")
    raise typer.Exit(1) from None


# ============================================================================
# Quality Commands
# ============================================================================


@app.command()
def check(
    transform: str = typer.Argument(..., help="Transform JSON file produced by extraction"),
    ontology: str | None = typer.Option(None, help="Path to ontology YAML (or bundled name)"),
    output: str | None = typer.Option(None, "-o", help="Output directory"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose logging"),
) -> None:
    """Score a transform against the ontology's quality rules."""
    _setup_logging(verbose)
    config = _config(output, ontology)

    from kg_merge.extract.models import load_transform
    from kg_merge.pipeline import run_check

    try:
        ontology_config = _load_ontology(config)
        loaded = load_transform(Path(transform))
        store = _store(config) if config.graph_database.exists() else None
        try:
            record = run_check(loaded, ontology_config, _gate(config), store=store)
        finally:
            if store is not None:
                store.close()
    except (KgMergeError, FileNotFoundError) as e:
        _fail(e)

    result = record.result
    grade_style = {"A": "green", "B": "green", "C": "yellow", "D": "yellow"}.get(result.grade, "red")

    table = Table(title=f"Quality: {result.transform_id}", show_header=True, header_style="bold cyan")
    table.add_column("Metric", style="dim")
    table.add_column("Value")
    table.add_row("Score", f"[{grade_style}]{result.overall_score:.1f}[/{grade_style}]")
    table.add_row("Grade", f"[{grade_style}]{result.grade}[/{grade_style}]")
    table.add_row("Entities evaluated", str(result.entities_evaluated))
    table.add_row("Rules evaluated", str(result.rules_evaluated))
    for severity in ("error", "warning", "info"):
        table.add_row(f"{severity.capitalize()}s", str(result.counts.get(severity, 0)))
    table.add_row("Requires review", "yes" if result.requires_review else "no")
    table.add_row("Decision", record.decision.status if record.decision else "pending")
    console.print(table)

    console.print()
    if record.decision and record.decision.status == "APPROVED":
        console.print("[green]Transform approved.[/green]")
        console.print(f"Next: [cyan]kgm merge {transform}[/cyan]")
    else:
        console.print(f"Inspect with [cyan]kgm violations {result.transform_id}[/cyan], then "
                      f"[cyan]kgm approve {result.transform_id}[/cyan] or [cyan]kgm reject {result.transform_id}[/cyan]")


@app.command()
def violations(
    transform_id: str = typer.Argument(..., help="Transform id"),
    severity: str | None = typer.Option(None, "--severity", "-s", help="error, warning or info"),
    kind: str | None = typer.Option(None, "--kind", "-k", help="format, business, completeness or consistency"),
    entity: str | None = typer.Option(None, "--entity", "-e", help="Entity ref"),
    output: str | None = typer.Option(None, "-o", help="Output directory"),
) -> None:
    """List quality violations of a checked transform."""
    config = _config(output)
    record = _gate(config).get(transform_id)
    if record is None:
        console.print(f"[yellow]No quality result for {transform_id}.[/yellow]")
        console.print("Run [cyan]kgm check TRANSFORM[/cyan] first.")
        raise typer.Exit(1)

    found = record.result.filter(severity=severity, kind=kind, entity_id=entity)
    if not found:
        console.print("[green]No matching violations.[/green]")
        raise typer.Exit(0)

    table = Table(title=f"Violations ({len(found)})", show_header=True, header_style="bold cyan")
    table.add_column("Severity")
    table.add_column("Rule", style="dim")
    table.add_column("Entity", style="green")
    table.add_column("Property")
    table.add_column("Message")
    styles = {"error": "red", "warning": "yellow", "info": "dim"}
    for v in found:
        style = styles[v.severity]
        table.add_row(f"[{style}]{v.severity}[/{style}]", v.rule_id, v.entity_id or "(dataset)",
                      v.property or "", v.message)
    console.print(table)


@app.command()
def approve(
    transform_id: str = typer.Argument(..., help="Transform id"),
    comment: str = typer.Option("", "--comment", "-m", help="Reason for approval"),
    output: str | None = typer.Option(None, "-o", help="Output directory"),
) -> None:
    """Approve a transform's quality result so it may be merged."""
    config = _config(output)
    try:
        _gate(config).approve(transform_id, comment)
    except KgMergeError as e:
        _fail(e)
    console.print(f"[green]Approved {transform_id}[/green]")


@app.command()
def reject(
    transform_id: str = typer.Argument(..., help="Transform id"),
    comment: str = typer.Option("", "--comment", "-m", help="Reason for rejection"),
    output: str | None = typer.Option(None, "-o", help="Output directory"),
) -> None:
    """Reject a transform's quality result; it can no longer be merged."""
    config = _config(output)
    try:
        _gate(config).reject(transform_id, comment)
    except KgMergeError as e:
        _fail(e)
    console.print(f"[red]Rejected {transform_id}[/red]")


# ============================================================================
# Merge Commands
# ============================================================================


@app.command()
def merge(
    transform: str = typer.Argument(..., help="Transform JSON file produced by extraction"),
    ontology: str | None = typer.Option(None, help="Path to ontology YAML (or bundled name)"),
    decisions: str | None = typer.Option(None, "--decisions", help="Conflict YAML with filled-in decisions"),
    no_review: bool = typer.Option(False, "--no-review", help="Write open conflicts to YAML instead of reviewing"),
    session: str = typer.Option("", "--session", help="Session id recorded on the run"),
    output: str | None = typer.Option(None, "-o", help="Output directory"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose logging"),
) -> None:
    """Merge an approved transform into the graph."""
    _setup_logging(verbose)
    config = _config(output, ontology)

    from kg_merge.extract.models import load_transform
    from kg_merge.merge.io import read_conflicts
    from kg_merge.merge.reviewer import review_conflicts
    from kg_merge.pipeline import export_open_conflicts, run_merge

    try:
        ontology_config = _load_ontology(config)
        loaded = load_transform(Path(transform))
    except (KgMergeError, FileNotFoundError) as e:
        _fail(e)

    decision_file = read_conflicts(Path(decisions)) if decisions else None
    store = _store(config)
    try:
        orchestrator, run = run_merge(
            loaded, ontology_config, store, _gate(config),
            settings=config.to_merge_settings(), session_id=session, decisions=decision_file,
        )

        if run.status == "AWAITING_RESOLUTION" and not no_review:
            review_conflicts(orchestrator, run.run_id)
            run = orchestrator.get_run(run.run_id)

        if run.status == "AWAITING_RESOLUTION":
            conflicts_path = config.output_dir / "conflicts" / f"{loaded.transform_id}.yaml"
            export_open_conflicts(orchestrator, run.run_id, conflicts_path)
            run = orchestrator.cancel(run.run_id)
            console.print(f"[yellow]Open conflicts written to {conflicts_path}[/yellow]")
            console.print(f"Fill in the decision blocks, then: [cyan]kgm merge {transform} --decisions {conflicts_path}[/cyan]")
    except QualityGateRejected as e:
        console.print(f"[red]Error:[/red] {e}")
        console.print(f"Run [cyan]kgm check {transform}[/cyan] and approve the transform first.")
        raise typer.Exit(1) from None
    except KgMergeError as e:
        _fail(e)
    finally:
        store.close()

    stats = run.statistics
    status_style = {"COMPLETED": "green", "CANCELLED": "yellow"}.get(run.status, "red")
    console.print()
    console.print(f"[{status_style}]Merge run {run.status.lower()}[/{status_style}]")
    console.print(f"  New entities: {stats.new_entities}")
    console.print(f"  Merged entities: {stats.merged_entities}")
    console.print(f"  Unchanged entities: {stats.unchanged_entities}")
    console.print(f"  Rejected entities: {stats.rejected_entities}")
    console.print(f"  Relationships committed: {stats.relationships_committed}")
    console.print(f"  Conflicts: {run.resolved_count}/{run.conflicts_count} resolved")
    for error in run.errors:
        console.print(f"  [red]{error.unit}: {error.error}[/red]")
    if run.failure:
        console.print(f"  [red]Failure: {run.failure}[/red]")
    if run.status == "COMPLETED":
        console.print()
        console.print("Next: [cyan]kgm export[/cyan] to write the graph as JSON")
    if run.status == "FAILED":
        raise typer.Exit(1)


@app.command()
def history(
    logical_id: str = typer.Argument(..., help="Entity logical id (e.g. company:0000320193)"),
    output: str | None = typer.Option(None, "-o", help="Output directory"),
) -> None:
    """Show every stored version of an entity."""
    config = _config(output)
    store = _store(config)
    try:
        versions = store.history(logical_id)
    finally:
        store.close()
    if not versions:
        console.print(f"[yellow]No entity {logical_id}[/yellow]")
        raise typer.Exit(1)

    table = Table(title=f"History: {logical_id}", show_header=True, header_style="bold cyan")
    table.add_column("Version", justify="right")
    table.add_column("Current")
    table.add_column("Run", style="dim")
    table.add_column("Created", style="dim")
    table.add_column("Properties")
    for row in versions:
        props = ", ".join(f"{k}={v}" for k, v in row.properties.items())
        current = "[green]yes[/green]" if row.is_current else ""
        if row.retracted:
            current += " [red](retracted)[/red]"
        table.add_row(str(row.version), current, (row.run_id or "")[:8],
                      row.created_at.strftime("%Y-%m-%d %H:%M"), props)
    console.print(table)


@app.command()
def feedback(
    run_id: str | None = typer.Option(None, "--run", help="Only feedback from this run"),
    output: str | None = typer.Option(None, "-o", help="Output directory"),
) -> None:
    """List stored resolution feedback and learning comments."""
    config = _config(output)
    store = _store(config)
    try:
        records = store.feedback(run_id=run_id)
    finally:
        store.close()
    if not records:
        console.print("[dim]No feedback recorded.[/dim]")
        raise typer.Exit(0)

    table = Table(title=f"Feedback ({len(records)})", show_header=True, header_style="bold cyan")
    table.add_column("Entity", style="green")
    table.add_column("Conflict")
    table.add_column("Strategy")
    table.add_column("Auto", justify="center")
    table.add_column("Comment")
    for r in records:
        table.add_row(r.logical_id, r.conflict_type, r.strategy, "✓" if r.automatic else "", r.learning_comment)
    console.print(table)


@app.command()
def export(
    path: str | None = typer.Option(None, "--to", help="Output JSON path (default: <output>/graph_data.json)"),
    output: str | None = typer.Option(None, "-o", help="Output directory"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose logging"),
) -> None:
    """Export the current graph as JSON."""
    _setup_logging(verbose)
    config = _config(output)
    if not config.graph_database.exists():
        console.print("[yellow]No graph yet.[/yellow] Run [cyan]kgm merge[/cyan] first.")
        raise typer.Exit(1)

    from kg_merge.pipeline import run_export

    out = Path(path) if path else config.output_dir / "graph_data.json"
    store = _store(config)
    try:
        kg = run_export(store, out)
    finally:
        store.close()
    console.print(f"[green]Exported {kg.entity_count} entities, {kg.relation_count} relations → {out}[/green]")


# ============================================================================
# Utility Commands
# ============================================================================


@app.command()
def ontologies() -> None:
    """List available bundled ontologies."""
    from kg_merge.ontology.loader import OntologyLoader

    loader = OntologyLoader()
    available = loader.list_bundled()
    if not available:
        console.print("[yellow]No bundled ontologies found.[/yellow]")
        raise typer.Exit(0)

    table = Table(title="Available Ontologies", show_header=True, header_style="bold cyan")
    table.add_column("Name", style="green")
    table.add_column("Description")
    table.add_column("Entities", justify="right")
    table.add_column("Rules", justify="right")
    for name in available:
        onto = loader.load_bundled(name)
        table.add_row(name, onto.description.strip().split("\n")[0], str(len(onto.entity_types)),
                      str(len(onto.quality_rules)))
    console.print(table)


@app.command()
def init(
    ontology: str | None = typer.Option(None, help="Path to ontology YAML to set in project config"),
) -> None:
    """Initialize a new kg-merge project in the current directory."""
    env_example_path = Path(".env.example")
    project_path = Path("kgm.yaml")

    if not env_example_path.exists() or typer.confirm("Overwrite existing .env.example?", default=False):
        env_template = """# kg-merge Configuration
# Copy this file to .env to override project settings

# === Quality gate ===
KGM_MANUAL_REVIEW_THRESHOLD=70
KGM_AUTO_APPROVE_THRESHOLD=90

# === Merge runs ===
KGM_AUTO_RESOLVE_THRESHOLD=0.9
KGM_CONCURRENCY=8
"""
        env_example_path.write_text(env_template)
        console.print("[green]Created .env.example[/green]")

    if not project_path.exists() or typer.confirm("Overwrite existing kgm.yaml?", default=False):
        project_config = "# kg-merge project config\n# All commands pick up these settings automatically.\n\n"
        if ontology:
            project_config += f"ontology: {ontology}\n"
        else:
            project_config += "# ontology: path/to/ontology.yaml\n"
        project_config += "# output: output\n"
        project_config += "# quality:\n#   error_penalty: 20\n#   manual_review_threshold: 70\n"
        project_config += "# merge:\n#   auto_resolve_threshold: 0.9\n#   max_commit_retries: 3\n"
        project_path.write_text(project_config)
        console.print("[green]Created kgm.yaml[/green]")

    console.print("\nNext steps:")
    console.print("  1. kgm check transform.json")
    console.print("  2. kgm merge transform.json")
    console.print()
    console.print("Available ontologies: [cyan]kgm ontologies[/cyan]")
    raise typer.Exit(0)


@app.command()
def info() -> None:
    """Display project configuration and graph stats."""
    config = KgMergeConfig()
    try:
        ontology_config = _load_ontology(config)
    except KgMergeError as e:
        _fail(e)

    table = Table(title="kg-merge Project Info", show_header=True, header_style="bold cyan")
    table.add_column("Metric", style="dim")
    table.add_column("Value")

    table.add_row("Ontology", f"{ontology_config.name} v{ontology_config.version}")
    table.add_row("Entity Types", ", ".join(ontology_config.get_entity_type_names()))
    table.add_row("Relation Types", str(len(ontology_config.get_relation_type_names())))
    table.add_row("Quality Rules", str(len(ontology_config.quality_rules)))
    table.add_row("Auto-resolve Threshold", f"{config.auto_resolve_threshold:.2f}")
    table.add_row("Output Directory", str(config.output_dir))

    quality_dir = config.output_dir / "quality"
    checked = len(list(quality_dir.glob("*.yaml"))) if quality_dir.exists() else 0
    table.add_row("Transforms Checked", str(checked))

    if config.graph_database.exists():
        store = _store(config)
        try:
            page = store.snapshot(page=1, page_size=1)
            feedback_count = len(store.feedback())
        finally:
            store.close()
        table.add_row("Graph", f"{page.total_entities} entities, {page.total_relationships} relationships")
        table.add_row("Feedback Records", str(feedback_count))
    else:
        table.add_row("Graph", "Not built")

    conflicts_dir = config.output_dir / "conflicts"
    if conflicts_dir.exists():
        from kg_merge.merge.io import read_conflicts

        pending = 0
        for path in conflicts_dir.glob("*.yaml"):
            pending += len(read_conflicts(path).undecided)
        table.add_row("Undecided Conflicts", str(pending))

    console.print(table)
