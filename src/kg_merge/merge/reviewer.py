"""Interactive terminal review for merge conflicts.

Presents AWAITING_REVIEW conflicts one-by-one with Rich panels. The
reviewer accepts, rejects, merges or skips each one and may attach a
learning comment, which is stored verbatim with the resolution.
"""

from typing import Any

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from kg_merge.errors import ConflictAlreadyResolved, ConflictResolutionError
from kg_merge.merge.models import Conflict
from kg_merge.merge.orchestrator import MergeOrchestrator

console = Console()


def _read_key(prompt: str, valid: str = "armsq") -> str:
    """Read a single valid key from stdin.

    Args:
        prompt: Prompt text to display
        valid: String of valid key characters

    Returns:
        The key pressed (lowercase)
    """
    console.print(prompt, end="")
    while True:
        try:
            line = input().strip().lower()
        except (EOFError, KeyboardInterrupt):
            return "q"
        if line and line[0] in valid:
            return line[0]
        console.print(f"  [dim]Press one of: {', '.join(valid)}[/dim] ", end="")


def _read_line(prompt: str) -> str:
    console.print(prompt, end="")
    try:
        return input().strip()
    except (EOFError, KeyboardInterrupt):
        return ""


def _read_choice(prompt: str, count: int) -> int | None:
    """Read a 1-based index, or None on empty input."""
    while True:
        answer = _read_line(prompt)
        if not answer:
            return None
        if answer.isdigit() and 1 <= int(answer) <= count:
            return int(answer) - 1
        console.print(f"  [dim]Enter a number from 1 to {count}[/dim]")


def _format_value(value: Any) -> str:
    return "[dim]∅[/dim]" if value is None else str(value)


def _conflict_panel(conflict: Conflict, position: int, total: int) -> Panel:
    header = Text()
    header.append(f"{conflict.entity_type} ", style="bold")
    header.append(conflict.logical_id or conflict.entity_ref, style="green")
    header.append(f"  ({conflict.conflict_type})", style="dim")

    parts: list = [header]
    if conflict.message:
        parts.append(Text(conflict.message, style="yellow"))

    if conflict.candidate_ids:
        candidates = Table(show_header=True, header_style="bold", box=None, padding=(0, 2),
                           title="Matching stored entities", title_style="bold yellow")
        candidates.add_column("#", justify="right")
        candidates.add_column("Logical id", style="yellow")
        for i, candidate in enumerate(conflict.candidate_ids, 1):
            candidates.add_row(str(i), candidate)
        parts += [Text(""), candidates]

    if conflict.property_diffs:
        props = Table(show_header=True, header_style="bold", box=None, padding=(0, 2),
                      title="Properties", title_style="bold yellow")
        props.add_column("Property", style="cyan")
        props.add_column("Stored")
        props.add_column("Extracted", style="green")
        props.add_column("Change", style="dim")
        for diff in conflict.property_diffs:
            props.add_row(diff.name, _format_value(diff.existing_value), _format_value(diff.new_value), diff.change)
        parts += [Text(""), props]

    if conflict.relationship_diffs:
        rels = Table(show_header=True, header_style="bold", box=None, padding=(0, 2),
                     title="Relationships", title_style="bold yellow")
        rels.add_column("Relationship", style="cyan")
        rels.add_column("Change", style="dim")
        for diff in conflict.relationship_diffs:
            rels.add_row(f"—[{diff.relation_type}]→ {diff.target_id}", diff.change)
        parts += [Text(""), rels]

    conf_style = "green" if conflict.confidence >= 0.8 else "yellow" if conflict.confidence >= 0.5 else "red"
    subtitle = f"confidence: {conflict.confidence:.0%}"
    if conflict.suggested_resolution:
        subtitle += f" │ suggested: {conflict.suggested_resolution.strategy}"
    return Panel(
        Group(*parts),
        title=f"[bold]Conflict {position}/{total}[/bold]",
        subtitle=f"[dim]{subtitle}[/dim]",
        border_style=conf_style,
        padding=(1, 2),
    )


def review_conflicts(orchestrator: MergeOrchestrator, run_id: str) -> dict[str, int]:
    """Interactively resolve a run's AWAITING_REVIEW conflicts.

    [m]erge keeps stored values for changed properties, adds new ones and
    unions relationships. For a duplicate match it asks which stored
    entity is canonical.

    Args:
        orchestrator: Orchestrator owning the run
        run_id: Run to review

    Returns:
        Stats dict with counts of accepted, rejected, merged, skipped
    """
    stats = {"accepted": 0, "rejected": 0, "merged": 0, "skipped": 0}
    pending = orchestrator.list_conflicts(run_id, status="AWAITING_REVIEW")
    if not pending:
        console.print("[dim]No conflicts to review.[/dim]")
        return stats

    total = len(pending)
    console.print()
    console.print(f"[bold cyan]Conflict Review[/bold cyan]  ({total} conflicts)")
    console.print("[dim]For each conflict, decide what the graph should keep.[/dim]")
    console.print()

    for i, conflict in enumerate(pending):
        console.print(_conflict_panel(conflict, i + 1, total))

        duplicate = conflict.conflict_type == "duplicate_match"
        if duplicate:
            choice = _read_key(r"  \[r]eject  \[m]erge into  \[s]kip  \[q]uit → ", valid="rmsq")
        else:
            choice = _read_key(r"  \[a]ccept  \[r]eject  \[m]erge  \[s]kip  \[q]uit → ")

        if choice == "q":
            stats["skipped"] += total - i
            console.print(f"  [dim]Quit, skipping remaining {total - i} conflicts[/dim]")
            break
        if choice == "s":
            stats["skipped"] += 1
            console.print("  [dim]⏭ Skipped[/dim]\n")
            continue

        strategy = {"a": "ACCEPT", "r": "REJECT", "m": "MERGE"}[choice]
        changed_props: dict[str, Any] = {}
        canonical_id = None
        if strategy == "MERGE" and duplicate:
            index = _read_choice(f"  Canonical entity [1-{len(conflict.candidate_ids)}] → ", len(conflict.candidate_ids))
            if index is None:
                stats["skipped"] += 1
                console.print("  [dim]⏭ Skipped[/dim]\n")
                continue
            canonical_id = conflict.candidate_ids[index]
        elif strategy == "MERGE":
            changed_props = {
                d.name: d.existing_value for d in conflict.property_diffs if d.change != "addition"
            }

        comment = _read_line("  Learning comment (optional) → ")
        try:
            orchestrator.resolve_conflict(
                conflict.conflict_id, strategy, changed_props, comment, canonical_id=canonical_id,
            )
        except (ConflictResolutionError, ConflictAlreadyResolved) as e:
            stats["skipped"] += 1
            console.print(f"  [red]Could not resolve: {e}[/red]\n")
            continue

        key = {"ACCEPT": "accepted", "REJECT": "rejected", "MERGE": "merged"}[strategy]
        stats[key] += 1
        if strategy == "REJECT":
            console.print("  [red]✗ Rejected[/red]\n")
        else:
            console.print(f"  [green]✓ {key.capitalize()}[/green]\n")

    console.print(
        f"[bold]Conflict review complete:[/bold]  "
        f"[green]{stats['accepted']} accepted[/green]  "
        f"[green]{stats['merged']} merged[/green]  "
        f"[red]{stats['rejected']} rejected[/red]  "
        f"[dim]{stats['skipped']} skipped[/dim]"
    )
    return stats
