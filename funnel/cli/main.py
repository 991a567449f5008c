"""
Typer CLI for the practice funnel.

Commands:
    funnel plan GUIDE.json -l LEARNER   - Preview focus/explore targets for the next batch
    funnel batch GUIDE.json -l LEARNER  - Source the next batch (--mark-seen to record it)
    funnel mastery -l LEARNER -g HASH   - Show concept mastery and priority
    funnel variant -l LEARNER -g HASH   - Show the tier-order variant
    funnel override HASH VARIANT        - Set (or --clear) an operator override
    funnel seen -l LEARNER [--sync]     - Seen fingerprints per module

Usage:
    funnel --help
    funnel plan guides/heme.json --learner u-123 --count 12 --seed 7
    funnel override 3f9c2a split
"""

from __future__ import annotations

import asyncio
import json
import random
import sys
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from config import get_settings
from funnel.concepts.universe import build_concept_universe
from funnel.core.models import VariantAssignment, load_guide
from funnel.dedup.seen_index import SeenIndex
from funnel.integrations.remote_stores import RestSeenStore
from funnel.integrations.rest_client import RestClient
from funnel.mastery.model import MasteryConfig, MasteryModel
from funnel.scheduler import BatchPlan, FunnelServices
from funnel.selection.target_selector import SelectionConfig, TargetSelector
from funnel.store.local_store import LocalStore
from funnel.variants.assignment import VariantAssigner, tier_order

app = typer.Typer(
    help="practice-funnel CLI: adaptive practice batch planning",
    no_args_is_help=True,
)

console = Console()


# ========================================
# Context Builder
# ========================================


class CLIContext:
    """Lazily built services shared by the commands."""

    def __init__(self):
        self.settings = get_settings()
        self._store: LocalStore | None = None

    @property
    def store(self) -> LocalStore:
        if self._store is None:
            self._store = LocalStore(self.settings.state_db_path)
        return self._store

    @property
    def model(self) -> MasteryModel:
        return MasteryModel(MasteryConfig.from_settings(self.settings))

    def assigner(self) -> VariantAssigner:
        return VariantAssigner.from_settings(self.settings, overrides=self.store)

    def rest_client(self) -> RestClient | None:
        if not self.settings.remote_store_url:
            return None
        return RestClient(
            self.settings.remote_store_url,
            api_key=self.settings.remote_store_api_key,
            timeout_ms=self.settings.remote_store_timeout_ms,
            retry_attempts=self.settings.remote_store_retry_attempts,
        )


def _parse_variant(value: str) -> VariantAssignment:
    try:
        return VariantAssignment(value.strip().lower())
    except ValueError:
        choices = ", ".join(v.value for v in VariantAssignment)
        raise typer.BadParameter(f"Unknown variant {value!r} (choose from {choices})")


# ========================================
# Commands
# ========================================


@app.command("plan")
def plan(
    guide_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Guide JSON file"),
    learner: str = typer.Option("anon", "--learner", "-l", help="Learner id"),
    count: int = typer.Option(None, "--count", "-n", help="Questions in the batch"),
    seed: int = typer.Option(None, "--seed", help="Seed for explore shuffling"),
    as_json: bool = typer.Option(False, "--json", help="Print the selection as JSON"),
) -> None:
    """
    Preview the targets the next batch would practice.

    Reads the learner's mastery from the local store; nothing is written.
    """
    ctx = CLIContext()
    try:
        guide = load_guide(guide_path)
    except (ValueError, OSError) as e:
        console.print(f"[red]Could not read guide:[/red] {e}")
        raise typer.Exit(code=1)

    state = ctx.store.load_funnel_state(learner, guide.guide_hash)
    universe = build_concept_universe(guide.concepts, state.concepts)
    selector = TargetSelector(
        ctx.model,
        SelectionConfig.from_settings(ctx.settings),
        random.Random(seed) if seed is not None else None,
    )
    try:
        selection = selector.select(universe, state, count or ctx.settings.batch_default_questions)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    variant = ctx.assigner().assign(learner, guide.guide_hash)

    if as_json:
        typer.echo(json.dumps({
            "guide_hash": guide.guide_hash,
            "variant": variant.value,
            "total": selection.total,
            "focus_count": selection.focus_count,
            "explore_count": selection.explore_count,
            "focus_targets": selection.focus_targets_distinct,
            "explore_targets": selection.explore_targets,
            "targets_per_question": selection.targets_per_question,
        }, indent=2))
        return

    if selection.is_empty:
        console.print("[yellow]No concepts available for this guide.[/yellow]")
        return

    focus = set(selection.focus_targets_distinct)
    table = Table(title=f"Next batch: {guide.title or guide.guide_hash} ({variant.value})")
    table.add_column("#", justify="right")
    table.add_column("Concept")
    table.add_column("Slot")
    table.add_column("Tiers")
    slot_of = {key: i for i, key in enumerate(dict.fromkeys(selection.targets_per_question))}
    for i, key in enumerate(selection.targets_per_question, 1):
        kind = "focus" if key in focus else "explore"
        tiers = " > ".join(t.value for t in tier_order(variant, slot_of[key]))
        table.add_row(str(i), universe.get(key, key), kind, tiers)
    console.print(table)
    console.print(
        f"[dim]{selection.focus_count} focus / {selection.explore_count} explore slots[/dim]"
    )


@app.command("batch")
def batch(
    guide_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Guide JSON file"),
    learner: str = typer.Option("anon", "--learner", "-l", help="Learner id"),
    count: int = typer.Option(None, "--count", "-n", help="Questions in the batch"),
    seed: int = typer.Option(None, "--seed", help="Seed for explore shuffling"),
    mark_seen: bool = typer.Option(False, "--mark-seen", help="Record the batch as delivered"),
    as_json: bool = typer.Option(False, "--json", help="Print questions and metadata as JSON"),
) -> None:
    """
    Source the next batch for a learner.

    Uses the remote stores and generation service when configured, local
    state otherwise. Nothing is marked seen unless --mark-seen is given.
    """
    ctx = CLIContext()
    try:
        guide = load_guide(guide_path)
    except (ValueError, OSError) as e:
        console.print(f"[red]Could not read guide:[/red] {e}")
        raise typer.Exit(code=1)

    state = ctx.store.load_funnel_state(learner, guide.guide_hash)

    async def _run() -> BatchPlan:
        services = FunnelServices.from_settings(
            ctx.settings, ctx.store, random.Random(seed) if seed is not None else None
        )
        try:
            seen = await services.executor.seen_index(learner).load(guide.seen_module)
            plan = await services.scheduler.next_batch(learner, guide, state, seen=seen, count=count)
            if mark_seen:
                await services.executor.execute(plan.commands, wait=True)
            return plan
        finally:
            await services.aclose()

    try:
        plan = asyncio.run(_run())
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    if as_json:
        typer.echo(json.dumps({
            "questions": [q.to_dict() for q in plan.questions],
            "meta": plan.meta.to_dict(),
            "warning": plan.warning,
        }, indent=2))
        return

    table = Table(title=f"Batch: {guide.title or guide.guide_hash}")
    table.add_column("#", justify="right")
    table.add_column("Target")
    table.add_column("Source")
    table.add_column("Question")
    for i, question in enumerate(plan.questions, 1):
        key = plan.meta.target_by_question_id.get(question.id, "")
        table.add_row(
            str(i),
            plan.meta.display_by_key.get(key, key),
            question.source_type.value,
            question.text[:80],
        )
    console.print(table)
    counts = plan.meta.source_counts
    console.print(
        f"[dim]{len(plan.questions)}/{plan.meta.total} questions "
        f"(verified={counts.verified}, bank={counts.bank}, generated={counts.generated})[/dim]"
    )
    if plan.warning:
        console.print(f"[yellow]{plan.warning}[/yellow]")
    if mark_seen and plan.questions:
        console.print(f"[green]✓[/green] Marked {len(plan.questions)} questions seen")


@app.command("mastery")
def mastery(
    learner: str = typer.Option(..., "--learner", "-l", help="Learner id"),
    guide_hash: str = typer.Option(..., "--guide", "-g", help="Guide hash"),
) -> None:
    """Show mastery records ranked by practice priority."""
    ctx = CLIContext()
    state = ctx.store.load_funnel_state(learner, guide_hash)
    if not state.concepts:
        console.print("[yellow]No mastery records yet.[/yellow]")
        return

    model = ctx.model
    table = Table(title=f"Mastery: {learner} / {guide_hash}")
    table.add_column("Concept")
    table.add_column("Attempts", justify="right")
    table.add_column("Correct", justify="right")
    table.add_column("Expected", justify="right")
    table.add_column("Priority", justify="right")

    for record in model.rank_concepts(state, min_attempts=0):
        expected = model.expected_mastery(record)
        color = "green" if expected >= 0.8 else "yellow" if expected >= 0.5 else "red"
        table.add_row(
            record.display_name,
            str(record.attempts),
            str(record.correct),
            f"[{color}]{expected:.0%}[/{color}]",
            f"{model.priority(record):.3f}",
        )
    console.print(table)


@app.command("variant")
def variant(
    learner: str = typer.Option("anon", "--learner", "-l", help="Learner id"),
    guide_hash: str = typer.Option(..., "--guide", "-g", help="Guide hash"),
) -> None:
    """Show which tier a learner gets first for a guide."""
    ctx = CLIContext()
    assigned = ctx.assigner().assign(learner, guide_hash)
    override = ctx.store.get_override(guide_hash)
    source = "override" if override is not None else "hash"
    console.print(f"{assigned.value} [dim]({source})[/dim]")


@app.command("override")
def override(
    guide_hash: str = typer.Argument(..., help="Guide hash"),
    value: str = typer.Argument(None, help="verified_first, bank_first or split"),
    clear: bool = typer.Option(False, "--clear", help="Remove the override"),
) -> None:
    """Set or clear the operator variant override for a guide."""
    ctx = CLIContext()
    if clear:
        ctx.store.set_override(guide_hash, None)
        console.print(f"[green]✓[/green] Override cleared for {guide_hash}")
        return
    if value is None:
        console.print("[red]Give a variant or --clear[/red]")
        raise typer.Exit(code=1)

    chosen = _parse_variant(value)
    ctx.store.set_override(guide_hash, chosen)
    logger.info(f"Variant override for {guide_hash} set to {chosen.value}")
    console.print(f"[green]✓[/green] {guide_hash} -> {chosen.value}")


@app.command("seen")
def seen(
    learner: str = typer.Option(..., "--learner", "-l", help="Learner id"),
    sync: bool = typer.Option(False, "--sync", help="Push pending fingerprints to the remote store"),
) -> None:
    """Seen fingerprints per module, with pending remote writes."""
    ctx = CLIContext()

    if sync:
        client = ctx.rest_client()
        if client is None:
            console.print("[yellow]No remote store configured (REMOTE_STORE_URL).[/yellow]")
        else:
            async def _sync() -> dict[str, bool]:
                try:
                    index = SeenIndex(learner, ctx.store, RestSeenStore(client))
                    return await index.reconcile_pending()
                finally:
                    await client.close()

            results = asyncio.run(_sync())
            for module_id, ok in results.items():
                mark = "[green]✓[/green]" if ok else "[red]✗[/red]"
                console.print(f"{mark} {module_id}")

    counts = ctx.store.seen_counts(learner)
    if not counts:
        console.print("[yellow]No seen questions recorded.[/yellow]")
        return

    table = Table(title=f"Seen fingerprints: {learner}")
    table.add_column("Module")
    table.add_column("Fingerprints", justify="right")
    table.add_column("Pending sync", justify="right")
    for module_id, (total, pending) in counts.items():
        table.add_row(module_id, str(total), str(pending))
    console.print(table)


# ========================================
# Entry Point
# ========================================


def main() -> None:
    """CLI entry point."""
    settings = get_settings()
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level, format="<level>{message}</level>")
    if settings.log_file:
        logger.add(settings.log_file, level="DEBUG", rotation="10 MB")

    app()


if __name__ == "__main__":
    main()
