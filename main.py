from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from config.settings import settings
from trait_matcher.embedder import Embedder
from trait_matcher.errors import TraitMatcherError
from trait_matcher.matcher import TraitMatcher
from trait_matcher.precompute import precompute as run_precompute

app = typer.Typer(help="Plant Trait Matcher - semantic search over family trait phrases")
console = Console()


async def _with_matcher(work):
    """Run `work(matcher)` after initialization, rendering the init progress bar."""
    matcher = TraitMatcher()
    try:
        with Progress(TextColumn("{task.description}"), BarColumn(), TextColumn("{task.percentage:>3.0f}%"),
                      console=console, transient=True) as progress:
            task = progress.add_task("Starting", total=100)
            await matcher.ensure_ready(
                lambda pct, msg: progress.update(task, completed=pct, description=msg)
            )
        return await work(matcher)
    finally:
        await matcher.close()


def _run(coro):
    try:
        return asyncio.run(coro)
    except TraitMatcherError as exc:
        console.print(f"[red]{type(exc).__name__}: {exc}[/red]")
        raise typer.Exit(1)


@app.command()
def precompute(
    families: Path = typer.Option(None, help="Family dataset JSON (default: settings.families_path)"),
    out: Path = typer.Option(None, help="Output directory (default: settings.artifacts_dir)"),
    batch_size: int = typer.Option(None, help="Traits embedded per batch"),
):
    """Embed every family trait phrase and write the precomputed artifacts."""
    embedder = Embedder(
        settings.embedding_model_path,
        device=settings.embedding_device,
        batch_size=settings.embedding_batch_size,
    )
    try:
        summary = run_precompute(
            families or settings.families_path,
            out or settings.artifacts_dir,
            embedder,
            batch_size=batch_size or settings.embedding_batch_size,
            dims=settings.embedding_dims,
            traits_name=settings.traits_artifact,
            embeddings_name=settings.embeddings_artifact,
        )
    except TraitMatcherError as exc:
        console.print(f"[red]{type(exc).__name__}: {exc}[/red]")
        raise typer.Exit(1)

    table = Table(title="Precomputed Trait Embeddings")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Families", str(summary.families))
    table.add_row("Traits", str(summary.traits))
    table.add_row("Dimensions", str(summary.dims))
    table.add_row("Batches", str(summary.batches))
    table.add_row("Metadata", str(summary.traits_path))
    table.add_row("Embeddings", str(summary.embeddings_path))
    table.add_row("Duration", f"{summary.duration_s:.1f}s")
    console.print(table)


@app.command()
def search(
    query: str = typer.Argument(..., help="Plant feature description, e.g. 叶对生"),
    top: int = typer.Option(10, help="Number of results to show"),
):
    """Rank the precomputed trait corpus against a query."""

    async def work(matcher: TraitMatcher):
        traits = matcher.traits
        results = await matcher.search(query, [t.trait for t in traits])
        return traits, results

    traits, results = _run(_with_matcher(work))
    if not results:
        console.print("[yellow]No results.[/yellow]")
        return

    table = Table(title=f"Top {min(top, len(results))} traits for '{query}'")
    table.add_column("#", style="white")
    table.add_column("Trait", style="cyan")
    table.add_column("Family", style="blue")
    table.add_column("Score", style="green")
    for i, r in enumerate(results[:top], 1):
        table.add_row(str(i), r.text, traits[r.corpus_index].family_id, f"{r.score:.3f}")
    console.print(table)


@app.command()
def identify(
    query: str = typer.Argument(..., help="Free-text description, e.g. '草本，叶对生，茎四棱形'"),
    top: int = typer.Option(5, help="Number of families to show"),
    min_score: float = typer.Option(None, help="Per-trait score cutoff (default: settings.identifier_min_score)"),
):
    """Suggest plant families for a free-text description."""

    async def work(matcher: TraitMatcher):
        return await matcher.identify(query, min_score=min_score)

    matches = _run(_with_matcher(work))
    if not matches:
        console.print("[yellow]No family matched.[/yellow]")
        return

    table = Table(title=f"Family suggestions for '{query}'")
    table.add_column("Family", style="cyan")
    table.add_column("Score", style="green")
    table.add_column("Matched traits", style="white")
    for m in matches[:top]:
        table.add_row(m.family_id, f"{m.score:.3f}", "、".join(m.matched_traits))
    console.print(table)


@app.command()
def judge(
    answer: str = typer.Argument(..., help="The learner's answer"),
    expected: list[str] = typer.Option(..., "--expected", "-e", help="An accepted answer (repeatable)"),
):
    """Judge a quiz answer against the accepted answers."""

    async def work(matcher: TraitMatcher):
        return await matcher.judge(answer, expected)

    verdict = _run(_with_matcher(work))
    colour = "green" if verdict.correct else "red"
    console.print(
        f"[{colour}]{'Correct' if verdict.correct else 'Incorrect'}[/{colour}] "
        f"({verdict.reason.value}, score={verdict.score:.3f}"
        + (f", matched '{verdict.matched}'" if verdict.matched else "")
        + ")"
    )


if __name__ == "__main__":
    app()
