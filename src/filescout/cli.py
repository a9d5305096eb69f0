"""Command line interface for filescout."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from filescout.config import AppConfig, ScanRuleSet
from filescout.embedding.encoder import EmbeddingClient
from filescout.errors import InvalidRule
from filescout.index.indexer import Indexer
from filescout.index.pipeline import ScanPipeline, ScanSummary
from filescout.index.search import HybridSearcher
from filescout.index.storage import SQLiteFileStore
from filescout.models import ScanPhase, ScanProgress, SearchFilters

console = Console()
app = typer.Typer(help="filescout - local hybrid search over your files")

DbOption = typer.Option(None, "--db", help="SQLite database path")
BackendOption = typer.Option(None, "--backend", help="Embedding backend: ollama or local")
ModelOption = typer.Option(None, "--model", help="Embedding model name")
UrlOption = typer.Option(None, "--url", help="Embedding service URL")
RulesOption = typer.Option(None, "--rules", help="JSON file with scan rules")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Verbose logging")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _ensure_db_parent(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _build_config(
    db: Optional[Path],
    backend: Optional[str] = None,
    model: Optional[str] = None,
    url: Optional[str] = None,
) -> AppConfig:
    config = AppConfig.from_env()
    if db is not None:
        config.db_path = db
    if backend is not None:
        config.embedding_backend = backend
    if model is not None:
        config.embedding_model = model
    if url is not None:
        config.embedding_url = url
    return config


def _load_rules(rules_file: Optional[Path], paths: List[Path]) -> ScanRuleSet:
    base = ScanRuleSet.load(rules_file) if rules_file is not None else ScanRuleSet.default()
    return base.with_included_paths(paths)


def _open_store(config: AppConfig, *, must_exist: bool = False) -> Optional[SQLiteFileStore]:
    resolved_db = config.resolve_db_path(Path.cwd())
    if not resolved_db.exists():
        if must_exist:
            return None
        _ensure_db_parent(resolved_db)
    return SQLiteFileStore(resolved_db, dimension=config.embedding_dimension)


def _print_summary(summary: ScanSummary) -> None:
    state = "[yellow]cancelled[/yellow]" if summary.cancelled else "[green]complete[/green]"
    console.print(
        f"Scan {state}: inserted: {summary.inserted}, updated: {summary.updated}, "
        f"unchanged: {summary.unchanged}, skipped: {summary.skipped}, "
        f"failed: {summary.failed}, demoted: {summary.demoted}, "
        f"retry pending: {summary.retry_pending}, stale removed: {summary.stale_removed}"
    )
    for kind, count in sorted(summary.failures.items()):
        console.print(f"  {kind}: {count}")


def _run_scan(phase: ScanPhase, config: AppConfig, rules: ScanRuleSet) -> None:
    store = _open_store(config)
    client = EmbeddingClient.from_config(config)
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            task = progress.add_task("Starting...", total=None)

            def sink(event: ScanProgress) -> None:
                label = event.current_file[-60:] if event.current_file else ""
                progress.update(
                    task, description=f"{event.stage.value} {event.current} {label}"
                )

            pipeline = ScanPipeline(client, store, config, rules, sink)
            summary = pipeline.run(phase)
    except InvalidRule as exc:
        console.print(f"[red]Invalid scan rules:[/red] {exc}")
        raise typer.Exit(code=2) from exc
    finally:
        client.close()
        store.close()
    _print_summary(summary)


@app.command()
def scan(
    inputs: List[Path] = typer.Argument(
        None, help="Folders to index in depth (added to the rule set).", resolve_path=True
    ),
    db: Optional[Path] = DbOption,
    rules: Optional[Path] = RulesOption,
    backend: Optional[str] = BackendOption,
    model: Optional[str] = ModelOption,
    url: Optional[str] = UrlOption,
    verbose: bool = VerboseOption,
) -> None:
    """Index included folders with full content (phase 1)."""
    _setup_logging(verbose)
    config = _build_config(db, backend, model, url)
    try:
        rule_set = _load_rules(rules, list(inputs or []))
    except InvalidRule as exc:
        console.print(f"[red]Invalid scan rules:[/red] {exc}")
        raise typer.Exit(code=2) from exc
    if not rule_set.included_paths:
        console.print("[yellow]No folders to scan. Pass paths or a rules file.[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"Indexing into [bold]{config.resolve_db_path(Path.cwd())}[/bold]...")
    _run_scan(ScanPhase.VIP, config, rule_set)


@app.command()
def sweep(
    db: Optional[Path] = DbOption,
    rules: Optional[Path] = RulesOption,
    backend: Optional[str] = BackendOption,
    model: Optional[str] = ModelOption,
    url: Optional[str] = UrlOption,
    verbose: bool = VerboseOption,
) -> None:
    """Record file names on every mounted drive (phase 2, metadata only)."""
    _setup_logging(verbose)
    config = _build_config(db, backend, model, url)
    try:
        rule_set = _load_rules(rules, [])
    except InvalidRule as exc:
        console.print(f"[red]Invalid scan rules:[/red] {exc}")
        raise typer.Exit(code=2) from exc
    _run_scan(ScanPhase.SWEEP, config, rule_set)


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    db: Optional[Path] = DbOption,
    backend: Optional[str] = BackendOption,
    model: Optional[str] = ModelOption,
    url: Optional[str] = UrlOption,
    limit: int = typer.Option(10, help="Number of results to display"),
    ext: Optional[str] = typer.Option(None, "--ext", help="Only files with this extension"),
    under: Optional[Path] = typer.Option(None, "--under", help="Only files under this folder"),
    min_score: Optional[float] = typer.Option(
        None, "--min-score", help="Minimum importance score (0-10)"
    ),
    verbose: bool = VerboseOption,
) -> None:
    """Run a hybrid (vector + full-text) search."""
    _setup_logging(verbose)
    config = _build_config(db, backend, model, url)
    store = _open_store(config, must_exist=True)
    if store is None:
        raise typer.BadParameter(f"Database not found: {config.resolve_db_path(Path.cwd())}")

    client = EmbeddingClient.from_config(config)
    searcher = HybridSearcher(client, store)
    try:
        results = searcher.search(
            query, limit, filters=SearchFilters.build(ext, under, min_score)
        )
    finally:
        searcher.close()
        client.close()
        store.close()

    if not results:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score")
    table.add_column("Match")
    table.add_column("File")
    table.add_column("Snippet")
    for result in results:
        snippet = result.snippet.replace("\n", " ")
        table.add_row(
            f"{result.score:.4f}", result.match_type, str(result.record.path), snippet[:180]
        )
    console.print(table)


@app.command()
def retry(
    db: Optional[Path] = DbOption,
    backend: Optional[str] = BackendOption,
    model: Optional[str] = ModelOption,
    url: Optional[str] = UrlOption,
    verbose: bool = VerboseOption,
) -> None:
    """Re-embed files whose embedding failed during a scan."""
    _setup_logging(verbose)
    config = _build_config(db, backend, model, url)
    store = _open_store(config, must_exist=True)
    if store is None:
        console.print("[yellow]Database not found, nothing to retry.[/yellow]")
        return
    client = EmbeddingClient.from_config(config)
    try:
        stats = Indexer(client, store, config).retry_pending()
    finally:
        client.close()
        store.close()
    console.print(
        f"Updated: {stats.updated}, still pending: {stats.retry_pending}, failed: {stats.failed}"
    )


@app.command()
def prune(db: Optional[Path] = DbOption) -> None:
    """Remove records whose files no longer exist on disk."""
    config = _build_config(db)
    store = _open_store(config, must_exist=True)
    if store is None:
        console.print("[yellow]Database not found, nothing to prune.[/yellow]")
        return
    try:
        removed = store.remove_missing_files()
    finally:
        store.close()
    console.print(f"Removed {removed} orphaned records.")


@app.command()
def stats(db: Optional[Path] = DbOption) -> None:
    """Show index statistics."""
    config = _build_config(db)
    store = _open_store(config, must_exist=True)
    if store is None:
        console.print("[yellow]Database not found.[/yellow]")
        return
    try:
        data = store.get_stats()
    finally:
        store.close()

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for key in ("files", "content_processed", "metadata_only", "needs_retry", "embeddings"):
        table.add_row(key, str(data[key]))
    for category, count in data["by_category"].items():
        table.add_row(f"category: {category}", str(count))
    console.print(table)


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
    db: Optional[Path] = DbOption,
) -> None:
    """Start the web interface."""
    import uvicorn

    from filescout.web.app import app as web_app

    if db is not None:
        os.environ["FILESCOUT_DB"] = str(db)
    resolved_db = _build_config(db).resolve_db_path(Path.cwd())
    if not resolved_db.exists():
        console.print("[yellow]Warning: database not found, run a scan first.[/yellow]")

    console.print(f"Starting web interface on http://{host}:{port} (database: {resolved_db})")
    uvicorn.run(web_app, host=host, port=port, reload=False, log_level="info")
