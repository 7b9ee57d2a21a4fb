"""
CodeMentor CLI - Main entry point for the application.

This module defines the command-line interface using Typer.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from .completion import (
    SKILL_LEVELS,
    CompletionBackend,
    build_completion_context,
    format_prompt,
)
from .config import RetrySettings, Settings
from .database import Database
from .errors import CodeMentorError
from .fetcher import ContentFetcher
from .github import GitHubClient, RepositoryHost, canonical_repo_url, parse_github_url
from .limiter import ConcurrencyLimiter
from .logging import configure_logging
from .models import IndexStatus, Repository, utcnow
from .orchestrator import IndexingOrchestrator
from .ranker import RetrievalRanker
from .retry import RetryPolicy
from .schema import (
    check_migration_needed,
    ensure_schema_version,
    get_database_statistics,
    repair_database,
    validate_schema,
)
from .search import SearchIndex
from .store import CacheStore, ProgressEvent
from .tree import FolderNode, TreeNode, build_tree, to_dict

# Create the main Typer application
app = typer.Typer(
    name="codementor",
    help="🧭 CodeMentor - Ask grounded questions about any GitHub repository\n\n"
    "Index a repository once, then retrieve the files that answer your question.",
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
)

# Initialize Rich console for beautiful output
console = Console()


@dataclass
class Services:
    """Service handles constructed once per CLI invocation."""

    settings: Settings
    database: Database
    store: CacheStore
    search: SearchIndex
    host: RepositoryHost
    fetcher: ContentFetcher
    orchestrator: IndexingOrchestrator
    ranker: RetrievalRanker


def _policy(retry: RetrySettings) -> RetryPolicy:
    return RetryPolicy(max_attempts=retry.max_attempts, base_delay=retry.base_delay)


def build_services(
    settings: Settings | None = None,
    host: RepositoryHost | None = None,
    backend: CompletionBackend | None = None,
) -> Services:
    """Wire the datastore, search index, host client and pipeline together."""
    settings = settings or Settings.from_env()

    database = Database(settings.db_path)
    database.create_tables()
    ensure_schema_version(database)
    store = CacheStore(database, _policy(settings.persistence_retry), settings)

    search = SearchIndex(settings.search_db_path, _policy(settings.persistence_retry))
    search.initialize()

    host = host or GitHubClient(settings)
    fetcher = ContentFetcher(
        host,
        ConcurrencyLimiter(settings.concurrency),
        _policy(settings.fetch_retry),
        settings.max_file_size,
    )
    orchestrator = IndexingOrchestrator(
        host, fetcher, search, store, settings, backend=backend
    )
    ranker = RetrievalRanker(search, fetcher, settings.max_relevant_files)

    return Services(
        settings=settings,
        database=database,
        store=store,
        search=search,
        host=host,
        fetcher=fetcher,
        orchestrator=orchestrator,
        ranker=ranker,
    )


def _canonical(repo_url: str) -> str:
    owner, name = parse_github_url(repo_url)
    return canonical_repo_url(owner, name)


def _require_repository(services: Services, repo_url: str) -> Repository:
    repository = services.store.get_by_url(_canonical(repo_url))
    if repository is None:
        console.print(f"[red]❌ Repository not indexed:[/red] {repo_url}")
        console.print(f"[dim]💡 Index it first with: codementor index {repo_url}[/dim]")
        raise typer.Exit(1)
    return repository


def _status_style(status: str) -> str:
    return {
        IndexStatus.COMPLETED.value: "[green]✅ completed[/green]",
        IndexStatus.INDEXING.value: "[yellow]⏳ indexing[/yellow]",
        IndexStatus.FAILED.value: "[red]❌ failed[/red]",
        IndexStatus.PENDING.value: "[dim]🕒 pending[/dim]",
    }.get(status, status)


def _relative_time(moment: datetime | None) -> str:
    if moment is None:
        return "[dim]Never[/dim]"
    diff = utcnow() - moment
    if diff.days > 0:
        return f"{diff.days}d ago"
    if diff.seconds > 3600:
        return f"{diff.seconds // 3600}h ago"
    if diff.seconds > 60:
        return f"{diff.seconds // 60}m ago"
    return "Just now"


def _add_branch(parent: Tree, nodes: list[TreeNode]) -> None:
    for node in nodes:
        if isinstance(node, FolderNode):
            branch = parent.add(f"[bold blue]📁 {node.name}[/bold blue]")
            _add_branch(branch, node.children)
        else:
            parent.add(f"📄 {node.name} [dim]({node.size} B)[/dim]")


def version_callback(value: bool) -> None:
    """Show version information."""
    if value:
        from . import __version__

        rprint(f"[bold blue]CodeMentor[/bold blue] version [green]{__version__}[/green]")
        raise typer.Exit()


@app.callback()
def main(
    _version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs."),
) -> None:
    """
    🧭 CodeMentor - Ask grounded questions about any GitHub repository

    Index a repository once, then retrieve the files that answer your question.
    """
    configure_logging(verbose=verbose)


@app.command()
def index(
    repo_url: str = typer.Argument(..., help="GitHub repository URL"),
    force: bool = typer.Option(
        False, "--force", help="Clear the cache and re-index from scratch"
    ),
) -> None:
    """
    🗂️  Index a repository so questions can be answered from its files.

    Examples:
        codementor index https://github.com/tiangolo/typer
        codementor index https://github.com/tiangolo/typer --force
    """
    try:
        services = build_services()
        console.print(f"[yellow]🗂️  Indexing repository:[/yellow] {repo_url}")

        with Progress(
            SpinnerColumn(),
            TextColumn("{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
            console=console,
            transient=True,
        ) as progress:
            task_id = progress.add_task("Queued", total=100)

            def on_progress(event: ProgressEvent) -> None:
                progress.update(task_id, completed=event.progress, description=event.step)

            services.orchestrator.add_listener(on_progress)

            async def run() -> Repository:
                if force:
                    await services.orchestrator.clear_cache(repo_url)
                return await services.orchestrator.index_repository(repo_url)

            repository = asyncio.run(run())

        if repository.status == IndexStatus.COMPLETED:
            console.print(
                f"[green]✅ {repository.owner}/{repository.name} ready:[/green] "
                f"{repository.indexed_files}/{repository.total_files} files indexed"
            )
        elif repository.status == IndexStatus.INDEXING:
            console.print(
                f"[yellow]⏳ Already being indexed ({repository.progress}%)[/yellow]"
            )
        else:
            console.print(f"[red]❌ Indexing failed:[/red] {repository.error_message}")
            raise typer.Exit(1)

    except CodeMentorError as e:
        console.print(f"[red]❌ Error:[/red] {str(e)}")
        raise typer.Exit(1) from e


@app.command()
def status(
    repo_url: str = typer.Argument(..., help="GitHub repository URL"),
    json_output: bool = typer.Option(False, "--json", help="Output in JSON format"),
) -> None:
    """
    📊 Show the latest indexing progress of a repository.
    """
    try:
        services = build_services()
        repository = _require_repository(services, repo_url)
        current = services.store.get_status(repository.id)

        if json_output:
            print(json.dumps(current, indent=2))
            return

        table = Table(show_header=False, box=None)
        table.add_column("Field", style="cyan")
        table.add_column("Value")
        table.add_row("Repository", repository.repo_url)
        table.add_row("Status", _status_style(current["status"]))
        table.add_row("Progress", f"{current['progress']}%")
        table.add_row("Step", current["currentStep"] or "[dim]-[/dim]")
        table.add_row("Files", f"{current['indexedFiles']}/{current['totalFiles']}")
        if current["errorMessage"]:
            table.add_row("Error", f"[red]{current['errorMessage']}[/red]")
        console.print(table)

    except CodeMentorError as e:
        console.print(f"[red]❌ Error:[/red] {str(e)}")
        raise typer.Exit(1) from e


@app.command()
def check(
    repo_url: str = typer.Argument(..., help="GitHub repository URL"),
    json_output: bool = typer.Option(False, "--json", help="Output in JSON format"),
) -> None:
    """
    ⚡ Check whether a repository is cached and still fresh.
    """
    try:
        services = build_services()
        result = services.store.check_cache(_canonical(repo_url))

        if json_output:
            print(
                json.dumps(
                    {
                        "cached": result.cached,
                        "indexing": result.indexing,
                        "completed": result.completed,
                        "expiresAt": (
                            result.expires_at.isoformat() if result.expires_at else None
                        ),
                    },
                    indent=2,
                )
            )
            return

        if result.cached:
            console.print(
                f"[green]⚡ Cached[/green] until {result.expires_at:%Y-%m-%d %H:%M} UTC"
            )
        elif result.indexing:
            console.print("[yellow]⏳ Indexing in progress[/yellow]")
        elif result.completed:
            console.print("[orange1]🔄 Cache expired, re-index to refresh[/orange1]")
        else:
            console.print("[dim]❌ Not cached[/dim]")

    except CodeMentorError as e:
        console.print(f"[red]❌ Error:[/red] {str(e)}")
        raise typer.Exit(1) from e


@app.command()
def ask(
    repo_url: str = typer.Argument(..., help="GitHub repository URL"),
    question: str = typer.Argument(..., help="Question about the repository"),
    file: Optional[str] = typer.Option(
        None, "--file", "-f", help="Path of the file currently open"
    ),
    skill_level: str = typer.Option(
        "beginner", "--skill", help=f"One of: {', '.join(SKILL_LEVELS)}"
    ),
    show_prompt: bool = typer.Option(
        False, "--show-prompt", help="Print the prompt sent to the completion backend"
    ),
    json_output: bool = typer.Option(False, "--json", help="Output in JSON format"),
) -> None:
    """
    🔎 Retrieve the files relevant to a question.

    Examples:
        codementor ask https://github.com/tiangolo/typer "where is the CLI runner?"
        codementor ask https://github.com/tiangolo/typer "explain this" -f typer/main.py
    """
    try:
        services = build_services()
        repository = _require_repository(services, repo_url)
        if repository.status != IndexStatus.COMPLETED:
            console.print(
                f"[red]❌ Repository is {repository.status.value}, not ready for questions[/red]"
            )
            raise typer.Exit(1)

        result = asyncio.run(services.ranker.retrieve(repository, question, file))
        context = build_completion_context(
            question,
            primary=result.primary,
            relevant=result.files,
            insights=services.store.get_insights(repository.id),
            skill_level=skill_level,
            max_chars=services.settings.max_context_chars,
        )

        if json_output:
            print(json.dumps(context.to_dict(), indent=2))
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("#", justify="right", style="dim")
        table.add_column("File", style="cyan")
        table.add_column("Score", justify="right", style="green")
        table.add_column("Chars", justify="right", style="yellow")

        for position, hit in enumerate(result.all_files, 1):
            label = f"{hit.path} [bold](primary)[/bold]" if hit is result.primary else hit.path
            table.add_row(str(position), label, f"{hit.score:.2f}", str(len(hit.content)))

        if not result.all_files:
            console.print("[yellow]🔎 No relevant files found[/yellow]")
        else:
            console.print(table)

        if result.primary is not None:
            console.print(result.primary.to_rich_panel())

        if show_prompt:
            console.print(Panel(Text(format_prompt(context)), title="Prompt", border_style="dim"))

    except ValueError as e:
        console.print(f"[red]❌ Error:[/red] {str(e)}")
        raise typer.Exit(1) from e
    except CodeMentorError as e:
        console.print(f"[red]❌ Error:[/red] {str(e)}")
        raise typer.Exit(1) from e


@app.command()
def tree(
    repo_url: str = typer.Argument(..., help="GitHub repository URL"),
    json_output: bool = typer.Option(False, "--json", help="Output in JSON format"),
) -> None:
    """
    🌳 Show the indexed file tree of a repository.
    """
    try:
        services = build_services()
        repository = _require_repository(services, repo_url)
        nodes = build_tree(services.store.list_files(repository.id))

        if json_output:
            print(json.dumps([to_dict(node) for node in nodes], indent=2))
            return

        if not nodes:
            console.print("[yellow]🌳 No files indexed yet[/yellow]")
            return

        root = Tree(f"[bold]{repository.owner}/{repository.name}[/bold]")
        _add_branch(root, nodes)
        console.print(root)

    except CodeMentorError as e:
        console.print(f"[red]❌ Error:[/red] {str(e)}")
        raise typer.Exit(1) from e


@app.command(name="list")
def list_repositories(
    json_output: bool = typer.Option(False, "--json", help="Output in JSON format")
) -> None:
    """
    📋 List cached repositories, most recently accessed first.
    """
    try:
        services = build_services()
        repositories = services.store.list_repositories()

        if not repositories:
            console.print("[yellow]📋 No repositories found in cache[/yellow]")
            console.print("[dim]💡 Index your first repository with: codementor index <repo-url>[/dim]")
            return

        if json_output:
            repo_data = []
            for repo in repositories:
                repo_data.append({
                    "repo_url": repo.repo_url,
                    "status": repo.status.value,
                    "progress": repo.progress,
                    "stars": repo.stars,
                    "indexed_files": repo.indexed_files,
                    "total_files": repo.total_files,
                    "indexed_at": repo.indexed_at.isoformat() if repo.indexed_at else None,
                    "last_accessed_at": (
                        repo.last_accessed_at.isoformat() if repo.last_accessed_at else None
                    ),
                    "access_count": repo.access_count,
                    "is_popular": repo.is_popular,
                })
            print(json.dumps(repo_data, indent=2))
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Repository", style="cyan", no_wrap=True)
        table.add_column("Status", justify="center")
        table.add_column("Files", justify="right")
        table.add_column("Stars", justify="right", style="yellow")
        table.add_column("Last Accessed", style="green")
        table.add_column("Hits", justify="right")
        table.add_column("Fresh", justify="center")

        for repo in repositories:
            fresh = "[green]Yes[/green]" if repo.is_cache_hit() else "[dim]No[/dim]"
            stars = f"⭐ {repo.stars}" if repo.is_popular else str(repo.stars)
            table.add_row(
                f"{repo.owner}/{repo.name}",
                _status_style(repo.status.value),
                f"{repo.indexed_files}/{repo.total_files}",
                stars,
                _relative_time(repo.last_accessed_at),
                str(repo.access_count),
                fresh,
            )

        console.print(table)
        completed = sum(1 for repo in repositories if repo.status == IndexStatus.COMPLETED)
        console.print()
        console.print(f"[dim]📊 {len(repositories)} repositories • {completed} completed[/dim]")

    except CodeMentorError as e:
        console.print(f"[red]❌ Error listing repositories:[/red] {str(e)}")
        raise typer.Exit(1) from e


@app.command()
def insights(
    repo_url: str = typer.Argument(..., help="GitHub repository URL"),
) -> None:
    """
    💡 Show the summary, quickstart and contribution guide of a repository.
    """
    try:
        services = build_services()
        repository = _require_repository(services, repo_url)
        sections = services.store.get_insights(repository.id)

        if not sections:
            console.print("[yellow]💡 No insights available yet[/yellow]")
            return

        titles = {
            "summary": "Summary",
            "quickstart": "Quickstart",
            "contribution_guide": "Contribution Guide",
        }
        for key, title in titles.items():
            if sections.get(key):
                console.print(Panel(Text(sections[key]), title=title, border_style="cyan"))

    except CodeMentorError as e:
        console.print(f"[red]❌ Error:[/red] {str(e)}")
        raise typer.Exit(1) from e


@app.command()
def issues(
    repo_url: str = typer.Argument(..., help="GitHub repository URL"),
) -> None:
    """
    🌱 List open "good first issue" issues of a repository.
    """
    try:
        owner, name = parse_github_url(repo_url)
        services = build_services()
        try:
            found = services.host.list_open_issues(owner, name, "good first issue")
        except CodeMentorError as e:
            console.print(f"[yellow]⚠️  Could not load issues:[/yellow] {str(e)}")
            found = []

        if not found:
            console.print("[yellow]🌱 No good first issues found[/yellow]")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("#", justify="right", style="cyan")
        table.add_column("Title")
        table.add_column("URL", style="blue")
        for issue in found:
            table.add_row(str(issue.number), issue.title, issue.url)
        console.print(table)

    except CodeMentorError as e:
        console.print(f"[red]❌ Error:[/red] {str(e)}")
        raise typer.Exit(1) from e


@app.command()
def clear(
    repo_url: str = typer.Argument(..., help="GitHub repository URL"),
    force: bool = typer.Option(False, "--force", help="Skip confirmation prompt"),
) -> None:
    """
    🗑️  Clear a repository from the cache and the search index.

    Examples:
        codementor clear https://github.com/tiangolo/typer
        codementor clear https://github.com/tiangolo/typer --force
    """
    try:
        services = build_services()
        repository = _require_repository(services, repo_url)

        if not force:
            confirm = typer.confirm(
                f"Are you sure you want to clear '{repository.owner}/{repository.name}'?"
            )
            if not confirm:
                console.print("[blue]ℹ️  Operation cancelled[/blue]")
                raise typer.Exit()

        removed = asyncio.run(services.orchestrator.clear_cache(repo_url))
        if removed:
            console.print(f"[green]✅ Cleared {repository.repo_url}[/green]")
        else:
            console.print(f"[yellow]Nothing to clear for {repository.repo_url}[/yellow]")

    except CodeMentorError as e:
        console.print(f"[red]❌ Error clearing repository:[/red] {str(e)}")
        raise typer.Exit(1) from e


@app.command(name="db-info")
def db_info(
    repair: bool = typer.Option(
        False, "--repair", help="Remove orphaned rows before reporting"
    ),
) -> None:
    """
    🗄️  Show datastore and search index health.
    """
    try:
        services = build_services()
        if repair:
            repaired = repair_database(services.database)
            console.print(
                f"[green]🔧 Removed {repaired['orphaned_files_removed']} orphaned files "
                f"and {repaired['orphaned_progress_removed']} orphaned progress rows[/green]"
            )

        info = services.database.info()
        stats = get_database_statistics(services.database)
        validation = validate_schema(services.database)
        migration_needed, current_version, target_version = check_migration_needed(
            services.database
        )
        search_stats = services.search.stats()

        table = Table(show_header=False, box=None)
        table.add_column("Field", style="cyan")
        table.add_column("Value")
        table.add_row("Database", str(info["database_path"]))
        table.add_row("Size", f"{stats['database_size_mb']} MB")
        table.add_row("Repositories", str(stats["repository_count"]))
        table.add_row("Completed", str(stats["completed_repository_count"]))
        table.add_row("Indexing", str(stats["indexing_repository_count"]))
        table.add_row("Failed", str(stats["failed_repository_count"]))
        table.add_row("Indexed files", str(stats["indexed_file_count"]))
        table.add_row("Schema version", f"{current_version} (latest {target_version})")
        table.add_row("Schema valid", "✅" if validation["tables_exist"] else "❌")
        if migration_needed:
            table.add_row("Migration", "[yellow]⚠️  needed[/yellow]")
        table.add_row("Data integrity", "✅" if validation["data_integrity"] else "❌")
        table.add_row("Search index", str(search_stats["search_path"]))
        table.add_row("Search documents", str(search_stats["file_documents"]))
        console.print(table)

    except Exception as e:
        console.print(f"[red]❌ Error reading database info:[/red] {str(e)}")
        raise typer.Exit(1) from e


if __name__ == "__main__":
    app()
