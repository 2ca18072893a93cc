"""CLI entry point for repobridge."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Annotated, TypeVar

import typer
import yaml
from rich import print as rprint
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.syntax import Syntax
from rich.table import Table
from rich.tree import Tree
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from repobridge.auth.models import Credential
from repobridge.config import RepoBridgeConfig, load_config
from repobridge.config.loader import DEFAULT_CONFIG_TEMPLATE
from repobridge.errors import (
    AccessError,
    AuthRequiredError,
    InvalidCredentialError,
    RateLimitedError,
    TransientError,
    display_name,
    rate_limit_message,
    sign_in_message,
)
from repobridge.vcs import FallbackOrchestrator, ProviderRegistry, create_registry
from repobridge.vcs.gitlab import GitLabProvider
from repobridge.vcs.models import TreeNode

logger = logging.getLogger(__name__)

T = TypeVar("T")

app = typer.Typer(
    name="repobridge",
    help="Browse GitHub and GitLab repositories with managed tokens and fallback.",
)

token_app = typer.Typer(help="Manage provider tokens.")
app.add_typer(token_app, name="token")

config_app = typer.Typer(help="Manage repobridge configuration.")
app.add_typer(config_app, name="config")

# Global state
_config: RepoBridgeConfig | None = None
_subject: str | None = None

_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def setup_logging(level: str, fmt: str) -> None:
    """Configure the root logger from config."""
    if fmt == "json":
        handler: logging.Handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(JsonLineFormatter())
    else:
        handler = RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(_LEVELS.get(level, logging.INFO))


def _get_config() -> RepoBridgeConfig:
    if _config is None:
        return load_config()
    return _config


def _get_subject(cfg: RepoBridgeConfig) -> str:
    return _subject or cfg.subject


@app.callback()
def main(
    config: Annotated[
        str | None, typer.Option("--config", "-c", help="Path to repobridge.yaml")
    ] = None,
    subject: Annotated[
        str | None, typer.Option("--subject", help="Identity whose tokens are used")
    ] = None,
) -> None:
    """Global options."""
    global _config, _subject
    try:
        _config = load_config(config)
    except (FileNotFoundError, ValueError) as e:
        rprint(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)
    _subject = subject
    setup_logging(_config.log_level, _config.log_format)


def _registry() -> ProviderRegistry:
    cfg = _get_config()
    return create_registry(cfg, subject=_get_subject(cfg))


def _check_provider(registry: ProviderRegistry, provider: str) -> None:
    if provider not in registry:
        enabled = ", ".join(registry.names) or "none"
        rprint(f"[red]Error:[/red] Unknown or disabled provider '{provider}' (enabled: {enabled})")
        raise typer.Exit(1)


async def _with_retries(cfg: RepoBridgeConfig, call: Callable[[], Awaitable[T]]) -> T:
    """Retry transient failures with exponential backoff."""
    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(TransientError),
        stop=stop_after_attempt(cfg.max_retries + 1),
        wait=wait_exponential(multiplier=cfg.retry_delay, max=cfg.retry_delay * 30),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    ):
        with attempt:
            return await call()
    raise RuntimeError("retry loop ended without a result")


def _describe_error(error: AccessError) -> str:
    if isinstance(error, AuthRequiredError):
        return sign_in_message(error.provider, absent=error.absent)
    if isinstance(error, InvalidCredentialError):
        name = display_name(error.provider)
        return f"{name} rejected the token. Run `repobridge token set {error.provider}` with a new one."
    if isinstance(error, RateLimitedError):
        return rate_limit_message(error.provider, error.reset_at)
    return str(error)


def _run(call: Callable[[], Awaitable[T]]) -> T:
    """Run an async call with retries and turn access errors into exit 1."""
    cfg = _get_config()
    try:
        return asyncio.run(_with_retries(cfg, call))
    except AccessError as e:
        rprint(f"[red]Error:[/red] {escape(_describe_error(e))}")
        raise typer.Exit(1)


def _add_nodes(branch: Tree, nodes: list[TreeNode]) -> None:
    for node in nodes:
        if node.type == "dir":
            child = branch.add(f"[bold blue]{node.name}/[/bold blue]")
            _add_nodes(child, node.children)
        else:
            size = f" [dim]({node.size} bytes)[/dim]" if node.size is not None else ""
            branch.add(f"[green]{node.name}[/green]{size}")


# ---------------------------------------------------------------------------
# Repository commands
# ---------------------------------------------------------------------------


@app.command()
def tree(
    provider: str = typer.Argument(..., help="github or gitlab"),
    owner: str = typer.Argument(..., help="Repository owner or namespace"),
    repo: str = typer.Argument(..., help="Repository name"),
    no_fallback: bool = typer.Option(False, "--no-fallback", help="Do not try the other provider"),
) -> None:
    """Show the full file tree of a repository."""
    registry = _registry()
    _check_provider(registry, provider)
    if no_fallback:
        nodes = _run(lambda: registry.get(provider).get_tree(owner, repo))
    else:
        nodes = _run(lambda: FallbackOrchestrator(registry).get_tree(provider, owner, repo))
    root = Tree(f"[bold]{owner}/{repo}[/bold]")
    _add_nodes(root, nodes)
    rprint(root)


@app.command("ls")
def list_dir(
    provider: str = typer.Argument(..., help="github or gitlab"),
    owner: str = typer.Argument(..., help="Repository owner or namespace"),
    repo: str = typer.Argument(..., help="Repository name"),
    path: str = typer.Argument("", help="Directory path (root when omitted)"),
) -> None:
    """List one directory."""
    registry = _registry()
    _check_provider(registry, provider)
    entries = _run(
        lambda: FallbackOrchestrator(registry).list_directory(provider, owner, repo, path)
    )
    table = Table(title=f"{owner}/{repo}/{path.strip('/')}".rstrip("/"))
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Size", justify="right")
    for entry in entries:
        table.add_row(
            entry.name,
            entry.type,
            str(entry.size) if entry.size is not None else "-",
        )
    rprint(table)


@app.command()
def cat(
    provider: str = typer.Argument(..., help="github or gitlab"),
    owner: str = typer.Argument(..., help="Repository owner or namespace"),
    repo: str = typer.Argument(..., help="Repository name"),
    path: str = typer.Argument(..., help="File path"),
    ref: str | None = typer.Option(None, "--ref", help="Branch, tag or commit"),
) -> None:
    """Print a file's raw content."""
    registry = _registry()
    _check_provider(registry, provider)
    content = _run(
        lambda: FallbackOrchestrator(registry).get_file_content(provider, owner, repo, path, ref)
    )
    typer.echo(content, nl=False)


@app.command()
def branch(
    provider: str = typer.Argument(..., help="github or gitlab"),
    owner: str = typer.Argument(..., help="Repository owner or namespace"),
    repo: str = typer.Argument(..., help="Repository name"),
) -> None:
    """Print the default branch."""
    registry = _registry()
    _check_provider(registry, provider)
    name = _run(lambda: FallbackOrchestrator(registry).get_default_branch(provider, owner, repo))
    typer.echo(name)


@app.command()
def resolve(
    owner: str = typer.Argument(..., help="Owner as the user typed it"),
    repo: str = typer.Argument(..., help="Repository name"),
) -> None:
    """Find the canonical GitLab path for owner/repo."""
    registry = _registry()
    _check_provider(registry, "gitlab")
    client = registry.get("gitlab")
    if not isinstance(client, GitLabProvider):
        rprint("[red]Error:[/red] The configured gitlab client does not support path resolution")
        raise typer.Exit(1)
    resolved = _run(lambda: client.resolve(owner, repo))
    if resolved.resolved:
        rprint(f"[green]{resolved.canonical}[/green]")
    else:
        rprint(f"[yellow]Unresolved:[/yellow] {resolved.canonical} (used as given)")


# ---------------------------------------------------------------------------
# Token commands
# ---------------------------------------------------------------------------


@token_app.command("set")
def token_set(
    provider: str = typer.Argument(..., help="github or gitlab"),
    token: str = typer.Argument(..., help="Access token"),
    refresh_token: str | None = typer.Option(None, "--refresh-token", help="OAuth refresh token"),
    expires_in: int | None = typer.Option(None, "--expires-in", help="Seconds until expiry"),
) -> None:
    """Store a token obtained from a provider sign-in."""
    registry = _registry()
    _check_provider(registry, provider)
    cfg = _get_config()
    expires_at = (
        datetime.now(UTC) + timedelta(seconds=expires_in) if expires_in is not None else None
    )
    credential = Credential(
        provider=provider,
        subject=_get_subject(cfg),
        token=token,
        refresh_token=refresh_token,
        expires_at=expires_at,
    )
    asyncio.run(registry.validator.sign_in(credential))
    rprint(f"[green]Stored[/green] {display_name(provider)} token for {credential.subject}")


@token_app.command("status")
def token_status(
    provider: str = typer.Argument(..., help="github or gitlab"),
) -> None:
    """Validate the stored token and report its state."""
    registry = _registry()
    _check_provider(registry, provider)
    cfg = _get_config()
    subject = _get_subject(cfg)
    result = asyncio.run(registry.validator.get_usable(provider, subject))
    state = registry.validator.state(provider, subject)
    if result.kind == "usable":
        who = f" as {result.username}" if result.username else ""
        rprint(f"[green]{state.value}[/green] {display_name(provider)} token{who}")
        return
    rprint(f"[yellow]{state.value}[/yellow] {result.reason}")
    raise typer.Exit(1)


@token_app.command("forget")
def token_forget(
    provider: str = typer.Argument(..., help="github or gitlab"),
) -> None:
    """Mark the stored token invalid everywhere."""
    registry = _registry()
    _check_provider(registry, provider)
    subject = _get_subject(_get_config())
    asyncio.run(registry.validator.chain.invalidate(provider, subject))
    registry.validator.invalidate(provider, subject)
    rprint(f"[green]Forgot[/green] {display_name(provider)} token for {subject}")


# ---------------------------------------------------------------------------
# Config commands
# ---------------------------------------------------------------------------


@config_app.command("show")
def config_show() -> None:
    """Show current resolved configuration."""
    cfg = _get_config()
    rprint(Syntax(yaml.dump(cfg.model_dump(), default_flow_style=False), "yaml"))


@config_app.command("init")
def config_init(
    force: bool = typer.Option(False, "--force", help="Overwrite existing config"),
) -> None:
    """Create default repobridge.yaml in current directory."""
    target = Path("repobridge.yaml")
    if target.exists() and not force:
        rprint("[yellow]repobridge.yaml already exists.[/yellow] Use --force to overwrite.")
        raise typer.Exit(1)
    target.write_text(DEFAULT_CONFIG_TEMPLATE)
    rprint(f"[green]Created[/green] {target}")


if __name__ == "__main__":
    app()
