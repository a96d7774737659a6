"""CLI entry point for the autopilot daemon."""

import asyncio
import json
import sys
from collections.abc import Coroutine
from dataclasses import asdict
from pathlib import Path
from typing import Any

import click
import structlog

from repo_autopilot.config.settings import AutopilotSettings
from repo_autopilot.engine.daemon import Daemon
from repo_autopilot.engine.discovery import MarkerScanner
from repo_autopilot.exceptions import AutopilotError, ConfigurationError
from repo_autopilot.providers.github_rest import GitHubRestProvider
from repo_autopilot.providers.session_client import RemoteSessionClient
from repo_autopilot.utils.caching import PersistentAnalysisCache
from repo_autopilot.utils.circuit_breaker import ServiceHealthRegistry
from repo_autopilot.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)


@click.group()
@click.option(
    "--config",
    default="autopilot.yaml",
    help="Path to configuration file",
)
@click.option("--log-level", default="INFO", help="Logging level")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str) -> None:
    """repo-autopilot: drive a project board with remote coding sessions."""
    configure_logging(log_level)

    config_path = Path(config)
    if not config_path.exists():
        click.echo(f"Error: Configuration file not found: {config}", err=True)
        sys.exit(1)

    try:
        settings = AutopilotSettings.from_yaml(str(config_path))
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Unexpected error loading configuration: {e}", err=True)
        log.error("config_error_unexpected", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


@cli.command()
@click.option("--interval", type=int, default=None, help="Seconds between cycles (default: daemon.poll_interval)")
@click.option("--once", is_flag=True, help="Run a single cycle and exit")
@click.option("--max-ready", type=int, default=None, help="Override daemon.max_ready")
@click.option("--max-in-progress", type=int, default=None, help="Override daemon.max_in_progress")
@click.pass_context
def daemon(
    ctx: click.Context,
    interval: int | None,
    once: bool,
    max_ready: int | None,
    max_in_progress: int | None,
) -> None:
    """Run daemon cycles until interrupted."""
    settings: AutopilotSettings = ctx.obj["settings"]

    overrides: dict[str, Any] = {}
    if interval is not None:
        overrides["poll_interval"] = interval
    if once:
        overrides["run_once"] = True
    if max_ready is not None:
        overrides["max_ready"] = max_ready
    if max_in_progress is not None:
        overrides["max_in_progress"] = max_in_progress
    if overrides:
        settings = settings.model_copy(update={"daemon": settings.daemon.model_copy(update=overrides)})

    _run_command("daemon", _daemon_mode(settings))


@cli.command("cache-stats")
@click.pass_context
def cache_stats(ctx: click.Context) -> None:
    """Show analysis cache statistics."""
    _run_command("cache_stats", _show_cache_stats(ctx.obj["settings"]))


@cli.command("cache-clear")
@click.pass_context
def cache_clear(ctx: click.Context) -> None:
    """Remove every analysis cache entry."""
    _run_command("cache_clear", _clear_cache(ctx.obj["settings"]))


@cli.command("cache-invalidate")
@click.argument("repo_path")
@click.pass_context
def cache_invalidate(ctx: click.Context, repo_path: str) -> None:
    """Drop cached analysis for REPO_PATH."""
    _run_command("cache_invalidate", _invalidate_cache(ctx.obj["settings"], repo_path))


@cli.command()
@click.pass_context
def scan(ctx: click.Context) -> None:
    """List marker comments found in the discovery checkout."""
    _run_command("scan", _scan_markers(ctx.obj["settings"]))


def _run_command(name: str, coro: Coroutine[Any, Any, None]) -> None:
    """Run a command coroutine with the CLI's error handling."""
    try:
        asyncio.run(coro)
    except AutopilotError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{name}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error(f"{name}_unexpected", exc_info=True)
        sys.exit(1)


def _create_registry(settings: AutopilotSettings) -> ServiceHealthRegistry:
    breaker = settings.circuit_breaker
    return ServiceHealthRegistry(
        failure_threshold=breaker.failure_threshold,
        reset_timeout=breaker.reset_timeout_seconds,
        success_threshold=breaker.success_threshold,
    )


def _create_cache(settings: AutopilotSettings, registry: ServiceHealthRegistry) -> PersistentAnalysisCache:
    config = settings.cache
    return PersistentAnalysisCache(
        cache_dir=settings.cache_dir,
        max_entries=config.max_entries,
        ttl_seconds=config.ttl_minutes * 60,
        max_size_bytes=int(config.max_size_mb * 1024 * 1024),
        persist_to_disk=config.persist_to_disk,
        use_git_invalidation=config.use_git_invalidation,
        enable_incremental_analysis=config.enable_incremental_analysis,
        enabled=config.enabled,
        git_breaker=registry.breaker("git"),
    )


def _create_daemon(settings: AutopilotSettings) -> Daemon:
    """Wire providers, breakers, and the cache into a daemon.

    Args:
        settings: Autopilot settings

    Returns:
        Daemon that has not been started yet
    """
    github = settings.github
    tracker = GitHubRestProvider(
        token=github.token.get_secret_value() if github.token else "",
        owner=settings.repository.owner,
        repo=settings.repository.name,
        base_url=github.base_url,
        graphql_url=github.graphql_url,
    )

    session_config = settings.sessions
    sessions = RemoteSessionClient(
        api_key=session_config.api_key.get_secret_value() if session_config.api_key else None,
        environment_id=session_config.environment_id,
        base_url=session_config.base_url,
        model=session_config.model,
        timeout=session_config.request_timeout,
    )

    registry = _create_registry(settings)
    cache = _create_cache(settings, registry)
    return Daemon(settings, tracker, sessions, registry, cache)


async def _daemon_mode(settings: AutopilotSettings) -> None:
    """Run the daemon until it is stopped or a single cycle completes."""
    interval = settings.daemon.poll_interval
    log.info("daemon_mode_started", interval=interval, run_once=settings.daemon.run_once)
    if settings.daemon.run_once:
        click.echo("Running a single cycle")
    else:
        click.echo(f"Starting daemon mode (cycle every {interval}s)")

    daemon = _create_daemon(settings)
    try:
        await daemon.start()
        await daemon.run()
    finally:
        await daemon.close()

    click.echo(f"Daemon stopped after {daemon.cycle_count} cycle(s)")


async def _show_cache_stats(settings: AutopilotSettings) -> None:
    cache = _create_cache(settings, _create_registry(settings))
    await cache.warm_cache()
    stats = cache.get_stats()

    click.echo(f"Cache directory: {cache.cache_dir}")
    click.echo(json.dumps(asdict(stats), indent=2))


async def _clear_cache(settings: AutopilotSettings) -> None:
    cache = _create_cache(settings, _create_registry(settings))
    await cache.warm_cache()
    await cache.clear()
    click.echo(f"Cleared cache at {cache.cache_dir}")


async def _invalidate_cache(settings: AutopilotSettings, repo_path: str) -> None:
    cache = _create_cache(settings, _create_registry(settings))
    await cache.warm_cache()
    removed = await cache.invalidate(str(Path(repo_path).resolve()))
    click.echo(f"Removed {removed} cache entr{'y' if removed == 1 else 'ies'} for {repo_path}")


async def _scan_markers(settings: AutopilotSettings) -> None:
    """Print every marker in the discovery checkout."""
    registry = _create_registry(settings)
    cache = _create_cache(settings, registry)
    await cache.warm_cache()

    scanner = MarkerScanner(settings.discovery, cache, git_breaker=registry.breaker("git"))
    hits = await scanner.scan()

    if not hits:
        click.echo("No markers found.")
        return

    click.echo(f"Markers ({len(hits)}):\n")
    for hit in hits:
        click.echo(f"  {hit.file}:{hit.line} {hit.marker}: {hit.text}")


if __name__ == "__main__":
    cli()
