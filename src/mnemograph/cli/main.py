"""
MnemoGraph CLI - Main Entry Point

Command-line interface for memory graph maintenance.

Usage:
    mnemograph init                          # Create the database schema
    mnemograph stats --refresh               # Recompute degrees and show counts
    mnemograph decay                         # Run one decay sweep
    mnemograph prune                         # Run one pruning cycle
    mnemograph reindex                       # Rebuild the TF-IDF search index
    mnemograph link <node-id>                # Infer semantic edges for a node
    mnemograph search "quarterly report"     # Lexical search over active nodes
    mnemograph backup ./backups/graph.db     # Online copy of the database
"""

import json
import sys
from contextlib import contextmanager
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import click

from loguru import logger

from mnemograph.core.config import load_config
from mnemograph.core.container import Container, build_container
from mnemograph.core.exceptions import MnemoGraphError


# ============================================================================
# Container Lifecycle
# ============================================================================

@contextmanager
def container_context(config_path: Optional[str] = None, db_path: Optional[str] = None) -> Iterator[Container]:
    """
    Load config, wire the container and close the database on exit.

    Usage:
        with container_context(config_path) as container:
            container.decay.apply_decay()
    """
    config = load_config(Path(config_path)) if config_path else load_config()
    container = build_container(config, db_path=db_path)
    try:
        yield container
    finally:
        container.close()


def with_container(func: Callable) -> Callable:
    """
    Decorator that runs a command body with a live container and prints
    its return value as JSON. Domain errors are reported on stderr with
    exit code 1.
    """
    @wraps(func)
    def wrapper(ctx: click.Context, *args, **kwargs):
        try:
            with container_context(ctx.obj.get("config_path"), ctx.obj.get("db_path")) as container:
                result = func(ctx, container, *args, **kwargs)
        except MnemoGraphError as exc:
            click.echo(f"Error: {exc}", err=True)
            ctx.exit(1)
        _echo_json(result)

    return wrapper


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _configure_logging(verbose: bool, config_path: Optional[str]) -> None:
    level = "DEBUG" if verbose else None
    if level is None:
        try:
            config = load_config(Path(config_path)) if config_path else load_config()
            level = config.observability.log_level.upper()
        except (MnemoGraphError, OSError):
            level = "INFO"
    logger.remove()
    logger.add(sys.stderr, level=level)


# ============================================================================
# CLI Group and Main Entry
# ============================================================================

@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    help="Path to config.yaml file",
)
@click.option(
    "--db",
    "db_path",
    type=click.Path(),
    help="Database file (overrides database.path from config)",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose output",
)
@click.pass_context
def cli(ctx, config: Optional[str], db_path: Optional[str], verbose: bool):
    """
    MnemoGraph - self-maintaining memory graph

    Runs the decay, pruning and semantic linking jobs against a local
    graph database.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config_path"] = config
    ctx.obj["db_path"] = db_path
    _configure_logging(verbose, config)


# ============================================================================
# CLI Commands
# ============================================================================

@cli.command()
@click.pass_context
@with_container
def init(ctx, container: Container):
    """Create the database file and schema if they do not exist."""
    return {"initialized": container.database.db_path}


@cli.command()
@click.option(
    "--refresh",
    is_flag=True,
    help="Recompute node degrees and record a stats snapshot first",
)
@click.pass_context
@with_container
def stats(ctx, container: Container, refresh: bool):
    """
    Show graph counts and decay statistics.

    Example:
        mnemograph stats --refresh
    """
    graph = container.database.update_stats() if refresh else container.database.get_stats()
    return {
        "graph": graph.to_dict(),
        "decay": container.decay.get_decay_stats().to_dict(),
    }


@cli.command()
@click.pass_context
@with_container
def decay(ctx, container: Container):
    """Run one decay sweep over eligible nodes."""
    return container.decay.apply_decay().to_dict()


@cli.command()
@click.pass_context
@with_container
def prune(ctx, container: Container):
    """Run one pruning cycle, including orphaned edge cleanup."""
    return container.pruning.prune_graph().to_dict()


@cli.command()
@click.pass_context
@with_container
def reindex(ctx, container: Container):
    """Rebuild the TF-IDF search index from active nodes."""
    return {"documents_indexed": container.semantic.build_search_index()}


@cli.command()
@click.argument("node_id", required=True)
@click.option(
    "--pool-size",
    "-p",
    type=int,
    default=None,
    help="Number of candidate nodes to compare against",
)
@click.pass_context
@with_container
def link(ctx, container: Container, node_id: str, pool_size: Optional[int]):
    """
    Infer semantic edges between NODE_ID and its most similar nodes.

    Example:
        mnemograph link 3f2c9a4e-...
    """
    container.semantic.build_search_index()
    created = container.semantic.create_semantic_edges(node_id, candidate_pool_size=pool_size)
    return {"node_id": node_id, "edges_created": created}


@cli.command()
@click.argument("query", required=True)
@click.option(
    "--top-k",
    "-k",
    type=int,
    default=10,
    help="Number of results to return",
)
@click.pass_context
@with_container
def search(ctx, container: Container, query: str, top_k: int):
    """
    Search active nodes by content.

    Example:
        mnemograph search "design review"
    """
    container.semantic.build_search_index()
    return [
        {
            "id": node.id,
            "type": node.type.value,
            "score": round(score, 4),
            "content": node.content[:200],
        }
        for node, score in container.semantic.search_nodes(query, limit=top_k)
    ]


@cli.command()
@click.pass_context
@with_container
def vacuum(ctx, container: Container):
    """Reclaim free space in the database file."""
    container.database.vacuum()
    return {"vacuumed": container.database.db_path}


@cli.command()
@click.argument("dest", type=click.Path())
@click.pass_context
@with_container
def backup(ctx, container: Container, dest: str):
    """Write an online copy of the database to DEST."""
    return {"backup": str(container.database.backup(dest))}


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
