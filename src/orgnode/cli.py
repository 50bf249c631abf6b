"""orgnode CLI: scan an Org corpus and query the resulting node/link index.

Commands:
    orgnode init [NAME]          create orgnode.toml
    orgnode scan [FILES...]      full scan (then targeted rescans of FILES), print summary
    orgnode show ID              node details and backlinks
    orgnode find TITLE           resolve a title or alias to an id
    orgnode backlinks ID         table of links pointing at a node
    orgnode files                known files with scan timings
    orgnode problems             scan problems
    orgnode watch                poll the corpus and rescan changed files

Nothing is persisted: every query command runs a synchronous full scan first.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape as _markup_escape
from rich.table import Table

from orgnode.config import OrgNodeConfig, init_config, load_config
from orgnode.coordinator import make_coordinator
from orgnode.errors import ConfigError, IndexConsistencyError
from orgnode.store import IndexStore

console = Console()

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_cfg(inline: bool = False, jobs: int | None = None) -> OrgNodeConfig:
    try:
        cfg = load_config()
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    if inline or jobs is not None:
        sched = replace(
            cfg.scheduler,
            inline=inline or cfg.scheduler.inline,
            workers=jobs if jobs is not None else cfg.scheduler.workers,
        )
        cfg = replace(cfg, scheduler=sched)
    return cfg


def _scan(cfg: OrgNodeConfig, files: tuple[str, ...] = ()) -> IndexStore:
    """Run a synchronous full scan (plus an optional targeted one)."""
    store = IndexStore()
    try:
        with make_coordinator(store, cfg) as coordinator:
            coordinator.request_full_scan(sync=True)
            if files:
                coordinator.request_targeted_scan(files, sync=True)
    except IndexConsistencyError as exc:
        raise click.ClickException(f"index is inconsistent: {exc}") from exc
    return store


def _rel(path: str, cfg: OrgNodeConfig) -> str:
    try:
        return str(Path(path).relative_to(cfg.root))
    except ValueError:
        return path


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="orgnode")
@click.option("-v", "--verbose", is_flag=True, help="Log scan progress to stderr")
def cli(verbose: bool) -> None:
    """Index Org notes into nodes and links."""
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")


# ---------------------------------------------------------------------------
# orgnode init
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("name", required=False)
@click.option("--dir", "root", default=".", show_default=True, help="Project root")
def init(name: str | None, root: str) -> None:
    """Create orgnode.toml in the project root."""
    root_path = Path(root).resolve()
    try:
        path = init_config(root_path, name)
    except FileExistsError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created {path}")


# ---------------------------------------------------------------------------
# orgnode scan
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("files", nargs=-1, type=click.Path())
@click.option("--inline", is_flag=True, help="Scan in this process instead of spawning workers")
@click.option("-j", "--jobs", type=int, default=None, help="Number of worker processes")
def scan(files: tuple[str, ...], inline: bool, jobs: int | None) -> None:
    """Scan the corpus and print a summary."""
    cfg = _load_cfg(inline, jobs)
    started = time.monotonic()
    store = _scan(cfg, files)
    elapsed = time.monotonic() - started

    n_links = sum(len(v) for v in store.links_by_dest.values())
    click.echo(
        f"Scanned {len(store.files)} file(s) in {elapsed:.2f}s: "
        f"{len(store.nodes)} node(s), {n_links} link(s), {len(store.refs)} ref(s)"
    )
    if store.problems:
        click.echo(f"{len(store.problems)} problem(s), run `orgnode problems` for details")
    for title, old_id, new_id in store.title_collisions:
        click.echo(f"  title collision: {title!r} ({old_id} → {new_id})")
    for node_id, old_file, new_file in store.id_collisions:
        click.echo(f"  duplicate id {node_id}: {_rel(old_file, cfg)}, {_rel(new_file, cfg)}")


# ---------------------------------------------------------------------------
# orgnode show / find / backlinks
# ---------------------------------------------------------------------------


def _print_backlinks(store: IndexStore, node_id: str, cfg: OrgNodeConfig) -> None:
    table = Table(show_header=True, header_style="bold")
    table.add_column("From")
    table.add_column("Title")
    table.add_column("Type")
    table.add_column("File")
    table.add_column("Pos", justify="right")
    for lnk in store.backlinks(node_id):
        origin = store.get_node(lnk.origin)
        table.add_row(
            _markup_escape(lnk.origin),
            _markup_escape(origin.title if origin else ""),
            lnk.type or "cite",
            _markup_escape(_rel(origin.file, cfg)) if origin else "",
            str(lnk.pos),
        )
    console.print(table)


@cli.command()
@click.argument("node_id")
@click.option("--no-backlinks", is_flag=True, help="Skip the backlinks table")
def show(node_id: str, no_backlinks: bool) -> None:
    """Show a node and what links to it."""
    cfg = _load_cfg()
    store = _scan(cfg)
    node = store.get_node(node_id)
    if node is None:
        raise click.ClickException(f"no node with id {node_id!r}")

    click.echo(f"{node.title}  [{node.id}]")
    click.echo(f"  file:   {_rel(node.file, cfg)} (pos {node.pos}, level {node.level})")
    if node.olp:
        click.echo(f"  path:   {' / '.join(node.olp)}")
    if node.tags:
        click.echo(f"  tags:   {' '.join(node.tags)}")
    if node.todo or node.priority:
        click.echo(f"  state:  {node.todo or ''} {('[#' + node.priority + ']') if node.priority else ''}".rstrip())
    if node.scheduled:
        click.echo(f"  scheduled: {node.scheduled}")
    if node.deadline:
        click.echo(f"  deadline:  {node.deadline}")
    if node.aliases:
        click.echo(f"  aliases: {', '.join(node.aliases)}")
    for ref in node.refs:
        scheme = store.ref_types.get(ref)
        click.echo(f"  ref:    {scheme + ':' if scheme else ''}{ref}")

    if not no_backlinks:
        click.echo(f"\nBacklinks ({len(store.backlinks(node_id))}):")
        _print_backlinks(store, node_id, cfg)


@cli.command()
@click.argument("title")
def find(title: str) -> None:
    """Resolve a title or alias to a node id."""
    cfg = _load_cfg()
    store = _scan(cfg)
    node_id = store.id_by_title(title) or store.id_by_ref(title)
    if node_id is None:
        raise click.ClickException(f"no node titled {title!r}")
    node = store.nodes[node_id]
    click.echo(f"{node_id}\t{_rel(node.file, cfg)}\t{node.title}")


@cli.command()
@click.argument("node_id")
def backlinks(node_id: str) -> None:
    """List links pointing at a node (by id or by any of its refs)."""
    cfg = _load_cfg()
    store = _scan(cfg)
    if store.get_node(node_id) is None:
        raise click.ClickException(f"no node with id {node_id!r}")
    _print_backlinks(store, node_id, cfg)


# ---------------------------------------------------------------------------
# orgnode files / problems
# ---------------------------------------------------------------------------


@cli.command()
def files() -> None:
    """List scanned files with mtime and last scan duration."""
    cfg = _load_cfg()
    store = _scan(cfg)
    table = Table(title=f"orgnode: {cfg.name}", show_header=True, header_style="bold")
    table.add_column("File")
    table.add_column("Nodes", justify="right")
    table.add_column("Modified")
    table.add_column("Scan ms", justify="right")
    for path in store.known_files():
        info = store.files[path]
        table.add_row(
            _markup_escape(_rel(path, cfg)),
            str(len(store.by_file.get(path, []))),
            datetime.fromtimestamp(info.mtime).strftime("%Y-%m-%d %H:%M"),
            f"{info.elapsed * 1000:.1f}",
        )
    console.print(table)


@cli.command()
def problems() -> None:
    """List files the scanner could not fully read."""
    cfg = _load_cfg()
    store = _scan(cfg)
    if not store.problems:
        click.echo("No problems")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("File")
    table.add_column("Pos", justify="right")
    table.add_column("Problem")
    for p in store.problems:
        table.add_row(_markup_escape(_rel(p.file, cfg)), str(p.pos), _markup_escape(p.message))
    console.print(table)
    raise SystemExit(1)


# ---------------------------------------------------------------------------
# orgnode watch
# ---------------------------------------------------------------------------


@cli.command()
def watch() -> None:
    """Keep the index current by polling for changed files (Ctrl-C to stop)."""
    from orgnode.watcher import run_from_config

    cfg = _load_cfg()
    cfg.ensure_dirs()
    run_from_config(cfg.root)
