"""Watcher: rescans files that were saved, moved or deleted.

    python -m orgnode.watcher [CONFIG_ROOT]

On startup a synchronous full scan populates the index. Afterwards inotify
events on the corpus dirs (Linux, needs inotify_simple) are batched per read
and sent to the coordinator as one targeted scan. Without inotify_simple the
corpus is re-listed every `interval` seconds instead, and new, modified and
vanished files are sent the same way. The coordinator queues the
request if a cycle is still running, so saves during a scan are picked up by
the next cycle.
"""

from __future__ import annotations

import logging
import signal
import sys
import time
from pathlib import Path
from typing import TYPE_CHECKING

from orgnode.config import load_config
from orgnode.coordinator import make_coordinator
from orgnode.files import accepted_suffixes, collect_files, is_excluded
from orgnode.store import IndexStore

if TYPE_CHECKING:
    from orgnode.config import OrgNodeConfig
    from orgnode.coordinator import BaseCoordinator
    from orgnode.models import Problem

logger = logging.getLogger("orgnode.watcher")

_POLL_INTERVAL = 30.0      # seconds between safety-net re-listings under inotify
_INOTIFY_TIMEOUT_MS = 1000

# Mutable container so the signal handler and loop can share state without globals.
_stop_state: list[bool] = [False]


def _handle_sigterm(signum: int, frame: object) -> None:  # noqa: ARG001
    _stop_state[0] = True
    logger.info("SIGTERM received, stopping")


def changed_files(previous: dict[str, float], current: dict[str, float]) -> set[str]:
    """Files added, modified or removed between two mtime snapshots."""
    changed = {p for p, mtime in current.items() if previous.get(p) != mtime}
    changed |= previous.keys() - current.keys()
    return changed


def snapshot(cfg: OrgNodeConfig) -> dict[str, float]:
    mtimes: dict[str, float] = {}
    for path in collect_files(cfg):
        try:
            mtimes[path] = Path(path).stat().st_mtime
        except OSError:
            continue
    return mtimes


def _log_problems(problems: list[Problem]) -> None:
    for p in problems:
        logger.warning("problem: %s:%d: %s", p.file, p.pos, p.message)


def watch_poll(
    coordinator: BaseCoordinator,
    cfg: OrgNodeConfig,
    interval: float | None = None,
    *,
    max_ticks: int | None = None,
) -> None:
    """Poll the corpus every interval seconds. Blocks until stopped.

    max_ticks bounds the loop (used by tests).
    """
    interval = cfg.watch.interval if interval is None else interval
    seen = snapshot(cfg)
    logger.info("polling %d file(s) every %.1fs", len(seen), interval)

    ticks = 0
    while not _stop_state[0]:
        time.sleep(interval)
        current = snapshot(cfg)
        changed = changed_files(seen, current)
        seen = current
        if changed:
            logger.info("%d file(s) changed, requesting targeted scan", len(changed))
            coordinator.request_targeted_scan(changed)
        coordinator.poll()

        ticks += 1
        if max_ticks is not None and ticks >= max_ticks:
            break


def watch_inotify(coordinator: BaseCoordinator, cfg: OrgNodeConfig, *, max_reads: int | None = None) -> None:
    """Watch the corpus dirs using inotify_simple (Linux). Blocks until stopped.

    Saves, moves and deletes seen in one read become one targeted scan; a
    deleted file comes back from the scan as missing. Every _POLL_INTERVAL
    seconds the corpus is re-listed as well, to catch files written into a
    directory before its watch was added. max_reads bounds the loop (used by
    tests).
    """
    import inotify_simple  # type: ignore[import]

    inotify = inotify_simple.INotify()
    flags = inotify_simple.flags  # type: ignore[attr-defined]
    mask = flags.CLOSE_WRITE | flags.MOVED_TO | flags.MOVED_FROM | flags.DELETE | flags.CREATE
    suffixes = accepted_suffixes(cfg.scan)

    # wd -> (watched dir, configured root it lives under)
    watched: dict[int, tuple[Path, Path]] = {}

    def _watch(directory: Path, root: Path) -> None:
        if directory != root and is_excluded(str(directory.relative_to(root)) + "/", cfg.exclude):
            return
        try:
            wd = inotify.add_watch(str(directory), mask)
        except OSError:
            logger.warning("cannot watch %s", directory)
            return
        watched[wd] = (directory, root)

    for root in cfg.dirs:
        if not root.is_dir():
            continue
        _watch(root, root)
        for sub in root.rglob("*"):
            if sub.is_dir() and not sub.is_symlink():
                _watch(sub, root)

    logger.info("inotify watching %d dir(s)", len(watched))

    seen = snapshot(cfg)
    last_poll = time.monotonic()
    reads = 0
    while not _stop_state[0]:
        changed: set[str] = set()
        for event in inotify.read(timeout=_INOTIFY_TIMEOUT_MS):
            if not event.name or event.wd not in watched:
                continue
            directory, root = watched[event.wd]
            path = directory / event.name
            if event.mask & flags.ISDIR:
                if event.mask & (flags.CREATE | flags.MOVED_TO):
                    _watch(path, root)
                continue
            if not event.name.endswith(suffixes):
                continue
            if is_excluded(str(path.relative_to(root)), cfg.exclude):
                continue
            changed.add(str(path.absolute()))

        now = time.monotonic()
        if now - last_poll >= _POLL_INTERVAL:
            current = snapshot(cfg)
            changed |= changed_files(seen, current)
            seen = current
            last_poll = now

        if changed:
            logger.info("%d file(s) changed, requesting targeted scan", len(changed))
            coordinator.request_targeted_scan(changed)
        coordinator.poll()

        reads += 1
        if max_reads is not None and reads >= max_reads:
            break


def run(cfg: OrgNodeConfig) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")
    store = IndexStore()
    store.on_problems(_log_problems)
    coordinator = make_coordinator(store, cfg)
    with coordinator:
        logger.info("startup: full scan of %s", ", ".join(str(d) for d in cfg.dirs))
        coordinator.request_full_scan(sync=True)
        logger.info("startup: %d node(s) in %d file(s)", len(store.nodes), len(store.files))
        try:
            watch_inotify(coordinator, cfg)
        except ImportError:
            logger.warning("inotify_simple not available, falling back to polling")
            watch_poll(coordinator, cfg)


def run_from_config(config_root: Path | None = None) -> None:
    """Load orgnode.toml and start the watcher. SIGTERM stops it cleanly."""
    _stop_state[0] = False
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _handle_sigterm)
    try:
        run(load_config(config_root))
    except KeyboardInterrupt:
        logger.info("interrupted")


if __name__ == "__main__":
    # Accept optional config root as argument
    root = Path(sys.argv[1]) if len(sys.argv) > 1 else None
    run_from_config(root)
