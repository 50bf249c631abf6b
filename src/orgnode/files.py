"""Corpus file discovery: which files a full scan covers."""

from __future__ import annotations

from fnmatch import fnmatch
from typing import TYPE_CHECKING

from orgnode.config import HANDLER_SUFFIXES

if TYPE_CHECKING:
    from pathlib import Path

    from orgnode.config import OrgNodeConfig, ScanConfig


def accepted_suffixes(cfg: ScanConfig) -> tuple[str, ...]:
    """Plain suffixes plus their handler-wrapped variants (e.g. .org.gz)."""
    wrapped = [s + HANDLER_SUFFIXES[h] for h in cfg.handlers for s in cfg.suffixes]
    return (*cfg.suffixes, *wrapped)


def is_excluded(rel: str, exclude: list[str]) -> bool:
    return any(fnmatch(rel, pat.lstrip("/")) or fnmatch("/" + rel, pat) for pat in exclude)


def _walk(directory: Path, suffixes: tuple[str, ...], exclude: list[str]) -> list[Path]:
    files: list[Path] = []
    for p in directory.rglob("*"):
        if not p.name.endswith(suffixes) or p.is_symlink() or not p.is_file():
            continue
        rel = str(p.relative_to(directory))
        if not is_excluded(rel, exclude):
            files.append(p)
    return files


def collect_files(cfg: OrgNodeConfig) -> list[str]:
    """Return absolute paths of every scannable file under the configured dirs."""
    suffixes = accepted_suffixes(cfg.scan)
    found: list[str] = []
    for directory in cfg.dirs:
        if not directory.is_dir():
            continue
        found.extend(str(p.absolute()) for p in _walk(directory, suffixes, cfg.exclude))
    # Deduplicate (overlapping dirs)
    return sorted(dict.fromkeys(found))
