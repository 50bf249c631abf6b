"""OrgNodeConfig: project-local config for the note indexer.

Default layout (all relative to the project root):

    orgnode.toml          # project config
    .orgnode/
        logs/
            worker.log    # stderr of scan workers

orgnode.toml example:

    [orgnode]
    name = "notes"
    dirs = ["."]
    exclude = ["**/.git/**", "**/archive/**"]

    [scan]
    workers = 0              # 0 = one per CPU
    timeout = 30.0
    retry_interval = 1.0
    inline = false           # scan in-process instead of spawning workers
    suffixes = [".org"]
    encoding = "utf-8"
    handlers = []            # e.g. ["gzip"] to also read notes.org.gz
    todo_keywords = ["TODO", "DONE"]
    link_types = ["id", "http", "https", "file", "attachment", "doi", "mailto"]
    backlinks_drawer = "BACKLINKS"

    [watch]
    interval = 2.0
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from orgnode.errors import ConfigError

_CONFIG_FILENAME = "orgnode.toml"
_DEFAULT_INDEX_DIR = ".orgnode"

_DEFAULT_EXCLUDE = ["**/.git/**", "**/.orgnode/**", "**/node_modules/**"]
_DEFAULT_LINK_TYPES = ("id", "http", "https", "file", "attachment", "doi", "mailto")

# Handler name -> file name suffix it unwraps.
HANDLER_SUFFIXES = {"gzip": ".gz"}


@dataclass(frozen=True)
class ScanConfig:
    """Immutable settings shipped to every scan worker."""

    suffixes: tuple[str, ...] = (".org",)
    encoding: str = "utf-8"
    handlers: tuple[str, ...] = ()
    todo_keywords: tuple[str, ...] = ("TODO", "DONE")
    link_types: tuple[str, ...] = _DEFAULT_LINK_TYPES
    backlinks_drawer: str = "BACKLINKS"

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ScanConfig:
        handlers = tuple(d.get("handlers", ()))
        unknown = [h for h in handlers if h not in HANDLER_SUFFIXES]
        if unknown:
            msg = f"unknown file handler(s): {', '.join(unknown)}"
            raise ConfigError(msg)
        return cls(
            suffixes=tuple(d.get("suffixes", (".org",))),
            encoding=str(d.get("encoding", "utf-8")),
            handlers=handlers,
            todo_keywords=tuple(d.get("todo_keywords", ("TODO", "DONE"))),
            link_types=tuple(d.get("link_types", _DEFAULT_LINK_TYPES)),
            backlinks_drawer=str(d.get("backlinks_drawer", "BACKLINKS")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {k: list(v) if isinstance(v, tuple) else v for k, v in asdict(self).items()}


@dataclass
class SchedulerConfig:
    workers: int = 0                  # 0 = os.cpu_count()
    timeout: float = 30.0             # seconds before a stuck cycle is killed
    retry_interval: float = 1.0       # min seconds between launch attempts while pending
    inline: bool = False

    @property
    def worker_count(self) -> int:
        return self.workers if self.workers > 0 else (os.cpu_count() or 1)


@dataclass
class WatchConfig:
    interval: float = 2.0


@dataclass
class OrgNodeConfig:
    """Resolved configuration for one notes corpus."""

    root: Path                        # directory that contains orgnode.toml
    name: str = ""
    dirs: list[Path] = field(default_factory=list)
    exclude: list[str] = field(default_factory=lambda: list(_DEFAULT_EXCLUDE))
    index_dir: Path = field(default_factory=Path)
    scan: ScanConfig = field(default_factory=ScanConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)

    @property
    def log_dir(self) -> Path:
        return self.index_dir / "logs"

    def ensure_dirs(self) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)


def load_config(root: Path | str | None = None) -> OrgNodeConfig:
    """Load orgnode.toml from root (or search upward from cwd if root is None)."""
    root_path = _find_root(Path(root) if root else Path.cwd())
    config_path = root_path / _CONFIG_FILENAME

    raw: dict[str, Any] = {}
    if config_path.exists():
        try:
            with config_path.open("rb") as f:
                raw = tomllib.load(f)
        except tomllib.TOMLDecodeError as exc:
            msg = f"invalid {config_path}: {exc}"
            raise ConfigError(msg) from exc

    main = raw.get("orgnode", {})
    scan_section = raw.get("scan", {})
    watch_section = raw.get("watch", {})

    try:
        scheduler = SchedulerConfig(
            workers=int(scan_section.get("workers", 0)),
            timeout=float(scan_section.get("timeout", 30.0)),
            retry_interval=float(scan_section.get("retry_interval", 1.0)),
            inline=bool(scan_section.get("inline", False)),
        )
        watch = WatchConfig(interval=float(watch_section.get("interval", 2.0)))
    except (TypeError, ValueError) as exc:
        msg = f"invalid value in {config_path}: {exc}"
        raise ConfigError(msg) from exc

    return OrgNodeConfig(
        root=root_path,
        name=main.get("name", root_path.name),
        dirs=[(root_path / d).resolve() for d in main.get("dirs", ["."])],
        exclude=list(main.get("exclude", _DEFAULT_EXCLUDE)),
        index_dir=root_path / main.get("index_dir", _DEFAULT_INDEX_DIR),
        scan=ScanConfig.from_dict(scan_section),
        scheduler=scheduler,
        watch=watch,
    )


def _find_root(start: Path) -> Path:
    """Walk upward from start looking for orgnode.toml."""
    for directory in (start, *start.parents):
        if (directory / _CONFIG_FILENAME).exists():
            return directory
    return start


def init_config(root: Path, name: str | None = None) -> Path:
    """Write a default orgnode.toml at root. Raises if already exists."""
    config_path = root / _CONFIG_FILENAME
    if config_path.exists():
        msg = f"orgnode.toml already exists at {config_path}"
        raise FileExistsError(msg)

    project_name = name or root.name
    content = f"""\
[orgnode]
name = "{project_name}"
dirs = ["."]
# exclude = ["**/.git/**", "**/archive/**"]

[scan]
# workers = 0            # 0 = one worker per CPU
# timeout = 30.0         # kill a scan cycle whose workers run longer than this
# retry_interval = 1.0
# inline = false         # scan in-process (debugging)
# suffixes = [".org"]
# encoding = "utf-8"
# handlers = []          # ["gzip"] also reads *.org.gz
# todo_keywords = ["TODO", "DONE"]
# link_types = ["id", "http", "https", "file", "attachment", "doi", "mailto"]
# backlinks_drawer = "BACKLINKS"

# [watch]
# interval = 2.0
"""
    config_path.write_text(content)
    return config_path
