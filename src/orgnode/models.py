"""Record types produced by the scanner and consumed by the index store."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class Node:
    """An id-bearing file (level 0) or heading."""

    id: str
    title: str
    file: str
    pos: int = 0
    level: int = 0
    olp: list[str] = field(default_factory=list)        # ancestor heading titles
    tags_local: list[str] = field(default_factory=list)
    tags_inherited: list[str] = field(default_factory=list)
    todo: str | None = None
    priority: str | None = None
    scheduled: str | None = None
    deadline: str | None = None
    properties: dict[str, str] = field(default_factory=dict)
    aliases: list[str] = field(default_factory=list)
    refs: list[str] = field(default_factory=list)

    @property
    def tags(self) -> list[str]:
        return list(dict.fromkeys(self.tags_inherited + self.tags_local))

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Node:
        return cls(
            id=d["id"],
            title=d.get("title", ""),
            file=d["file"],
            pos=d.get("pos", 0),
            level=d.get("level", 0),
            olp=list(d.get("olp", [])),
            tags_local=list(d.get("tags_local", [])),
            tags_inherited=list(d.get("tags_inherited", [])),
            todo=d.get("todo"),
            priority=d.get("priority"),
            scheduled=d.get("scheduled"),
            deadline=d.get("deadline"),
            properties=dict(d.get("properties", {})),
            aliases=list(d.get("aliases", [])),
            refs=list(d.get("refs", [])),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Link:
    """A directed reference from a node's content.

    type is None for citations; dest is then a citekey such as "@key".
    """

    origin: str
    pos: int
    type: str | None
    dest: str

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Link:
        return cls(origin=d["origin"], pos=d["pos"], type=d.get("type"), dest=d["dest"])

    def to_dict(self) -> dict[str, Any]:
        return {"origin": self.origin, "pos": self.pos, "type": self.type, "dest": self.dest}

    def sort_key(self) -> tuple[str, int, str, str]:
        return (self.origin, self.pos, self.type or "", self.dest)


@dataclass(frozen=True)
class Problem:
    """A recoverable per-file scan failure."""

    file: str
    pos: int
    message: str

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Problem:
        return cls(file=d["file"], pos=d.get("pos", 0), message=d.get("message", ""))

    def to_dict(self) -> dict[str, Any]:
        return {"file": self.file, "pos": self.pos, "message": self.message}


@dataclass(frozen=True)
class FileInfo:
    """Modification time and last scan duration of one file."""

    path: str
    mtime: float
    elapsed: float = 0.0

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> FileInfo:
        return cls(path=d["path"], mtime=float(d.get("mtime", 0.0)), elapsed=float(d.get("elapsed", 0.0)))

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "mtime": self.mtime, "elapsed": self.elapsed}


@dataclass
class FileScan:
    """Everything the scanner found in one file."""

    info: FileInfo
    nodes: list[Node] = field(default_factory=list)
    links: list[Link] = field(default_factory=list)
    ref_types: dict[str, str] = field(default_factory=dict)   # ref -> URI scheme
    problems: list[Problem] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> FileScan:
        return cls(
            info=FileInfo.from_dict(d["info"]),
            nodes=[Node.from_dict(x) for x in d.get("nodes", [])],
            links=[Link.from_dict(x) for x in d.get("links", [])],
            ref_types=dict(d.get("ref_types", {})),
            problems=[Problem.from_dict(x) for x in d.get("problems", [])],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "info": self.info.to_dict(),
            "nodes": [n.to_dict() for n in self.nodes],
            "links": [lnk.to_dict() for lnk in self.links],
            "ref_types": self.ref_types,
            "problems": [p.to_dict() for p in self.problems],
        }


@dataclass
class ScanResult:
    """One worker's output, serialized once when the worker exits.

    Records stay grouped per file so the store can replace a file's nodes and
    links wholesale. A file appears either in `missing` or in `scans`, never
    both. `errors` holds failures outside any file's scan (a crashed parse).
    """

    finished_at: float = 0.0
    missing: list[str] = field(default_factory=list)
    scans: list[FileScan] = field(default_factory=list)
    errors: list[Problem] = field(default_factory=list)

    def add(self, scan: FileScan) -> None:
        self.scans.append(scan)

    def extend(self, other: ScanResult) -> None:
        self.missing.extend(other.missing)
        self.scans.extend(other.scans)
        self.errors.extend(other.errors)

    @property
    def scanned_files(self) -> set[str]:
        return {s.info.path for s in self.scans}

    @property
    def file_info(self) -> list[FileInfo]:
        return [s.info for s in self.scans]

    @property
    def nodes(self) -> list[Node]:
        return [n for s in self.scans for n in s.nodes]

    @property
    def links(self) -> list[Link]:
        return [lnk for s in self.scans for lnk in s.links]

    @property
    def problems(self) -> list[Problem]:
        return [p for s in self.scans for p in s.problems] + self.errors

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ScanResult:
        return cls(
            finished_at=float(d.get("finished_at", 0.0)),
            missing=list(d.get("missing", [])),
            scans=[FileScan.from_dict(x) for x in d.get("scans", [])],
            errors=[Problem.from_dict(x) for x in d.get("errors", [])],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "finished_at": self.finished_at,
            "missing": self.missing,
            "scans": [s.to_dict() for s in self.scans],
            "errors": [p.to_dict() for p in self.errors],
        }
