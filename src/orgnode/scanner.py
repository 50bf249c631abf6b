"""Single-pass scanner: one Org file's text → nodes, links, refs, problems.

No document tree is built. The scanner walks heading lines with a line-start
regex and only looks at the few constructs that matter for the index:

    #+title: / #+filetags: / #+todo:      front matter (only before the first heading)
    :PROPERTIES: ... :END:                 property drawers (ID, ROAM_ALIASES, ROAM_REFS)
    SCHEDULED: / DEADLINE: / CLOSED:      planning line directly below a heading
    [[type:path][desc]]  type:path         links (bracketed or bare)
    [cite:@key;@key]                       citations

A heading without an ID still takes part in the outline path; links below it
are attributed to the nearest ancestor that has one (or the file-level node).

Entry points:
    scan_file(path, cfg)    # FileScan, or None when the file counts as missing
    scan_text(text, file, cfg)
    parse_refs(value)
"""

from __future__ import annotations

import gzip
import os
import re
import shlex
import time
from dataclasses import dataclass, field, replace
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING

from orgnode.config import HANDLER_SUFFIXES
from orgnode.errors import OrgSyntaxError
from orgnode.models import FileInfo, FileScan, Link, Node, Problem

if TYPE_CHECKING:
    from orgnode.config import ScanConfig

_ID_MARKER_RE = re.compile(r"^[ \t]*:id:[ \t]+\S", re.MULTILINE | re.IGNORECASE)
_HEADING_RE = re.compile(r"^(\*+)[ \t]+(.*)$", re.MULTILINE)
_KEYWORD_RE = re.compile(r"^[ \t]*#\+(\w+):[ \t]*(.*?)[ \t]*$", re.MULTILINE)
_COMMENT_RE = re.compile(r"[ \t]*#(?:[ \t]|$)")

_DRAWER_START_RE = re.compile(r"^[ \t]*:PROPERTIES:[ \t]*$", re.MULTILINE | re.IGNORECASE)
_DRAWER_END_RE = re.compile(r"^[ \t]*:END:[ \t]*$", re.MULTILINE | re.IGNORECASE)
_PROPERTY_RE = re.compile(r"^[ \t]*:([^:\s]+):(?:[ \t]+(.*?))?[ \t]*$", re.MULTILINE)

_PLANNING_RE = re.compile(r"[ \t]*(?:SCHEDULED|DEADLINE|CLOSED):.*$", re.MULTILINE)
_SCHEDULED_RE = re.compile(r"SCHEDULED:[ \t]*([<\[][^>\]\n]*[>\]])")
_DEADLINE_RE = re.compile(r"DEADLINE:[ \t]*([<\[][^>\]\n]*[>\]])")

_TAGS_RE = re.compile(r"(?:^|[ \t]+)(:[\w@#%:]+:)[ \t]*$")
_PRIORITY_RE = re.compile(r"\[#([A-Za-z0-9])\][ \t]*")

_CITE_START_RE = re.compile(r"\[cite(?:/[\w/-]*)?:")
_CITE_KEY_RE = re.compile(r"[@&]([^\s;\]\[]+)")
_BRACKET_LINK_RE = re.compile(r"\[\[([^\]\n]+?)\](?:\[[^\]\n]*\])?\]")
_URI_RE = re.compile(r"([A-Za-z][\w+.-]*):(.+)", re.DOTALL)

_BARE_TRAILING = ".,;:!?"


@lru_cache(maxsize=16)
def _link_patterns(link_types: tuple[str, ...]) -> tuple[re.Pattern[str], re.Pattern[str]]:
    """Merged bracket-or-bare link regex, and the embedded-URI regex for bracket contents."""
    types = "|".join(re.escape(t) for t in sorted(link_types, key=len, reverse=True))
    merged = re.compile(
        r"\[\[(?P<bracket>[^\]\n]+?)\](?:\[[^\]\n]*\])?\]"
        rf"|(?<![\w/])(?P<type>{types}):(?P<path>[^\s()<>\[\]\"]+)"
    )
    embedded = re.compile(rf"(?P<type>{types}):(?P<path>.+)", re.DOTALL)
    return merged, embedded


@dataclass
class _Frame:
    """One entry of the outline-path stack."""

    level: int
    title: str
    id: str | None
    tags: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Small parsers
# ---------------------------------------------------------------------------

def split_quoted(value: str) -> list[str]:
    """Split on whitespace, honouring shell-like quotes."""
    try:
        return shlex.split(value)
    except ValueError:
        # Unbalanced quote: keep the words rather than lose the whole value.
        return value.split()


def parse_refs(value: str) -> tuple[list[str], dict[str, str]]:
    """Parse a ROAM_REFS value into refs and a ref -> URI scheme table.

    Bracketed links are pulled out first so they may contain spaces; the rest
    is split with shell-like quoting. Citekeys keep the canonical "@" sigil,
    URIs keep only the part after "scheme:".
    """
    refs: list[str] = []
    types: dict[str, str] = {}
    tokens = [m.group(1) for m in _BRACKET_LINK_RE.finditer(value)]
    tokens += split_quoted(_BRACKET_LINK_RE.sub(" ", value))

    for tok in tokens:
        if tok.startswith(("@", "&")):
            refs.append("@" + tok[1:])
        elif tok.startswith("[cite"):
            refs.extend("@" + m.group(1) for m in _CITE_KEY_RE.finditer(tok))
        elif m := _URI_RE.fullmatch(tok):
            scheme, path = m.group(1), m.group(2).replace("%20", " ")
            refs.append(path)
            types[path] = scheme
    return refs, types


def _parse_tags(value: str) -> list[str]:
    return [t for t in re.split(r"[:\s]+", value) if t]


def _parse_todo_line(value: str) -> list[str]:
    """#+todo: TODO NEXT(n) | DONE(d!) → [TODO, NEXT, DONE]."""
    value = re.sub(r"\([^)]*\)", "", value)
    return [w for w in value.split() if w != "|"]


def _parse_heading(text: str, todo_keywords: tuple[str, ...] | list[str]) -> tuple[str | None, str | None, str, list[str]]:
    """Split a heading line (after the stars) into todo, priority, title, tags."""
    tags: list[str] = []
    m = _TAGS_RE.search(text)
    if m:
        tags = [t for t in m.group(1).split(":") if t]
        text = text[: m.start()]

    todo = None
    word, _, rest = text.partition(" ")
    if word in todo_keywords:
        todo, text = word, rest

    priority = None
    text = text.lstrip()
    m = _PRIORITY_RE.match(text)
    if m:
        priority, text = m.group(1), text[m.end():]

    return todo, priority, text.strip(), tags


def _read_drawer(text: str, start: int, end: int, file: str) -> tuple[dict[str, str], int]:
    """Parse the drawer whose :PROPERTIES: line begins at start.

    Returns the properties (keys upper-cased, last duplicate wins) and the
    offset just past the :END: line.
    """
    body_start = text.find("\n", start, end)
    m = _DRAWER_END_RE.search(text, body_start + 1, end) if body_start != -1 else None
    if m is None:
        raise OrgSyntaxError(file, start, "property drawer has no :END:")

    props: dict[str, str] = {}
    for pm in _PROPERTY_RE.finditer(text, body_start + 1, m.start()):
        props[pm.group(1).upper()] = pm.group(2) or ""
    return props, min(m.end() + 1, end)


# ---------------------------------------------------------------------------
# Links
# ---------------------------------------------------------------------------

def _is_comment_line(text: str, pos: int) -> bool:
    line_start = text.rfind("\n", 0, pos) + 1
    return _COMMENT_RE.match(text, line_start) is not None


def _excise_drawer(text: str, start: int, end: int, name: str) -> list[tuple[int, int]]:
    """Return the parts of [start, end) outside a :name: drawer."""
    drawer_re = re.compile(rf"^[ \t]*:{re.escape(name)}:[ \t]*$", re.MULTILINE | re.IGNORECASE)
    m = drawer_re.search(text, start, end)
    if m is None:
        return [(start, end)]
    close = _DRAWER_END_RE.search(text, m.end(), end)
    if close is None:
        return [(start, m.start())]
    return [(start, m.start()), (close.end(), end)]


def _collect_links(
    text: str, start: int, end: int, origin: str, cfg: ScanConfig, file: str,
) -> list[Link]:
    merged, embedded = _link_patterns(cfg.link_types)
    links: list[Link] = []

    for m in merged.finditer(text, start, end):
        if _is_comment_line(text, m.start()):
            continue
        if m.group("bracket") is not None:
            em = embedded.fullmatch(m.group("bracket").strip())
            if em is None:
                continue
            ltype, path = em.group("type"), em.group("path")
        else:
            ltype, path = m.group("type"), m.group("path").rstrip(_BARE_TRAILING)
        path = path.replace("%20", " ")
        if ltype == "id":
            path = path.partition("::")[0]
        if path:
            links.append(Link(origin=origin, pos=m.start(), type=ltype, dest=path))

    for m in _CITE_START_RE.finditer(text, start, end):
        if _is_comment_line(text, m.start()):
            continue
        close = text.find("]", m.end(), end)
        if close == -1:
            raise OrgSyntaxError(file, m.start(), "citation has no closing bracket")
        for km in _CITE_KEY_RE.finditer(text, m.end(), close):
            links.append(Link(origin=origin, pos=km.start(), type=None, dest="@" + km.group(1)))

    return links


def _region_links(
    text: str, start: int, end: int, origin: str | None, cfg: ScanConfig, file: str,
) -> list[Link]:
    if origin is None or start >= end:
        return []
    links: list[Link] = []
    for a, b in _excise_drawer(text, start, end, cfg.backlinks_drawer):
        links.extend(_collect_links(text, a, b, origin, cfg, file))
    return links


# ---------------------------------------------------------------------------
# Node construction
# ---------------------------------------------------------------------------

def _make_node(node_id: str, title: str, file: str, props: dict[str, str], **kw: object) -> tuple[Node, dict[str, str]]:
    refs, ref_types = parse_refs(props.get("ROAM_REFS", ""))
    node = Node(
        id=node_id,
        title=title,
        file=file,
        properties=props,
        aliases=split_quoted(props.get("ROAM_ALIASES", "")),
        refs=refs,
        **kw,  # type: ignore[arg-type]
    )
    return node, ref_types


def _file_stem(file: str, cfg: ScanConfig) -> str:
    name = os.path.basename(file)
    for handler in cfg.handlers:
        name = name.removesuffix(HANDLER_SUFFIXES[handler])
    for suffix in cfg.suffixes:
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return Path(name).stem


def scan_text(text: str, file: str, cfg: ScanConfig) -> FileScan:
    """Scan already-read file text. Never raises OrgSyntaxError.

    On a syntax error the failing section and everything after it are
    dropped and a Problem is recorded; completed sections are kept.
    """
    scan = FileScan(info=FileInfo(path=file, mtime=0.0))
    headings = list(_HEADING_RE.finditer(text))
    front_end = headings[0].start() if headings else len(text)

    todo_keywords: list[str] = list(cfg.todo_keywords)
    file_tags: list[str] = []
    file_id: str | None = None

    try:
        if front_end > 0:
            file_title: str | None = None
            local_todo: list[str] = []
            for km in _KEYWORD_RE.finditer(text, 0, front_end):
                key = km.group(1).lower()
                if key == "title" and file_title is None:
                    file_title = km.group(2)
                elif key == "filetags":
                    file_tags.extend(_parse_tags(km.group(2)))
                elif key in ("todo", "seq_todo", "typ_todo"):
                    local_todo.extend(_parse_todo_line(km.group(2)))
            if local_todo:
                todo_keywords = local_todo

            dm = _DRAWER_START_RE.search(text, 0, front_end)
            if dm is not None:
                file_props, body_start = _read_drawer(text, dm.start(), front_end, file)
                file_id = file_props.get("ID") or None
                if file_id:
                    node, ref_types = _make_node(
                        file_id, file_title or _file_stem(file, cfg), file, file_props,
                        pos=0, level=0, tags_local=list(file_tags),
                    )
                    links = _region_links(text, body_start, front_end, file_id, cfg, file)
                    scan.nodes.append(node)
                    scan.ref_types.update(ref_types)
                    scan.links.extend(links)

        stack: list[_Frame] = []
        for i, hm in enumerate(headings):
            section_end = headings[i + 1].start() if i + 1 < len(headings) else len(text)
            level = len(hm.group(1))
            todo, priority, title, tags = _parse_heading(hm.group(2), todo_keywords)

            while stack and stack[-1].level >= level:
                stack.pop()
            olp = [f.title for f in stack]
            inherited = list(dict.fromkeys(file_tags + [t for f in stack for t in f.tags]))
            parent_id = next((f.id for f in reversed(stack) if f.id), file_id)

            pos = min(hm.end() + 1, section_end)
            scheduled = deadline = None
            pm = _PLANNING_RE.match(text, pos, section_end)
            if pm is not None:
                planning = pm.group(0)
                if sm := _SCHEDULED_RE.search(planning):
                    scheduled = sm.group(1)
                if dlm := _DEADLINE_RE.search(planning):
                    deadline = dlm.group(1)
                pos = min(pm.end() + 1, section_end)

            props: dict[str, str] = {}
            dm = _DRAWER_START_RE.match(text, pos, section_end)
            if dm is not None:
                props, pos = _read_drawer(text, dm.start(), section_end, file)

            node_id = props.get("ID") or None
            origin = node_id or parent_id
            links = _region_links(text, hm.start(2), hm.end(2), origin, cfg, file)
            links += _region_links(text, pos, section_end, origin, cfg, file)

            if node_id:
                node, ref_types = _make_node(
                    node_id, title, file, props,
                    pos=hm.start(), level=level, olp=olp,
                    tags_local=tags, tags_inherited=inherited,
                    todo=todo, priority=priority, scheduled=scheduled, deadline=deadline,
                )
                scan.nodes.append(node)
                scan.ref_types.update(ref_types)
            scan.links.extend(links)
            stack.append(_Frame(level=level, title=title, id=node_id, tags=tags))
    except OrgSyntaxError as exc:
        scan.problems.append(Problem(file=exc.file, pos=exc.pos, message=exc.message))

    return scan


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

def _read_text(path: Path, cfg: ScanConfig) -> str | None:
    """Read a correctly-suffixed file, or return None for a wrong suffix."""
    name = path.name
    if any(name.endswith(s) for s in cfg.suffixes):
        return path.read_text(encoding=cfg.encoding, errors="replace")
    if "gzip" in cfg.handlers and any(name.endswith(s + ".gz") for s in cfg.suffixes):
        with gzip.open(path, "rt", encoding=cfg.encoding, errors="replace") as f:
            return f.read()
    return None


def scan_file(path: str | Path, cfg: ScanConfig) -> FileScan | None:
    """Scan one file. Returns None when the file should be pruned as missing.

    Missing means: not a regular file, a symlink, a wrong suffix, unreadable,
    or no ID property anywhere in the text.
    """
    p = Path(os.path.abspath(path))
    if p.is_symlink() or not p.is_file():
        return None

    started = time.perf_counter()
    try:
        mtime = p.stat().st_mtime
        text = _read_text(p, cfg)
    except (OSError, EOFError):
        return None
    if text is None or not _ID_MARKER_RE.search(text):
        return None

    scan = scan_text(text, str(p), cfg)
    scan.info = replace(scan.info, mtime=mtime, elapsed=time.perf_counter() - started)
    return scan
