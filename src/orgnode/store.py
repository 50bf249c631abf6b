"""In-memory index of nodes and links, maintained by merging scan results.

IndexStore is the public API:
    store = IndexStore()
    store.apply_full_scan(result)          # clear everything, repopulate
    store.apply_incremental_scan(result)   # patch only the files in result
    store.get_node("abc")
    store.backlinks("abc")

Tables (all derived, nothing persisted):
    nodes            id -> Node                 (last occurrence in file order wins)
    candidates       title or alias -> id       (last mapping in file order wins)
    refs             ref -> id
    ref_types        ref -> URI scheme          (from the file whose node owns the ref)
    links_by_dest    dest -> [Link]             (sorted by origin file, pos)
    files            path -> FileInfo
    by_tag, by_file  groupings

The store keeps the last FileScan of every file. A file's links are replaced
wholesale whenever that file is rescanned or goes missing, keyed by the file
that emitted them rather than by origin id, so an id defined in two files
keeps both files' links. Node-level tables are rebuilt from the per-file
records in (file, pos) order after every merge; the result does not depend
on the order workers finished in or on which merge mode produced it.
"""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any

from orgnode.errors import IndexConsistencyError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, MutableMapping

    from orgnode.models import FileInfo, FileScan, Link, Node, Problem, ScanResult

logger = logging.getLogger("orgnode.store")


def _link_order(lnk: Link) -> tuple[int, str, str]:
    return (lnk.pos, lnk.type or "", lnk.origin)


def _problem_order(p: Problem) -> tuple[str, int, str]:
    return (p.file, p.pos, p.message)


def _group_by_file(problems: Iterable[Problem]) -> dict[str, list[Problem]]:
    grouped: dict[str, list[Problem]] = {}
    for p in problems:
        grouped.setdefault(p.file, []).append(p)
    return grouped


class IndexStore:
    """Derived tables for one corpus, mutated only by the apply_* methods."""

    def __init__(self, id_locations: MutableMapping[str, str] | None = None) -> None:
        self.nodes: dict[str, Node] = {}
        self.candidates: dict[str, str] = {}
        self.refs: dict[str, str] = {}
        self.ref_types: dict[str, str] = {}
        self.links_by_dest: dict[str, list[Link]] = {}
        self.files: dict[str, FileInfo] = {}
        self.by_tag: dict[str, list[str]] = {}
        self.by_file: dict[str, list[str]] = {}
        self.problems: list[Problem] = []
        self.title_collisions: list[tuple[str, str, str]] = []   # (title, old id, new id)
        self.id_collisions: list[tuple[str, str, str]] = []      # (id, old file, new file)
        # Owned by the host; kept in sync as id -> file after each merge.
        self.id_locations: MutableMapping[str, str] = id_locations if id_locations is not None else {}
        self._problem_callbacks: list[Callable[[list[Problem]], None]] = []

        self._scans: dict[str, FileScan] = {}                      # path -> last scan
        self._file_links: dict[str, dict[str, list[Link]]] = {}    # path -> dest -> links
        self._dest_files: dict[str, set[str]] = {}                 # dest -> emitting paths
        self._errors: dict[str, list[Problem]] = {}                # path -> problems outside a scan

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    def get_node(self, node_id: str) -> Node | None:
        return self.nodes.get(node_id)

    def id_by_title(self, title_or_alias: str) -> str | None:
        return self.candidates.get(title_or_alias)

    def id_by_ref(self, ref: str) -> str | None:
        return self.refs.get(ref)

    def links_to(self, dest: str) -> list[Link]:
        return list(self.links_by_dest.get(dest, []))

    def backlinks(self, node_id: str) -> list[Link]:
        """Links pointing at the node's id or at any of its refs."""
        links = self.links_to(node_id)
        node = self.nodes.get(node_id)
        if node is not None:
            for ref in node.refs:
                links.extend(self.links_to(ref))
        return links

    def known_files(self) -> list[str]:
        return sorted(self.files)

    def nodes_in_file(self, path: str) -> list[Node]:
        return [self.nodes[i] for i in self.by_file.get(path, [])]

    def nodes_with_tag(self, tag: str) -> list[Node]:
        return [self.nodes[i] for i in self.by_tag.get(tag, [])]

    def elapsed_history(self) -> dict[str, float]:
        """Last scan duration per file; drives partitioning."""
        return {path: fi.elapsed for path, fi in self.files.items()}

    def on_problems(self, callback: Callable[[list[Problem]], None]) -> None:
        """Register a callback run with the new problems after each merge that found some."""
        self._problem_callbacks.append(callback)

    def tables(self) -> dict[str, Any]:
        """Deep copy of every derived table, for comparison and debugging."""
        return copy.deepcopy({
            "nodes": self.nodes,
            "candidates": self.candidates,
            "refs": self.refs,
            "ref_types": self.ref_types,
            "links_by_dest": self.links_by_dest,
            "files": self.files,
            "by_tag": self.by_tag,
            "by_file": self.by_file,
            "problems": self.problems,
            "title_collisions": self.title_collisions,
            "id_collisions": self.id_collisions,
        })

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def apply_full_scan(self, result: ScanResult) -> None:
        """Replace every table with the contents of a whole-corpus scan."""
        self._scans = {}
        self._file_links = {}
        self._dest_files = {}
        self._errors = _group_by_file(result.errors)
        self.links_by_dest = {}

        touched: set[str] = set()
        for scan in sorted(result.scans, key=lambda s: s.info.path):
            touched |= self._drop_file(scan.info.path)
            touched |= self._add_file(scan)
        self._relink(touched)

        self._finish(result.problems)
        logger.info(
            "full merge: %d files, %d nodes, %d links",
            len(self.files), len(self.nodes), sum(len(v) for v in self.links_by_dest.values()),
        )

    def apply_incremental_scan(self, result: ScanResult) -> None:
        """Patch the tables for the files in result only.

        Missing files lose their nodes, refs, titles and links. Rescanned
        files have their previous records replaced, so an unchanged file
        leaves the tables as they were. A file that only produced an internal
        error keeps its previous records.
        """
        touched: set[str] = set()
        for path in result.missing:
            touched |= self._drop_file(path)
            self._errors.pop(path, None)
        for scan in result.scans:
            touched |= self._drop_file(scan.info.path)
            touched |= self._add_file(scan)
            self._errors.pop(scan.info.path, None)
        self._errors.update(_group_by_file(result.errors))
        self._relink(touched)

        self._finish(result.problems)
        logger.info(
            "incremental merge: %d rescanned, %d missing, %d nodes total",
            len(result.scans), len(result.missing), len(self.nodes),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _drop_file(self, path: str) -> set[str]:
        """Forget a file's records. Returns the link dests it contributed to."""
        self._scans.pop(path, None)
        dests = set(self._file_links.pop(path, {}))
        for dest in dests:
            emitters = self._dest_files[dest]
            emitters.discard(path)
            if not emitters:
                del self._dest_files[dest]
        return dests

    def _add_file(self, scan: FileScan) -> set[str]:
        path = scan.info.path
        self._scans[path] = scan
        by_dest: dict[str, list[Link]] = {}
        for lnk in scan.links:
            by_dest.setdefault(lnk.dest, []).append(lnk)
        for dest, links in by_dest.items():
            links.sort(key=_link_order)
            self._dest_files.setdefault(dest, set()).add(path)
        self._file_links[path] = by_dest
        return set(by_dest)

    def _relink(self, dests: set[str]) -> None:
        """Reassemble the link lists of the given dests from the per-file records."""
        for dest in dests:
            emitters = self._dest_files.get(dest)
            if not emitters:
                self.links_by_dest.pop(dest, None)
                continue
            self.links_by_dest[dest] = [
                lnk for path in sorted(emitters) for lnk in self._file_links[path][dest]
            ]

    def _rebuild_nodes(self) -> None:
        nodes: dict[str, Node] = {}
        candidates: dict[str, str] = {}
        refs: dict[str, str] = {}
        ref_types: dict[str, str] = {}
        title_collisions: list[tuple[str, str, str]] = []
        id_collisions: list[tuple[str, str, str]] = []

        for path in sorted(self._scans):
            scan = self._scans[path]
            for node in sorted(scan.nodes, key=lambda n: n.pos):
                old = nodes.get(node.id)
                if old is not None:
                    id_collisions.append((node.id, old.file, node.file))
                nodes[node.id] = node

                for name in (node.title, *node.aliases):
                    current = candidates.get(name)
                    if current is not None and current != node.id:
                        collision = (name, current, node.id)
                        if collision not in title_collisions:
                            title_collisions.append(collision)
                    candidates[name] = node.id

                for ref in node.refs:
                    refs[ref] = node.id
                    # The scheme comes from the same file as the winning node.
                    if ref in scan.ref_types:
                        ref_types[ref] = scan.ref_types[ref]
                    else:
                        ref_types.pop(ref, None)

        for collision in id_collisions:
            if collision not in self.id_collisions:
                logger.warning("duplicate id %s in %s and %s", *collision)

        self.nodes = nodes
        self.candidates = candidates
        self.refs = refs
        self.ref_types = ref_types
        self.title_collisions = title_collisions
        self.id_collisions = id_collisions
        self.files = {path: self._scans[path].info for path in sorted(self._scans)}

        by_tag: dict[str, list[str]] = {}
        by_file: dict[str, list[str]] = {}
        for node in sorted(nodes.values(), key=lambda n: (n.file, n.pos)):
            by_file.setdefault(node.file, []).append(node.id)
            for tag in node.tags:
                by_tag.setdefault(tag, []).append(node.id)
        self.by_tag = by_tag
        self.by_file = by_file

    def _finish(self, new_problems: list[Problem]) -> None:
        self._rebuild_nodes()
        self.problems = sorted(
            [p for scan in self._scans.values() for p in scan.problems]
            + [p for problems in self._errors.values() for p in problems],
            key=_problem_order,
        )
        self._check_consistency()
        self._sync_locations()
        if new_problems:
            logger.warning("%d scan problem(s)", len(new_problems))
            for callback in self._problem_callbacks:
                callback(list(new_problems))

    def _check_consistency(self) -> None:
        for dest, links in self.links_by_dest.items():
            for lnk in links:
                if lnk.origin not in self.nodes:
                    msg = f"link to {dest!r} at {lnk.pos} has unknown origin {lnk.origin!r}"
                    raise IndexConsistencyError(msg)

    def _sync_locations(self) -> None:
        stale = [nid for nid in self.id_locations if nid not in self.nodes]
        for nid in stale:
            del self.id_locations[nid]
        for nid, node in self.nodes.items():
            self.id_locations[nid] = node.file
