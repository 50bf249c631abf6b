"""Index Org notes into a graph of id-bearing nodes and the links between them.

Pipeline:
    collect_files → split_balanced → coordinator (scan workers) → IndexStore

    store = IndexStore()
    coordinator = orgnode.coordinator.make_coordinator(store, load_config())
    coordinator.request_full_scan(sync=True)
    store.backlinks("some-id")

Node ids, titles, aliases and refs resolve through the store; nothing is
written to disk.
"""

from orgnode.config import OrgNodeConfig, ScanConfig, init_config, load_config
from orgnode.models import FileInfo, Link, Node, Problem, ScanResult
from orgnode.scanner import scan_file, scan_text
from orgnode.store import IndexStore

__all__ = [
    "FileInfo",
    "IndexStore",
    "Link",
    "Node",
    "OrgNodeConfig",
    "Problem",
    "ScanConfig",
    "ScanResult",
    "init_config",
    "load_config",
    "scan_file",
    "scan_text",
]
