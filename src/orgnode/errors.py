"""Exception types raised across the scan pipeline."""

from __future__ import annotations


class OrgSyntaxError(Exception):
    """A malformed construct that makes the rest of a file unscannable."""

    def __init__(self, file: str, pos: int, message: str) -> None:
        super().__init__(f"{file}:{pos}: {message}")
        self.file = file
        self.pos = pos
        self.message = message


class WorkerError(Exception):
    """A worker process crashed or left an unreadable result."""


class IndexConsistencyError(Exception):
    """The index tables violate an invariant after a merge."""


class ConfigError(Exception):
    """orgnode.toml could not be parsed into a valid config."""
