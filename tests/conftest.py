"""Pytest configuration and fixtures."""
from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from orgnode.config import ScanConfig


@pytest.fixture
def scan_cfg():
    """Default worker configuration."""
    return ScanConfig()


@pytest.fixture
def write_org(tmp_path):
    """Write a dedented .org file under tmp_path and return its absolute path."""

    def _write(name: str, content: str) -> str:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content).lstrip("\n"), encoding="utf-8")
        return str(path.absolute())

    return _write


@pytest.fixture
def corpus(tmp_path, write_org):
    """Three linked notes plus one file without any ids."""
    a = write_org("a.org", """
        * Heading :tag1:
        :PROPERTIES:
        :ID: abc
        :END:
        See [[id:xyz][Other]].
        """)
    b = write_org("notes/b.org", """
        :PROPERTIES:
        :ID: xyz
        :ROAM_ALIASES: "Other note"
        :END:
        #+title: Other

        Back to [[id:abc][Heading]] and https://example.com/page.
        """)
    c = write_org("c.org", """
        * Parent
        :PROPERTIES:
        :ID: c-parent
        :ROAM_REFS: https://example.com/page
        :END:
        ** Child
        :PROPERTIES:
        :ID: c-child
        :END:
        Links to [[id:abc]] and [[id:xyz]].
        """)
    plain = write_org("plain.org", """
        * No ids here
        Just text with [[id:abc]].
        """)
    return {"root": Path(tmp_path), "a": a, "b": b, "c": c, "plain": plain}
