"""Tests for the single-file scanner."""
from __future__ import annotations

import gzip
import os

import pytest

from orgnode.config import ScanConfig
from orgnode.models import Link
from orgnode.scanner import parse_refs, scan_file, scan_text


def _links(scan):
    return [(lnk.origin, lnk.type, lnk.dest) for lnk in scan.links]


class TestHeadings:

    def test_heading_with_id_tag_and_link(self, write_org, scan_cfg):
        path = write_org("a.org", """
            * Heading :tag1:
            :PROPERTIES:
            :ID: abc
            :END:
            [[id:xyz][Other]]
            """)
        scan = scan_file(path, scan_cfg)

        assert scan is not None
        assert len(scan.nodes) == 1
        node = scan.nodes[0]
        assert node.id == "abc"
        assert node.title == "Heading"
        assert node.tags_local == ["tag1"]
        assert node.level == 1
        assert node.olp == []
        assert node.file == path
        assert _links(scan) == [("abc", "id", "xyz")]
        assert scan.problems == []

    def test_outline_path_follows_nesting(self, scan_cfg):
        text = (
            "* Top\n"
            "** Middle\n"
            "*** Leaf\n"
            ":PROPERTIES:\n:ID: leaf\n:END:\n"
            "** Sibling\n"
            ":PROPERTIES:\n:ID: sib\n:END:\n"
            "* Other top\n"
            ":PROPERTIES:\n:ID: top2\n:END:\n"
        )
        scan = scan_text(text, "/n.org", scan_cfg)
        by_id = {n.id: n for n in scan.nodes}

        assert by_id["leaf"].olp == ["Top", "Middle"]
        assert by_id["leaf"].level == 3
        assert by_id["sib"].olp == ["Top"]
        assert by_id["top2"].olp == []

    def test_n_top_level_headings(self, scan_cfg):
        text = "".join(f"* H{i}\n:PROPERTIES:\n:ID: id{i}\n:END:\nbody\n" for i in range(5))
        scan = scan_text(text, "/n.org", scan_cfg)

        level_one = [n for n in scan.nodes if n.level == 1]
        assert len(level_one) >= 5
        assert all(len(n.olp) == 0 for n in level_one)

    def test_todo_priority_and_planning(self, scan_cfg):
        text = (
            "* TODO [#A] Write report :work:urgent:\n"
            "SCHEDULED: <2024-01-02 Tue> DEADLINE: <2024-01-05 Fri>\n"
            ":PROPERTIES:\n:ID: rep\n:END:\n"
        )
        node = scan_text(text, "/t.org", scan_cfg).nodes[0]

        assert node.todo == "TODO"
        assert node.priority == "A"
        assert node.title == "Write report"
        assert node.tags_local == ["work", "urgent"]
        assert node.scheduled == "<2024-01-02 Tue>"
        assert node.deadline == "<2024-01-05 Fri>"

    def test_word_outside_todo_vocabulary_stays_in_title(self, scan_cfg):
        text = "* NEXT thing\n:PROPERTIES:\n:ID: n1\n:END:\n"
        node = scan_text(text, "/t.org", scan_cfg).nodes[0]
        assert node.todo is None
        assert node.title == "NEXT thing"

    def test_file_todo_keywords_redefine_vocabulary(self, scan_cfg):
        text = (
            "#+todo: NEXT(n) WAIT | DONE(d)\n"
            "* NEXT thing\n:PROPERTIES:\n:ID: n1\n:END:\n"
            "* TODO other\n:PROPERTIES:\n:ID: n2\n:END:\n"
        )
        nodes = {n.id: n for n in scan_text(text, "/t.org", scan_cfg).nodes}
        assert nodes["n1"].todo == "NEXT"
        assert nodes["n1"].title == "thing"
        # TODO is not part of this file's vocabulary
        assert nodes["n2"].todo is None
        assert nodes["n2"].title == "TODO other"

    def test_inherited_tags(self, scan_cfg):
        text = (
            "#+filetags: :project:\n"
            "* Parent :p:\n"
            "** Child :c:\n:PROPERTIES:\n:ID: child\n:END:\n"
        )
        node = scan_text(text, "/t.org", scan_cfg).nodes[0]
        assert node.tags_local == ["c"]
        assert node.tags_inherited == ["project", "p"]
        assert node.tags == ["project", "p", "c"]

    def test_duplicate_property_last_wins(self, scan_cfg):
        text = "* H\n:PROPERTIES:\n:ID: one\n:color: red\n:COLOR: blue\n:END:\n"
        node = scan_text(text, "/t.org", scan_cfg).nodes[0]
        assert node.properties["COLOR"] == "blue"
        assert "color" not in node.properties


class TestFileLevel:

    def test_file_node_from_front_matter(self, write_org, scan_cfg):
        path = write_org("notes/topic.org", """
            :PROPERTIES:
            :ID: file-1
            :ROAM_ALIASES: "Second name" third
            :END:
            #+title: My Topic
            #+filetags: :a:b:

            Intro links to id:other-node.
            * Sub
            :PROPERTIES:
            :ID: sub-1
            :END:
            """)
        scan = scan_file(path, scan_cfg)
        nodes = {n.id: n for n in scan.nodes}

        file_node = nodes["file-1"]
        assert file_node.level == 0
        assert file_node.pos == 0
        assert file_node.title == "My Topic"
        assert file_node.tags_local == ["a", "b"]
        assert file_node.aliases == ["Second name", "third"]
        assert nodes["sub-1"].tags_inherited == ["a", "b"]
        assert ("file-1", "id", "other-node") in _links(scan)

    def test_title_defaults_to_file_stem(self, write_org, scan_cfg):
        path = write_org("untitled.org", ":PROPERTIES:\n:ID: u1\n:END:\nbody\n")
        assert scan_file(path, scan_cfg).nodes[0].title == "untitled"

    def test_front_matter_ignored_when_file_starts_with_heading(self, scan_cfg):
        text = "* First\n#+title: Not a title\n:PROPERTIES:\n:ID: x\n:END:\n"
        scan = scan_text(text, "/t.org", scan_cfg)
        # The drawer is not directly below the heading, so there is no node.
        assert scan.nodes == []


class TestLinks:

    def _body(self, body, cfg):
        text = "* H\n:PROPERTIES:\n:ID: src\n:END:\n" + body
        return scan_text(text, "/t.org", cfg)

    def test_bracket_link_with_spaces_and_escapes(self, scan_cfg):
        scan = self._body("[[file:my notes/x.org][x]] and [[https://a.com/b%20c]]\n", scan_cfg)
        assert _links(scan) == [("src", "file", "my notes/x.org"), ("src", "https", "//a.com/b c")]

    def test_bare_links(self, scan_cfg):
        scan = self._body("Read https://example.com/x, then id:target.\n", scan_cfg)
        assert _links(scan) == [("src", "https", "//example.com/x"), ("src", "id", "target")]

    def test_id_link_search_option_dropped(self, scan_cfg):
        scan = self._body("[[id:abc::*Section][s]]\n", scan_cfg)
        assert _links(scan) == [("src", "id", "abc")]

    def test_unknown_bracket_links_skipped(self, scan_cfg):
        scan = self._body("[[*Some heading]] [[roam:Title]]\n", scan_cfg)
        assert scan.links == []

    def test_comment_lines_skipped(self, scan_cfg):
        scan = self._body("# [[id:hidden]]\n  # id:also-hidden\nvisible [[id:shown]]\n", scan_cfg)
        assert _links(scan) == [("src", "id", "shown")]

    def test_backlinks_drawer_excluded(self, scan_cfg):
        body = ":BACKLINKS:\n[[id:generated]]\n:END:\nReal [[id:real]]\n"
        scan = self._body(body, scan_cfg)
        assert _links(scan) == [("src", "id", "real")]

    def test_link_in_heading_title(self, scan_cfg):
        text = "* About [[id:thing][Thing]]\n:PROPERTIES:\n:ID: h\n:END:\n"
        scan = scan_text(text, "/t.org", scan_cfg)
        assert _links(scan) == [("h", "id", "thing")]

    def test_link_under_heading_without_id_goes_to_ancestor(self, scan_cfg):
        text = (
            "* Parent\n:PROPERTIES:\n:ID: parent\n:END:\n"
            "** No id here\n[[id:target]]\n"
        )
        scan = scan_text(text, "/t.org", scan_cfg)
        assert _links(scan) == [("parent", "id", "target")]
        assert [n.id for n in scan.nodes] == ["parent"]

    def test_link_without_any_origin_dropped(self, scan_cfg):
        text = "* Loose\n[[id:target]]\n* Owner\n:PROPERTIES:\n:ID: o\n:END:\n"
        scan = scan_text(text, "/t.org", scan_cfg)
        assert scan.links == []

    def test_citations_normalize_sigil(self, scan_cfg):
        scan = self._body("As shown [cite:@smith2020; &doe2019 p. 4].\n", scan_cfg)
        assert scan.links == [
            Link(origin="src", pos=scan.links[0].pos, type=None, dest="@smith2020"),
            Link(origin="src", pos=scan.links[1].pos, type=None, dest="@doe2019"),
        ]

    def test_link_positions_are_offsets(self, scan_cfg):
        text = "* H\n:PROPERTIES:\n:ID: src\n:END:\nxx [[id:t]]\n"
        lnk = scan_text(text, "/t.org", scan_cfg).links[0]
        assert text[lnk.pos:].startswith("[[id:t]]")

    def test_configured_link_types(self):
        cfg = ScanConfig(link_types=("id",))
        text = "* H\n:PROPERTIES:\n:ID: src\n:END:\nhttps://x.org [[id:y]]\n"
        assert _links(scan_text(text, "/t.org", cfg)) == [("src", "id", "y")]


class TestRefs:

    def test_bracketed_uri_and_citekey(self):
        refs, types = parse_refs("[[https://example.com/a b]] @cite1")
        assert refs == ["//example.com/a b", "@cite1"]
        assert types == {"//example.com/a b": "https"}

    def test_quoted_tokens_and_alternate_sigil(self):
        refs, types = parse_refs('"http://x.org/with space" &key2 [cite:@key3]')
        assert refs == ["//x.org/with space", "@key2", "@key3"]
        assert types == {"//x.org/with space": "http"}

    def test_plain_words_ignored(self):
        assert parse_refs("just words") == ([], {})

    def test_node_refs_and_side_table(self, scan_cfg):
        text = "* H\n:PROPERTIES:\n:ID: h\n:ROAM_REFS: https://a.org @k\n:END:\n"
        scan = scan_text(text, "/t.org", scan_cfg)
        assert scan.nodes[0].refs == ["//a.org", "@k"]
        assert scan.ref_types == {"//a.org": "https"}


class TestFailurePolicy:

    def test_unterminated_drawer_keeps_earlier_sections(self, scan_cfg):
        text = (
            "* Good\n:PROPERTIES:\n:ID: good\n:END:\n[[id:a]]\n"
            "* Bad\n:PROPERTIES:\n:ID: bad\n[[id:b]]\n"
            "* Later\n:PROPERTIES:\n:ID: later\n:END:\n"
        )
        scan = scan_text(text, "/t.org", scan_cfg)

        assert [n.id for n in scan.nodes] == ["good"]
        assert _links(scan) == [("good", "id", "a")]
        assert len(scan.problems) == 1
        assert "drawer" in scan.problems[0].message
        assert scan.problems[0].file == "/t.org"

    def test_unterminated_citation_is_a_problem(self, scan_cfg):
        text = "* H\n:PROPERTIES:\n:ID: h\n:END:\nSee [cite:@key\n"
        scan = scan_text(text, "/t.org", scan_cfg)
        assert scan.nodes == []
        assert "citation" in scan.problems[0].message

    def test_unterminated_file_drawer(self, scan_cfg):
        scan = scan_text(":PROPERTIES:\n:ID: f\n", "/t.org", scan_cfg)
        assert scan.nodes == []
        assert len(scan.problems) == 1


class TestMissing:

    def test_no_id_marker(self, write_org, scan_cfg):
        assert scan_file(write_org("plain.org", "* Heading\ntext\n"), scan_cfg) is None

    def test_nonexistent(self, tmp_path, scan_cfg):
        assert scan_file(tmp_path / "gone.org", scan_cfg) is None

    def test_wrong_suffix(self, write_org, scan_cfg):
        assert scan_file(write_org("notes.txt", "* H\n:PROPERTIES:\n:ID: x\n:END:\n"), scan_cfg) is None

    def test_symlink(self, tmp_path, write_org, scan_cfg):
        target = write_org("real.org", "* H\n:PROPERTIES:\n:ID: x\n:END:\n")
        link = tmp_path / "link.org"
        os.symlink(target, link)
        assert scan_file(link, scan_cfg) is None
        assert scan_file(target, scan_cfg) is not None

    def test_gzip_only_with_handler(self, tmp_path):
        path = tmp_path / "packed.org.gz"
        with gzip.open(path, "wt", encoding="utf-8") as f:
            f.write("* H\n:PROPERTIES:\n:ID: gz\n:END:\n")

        assert scan_file(path, ScanConfig()) is None
        scan = scan_file(path, ScanConfig(handlers=("gzip",)))
        assert scan is not None
        assert scan.nodes[0].id == "gz"


class TestIdempotence:

    def test_rescan_identical_records(self, corpus, scan_cfg):
        for key in ("a", "b", "c"):
            first = scan_file(corpus[key], scan_cfg)
            second = scan_file(corpus[key], scan_cfg)
            assert first.nodes == second.nodes
            assert first.links == second.links
            assert first.ref_types == second.ref_types
            assert first.info.mtime == second.info.mtime

    def test_file_info_timing(self, corpus, scan_cfg):
        scan = scan_file(corpus["a"], scan_cfg)
        assert scan.info.path == corpus["a"]
        assert scan.info.elapsed >= 0.0
        assert scan.info.mtime == pytest.approx(os.stat(corpus["a"]).st_mtime)
