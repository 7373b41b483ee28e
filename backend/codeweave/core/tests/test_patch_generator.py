# backend/codeweave/core/tests/test_patch_generator.py
from codeweave.core.patch_generator import PatchGenerator


def test_create_diff_returns_empty_string_when_unchanged():
    assert PatchGenerator.create_diff("a\nb\n", "a\nb\n", "f.txt") == ""

def test_create_diff_ignores_line_ending_and_trailing_whitespace_changes():
    assert PatchGenerator.create_diff("a\r\nb  \r\n", "a\nb\n", "f.txt") == ""

def test_create_diff_produces_unified_diff():
    diff = PatchGenerator.create_diff("one\ntwo\n", "one\nthree\n", "src\\f.txt")
    assert diff.startswith("--- src/f.txt\n+++ src/f.txt\n")
    assert "-two\n" in diff
    assert "+three\n" in diff

def test_diff_stats_counts_added_and_removed_lines():
    diff = PatchGenerator.create_diff("one\ntwo\n", "one\nthree\nfour\n", "f.txt")
    assert PatchGenerator.diff_stats(diff) == (2, 1)

def test_diff_stats_for_new_file():
    diff = PatchGenerator.create_diff("", "x\ny\n", "new.txt")
    assert PatchGenerator.diff_stats(diff) == (2, 0)

def test_diff_stats_of_empty_diff():
    assert PatchGenerator.diff_stats("") == (0, 0)

def test_line_chunks_mark_added_and_removed_runs():
    chunks = PatchGenerator.line_chunks("keep\nold\n", "keep\nnew\n")

    assert [(c.added, c.removed, c.value) for c in chunks] == [
        (False, False, "keep\n"),
        (False, True, "old\n"),
        (True, False, "new\n"),
    ]

def test_line_chunks_for_deleted_file():
    chunks = PatchGenerator.line_chunks("a\nb\n", "")
    assert len(chunks) == 1
    assert chunks[0].removed is True
    assert chunks[0].value == "a\nb\n"
