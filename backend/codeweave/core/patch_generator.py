# backend/codeweave/core/patch_generator.py
import difflib
import logging
from typing import List, Tuple

from diff_match_patch import diff_match_patch
from unidiff import PatchSet, UnidiffParseError

from .project_models import DiffChunk

logger = logging.getLogger(__name__)


class PatchGenerator:
    """
    Generates the diffs shown to the approval gateway: a standard unified diff
    (difflib), line-level change chunks (diff-match-patch in line mode) and
    added/removed line counts (unidiff).
    """

    @staticmethod
    def _normalize_text_for_diff(text: str) -> str:
        """
        Normalizes text content for diffing.
        Handles line endings and strips trailing whitespace from each line.
        """
        if not isinstance(text, str):
            return ""
        if text == "":
            return ""
        # Standardize all line endings (CRLF, CR) to LF for consistent processing.
        lines = text.replace('\r\n', '\n').replace('\r', '\n').split('\n')
        normalized_lines = [line.rstrip() for line in lines]
        return "\n".join(normalized_lines).rstrip("\n") + "\n"

    @staticmethod
    def create_diff(original_content: str, new_content: str, file_path: str) -> str:
        """
        Compares the original and new content and returns a patch string
        in the standard unified diff format. Returns "" when nothing changed.
        """
        normalized_original = PatchGenerator._normalize_text_for_diff(original_content)
        normalized_new = PatchGenerator._normalize_text_for_diff(new_content)

        if normalized_original == normalized_new:
            return ""

        from_file = to_file = file_path.replace('\\', '/')
        diff = difflib.unified_diff(
            normalized_original.splitlines(keepends=True),
            normalized_new.splitlines(keepends=True),
            fromfile=from_file,
            tofile=to_file,
        )
        return "".join(diff)

    @staticmethod
    def line_chunks(original_content: str, new_content: str) -> List[DiffChunk]:
        """
        Computes a line-level diff as a list of chunks. Consecutive lines with the
        same state are merged into one chunk.
        """
        dmp = diff_match_patch()
        original = PatchGenerator._normalize_text_for_diff(original_content)
        new = PatchGenerator._normalize_text_for_diff(new_content)
        # Encode each line as a single character so the diff runs per line.
        chars_original, chars_new, line_array = dmp.diff_linesToChars(original, new)
        diffs = dmp.diff_main(chars_original, chars_new, False)
        dmp.diff_charsToLines(diffs, line_array)

        chunks: List[DiffChunk] = []
        for op, text in diffs:
            if not text:
                continue
            chunks.append(DiffChunk(
                added=op == dmp.DIFF_INSERT,
                removed=op == dmp.DIFF_DELETE,
                value=text,
            ))
        return chunks

    @staticmethod
    def diff_stats(unified_diff: str) -> Tuple[int, int]:
        """Returns (added_lines, removed_lines) for a unified diff string."""
        if not unified_diff.strip():
            return 0, 0
        try:
            patch_set = PatchSet(unified_diff)
        except UnidiffParseError as e:
            logger.warning(f"Could not parse generated diff for statistics: {e}")
            return 0, 0
        return patch_set.added, patch_set.removed
