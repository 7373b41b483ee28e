# backend/codeweave/core/operation_extractor.py
"""
Extraction of file operations from free-form collaborator responses.

A response is first cut into fragments (XML-like wrapper tags, fenced code
blocks and single-line notations). Each fragment is then offered to a
prioritized chain of pure matcher functions; the first matcher that recognises
the fragment wins. Fragments no matcher recognises are dropped with a recorded
diagnostic, so content is never attributed to a guessed path.
"""
import dataclasses
import logging
import posixpath
import re
from pathlib import Path
from typing import Callable, Collection, Dict, List, Optional, Sequence, Tuple

from markdown_it import MarkdownIt

from .exceptions import PathSecurityError
from .file_system_manager import STATE_DIR_NAME
from .project_models import (
    ExtractionDiagnostic,
    ExtractionResult,
    FileOperation,
    FileOperationType,
)

logger = logging.getLogger(__name__)

FRAGMENT_TAG = "tag"
FRAGMENT_FENCE = "fence"
FRAGMENT_LINE = "line"

ACTION_WRITE = "write"
ACTION_DELETE = "delete"

PROTECTED_DIRS = frozenset({".git", STATE_DIR_NAME})

# Files that are commonly named without an extension.
EXTENSIONLESS_FILENAMES = frozenset({
    "Makefile", "Dockerfile", "Procfile", "Gemfile", "Rakefile", "Vagrantfile",
    "LICENSE", "README", "CHANGELOG", "Jenkinsfile", "Brewfile",
})

_EXTENSION_REGEX = re.compile(r"\.[A-Za-z][A-Za-z0-9_+\-]{0,11}$")
_FORBIDDEN_PATH_CHARS = re.compile(r"[\s<>\"'|*?(){}\[\],;`]")
_WINDOWS_DRIVE_REGEX = re.compile(r"^[A-Za-z]:/")
_PATH_SEGMENT_REGEX = re.compile(r"[\w.\-@+]+")

# --- Wrapper tags: <file path="...">...</file>, <file_content path="..."><![CDATA[...]]></file_content>, ... ---
_PAIRED_TAG_REGEX = re.compile(
    r"<(?P<tag>file_content|file|write_file|create_file|update_file|delete_file)\b(?P<attrs>[^<>]*?)(?<!/)>"
    r"(?P<body>.*?)</(?P=tag)\s*>",
    re.DOTALL | re.IGNORECASE,
)
_SELF_CLOSING_TAG_REGEX = re.compile(
    r"<(?P<tag>file|delete_file)\b(?P<attrs>[^<>]*?)/>",
    re.IGNORECASE,
)
_ATTRIBUTE_REGEX = re.compile(r"""([A-Za-z_][\w\-]*)\s*=\s*(?:"([^"]*)"|'([^']*)')""")
_CDATA_REGEX = re.compile(r"^\s*<!\[CDATA\[(.*?)\]\]>\s*$", re.DOTALL)
_INNER_FENCE_REGEX = re.compile(r"^\s*(?P<fence>`{3,}|~{3,})[^\n]*\n(?P<content>.*?)\n?(?P=fence)\s*$", re.DOTALL)

# --- Header line immediately above a fence ---
_HEADER_KEYWORD_REGEX = re.compile(
    r"^(?:#{1,6}\s*)?(?:[-*]\s+)?(?:\*\*|__)?"
    r"(?P<keyword>file\s*path|file\s*name|filename|filepath|file|path|delete(?:\s+file)?|remove(?:\s+file)?)"
    r"\s*(?:\*\*|__)?\s*:\s*(?:\*\*|__)?\s*(?P<rest>.+?)\s*$",
    re.IGNORECASE,
)
_HEADER_BARE_REGEX = re.compile(
    r"^(?:#{1,6}\s*)?(?:[-*]\s+)?(?:\*\*|__)?`?(?P<rest>[^`*\s]+)`?(?:\*\*|__)?\s*(?:\((?P<note>[^)]*)\))?\s*:?\s*$"
)
_HEADER_NOTE_REGEX = re.compile(r"^(?P<path>\S+?)\s*\((?P<note>[^)]*)\)\s*:?$")

# --- Fence info string forms ---
_INFO_ATTRIBUTE_REGEX = re.compile(r"""(?:title|path|file|filename)\s*=\s*(?:"([^"]+)"|'([^']+)'|(\S+))""", re.IGNORECASE)

# --- First line of a fence body: bare path or a path inside a comment ---
_FIRST_LINE_REGEX = re.compile(
    r"^\s*(?://|#|--|;|/\*|<!--)?\s*(?:(?:file\s*path|file\s*name|filename|filepath|file|path)\s*:\s*)?"
    r"(?P<path>[^\s]+?)\s*(?:\*/|-->)?\s*$",
    re.IGNORECASE,
)

# --- Single-line notations ---
_LINE_CANDIDATE_REGEX = re.compile(
    r"^\s*(?:[-*]\s+)?(?:\*\*)?"
    r"(?:(?:DELETE|REMOVE|CREATE|ADD|UPDATE|WRITE)(?:\s+FILE)?\b|(?:Delete|Remove|Create|Add|Update|Write)(?:\s+file)?\s*:)"
)
_LINE_DELETE_REGEX = re.compile(
    r"^\s*(?:[-*]\s+)?(?:\*\*)?(?:delete|remove)(?:\s+file)?(?:\*\*)?\s*:?\s*[`\"']?(?P<path>[^\s`\"']+)[`\"']?\s*$",
    re.IGNORECASE,
)
_LINE_WRITE_REGEX = re.compile(
    r"^\s*(?:[-*]\s+)?(?:\*\*)?(?:create|add|update|write)(?:\s+file)?(?:\*\*)?\s*:?\s*[`\"']?(?P<path>[^\s`\"']+?)[`\"']?"
    r"\s*(?:=>|::)\s*(?P<content>.*)$",
    re.IGNORECASE,
)

_GROUP_HEADING_REGEX = re.compile(r"^#{1,6}\s*group\s*:\s*(?P<name>.+?)\s*#*\s*$", re.IGNORECASE)

_DELETE_NOTES = {"delete", "deleted", "remove", "removed"}


@dataclasses.dataclass(frozen=True)
class ResponseFragment:
    """A self-contained piece of a response that may describe one file operation."""
    kind: str
    body: str
    line: int                                   # Zero-based line where the fragment starts.
    info: str = ""                              # Fence info string.
    header: str = ""                            # Nearest non-blank line above a fence.
    tag: str = ""
    attributes: Dict[str, str] = dataclasses.field(default_factory=dict)
    group_hint: Optional[str] = None

    @property
    def excerpt(self) -> str:
        text = (self.header + " " if self.header else "") + self.body.strip()
        return text[:80]


@dataclasses.dataclass(frozen=True)
class CandidateOperation:
    """What a matcher recognised: a raw (not yet normalized) path and an action."""
    raw_path: str
    action: str
    content: Optional[str]
    matcher: str


MatcherFn = Callable[[ResponseFragment], Optional[CandidateOperation]]


# --- Path helpers ---

def clean_path_token(token: str) -> str:
    """Strips markdown decoration and trailing punctuation from a path-like token."""
    token = token.strip()
    token = token.strip("`*_\"'")
    token = token.rstrip(":")
    return token.strip()


def looks_like_path(token: str) -> bool:
    """
    Heuristic for "this token is a file path": no whitespace or markup characters,
    not a URL, every segment a plain name, and either a directory separator or a
    file-like extension.
    """
    if not token or len(token) > 260:
        return False
    if "://" in token or _FORBIDDEN_PATH_CHARS.search(token):
        return False
    if token.endswith(("/", "\\")):
        return False
    normalized = _WINDOWS_DRIVE_REGEX.sub("", token.replace("\\", "/")).lstrip("/")
    segments = [s for s in normalized.split("/") if s]
    if not segments or not all(_PATH_SEGMENT_REGEX.fullmatch(s) for s in segments):
        return False
    name = segments[-1]
    if name in (".", ".."):
        return False
    if len(segments) > 1:
        return True
    if name in EXTENSIONLESS_FILENAMES:
        return True
    if name.startswith(".") and len(name) > 1 and "." not in name[1:]:
        return True  # Dotfiles such as .gitignore or .env
    return bool(_EXTENSION_REGEX.search(name))


def normalize_workspace_path(raw_path: str, workspace_root: Optional[Path] = None,
                             protected_dirs: Collection[str] = PROTECTED_DIRS) -> str:
    """
    Normalizes a collaborator-supplied path to a workspace-relative POSIX path.

    Backslashes become '/', './' prefixes and redundant separators are removed and
    '..' segments are resolved. Absolute paths are accepted only when they point
    inside `workspace_root`.

    Raises:
        PathSecurityError: If the result would leave the workspace or target a
                           protected directory.
    """
    path = clean_path_token(raw_path)
    if not path or "\0" in path:
        raise PathSecurityError("Empty path or path containing null bytes.", raw_path)
    path = path.replace("\\", "/")

    if _WINDOWS_DRIVE_REGEX.match(path) or path.startswith("/"):
        root = workspace_root.as_posix().rstrip("/") if workspace_root else None
        if root and (path == root or path.startswith(root + "/")):
            path = path[len(root):].lstrip("/")
        else:
            raise PathSecurityError(f"Absolute path '{raw_path}' is outside the workspace.", raw_path)

    normalized = posixpath.normpath(path)
    if normalized in (".", "") or normalized == ".." or normalized.startswith("../"):
        raise PathSecurityError(f"Path '{raw_path}' resolves outside the workspace.", raw_path)

    first_segment = normalized.split("/", 1)[0]
    if first_segment in protected_dirs:
        raise PathSecurityError(f"Path '{raw_path}' targets protected directory '{first_segment}'.", raw_path)
    return normalized


def _strip_content_edges(content: str) -> str:
    """Drops the single newline that wraps tag bodies while keeping the file's own trailing newline."""
    if content.startswith("\r\n"):
        content = content[2:]
    elif content.startswith("\n"):
        content = content[1:]
    stripped = content.rstrip(" \t")
    if stripped.endswith("\n"):
        return stripped
    return stripped + "\n" if stripped else stripped


def _drop_matching_first_line(content: str, path: str) -> str:
    """Removes a first line that only repeats the already-known path (e.g. `// src/a.ts`)."""
    first, sep, rest = content.partition("\n")
    match = _FIRST_LINE_REGEX.match(first)
    if match and clean_path_token(match.group("path")).replace("\\", "/").lstrip("./") == path.replace("\\", "/").lstrip("./"):
        return rest
    return content


def _parse_header_line(header: str) -> Optional[Tuple[str, str]]:
    """Returns (raw_path, action) if the header line names a file."""
    if not header:
        return None
    match = _HEADER_KEYWORD_REGEX.match(header)
    if match:
        action = ACTION_DELETE if match.group("keyword").lower().startswith(("delete", "remove")) else ACTION_WRITE
        rest = match.group("rest")
        note_match = _HEADER_NOTE_REGEX.match(rest)
        if note_match:
            rest = note_match.group("path")
            if note_match.group("note").strip().lower() in _DELETE_NOTES:
                action = ACTION_DELETE
        token = clean_path_token(rest)
        if looks_like_path(token):
            return token, action
        return None
    match = _HEADER_BARE_REGEX.match(header)
    if match:
        # Bare headers must carry some markup (heading, bold or backticks) to count.
        if header.lstrip()[:1] not in ("#", "*", "_", "`", "-"):
            return None
        token = clean_path_token(match.group("rest"))
        if looks_like_path(token):
            note = (match.group("note") or "").strip().lower()
            return token, ACTION_DELETE if note in _DELETE_NOTES else ACTION_WRITE
    return None


# --- Matchers (pure functions, ordered by priority) ---

def match_wrapper_tag(fragment: ResponseFragment) -> Optional[CandidateOperation]:
    """XML-like wrapper tags carrying a path attribute."""
    if fragment.kind != FRAGMENT_TAG:
        return None
    raw_path = fragment.attributes.get("path") or fragment.attributes.get("file") or fragment.attributes.get("name")
    if not raw_path:
        return None
    action_attr = fragment.attributes.get("action", "").lower()
    if fragment.tag == "delete_file" or action_attr in _DELETE_NOTES:
        return CandidateOperation(raw_path=raw_path, action=ACTION_DELETE, content=None, matcher="wrapper_tag")

    body = fragment.body
    cdata = _CDATA_REGEX.match(body)
    if cdata:
        body = cdata.group(1)
    else:
        inner_fence = _INNER_FENCE_REGEX.match(body)
        if inner_fence:
            body = inner_fence.group("content") + "\n"
    return CandidateOperation(raw_path=raw_path, action=ACTION_WRITE, content=_strip_content_edges(body), matcher="wrapper_tag")


def match_header_line(fragment: ResponseFragment) -> Optional[CandidateOperation]:
    """Fenced block preceded by a header line such as `File: src/app.ts` or `### `src/app.ts``."""
    if fragment.kind != FRAGMENT_FENCE:
        return None
    parsed = _parse_header_line(fragment.header)
    if not parsed:
        return None
    raw_path, action = parsed
    if action == ACTION_DELETE:
        return CandidateOperation(raw_path=raw_path, action=ACTION_DELETE, content=None, matcher="header_line")
    content = _drop_matching_first_line(fragment.body, raw_path)
    return CandidateOperation(raw_path=raw_path, action=ACTION_WRITE, content=content, matcher="header_line")


def match_fence_info_path(fragment: ResponseFragment) -> Optional[CandidateOperation]:
    """Fenced block whose info string carries the path (```ts src/a.ts, ```ts:src/a.ts, ```ts title="a.ts")."""
    if fragment.kind != FRAGMENT_FENCE or not fragment.info.strip():
        return None
    info = fragment.info.strip()
    raw_path: Optional[str] = None

    attr_match = _INFO_ATTRIBUTE_REGEX.search(info)
    if attr_match:
        raw_path = next(group for group in attr_match.groups() if group)
    else:
        tokens = info.split()
        language, _, colon_path = tokens[0].partition(":")
        if colon_path and looks_like_path(clean_path_token(colon_path)):
            raw_path = colon_path
        elif looks_like_path(clean_path_token(tokens[0])):
            raw_path = tokens[0]
        elif len(tokens) > 1 and looks_like_path(clean_path_token(tokens[1])):
            raw_path = tokens[1]

    if not raw_path or not looks_like_path(clean_path_token(raw_path)):
        return None
    raw_path = clean_path_token(raw_path)
    content = _drop_matching_first_line(fragment.body, raw_path)
    return CandidateOperation(raw_path=raw_path, action=ACTION_WRITE, content=content, matcher="fence_info")


def match_first_line_path(fragment: ResponseFragment) -> Optional[CandidateOperation]:
    """Fenced block whose first line is a bare path or a commented path."""
    if fragment.kind != FRAGMENT_FENCE:
        return None
    first, _, rest = fragment.body.partition("\n")
    if first.lstrip().startswith("#!"):
        return None  # Shebang, not a path comment.
    match = _FIRST_LINE_REGEX.match(first)
    if not match:
        return None
    token = clean_path_token(match.group("path"))
    if not looks_like_path(token):
        return None
    return CandidateOperation(raw_path=token, action=ACTION_WRITE, content=rest, matcher="first_line_path")


def match_single_line(fragment: ResponseFragment) -> Optional[CandidateOperation]:
    """Single-line notations: `DELETE: path`, `Delete file: path`, `CREATE path => content`."""
    if fragment.kind != FRAGMENT_LINE:
        return None
    delete_match = _LINE_DELETE_REGEX.match(fragment.body)
    if delete_match and looks_like_path(clean_path_token(delete_match.group("path"))):
        return CandidateOperation(raw_path=delete_match.group("path"), action=ACTION_DELETE, content=None, matcher="single_line")
    write_match = _LINE_WRITE_REGEX.match(fragment.body)
    if write_match and looks_like_path(clean_path_token(write_match.group("path"))):
        return CandidateOperation(raw_path=write_match.group("path"), action=ACTION_WRITE,
                                  content=write_match.group("content") + "\n", matcher="single_line")
    return None


MATCHERS: Dict[str, MatcherFn] = {
    "wrapper_tag": match_wrapper_tag,
    "header_line": match_header_line,
    "fence_info": match_fence_info_path,
    "first_line_path": match_first_line_path,
    "single_line": match_single_line,
}

DEFAULT_MATCHER_ORDER: List[str] = ["wrapper_tag", "header_line", "fence_info", "first_line_path", "single_line"]


# --- Fragmentation ---

def _mask(text: str, start: int, end: int) -> str:
    """Blanks out text[start:end] while keeping newlines, so line numbers stay valid."""
    return text[:start] + re.sub(r"[^\n]", " ", text[start:end]) + text[end:]


def _parse_attributes(raw: str) -> Dict[str, str]:
    attributes: Dict[str, str] = {}
    for name, double_quoted, single_quoted in _ATTRIBUTE_REGEX.findall(raw or ""):
        attributes[name.lower()] = double_quoted if double_quoted else single_quoted
    return attributes


def _group_hint_for_line(group_headings: List[Tuple[int, str]], line: int) -> Optional[str]:
    hint = None
    for heading_line, name in group_headings:
        if heading_line < line:
            hint = name
        else:
            break
    return hint


def split_fragments(text: str) -> List[ResponseFragment]:
    """Cuts a response into candidate fragments, ordered by position."""
    lines = text.split("\n")
    group_headings = [(i, m.group("name")) for i, l in enumerate(lines) if (m := _GROUP_HEADING_REGEX.match(l.strip()))]
    fragments: List[ResponseFragment] = []
    masked = text

    # 1. Wrapper tags take precedence over anything they contain.
    tag_spans: List[Tuple[int, int]] = []
    for regex in (_PAIRED_TAG_REGEX, _SELF_CLOSING_TAG_REGEX):
        for match in regex.finditer(masked):
            start, end = match.span()
            if any(s <= start < e for s, e in tag_spans):
                continue
            tag_spans.append((start, end))
            attributes = _parse_attributes(match.group("attrs"))
            line = text.count("\n", 0, start)
            fragments.append(ResponseFragment(
                kind=FRAGMENT_TAG,
                body=match.groupdict().get("body") or "",
                line=line,
                tag=match.group("tag").lower(),
                attributes=attributes,
                group_hint=attributes.get("group") or _group_hint_for_line(group_headings, line),
            ))
        for start, end in tag_spans:
            masked = _mask(masked, start, end)

    # 2. Fenced code blocks, found with a CommonMark parser.
    masked_lines = masked.split("\n")
    fenced_lines = set()
    for token in MarkdownIt("commonmark").parse(masked):
        if token.type != "fence" or not token.map:
            continue
        start_line, end_line = token.map
        fenced_lines.update(range(start_line, end_line))
        header = ""
        cursor = start_line - 1
        blank_lines = 0
        while cursor >= 0 and blank_lines <= 1:
            candidate = masked_lines[cursor].strip()
            if candidate:
                header = candidate
                break
            blank_lines += 1
            cursor -= 1
        fragments.append(ResponseFragment(
            kind=FRAGMENT_FENCE,
            body=token.content,
            line=start_line,
            info=token.info or "",
            header=header if not header.startswith(("```", "~~~")) else "",
            group_hint=_group_hint_for_line(group_headings, start_line),
        ))

    # 3. Single-line notations outside of tags and fences.
    for index, line in enumerate(masked_lines):
        if index in fenced_lines or not line.strip():
            continue
        if _LINE_CANDIDATE_REGEX.match(line):
            fragments.append(ResponseFragment(
                kind=FRAGMENT_LINE,
                body=line.strip(),
                line=index,
                group_hint=_group_hint_for_line(group_headings, index),
            ))

    fragments.sort(key=lambda f: f.line)
    return fragments


class FileOperationExtractor:
    """
    Parses a raw collaborator response into FileOperation candidates.

    The extractor never touches the filesystem: `known_paths` (the workspace
    metadata collaborator's view of existing files) decides between Add and
    Update, and every path is normalized before an operation is built.
    """
    def __init__(self, matcher_order: Optional[Sequence[str]] = None,
                 workspace_root: Optional[str | Path] = None,
                 protected_dirs: Collection[str] = PROTECTED_DIRS):
        self.matcher_order = self._validate_order(matcher_order or DEFAULT_MATCHER_ORDER)
        self.workspace_root = Path(workspace_root).resolve() if workspace_root else None
        self.protected_dirs = frozenset(protected_dirs)

    @staticmethod
    def _validate_order(order: Sequence[str]) -> List[str]:
        unknown = [name for name in order if name not in MATCHERS]
        if unknown:
            raise ValueError(f"Unknown extraction matcher(s): {unknown}. Valid names: {list(MATCHERS)}")
        return list(order)

    def extract(self, raw_text: str, known_paths: Collection[str],
                matcher_order: Optional[Sequence[str]] = None) -> ExtractionResult:
        """
        Extracts file operations from `raw_text`.

        Args:
            raw_text: The unstructured collaborator response.
            known_paths: Workspace-relative paths that currently exist.
            matcher_order: Optional override of the matcher priority for this call.

        Returns:
            An ExtractionResult with operations in response order and a diagnostic
            for every fragment that was dropped.
        """
        result = ExtractionResult()
        if not raw_text or not raw_text.strip():
            result.diagnostics.append(ExtractionDiagnostic(fragment_kind="response", reason="Empty response."))
            return result

        order = self._validate_order(matcher_order) if matcher_order else self.matcher_order
        matchers = [MATCHERS[name] for name in order]
        seen_paths: Dict[str, int] = {}

        for fragment in split_fragments(raw_text):
            candidate = next((c for c in (matcher(fragment) for matcher in matchers) if c is not None), None)
            if candidate is None:
                logger.debug(f"Dropping unrecognised {fragment.kind} fragment at line {fragment.line + 1}: '{fragment.excerpt}'")
                result.diagnostics.append(ExtractionDiagnostic(
                    fragment_kind=fragment.kind,
                    reason="No supported file format recognised in fragment.",
                    excerpt=fragment.excerpt,
                ))
                continue

            try:
                path = normalize_workspace_path(candidate.raw_path, self.workspace_root, self.protected_dirs)
            except PathSecurityError as e:
                logger.warning(f"Rejected path '{candidate.raw_path}' from {candidate.matcher}: {e}")
                result.diagnostics.append(ExtractionDiagnostic(
                    fragment_kind=fragment.kind,
                    reason=f"PathSecurityError: {e}",
                    excerpt=fragment.excerpt,
                    path=candidate.raw_path,
                ))
                continue

            if candidate.action == ACTION_DELETE:
                if path not in known_paths:
                    result.diagnostics.append(ExtractionDiagnostic(
                        fragment_kind=fragment.kind,
                        reason="Delete requested for a file that does not exist in the workspace.",
                        excerpt=fragment.excerpt,
                        path=path,
                    ))
                    continue
                op_type = FileOperationType.DELETE
            else:
                op_type = FileOperationType.UPDATE if path in known_paths else FileOperationType.ADD

            if path in seen_paths:
                logger.warning(f"Path '{path}' appears {seen_paths[path] + 1} times in one response; keeping every occurrence in order.")
            seen_paths[path] = seen_paths.get(path, 0) + 1

            result.operations.append(FileOperation(
                type=op_type,
                path=path,
                content=candidate.content if op_type != FileOperationType.DELETE else None,
                source_format=candidate.matcher,
                group_hint=fragment.group_hint,
            ))

        logger.info(f"Extracted {len(result.operations)} operation(s); dropped {len(result.diagnostics)} fragment(s).")
        return result
