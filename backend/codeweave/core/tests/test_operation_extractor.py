# backend/codeweave/core/tests/test_operation_extractor.py
import textwrap
from pathlib import Path

import pytest

from codeweave.core.exceptions import PathSecurityError
from codeweave.core.operation_extractor import (
    DEFAULT_MATCHER_ORDER,
    FRAGMENT_FENCE,
    FRAGMENT_LINE,
    FRAGMENT_TAG,
    FileOperationExtractor,
    looks_like_path,
    normalize_workspace_path,
    split_fragments,
)
from codeweave.core.project_models import FileOperationType

# --- Pytest Fixtures ---

@pytest.fixture
def extractor() -> FileOperationExtractor:
    return FileOperationExtractor()

# --- Test Cases ---

def test_three_formats_in_one_response(extractor: FileOperationExtractor):
    response = textwrap.dedent("""\
        Here is the first file:

        ```ts src/a.ts
        export const a = 1;
        ```

        File: src/b.py
        ```python
        B = 2
        ```

        <file path="src/c.txt">
        hello
        </file>
        """)
    result = extractor.extract(response, known_paths=set())

    assert [(op.type, op.path) for op in result.operations] == [
        (FileOperationType.ADD, "src/a.ts"),
        (FileOperationType.ADD, "src/b.py"),
        (FileOperationType.ADD, "src/c.txt"),
    ]
    assert [op.content for op in result.operations] == ["export const a = 1;\n", "B = 2\n", "hello\n"]
    assert [op.source_format for op in result.operations] == ["fence_info", "header_line", "wrapper_tag"]
    assert result.diagnostics == []


def test_traversal_path_is_dropped_with_diagnostic(extractor: FileOperationExtractor):
    response = textwrap.dedent("""\
        File: ../../etc/passwd
        ```
        root:x:0:0
        ```
        """)
    result = extractor.extract(response, known_paths=set())

    assert result.operations == []
    assert len(result.diagnostics) == 1
    assert result.diagnostics[0].reason.startswith("PathSecurityError")
    assert result.diagnostics[0].path == "../../etc/passwd"


def test_known_path_becomes_update(extractor: FileOperationExtractor):
    response = "```python app/main.py\nprint('hi')\n```\n"
    result = extractor.extract(response, known_paths={"app/main.py"})
    assert result.operations[0].type == FileOperationType.UPDATE


def test_unrecognised_fence_is_dropped_not_guessed(extractor: FileOperationExtractor):
    response = "Try running this:\n\n```bash\nnpm install\n```\n"
    result = extractor.extract(response, known_paths=set())

    assert result.operations == []
    assert len(result.diagnostics) == 1
    assert result.diagnostics[0].fragment_kind == FRAGMENT_FENCE


@pytest.mark.parametrize("response", [
    "```bash\n#!/bin/sh\necho hi\n```\n",
    "```python\n#!/usr/bin/env python3\nprint('hi')\n```\n",
])
def test_shebang_is_not_taken_for_a_path(extractor: FileOperationExtractor, response: str):
    result = extractor.extract(response, known_paths=set())

    assert result.operations == []
    assert len(result.diagnostics) == 1
    assert result.diagnostics[0].fragment_kind == FRAGMENT_FENCE


def test_empty_response_yields_diagnostic(extractor: FileOperationExtractor):
    result = extractor.extract("   \n", known_paths=set())
    assert result.operations == []
    assert result.diagnostics[0].reason == "Empty response."


class TestFormats:
    def test_first_line_comment_path(self, extractor: FileOperationExtractor):
        response = "```javascript\n// src/util.js\nexport default 1;\n```\n"
        op = extractor.extract(response, known_paths=set()).operations[0]
        assert op.path == "src/util.js"
        assert op.content == "export default 1;\n"
        assert op.source_format == "first_line_path"

    def test_fence_info_title_attribute(self, extractor: FileOperationExtractor):
        response = '```tsx title="components/Button.tsx"\nexport {}\n```\n'
        op = extractor.extract(response, known_paths=set()).operations[0]
        assert op.path == "components/Button.tsx"

    def test_fence_info_colon_form(self, extractor: FileOperationExtractor):
        response = "```css:styles/site.css\nbody {}\n```\n"
        op = extractor.extract(response, known_paths=set()).operations[0]
        assert op.path == "styles/site.css"

    def test_bold_backticked_header(self, extractor: FileOperationExtractor):
        response = "**`README.md`**\n```markdown\n# Title\n```\n"
        op = extractor.extract(response, known_paths=set()).operations[0]
        assert op.path == "README.md"
        assert op.content == "# Title\n"

    def test_cdata_wrapper(self, extractor: FileOperationExtractor):
        response = '<file_content path="index.html"><![CDATA[<p>x</p>\n]]></file_content>'
        op = extractor.extract(response, known_paths=set()).operations[0]
        assert op.path == "index.html"
        assert op.content == "<p>x</p>\n"

    def test_wrapper_tag_wins_over_inner_fence(self, extractor: FileOperationExtractor):
        response = '<file path="a.py">\n```python\nx = 1\n```\n</file>\n'
        result = extractor.extract(response, known_paths=set())
        assert len(result.operations) == 1
        assert result.operations[0].content == "x = 1\n"

    def test_single_line_delete_of_known_file(self, extractor: FileOperationExtractor):
        result = extractor.extract("DELETE: old/legacy.js\n", known_paths={"old/legacy.js"})
        assert [(op.type, op.path, op.content) for op in result.operations] == [
            (FileOperationType.DELETE, "old/legacy.js", None),
        ]

    def test_delete_of_unknown_file_is_dropped(self, extractor: FileOperationExtractor):
        result = extractor.extract("DELETE: ghost.js\n", known_paths=set())
        assert result.operations == []
        assert result.diagnostics[0].path == "ghost.js"

    def test_delete_file_tag(self, extractor: FileOperationExtractor):
        result = extractor.extract('<delete_file path="tmp/x.txt"/>', known_paths={"tmp/x.txt"})
        assert result.operations[0].type == FileOperationType.DELETE

    def test_single_line_write(self, extractor: FileOperationExtractor):
        result = extractor.extract("CREATE .env => DEBUG=1\n", known_paths=set())
        op = result.operations[0]
        assert (op.type, op.path, op.content) == (FileOperationType.ADD, ".env", "DEBUG=1\n")


def test_duplicate_paths_are_kept_in_order(extractor: FileOperationExtractor):
    response = "```py a.py\nv1\n```\n\n```py a.py\nv2\n```\n"
    result = extractor.extract(response, known_paths=set())
    assert [op.content for op in result.operations] == ["v1\n", "v2\n"]


def test_group_heading_becomes_group_hint(extractor: FileOperationExtractor):
    response = textwrap.dedent("""\
        ## Group: backend
        ```py api/app.py
        app = 1
        ```
        ## Group: frontend
        ```js web/app.js
        let app;
        ```
        """)
    result = extractor.extract(response, known_paths=set())
    assert [op.group_hint for op in result.operations] == ["backend", "frontend"]


def test_matcher_order_override_changes_winner(extractor: FileOperationExtractor):
    response = "File: one.py\n```py two.py\nx\n```\n"
    default = extractor.extract(response, known_paths=set())
    rotated = extractor.extract(response, known_paths=set(),
                                matcher_order=["fence_info"] + [m for m in DEFAULT_MATCHER_ORDER if m != "fence_info"])
    assert default.operations[0].path == "one.py"
    assert rotated.operations[0].path == "two.py"


def test_unknown_matcher_name_is_rejected():
    with pytest.raises(ValueError):
        FileOperationExtractor(matcher_order=["wrapper_tag", "telepathy"])


def test_split_fragments_orders_by_position():
    response = 'DELETE: a.txt\n<file path="b.txt">b</file>\n```py c.py\nc\n```\n'
    kinds = [f.kind for f in split_fragments(response)]
    assert kinds == [FRAGMENT_LINE, FRAGMENT_TAG, FRAGMENT_FENCE]


class TestPathNormalization:
    @pytest.mark.parametrize("raw, expected", [
        ("src\\app\\main.py", "src/app/main.py"),
        ("./src//a.py", "src/a.py"),
        ("src/x/../a.py", "src/a.py"),
        ("`src/a.py`", "src/a.py"),
    ])
    def test_normalizes(self, raw, expected):
        assert normalize_workspace_path(raw) == expected

    @pytest.mark.parametrize("raw", [
        "../../etc/passwd",
        "/etc/passwd",
        "C:\\Windows\\system.ini",
        ".git/config",
        ".codeweave/config.json",
        "..",
    ])
    def test_rejects(self, raw):
        with pytest.raises(PathSecurityError):
            normalize_workspace_path(raw)

    def test_absolute_path_inside_workspace_is_relativized(self, tmp_path: Path):
        root = tmp_path.resolve()
        assert normalize_workspace_path(f"{root.as_posix()}/src/a.py", root) == "src/a.py"


@pytest.mark.parametrize("token, expected", [
    ("src/a.ts", True),
    ("Makefile", True),
    (".gitignore", True),
    ("a.py", True),
    ("https://example.com/a.js", False),
    ("hello world.txt", False),
    ("python", False),
    ("src/", False),
    ("!/bin/sh", False),
    ("src/#draft/a.py", False),
    ("../../etc/passwd", True),
    ("node_modules/@types/node/index.d.ts", True),
    ("C:\\Windows\\system.ini", True),
])
def test_looks_like_path(token, expected):
    assert looks_like_path(token) is expected
