"""Line-level diff between a stored pure render and the file on disk."""

from __future__ import annotations

from difflib import SequenceMatcher

NO_DIFFERENCES = "No differences found.\n"

DELETE_PREFIX = "- "
INSERT_PREFIX = "+ "
EQUAL_PREFIX = "  "


def split_lines(content: bytes) -> list[bytes]:
    """Split ``content`` into lines that keep their ``\\n``.

    A final line without a newline stays distinct from the same text with one.
    """

    lines = [line + b"\n" for line in content.split(b"\n")]
    lines[-1] = lines[-1][:-1]
    if not lines[-1]:
        lines.pop()
    return lines


def display_line(line: bytes) -> str:
    return line.removesuffix(b"\n").decode("utf-8", errors="replace")


def _tokenize(lines: list[bytes], table: dict[bytes, int]) -> list[int]:
    return [table.setdefault(line, len(table)) for line in lines]


def unified_diff(
    pure_render: bytes,
    current: bytes,
    *,
    pure_label: str = "pure render (from history)",
    current_label: str = "edited file",
) -> str:
    """Return a readable diff of ``pure_render`` (expected) against ``current``.

    Each distinct raw line, newline included, is mapped to an integer token so
    the sequence matcher compares whole lines. Lines only in the pure render
    are prefixed ``"- "``, lines only on disk ``"+ "`` and shared lines two
    spaces. Decoding happens only for display.
    """

    if pure_render == current:
        return NO_DIFFERENCES

    old_lines = split_lines(pure_render)
    new_lines = split_lines(current)
    table: dict[bytes, int] = {}
    old_tokens = _tokenize(old_lines, table)
    new_tokens = _tokenize(new_lines, table)

    body: list[str] = []
    matcher = SequenceMatcher(None, old_tokens, new_tokens, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            body.extend(EQUAL_PREFIX + display_line(line) for line in old_lines[i1:i2])
            continue
        if tag in ("delete", "replace"):
            body.extend(DELETE_PREFIX + display_line(line) for line in old_lines[i1:i2])
        if tag in ("insert", "replace"):
            body.extend(INSERT_PREFIX + display_line(line) for line in new_lines[j1:j2])

    header = [f"--- {pure_label}", f"+++ {current_label}"]
    return "\n".join(header + body) + "\n"
