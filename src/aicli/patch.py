"""
Unified diff parsing and fuzzy application.

Model-written diffs are often slightly off: line numbers drift, hunk
counts are wrong, trailing whitespace goes missing. The applier is
lenient about those, and strict about content:

- Hunk counts in ``@@`` headers are advisory; the body lines are what
  gets applied.
- Each hunk is looked for at its recorded offset first, then at offsets
  up to ``max_fuzz`` lines away, nearest first.
- Context and removed lines must match exactly, or, failing that, match
  with trailing whitespace ignored.
- Either every hunk applies or the whole patch fails.
"""

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_MAX_FUZZ = 3

_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_PREAMBLE_PREFIXES = ("diff ", "index ", "--- ", "+++ ", "new file mode", "deleted file mode", "similarity ")


class PatchError(ValueError):
    """The diff is malformed or does not apply to the content."""


@dataclass(frozen=True)
class Hunk:
    """One ``@@`` section of a unified diff."""
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: tuple[tuple[str, str], ...]

    @property
    def old_lines(self) -> list[str]:
        return [text for op, text in self.lines if op in (" ", "-")]

    @property
    def new_lines(self) -> list[str]:
        return [text for op, text in self.lines if op in (" ", "+")]


@dataclass(frozen=True)
class Patch:
    """A parsed unified diff for a single file."""
    hunks: tuple[Hunk, ...]
    old_path: str | None = None
    new_path: str | None = None


def parse_patch(text: str) -> Patch:
    """Parse a single-file unified diff. Raises PatchError if malformed."""
    lines = text.replace("\r\n", "\n").split("\n")
    old_path = new_path = None
    hunks: list[Hunk] = []
    index = 0

    while index < len(lines) and not lines[index].startswith("@@"):
        line = lines[index]
        if line.startswith("--- "):
            old_path = _header_path(line[4:])
        elif line.startswith("+++ "):
            new_path = _header_path(line[4:])
        elif line.strip() and not line.startswith(_PREAMBLE_PREFIXES):
            raise PatchError(f"Unexpected line before first hunk: {line!r}")
        index += 1

    while index < len(lines):
        match = _HUNK_HEADER.match(lines[index])
        if not match:
            if _starts_file_header(lines, index):
                raise PatchError("Patch touches more than one file")
            if not lines[index].strip():
                index += 1
                continue
            raise PatchError(f"Expected hunk header, got {lines[index]!r}")
        index += 1
        body: list[tuple[str, str]] = []
        while index < len(lines) and not lines[index].startswith("@@"):
            line = lines[index]
            if _starts_file_header(lines, index):
                break
            if line.startswith("\\"):
                pass
            elif line == "":
                body.append((" ", ""))
            elif line[0] in (" ", "-", "+"):
                body.append((line[0], line[1:]))
            else:
                raise PatchError(f"Unexpected line in hunk: {line!r}")
            index += 1
        while body and body[-1] == (" ", ""):
            body.pop()
        if not body:
            raise PatchError(f"Empty hunk: {match.group(0)}")
        hunks.append(Hunk(
            old_start=int(match.group(1)),
            old_count=int(match.group(2)) if match.group(2) is not None else 1,
            new_start=int(match.group(3)),
            new_count=int(match.group(4)) if match.group(4) is not None else 1,
            lines=tuple(body),
        ))

    if not hunks:
        raise PatchError("Patch contains no hunks")
    return Patch(hunks=tuple(hunks), old_path=old_path, new_path=new_path)


def apply_patch(content: str, patch: Patch | str, max_fuzz: int = DEFAULT_MAX_FUZZ) -> str:
    """
    Apply patch to content and return the new content.

    Raises PatchError if any hunk cannot be located; content is never
    partially patched.
    """
    if isinstance(patch, str):
        patch = parse_patch(patch)

    newline = "\r\n" if "\r\n" in content else "\n"
    trailing_newline = content.endswith(newline) or content == ""
    body = content[: -len(newline)] if content.endswith(newline) else content
    lines = body.split(newline) if body else []

    offset = 0
    floor = 0
    for number, hunk in enumerate(patch.hunks, start=1):
        old = hunk.old_lines
        expected = hunk.old_start - 1 + offset if old else hunk.old_start + offset
        position = _locate(lines, old, expected, floor, max_fuzz)
        if position is None:
            raise PatchError(
                f"Hunk {number} (@@ -{hunk.old_start},{hunk.old_count} @@) does not match "
                f"within {max_fuzz} lines of its recorded position"
            )
        if position != expected:
            logger.debug(f"Hunk {number} applied at offset {position - expected:+d}")
        new = hunk.new_lines
        lines[position:position + len(old)] = new
        offset += position - expected + len(new) - len(old)
        floor = position + len(new)

    result = newline.join(lines)
    if lines and trailing_newline:
        result += newline
    return result


def _locate(lines: list[str], old: list[str], expected: int, floor: int, max_fuzz: int) -> int | None:
    candidates = [expected]
    for distance in range(1, max_fuzz + 1):
        candidates.extend((expected + distance, expected - distance))

    for compare in (_exact, _loose):
        for position in candidates:
            if position < floor or position + len(old) > len(lines):
                continue
            if compare(lines[position:position + len(old)], old):
                return position
    return None


def _exact(actual: list[str], expected: list[str]) -> bool:
    return actual == expected


def _loose(actual: list[str], expected: list[str]) -> bool:
    return [a.rstrip() for a in actual] == [e.rstrip() for e in expected]


def _header_path(value: str) -> str | None:
    path = value.split("\t")[0].strip()
    if path == "/dev/null" or not path:
        return None
    if path[:2] in ("a/", "b/"):
        path = path[2:]
    return path


def _starts_file_header(lines: list[str], index: int) -> bool:
    return (
        lines[index].startswith("--- ")
        and index + 1 < len(lines)
        and lines[index + 1].startswith("+++ ")
    )
