"""
Diff-Based File Editor.

Files are changed by exact replacement, unified diff, regex replacement
or full overwrite. Every mutation is a read-check-write cycle:

1. Read the current bytes and compute their content hash
2. If the caller supplied expected_prior_content_hash, compare it
3. Compute the new content in memory (failures leave the file alone)
4. Write a temp file next to the target, fsync it, os.replace() it over

The hash precondition is the only consistency mechanism. There is no
locking; a concurrent external writer is detected as a conflict on the
next edit that carries a hash.
"""

import difflib
import hashlib
import logging
import os
import re
import stat
import tempfile
from enum import Enum
from pathlib import Path

from aicli.patch import DEFAULT_MAX_FUZZ, PatchError, apply_patch, parse_patch
from aicli.types import EditMode, EditOperation, EditResult

logger = logging.getLogger(__name__)

HASH_PREFIX = "sha256:"


class EditErrorKind(str, Enum):
    """Why an edit was rejected."""
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_PATCH = "invalid_patch"
    IO_FAILURE = "io_failure"


class EditError(Exception):
    """An edit could not be applied. The file on disk is unchanged."""

    def __init__(self, kind: EditErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


def content_hash(data: str | bytes) -> str:
    """Hash file content as ``sha256:<hex>`` over its UTF-8 bytes."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return HASH_PREFIX + hashlib.sha256(data).hexdigest()


def render_diff(old: str, new: str, name: str, context: int = 3) -> str:
    """Unified diff from old to new, with a/ and b/ headers for name."""
    if old == new:
        return f"(no changes to {name})"
    lines = difflib.unified_diff(
        old.splitlines(keepends=True),
        new.splitlines(keepends=True),
        fromfile=f"a/{name}",
        tofile=f"b/{name}",
        n=context,
    )
    out = []
    for line in lines:
        if line.endswith("\n"):
            out.append(line)
        else:
            out.append(line + "\n\\ No newline at end of file\n")
    return "".join(out).rstrip("\n")


class FileEditor:
    """Applies EditOperations to files under a root directory."""

    def __init__(self, root: str | Path, max_fuzz: int = DEFAULT_MAX_FUZZ) -> None:
        self.root = Path(root).expanduser().resolve()
        self.max_fuzz = max_fuzz

    def resolve(self, path: str) -> Path:
        """Resolve a path relative to the editor root."""
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self.root / candidate
        return candidate.resolve()

    def apply(self, op: EditOperation) -> EditResult:
        """Apply one operation. Raises EditError on any failure."""
        path = self._target(op)
        logger.debug(f"File edit {op.mode.value} on {path}")

        if op.mode is EditMode.OVERWRITE:
            return self._overwrite(path, op)

        raw = self._read_bytes(path)
        current_hash = content_hash(raw)
        content = self._decode(raw, path)

        if op.mode is EditMode.READ:
            return EditResult(
                path=str(path),
                new_content_hash=current_hash,
                message=f"Read {len(content)} characters from {path}",
                content=content,
            )
        if op.mode is EditMode.SEARCH:
            return self._search(path, content, current_hash, op.payload)

        self._check_hash(path, op.expected_prior_content_hash, current_hash)
        new_content, message = self._edit(path, content, op)

        self._write_atomic(path, new_content)
        logger.info(message)
        return EditResult(
            path=str(path),
            new_content_hash=content_hash(new_content),
            message=message,
        )

    def preview(self, op: EditOperation, context: int = 3) -> str:
        """
        Unified diff of what apply(op) would write, without touching the file.

        Returns an empty string for read and search. Raises EditError when
        the new content cannot be computed (missing file, pattern without
        matches, patch that does not apply). Hash preconditions are not
        checked here; apply() checks them against the file as it is then.
        """
        if not op.mode.is_mutation:
            return ""
        path = self._target(op)
        if op.mode is EditMode.OVERWRITE:
            if path.is_dir():
                raise EditError(EditErrorKind.IO_FAILURE, f"Path is a directory: {path}")
            old = self._decode(self._read_bytes(path), path) if path.exists() else ""
            new = op.payload
        else:
            old = self._decode(self._read_bytes(path), path)
            new, _ = self._edit(path, old, op)
        return render_diff(old, new, op.path, context=context)

    def _target(self, op: EditOperation) -> Path:
        if not op.path or not op.path.strip():
            raise EditError(EditErrorKind.NOT_FOUND, "No path provided")
        return self.resolve(op.path)

    def _edit(self, path: Path, content: str, op: EditOperation) -> tuple[str, str]:
        if op.mode is EditMode.REPLACE_EXACT:
            return self._replace_exact(path, content, op)
        if op.mode is EditMode.APPLY_PATCH:
            return self._apply_patch(path, content, op.payload)
        if op.mode is EditMode.SEARCH_AND_REPLACE:
            return self._search_and_replace(path, content, op)
        raise EditError(EditErrorKind.INVALID_PATCH, f"Unsupported edit mode: {op.mode}")

    # =========================================================================
    # Modes
    # =========================================================================

    def _search(self, path: Path, content: str, current_hash: str, pattern: str) -> EditResult:
        regex = self._compile(pattern)
        matches = tuple((m.start(), m.group(0)) for m in regex.finditer(content))
        if matches:
            lines = [
                f"offset {offset} (line {content.count(chr(10), 0, offset) + 1}): {text}"
                for offset, text in matches
            ]
            message = f"{len(matches)} match(es) in {path}:\n" + "\n".join(lines)
        else:
            message = f"No matches for {pattern!r} in {path}"
        return EditResult(
            path=str(path),
            new_content_hash=current_hash,
            message=message,
            matches=matches,
        )

    def _replace_exact(self, path: Path, content: str, op: EditOperation) -> tuple[str, str]:
        old = op.payload
        if not old:
            raise EditError(EditErrorKind.INVALID_PATCH, "Text to replace must not be empty")
        count = content.count(old)
        if count == 0:
            raise EditError(
                EditErrorKind.INVALID_PATCH,
                f"Text to replace not found in {path}: {old[:100]!r}",
            )
        if count > 1:
            raise EditError(
                EditErrorKind.INVALID_PATCH,
                f"Text to replace appears {count} times in {path}; include more context to make it unique",
            )
        new_content = content.replace(old, op.replacement or "", 1)
        return new_content, f"Replaced 1 occurrence in {path}"

    def _apply_patch(self, path: Path, content: str, diff: str) -> tuple[str, str]:
        try:
            patch = parse_patch(diff)
            new_content = apply_patch(content, patch, max_fuzz=self.max_fuzz)
        except PatchError as e:
            raise EditError(EditErrorKind.INVALID_PATCH, f"Patch not applied to {path}: {e}") from e
        return new_content, f"Applied {len(patch.hunks)} hunk(s) to {path}"

    def _search_and_replace(self, path: Path, content: str, op: EditOperation) -> tuple[str, str]:
        regex = self._compile(op.payload)
        try:
            new_content, count = regex.subn(op.replacement or "", content)
        except (re.error, IndexError) as e:
            raise EditError(EditErrorKind.INVALID_PATCH, f"Invalid replacement: {e}") from e
        if count == 0:
            raise EditError(
                EditErrorKind.INVALID_PATCH,
                f"Pattern {op.payload!r} has no matches in {path}",
            )
        return new_content, f"Replaced {count} match(es) in {path}"

    def _overwrite(self, path: Path, op: EditOperation) -> EditResult:
        if path.is_dir():
            raise EditError(EditErrorKind.IO_FAILURE, f"Path is a directory: {path}")
        if path.exists():
            current_hash = content_hash(self._read_bytes(path))
            if op.expected_prior_content_hash is None:
                raise EditError(
                    EditErrorKind.CONFLICT,
                    f"{path} already exists; read it first and pass its content hash to overwrite",
                )
            self._check_hash(path, op.expected_prior_content_hash, current_hash)
            message = f"Overwrote {path} ({len(op.payload)} characters)"
        else:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise EditError(EditErrorKind.IO_FAILURE, f"Cannot create {path.parent}: {e}") from e
            message = f"Created {path} ({len(op.payload)} characters)"

        self._write_atomic(path, op.payload)
        logger.info(message)
        return EditResult(
            path=str(path),
            new_content_hash=content_hash(op.payload),
            message=message,
        )

    # =========================================================================
    # I/O helpers
    # =========================================================================

    def _check_hash(self, path: Path, expected: str | None, current: str) -> None:
        if expected is not None and expected != current:
            raise EditError(
                EditErrorKind.CONFLICT,
                f"{path} changed since it was read (expected {expected}, found {current})",
            )

    def _compile(self, pattern: str) -> re.Pattern:
        if not pattern:
            raise EditError(EditErrorKind.INVALID_PATCH, "Pattern must not be empty")
        try:
            return re.compile(pattern, re.MULTILINE)
        except re.error as e:
            raise EditError(EditErrorKind.INVALID_PATCH, f"Invalid regex {pattern!r}: {e}") from e

    def _read_bytes(self, path: Path) -> bytes:
        if not path.exists():
            raise EditError(EditErrorKind.NOT_FOUND, f"File not found: {path}")
        if path.is_dir():
            raise EditError(EditErrorKind.IO_FAILURE, f"Path is a directory: {path}")
        try:
            return path.read_bytes()
        except OSError as e:
            raise EditError(EditErrorKind.IO_FAILURE, f"Cannot read {path}: {e}") from e

    def _decode(self, raw: bytes, path: Path) -> str:
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EditError(EditErrorKind.IO_FAILURE, f"{path} is not valid UTF-8 text: {e}") from e

    def _write_atomic(self, path: Path, content: str) -> None:
        """Write via temp file + os.replace so readers never see a partial file."""
        mode = None
        if path.exists():
            mode = stat.S_IMODE(path.stat().st_mode)
        try:
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        except OSError as e:
            raise EditError(EditErrorKind.IO_FAILURE, f"Cannot write {path}: {e}") from e
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content.encode("utf-8"))
                f.flush()
                os.fsync(f.fileno())
            if mode is not None:
                os.chmod(tmp_name, mode)
            os.replace(tmp_name, path)
        except OSError as e:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            logger.error(f"Atomic write to {path} failed: {e}")
            raise EditError(EditErrorKind.IO_FAILURE, f"Cannot write {path}: {e}") from e
