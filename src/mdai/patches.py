# mdai: Patch language: parse patch text and structured patch objects into FilePatch models, render them for
# review, and apply them to file text and to the project tree.

import logging
import os
import pathlib
from typing import Any, List, Optional, Tuple

from pydantic import TypeAdapter, ValidationError

from .errors import MalformedInput, PatchConflict, PathEscape, should_never_happen
from .fs import read_text, safe_abs, write_text_atomic
from .models import (
    AddPatch,
    DeletePatch,
    FilePatch,
    MovePatch,
    PatchResult,
    ReplacePatch,
    UpdatePatch,
)

logger = logging.getLogger(__name__)

ADD_DECL = "*** Add File:"
DELETE_DECL = "*** Delete File:"
MOVE_DECL = "*** Move File:"
UPDATE_DECL = "*** Update File:"
REPLACE_DECL = "*** Replace File:"

ADD_OPEN = "<<< ADD"
MOVE_OPEN = "<<< TO"
UPDATE_OPEN = "<<< SEARCH"
REPLACE_OPEN = "<<< REPLACE WITH"
SEPARATOR = "==="
TERMINATOR = ">>>"

_DECLARATIONS = [ADD_DECL, DELETE_DECL, MOVE_DECL, UPDATE_DECL, REPLACE_DECL]
_OPENERS = {ADD_DECL: ADD_OPEN, MOVE_DECL: MOVE_OPEN, UPDATE_DECL: UPDATE_OPEN, REPLACE_DECL: REPLACE_OPEN}

_patch_list_adapter = TypeAdapter(List[FilePatch])


# -----------------------------
# Parsing
# -----------------------------

def _declaration(line: str) -> Optional[str]:
    for decl in _DECLARATIONS:
        if line.startswith(decl):
            return decl
    return None


def _read_until(lines: List[str], i: int, stops: Tuple[str, ...]) -> Tuple[List[str], Optional[int]]:
    """Collect lines from i until a line whose trimmed text is in stops; returns (body, stop_index or None)."""
    body: List[str] = []
    while i < len(lines):
        if lines[i].strip() in stops:
            return body, i
        body.append(lines[i])
        i += 1
    return body, None


def _build_patch(decl: str, path: str, lines: List[str], i: int) -> Tuple[Optional[Any], int]:
    """
    Parse the body of a block whose opener sits at lines[i - 1].

    Returns (patch, next_index), or (None, i) when the body is never terminated.
    """
    if decl == UPDATE_DECL:
        search, sep = _read_until(lines, i, (SEPARATOR,))
        if sep is None:
            return None, i
        replace, end = _read_until(lines, sep + 1, (TERMINATOR,))
        if end is None:
            return None, i
        return UpdatePatch(path=path, search="\n".join(search), replace="\n".join(replace)), end + 1
    body, end = _read_until(lines, i, (TERMINATOR,))
    if end is None:
        return None, i
    text = "\n".join(body)
    if decl == ADD_DECL:
        return AddPatch(path=path, content=text), end + 1
    if decl == REPLACE_DECL:
        return ReplacePatch(path=path, content=text), end + 1
    if decl == MOVE_DECL:
        return MovePatch(path=path, to=text.strip()), end + 1
    should_never_happen("unexpected patch declaration", decl)


def parse_patch_text(patch_text: str) -> List[FilePatch]:
    """
    Parse one or more concatenated patch blocks.

    Lines outside of blocks are skipped. A block that is missing its opener or
    its terminator produces no patch and scanning resumes right after it, so
    later blocks still parse.

    Raises:
        MalformedInput: If any declaration did not produce a complete patch.
    """
    lines = patch_text.split("\n")
    patches: List[FilePatch] = []
    incomplete: List[str] = []
    i = 0
    while i < len(lines):
        line = lines[i].strip()
        decl = _declaration(line)
        if decl is None:
            i += 1
            continue
        path = line[len(decl):].strip()
        if decl == DELETE_DECL:
            patches.append(DeletePatch(path=path))
            i += 1
            continue
        if i + 1 >= len(lines) or lines[i + 1].strip() != _OPENERS[decl]:
            incomplete.append(line)
            i += 1
            continue
        patch, nxt = _build_patch(decl, path, lines, i + 2)
        if patch is None:
            incomplete.append(line)
            i += 2
            continue
        patches.append(patch)
        i = nxt
    if incomplete:
        raise MalformedInput(
            "The number of patch declarations does not match the number of parsed patches. "
            f"Incomplete: {', '.join(incomplete)}"
        )
    return patches


def parse_patch_objects(data: Any) -> List[FilePatch]:
    """Validate a structured patch array ([{type, path, ...}]) into FilePatch models."""
    try:
        return _patch_list_adapter.validate_python(data)
    except ValidationError as e:
        raise MalformedInput(f"invalid patch objects: {e}")


def format_patch(patch: FilePatch) -> str:
    """Render a patch in the text encoding (for showing it to the user)."""
    if isinstance(patch, AddPatch):
        return "\n".join([f"{ADD_DECL} {patch.path}", ADD_OPEN, patch.content, TERMINATOR])
    if isinstance(patch, DeletePatch):
        return f"{DELETE_DECL} {patch.path}"
    if isinstance(patch, MovePatch):
        return "\n".join([f"{MOVE_DECL} {patch.path}", MOVE_OPEN, patch.to, TERMINATOR])
    if isinstance(patch, UpdatePatch):
        return "\n".join(
            [f"{UPDATE_DECL} {patch.path}", UPDATE_OPEN, patch.search, SEPARATOR, patch.replace, TERMINATOR]
        )
    if isinstance(patch, ReplacePatch):
        return "\n".join([f"{REPLACE_DECL} {patch.path}", REPLACE_OPEN, patch.content, TERMINATOR])
    should_never_happen("unexpected patch type", patch)


def patch_label(patch: FilePatch) -> str:
    """Short one-line label, e.g. 'MOVE a.txt to b.txt'."""
    if isinstance(patch, MovePatch):
        return f"MOVE {patch.path} to {patch.to}"
    return f"{patch.type.upper()} {patch.path}"


# -----------------------------
# Applying
# -----------------------------

def apply_update(content: str, search: str, replace: str) -> str:
    """
    Replace every occurrence of the search lines in content.

    Lines are compared after stripping surrounding whitespace, so indentation
    drift never blocks a match. Matches are spliced from the last to the first
    with the replacement lines exactly as given.

    Raises:
        PatchConflict: If search is blank or not found.
    """
    content_lines = content.split("\n")
    search_lines = search.split("\n")
    replace_lines = replace.split("\n")
    if not search.strip():
        raise PatchConflict("search lines are empty")

    normalized_content = [line.strip() for line in content_lines]
    normalized_search = [line.strip() for line in search_lines]
    width = len(normalized_search)

    match_starts = [
        i
        for i in range(len(normalized_content) - width + 1)
        if normalized_content[i : i + width] == normalized_search
    ]
    if not match_starts:
        raise PatchConflict("did not find a match for the search lines")

    updated = list(content_lines)
    for start in reversed(match_starts):
        updated[start : start + width] = replace_lines
    return "\n".join(updated)


def _apply_add(patch: AddPatch, root: pathlib.Path) -> PatchResult:
    target = safe_abs(root, patch.path)
    if target.exists():
        raise PatchConflict("file already exists")
    target.parent.mkdir(parents=True, exist_ok=True)
    try:
        with target.open("x", encoding="utf-8", newline="") as f:
            f.write(patch.content)
    except FileExistsError:
        raise PatchConflict("file already exists")
    return PatchResult(ok=True, path=patch.path, status="add")


def _apply_delete(patch: DeletePatch, root: pathlib.Path) -> PatchResult:
    target = safe_abs(root, patch.path)
    if not target.is_file():
        raise PatchConflict("file not found")
    target.unlink()
    return PatchResult(ok=True, path=patch.path, status="delete")


def _apply_move(patch: MovePatch, root: pathlib.Path) -> PatchResult:
    source = safe_abs(root, patch.path)
    dest = safe_abs(root, patch.to)
    if not source.is_file():
        raise PatchConflict("file not found")
    if dest.exists():
        raise PatchConflict(f"destination already exists: {patch.to}")
    dest.parent.mkdir(parents=True, exist_ok=True)
    os.replace(source, dest)
    return PatchResult(ok=True, path=patch.path, status="move")


def _apply_update(patch: UpdatePatch, root: pathlib.Path) -> PatchResult:
    target = safe_abs(root, patch.path)
    if not target.is_file():
        raise PatchConflict("file not found")
    updated = apply_update(read_text(target), patch.search, patch.replace)
    write_text_atomic(target, updated)
    return PatchResult(ok=True, path=patch.path, status="update-successful")


def _apply_replace(patch: ReplacePatch, root: pathlib.Path) -> PatchResult:
    target = safe_abs(root, patch.path)
    if not target.is_file():
        raise PatchConflict("file not found")
    write_text_atomic(target, patch.content)
    return PatchResult(ok=True, path=patch.path, status="replace")


_APPLIERS = {
    "add": _apply_add,
    "delete": _apply_delete,
    "move": _apply_move,
    "update": _apply_update,
    "replace": _apply_replace,
}


def apply_patch(patch: FilePatch, root: pathlib.Path) -> PatchResult:
    """
    Apply a single patch below root and report the outcome.

    Conflicts, path escapes and I/O errors are reported as a failed
    PatchResult rather than raised.
    """
    applier = _APPLIERS.get(patch.type)
    if applier is None:
        should_never_happen("unexpected patch type", patch)
    try:
        result = applier(patch, root)
    except (PatchConflict, PathEscape) as e:
        result = PatchResult(ok=False, path=patch.path, status=f"{patch.type}-failed", reason=str(e))
    except (OSError, UnicodeDecodeError) as e:
        result = PatchResult(
            ok=False, path=patch.path, status=f"{patch.type}-failed", reason=f"failed to {patch.type} {patch.path}: {e}"
        )
    logger.info("patch %s: %s", patch_label(patch), result.status)
    return result


def apply_patches(patches: List[FilePatch], root: pathlib.Path) -> List[PatchResult]:
    """Apply patches one by one; a failing patch never blocks the others."""
    return [apply_patch(p, root) for p in patches]
