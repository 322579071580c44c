# mdai: Reflective tool registry exposed to the model plus the built-in write_file, read_files and search_files tools.

import fnmatch
import inspect
import json
import logging
import os
import pathlib
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union, get_args, get_origin, get_type_hints

from . import config
from .context import Context
from .errors import MalformedInput, PathEscape, UserCancelled
from .fs import mtime_of, normalize_path, read_text, rel_posix, safe_abs
from .models import FilePatch, MovePatch, PatchResult, ReplacePatch, UpdatePatch
from .patches import apply_patch, format_patch, parse_patch_objects, parse_patch_text, patch_label
from .prompts import get_prompt

logger = logging.getLogger(__name__)

# -----------------------------
# Reflection utilities and registry
# -----------------------------

_REGISTRY: Dict[str, Dict[str, Any]] = {}

_type_map = {
    str: {"type": "string"},
    int: {"type": "integer"},
    bool: {"type": "boolean"},
    float: {"type": "number"},
    list: {"type": "array"},
    dict: {"type": "object"},
}


def _unwrap_optional(ann: Any) -> Any:
    """Optional[T] -> T; other annotations are returned unchanged."""
    if get_origin(ann) is Union:
        args = [a for a in get_args(ann) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return ann


def _json_schema_for_annotation(ann: Any) -> Dict[str, Any]:
    """Map a Python annotation to a simple JSON Schema snippet."""
    ann = _unwrap_optional(ann)
    origin = get_origin(ann)
    if origin in (list, List):
        args = get_args(ann)
        schema: Dict[str, Any] = {"type": "array"}
        if args:
            schema["items"] = _json_schema_for_annotation(args[0])
        return schema
    if origin in (dict, Dict):
        return {"type": "object"}
    return dict(_type_map.get(ann, {"type": "string"}))


def _merge_schema(base: Dict[str, Any], override: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Shallow-merge override fields into base JSON Schema for a parameter."""
    if not override:
        return base
    out = dict(base)
    out.update({k: v for k, v in override.items() if v is not None})
    return out


def _build_parameters_schema(fn: Callable, overrides: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, Any]:
    sig = inspect.signature(fn)
    hints = get_type_hints(fn)
    props: Dict[str, Any] = {}
    required: List[str] = []
    # Skip first arg (ctx)
    for p in list(sig.parameters.values())[1:]:
        base = _json_schema_for_annotation(hints.get(p.name, str))
        props[p.name] = _merge_schema(base, (overrides or {}).get(p.name))
        if p.default is inspect.Parameter.empty:
            required.append(p.name)
    # Synthetic reason_for_call for the model only (not required, never passed to the tool)
    props["reason_for_call"] = {"type": "string", "description": "Short reason the tool is needed."}
    return {
        "type": "object",
        "properties": props,
        "required": required,
        "additionalProperties": False,
    }


def tool(name: str, description: str, *, param_overrides: Optional[Dict[str, Dict[str, Any]]] = None):
    """Decorator to register a function as a tool with a reflective schema.

    param_overrides allows per-parameter JSON Schema fields like description, pattern, enum, etc.
    """
    def _wrap(fn: Callable):
        _REGISTRY[name] = {
            "fn": fn,
            "name": name,
            "description": description,
            "schema": _build_parameters_schema(fn, overrides=param_overrides),
        }
        return fn
    return _wrap


def discover_tools(enabled: Optional[List[str]] = None) -> List[Dict[str, Any]]:
    """Return function tool specs for registered tools, limited to enabled names when given."""
    specs: List[Dict[str, Any]] = []
    for name, meta in _REGISTRY.items():
        if enabled and name not in enabled:
            continue
        specs.append({
            "type": "function",
            "name": name,
            "description": meta["description"],
            "parameters": meta["schema"],
        })
    return specs


def list_tool_names() -> List[str]:
    return list(_REGISTRY.keys())


def _coerce_value(val: Any, ann: Any) -> Any:
    ann = _unwrap_optional(ann)
    if val is None:
        return None
    target = get_origin(ann) or ann
    try:
        if target is int:
            return int(val)
        if target is float:
            return float(val)
        if target is bool:
            if isinstance(val, bool):
                return val
            return str(val).strip().lower() in ("1", "true", "yes", "y")
        if target is str:
            return val if isinstance(val, str) else json.dumps(val)
        if target in (list, List) and isinstance(val, str):
            # models sometimes send arrays as JSON strings, or a bare item
            try:
                loaded = json.loads(val)
            except ValueError:
                return [val]
            return loaded if isinstance(loaded, list) else [loaded]
    except (TypeError, ValueError):
        return val
    return val


def run_tool(ctx: Context, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
    """
    Dispatch to a registered tool and return its result object.

    reason_for_call is logged and stripped. Unknown tools, missing parameters
    and tool exceptions become {ok: False, reason}; UserCancelled propagates.
    """
    meta = _REGISTRY.get(name)
    reason = str(args.get("reason_for_call") or "")
    if reason:
        ctx.log(f"{name}: {reason}")
    if not meta:
        return {"ok": False, "reason": f"unknown tool {name}"}
    fn: Callable = meta["fn"]
    sig = inspect.signature(fn)
    hints = get_type_hints(fn)
    kwargs: Dict[str, Any] = {}
    # Skip first param (ctx)
    for p in list(sig.parameters.values())[1:]:
        if p.name in args:
            kwargs[p.name] = _coerce_value(args[p.name], hints.get(p.name, str))
        elif p.default is inspect.Parameter.empty:
            return {"ok": False, "reason": f"missing required parameter: {p.name}"}
    try:
        raw = fn(ctx, **kwargs)
    except UserCancelled:
        raise
    except Exception as e:
        logger.exception("tool %s failed", name)
        return {"ok": False, "reason": f"tool {name} failed: {e}"}
    if isinstance(raw, dict):
        return raw
    return {"ok": True, "value": raw}


# -----------------------------
# write_file
# -----------------------------

DENIED_REASON = "the user did not allow the patch. ask them why."
OUTDATED_REASON = "The file you want to modify is outdated. Re-read it before applying changes."


def _is_outdated(ctx: Context, patch: FilePatch) -> bool:
    """update/replace need a prior read in this session and an unchanged mtime since."""
    if not isinstance(patch, (UpdatePatch, ReplacePatch)):
        return False
    try:
        target = safe_abs(ctx.root, patch.path)
    except PathEscape:
        # rejected by apply_patch
        return False
    if target not in ctx.state.file_tracker:
        return True
    current = mtime_of(target)
    if current is None:
        # missing file; apply_patch reports it
        return False
    return current != ctx.state.file_tracker[target]


def _ask_approval(ctx: Context, patches: List[FilePatch]) -> Tuple[List[bool], Optional[str]]:
    """Return per-patch approvals and the user's optional denial reason."""
    if ctx.state.always_allow_writes:
        return [True] * len(patches), None
    choice = ctx.choose("Apply these changes?", ["all", "some", "none", "always"])
    if choice is None:
        raise UserCancelled("write_file approval")
    if choice == "always":
        ctx.state.always_allow_writes = True
        return [True] * len(patches), None
    if choice == "all":
        return [True] * len(patches), None
    if choice == "some":
        return [ctx.confirm(f"Apply {patch_label(p)}?") for p in patches], None
    reason = ctx.get_user_input("Why not? (optional)")
    return [False] * len(patches), (reason or "").strip() or None


def _track_written(ctx: Context, patch: FilePatch) -> None:
    try:
        source = safe_abs(ctx.root, patch.path)
    except PathEscape:
        return
    if isinstance(patch, MovePatch):
        ctx.state.forget(source)
        target = safe_abs(ctx.root, patch.to)
    else:
        target = source
    mtime = mtime_of(target)
    if mtime is None:
        ctx.state.forget(target)
    else:
        ctx.state.track(target, mtime)


@tool(
    name="write_file",
    description=get_prompt("write_file.md"),
    param_overrides={
        "patch": {"description": "Patch blocks in text form."},
        "patches": {"description": "Patch objects: [{type, path, ...}].", "items": {"type": "object"}},
    },
)
def write_file(ctx: Context, patch: Optional[str] = None, patches: Optional[list] = None) -> Dict[str, Any]:
    try:
        if patches:
            parsed = parse_patch_objects(patches)
        elif patch:
            parsed = parse_patch_text(patch)
        else:
            raise MalformedInput("provide either patch or patches")
    except MalformedInput as e:
        ctx.error_message(f"write file: {e}")
        return {"ok": False, "status": "invalid-patch", "reason": str(e)}
    if not parsed:
        return {"ok": False, "status": "invalid-patch", "reason": "no patch blocks found"}

    results: List[Optional[PatchResult]] = [None] * len(parsed)
    pending: List[int] = []
    for i, p in enumerate(parsed):
        if _is_outdated(ctx, p):
            ctx.error_message(f"write file: file outdated, the model needs to re-read {p.path}")
            results[i] = PatchResult(ok=False, path=p.path, status="file-outdated", reason=OUTDATED_REASON)
        else:
            pending.append(i)

    if pending:
        ctx.send_to_user("write file: the model wants to make these changes")
        for i in pending:
            ctx.send_to_user(format_patch(parsed[i]))
        approvals, denial = _ask_approval(ctx, [parsed[i] for i in pending])
        for i, allowed in zip(pending, approvals):
            p = parsed[i]
            if not allowed:
                results[i] = PatchResult(ok=False, path=p.path, status="user-denied", reason=denial or DENIED_REASON)
                continue
            res = apply_patch(p, ctx.root)
            if res.ok:
                _track_written(ctx, p)
            ctx.log(f"write file: {res.path}:{res.status}")
            results[i] = res

    final = [r for r in results if r is not None]
    return {"ok": all(r.ok for r in final), "results": [r.to_result() for r in final]}


# -----------------------------
# read_files
# -----------------------------

def _read_one(ctx: Context, path: str) -> Tuple[Dict[str, Any], Optional[pathlib.Path], Optional[int]]:
    rel = normalize_path(path)
    try:
        target = safe_abs(ctx.root, rel)
    except PathEscape as e:
        return {"path": rel, "ok": False, "error": str(e)}, None, None
    rel = rel_posix(ctx.root, target)
    if ctx.state.ignore_cache.is_ignored(ctx.root, rel):
        return {"path": rel, "ok": False, "error": f"path is ignored: {rel}"}, None, None
    try:
        mtime = mtime_of(target)
        content = read_text(target)
    except (OSError, UnicodeDecodeError) as e:
        return {"path": rel, "ok": False, "error": f"Could not read {rel}: {e}"}, None, None
    return {"path": rel, "ok": True, "content": content}, target, mtime


@tool(
    name="read_files",
    description=get_prompt("read_files.md"),
    param_overrides={"paths": {"description": "Project-relative file paths."}},
)
def read_files(ctx: Context, paths: List[str]) -> Dict[str, Any]:
    if not paths:
        return {"ok": False, "reason": "no paths given", "files": []}
    with ThreadPoolExecutor(max_workers=max(1, config.MDAI_READ_WORKERS)) as pool:
        outcomes = list(pool.map(lambda p: _read_one(ctx, str(p)), paths))
    files: List[Dict[str, Any]] = []
    for entry, target, mtime in outcomes:
        if target is not None:
            ctx.state.track(target, mtime)
        files.append(entry)
    ctx.log(f"read files: {len(files)} requested, {sum(1 for f in files if f['ok'])} read")
    return {"ok": all(f["ok"] for f in files), "files": files}


# -----------------------------
# search_files
# -----------------------------

def _walk_project(ctx: Context, glob: Optional[str]) -> Iterator[Tuple[str, pathlib.Path]]:
    """Yield (rel_posix, abs_path) for every non-ignored file, sorted, pruning ignored directories."""
    for dirpath, dirnames, filenames in os.walk(ctx.root):
        base = pathlib.Path(dirpath)
        dirnames[:] = sorted(
            d for d in dirnames if not ctx.state.ignore_cache.is_ignored(ctx.root, rel_posix(ctx.root, base / d))
        )
        for name in sorted(filenames):
            rel = rel_posix(ctx.root, base / name)
            if ctx.state.ignore_cache.is_ignored(ctx.root, rel):
                continue
            if glob and not (fnmatch.fnmatchcase(rel, glob) or fnmatch.fnmatchcase(name, glob)):
                continue
            yield rel, base / name


@tool(
    name="search_files",
    description=get_prompt("search_files.md"),
    param_overrides={
        "query": {"description": "Exact text to look for (case-sensitive)."},
        "glob": {"description": "Optional file name or path glob, e.g. '*.py' or 'src/*.md'."},
        "max_results": {"description": "Stop after this many matching lines."},
    },
)
def search_files(ctx: Context, query: str, glob: Optional[str] = None, max_results: int = 100) -> Dict[str, Any]:
    if not query:
        return {"ok": False, "reason": "empty query", "matches": []}
    limit = max(1, int(max_results))
    matches: List[Dict[str, Any]] = []
    truncated = False
    for rel, path in _walk_project(ctx, glob):
        try:
            content = read_text(path)
        except (OSError, UnicodeDecodeError):
            # binary or unreadable files are not searchable
            continue
        for number, line in enumerate(content.splitlines(), start=1):
            if query not in line:
                continue
            if len(matches) >= limit:
                truncated = True
                break
            matches.append({"path": rel, "line": number, "text": line})
        if truncated:
            break
    ctx.log(f"search files: {len(matches)} match(es) for {query!r}")
    return {"ok": True, "matches": matches, "truncated": truncated}
