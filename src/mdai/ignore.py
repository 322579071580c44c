# mdai: .gitignore support: compile gitignore lines into ignore globs, match project paths against them and
# cache the compiled patterns per project root until .gitignore changes.

import functools
import logging
import pathlib
import re
from typing import Dict, List, Optional, Pattern, Tuple

from .fs import mtime_of, read_text

logger = logging.getLogger(__name__)

# Always hidden from the model, regardless of .gitignore contents.
DEFAULT_IGNORES = [".git", ".git/**"]


def compile_gitignore(content: str) -> List[str]:
    """
    Compile .gitignore contents into ignore globs.

    Rules:
      - Empty lines and comments (#) are ignored.
      - A leading '!' negates; the negation applies to every pattern of the line.
      - A leading '/' anchors to the project root; otherwise the pattern is prefixed with '**/'.
      - Lines ending in '/' or containing neither '*' nor '.' are directory rules and
        expand to the directory itself and everything below it ('<dir>/**').
    """
    patterns: List[str] = []
    for raw in content.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        negated = line.startswith("!")
        pat = line[1:] if negated else line
        anchored = pat.startswith("/")
        if anchored:
            pat = pat[1:]
        dir_rule = pat.endswith("/") or ("*" not in pat and "." not in pat)
        if dir_rule and pat.endswith("/"):
            pat = pat[:-1]
        base = pat if anchored else f"**/{pat}"
        out = [base, f"{base}/**"] if dir_rule else [base]
        patterns.extend(f"!{p}" if negated else p for p in out)
    return patterns


@functools.lru_cache(maxsize=1024)
def _glob_regex(pattern: str) -> Pattern[str]:
    """Translate an ignore glob into a regex: '**' spans directories, '*' and '?' stay within one segment."""
    out: List[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("/**", i) and i + 3 == n:
            out.append("(?:/.*)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        elif pattern[i] == "[" and "]" in pattern[i + 2:]:
            close = pattern.index("]", i + 2)
            body = pattern[i + 1 : close]
            if body.startswith("!"):
                body = "^" + body[1:]
            out.append("[" + body.replace("\\", "\\\\") + "]")
            i = close + 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(out))


def is_ignored(rel_posix: str, patterns: List[str]) -> bool:
    """Return True if rel_posix is ignored by patterns (last match wins; '!' un-ignores)."""
    ignored = False
    for pattern in patterns:
        negated = pattern.startswith("!")
        glob = pattern[1:] if negated else pattern
        if _glob_regex(glob).fullmatch(rel_posix):
            ignored = not negated
    return ignored


class IgnoreCache:
    """Compiled .gitignore patterns per project root, refreshed when the file's mtime changes."""

    def __init__(self) -> None:
        self._entries: Dict[pathlib.Path, Tuple[Optional[int], List[str]]] = {}

    def patterns(self, root: pathlib.Path) -> List[str]:
        gitignore = root / ".gitignore"
        mtime = mtime_of(gitignore)
        cached = self._entries.get(root)
        if cached is not None and cached[0] == mtime:
            return cached[1]
        text = ""
        if mtime is not None:
            try:
                text = read_text(gitignore)
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("Could not read %s: %s", gitignore, e)
        patterns = compile_gitignore(text) + DEFAULT_IGNORES
        self._entries[root] = (mtime, patterns)
        return patterns

    def is_ignored(self, root: pathlib.Path, rel_posix: str) -> bool:
        return is_ignored(rel_posix, self.patterns(root))
