"""
Path glob matching for scope and forbidden patterns.

  **/   zero or more whole directories
  **    anything, across separators
  *     anything within one path segment
  ?     one character within a segment

A pattern without a slash matches the basename at any depth.
"""

from __future__ import annotations

import re
from functools import lru_cache


@lru_cache(maxsize=512)
def glob_to_regex(pattern: str) -> re.Pattern:
    out = []
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**/", i):
                out.append("(?:.*/)?")
                i += 3
                continue
            if pattern.startswith("**", i):
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("^" + "".join(out) + "$")


def match_glob(path: str, pattern: str) -> bool:
    """True if a repo-relative posix path matches the pattern."""
    pattern = pattern.strip()
    if not pattern:
        return False
    if "/" not in pattern:
        return bool(glob_to_regex(pattern).match(path.rsplit("/", 1)[-1]))
    return bool(glob_to_regex(pattern.lstrip("/")).match(path))


def first_match(path: str, patterns: list[str] | tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if match_glob(path, pattern):
            return pattern
    return None
