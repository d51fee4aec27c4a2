"""
Pilot Diff Guardrail.

Measures the size of the uncommitted change and decides whether it
needs a human to look at it before it is committed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from loguru import logger

from pilot.documents import LargeDiffLimits
from pilot.git import Git


@dataclass
class DiffStats:
    file_count: int = 0
    total_lines: int = 0
    had_binary: bool = False
    files: list[str] = field(default_factory=list)


@dataclass
class GuardrailDecision:
    passed: bool
    breached: bool
    consumed_override: bool = False
    reasons: list[str] = field(default_factory=list)


def _count_text_lines(path) -> int | None:
    """Line count of a UTF-8 text file, or None if it is binary."""
    try:
        data = path.read_bytes()
    except OSError:
        return 0
    if b"\0" in data:
        return None
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return None
    if not text:
        return 0
    return text.count("\n") + (0 if text.endswith("\n") else 1)


def compute_diff_stats(git: Git, exclude: Callable[[str], bool] = lambda p: False) -> DiffStats:
    stats = DiffStats()
    seen: set[str] = set()

    for cached in (False, True):
        for added, removed, path in git.numstat(cached=cached):
            if exclude(path):
                continue
            seen.add(path)
            if added == "-" or removed == "-":
                stats.had_binary = True
                continue
            stats.total_lines += int(added) + int(removed)

    for path in git.untracked_files():
        if exclude(path) or path in seen:
            continue
        seen.add(path)
        lines = _count_text_lines(git.root / path)
        if lines is None:
            stats.had_binary = True
        else:
            stats.total_lines += lines

    stats.files = sorted(seen)
    stats.file_count = len(seen)
    return stats


def evaluate_guardrail(stats: DiffStats, limits: LargeDiffLimits, allow_once: bool) -> GuardrailDecision:
    reasons = []
    if stats.file_count > limits.maxFiles:
        reasons.append(f"{stats.file_count} files > maxFiles {limits.maxFiles}")
    if stats.total_lines > limits.maxLines:
        reasons.append(f"{stats.total_lines} lines > maxLines {limits.maxLines}")
    if stats.had_binary:
        reasons.append("binary change")

    if not reasons:
        return GuardrailDecision(passed=True, breached=False)
    if allow_once:
        logger.warning(f"[GUARDRAIL] Large diff allowed once: {'; '.join(reasons)}")
        return GuardrailDecision(passed=True, breached=True, consumed_override=True, reasons=reasons)
    logger.warning(f"[GUARDRAIL] Large diff: {'; '.join(reasons)}")
    return GuardrailDecision(passed=False, breached=True, reasons=reasons)


def override_command(state_path: str) -> str:
    """One-liner a human runs to allow the next large diff through."""
    script = (
        "import json,pathlib;"
        f"p=pathlib.Path('{state_path}');"
        "s=json.loads(p.read_text());"
        "s.setdefault('flags',{})['allowLargeDiffOnce']=True;"
        "p.write_text(json.dumps(s,indent=2)+'\\n')"
    )
    return f"python3 -c \"{script}\""
