"""
Pilot Scope Enforcer.

After the builder finishes, every changed path must sit inside the
Task's allowed prefixes and match none of the forbidden globs
(baseline ∪ task). Engine bookkeeping inside the workspace directory
is exempt. A violation rolls the tree back to the last known good
commit and force-removes any untracked forbidden files.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from pilot.config_loader import EngineConfig
from pilot.documents import State, Task
from pilot.git import Git, GitError
from pilot.globs import first_match
from pilot.history import RunHistory
from pilot.rollback import rollback_to_lkg


def normalize_rel_path(path: str) -> str:
    p = path.replace("\\", "/").strip()
    while p.startswith("./"):
        p = p[2:]
    return p.rstrip("/")


def is_allowed_by_prefixes(path: str, prefixes: list[str]) -> bool:
    """Prefix match on whole segments; '.' or '' allows everything."""
    p = normalize_rel_path(path)
    for prefix in prefixes:
        pre = normalize_rel_path(prefix)
        if pre in ("", "."):
            return True
        if p == pre or p.startswith(pre + "/"):
            return True
    return False


def is_operational_path(path: str, workspace_rel: str, config: EngineConfig) -> bool:
    """True for the engine's own files inside the workspace directory."""
    p = normalize_rel_path(path)
    ws = normalize_rel_path(workspace_rel)
    if ws in ("", "."):
        rest = p
    elif p.startswith(ws + "/"):
        rest = p[len(ws) + 1:]
    else:
        return False

    if rest in config.workspace.operational_files:
        return True
    if "/" not in rest and rest.startswith("run.") and rest.endswith(".log"):
        return True
    return rest.split("/", 1)[0] in config.workspace.operational_dirs


def effective_forbidden(config: EngineConfig, task: Task) -> list[str]:
    return list(dict.fromkeys([*config.safety.baseline_forbidden, *task.scope.forbidden]))


def find_violations(
    changed: list[str],
    task: Task,
    config: EngineConfig,
    workspace_rel: str,
) -> tuple[list[str], list[str]]:
    """
    Pure check of a changed-path list.

    Returns (violations, forbidden_paths) where forbidden_paths are the
    paths that matched a forbidden glob.
    """
    forbidden = effective_forbidden(config, task)
    violations: list[str] = []
    forbidden_paths: list[str] = []
    for raw in changed:
        path = normalize_rel_path(raw)
        if not path or is_operational_path(path, workspace_rel, config):
            continue
        pattern = first_match(path, forbidden)
        if pattern is not None:
            violations.append(f"FORBIDDEN: {path} matches {pattern}")
            forbidden_paths.append(path)
        if not is_allowed_by_prefixes(path, task.scope.allowed):
            violations.append(f"NOT ALLOWED: {path} outside scope {', '.join(task.scope.allowed)}")
    return violations, forbidden_paths


@dataclass
class ScopeResult:
    ok: bool
    violations: list[str] = field(default_factory=list)
    patch_dir: str | None = None


def enforce_scope(
    git: Git,
    task: Task,
    state: State,
    config: EngineConfig,
    history: RunHistory,
    workspace_rel: str,
) -> ScopeResult:
    changed, untracked = git.changed_files()
    violations, forbidden_paths = find_violations(changed, task, config, workspace_rel)
    if not violations:
        logger.debug(f"[SCOPE] {len(changed)} changed path(s) within scope")
        return ScopeResult(ok=True)

    for v in violations:
        logger.warning(f"[SCOPE] {v}")

    _, patch_dir = rollback_to_lkg(git, state, history, "scope-violation", workspace_rel)

    # reset --hard leaves untracked files; clean may be disabled for the rest
    leftovers = [p for p in forbidden_paths if p in untracked and (git.root / p).exists()]
    if leftovers:
        try:
            git.clean_paths(leftovers)
            logger.info(f"[SCOPE] Removed {len(leftovers)} untracked forbidden file(s)")
        except GitError as e:
            logger.error(f"[SCOPE] Could not remove forbidden files: {e}")

    return ScopeResult(ok=False, violations=violations, patch_dir=_rel(patch_dir, git.root))


def _rel(path: Path | None, root: Path) -> str | None:
    if path is None:
        return None
    try:
        return str(path.relative_to(root))
    except ValueError:
        return str(path)
