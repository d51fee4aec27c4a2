"""
Pilot Rollback — return the tree to the last known good commit.

The working-tree diff is always captured first, so a rollback never
destroys evidence even when the reset itself fails.
"""

from __future__ import annotations

from pathlib import Path

from loguru import logger

from pilot.documents import State
from pilot.git import Git, GitError
from pilot.history import RunHistory, ts_compact


def snapshot_rollback_artifacts(git: Git, history: RunHistory, tag: str) -> Path:
    patch_dir = history.label_path(f"rollback/{ts_compact()}-{tag}/diff.patch").parent
    for name, produce in (
        ("diff.patch", lambda: git.diff()),
        ("cached.patch", lambda: git.diff(cached=True)),
        ("untracked.txt", lambda: "\n".join(git.untracked_files()) + "\n"),
    ):
        try:
            content = produce()
        except GitError as e:
            content = f"# failed to capture: {e}\n"
        history.snapshot_text(f"rollback/{patch_dir.name}/{name}", content)
    return patch_dir


def rollback_to_lkg(
    git: Git,
    state: State,
    history: RunHistory,
    tag: str,
    workspace_rel: str,
) -> tuple[bool, Path]:
    """
    Snapshot, then `git reset --hard <lkg>` and optionally `git clean -fd`.

    Returns (ok, patch_dir). ok is False when there is no LKG or git failed;
    the snapshot is written either way.
    """
    patch_dir = snapshot_rollback_artifacts(git, history, tag)
    lkg = state.git.lkg
    if not lkg:
        logger.warning(f"[ROLLBACK] No LKG recorded; left tree as-is ({tag})")
        return False, patch_dir

    try:
        git.reset_hard(lkg)
        if state.config.safety.cleanUntrackedOnRollback:
            exclude = [] if workspace_rel in ("", ".") else [f"{workspace_rel.rstrip('/')}/"]
            git.clean(exclude=exclude)
    except GitError as e:
        logger.error(f"[ROLLBACK] Failed to restore {lkg[:8]}: {e}")
        return False, patch_dir

    logger.info(f"[ROLLBACK] Restored {lkg[:8]} ({tag}); patches in {patch_dir}")
    return True, patch_dir
