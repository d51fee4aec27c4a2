"""
Pilot Context Builder — the orchestrator's view of the world.

Assembles a bounded CONTEXT.json from STATE, TASK, REPORT, a head/tail
window of the roadmap and the RECENT ring. Every free-text field is
truncated so the bundle size stays flat however long the run gets.
"""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from pilot.config_loader import EngineConfig
from pilot.documents import (
    ContextBundle,
    ContextConstraints,
    ContextMeta,
    GitPointer,
    Recent,
    RecentItem,
    RecentWindow,
    Report,
    RoadmapWindow,
    State,
    StateSummary,
    Task,
)
from pilot.git import Git
from pilot.store import ProtocolStore

ORCHESTRATOR_ALLOWED_WRITES = ["pilot/STATE.json", "pilot/TASK.json", "pilot/BLOCKED.json"]

ROADMAP_WINDOW = 5
TITLE_MAX = 120
DESCRIPTION_MAX = 800
ACCEPTANCE_ITEMS, ACCEPTANCE_MAX = 8, 160
SCOPE_ITEMS, SCOPE_MAX = 20, 160
RECENT_SUMMARY_ITEMS, RECENT_SUMMARY_MAX = 6, 160
RECENT_FILES_ITEMS, RECENT_FILES_MAX = 20, 220
DIFFSTAT_MAX, DIFFSTAT_LINES = 600, 24


def now_ms() -> int:
    return int(time.time() * 1000)


def truncate(s: Any, limit: int) -> str:
    s = "" if s is None else str(s)
    if len(s) <= limit:
        return s
    if limit <= 3:
        return s[:limit]
    return s[: limit - 3] + "..."


def _truncate_list(items: Any, count: int, limit: int) -> list[str]:
    if not isinstance(items, list):
        return []
    return [truncate(x, limit) for x in items[:count]]


def compact_roadmap_entry(entry: Any) -> dict[str, Any]:
    if not isinstance(entry, dict):
        return {}
    scope = entry.get("scope") if isinstance(entry.get("scope"), dict) else {}
    return {
        "id": truncate(entry.get("id"), TITLE_MAX),
        "title": truncate(entry.get("title"), TITLE_MAX),
        "description": truncate(entry.get("description"), DESCRIPTION_MAX),
        "acceptance": _truncate_list(entry.get("acceptance"), ACCEPTANCE_ITEMS, ACCEPTANCE_MAX),
        "scope": {
            "allowed": _truncate_list(scope.get("allowed"), SCOPE_ITEMS, SCOPE_MAX),
            "forbidden": _truncate_list(scope.get("forbidden"), SCOPE_ITEMS, SCOPE_MAX),
        },
    }


def compact_recent_item(item: RecentItem) -> RecentItem:
    return item.model_copy(update={
        "title": truncate(item.title, TITLE_MAX),
        "summary": _truncate_list(item.summary, RECENT_SUMMARY_ITEMS, RECENT_SUMMARY_MAX),
        "files_changed": _truncate_list(item.files_changed, RECENT_FILES_ITEMS, RECENT_FILES_MAX),
        "diffstat": truncate(item.diffstat, DIFFSTAT_MAX) if item.diffstat else None,
    })


# ---------------------------------------------------------------------------
# Recent ring
# ---------------------------------------------------------------------------

def read_recent(store: ProtocolStore, max_items: int = 5) -> Recent:
    """RECENT.json, or an empty ring if it is missing or unreadable."""
    raw = store.read_recent()
    cap = min(max_items, 5)
    if isinstance(raw, dict):
        try:
            recent = Recent.model_validate(raw)
            return Recent(items=recent.items[:cap], max_items=cap)
        except ValidationError as e:
            logger.warning(f"[CONTEXT] Ignoring unreadable RECENT.json: {e.error_count()} error(s)")
    return Recent(max_items=cap)


def update_recent_on_commit(
    store: ProtocolStore,
    git: Git,
    task: Task,
    report: Report | None,
    commit: str,
    max_items: int = 5,
) -> Recent:
    recent = read_recent(store, max_items)
    stat_lines = git.show_stat(commit).splitlines()[:DIFFSTAT_LINES]
    item = compact_recent_item(RecentItem(
        id=task.id,
        title=task.title,
        completed_at=now_ms(),
        commit=commit,
        summary=list(report.summary) if report else [],
        files_changed=git.show_name_only(commit)[:RECENT_FILES_ITEMS],
        diffstat="\n".join(stat_lines) or None,
    ))
    items = [item] + [i for i in recent.items if i.id != task.id]
    recent = Recent(items=items[: recent.max_items], max_items=recent.max_items)
    store.write_recent(recent)
    return recent


# ---------------------------------------------------------------------------
# Bundle
# ---------------------------------------------------------------------------

def build_context_bundle(
    store: ProtocolStore,
    git: Git,
    state: State,
    task: Task,
    report: Report | None,
    config: EngineConfig,
    run_id: str,
    cwd: Path | None = None,
) -> ContextBundle:
    roadmap = store.read_raw("roadmap")
    if not isinstance(roadmap, list):
        roadmap = []

    compact_task = Task.model_validate({**compact_roadmap_entry(task.model_dump()), "status": task.status})
    recent = read_recent(store, config.loop.recent_max_items)

    return ContextBundle(
        meta=ContextMeta(
            run_id=run_id,
            created_at=now_ms(),
            project_root=os.path.relpath(git.root, cwd or Path.cwd()),
            git=GitPointer(branch=git.branch(), head=git.head(), lkg=state.git.lkg),
        ),
        state_min=StateSummary(
            project=state.project,
            status=state.status,
            current_task=state.current_task,
            retry_count=state.retry_count,
            last_completed_task=state.last_completed_task,
        ),
        task=compact_task,
        roadmap_window=RoadmapWindow(
            next=[compact_roadmap_entry(e) for e in roadmap[:ROADMAP_WINDOW]],
            tail=[compact_roadmap_entry(e) for e in roadmap[-ROADMAP_WINDOW:]],
        ),
        recent_window=RecentWindow(last_completed=[compact_recent_item(i) for i in recent.items]),
        last_report=report,
        constraints=ContextConstraints(
            baseline_forbidden=list(config.safety.baseline_forbidden),
            orchestrator_allowed_writes=list(ORCHESTRATOR_ALLOWED_WRITES),
            diff_guardrail=state.config.safety.largeDiff,
        ),
    )
