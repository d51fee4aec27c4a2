"""
Pilot Protocol Documents — typed, schema-validated JSON shapes.

Every file the engine exchanges with the builder, the orchestrator
and the human has a model here:

  STATE.json     State         (runner-owned config + git subtrees)
  TASK.json      Task          (one at a time, replaced never appended)
  REPORT.json    Report        (the builder's outcome for one Task)
  ROADMAP.json   RoadmapEntry  (ordered backlog, only a window is read)
  MANIFEST.json  Manifest      (managed template files + hashes)
  RECENT.json    Recent        (capped ring of completed tasks)
  CONTEXT.json   ContextBundle (ephemeral orchestrator input)
  BLOCKED.json   Blocked       (presence = halted awaiting a human)

Scalar fields use pydantic's Strict* types so that a patch writing
"3" into retry_count is rejected instead of coerced.
"""

from __future__ import annotations

import math
import types
import typing
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr, ValidationError

NonEmptyStr = Annotated[StrictStr, Field(min_length=1)]

RunStatus = Literal["active", "waiting_human", "complete"]
TaskStatus = Literal["ready", "in_progress"]
ReportStatus = Literal["done", "blocked", "failed", "timeout"]
PromptTransport = Literal["prompt-file", "stdin", "file-attachment"]

STATE_SCHEMA_VERSION = 2
RUNNER_OWNED_STATE_FIELDS = ("config", "git")


class PatchRejected(ValueError):
    """An orchestrator patch violates a document's field contract."""


class _Document(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

class LargeDiffLimits(_Document):
    maxFiles: StrictInt = 8
    maxLines: StrictInt = 300


class SafetySettings(_Document):
    largeDiff: LargeDiffLimits = Field(default_factory=LargeDiffLimits)
    cleanUntrackedOnRollback: StrictBool = True
    allowDirtyWorkspace: StrictBool = False


class CursorTool(_Document):
    mode: Literal["prompt-file", "stdin"] = "prompt-file"


class OpencodeTool(_Document):
    mode: Literal["file-attachment"] = "file-attachment"
    format: Literal["default", "json"] = "default"


class ToolSettings(_Document):
    builder: StrictStr = "cursor"
    cursor: CursorTool = Field(default_factory=CursorTool)
    opencode: OpencodeTool = Field(default_factory=OpencodeTool)


class Capabilities(_Document):
    promptTransport: PromptTransport = "file-attachment"


class StateConfig(_Document):
    orchestratorModel: StrictStr = ""
    builderTimeout: StrictInt = 300_000
    orchestratorTimeout: StrictInt = 120_000
    verifyTimeout: StrictInt = 60_000
    watchdogTimeout: StrictInt = 600_000
    verifyCommands: list[StrictStr] = Field(default_factory=list)
    tools: ToolSettings = Field(default_factory=ToolSettings)
    capabilities: Capabilities = Field(default_factory=Capabilities)
    safety: SafetySettings = Field(default_factory=SafetySettings)


class StateFlags(_Document):
    allowLargeDiffOnce: StrictBool = False


class RunInfo(_Document):
    id: StrictStr | None = None
    started_at: StrictInt | None = None
    history_dir: StrictStr | None = None


class GitInfo(_Document):
    lkg: StrictStr | None = None


class State(_Document):
    project: StrictStr = "my-app"
    status: RunStatus = "active"
    current_task: StrictStr | None = None
    retry_count: StrictInt = 0
    last_completed_task: StrictStr | None = None
    task_started_at: StrictInt | None = None
    flags: StateFlags = Field(default_factory=StateFlags)
    run: RunInfo | None = None
    config: StateConfig = Field(default_factory=StateConfig)
    git: GitInfo = Field(default_factory=GitInfo)


# ---------------------------------------------------------------------------
# Task / Report / Roadmap
# ---------------------------------------------------------------------------

class TaskScope(_Document):
    allowed: list[StrictStr]
    forbidden: list[StrictStr]


class RoadmapEntry(_Document):
    id: NonEmptyStr
    title: NonEmptyStr
    description: StrictStr
    acceptance: list[StrictStr] = Field(default_factory=list)
    scope: TaskScope


class Task(RoadmapEntry):
    status: TaskStatus = "ready"


class Report(_Document):
    task_id: NonEmptyStr
    status: ReportStatus
    summary: list[StrictStr]
    error: StrictStr | None = None
    partial_progress: StrictStr | None = None
    files_changed: list[StrictStr] = Field(default_factory=list)
    questions: list[StrictStr]


# ---------------------------------------------------------------------------
# Manifest / Recent / Blocked
# ---------------------------------------------------------------------------

class Manifest(_Document):
    pilotFolderVersion: StrictStr
    stateSchemaVersion: StrictInt = STATE_SCHEMA_VERSION
    managedFiles: list[StrictStr] = Field(default_factory=list)
    hashes: dict[str, str] = Field(default_factory=dict)


class RecentItem(_Document):
    id: StrictStr
    title: StrictStr
    completed_at: int
    commit: StrictStr
    summary: list[str] = Field(default_factory=list)
    files_changed: list[str] = Field(default_factory=list)
    diffstat: str | None = None


class Recent(_Document):
    items: list[RecentItem] = Field(default_factory=list)
    max_items: int = 5


class Blocked(BaseModel):
    """Halt signal. Structured extras (violations, rollback_patch_dir, ...) sit beside reason/action."""
    model_config = ConfigDict(extra="allow")

    reason: StrictStr = ""
    action: StrictStr = ""


# ---------------------------------------------------------------------------
# Context Bundle
# ---------------------------------------------------------------------------

class GitPointer(BaseModel):
    branch: str | None = None
    head: str | None = None
    lkg: str | None = None


class ContextMeta(BaseModel):
    run_id: str
    created_at: int
    project_root: str
    git: GitPointer


class StateSummary(BaseModel):
    project: str
    status: RunStatus
    current_task: str | None
    retry_count: int
    last_completed_task: str | None


class RoadmapWindow(BaseModel):
    next: list[dict[str, Any]] = Field(default_factory=list)
    tail: list[dict[str, Any]] = Field(default_factory=list)


class RecentWindow(BaseModel):
    last_completed: list[RecentItem] = Field(default_factory=list)


class ContextConstraints(BaseModel):
    baseline_forbidden: list[str]
    orchestrator_allowed_writes: list[str]
    diff_guardrail: LargeDiffLimits


class ContextBundle(BaseModel):
    meta: ContextMeta
    state_min: StateSummary
    task: Task
    roadmap_window: RoadmapWindow
    recent_window: RecentWindow
    last_report: Report | None = None
    constraints: ContextConstraints


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def describe_errors(exc: ValidationError, label: str) -> list[str]:
    """Flatten a ValidationError into 'LABEL.path: message' lines."""
    lines = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        where = f"{label}.{loc}" if loc else label
        lines.append(f"{where}: {err.get('msg', 'invalid')}")
    return lines or [f"{label}: invalid"]


def parse_document(model: type[BaseModel], raw: Any, label: str) -> tuple[Any, list[str]]:
    if not isinstance(raw, dict):
        return None, [f"{label} must be an object"]
    try:
        return model.model_validate(raw), []
    except ValidationError as e:
        return None, describe_errors(e, label)


def validate_roadmap(raw: Any, window: int = 5) -> list[str]:
    """Validate the head window of ROADMAP.json; entries beyond it are read lazily."""
    if not isinstance(raw, list):
        return ["ROADMAP must be an array"]
    errors: list[str] = []
    for i, entry in enumerate(raw[:window]):
        _, errs = parse_document(RoadmapEntry, entry, f"ROADMAP[{i}]")
        errors.extend(errs)
    return errors


# ---------------------------------------------------------------------------
# State migration (total)
# ---------------------------------------------------------------------------

def _obj(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _str(value: Any, default: str) -> str:
    return value if isinstance(value, str) else default


def _opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _int(value: Any, default: int | None) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if isinstance(value, float) and not math.isfinite(value):
        return default
    return int(value)


def _bool(value: Any, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def _choice(value: Any, choices: tuple[str, ...], default: str) -> str:
    return value if value in choices else default


def migrate_state(raw: Any) -> State:
    """
    Coerce an arbitrary prior STATE.json into the current schema.

    Every field is re-validated independently and defaulted when
    missing or mistyped, so this never fails and migrating twice
    equals migrating once. Unknown keys are dropped; the ephemeral
    `run` block is cleared.
    """
    base = _obj(raw)
    flags = _obj(base.get("flags"))
    config = _obj(base.get("config"))
    tools = _obj(config.get("tools"))
    safety = _obj(config.get("safety"))
    large_diff = _obj(safety.get("largeDiff"))
    verify_commands = config.get("verifyCommands")
    if not isinstance(verify_commands, list):
        verify_commands = []
    defaults = StateConfig()

    return State(
        project=_str(base.get("project"), "my-app"),
        status=_choice(base.get("status"), ("active", "waiting_human", "complete"), "active"),
        current_task=_opt_str(base.get("current_task")),
        retry_count=_int(base.get("retry_count"), 0),
        last_completed_task=_opt_str(base.get("last_completed_task")),
        task_started_at=_int(base.get("task_started_at"), None),
        flags=StateFlags(allowLargeDiffOnce=_bool(flags.get("allowLargeDiffOnce"), False)),
        run=None,
        config=StateConfig(
            orchestratorModel=_str(config.get("orchestratorModel"), ""),
            builderTimeout=_int(config.get("builderTimeout"), defaults.builderTimeout),
            orchestratorTimeout=_int(config.get("orchestratorTimeout"), defaults.orchestratorTimeout),
            verifyTimeout=_int(config.get("verifyTimeout"), defaults.verifyTimeout),
            watchdogTimeout=_int(config.get("watchdogTimeout"), defaults.watchdogTimeout),
            verifyCommands=[c for c in verify_commands if isinstance(c, str)],
            tools=ToolSettings(
                builder="cursor",
                cursor=CursorTool(mode=_choice(_obj(tools.get("cursor")).get("mode"), ("prompt-file", "stdin"), "prompt-file")),
                opencode=OpencodeTool(format=_choice(_obj(tools.get("opencode")).get("format"), ("default", "json"), "default")),
            ),
            capabilities=Capabilities(
                promptTransport=_choice(
                    _obj(config.get("capabilities")).get("promptTransport"),
                    ("prompt-file", "stdin", "file-attachment"),
                    "file-attachment",
                ),
            ),
            safety=SafetySettings(
                largeDiff=LargeDiffLimits(
                    maxFiles=_int(large_diff.get("maxFiles"), 8),
                    maxLines=_int(large_diff.get("maxLines"), 300),
                ),
                cleanUntrackedOnRollback=_bool(safety.get("cleanUntrackedOnRollback"), True),
                allowDirtyWorkspace=_bool(safety.get("allowDirtyWorkspace"), False),
            ),
        ),
        git=GitInfo(lkg=_opt_str(_obj(base.get("git")).get("lkg"))),
    )


# ---------------------------------------------------------------------------
# Merge-patch (per document, known fields only)
# ---------------------------------------------------------------------------

def merge_patch(base: Any, patch: Any) -> Any:
    """Objects merge key-wise; lists and null replace wholesale."""
    if not isinstance(base, dict) or not isinstance(patch, dict):
        return patch
    out = dict(base)
    for key, value in patch.items():
        if value is None or isinstance(value, list):
            out[key] = value
        else:
            out[key] = merge_patch(base.get(key), value)
    return out


def _nested_model(annotation: Any) -> type[BaseModel] | None:
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return annotation
    if typing.get_origin(annotation) in (Union, types.UnionType):
        for arg in typing.get_args(annotation):
            if isinstance(arg, type) and issubclass(arg, BaseModel):
                return arg
    return None


def _reject_unknown(model: type[BaseModel], patch: dict, path: str) -> None:
    for key, value in patch.items():
        field = model.model_fields.get(key)
        if field is None:
            raise PatchRejected(f"{path}{key} is not a known field")
        nested = _nested_model(field.annotation)
        if nested is not None and isinstance(value, dict):
            _reject_unknown(nested, value, f"{path}{key}.")


def apply_state_patch(current: State, patch: Any, runner: State) -> State:
    """
    Merge an orchestrator patch into STATE.

    `config` and `git` are re-asserted from the runner's own state
    after merging, whatever the patch contained.
    """
    if not isinstance(patch, dict):
        raise PatchRejected("STATE patch must be an object")
    patch = {k: v for k, v in patch.items() if k not in RUNNER_OWNED_STATE_FIELDS}
    _reject_unknown(State, patch, "STATE.")

    merged = merge_patch(current.model_dump(), patch)
    merged["config"] = runner.config.model_dump()
    merged["git"] = runner.git.model_dump()
    try:
        return State.model_validate(merged)
    except ValidationError as e:
        raise PatchRejected(describe_errors(e, "STATE")[0]) from e


def apply_task_patch(current: Task | None, patch: Any) -> Task:
    if not isinstance(patch, dict):
        raise PatchRejected("TASK patch must be an object")
    _reject_unknown(Task, patch, "TASK.")

    base = current.model_dump() if current else {}
    merged = merge_patch(base, patch)
    try:
        return Task.model_validate(merged)
    except ValidationError as e:
        raise PatchRejected(describe_errors(e, "TASK")[0]) from e


def validate_blocked_write(patch: Any) -> dict:
    """BLOCKED writes replace the whole document."""
    if not isinstance(patch, dict):
        raise PatchRejected("BLOCKED.json must be an object")
    if "reason" in patch and not isinstance(patch["reason"], str):
        raise PatchRejected("BLOCKED.reason must be a string")
    return patch
