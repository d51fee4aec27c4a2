"""
Configuration loader for Pilot.

Merges built-in defaults with per-workspace overrides/engine.yaml
and PILOT_* environment variables. The result is frozen: it is
built once at process start and passed explicitly to every component.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class ToolsConfig(_Frozen):
    builder_bin: str = "cursor-agent"
    orchestrator_bin: str = "opencode"
    orchestrator_message: str = "Read the attached file and output JSON only."


class SafetyConfig(_Frozen):
    baseline_forbidden: tuple[str, ...] = ()
    invariant_commands: tuple[str, ...] = ("git diff --check",)


class WorkspaceLayout(_Frozen):
    operational_files: tuple[str, ...] = ()
    operational_dirs: tuple[str, ...] = ()


class LoopConfig(_Frozen):
    debounce_ms: int = 300
    startup_delay_ms: int = 1200
    poll_interval_ms: int = 250
    watchdog_interval_ms: int = 60_000
    recent_max_items: int = 5


class LoggingConfig(_Frozen):
    rotate_bytes: int = 2 * 1024 * 1024


class EngineConfig(_Frozen):
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    workspace: WorkspaceLayout = Field(default_factory=WorkspaceLayout)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    autostash: bool = False
    run_once: bool = False

    @property
    def builder_is_default(self) -> bool:
        return self.tools.builder_bin == ToolsConfig().builder_bin


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(
    workspace_dir: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> EngineConfig:
    """
    Load config by merging:
      1. Built-in defaults (pilot/config.yaml)
      2. Workspace overrides (<workspace>/overrides/engine.yaml)
      3. Environment variable overrides
    """
    env = os.environ if env is None else env

    # 1. Built-in defaults
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}
    baseline = list(base.get("safety", {}).get("baseline_forbidden", []))

    # 2. Workspace overrides
    if workspace_dir:
        override_path = workspace_dir / "overrides" / "engine.yaml"
        if override_path.exists():
            with open(override_path, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    # Overrides may extend the baseline forbidden set, never shrink it.
    extra = base.get("safety", {}).get("baseline_forbidden", []) or []
    base.setdefault("safety", {})["baseline_forbidden"] = list(dict.fromkeys([*baseline, *extra]))

    # 3. Env overrides
    tools = base.setdefault("tools", {})
    builder_bin = (env.get("PILOT_CURSOR_BIN") or "").strip()
    if builder_bin:
        tools["builder_bin"] = builder_bin
    orchestrator_bin = (env.get("PILOT_OPENCODE_BIN") or "").strip()
    if orchestrator_bin:
        tools["orchestrator_bin"] = orchestrator_bin
    base["autostash"] = env.get("PILOT_AUTOSTASH") == "1"
    base["run_once"] = env.get("PILOT_RUN_ONCE") == "1"

    return EngineConfig(**base)


def resolve_workspace_dir(workspace: str | Path | None = None, cwd: Path | None = None) -> Path:
    """Workspace directory from the CLI option, $PILOT_WORKSPACE, or ./pilot."""
    ws = workspace or os.environ.get("PILOT_WORKSPACE") or "pilot"
    return ((cwd or Path.cwd()) / ws).resolve()
