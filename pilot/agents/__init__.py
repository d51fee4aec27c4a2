"""
Pilot Agent Roster

Each agent is an external CLI tool:
  - A binary (resolved from engine config)
  - A command line built from the workspace documents
  - An outcome interpreted from exit status and output

Agents are stateless between runs. State lives in the workspace.
"""

from __future__ import annotations

import os
import re
import signal
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from pilot.config_loader import EngineConfig
from pilot.documents import State, Task
from pilot.history import RunHistory


# ---------------------------------------------------------------------------
# Process runner
# ---------------------------------------------------------------------------

@dataclass
class ProcessResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def error_text(self) -> str:
        text = (self.stderr or "").strip() or (self.stdout or "").strip()
        if self.timed_out:
            text = f"Command timed out\n{text}".strip()
        return text or f"exit code {self.returncode}"


def run_process(
    argv: list[str],
    cwd: Path,
    timeout_ms: int,
    stdin_path: Path | None = None,
    merge_stderr: bool = False,
) -> ProcessResult:
    """
    Run a command with a hard deadline.

    The child gets its own process group; on timeout the whole group is
    killed and whatever output it produced is still returned.
    """
    stdin = open(stdin_path, "rb") if stdin_path else subprocess.DEVNULL
    try:
        try:
            proc = subprocess.Popen(
                argv,
                cwd=cwd,
                stdin=stdin,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT if merge_stderr else subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            return ProcessResult(returncode=127, stderr=str(e))

        timed_out = False
        try:
            out, err = proc.communicate(timeout=max(timeout_ms, 1) / 1000)
        except subprocess.TimeoutExpired:
            timed_out = True
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            out, err = proc.communicate()
    finally:
        if stdin_path:
            stdin.close()

    return ProcessResult(
        returncode=proc.returncode,
        stdout=(out or b"").decode("utf-8", errors="replace"),
        stderr=(err or b"").decode("utf-8", errors="replace"),
        timed_out=timed_out,
    )


def run_shell(command: str, cwd: Path, timeout_ms: int) -> ProcessResult:
    """Run a verification command line through bash, stderr folded into stdout."""
    return run_process(["bash", "-c", command], cwd=cwd, timeout_ms=timeout_ms, merge_stderr=True)


_AUTH_PATTERNS = [
    re.compile(r"unauthorized", re.I),
    re.compile(r"401"),
    re.compile(r"403"),
    re.compile(r"token.*expired", re.I),
    re.compile(r"authentication.*failed", re.I),
    re.compile(r"invalid.*token", re.I),
    re.compile(r"please.*login", re.I),
    re.compile(r"re-?auth", re.I),
]


def is_auth_error(text: str) -> bool:
    return any(p.search(text or "") for p in _AUTH_PATTERNS)


# ---------------------------------------------------------------------------
# Agent contract
# ---------------------------------------------------------------------------

class AgentContext(BaseModel):
    """Shared context passed to every agent invocation."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: str
    project_root: Path
    workspace_dir: Path
    state: State
    task: Task
    history: RunHistory


class AgentOutcome(BaseModel):
    """What the controller needs to act on after a tool ran."""
    ok: bool
    block: dict[str, Any] | None = None   # reason/action/extras for BLOCKED.json
    rollback_tag: str | None = None       # roll back before blocking
    report: dict[str, Any] | None = None  # synthetic REPORT.json
    data: dict[str, Any] = Field(default_factory=dict)


class BaseAgent(ABC):
    """
    Base class for the external tools Pilot drives.

    Subclasses define:
      - role: str (log tag and history folder)
      - build_command() constructs argv (+ optional stdin file)
      - interpret() turns the ProcessResult into an AgentOutcome
    """

    role: str = "unknown"

    def __init__(self, config: EngineConfig):
        self.config = config

    @property
    @abstractmethod
    def binary(self) -> str:
        ...

    @abstractmethod
    def timeout_ms(self, context: AgentContext) -> int:
        ...

    @abstractmethod
    def build_command(self, context: AgentContext) -> tuple[list[str], Path | None]:
        """Return argv and an optional file to feed on stdin."""
        ...

    @abstractmethod
    def interpret(self, result: ProcessResult, context: AgentContext) -> AgentOutcome:
        ...

    def run(self, context: AgentContext) -> AgentOutcome:
        """Execute the agent: build command → run with deadline → interpret."""
        argv, stdin_path = self.build_command(context)
        logger.debug(f"[{self.role.upper()}] {' '.join(argv)}")
        result = run_process(argv, cwd=context.project_root, timeout_ms=self.timeout_ms(context), stdin_path=stdin_path)
        if result.timed_out:
            logger.warning(f"[{self.role.upper()}] Timed out after {self.timeout_ms(context) / 1000:.0f}s")
        return self.interpret(result, context)
