"""
🎯 Orchestrator — the external planning agent (opencode).

Reads the orchestrate prompt plus CONTEXT.json as file attachments and
answers with exactly one JSON object on stdout:

  {"status": "ok" | "blocked" | "error",
   "notes": str | [str],
   "writes": {"pilot/TASK.json": {...}, ...},
   "delete": ["relative/path", ...]}

Only STATE, TASK and BLOCKED may be written. Every key is checked
before anything is applied.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from loguru import logger

from pilot.agents import AgentContext, AgentOutcome, BaseAgent, ProcessResult, is_auth_error
from pilot.workspace import resolve_prompt

ALLOWED_WRITES = {
    "STATE.json": "pilot/STATE.json",
    "TASK.json": "pilot/TASK.json",
    "BLOCKED.json": "pilot/BLOCKED.json",
    "pilot/STATE.json": "pilot/STATE.json",
    "pilot/TASK.json": "pilot/TASK.json",
    "pilot/BLOCKED.json": "pilot/BLOCKED.json",
}

# canonical key -> store document name
WRITE_TARGETS = {
    "pilot/STATE.json": "state",
    "pilot/TASK.json": "task",
    "pilot/BLOCKED.json": "blocked",
}

_UNSUPPORTED_FILE_FLAG = re.compile(r"unknown option|unknown flag|unrecognized option|--file", re.I)


class OrchestratorOutputError(ValueError):
    pass


def canonicalize_write_key(key: Any) -> str | None:
    """Map an orchestrator write key to its canonical form, or None if forbidden."""
    p = str(key or "").replace("\\", "/").strip()
    if "\0" in p:
        return None
    if p.startswith("/") or p.startswith("~"):
        return None
    if ".." in p.split("/"):
        return None
    return ALLOWED_WRITES.get(p)


def parse_orchestrator_output(stdout: str) -> Any:
    """json.loads of the trimmed stdout; raises ValueError on garbage."""
    return json.loads(stdout.strip())


def validate_orchestrator_output(parsed: Any) -> dict:
    """Check the top-level contract and normalize `notes` to a list."""
    if not isinstance(parsed, dict):
        raise OrchestratorOutputError("Output is not an object")
    status = parsed.get("status")
    if not isinstance(status, str) or not status:
        raise OrchestratorOutputError("Missing or invalid status string")
    if status not in ("ok", "blocked", "error"):
        raise OrchestratorOutputError("Invalid status value")
    if "writes" in parsed and not isinstance(parsed["writes"], dict):
        raise OrchestratorOutputError("Missing or invalid writes object")

    notes = parsed.get("notes", [])
    if isinstance(notes, str):
        notes = [notes]
    elif not isinstance(notes, list) or any(not isinstance(n, str) for n in notes):
        raise OrchestratorOutputError("Invalid notes")

    deletes = parsed.get("delete", [])
    if not isinstance(deletes, list):
        deletes = []

    return {
        "status": status,
        "notes": notes,
        "writes": parsed.get("writes") or {},
        "delete": [d for d in deletes if isinstance(d, str)],
    }


def canonicalize_writes(writes: dict) -> list[tuple[str, str, Any]]:
    """
    Validate every key up front.

    Returns (original_key, canonical_key, patch) triples; raises on the
    first key outside the allowed set so no write is ever half-applied.
    """
    out = []
    for key, patch in writes.items():
        canonical = canonicalize_write_key(key)
        if canonical is None:
            raise OrchestratorOutputError(f"Orchestrator attempted forbidden write: {key}")
        out.append((key, canonical, patch))
    return out


class OrchestratorAgent(BaseAgent):
    role = "orchestrator"

    def __init__(self, config):
        super().__init__(config)
        self._warned_model = False

    @property
    def binary(self) -> str:
        return self.config.tools.orchestrator_bin

    def timeout_ms(self, context: AgentContext) -> int:
        return context.state.config.orchestratorTimeout

    def model_args(self, model: str) -> list[str]:
        model = (model or "").strip()
        if "/" in model:
            return ["--model", model]
        if model and not self._warned_model:
            self._warned_model = True
            logger.warning(f"[ORCH] Ignoring unqualified orchestratorModel: {model}")
        return []

    def build_command(self, context: AgentContext) -> tuple[list[str], Path | None]:
        cfg = context.state.config
        return [
            self.binary, "run",
            "--print-logs", "--log-level", "ERROR",
            *self.model_args(cfg.orchestratorModel),
            "--format", cfg.tools.opencode.format,
            "--file", str(resolve_prompt(context.workspace_dir, "orchestrate")),
            "--file", str(context.workspace_dir / "CONTEXT.json"),
            "--",
            self.config.tools.orchestrator_message,
        ], None

    def interpret(self, result: ProcessResult, context: AgentContext) -> AgentOutcome:
        if not result.ok:
            error = result.error_text
            if not result.timed_out and _UNSUPPORTED_FILE_FLAG.search(error):
                return AgentOutcome(ok=False, rollback_tag="orchestrator-unsupported", block={
                    "reason": f"{self.binary} does not support file attachments (--file)",
                    "action": f"{self.binary} upgrade",
                    "error": error,
                })
            if is_auth_error(error):
                return AgentOutcome(ok=False, block={
                    "reason": f"Authentication required ({self.binary})",
                    "action": f"{self.binary} auth login",
                    "error": error,
                })
            return AgentOutcome(ok=False, rollback_tag="orchestrator-run-failed", block={
                "reason": "Orchestrator failed to run",
                "action": f"{self.binary} run --help --print-logs",
                "error": error,
            })

        raw_path = context.history.snapshot_text("orchestrator/raw-stdout.txt", result.stdout)
        view = f'cat "{raw_path}"'
        try:
            parsed = parse_orchestrator_output(result.stdout)
        except ValueError:
            first20 = "\n".join(result.stdout.strip().splitlines()[:20])
            return AgentOutcome(ok=False, rollback_tag="orchestrator-parse-failed", block={
                "reason": "Orchestrator output was not valid JSON",
                "action": view,
                "first20": first20,
            })

        try:
            output = validate_orchestrator_output(parsed)
            writes = canonicalize_writes(output["writes"])
        except OrchestratorOutputError as e:
            tag = "orchestrator-forbidden-write" if "forbidden write" in str(e) else "orchestrator-output-rejected"
            return AgentOutcome(ok=False, rollback_tag=tag, block={
                "reason": "Orchestrator output rejected",
                "action": view,
                "error": str(e),
            })

        output["writes"] = writes
        output["raw_path"] = str(raw_path)
        return AgentOutcome(ok=True, data=output)
