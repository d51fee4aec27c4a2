"""
🔨 Builder — the external coding agent (cursor-agent).

Gets one Task rendered into a prompt file, mutates the working tree
and is expected to write REPORT.json itself. When it crashes, times
out or cannot be driven at all, the outcome says so and the controller
either blocks or writes a synthetic report on its behalf.
"""

from __future__ import annotations

import json
import re
from pathlib import Path

from loguru import logger

from pilot.agents import AgentContext, AgentOutcome, BaseAgent, ProcessResult, is_auth_error
from pilot.context import truncate
from pilot.store import write_text_atomic
from pilot.workspace import resolve_prompt

_UNSUPPORTED_FLAG = re.compile(r"unknown option|unknown flag|unrecognized option|prompt-file", re.I)
_TIMEOUT_TEXT = re.compile(r"timed out|timeout", re.I)


def render_build_prompt(template: str, task_json: dict) -> str:
    return (
        f"{template}\n\n---\n\n## TASK.json:\n\n"
        f"```json\n{json.dumps(task_json, indent=2)}\n```\n\nExecute now.\n"
    )


def failure_report(task_id: str, error: str, timed_out: bool = False) -> dict:
    status = "timeout" if timed_out or _TIMEOUT_TEXT.search(error) else "failed"
    return {
        "task_id": task_id,
        "status": status,
        "summary": ["Builder failed"],
        "error": truncate(error, 2000),
        "partial_progress": "Check git status/diff for any partial changes",
        "files_changed": [],
        "questions": [],
    }


class BuilderAgent(BaseAgent):
    role = "builder"

    @property
    def binary(self) -> str:
        return self.config.tools.builder_bin

    def timeout_ms(self, context: AgentContext) -> int:
        return context.state.config.builderTimeout

    def mode(self, context: AgentContext) -> str:
        return context.state.config.tools.cursor.mode

    def write_prompt(self, context: AgentContext) -> Path:
        template = resolve_prompt(context.workspace_dir, "build").read_text(encoding="utf-8")
        prompt = render_build_prompt(template, context.task.model_dump(mode="json"))
        path = context.workspace_dir / ".tmp" / f"{context.run_id}.build.prompt.md"
        write_text_atomic(path, prompt)
        return path

    def build_command(self, context: AgentContext) -> tuple[list[str], Path | None]:
        prompt_path = self.write_prompt(context)
        if self.mode(context) == "stdin":
            return [self.binary, "--force"], prompt_path
        return [self.binary, "--prompt-file", str(prompt_path), "--force"], None

    def run(self, context: AgentContext) -> AgentOutcome:
        tool = context.state.config.tools.builder
        if tool != "cursor":
            return AgentOutcome(ok=False, block={
                "reason": f"Unsupported builder tool: {tool}",
                "action": f'Edit {context.workspace_dir / "STATE.json"} config.tools.builder to "cursor"',
            })
        logger.info(f"[BUILDER] {context.task.id} - {context.task.title}")
        return super().run(context)

    def interpret(self, result: ProcessResult, context: AgentContext) -> AgentOutcome:
        task_id = context.task.id
        context.history.snapshot_text(f"builder/{task_id}-output.txt", result.stdout + result.stderr)

        mode = self.mode(context)
        if result.ok:
            logger.info("[BUILDER] Finished")
            return AgentOutcome(ok=True, data={"transport": mode})

        error = result.error_text
        logger.warning(f"[BUILDER] Failed: {truncate(error, 200)}")
        if not result.timed_out and mode == "prompt-file" and _UNSUPPORTED_FLAG.search(error):
            return AgentOutcome(ok=False, block={
                "reason": f"{self.binary} does not support --prompt-file",
                "action": f"{self.binary} --help",
                "error": error,
            })
        if is_auth_error(error):
            return AgentOutcome(ok=False, block={
                "reason": f"Authentication required ({self.binary})",
                "action": f"{self.binary} auth",
                "error": error,
            })
        return AgentOutcome(ok=False, report=failure_report(task_id, error, result.timed_out))
