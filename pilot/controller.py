"""
Pilot Controller — The Loop

It is NOT smart. It is deterministic.

Responsibilities:
  - Preflight the repository, tools and workspace version
  - Move to a session branch off the default branch
  - Reconcile leftovers from a crashed previous process
  - Hand a ready Task to the builder
  - Judge the builder's Report (scope, diff size, invariants, verify)
  - Commit and advance the last known good commit
  - Ask the orchestrator what comes next and apply its writes
  - Block with one actionable fix whenever a human is needed

It never writes code. It only coordinates.
"""

from __future__ import annotations

import os
import queue
import shutil
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from pilot.agents import AgentContext, AgentOutcome, run_shell
from pilot.agents.builder import BuilderAgent
from pilot.agents.orchestrator import WRITE_TARGETS, OrchestratorAgent
from pilot.config_loader import EngineConfig
from pilot.context import build_context_bundle, now_ms, update_recent_on_commit
from pilot.documents import (
    PatchRejected,
    Report,
    RunInfo,
    State,
    Task,
    apply_state_patch,
    apply_task_patch,
    validate_blocked_write,
    validate_roadmap,
)
from pilot.event_bus import EventBus, PilotEvent
from pilot.git import Git, GitError
from pilot.guardrail import compute_diff_stats, evaluate_guardrail, override_command
from pilot.history import RunHistory, new_run_id, random_id, ts_compact, ts_minute
from pilot.rollback import rollback_to_lkg
from pilot.scope import enforce_scope, is_operational_path
from pilot.store import DOCUMENT_FILES, ProtocolStore, StoreError, WorkspaceWatcher
from pilot.workspace import check_tool_binaries, check_workspace_version


def notify(title: str, message: str) -> None:
    """Best-effort desktop notification."""
    if not shutil.which("terminal-notifier"):
        return
    try:
        subprocess.run(
            ["terminal-notifier", "-title", f"Pilot: {title}", "-message", message],
            capture_output=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"[LOOP] Notification failed: {e}")


def allow_dirty_command(state_path: Path) -> str:
    script = (
        "import json,pathlib;"
        f"p=pathlib.Path('{state_path}');"
        "s=json.loads(p.read_text());"
        "s.setdefault('config',{}).setdefault('safety',{})['allowDirtyWorkspace']=True;"
        "p.write_text(json.dumps(s,indent=2)+'\\n')"
    )
    return f"python3 -c \"{script}\" && echo 'Set allowDirtyWorkspace=true, rerun: pilot run --once'"


class Controller:
    """
    Drives one workspace. `prepare()` runs once per process; after that
    either `run_once()` or `serve()` dispatches the handlers.
    """

    def __init__(
        self,
        workspace_dir: Path,
        config: EngineConfig,
        cwd: Path | None = None,
        clock: Callable[[], int] = now_ms,
        bus: EventBus | None = None,
    ):
        self.workspace_dir = workspace_dir.resolve()
        self.config = config
        self.cwd = (cwd or Path.cwd()).resolve()
        self.now_ms = clock
        self.bus = bus or EventBus()
        self.store = ProtocolStore(self.workspace_dir, self.bus)
        self.paths = self.store.paths

        self.run_id = new_run_id()
        self.history: RunHistory | None = None
        self.git: Git | None = None
        self.workspace_rel = "pilot"

        self.builder = BuilderAgent(config)
        self.orchestrator = OrchestratorAgent(config)

        self._busy = threading.Lock()
        self._events: queue.Queue[str] = queue.Queue()
        self._stop = threading.Event()
        self._log_sink: int | None = None

    # -----------------------------------------------------------------------
    # Logging / blocking
    # -----------------------------------------------------------------------

    def _open_log(self) -> None:
        self.workspace_dir.mkdir(parents=True, exist_ok=True)
        self._log_sink = logger.add(
            self.paths.log,
            rotation=self.config.logging.rotate_bytes,
            level="DEBUG",
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<7} | {message}",
            enqueue=False,
        )

    def close(self) -> None:
        self._stop.set()
        if self._log_sink is not None:
            logger.remove(self._log_sink)
            self._log_sink = None

    def _history_rel(self) -> str:
        base = self.git.root if self.git else self.cwd
        return os.path.relpath(self.history.path, base)

    def _rel(self, path: Path | None) -> str | None:
        if path is None:
            return None
        base = self.git.root if self.git else self.cwd
        return os.path.relpath(path, base)

    def block(self, reason: str, action: str, extra: dict[str, Any] | None = None, state: State | None = None) -> None:
        """Write BLOCKED.json and park the run in waiting_human."""
        payload = {
            "reason": reason,
            "action": action,
            "run": {"id": self.run_id, "history_dir": self._history_rel()},
            **(extra or {}),
        }
        for name in ("state", "task", "report"):
            self.history.snapshot_file(DOCUMENT_FILES[name], self.paths.document(name))
        self.store.write_blocked(payload)

        if state is None:
            loaded = self.store.load("state")
            state = loaded.document if loaded.ok else None
        if state is not None:
            state.status = "waiting_human"
            self.store.write_state(state)

        logger.error(f"[LOOP] 🛑 BLOCKED: {reason}")
        logger.error(f"[LOOP]    → {action}")
        notify("Blocked", reason)

    def _block_outcome(self, outcome: AgentOutcome, state: State) -> None:
        extra = {k: v for k, v in outcome.block.items() if k not in ("reason", "action")}
        if outcome.rollback_tag:
            _, patch_dir = rollback_to_lkg(self.git, state, self.history, outcome.rollback_tag, self.workspace_rel)
            extra["rollback_patch_dir"] = self._rel(patch_dir)
        self.block(outcome.block["reason"], outcome.block["action"], extra, state)

    def _read_validated(self, name: str) -> Any | None:
        """Typed document, or None. An unreadable document blocks the run."""
        loaded = self.store.load(name)
        if not loaded.present:
            return None
        if loaded.errors:
            label = DOCUMENT_FILES[name]
            path = self.paths.document(name)
            self.history.snapshot_file(f"invalid/{ts_compact()}-{label}", path)
            self.block(f"Invalid {label}: {loaded.errors[0]}", f'cat "{path}"')
            return None
        return loaded.document

    def _active_state(self) -> State | None:
        """Fresh STATE from disk, or None if handlers must stand down."""
        if self.store.exists("blocked"):
            return None
        state = self._read_validated("state")
        if state is None or state.status != "active":
            return None
        return state

    def _context(self, state: State, task: Task) -> AgentContext:
        return AgentContext(
            run_id=self.run_id,
            project_root=self.git.root,
            workspace_dir=self.workspace_dir,
            state=state,
            task=task,
            history=self.history,
        )

    # -----------------------------------------------------------------------
    # Preflight
    # -----------------------------------------------------------------------

    def prepare(self) -> bool:
        """Preflight + reconciliation. False means the run is blocked."""
        self.history = RunHistory(self.paths.history_dir, self.run_id)
        self._open_log()
        logger.info(f"[LOOP] Run {self.run_id} ({self.workspace_dir})")

        loaded = self.store.load("state")
        if not loaded.present:
            self.block("Missing pilot/STATE.json", "pilot init")
            return False
        if loaded.errors:
            self.history.snapshot_file(f"invalid/{ts_compact()}-STATE.json", self.paths.state)
            self.block("Invalid STATE.json", f'cat "{self.paths.state}"', {"error": loaded.errors[0]})
            return False
        state: State = loaded.document

        try:
            self.git = Git.discover(self.workspace_dir)
        except GitError:
            self.block("Not a git repository", "git init", state=state)
            return False
        self.workspace_rel = Path(os.path.relpath(self.workspace_dir, self.git.root)).as_posix()

        state.run = RunInfo(id=self.run_id, started_at=self.now_ms(), history_dir=self._history_rel())
        self.store.write_state(state)
        self.history.snapshot_file("startup/STATE.json", self.paths.state)
        self.history.snapshot_file("startup/ROADMAP.json", self.paths.roadmap)

        problem = check_workspace_version(self.store)
        if problem:
            self.block(problem.reason, problem.action, state=state)
            return False

        head = self.git.head()
        if head is None:
            self.block("No commits yet (needed for rollback/LKG)", 'git commit --allow-empty -m "pilot: init"', state=state)
            return False
        if not state.git.lkg:
            state.git.lkg = head
            self.store.write_state(state)

        problem = check_tool_binaries(self.config, rerun="pilot run --once")
        if problem:
            self.block(problem.reason, problem.action, state=state)
            return False

        if not self.ensure_session_branch(state):
            return False

        self.reconcile(state)
        return True

    def ensure_session_branch(self, state: State) -> bool:
        current = self.git.branch()
        if current is None:
            self.block("Detached HEAD", "git checkout -b pilot/session-YYYYMMDD-HHMM", state=state)
            return False

        origin_default = self.git.origin_default_branch()
        on_default = current == origin_default if origin_default else current in ("main", "master")
        if not on_default:
            return True

        if self.git.is_dirty():
            if state.config.safety.allowDirtyWorkspace:
                logger.warning(f"[LOOP] Working tree dirty on {current} (allowDirtyWorkspace=true, proceeding)")
            elif self.config.autostash:
                try:
                    self.git.stash_push(f"pilot autostash {self.run_id}")
                    logger.info(f"[LOOP] Stashed local changes on {current}")
                except GitError as e:
                    self.block(f"Working tree dirty on {current}", "git stash -u", {"error": str(e)}, state)
                    return False
            else:
                self.block(f"Working tree dirty on {current}", allow_dirty_command(self.paths.state), state=state)
                return False

        base = f"pilot/session-{ts_minute()}"
        last_error = ""
        for name in (base, f"{base}-{random_id(4)}"):
            try:
                self.git.checkout_new_branch(name)
            except GitError as e:
                last_error = str(e)
                continue
            self.history.snapshot_text("git-branch.txt", name + "\n")
            logger.info(f"[LOOP] 🌿 Switched to {name}")
            return True

        self.block(
            "Failed to create session branch",
            "git checkout -b pilot/session-YYYYMMDD-HHMM",
            {"error": last_error or "git checkout -b failed"},
            state,
        )
        return False

    def reconcile(self, state: State) -> None:
        """Clean up after a process that died mid-cycle."""
        if self.store.exists("report"):
            raw = self.store.read_raw("report")
            task_id = raw.get("task_id") if isinstance(raw, dict) else None
            if not state.current_task or (raw is not None and task_id != state.current_task):
                self.history.snapshot_file(f"startup/{ts_compact()}-REPORT.json", self.paths.report)
                self.store.delete("report")
                logger.info("[LOOP] Archived stale REPORT.json")

        if state.task_started_at and not self.store.exists("report") and self.store.exists("task"):
            raw = self.store.read_raw("task")
            if isinstance(raw, dict) and raw.get("status") == "in_progress":
                self.history.snapshot_file(f"startup/{ts_compact()}-TASK.json", self.paths.task)
                self.store.write_task({**raw, "status": "ready"})
                state.task_started_at = None
                self.store.write_state(state)
                logger.info("[LOOP] Interrupted task reset to ready")

        if not self.store.exists("task") and self.store.exists("roadmap"):
            roadmap = self.store.read_raw("roadmap")
            if isinstance(roadmap, list) and roadmap and isinstance(roadmap[0], dict):
                self.store.write_task({**roadmap[0], "status": "ready"})
                logger.info(f"[LOOP] Seeded TASK.json from roadmap: {roadmap[0].get('id')}")

    # -----------------------------------------------------------------------
    # Handlers
    # -----------------------------------------------------------------------

    def handle_task(self) -> bool:
        """True when the builder was started for a ready task."""
        if not self._busy.acquire(blocking=False):
            logger.debug("[LOOP] Busy; task event skipped")
            return False
        try:
            return self._handle_task()
        finally:
            self._busy.release()

    def _handle_task(self) -> bool:
        state = self._active_state()
        if state is None:
            return False
        task = self._read_validated("task")
        if task is None or task.status != "ready":
            return False

        if self.store.exists("report"):
            self.history.snapshot_file(f"reports/{ts_compact()}-REPORT.json", self.paths.report)
            self.store.delete("report")

        task.status = "in_progress"
        self.store.write_task(task)
        state.current_task = task.id
        state.task_started_at = self.now_ms()
        self.store.write_state(state)

        outcome = self.builder.run(self._context(state, task))
        if outcome.ok:
            loaded = self.store.load("state")
            if loaded.ok:
                fresh: State = loaded.document
                fresh.config.capabilities.promptTransport = outcome.data.get("transport", "prompt-file")
                self.store.write_state(fresh)
            return True
        if outcome.block:
            self.block(outcome.block["reason"], outcome.block["action"],
                       {k: v for k, v in outcome.block.items() if k not in ("reason", "action")}, state)
            return True
        if outcome.report and not self.store.exists("report"):
            self.store.write_report(outcome.report)
        return True

    def handle_report(self) -> None:
        if not self._busy.acquire(blocking=False):
            logger.debug("[LOOP] Busy; report event skipped")
            return
        try:
            self._handle_report()
        finally:
            self._busy.release()

    def _handle_report(self) -> None:
        state = self._active_state()
        if state is None:
            return
        report: Report | None = self._read_validated("report")
        if report is None:
            return
        if report.task_id != state.current_task:
            self.history.snapshot_file(f"stale/{ts_compact()}-REPORT.json", self.paths.report)
            self.store.delete("report")
            logger.info(f"[LOOP] Stale report for {report.task_id} archived")
            return
        if state.task_started_at is None:
            logger.debug(f"[LOOP] Report for {report.task_id} already handled")
            return

        state.task_started_at = None
        self.store.write_state(state)

        task: Task | None = self._read_validated("task")
        if task is None:
            return

        logger.info(f"[LOOP] Report {report.task_id}: {report.status}")
        if report.status == "done":
            self._accept(state, task, report)
        elif report.status in ("failed", "timeout"):
            scope = enforce_scope(self.git, task, state, self.config, self.history, self.workspace_rel)
            if not scope.ok:
                self._block_scope(scope, state)
                return
            rollback_to_lkg(self.git, state, self.history, "report-failed-or-timeout", self.workspace_rel)
            self.run_orchestrator(report)
        else:
            self.run_orchestrator(report)

    def _block_scope(self, scope, state: State) -> None:
        self.block(
            "Scope/forbidden violation",
            "Review changed files and adjust scope",
            {"violations": scope.violations, "rollback_patch_dir": scope.patch_dir},
            state,
        )

    def _accept(self, state: State, task: Task, report: Report) -> None:
        """scope → guardrail → invariants → verify → commit → orchestrator."""
        scope = enforce_scope(self.git, task, state, self.config, self.history, self.workspace_rel)
        if not scope.ok:
            self._block_scope(scope, state)
            return

        stats = compute_diff_stats(
            self.git, exclude=lambda p: is_operational_path(p, self.workspace_rel, self.config)
        )
        decision = evaluate_guardrail(stats, state.config.safety.largeDiff, state.flags.allowLargeDiffOnce)
        if not decision.passed:
            self.block(
                "Large diff guardrail (review required)",
                override_command(str(self.paths.state)),
                {"diffstat": self.git.diff_stat()},
                state,
            )
            return
        if decision.consumed_override:
            state.flags.allowLargeDiffOnce = False
            self.store.write_state(state)

        for group, commands, tag, error in (
            ("invariants", list(self.config.safety.invariant_commands),
             "invariant-verify-failed", "Runner invariants failed (git diff --check)"),
            ("verify", list(state.config.verifyCommands),
             "verify-commands-failed", "Verification commands failed after task completion"),
        ):
            if not self.run_command_group(group, commands, state.config.verifyTimeout):
                rollback_to_lkg(self.git, state, self.history, tag, self.workspace_rel)
                failed = report.model_copy(update={"status": "failed", "error": error})
                self.store.write_report(failed)
                self.run_orchestrator(failed)
                return

        try:
            self.git.commit(f"pilot: {report.task_id}")
        except GitError as e:
            self.block("Commit failed", f'git -C "{self.git.root}" status', {"error": str(e)}, state)
            return
        head = self.git.head() or state.git.lkg
        state.git.lkg = head
        state.retry_count = 0
        state.last_completed_task = report.task_id
        self.store.write_state(state)
        logger.info(f"[LOOP] ✓ {report.task_id} committed; LKG {head[:8] if head else '-'}")

        if head:
            update_recent_on_commit(self.store, self.git, task, report, head, self.config.loop.recent_max_items)
        self.run_orchestrator(report)

    def run_command_group(self, group: str, commands: list[str], timeout_ms: int) -> bool:
        if not commands:
            return True
        logger.info(f"[VERIFY] Running {group} ({len(commands)} command(s))")
        for i, cmd in enumerate(commands):
            result = run_shell(cmd, cwd=self.git.root, timeout_ms=timeout_ms)
            output = result.stdout + ("\n[timed out]\n" if result.timed_out else "")
            self.history.snapshot_text(f"verify/{group}-{i:02d}.txt", output)
            if not result.ok:
                logger.warning(f"[VERIFY] ✗ {cmd}")
                return False
            logger.info(f"[VERIFY] ✓ {cmd}")
        return True

    # -----------------------------------------------------------------------
    # Orchestrator
    # -----------------------------------------------------------------------

    def run_orchestrator(self, report: Report | None) -> bool:
        task: Task | None = self._read_validated("task")
        if task is None:
            return False
        if self.store.exists("roadmap"):
            raw = self.store.read_raw("roadmap")
            errors = validate_roadmap(raw) if raw is not None else ["invalid JSON"]
            if errors:
                self.history.snapshot_file(f"invalid/{ts_compact()}-ROADMAP.json", self.paths.roadmap)
                self.block(f"Invalid ROADMAP.json: {errors[0]}", f'cat "{self.paths.roadmap}"')
                return False
        if self.store.exists("blocked"):
            return False

        try:
            state = self.store.read_state()
        except StoreError as e:
            logger.error(f"[ORCH] {e}")
            return False

        logger.info(f"[ORCH] 🎯 Orchestrator ({state.config.orchestratorModel or 'default model'})")
        bundle = build_context_bundle(
            self.store, self.git, state, task, report, self.config, self.run_id, cwd=self.cwd
        )
        self.store.write_context(bundle)
        self.history.snapshot_file(f"context/{ts_compact()}-CONTEXT.json", self.paths.context)

        outcome = self.orchestrator.run(self._context(state, task))
        if not outcome.ok:
            self._block_outcome(outcome, state)
            return False

        if not self.apply_writes(outcome.data, state):
            return False
        self.apply_deletes(outcome.data.get("delete", []))

        for note in outcome.data.get("notes", []):
            logger.info(f"[ORCH]   {note}")
        logger.info(f"[ORCH] ✓ {outcome.data['status']}")
        return True

    def apply_writes(self, output: dict, runner: State) -> bool:
        """Merge and validate every patch first; nothing is written unless all pass."""
        view = f'cat "{output.get("raw_path", "")}"'
        staged: dict[str, Any] = {}
        try:
            for original, canonical, patch in output.get("writes", []):
                target = WRITE_TARGETS[canonical]
                if target == "state":
                    staged["state"] = apply_state_patch(staged.get("state") or self.store.read_state(), patch, runner)
                elif target == "task":
                    staged["task"] = apply_task_patch(staged.get("task") or self.store.read_task(), patch)
                else:
                    staged["blocked"] = validate_blocked_write(patch)
                logger.debug(f"[ORCH]   accepted {original} => {DOCUMENT_FILES[target]}")
        except (PatchRejected, StoreError) as e:
            _, patch_dir = rollback_to_lkg(
                self.git, runner, self.history, "orchestrator-output-rejected", self.workspace_rel
            )
            self.block("Orchestrator output rejected", view,
                       {"error": str(e), "rollback_patch_dir": self._rel(patch_dir)})
            return False

        for target, document in staged.items():
            self.store.write(target, document)
            logger.info(f"[ORCH]   → wrote {DOCUMENT_FILES[target]}")

        if "blocked" in staged:
            loaded = self.store.load("state")
            if loaded.ok:
                loaded.document.status = "waiting_human"
                self.store.write_state(loaded.document)
            notify("Blocked", str(staged["blocked"].get("reason", "")))
        return True

    def apply_deletes(self, paths: list[str]) -> None:
        root = self.git.root.resolve()
        for rel in paths:
            target = Path(rel) if rel.startswith("/") else root / rel
            target = target.resolve()
            if not target.is_relative_to(root):
                logger.warning(f"[ORCH]   ✗ refusing to delete outside project: {rel}")
                continue
            try:
                target.unlink()
                logger.info(f"[ORCH]   → deleted {rel}")
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"[ORCH]   ✗ could not delete {rel}: {e}")

    # -----------------------------------------------------------------------
    # Watchdog
    # -----------------------------------------------------------------------

    def watchdog_tick(self) -> bool:
        """Write a synthetic timeout report for a builder that went silent."""
        state = self._active_state()
        if state is None or not state.task_started_at or not state.current_task:
            return False
        timeout = state.config.watchdogTimeout
        elapsed = self.now_ms() - state.task_started_at
        if elapsed <= timeout or self.store.exists("report"):
            return False
        logger.warning(f"[LOOP] Watchdog: no report for {state.current_task} after {elapsed / 1000:.0f}s")
        self.store.write_report({
            "task_id": state.current_task,
            "status": "timeout",
            "summary": ["Watchdog: no report received within timeout"],
            "error": f"No REPORT.json after {timeout / 1000:g}s",
            "partial_progress": "Unknown - builder may have crashed or hung",
            "files_changed": [],
            "questions": [],
        })
        return True

    # -----------------------------------------------------------------------
    # Drivers
    # -----------------------------------------------------------------------

    def run_once(self) -> int:
        """One build → verify → decide cycle. Returns the process exit code."""
        self.handle_task()
        if self.store.exists("report"):
            self.handle_report()
        return 2 if self.store.exists("blocked") else 0

    def _on_event(self, event: PilotEvent) -> None:
        if event.event_type != "document.changed":
            return
        if event.document in ("task", "report"):
            if self._busy.locked():
                logger.debug(f"[LOOP] Busy; {event.document} change ignored")
                return
            if self.store.is_own_write(event.document):
                return
            self._events.put(event.document)
        elif event.document == "blocked" and event.payload.get("created"):
            raw = self.store.read_raw("blocked")
            if isinstance(raw, dict) and raw.get("reason"):
                logger.warning(f"[LOOP] 🛑 BLOCKED: {raw['reason']}")

    def _dispatch(self, name: str) -> None:
        """
        Run one handler and queue its follow-up. Changes made while a
        handler is busy, and the engine's own writes, never reach the
        queue through the watcher, so the follow-ups are queued here.
        """
        if name == "task":
            # the builder writes REPORT.json while we are busy
            if self.handle_task() and self.store.exists("report"):
                self._events.put("report")
        elif name == "report":
            self.handle_report()
            # the orchestrator may have written the next TASK.json
            self._events.put("task")

    def serve(self) -> None:
        """Watch the workspace until stop() is called (or KeyboardInterrupt)."""
        loop = self.config.loop
        watcher = WorkspaceWatcher(self.paths, self.bus, interval_s=loop.poll_interval_ms / 1000)
        self.bus.subscribe(self._on_event)
        watcher.start()
        logger.info("[LOOP] Watching for TASK.json / REPORT.json changes")

        start = time.monotonic()
        pending: dict[str, float] = {
            "task": start + loop.startup_delay_ms / 1000,
            "report": start + loop.startup_delay_ms / 1000 + loop.debounce_ms / 1000,
        }
        next_watchdog = start + loop.watchdog_interval_ms / 1000
        try:
            while not self._stop.is_set():
                try:
                    name = self._events.get(timeout=0.1)
                    pending[name] = time.monotonic() + loop.debounce_ms / 1000
                except queue.Empty:
                    pass

                now = time.monotonic()
                for name, due in sorted(pending.items(), key=lambda kv: kv[1]):
                    if due <= now:
                        pending.pop(name)
                        self._dispatch(name)

                if now >= next_watchdog:
                    next_watchdog = now + loop.watchdog_interval_ms / 1000
                    if self.watchdog_tick():
                        self._events.put("report")
        finally:
            watcher.stop()

    def stop(self) -> None:
        self._stop.set()
