"""
Pilot Protocol Store — the durable mailbox.

Each protocol document is a single-slot channel on disk, replaced
atomically (write temp file, rename into place) so a reader never
observes a partial document. The store publishes a PilotEvent for
every write/delete, and WorkspaceWatcher publishes changes made by
other processes (the builder writing REPORT.json, a human editing
TASK.json) onto the same bus.
"""

from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from pilot.documents import (
    Blocked,
    ContextBundle,
    Manifest,
    Recent,
    Report,
    State,
    Task,
    parse_document,
)
from pilot.event_bus import EventBus


class StoreError(RuntimeError):
    pass


# ---------------------------------------------------------------------------
# Atomic file primitives
# ---------------------------------------------------------------------------

@retry(
    retry=retry_if_exception_type(PermissionError),
    stop=stop_after_attempt(5),
    wait=wait_fixed(0.05),
    reraise=True,
)
def _replace(tmp: Path, target: Path) -> None:
    os.replace(tmp, target)


def write_text_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    _replace(tmp, path)


def write_json_atomic(path: Path, data: Any) -> None:
    write_text_atomic(path, json.dumps(data, indent=2) + "\n")


def copy_atomic(source: Path, dest: Path) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_name(f"{dest.name}.tmp")
    tmp.write_bytes(source.read_bytes())
    _replace(tmp, dest)


def file_signature(path: Path) -> tuple[int, int] | None:
    """(mtime_ns, size) of a file, or None when it does not exist."""
    try:
        st = path.stat()
    except OSError:
        return None
    return (st.st_mtime_ns, st.st_size)


def read_json(path: Path) -> Any | None:
    """Parsed JSON, or None when the file is missing or not valid JSON."""
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Workspace layout
# ---------------------------------------------------------------------------

DOCUMENT_FILES = {
    "state": "STATE.json",
    "task": "TASK.json",
    "report": "REPORT.json",
    "roadmap": "ROADMAP.json",
    "blocked": "BLOCKED.json",
    "context": "CONTEXT.json",
    "recent": "RECENT.json",
    "manifest": "MANIFEST.json",
}


@dataclass(frozen=True)
class WorkspacePaths:
    root: Path

    def document(self, name: str) -> Path:
        return self.root / DOCUMENT_FILES[name]

    @property
    def state(self) -> Path:
        return self.document("state")

    @property
    def task(self) -> Path:
        return self.document("task")

    @property
    def report(self) -> Path:
        return self.document("report")

    @property
    def roadmap(self) -> Path:
        return self.document("roadmap")

    @property
    def blocked(self) -> Path:
        return self.document("blocked")

    @property
    def context(self) -> Path:
        return self.document("context")

    @property
    def recent(self) -> Path:
        return self.document("recent")

    @property
    def manifest(self) -> Path:
        return self.document("manifest")

    @property
    def log(self) -> Path:
        return self.root / "run.log"

    @property
    def history_dir(self) -> Path:
        return self.root / "history"

    @property
    def backup_dir(self) -> Path:
        return self.root / ".backup"


@dataclass
class Loaded:
    """Outcome of reading one document: the model, or why it is unusable."""
    document: Any = None
    errors: list[str] | None = None
    present: bool = False

    @property
    def ok(self) -> bool:
        return self.present and not self.errors


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class ProtocolStore:
    """Typed read/write access to the workspace documents."""

    _MODELS: dict[str, type[BaseModel]] = {
        "state": State,
        "task": Task,
        "report": Report,
        "manifest": Manifest,
        "blocked": Blocked,
    }

    def __init__(self, workspace_dir: Path, bus: EventBus | None = None):
        self.paths = WorkspacePaths(workspace_dir)
        self.bus = bus or EventBus()
        self._own: dict[str, tuple[int, int] | None] = {}

    def exists(self, name: str) -> bool:
        return self.paths.document(name).exists()

    def is_own_write(self, name: str) -> bool:
        """True while the file on disk is exactly what this store last wrote (or removed)."""
        return name in self._own and self._own[name] == file_signature(self.paths.document(name))

    def read_raw(self, name: str) -> Any | None:
        return read_json(self.paths.document(name))

    def load(self, name: str) -> Loaded:
        """Read and validate a typed document without raising."""
        path = self.paths.document(name)
        if not path.exists():
            return Loaded()
        raw = read_json(path)
        label = DOCUMENT_FILES[name]
        if raw is None:
            return Loaded(errors=["invalid JSON"], present=True)
        doc, errors = parse_document(self._MODELS[name], raw, label.removesuffix(".json"))
        return Loaded(document=doc, errors=errors, present=True)

    def read_state(self) -> State:
        loaded = self.load("state")
        if not loaded.present:
            raise StoreError(f"Missing {self.paths.state}")
        if loaded.errors:
            raise StoreError(f"Invalid STATE.json: {loaded.errors[0]}")
        return loaded.document

    def read_task(self) -> Task | None:
        loaded = self.load("task")
        return loaded.document if loaded.ok else None

    def read_recent(self) -> Any | None:
        return self.read_raw("recent")

    # -- writes ---------------------------------------------------------

    def write(self, name: str, data: Any) -> None:
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json", exclude_none=name in ("report", "blocked"))
        write_json_atomic(self.paths.document(name), data)
        self._own[name] = file_signature(self.paths.document(name))
        logger.debug(f"[STORE] wrote {DOCUMENT_FILES[name]}")
        self.bus.emit("document.written", name)

    def write_state(self, state: State) -> None:
        self.write("state", state)

    def write_task(self, task: Task | dict) -> None:
        self.write("task", task)

    def write_report(self, report: Report | dict) -> None:
        self.write("report", report)

    def write_blocked(self, blocked: Blocked | dict) -> None:
        self.write("blocked", blocked)

    def write_context(self, bundle: ContextBundle) -> None:
        self.write("context", bundle)

    def write_recent(self, recent: Recent) -> None:
        self.write("recent", recent)

    def write_manifest(self, manifest: Manifest) -> None:
        self.write("manifest", manifest)

    def delete(self, name: str) -> None:
        self.paths.document(name).unlink(missing_ok=True)
        self._own[name] = None
        self.bus.emit("document.removed", name)


# ---------------------------------------------------------------------------
# Watcher
# ---------------------------------------------------------------------------

class WorkspaceWatcher:
    """
    Polls the watched documents and publishes 'document.changed' /
    'document.removed' events when their on-disk signature changes.
    Runs on a daemon thread; the consumer decides what to do with events.
    """

    def __init__(
        self,
        paths: WorkspacePaths,
        bus: EventBus,
        documents: tuple[str, ...] = ("task", "report", "blocked"),
        interval_s: float = 0.25,
    ):
        self.paths = paths
        self.bus = bus
        self.documents = documents
        self.interval_s = interval_s
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._signatures = {name: self._signature(name) for name in documents}

    def _signature(self, name: str) -> tuple[int, int] | None:
        return file_signature(self.paths.document(name))

    def poll(self) -> None:
        """Compare signatures once and emit events for whatever changed."""
        for name in self.documents:
            sig = self._signature(name)
            previous = self._signatures.get(name)
            if sig == previous:
                continue
            self._signatures[name] = sig
            if sig is None:
                self.bus.emit("document.removed", name)
            else:
                self.bus.emit("document.changed", name, {"created": previous is None})

    def _run(self) -> None:
        while not self._stop.wait(self.interval_s):
            self.poll()

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="pilot-watcher", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=2)
