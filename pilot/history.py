"""
Pilot Run History — per-run forensic folder.

Every invocation gets history/<YYYYMMDD-HHMMSS>-<run_id>/ holding
startup snapshots, verification output, rollback patches, context
bundles and raw orchestrator output. Nothing in here is ever read
back as authority.
"""

from __future__ import annotations

import secrets
import shutil
import string
from datetime import datetime
from pathlib import Path

from loguru import logger


def ts_compact(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d-%H%M%S")


def ts_minute(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d-%H%M")


def random_id(length: int = 8) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def new_run_id() -> str:
    return f"run-{ts_compact()}-{random_id(6)}"


class RunHistory:
    """Snapshot writer rooted at one run's history folder."""

    def __init__(self, history_root: Path, run_id: str):
        self.run_id = run_id
        self.path = history_root / f"{ts_compact()}-{run_id}"
        self.path.mkdir(parents=True, exist_ok=True)
        (self.path / "verify").mkdir(exist_ok=True)

    def label_path(self, label: str) -> Path:
        dest = self.path / label
        dest.parent.mkdir(parents=True, exist_ok=True)
        return dest

    def snapshot_file(self, label: str, source: Path) -> Path | None:
        """Copy a document into the run folder. Missing sources are skipped."""
        if not source.exists():
            return None
        try:
            dest = self.label_path(label)
            shutil.copyfile(source, dest)
            return dest
        except OSError as e:
            logger.warning(f"[HISTORY] Could not snapshot {source.name} as {label}: {e}")
            return None

    def snapshot_text(self, label: str, content: str) -> Path | None:
        try:
            dest = self.label_path(label)
            dest.write_text(content)
            return dest
        except OSError as e:
            logger.warning(f"[HISTORY] Could not write {label}: {e}")
            return None
