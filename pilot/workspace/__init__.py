"""
Pilot Workspace Lifecycle (init / upgrade / doctor)

The workspace folder is versioned by MANIFEST.json. Managed files
(prompts, .gitignore, README) come from the packaged templates and
are tracked by hash so that `upgrade` can tell a stale copy from a
locally edited one and never clobber the latter.
"""

from __future__ import annotations

import hashlib
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from pilot.config_loader import EngineConfig
from pilot.documents import Manifest, migrate_state
from pilot.git import Git
from pilot.history import ts_compact
from pilot.store import ProtocolStore, copy_atomic, read_json, write_json_atomic

TEMPLATES_DIR = Path(__file__).parent / "templates"

OPENCODE_INSTALL = "Install OpenCode CLI (opencode) from https://opencode.ai/install, then rerun: {rerun}"
CURSOR_INSTALL = (
    "Install Cursor Agent CLI (cursor-agent) from https://cursor.com/install "
    "OR set PILOT_CURSOR_BIN to a custom builder command, then rerun: {rerun}"
)

_VERIFY_TOOL_FIXES = {
    "pnpm": "npm i -g pnpm",
    "yarn": "npm i -g yarn",
    "bun": "curl -fsSL https://bun.sh/install | bash",
}


class WorkspaceError(Exception):
    pass


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def sha256_file(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


def semver_lt(a: str, b: str) -> bool:
    """True if version a sorts strictly before b (major.minor.patch)."""
    def parts(v: str) -> tuple[int, int, int]:
        nums = []
        for piece in (v or "").split("-", 1)[0].split(".")[:3]:
            digits = "".join(ch for ch in piece if ch.isdigit())
            nums.append(int(digits) if digits else 0)
        while len(nums) < 3:
            nums.append(0)
        return tuple(nums)
    return parts(a) < parts(b)


def resolve_binary(name: str) -> bool:
    """A name with a slash must be an executable path; otherwise look it up on PATH."""
    name = name.strip()
    if not name:
        return False
    if "/" in name:
        p = Path(name).expanduser()
        return p.is_file() and os.access(p, os.X_OK)
    return shutil.which(name) is not None


def template_manifest() -> Manifest:
    """The packaged MANIFEST.json, with any missing hash computed from the template."""
    raw = read_json(TEMPLATES_DIR / "MANIFEST.json")
    if not isinstance(raw, dict):
        raise WorkspaceError(f"Missing {TEMPLATES_DIR / 'MANIFEST.json'}")
    manifest = Manifest.model_validate(raw)
    hashes = dict(manifest.hashes)
    for rel in manifest.managedFiles:
        src = TEMPLATES_DIR / rel
        if not src.exists():
            raise WorkspaceError(f"Missing template file: {rel}")
        hashes.setdefault(rel, sha256_file(src))
    return manifest.model_copy(update={"hashes": hashes})


def resolve_prompt(workspace_dir: Path, name: str) -> Path:
    """overrides/prompts/<name>.md → prompts/<name>.md → packaged template."""
    for candidate in (
        workspace_dir / "overrides" / "prompts" / f"{name}.md",
        workspace_dir / "prompts" / f"{name}.md",
    ):
        if candidate.exists():
            return candidate
    return TEMPLATES_DIR / "prompts" / f"{name}.md"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class UpgradeResult:
    backup_dir: Path
    replaced: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.conflicts


@dataclass
class DoctorResult:
    ok: bool
    reason: str = ""
    action: str = ""


# ---------------------------------------------------------------------------
# Workspace
# ---------------------------------------------------------------------------

class Workspace:
    """Lifecycle operations on one workspace directory."""

    def __init__(self, root: Path, config: EngineConfig | None = None):
        self.root = root.resolve()
        self.config = config or EngineConfig()
        self.store = ProtocolStore(self.root)

    def block(self, reason: str, action: str) -> None:
        logger.warning(f"[WORKSPACE] BLOCKED: {reason}")
        self.store.write_blocked({"reason": reason, "action": action})

    # -- init --------------------------------------------------------------

    def init(self, project_name: str | None = None) -> list[str]:
        """Create the workspace. Existing files are never overwritten."""
        (self.root / "overrides" / "prompts").mkdir(parents=True, exist_ok=True)
        expected = template_manifest()
        created: list[str] = []

        for rel in expected.managedFiles:
            dest = self.root / rel
            if not dest.exists():
                copy_atomic(TEMPLATES_DIR / rel, dest)
                created.append(rel)

        if not self.store.exists("state"):
            self.store.write_state(migrate_state({"project": project_name or Path.cwd().name}))
            created.append("STATE.json")
        if not self.store.exists("roadmap"):
            write_json_atomic(self.store.paths.roadmap, [])
            created.append("ROADMAP.json")
        if not self.store.exists("manifest"):
            self.store.write_manifest(expected)
            created.append("MANIFEST.json")

        logger.info(f"[WORKSPACE] Initialised {self.root} ({len(created)} file(s) created)")
        return created

    # -- upgrade -----------------------------------------------------------

    def _is_user_edited(self, rel: str, current: Manifest | None, expected: Manifest) -> bool:
        dest = self.root / rel
        if not dest.exists():
            return False
        live = sha256_file(dest)
        recorded = current.hashes.get(rel) if current else None
        if recorded:
            return live != recorded
        template_hash = expected.hashes.get(rel)
        return bool(template_hash) and live != template_hash

    def upgrade(self) -> UpgradeResult:
        expected = template_manifest()
        loaded = self.store.load("manifest")
        current = loaded.document if loaded.ok else None

        result = UpgradeResult(backup_dir=self.store.paths.backup_dir / ts_compact())
        result.backup_dir.mkdir(parents=True, exist_ok=True)

        for rel in expected.managedFiles:
            src = TEMPLATES_DIR / rel
            dest = self.root / rel
            if dest.exists():
                backup = result.backup_dir / rel
                backup.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(dest, backup)

            if self._is_user_edited(rel, current, expected):
                copy_atomic(src, dest.with_name(f"{dest.name}.new"))
                result.conflicts.append(rel)
                logger.warning(f"[WORKSPACE] {rel} has local edits; wrote {rel}.new")
            else:
                copy_atomic(src, dest)
                result.replaced.append(rel)

        if self.store.exists("state"):
            shutil.copyfile(self.store.paths.state, result.backup_dir / "STATE.json")
            self.store.write_state(migrate_state(self.store.read_raw("state")))

        self.store.write_manifest(expected)

        if result.conflicts:
            new_files = " ".join(f"{self.root / rel}.new" for rel in result.conflicts)
            self.block(
                "Upgrade wrote *.new files (local edits detected)",
                f"Review and merge, then delete: {new_files}",
            )
        return result

    # -- doctor ------------------------------------------------------------

    def doctor(self, project_dir: Path | None = None) -> DoctorResult:
        """Deterministic prerequisite checks; the first failure is written to BLOCKED.json."""
        result = self._diagnose(project_dir or Path.cwd())
        if not result.ok:
            self.block(result.reason, result.action)
        return result

    def _diagnose(self, project_dir: Path) -> DoctorResult:
        if not Git.is_repository(project_dir):
            return DoctorResult(False, "Not a git repository", "git init")
        if Git(project_dir).head() is None:
            return DoctorResult(
                False,
                "No commits yet (needed for rollback/LKG)",
                'git commit --allow-empty -m "pilot: init"',
            )

        problem = check_tool_binaries(self.config, rerun="pilot doctor")
        if problem:
            return problem

        state = migrate_state(self.store.read_raw("state"))
        for cmd in state.config.verifyCommands:
            words = cmd.split()
            if not words:
                continue
            if not resolve_binary(words[0]):
                fix = _VERIFY_TOOL_FIXES.get(words[0], f"brew install {words[0]}")
                return DoctorResult(False, f"Missing verify tool: {words[0]}", fix)

        problem = check_workspace_version(self.store, require_manifest=False)
        if problem:
            return problem
        return DoctorResult(True)


def check_tool_binaries(config: EngineConfig, rerun: str) -> DoctorResult | None:
    orchestrator = config.tools.orchestrator_bin
    if not resolve_binary(orchestrator):
        return DoctorResult(False, f"{orchestrator} not found", OPENCODE_INSTALL.format(rerun=rerun))
    builder = config.tools.builder_bin
    if not resolve_binary(builder):
        reason = "cursor-agent not found" if config.builder_is_default else f"{builder} not found"
        return DoctorResult(False, reason, CURSOR_INSTALL.format(rerun=rerun))
    return None


def check_workspace_version(store: ProtocolStore, require_manifest: bool = True) -> DoctorResult | None:
    expected = template_manifest()
    loaded = store.load("manifest")
    if not loaded.ok:
        if require_manifest:
            return DoctorResult(False, "Pilot workspace out of date (missing MANIFEST.json)", "pilot upgrade")
        return None
    current = loaded.document
    if semver_lt(current.pilotFolderVersion, expected.pilotFolderVersion):
        return DoctorResult(
            False,
            f"Pilot workspace out of date ({current.pilotFolderVersion} < {expected.pilotFolderVersion})",
            "pilot upgrade",
        )
    return None
