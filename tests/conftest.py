import json
import stat
import subprocess
from pathlib import Path

import pytest

from pilot.config_loader import load_config
from pilot.workspace import Workspace


def git(repo: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True)
    return result.stdout.strip()


def write_script(path: Path, body: str) -> Path:
    path.write_text("#!/usr/bin/env bash\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def make_task(task_id: str = "T1", allowed=None, forbidden=None, status: str = "ready") -> dict:
    return {
        "id": task_id,
        "status": status,
        "title": f"Task {task_id}",
        "description": "Do the thing",
        "acceptance": ["it works"],
        "scope": {"allowed": allowed if allowed is not None else ["src/"], "forbidden": forbidden or []},
    }


@pytest.fixture
def repo(tmp_path):
    root = tmp_path / "app"
    root.mkdir()
    git(root, "init")
    git(root, "checkout", "-b", "main")
    git(root, "config", "user.email", "pilot@example.com")
    git(root, "config", "user.name", "Pilot Test")
    git(root, "config", "commit.gpgsign", "false")
    (root / "src").mkdir()
    (root / "src" / "index.ts").write_text("export const x = 1\n")
    git(root, "add", "-A")
    git(root, "commit", "-m", "init")
    return root


@pytest.fixture
def workspace(repo):
    ws = repo / "pilot"
    Workspace(ws).init(project_name="app")
    git(repo, "add", "-A")
    git(repo, "commit", "-m", "pilot workspace")
    return ws


@pytest.fixture
def tools_dir(tmp_path):
    d = tmp_path / "bin"
    d.mkdir()
    return d


@pytest.fixture
def make_config(tools_dir):
    """Engine config pointing at fake builder / orchestrator scripts."""

    def _make(workspace: Path, builder: str = "exit 0\n", orchestrator: str = 'echo \'{"status":"ok"}\'\n'):
        b = write_script(tools_dir / "fake-builder", builder)
        o = write_script(tools_dir / "fake-orchestrator", orchestrator)
        return load_config(workspace, env={"PILOT_CURSOR_BIN": str(b), "PILOT_OPENCODE_BIN": str(o)})

    return _make


def report_script(task_id: str, status: str = "done", files=("src/feature.ts",)) -> str:
    """Shell snippet that writes REPORT.json the way a builder would."""
    payload = {
        "task_id": task_id,
        "status": status,
        "summary": ["did it"],
        "files_changed": list(files),
        "questions": [],
    }
    return f"cat > pilot/REPORT.json <<'EOF'\n{json.dumps(payload)}\nEOF\n"


def orchestrator_script(output: dict) -> str:
    return f"cat <<'EOF'\n{json.dumps(output)}\nEOF\n"
