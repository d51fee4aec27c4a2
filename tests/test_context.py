import json

from conftest import git, make_task

from pilot.config_loader import load_config
from pilot.context import build_context_bundle, read_recent, truncate, update_recent_on_commit
from pilot.documents import Report, Task
from pilot.git import Git
from pilot.store import ProtocolStore


def test_truncate():
    assert truncate("short", 10) == "short"
    assert truncate("abcdefghijk", 8) == "abcde..."
    assert len(truncate("x" * 500, 120)) == 120
    assert truncate(None, 5) == ""
    assert truncate("abcdef", 2) == "ab"


def _commit(repo, name):
    (repo / "src" / name).write_text(f"// {name}\n")
    git(repo, "add", "-A")
    git(repo, "commit", "-m", name)
    return git(repo, "rev-parse", "HEAD")


def test_recent_is_newest_first_deduplicated_and_capped(repo, workspace):
    store = ProtocolStore(workspace)
    g = Git(repo)
    report = Report(task_id="T1", status="done", summary=["did it"], questions=[])

    for n, task_id in enumerate(("T1", "T2", "T3", "T2")):
        task = Task.model_validate(make_task(task_id))
        update_recent_on_commit(store, g, task, report, _commit(repo, f"f{n}.ts"), max_items=2)

    recent = read_recent(store, 5)
    assert [i.id for i in recent.items] == ["T2", "T3"]
    assert recent.items[0].diffstat


def test_read_recent_ignores_garbage(workspace):
    (workspace / "RECENT.json").write_text(json.dumps({"items": [{"id": 3}]}))
    assert read_recent(ProtocolStore(workspace)).items == []


def test_context_bundle_is_bounded(repo, workspace):
    store = ProtocolStore(workspace)
    roadmap = [make_task(f"R{i}") for i in range(12)]
    (workspace / "ROADMAP.json").write_text(json.dumps(roadmap))
    task = Task.model_validate({**make_task("T1"), "description": "d" * 5000})
    config = load_config(workspace)

    bundle = build_context_bundle(store, Git(repo), store.read_state(), task, None, config, "run-1", cwd=repo)

    assert len(bundle.task.description) == 800
    assert [e["id"] for e in bundle.roadmap_window.next] == ["R0", "R1", "R2", "R3", "R4"]
    assert [e["id"] for e in bundle.roadmap_window.tail] == ["R7", "R8", "R9", "R10", "R11"]
    assert bundle.meta.project_root == "."
    assert bundle.meta.git.branch == "main"
    assert "pilot/TASK.json" in bundle.constraints.orchestrator_allowed_writes
    assert bundle.last_report is None
