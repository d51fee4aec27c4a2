import json

from conftest import git

from pilot.config_loader import load_config
from pilot.store import read_json
from pilot.workspace import (
    TEMPLATES_DIR,
    Workspace,
    resolve_binary,
    resolve_prompt,
    semver_lt,
    sha256_file,
    template_manifest,
)


def test_template_manifest_hashes_match_files():
    manifest = template_manifest()
    for rel in manifest.managedFiles:
        assert manifest.hashes[rel] == sha256_file(TEMPLATES_DIR / rel)


def test_init_creates_workspace_without_overwriting(tmp_path):
    ws = tmp_path / "pilot"
    created = Workspace(ws).init(project_name="demo")
    assert "STATE.json" in created
    assert (ws / "overrides" / "prompts").is_dir()
    assert read_json(ws / "ROADMAP.json") == []
    assert read_json(ws / "STATE.json")["project"] == "demo"
    assert read_json(ws / "MANIFEST.json")["pilotFolderVersion"] == template_manifest().pilotFolderVersion

    (ws / "prompts" / "build.md").write_text("mine")
    assert Workspace(ws).init() == []
    assert (ws / "prompts" / "build.md").read_text() == "mine"


def test_upgrade_replaces_untouched_files(tmp_path):
    ws = tmp_path / "pilot"
    Workspace(ws).init()
    result = Workspace(ws).upgrade()
    assert result.ok
    assert "prompts/build.md" in result.replaced
    assert not (ws / "BLOCKED.json").exists()
    assert (result.backup_dir / "STATE.json").exists()


def test_upgrade_keeps_local_edits_as_new_files(tmp_path):
    ws = tmp_path / "pilot"
    Workspace(ws).init()
    (ws / "prompts" / "orchestrate.md").write_text("my custom prompt\n")

    result = Workspace(ws).upgrade()
    assert result.conflicts == ["prompts/orchestrate.md"]
    assert (ws / "prompts" / "orchestrate.md").read_text() == "my custom prompt\n"
    assert (ws / "prompts" / "orchestrate.md.new").exists()
    assert (result.backup_dir / "prompts" / "orchestrate.md").read_text() == "my custom prompt\n"
    blocked = read_json(ws / "BLOCKED.json")
    assert blocked["reason"] == "Upgrade wrote *.new files (local edits detected)"
    assert "orchestrate.md.new" in blocked["action"]


def test_upgrade_migrates_state(tmp_path):
    ws = tmp_path / "pilot"
    Workspace(ws).init()
    (ws / "STATE.json").write_text(json.dumps({"project": "old", "retry_count": "x", "status": "active"}))
    Workspace(ws).upgrade()
    state = read_json(ws / "STATE.json")
    assert state["project"] == "old"
    assert state["retry_count"] == 0
    assert state["config"]["safety"]["largeDiff"]["maxLines"] == 300


def test_doctor_outside_repo_blocks(tmp_path):
    ws = tmp_path / "pilot"
    result = Workspace(ws).doctor(tmp_path)
    assert not result.ok
    assert result.reason == "Not a git repository"
    assert read_json(ws / "BLOCKED.json")["action"] == "git init"


def test_doctor_without_commits_blocks(tmp_path):
    git(tmp_path, "init")
    result = Workspace(tmp_path / "pilot").doctor(tmp_path)
    assert result.reason == "No commits yet (needed for rollback/LKG)"


def test_doctor_missing_builder(repo, workspace):
    fake = repo / "fake-orch"
    fake.write_text("#!/bin/sh\n")
    fake.chmod(0o755)
    config = load_config(workspace, env={"PILOT_OPENCODE_BIN": str(fake), "PILOT_CURSOR_BIN": "definitely-not-installed-xyz"})
    result = Workspace(workspace, config).doctor(repo)
    assert result.reason == "definitely-not-installed-xyz not found"
    assert "PILOT_CURSOR_BIN" in result.action
    assert result.action.endswith("rerun: pilot doctor")


def test_doctor_missing_verify_tool(repo, workspace):
    fake = repo / "fake-tool"
    fake.write_text("#!/bin/sh\n")
    fake.chmod(0o755)
    state = read_json(workspace / "STATE.json")
    state["config"]["verifyCommands"] = ["pnpm-not-here-xyz test"]
    (workspace / "STATE.json").write_text(json.dumps(state))
    config = load_config(workspace, env={"PILOT_OPENCODE_BIN": str(fake), "PILOT_CURSOR_BIN": str(fake)})
    result = Workspace(workspace, config).doctor(repo)
    assert result.reason == "Missing verify tool: pnpm-not-here-xyz"
    assert result.action == "brew install pnpm-not-here-xyz"


def test_doctor_flags_old_workspace(repo, workspace):
    fake = repo / "fake-tool"
    fake.write_text("#!/bin/sh\n")
    fake.chmod(0o755)
    manifest = read_json(workspace / "MANIFEST.json")
    manifest["pilotFolderVersion"] = "0.9.0"
    (workspace / "MANIFEST.json").write_text(json.dumps(manifest))
    config = load_config(workspace, env={"PILOT_OPENCODE_BIN": str(fake), "PILOT_CURSOR_BIN": str(fake)})
    result = Workspace(workspace, config).doctor(repo)
    assert result.action == "pilot upgrade"
    assert "0.9.0 <" in result.reason


def test_semver_lt():
    assert semver_lt("1.1.9", "1.2.0")
    assert semver_lt("1.2", "1.2.1")
    assert not semver_lt("1.2.0", "1.2.0")
    assert not semver_lt("2.0.0", "1.9.9")


def test_resolve_binary(tmp_path):
    script = tmp_path / "tool"
    script.write_text("#!/bin/sh\n")
    assert not resolve_binary(str(script))
    script.chmod(0o755)
    assert resolve_binary(str(script))
    assert resolve_binary("git")
    assert not resolve_binary("no-such-binary-xyz")


def test_prompt_resolution_order(tmp_path):
    ws = tmp_path / "pilot"
    assert resolve_prompt(ws, "build") == TEMPLATES_DIR / "prompts" / "build.md"
    Workspace(ws).init()
    assert resolve_prompt(ws, "build") == ws / "prompts" / "build.md"
    override = ws / "overrides" / "prompts" / "build.md"
    override.write_text("override")
    assert resolve_prompt(ws, "build") == override
