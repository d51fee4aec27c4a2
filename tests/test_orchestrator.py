import pytest

from pilot.agents import AgentContext, ProcessResult
from pilot.agents.orchestrator import (
    OrchestratorAgent,
    OrchestratorOutputError,
    canonicalize_write_key,
    canonicalize_writes,
    parse_orchestrator_output,
    validate_orchestrator_output,
)
from pilot.config_loader import load_config
from pilot.documents import Task, migrate_state
from pilot.history import RunHistory

from conftest import make_task


@pytest.mark.parametrize("key,expected", [
    ("STATE.json", "pilot/STATE.json"),
    ("pilot/TASK.json", "pilot/TASK.json"),
    ("pilot\\BLOCKED.json", "pilot/BLOCKED.json"),
    ("  TASK.json ", "pilot/TASK.json"),
    ("REPORT.json", None),
    ("pilot/ROADMAP.json", None),
    ("../pilot/TASK.json", None),
    ("/etc/passwd", None),
    ("~/.ssh/config", None),
    ("pilot/TASK.json\0", None),
    ("", None),
    (None, None),
])
def test_canonicalize_write_key(key, expected):
    assert canonicalize_write_key(key) == expected


def test_canonicalize_writes_checks_every_key_first():
    with pytest.raises(OrchestratorOutputError, match="forbidden write: src/app.ts"):
        canonicalize_writes({"TASK.json": {}, "src/app.ts": "x"})
    triples = canonicalize_writes({"STATE.json": {"retry_count": 1}})
    assert triples == [("STATE.json", "pilot/STATE.json", {"retry_count": 1})]


def test_parse_trims_and_rejects_garbage():
    assert parse_orchestrator_output('\n  {"status": "ok"}\n') == {"status": "ok"}
    with pytest.raises(ValueError):
        parse_orchestrator_output("Sure! Here is the plan: {")


def test_validate_normalizes_notes_and_deletes():
    out = validate_orchestrator_output({"status": "blocked", "notes": "one", "delete": ["a", 3]})
    assert out == {"status": "blocked", "notes": ["one"], "writes": {}, "delete": ["a"]}


@pytest.mark.parametrize("parsed,message", [
    ([], "not an object"),
    ({}, "status"),
    ({"status": "done"}, "Invalid status value"),
    ({"status": "ok", "writes": []}, "writes"),
    ({"status": "ok", "notes": [1]}, "Invalid notes"),
])
def test_validate_rejects_bad_shapes(parsed, message):
    with pytest.raises(OrchestratorOutputError, match=message):
        validate_orchestrator_output(parsed)


@pytest.fixture
def context(tmp_path):
    ws = tmp_path / "pilot"
    ws.mkdir()
    return AgentContext(
        run_id="run-test",
        project_root=tmp_path,
        workspace_dir=ws,
        state=migrate_state({}),
        task=Task.model_validate(make_task("T1")),
        history=RunHistory(ws / "history", "run-test"),
    )


@pytest.fixture
def agent(tmp_path):
    return OrchestratorAgent(load_config(tmp_path / "pilot", env={"PILOT_OPENCODE_BIN": "opencode"}))


def test_command_attaches_prompt_and_context(agent, context):
    context.state.config.orchestratorModel = "anthropic/claude"
    argv, stdin = agent.build_command(context)
    assert stdin is None
    assert argv[:2] == ["opencode", "run"]
    assert argv[argv.index("--model") + 1] == "anthropic/claude"
    files = [argv[i + 1] for i, a in enumerate(argv) if a == "--file"]
    assert files[0].endswith("orchestrate.md")
    assert files[1] == str(context.workspace_dir / "CONTEXT.json")


def test_unqualified_model_is_ignored(agent):
    assert agent.model_args("gpt") == []
    assert agent.model_args("") == []


def test_interpret_auth_failure_blocks_without_rollback(agent, context):
    outcome = agent.interpret(ProcessResult(1, stderr="Error: 401 Unauthorized"), context)
    assert not outcome.ok
    assert outcome.rollback_tag is None
    assert outcome.block["action"] == "opencode auth login"


def test_interpret_unsupported_file_flag(agent, context):
    outcome = agent.interpret(ProcessResult(2, stderr="error: unknown option '--file'"), context)
    assert outcome.rollback_tag == "orchestrator-unsupported"
    assert outcome.block["action"] == "opencode upgrade"


def test_interpret_valid_output(agent, context):
    stdout = '{"status": "ok", "notes": "next", "writes": {"TASK.json": {"status": "ready"}}}'
    outcome = agent.interpret(ProcessResult(0, stdout=stdout), context)
    assert outcome.ok
    assert outcome.data["writes"] == [("TASK.json", "pilot/TASK.json", {"status": "ready"})]
    assert outcome.data["notes"] == ["next"]
    assert (context.history.path / "orchestrator" / "raw-stdout.txt").read_text() == stdout
