from typer.testing import CliRunner

from pilot import __version__
from pilot.cli import app
from pilot.store import read_json

runner = CliRunner()


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"PILOT v{__version__}" in result.stdout


def test_init_creates_workspace(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(app, ["-w", "ws", "init"])
    assert result.exit_code == 0
    assert (tmp_path / "ws" / "STATE.json").exists()
    assert read_json(tmp_path / "ws" / "STATE.json")["project"] == tmp_path.name

    again = runner.invoke(app, ["-w", "ws", "init"])
    assert again.exit_code == 0
    assert "already initialised" in again.stdout


def test_doctor_outside_git_exits_blocked(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    runner.invoke(app, ["init"])
    result = runner.invoke(app, ["doctor"])
    assert result.exit_code == 2
    assert "Not a git repository" in result.stdout
    assert read_json(tmp_path / "pilot" / "BLOCKED.json")["action"] == "git init"


def test_upgrade_clean_workspace(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    runner.invoke(app, ["init"])
    result = runner.invoke(app, ["upgrade"])
    assert result.exit_code == 0
    assert "pilot upgrade: ok" in result.stdout
