from conftest import git

from pilot.documents import LargeDiffLimits
from pilot.git import Git
from pilot.guardrail import DiffStats, compute_diff_stats, evaluate_guardrail, override_command

LIMITS = LargeDiffLimits(maxFiles=8, maxLines=300)


def test_eight_files_pass_nine_block():
    assert evaluate_guardrail(DiffStats(file_count=8, total_lines=10), LIMITS, False).passed
    decision = evaluate_guardrail(DiffStats(file_count=9, total_lines=10), LIMITS, False)
    assert not decision.passed
    assert decision.breached


def test_line_limit_and_binary_breach():
    assert not evaluate_guardrail(DiffStats(file_count=1, total_lines=301), LIMITS, False).passed
    assert not evaluate_guardrail(DiffStats(file_count=1, total_lines=1, had_binary=True), LIMITS, False).passed


def test_override_is_single_use():
    stats = DiffStats(file_count=20, total_lines=5000)
    decision = evaluate_guardrail(stats, LIMITS, allow_once=True)
    assert decision.passed
    assert decision.consumed_override

    small = evaluate_guardrail(DiffStats(file_count=1, total_lines=1), LIMITS, allow_once=True)
    assert small.passed
    assert not small.consumed_override


def test_compute_diff_stats_counts_tracked_untracked_and_binary(repo):
    (repo / "src" / "index.ts").write_text("export const x = 2\nexport const z = 3\n")
    (repo / "src" / "new.ts").write_text("a\nb\nc\n")
    (repo / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n\x00\x00")
    (repo / "pilot").mkdir()
    (repo / "pilot" / "STATE.json").write_text("{}\n")

    stats = compute_diff_stats(Git(repo), exclude=lambda p: p.startswith("pilot/"))
    assert stats.file_count == 3
    # index.ts: 1 removed + 2 added; new.ts: 3 lines
    assert stats.total_lines == 6
    assert stats.had_binary
    assert "pilot/STATE.json" not in stats.files


def test_compute_diff_stats_includes_staged(repo):
    (repo / "src" / "index.ts").write_text("changed\n")
    git(repo, "add", "src/index.ts")
    stats = compute_diff_stats(Git(repo))
    assert stats.file_count == 1
    assert stats.total_lines == 2


def test_override_command_sets_flag():
    cmd = override_command("pilot/STATE.json")
    assert cmd.startswith("python3 -c")
    assert "allowLargeDiffOnce" in cmd
    assert "pilot/STATE.json" in cmd
