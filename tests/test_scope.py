from pilot.config_loader import load_config
from pilot.documents import Task
from pilot.scope import (
    find_violations,
    is_allowed_by_prefixes,
    is_operational_path,
    normalize_rel_path,
)

from conftest import make_task

CONFIG = load_config(env={})


def _task(allowed=None, forbidden=None):
    return Task.model_validate(make_task("T1", allowed=allowed, forbidden=forbidden))


def test_prefix_matching():
    assert is_allowed_by_prefixes("src/a.ts", ["src"])
    assert is_allowed_by_prefixes("src/a.ts", ["src/"])
    assert is_allowed_by_prefixes("src", ["src/"])
    assert not is_allowed_by_prefixes("srcs/a.ts", ["src"])
    assert not is_allowed_by_prefixes("Src/a.ts", ["src"])
    assert is_allowed_by_prefixes("anything/at/all", ["."])
    assert is_allowed_by_prefixes("anything", [""])


def test_normalize_rel_path():
    assert normalize_rel_path("./src\\a.ts") == "src/a.ts"
    assert normalize_rel_path("src/") == "src"


def test_operational_paths_are_exempt():
    assert is_operational_path("pilot/STATE.json", "pilot", CONFIG)
    assert is_operational_path("pilot/run.log", "pilot", CONFIG)
    assert is_operational_path("pilot/run.2026-01-01_10-00-00_000000.log", "pilot", CONFIG)
    assert is_operational_path("pilot/history/x/verify/a.txt", "pilot", CONFIG)
    assert not is_operational_path("pilot/prompts/build.md", "pilot", CONFIG)
    assert not is_operational_path("STATE.json", "pilot", CONFIG)


def test_violation_iff_outside_scope_or_forbidden():
    task = _task(allowed=["src/"], forbidden=["src/generated/**"])
    violations, forbidden = find_violations(
        ["src/ok.ts", "docs/readme.md", "src/generated/x.ts", "pilot/TASK.json"],
        task, CONFIG, "pilot",
    )
    assert violations == [
        "NOT ALLOWED: docs/readme.md outside scope src/",
        "FORBIDDEN: src/generated/x.ts matches src/generated/**",
    ]
    assert forbidden == ["src/generated/x.ts"]


def test_baseline_forbidden_applies_even_inside_scope():
    violations, _ = find_violations(["src/.env.local"], _task(allowed=["src/"]), CONFIG, "pilot")
    assert violations == ["FORBIDDEN: src/.env.local matches .env*"]


def test_violation_set_is_order_independent():
    task = _task(allowed=["src/"])
    paths = ["a.txt", "src/b.ts", "keys/id_rsa"]
    first, _ = find_violations(paths, task, CONFIG, "pilot")
    second, _ = find_violations(list(reversed(paths)), task, CONFIG, "pilot")
    assert sorted(first) == sorted(second)
    assert len(first) == 3


def test_forbidden_path_outside_scope_reports_both():
    violations, forbidden = find_violations(["keys/id_rsa"], _task(allowed=["src/"]), CONFIG, "pilot")
    assert violations == [
        "FORBIDDEN: keys/id_rsa matches **/*id_rsa*",
        "NOT ALLOWED: keys/id_rsa outside scope src/",
    ]
    assert forbidden == ["keys/id_rsa"]
