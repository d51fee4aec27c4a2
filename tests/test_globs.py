import pytest

from pilot.globs import first_match, glob_to_regex, match_glob


@pytest.mark.parametrize("path,pattern", [
    ("src/a/b.ts", "src/**"),
    ("keys/server.pem", "**/*.pem"),
    ("server.pem", "**/*.pem"),
    ("config/my_secret.json", "**/*secret*"),
    (".env", ".env*"),
    (".env.local", ".env*"),
    ("secrets/.env", ".env*"),
    ("node_modules/left-pad/index.js", "node_modules/**"),
    ("a/x/y/b.txt", "a/**/b.txt"),
    ("a/b.txt", "a/**/b.txt"),
    ("src/main.ts", "src/?ain.ts"),
])
def test_matches(path, pattern):
    assert match_glob(path, pattern)


@pytest.mark.parametrize("path,pattern", [
    ("src/a/b.ts", "src/*"),
    ("lib/src/a.ts", "src/**"),
    ("src/main.ts", "src/?.ts"),
    ("src/env.ts", ".env*"),
    ("distribution/a.js", "dist/**"),
])
def test_does_not_match(path, pattern):
    assert not match_glob(path, pattern)


def test_special_characters_are_literal():
    assert match_glob("docs/a+b(1).md", "docs/a+b(1).md")
    assert not match_glob("docs/aab(1).md", "docs/a+b(1).md")


def test_single_star_stays_in_segment():
    assert glob_to_regex("src/*.ts").match("src/a.ts")
    assert not glob_to_regex("src/*.ts").match("src/sub/a.ts")


def test_first_match_reports_pattern():
    assert first_match("build/out.js", ["dist/**", "build/**"]) == "build/**"
    assert first_match("src/a.ts", ["dist/**"]) is None
