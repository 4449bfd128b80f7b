"""
Tests for the git CLI wrapper.

Uses a real throwaway repository; skipped when git is not installed.
"""

import shutil
import subprocess

import pytest

from corehost.git import MAX_PATHS, GitHelper, _sanitize_paths


pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _git(cwd, *args):
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True)


@pytest.fixture
def repo(tmp_path):
    _git(tmp_path, "init", "-q")
    _git(tmp_path, "config", "user.email", "dev@example.com")
    _git(tmp_path, "config", "user.name", "Dev")
    (tmp_path / "a.txt").write_text("one\n", encoding="utf-8")
    (tmp_path / "b.txt").write_text("bee\n", encoding="utf-8")
    _git(tmp_path, "add", ".")
    _git(tmp_path, "commit", "-q", "-m", "init")
    return tmp_path


class TestGitHelper:

    def test_root_and_head(self, repo):
        git = GitHelper()
        assert git.is_available(str(repo))
        assert git.resolve_git_root(str(repo)) is not None
        head = git.get_git_head(str(repo))
        assert head and len(head) == 40

    def test_not_a_repository(self, tmp_path):
        git = GitHelper()
        assert git.resolve_git_root(str(tmp_path)) is None
        assert git.get_git_head(str(tmp_path)) is None
        assert git.get_git_diff(str(tmp_path)) == ""

    def test_missing_executable(self, tmp_path):
        git = GitHelper(executable="definitely-not-git")
        assert git.is_available(str(tmp_path)) is False
        assert git.get_git_head(str(tmp_path)) is None

    def test_diff_limited_to_paths(self, repo):
        (repo / "a.txt").write_text("two\n", encoding="utf-8")
        (repo / "b.txt").write_text("bop\n", encoding="utf-8")
        diff = GitHelper().get_git_diff(str(repo), ["a.txt"])
        assert "+two" in diff
        assert "b.txt" not in diff

    def test_changed_paths(self, repo):
        (repo / "a.txt").write_text("two\n", encoding="utf-8")
        (repo / "new.txt").write_text("new\n", encoding="utf-8")
        _git(repo, "mv", "b.txt", "c.txt")
        changed = GitHelper().get_git_changed_paths(str(repo))
        assert sorted(changed) == ["a.txt", "c.txt", "new.txt"]

    def test_reverse_patch(self, repo):
        git = GitHelper()
        (repo / "a.txt").write_text("two\n", encoding="utf-8")
        patch = git.get_git_diff(str(repo))
        _git(repo, "add", "a.txt")
        _git(repo, "commit", "-q", "-m", "two")

        ok, _ = git.apply_reverse_patch(str(repo), patch)

        assert ok
        assert (repo / "a.txt").read_text(encoding="utf-8") == "one\n"

    def test_empty_patch_is_noop(self, repo):
        assert GitHelper().apply_reverse_patch(str(repo), "  ") == (True, "No patch content provided.")


def test_sanitize_paths_caps_and_strips():
    paths = [" a ", "", "  "] + [f"p{i}" for i in range(MAX_PATHS + 5)]
    cleaned = _sanitize_paths(paths)
    assert cleaned[0] == "a"
    assert len(cleaned) == MAX_PATHS
