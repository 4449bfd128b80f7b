"""
Core Host - Git Helper

Thin wrappers over the git CLI used for provenance (HEAD, diffs) and patch
reversal. Every call degrades to None/empty output when git is missing or
the directory is not a repository.
"""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 15  # seconds
COMMAND_TIMEOUT = 60  # seconds
MAX_PATHS = 300


@dataclass
class GitCommandResult:
    ok: bool
    exit_code: Optional[int]
    stdout: str
    stderr: str


def _sanitize_paths(paths: Optional[Sequence[str]]) -> List[str]:
    cleaned = [p.strip() for p in (paths or []) if p and p.strip()]
    return cleaned[:MAX_PATHS]


class GitHelper:
    """Runs git subcommands with fixed timeouts."""

    def __init__(self, executable: str = "git"):
        self.executable = executable

    def run(self, args: Sequence[str], cwd: str, timeout: float = COMMAND_TIMEOUT) -> GitCommandResult:
        try:
            result = subprocess.run(
                [self.executable, *args],
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"[Git] git {args[0]} timed out after {timeout}s in {cwd}")
            return GitCommandResult(False, None, "", f"Command timed out after {timeout}s.")
        except OSError as e:
            logger.debug(f"[Git] git {args[0]} failed to start: {e}")
            return GitCommandResult(False, None, "", str(e))
        return GitCommandResult(result.returncode == 0, result.returncode, result.stdout, result.stderr)

    def is_available(self, cwd: str) -> bool:
        return self.run(["--version"], cwd, PROBE_TIMEOUT).ok

    def resolve_git_root(self, cwd: str) -> Optional[str]:
        result = self.run(["rev-parse", "--show-toplevel"], cwd, PROBE_TIMEOUT)
        root = result.stdout.strip() if result.ok else ""
        return root or None

    def get_git_head(self, cwd: str) -> Optional[str]:
        result = self.run(["rev-parse", "HEAD"], cwd, PROBE_TIMEOUT)
        head = result.stdout.strip() if result.ok else ""
        return head or None

    def get_git_diff(self, cwd: str, paths: Optional[Sequence[str]] = None) -> str:
        """Working-tree diff, optionally limited to paths."""
        cleaned = _sanitize_paths(paths)
        args = ["diff", "--no-color"] + (["--", *cleaned] if cleaned else [])
        return self.run(args, cwd).stdout

    def get_git_changed_paths(self, cwd: str, paths: Optional[Sequence[str]] = None) -> List[str]:
        cleaned = _sanitize_paths(paths)
        args = ["status", "--porcelain"] + (["--", *cleaned] if cleaned else [])
        changed: List[str] = []
        for line in self.run(args, cwd).stdout.splitlines():
            # "XY path" or "XY old -> new"
            file_path = line[3:].split(" -> ")[-1].strip()
            if file_path and file_path not in changed:
                changed.append(file_path)
        return changed

    def apply_reverse_patch(self, cwd: str, patch_content: str) -> Tuple[bool, str]:
        """Reverse-apply a patch; returns (ok, output)."""
        if not patch_content.strip():
            return True, "No patch content provided."
        fd, tmp_name = tempfile.mkstemp(prefix="corehost-patch-", suffix=".diff")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(patch_content)
            result = self.run(["apply", "-R", "--whitespace=nowarn", tmp_name], cwd)
        finally:
            os.unlink(tmp_name)
        if result.ok:
            return True, result.stdout or "Patch reversed."
        return False, result.stderr or result.stdout
