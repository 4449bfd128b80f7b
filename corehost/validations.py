"""
Core Host - Validation Runner

Runs shell validation commands (lint, build, smoke) under timeouts and
summarizes the results. A timeout or a failed spawn is reported as a result,
never raised.
"""

from __future__ import annotations

import logging
import os
import subprocess
from typing import List, Optional, Sequence, Union

from .config import CommandConfig
from .models import (
    ValidationFailure,
    ValidationResult,
    ValidationSpec,
    ValidationStatus,
    ValidationSummary,
    now_ms,
)

logger = logging.getLogger(__name__)

MAX_OUTPUT = 80_000
MIN_TIMEOUT_MS = 30_000
DEFAULT_TIMEOUT_MS = 240_000

DEFAULT_LINT = CommandConfig("npm run lint", 240_000)
DEFAULT_BUILD = CommandConfig("npm run build", 300_000)
DEFAULT_SMOKE = CommandConfig("npm run build", 180_000)


def truncate_output(value: str) -> str:
    if len(value) <= MAX_OUTPUT:
        return value
    return f"{value[:MAX_OUTPUT]}\n\n... (truncated)"


def _as_text(value: Union[str, bytes, None]) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _shell_args(command: str) -> List[str]:
    if os.name == "nt":
        return ["cmd.exe", "/c", command]
    return ["bash", "-lc", command]


def default_validation_specs(
    cwd: str,
    lint: CommandConfig = DEFAULT_LINT,
    build: CommandConfig = DEFAULT_BUILD,
) -> List[ValidationSpec]:
    """Full suite run before a pack is published."""
    return [
        ValidationSpec(name="lint", command=lint.command, cwd=cwd, timeout_ms=lint.timeout_ms),
        ValidationSpec(name="build", command=build.command, cwd=cwd, timeout_ms=build.timeout_ms),
    ]


def smoke_validation_specs(cwd: str, smoke: CommandConfig = DEFAULT_SMOKE) -> List[ValidationSpec]:
    """Quick check run after installs, updates and at startup."""
    return [
        ValidationSpec(name="smoke_build", command=smoke.command, cwd=cwd, timeout_ms=smoke.timeout_ms),
    ]


def summarize_validation_results(results: Sequence[ValidationResult]) -> ValidationSummary:
    failures = [
        ValidationFailure(name=r.name, status=r.status, exit_code=r.exit_code)
        for r in results
        if r.required and r.status != ValidationStatus.PASSED
    ]
    return ValidationSummary(ok=not failures, required_failures=failures)


class ValidationRunner:
    """
    Sequential subprocess runner for validation specs.

    Commands run through ``bash -lc`` (``cmd.exe /c`` on Windows) with
    stdout and stderr merged.
    """

    def __init__(
        self,
        lint: Optional[CommandConfig] = None,
        build: Optional[CommandConfig] = None,
        smoke: Optional[CommandConfig] = None,
    ):
        self.lint = lint or DEFAULT_LINT
        self.build = build or DEFAULT_BUILD
        self.smoke = smoke or DEFAULT_SMOKE

    def default_specs(self, cwd: str) -> List[ValidationSpec]:
        return default_validation_specs(cwd, self.lint, self.build)

    def smoke_specs(self, cwd: str) -> List[ValidationSpec]:
        return smoke_validation_specs(cwd, self.smoke)

    def run_validations(self, specs: Sequence[ValidationSpec]) -> List[ValidationResult]:
        return [self._run_one(spec) for spec in specs]

    def summarize(self, results: Sequence[ValidationResult]) -> ValidationSummary:
        return summarize_validation_results(results)

    def _run_one(self, spec: ValidationSpec) -> ValidationResult:
        timeout_ms = max(MIN_TIMEOUT_MS, int(spec.timeout_ms or DEFAULT_TIMEOUT_MS))
        started_at = now_ms()
        exit_code: Optional[int] = None

        logger.info(f"[Validations] Running {spec.name}: {spec.command}")
        try:
            completed = subprocess.run(
                _shell_args(spec.command),
                cwd=spec.cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=timeout_ms / 1000,
            )
            exit_code = completed.returncode
            output = _as_text(completed.stdout)
            if exit_code == 0:
                status = ValidationStatus.PASSED
                output = output or "Command completed successfully (no output)."
            else:
                status = ValidationStatus.FAILED
                output = f"Command exited with code {exit_code}.\n\n{output}"
        except subprocess.TimeoutExpired as e:
            status = ValidationStatus.TIMED_OUT
            output = f"Command timed out after {timeout_ms}ms.\n\n{_as_text(e.output)}"
        except OSError as e:
            status = ValidationStatus.FAILED
            output = f"Failed to execute command: {e}"

        completed_at = now_ms()
        if status != ValidationStatus.PASSED:
            logger.warning(f"[Validations] {spec.name} {status.value} (exit code {exit_code})")
        return ValidationResult(
            name=spec.name,
            command=spec.command,
            cwd=spec.cwd,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=completed_at - started_at,
            exit_code=exit_code,
            status=status,
            output=truncate_output(output),
            required=spec.required,
        )
