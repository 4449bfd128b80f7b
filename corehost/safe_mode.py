"""
Core Host - Safe Mode Manager

Boot-health state machine:

    starting -> healthy | needs_revert
    needs_revert -> recovered | failed | skipped

A startup check never rolls anything back on its own. When a trigger fires
(persisted safe-mode request, unhealthy previous boot, failed smoke build)
the boot stays ``starting`` and the user decides between ``perform_revert``
and ``skip_revert``.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from .backend import BackendClient
from .changesets import ChangeSetManager
from .models import (
    BootState,
    RevertResult,
    SafeModeState,
    SafeModeTrigger,
    StartupCheckResult,
    ValidationResult,
    ValidationSummary,
    now_ms,
)
from .pack_service import PackService
from .state_store import CoreHostError, StateStore
from .validations import ValidationRunner

logger = logging.getLogger(__name__)

DEFAULT_STARTUP_REASON = "Startup health check failed."
DEFAULT_REVERT_REASON = "Safe mode revert requested."


class SafeModeManager:
    """Runs startup health checks and the user-driven recovery that follows."""

    def __init__(
        self,
        state_store: StateStore,
        change_set_manager: ChangeSetManager,
        pack_service: PackService,
        validation_runner: ValidationRunner,
        backend: BackendClient,
        project_root: str,
    ):
        self.state_store = state_store
        self.change_set_manager = change_set_manager
        self.pack_service = pack_service
        self.validation_runner = validation_runner
        self.backend = backend
        self.project_root = project_root

        self._pending_boot_id: Optional[str] = None
        self._pending_reason: Optional[str] = None

    # =========================================================================
    # Helpers
    # =========================================================================

    def _run_smoke(self) -> Tuple[List[ValidationResult], ValidationSummary]:
        results = self.validation_runner.run_validations(
            self.validation_runner.smoke_specs(self.project_root)
        )
        summary = self.validation_runner.summarize(results)
        return results, summary

    def _report(
        self,
        state: SafeModeState,
        boot_id: Optional[str],
        *,
        safe_mode_applied: bool,
        smoke_passed: bool,
        reason: Optional[str],
        smoke_failures: Optional[List[str]] = None,
    ) -> None:
        # Best-effort; BackendClient never raises.
        self.backend.mutation("changesets.safe_mode_status", {
            "status": state.value,
            "bootId": boot_id,
            "safeModeApplied": safe_mode_applied,
            "smokePassed": smoke_passed,
            "reason": reason,
            "checkedAt": now_ms(),
            "smokeFailures": smoke_failures or [],
        })

    def _resolve_boot_id(self) -> Optional[str]:
        if self._pending_boot_id:
            return self._pending_boot_id
        last = self.state_store.get_last_boot_status()
        if last is not None and last.status == BootState.STARTING:
            return last.boot_id
        return None

    def _clear_pending(self) -> None:
        self._pending_boot_id = None
        self._pending_reason = None

    # =========================================================================
    # Operations
    # =========================================================================

    def request_safe_mode(self, reason: str) -> Optional[SafeModeTrigger]:
        """
        Persist a trigger so the next startup check asks for a revert.

        Returns None when the trigger could not be written.
        """
        trigger = SafeModeTrigger(reason=reason or DEFAULT_REVERT_REASON)
        try:
            self.state_store.ensure_structure()
            self.state_store.set_safe_mode_trigger(trigger)
        except (CoreHostError, OSError, ValueError) as e:
            logger.error(f"[SafeMode] Failed to request safe mode: {e}")
            return None
        logger.info(f"[SafeMode] Safe mode requested: {trigger.reason}")
        return trigger

    def run_startup_checks(self) -> StartupCheckResult:
        """
        Decide whether this boot is healthy.

        State store failures end in NEEDS_REVERT so the user still gets the
        revert prompt.
        """
        try:
            return self._run_startup_checks()
        except (CoreHostError, OSError, ValueError) as e:
            boot_id = self._pending_boot_id or ""
            failure = f"Startup check failed: {e}"
            logger.error(f"[SafeMode] {failure}")
            self._pending_reason = failure
            self._report(SafeModeState.NEEDS_REVERT, boot_id or None, safe_mode_applied=False,
                         smoke_passed=False, reason=failure)
            return StartupCheckResult(
                state=SafeModeState.NEEDS_REVERT,
                needs_revert=True,
                boot_id=boot_id,
                reason=failure,
                smoke_passed=False,
            )

    def _run_startup_checks(self) -> StartupCheckResult:
        self._clear_pending()
        self.state_store.ensure_structure()
        self.change_set_manager.ensure_baseline()

        previous = self.state_store.get_last_boot_status()
        trigger = self.state_store.get_safe_mode_trigger()
        boot = self.state_store.start_boot()
        self._pending_boot_id = boot.boot_id

        smoke, summary = self._run_smoke()
        failures = [f.name for f in summary.required_failures]

        reasons: List[str] = []
        if trigger is not None:
            reasons.append(trigger.reason)
        if not summary.ok:
            reasons.append(f"Smoke check failed: {', '.join(failures)}")
        if previous is not None and previous.status != BootState.HEALTHY:
            reasons.append(f"Previous boot was {previous.status.value}.")

        if not reasons:
            self.state_store.mark_boot_healthy(boot.boot_id)
            self._clear_pending()
            logger.info(f"[SafeMode] Boot {boot.boot_id} healthy")
            self._report(SafeModeState.HEALTHY, boot.boot_id,
                         safe_mode_applied=False, smoke_passed=True, reason=None)
            return StartupCheckResult(
                state=SafeModeState.HEALTHY,
                needs_revert=False,
                boot_id=boot.boot_id,
                smoke_passed=True,
                smoke=smoke,
            )

        reason = " | ".join(reasons) or DEFAULT_STARTUP_REASON
        self._pending_reason = reason
        logger.warning(f"[SafeMode] Boot {boot.boot_id} needs revert: {reason}")
        self._report(SafeModeState.NEEDS_REVERT, boot.boot_id, safe_mode_applied=False,
                     smoke_passed=summary.ok, reason=reason, smoke_failures=failures)
        return StartupCheckResult(
            state=SafeModeState.NEEDS_REVERT,
            needs_revert=True,
            boot_id=boot.boot_id,
            reason=reason,
            smoke_passed=summary.ok,
            smoke=smoke,
        )

    def perform_revert(self, reason: Optional[str] = None) -> RevertResult:
        """
        Roll back to last-known-good, disable installed packs and re-run smoke.

        ``safe_mode_applied`` is recorded on the boot whether or not the
        post-revert smoke check passes.
        """
        boot_id = self._pending_boot_id
        try:
            return self._perform_revert(reason)
        except (CoreHostError, OSError, ValueError) as e:
            failure = f"Safe mode revert failed: {e}"
            logger.error(f"[SafeMode] {failure}")
            self._clear_pending()
            return RevertResult(
                state=SafeModeState.FAILED,
                ok=False,
                boot_id=boot_id,
                safe_mode_applied=True,
                reason=failure,
            )

    def _perform_revert(self, reason: Optional[str]) -> RevertResult:
        boot_id = self._resolve_boot_id()
        revert_reason = reason or self._pending_reason or DEFAULT_REVERT_REASON

        try:
            self.change_set_manager.rollback_to_last_known_good(revert_reason)
            disabled = self.pack_service.disable_all_for_safe_mode(revert_reason)
        except (CoreHostError, OSError, ValueError) as e:
            failure = f"Safe mode revert failed: {e}"
            logger.error(f"[SafeMode] {failure}")
            if boot_id:
                self.state_store.mark_boot_failed(boot_id, failure, safe_mode_applied=True)
            self._clear_pending()
            self._report(SafeModeState.FAILED, boot_id, safe_mode_applied=True,
                         smoke_passed=False, reason=failure)
            return RevertResult(
                state=SafeModeState.FAILED,
                ok=False,
                boot_id=boot_id,
                safe_mode_applied=True,
                reason=failure,
            )
        if disabled:
            logger.info(f"[SafeMode] Disabled {len(disabled)} pack installation(s)")

        smoke, summary = self._run_smoke()
        failures = [f.name for f in summary.required_failures]
        self._clear_pending()

        if summary.ok:
            self.state_store.set_safe_mode_trigger(None)
            if boot_id:
                self.state_store.mark_boot_healthy(boot_id, safe_mode_applied=True)
            logger.info(f"[SafeMode] Recovered boot {boot_id}")
            self._report(SafeModeState.RECOVERED, boot_id, safe_mode_applied=True,
                         smoke_passed=True, reason=revert_reason)
            return RevertResult(
                state=SafeModeState.RECOVERED,
                ok=True,
                boot_id=boot_id,
                safe_mode_applied=True,
                smoke_passed=True,
                reason=revert_reason,
                smoke=smoke,
            )

        failure = f"Smoke check failed after safe mode revert: {', '.join(failures)}"
        if boot_id:
            self.state_store.mark_boot_failed(boot_id, failure, safe_mode_applied=True)
        logger.error(f"[SafeMode] {failure}")
        self._report(SafeModeState.FAILED, boot_id, safe_mode_applied=True,
                     smoke_passed=False, reason=failure, smoke_failures=failures)
        return RevertResult(
            state=SafeModeState.FAILED,
            ok=False,
            boot_id=boot_id,
            safe_mode_applied=True,
            smoke_passed=False,
            reason=failure,
            smoke=smoke,
        )

    def skip_revert(self) -> RevertResult:
        """Continue without reverting; the boot is accepted as healthy."""
        boot_id = self._pending_boot_id
        reason = self._pending_reason
        try:
            boot_id = self._resolve_boot_id()
            self.state_store.set_safe_mode_trigger(None)
            if boot_id:
                self.state_store.mark_boot_healthy(boot_id, safe_mode_applied=False)
        except (CoreHostError, OSError, ValueError) as e:
            failure = f"Skipping revert failed: {e}"
            logger.error(f"[SafeMode] {failure}")
            return RevertResult(
                state=SafeModeState.FAILED,
                ok=False,
                boot_id=boot_id,
                reason=failure,
            )
        self._clear_pending()
        logger.info(f"[SafeMode] Revert skipped for boot {boot_id}")
        self._report(SafeModeState.SKIPPED, boot_id, safe_mode_applied=False,
                     smoke_passed=False, reason=reason)
        return RevertResult(
            state=SafeModeState.SKIPPED,
            ok=True,
            boot_id=boot_id,
            safe_mode_applied=False,
            reason=reason,
        )
