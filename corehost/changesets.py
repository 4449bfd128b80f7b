"""
Core Host - ChangeSet Manager Protocol

The ChangeSet manager owns transactional grouping of file edits, baselines
and last-known-good rollback. It lives outside this package; the pack,
update and safe-mode pipelines only depend on this interface.
"""

from __future__ import annotations

from typing import List, Optional, Protocol, runtime_checkable

from .models import ChangeSetHandle, ChangeSetRecord, FinishResult, ValidationSpec


@runtime_checkable
class ChangeSetManager(Protocol):
    """
    Protocol for ChangeSet lifecycle operations.

    Implementations serialize self-modification operations so only one
    ChangeSet is active at a time.
    """

    def ensure_baseline(self) -> None:
        """Capture a last-known-good baseline if none exists yet."""
        ...

    def start_change_set(
        self,
        *,
        scope: str,
        agent_type: str,
        conversation_id: Optional[str] = None,
        device_id: Optional[str] = None,
        reason: Optional[str] = None,
        user_confirmed: bool = False,
        override_guard: bool = False,
    ) -> ChangeSetHandle:
        ...

    def finish_change_set(
        self,
        *,
        title: str,
        summary: str,
        skip_default_validations: bool = False,
        validations: Optional[List[ValidationSpec]] = None,
        user_confirmed: bool = False,
        override_guard: bool = False,
    ) -> FinishResult:
        """Close the active ChangeSet, running validations.

        A failed finish leaves rollback to the caller.
        """
        ...

    def rollback_to_last_known_good(self, reason: str) -> None:
        ...

    def load_change_set_record(self, change_set_id: str) -> Optional[ChangeSetRecord]:
        ...
