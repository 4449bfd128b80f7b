"""
Core Host - Update Service

Applies upstream (vendor) releases without clobbering local changes.

Flow:
1. Fetch the release and refuse any entry that resolves outside the
   project root.
2. Pick the three-way merge base: the baseline whose git head matches the
   release's base commit, else the current baseline.
3. Compare base/local/upstream bytes per entry. Only true three-way
   divergences are conflicts; everything else applies automatically.
4. Send conflicts (with their instruction invariants) to the semantic merge
   agent and apply its resolutions.
5. Apply inside an ``update_apply`` ChangeSet with a rollback snapshot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from .backend import BackendClient
from .changesets import ChangeSetManager
from .instructions import InstructionManager
from .models import (
    AppliedRelease,
    ApplyUpdateInput,
    ApplyUpdateResult,
    BaselineMetadata,
    ConflictFile,
    ConflictInstructions,
    EntryAction,
    MergeConflict,
    MergeResolution,
    MergeStrategy,
    PackBundle,
    PackEntry,
    Snapshot,
    SnapshotFileRecord,
    SnapshotOptions,
    UpdateCheckResult,
    UpdateRelease,
    ZoneKind,
    now_ms,
)
from .path_utils import ensure_within_root
from .snapshots import SnapshotEngine, decode_content, delete_if_exists, write_file_bytes
from .state_store import CoreHostError, StateStore
from .validations import ValidationRunner
from .zones import ZoneManager

logger = logging.getLogger(__name__)

UPDATE_AGENT = "system_update"
MAX_RESOLUTIONS = 50

MERGE_RULES = [
    "Preserve user-local changes where possible.",
    "Do not move screens outside the right panel host.",
    "Honor INSTRUCTIONS.md invariants and compatibility notes.",
    "Return bounded JSON only.",
]


class UpdateApplyError(CoreHostError):
    """Error applying an update entry or resolution."""
    pass


@dataclass
class ConflictScan:
    """Entries split into auto-applicable changes and true conflicts."""
    non_conflicts: List[PackEntry] = field(default_factory=list)
    conflicts: List[MergeConflict] = field(default_factory=list)


# =============================================================================
# Three-way Comparison
# =============================================================================

def is_conflict(base: Optional[bytes], local: Optional[bytes], upstream: Optional[bytes]) -> bool:
    """
    True when local and upstream both diverged from base and disagree.

    None means the file is absent (or deleted upstream).
    """
    return local != base and upstream != base and local != upstream


def _record_bytes(record: Optional[SnapshotFileRecord]) -> Optional[bytes]:
    if record is None:
        return None
    return decode_content(record.encoding, record.content)


def _entry_bytes(entry: PackEntry) -> Optional[bytes]:
    if entry.action == EntryAction.DELETE or entry.content is None or entry.encoding is None:
        return None
    return decode_content(entry.encoding, entry.content)


def _conflict_side(record: Optional[SnapshotFileRecord]) -> Optional[ConflictFile]:
    if record is None:
        return None
    return ConflictFile(hash=record.hash, encoding=record.encoding, content=record.content)


def _upstream_side(entry: PackEntry) -> ConflictFile:
    if entry.action == EntryAction.DELETE:
        return ConflictFile(action=entry.action, hash=entry.hash)
    return ConflictFile(action=entry.action, hash=entry.hash, encoding=entry.encoding, content=entry.content)


# =============================================================================
# Update Service Class
# =============================================================================

class UpdateService:
    """Checks for and applies upstream releases."""

    def __init__(
        self,
        zone_manager: ZoneManager,
        instruction_manager: InstructionManager,
        state_store: StateStore,
        change_set_manager: ChangeSetManager,
        snapshot_engine: SnapshotEngine,
        validation_runner: ValidationRunner,
        backend: BackendClient,
        device_id: str = "",
    ):
        self.zone_manager = zone_manager
        self.instruction_manager = instruction_manager
        self.state_store = state_store
        self.change_set_manager = change_set_manager
        self.snapshots = snapshot_engine
        self.validation_runner = validation_runner
        self.backend = backend
        self.device_id = device_id

    @property
    def project_root(self) -> str:
        return self.zone_manager.project_root

    # =========================================================================
    # Release Lookup
    # =========================================================================

    @staticmethod
    def _parse_release(value: Any) -> Optional[UpdateRelease]:
        if not isinstance(value, dict):
            return None
        try:
            return UpdateRelease.model_validate(value)
        except ValidationError as e:
            logger.warning(f"[UpdateService] Malformed release payload: {e.error_count()} error(s)")
            return None

    def check_for_updates(self, channel_id: str) -> UpdateCheckResult:
        result = self.backend.action("updates.getLatestRelease", {"channelId": channel_id})
        response = result.mapping or {}
        release = self._parse_release(response.get("release")) if response.get("ok") else None
        if release is None:
            return UpdateCheckResult(
                ok=False,
                channel_id=channel_id,
                reason=response.get("reason") or "No update information available.",
            )
        return UpdateCheckResult(ok=True, channel_id=response.get("channelId") or channel_id, release=release)

    def select_base(self, base_git_head: Optional[str]) -> Optional[Tuple[BaselineMetadata, Snapshot]]:
        """Baseline matching ``base_git_head`` from history, else the current baseline."""
        if base_git_head:
            for metadata in self.state_store.load_baseline_history():
                if metadata.git_head == base_git_head:
                    snapshot = self.state_store.load_baseline_snapshot(metadata.baseline_id)
                    if snapshot is not None:
                        return metadata, snapshot
                    break

        current = self.state_store.load_baseline_metadata()
        if current is None:
            return None
        snapshot = self.state_store.load_baseline_snapshot(current.baseline_id)
        if snapshot is None:
            return None
        return current, snapshot

    # =========================================================================
    # Conflicts
    # =========================================================================

    def compute_conflicts(self, bundle: PackBundle, base: Snapshot, current: Snapshot) -> ConflictScan:
        scan = ConflictScan()
        for entry in bundle.entries:
            base_file = base.files.get(entry.virtual_path)
            local_file = current.files.get(entry.virtual_path)
            if not is_conflict(_record_bytes(base_file), _record_bytes(local_file), _entry_bytes(entry)):
                scan.non_conflicts.append(entry)
                continue

            evaluation = self.instruction_manager.get_instructions_for_path(entry.virtual_path)
            zone = evaluation.classification.zone
            scan.conflicts.append(MergeConflict(
                virtual_path=entry.virtual_path,
                zone=zone.name if zone else "unknown",
                base=_conflict_side(base_file),
                local=_conflict_side(local_file),
                upstream=_upstream_side(entry),
                instructions=ConflictInstructions(
                    instruction_files=self.instruction_manager.summarize_instruction_files(
                        evaluation.instruction_files
                    ),
                    invariants=evaluation.invariants,
                    compatibility_notes=evaluation.compatibility_notes,
                ),
            ))
        return scan

    def request_merge(
        self,
        conflicts: List[MergeConflict],
        bundle: PackBundle,
    ) -> Tuple[Optional[List[MergeResolution]], Optional[str]]:
        """Ask the semantic merge agent for one resolution per conflict."""
        if not conflicts:
            return [], None
        if not self.backend.connected:
            return None, "Semantic merge requires backend agent.invoke support."

        payload = {
            "mode": "semantic_merge",
            "agentType": "self_mod",
            "prompt": (
                "Resolve semantic merge conflicts between upstream and local changes. "
                "Follow the provided rules and return JSON only."
            ),
            "input": {
                "rules": MERGE_RULES,
                "conflicts": [c.to_json_dict(exclude_none=True) for c in conflicts],
                "bundleMetadata": {
                    "packId": bundle.manifest.pack_id,
                    "version": bundle.manifest.version,
                    "changedPaths": bundle.manifest.changed_paths,
                },
            },
            "resultSchema": {
                "type": "object",
                "required": ["resolutions"],
                "properties": {
                    "resolutions": {
                        "type": "array",
                        "maxItems": min(len(conflicts), MAX_RESOLUTIONS),
                        "items": {
                            "type": "object",
                            "required": ["virtualPath", "strategy"],
                            "properties": {
                                "virtualPath": {"type": "string"},
                                "strategy": {"type": "string", "enum": [s.value for s in MergeStrategy]},
                                "encoding": {"type": "string", "enum": ["utf8", "base64"]},
                                "content": {"type": "string"},
                            },
                        },
                    },
                },
            },
        }
        result = self.backend.action("agent.invoke", payload)
        response = result.mapping or {}
        raw = response.get("resolutions")
        if not response.get("ok") or not isinstance(raw, list):
            return None, response.get("reason") or result.error or "Semantic merge failed."
        try:
            return [MergeResolution.model_validate(item) for item in raw], None
        except ValidationError as e:
            return None, f"Semantic merge returned invalid resolutions: {e.error_count()} error(s)."

    # =========================================================================
    # Apply
    # =========================================================================

    def _apply_entry(self, entry: PackEntry) -> None:
        resolved = self.zone_manager.resolve_path(entry.virtual_path)
        if not resolved.ok or resolved.path is None:
            raise UpdateApplyError(resolved.error or f"Cannot resolve {entry.virtual_path}")
        classification = self.zone_manager.classify_path(resolved.path)
        if not ensure_within_root(self.project_root, classification.absolute_path):
            raise UpdateApplyError(f"Refusing to update outside the project root: {entry.virtual_path}")
        if entry.action == EntryAction.DELETE:
            delete_if_exists(classification.absolute_path)
            return
        if entry.content is None or entry.encoding is None:
            raise UpdateApplyError(f"Entry missing content: {entry.virtual_path}")
        write_file_bytes(classification.absolute_path, decode_content(entry.encoding, entry.content))

    def _apply_all(self, bundle: PackBundle, scan: ConflictScan, resolutions: List[MergeResolution]) -> None:
        for entry in scan.non_conflicts:
            self._apply_entry(entry)

        by_path: Dict[str, MergeResolution] = {r.virtual_path: r for r in resolutions}
        upstream: Dict[str, PackEntry] = {e.virtual_path: e for e in bundle.entries}
        for conflict in scan.conflicts:
            resolution = by_path.get(conflict.virtual_path)
            if resolution is None:
                raise UpdateApplyError(f"No merge resolution provided for {conflict.virtual_path}")
            if resolution.strategy == MergeStrategy.KEEP_LOCAL:
                continue
            if resolution.strategy == MergeStrategy.USE_UPSTREAM:
                entry = upstream.get(conflict.virtual_path)
                if entry is None:
                    raise UpdateApplyError(f"Upstream entry missing for {conflict.virtual_path}")
                self._apply_entry(entry)
                continue
            if resolution.content is None or resolution.encoding is None:
                raise UpdateApplyError(f"Merged resolution missing content for {conflict.virtual_path}")
            self._apply_entry(PackEntry(
                virtual_path=conflict.virtual_path,
                zone=conflict.zone,
                action=EntryAction.UPDATE,
                encoding=resolution.encoding,
                content=resolution.content,
            ))

    def apply_update(self, data: ApplyUpdateInput) -> ApplyUpdateResult:
        """Apply an upstream release after explicit user confirmation."""
        if not data.user_confirmed:
            return ApplyUpdateResult(
                ok=False,
                reason="Applying an upstream update requires explicit user confirmation.",
            )
        try:
            return self._apply_update(data)
        except (CoreHostError, OSError, ValueError) as e:
            logger.error(f"[UpdateService] Update on channel {data.channel_id} failed: {e}")
            return ApplyUpdateResult(ok=False, release_id=data.release_id, reason=str(e))

    def _apply_update(self, data: ApplyUpdateInput) -> ApplyUpdateResult:
        self.state_store.ensure_structure()
        self.change_set_manager.ensure_baseline()
        device_id = data.device_id or self.device_id

        fetched = self.backend.action(
            "updates.getReleaseForApply",
            {"channelId": data.channel_id, "releaseId": data.release_id},
        )
        response = fetched.mapping or {}
        release = self._parse_release(response.get("release")) if response.get("ok") else None
        if release is None:
            return ApplyUpdateResult(
                ok=False,
                release_id=data.release_id,
                reason=response.get("reason") or fetched.error or "Update release not available.",
            )
        bundle = release.bundle

        for entry in bundle.entries:
            classification = self.zone_manager.classify_path(entry.virtual_path)
            if not ensure_within_root(self.project_root, classification.absolute_path):
                return ApplyUpdateResult(
                    ok=False,
                    release_id=release.release_id,
                    reason=(
                        "Upstream update attempted to modify a path outside the project root: "
                        f"{entry.virtual_path}"
                    ),
                )

        base = self.select_base(release.base_git_head or bundle.manifest.baseline_git_head)
        if base is None:
            return ApplyUpdateResult(
                ok=False,
                release_id=release.release_id,
                reason="Unable to resolve a baseline snapshot for conflict detection.",
            )
        base_metadata, base_snapshot = base
        logger.info(f"[UpdateService] Using baseline {base_metadata.baseline_id} as merge base")

        current = self.snapshots.create_snapshot(SnapshotOptions(zone_kinds=[ZoneKind.PLATFORM]))
        scan = self.compute_conflicts(bundle, base_snapshot, current)
        conflict_count = len(scan.conflicts)

        resolutions, reason = self.request_merge(scan.conflicts, bundle)
        if resolutions is None:
            return ApplyUpdateResult(
                ok=False, release_id=release.release_id, conflicts=conflict_count, reason=reason,
            )

        scope = SnapshotOptions(zone_names=bundle.manifest.zones, subset_paths=bundle.manifest.changed_paths)
        rollback = self.snapshots.create_snapshot(scope)
        change_set = self.change_set_manager.start_change_set(
            scope="update_apply",
            agent_type=UPDATE_AGENT,
            conversation_id=data.conversation_id,
            device_id=device_id,
            reason=f"Applying upstream update {release.release_id} ({release.version})",
            user_confirmed=True,
            override_guard=True,
        )

        try:
            self._apply_all(bundle, scan, resolutions)
        except (CoreHostError, OSError, ValueError) as e:
            logger.error(f"[UpdateService] Apply failed, rolling back: {e}")
            self.snapshots.restore_snapshot(rollback, scope)
            return ApplyUpdateResult(
                ok=False,
                release_id=release.release_id,
                change_set_id=change_set.id,
                conflicts=conflict_count,
                reason=f"Failed to apply update: {e}",
            )

        finish = self.change_set_manager.finish_change_set(
            title=f"Upstream update: {release.version}",
            summary=f"Applied upstream update {release.release_id} on channel {release.channel_id}.",
            skip_default_validations=True,
            validations=self.validation_runner.smoke_specs(self.project_root),
            user_confirmed=True,
            override_guard=True,
        )
        if not finish.ok or finish.change_set is None:
            logger.warning(f"[UpdateService] Finish failed, rolling back: {finish.reason}")
            self.snapshots.restore_snapshot(rollback, scope)
            return ApplyUpdateResult(
                ok=False,
                release_id=release.release_id,
                change_set_id=change_set.id,
                conflicts=conflict_count,
                reason=finish.reason or "Update failed validation and was rolled back.",
            )

        self.state_store.append_applied_release(AppliedRelease(
            release_id=release.release_id,
            channel_id=release.channel_id,
            version=release.version,
            applied_at=now_ms(),
            change_set_id=finish.change_set.id,
            conflicts=conflict_count,
        ))
        self.backend.action("updates.recordAppliedRelease", {
            "releaseId": release.release_id,
            "channelId": release.channel_id,
            "version": release.version,
            "deviceId": device_id,
            "conversationId": data.conversation_id,
            "changeSetId": finish.change_set.id,
            "conflicts": conflict_count,
        })
        if data.conversation_id:
            self.backend.mutation("events.appendEvent", {
                "conversationId": data.conversation_id,
                "type": "update_applied",
                "deviceId": device_id,
                "payload": {
                    "releaseId": release.release_id,
                    "channelId": release.channel_id,
                    "version": release.version,
                    "changeSetId": finish.change_set.id,
                    "conflicts": conflict_count,
                },
            })
        logger.info(
            f"[UpdateService] Applied {release.release_id} ({release.version}) "
            f"with {conflict_count} conflict(s)"
        )
        return ApplyUpdateResult(
            ok=True,
            release_id=release.release_id,
            change_set_id=finish.change_set.id,
            conflicts=conflict_count,
        )
