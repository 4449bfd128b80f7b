"""
Core Host - Pack Service

Builds, signs, installs and uninstalls packs.

Features:
- Publish: bundle the current content of paths touched by completed
  ChangeSets, validate, get a security review, sign and publish
- Install: verify hash and signature, snapshot, apply entries in order,
  roll back on any failure
- Uninstall: restore the install-time snapshot under a ChangeSet
- Safe mode: metadata-only disable of every installed pack

Bundle layout (JSON, camelCase):
    {
      "schemaVersion": 1,
      "manifest": {"packId": ..., "bundleHash": ..., "signature": ..., ...},
      "entries": [{"virtualPath": ..., "action": "add|update|delete", ...}],
      "diffPatch": "...",
      "diffPatchTruncated": false
    }

The bundle hash is the canonical JSON hash of the bundle with bundleHash,
signature and authorPublicKey blanked. Hashing and verification always run
on the raw bundle dict, never on a re-serialized model.
"""

from __future__ import annotations

import copy
import logging
import re
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError

from .backend import BackendClient
from .changesets import ChangeSetManager
from .git import GitHelper
from .instructions import InstructionManager
from .models import (
    BundleVerification,
    ChangeSetRecord,
    ChangeType,
    EntryAction,
    FileEncoding,
    GuardContext,
    InstallInput,
    InstallResult,
    Installation,
    InstallStatus,
    PackBundle,
    PackEntry,
    PackManifest,
    PublishInput,
    PublishResult,
    ReviewStatus,
    SecurityReview,
    SnapshotOptions,
    UninstallInput,
    UninstallResult,
    ValidationSummary,
    now_ms,
)
from .path_utils import ensure_within_root
from .signing import ensure_signing_keys, hash_canonical_json, sign_hash, verify_signature
from .snapshots import SnapshotEngine, compute_sha256, decode_content, delete_if_exists, encode_content, write_file_bytes
from .state_store import CoreHostError, StateStore
from .validations import ValidationRunner
from .zones import ZoneManager

logger = logging.getLogger(__name__)

PACK_DIFF_LIMIT = 300_000
REVIEW_PREVIEW_LIMIT = 20_000
SEMVER_RE = re.compile(r"^\d+\.\d+\.\d+([-+][0-9A-Za-z.-]+)?$")

PACK_INSTALL_AGENT = "system_pack_install"
PACK_UNINSTALL_AGENT = "system_pack_uninstall"


class PackApplyError(CoreHostError):
    """Error applying a single pack entry."""
    pass


@dataclass
class FetchedBundle:
    """Raw bundle dict plus where it came from."""
    bundle: Optional[Dict[str, Any]]
    source: str
    reason: Optional[str] = None


# =============================================================================
# Helpers
# =============================================================================

def is_semver_like(version: str) -> bool:
    return bool(SEMVER_RE.match(version))


def sanitize_pack_id(value: str) -> str:
    base = re.sub(r"[^a-z0-9]+", "-", value.strip().lower()).strip("-")
    return base or f"pack-{int(time.time() * 1000)}"


def truncate_diff(value: str) -> Tuple[str, bool]:
    if len(value) <= PACK_DIFF_LIMIT:
        return value, False
    return f"{value[:PACK_DIFF_LIMIT]}\n\n... (diff truncated)", True


def bundle_without_signature(bundle: Dict[str, Any]) -> Dict[str, Any]:
    """Deep copy with the signature-dependent manifest fields blanked."""
    clone = copy.deepcopy(bundle)
    manifest = clone.setdefault("manifest", {})
    manifest["bundleHash"] = ""
    manifest["signature"] = ""
    manifest["authorPublicKey"] = ""
    return clone


def verify_bundle(bundle: Dict[str, Any]) -> BundleVerification:
    """Recompute the bundle hash and check the author's signature."""
    manifest = bundle.get("manifest") if isinstance(bundle, dict) else None
    if not isinstance(manifest, dict):
        return BundleVerification(hash_hex="", hash_matches=False, signature_valid=False)
    hashed = hash_canonical_json(bundle_without_signature(bundle))
    return BundleVerification(
        hash_hex=hashed.hash_hex,
        hash_matches=hashed.hash_hex == manifest.get("bundleHash"),
        signature_valid=verify_signature(
            str(manifest.get("authorPublicKey") or ""),
            hashed.hash_hex,
            str(manifest.get("signature") or ""),
        ),
    )


def _unavailable_review() -> SecurityReview:
    return SecurityReview(
        status=ReviewStatus.NEEDS_CHANGES,
        summary=(
            "Security review could not be completed by the backend. "
            "Submission is blocked until review succeeds."
        ),
        findings=["Security review unavailable."],
    )


def _action_for_change(change_type: ChangeType) -> EntryAction:
    if change_type == ChangeType.ADDED:
        return EntryAction.ADD
    if change_type == ChangeType.DELETED:
        return EntryAction.DELETE
    return EntryAction.UPDATE


# =============================================================================
# Pack Service Class
# =============================================================================

class PackService:
    """
    Service for publishing and installing packs.

    Every public operation returns a result model with ``ok`` and ``reason``;
    internal errors never escape.
    """

    def __init__(
        self,
        zone_manager: ZoneManager,
        instruction_manager: InstructionManager,
        state_store: StateStore,
        change_set_manager: ChangeSetManager,
        snapshot_engine: SnapshotEngine,
        validation_runner: ValidationRunner,
        git_helper: GitHelper,
        backend: BackendClient,
        device_id: str = "",
    ):
        self.zone_manager = zone_manager
        self.instruction_manager = instruction_manager
        self.state_store = state_store
        self.change_set_manager = change_set_manager
        self.snapshots = snapshot_engine
        self.validation_runner = validation_runner
        self.git = git_helper
        self.backend = backend
        self.device_id = device_id

    @property
    def project_root(self) -> str:
        return self.zone_manager.project_root

    def _append_event(self, conversation_id: Optional[str], event_type: str,
                      device_id: str, payload: Dict[str, Any]) -> None:
        if not conversation_id:
            return
        self.backend.mutation("events.appendEvent", {
            "conversationId": conversation_id,
            "type": event_type,
            "deviceId": device_id,
            "payload": payload,
        })

    # =========================================================================
    # Installations
    # =========================================================================

    def list_installations(self) -> List[Installation]:
        return self.state_store.load_pack_installations()

    def find_installation(self, pack_id: str, version: Optional[str] = None) -> Optional[Installation]:
        """Most recently updated installation of a pack, optionally pinned to a version."""
        candidates = [
            item for item in self.list_installations()
            if item.pack_id == pack_id and (not version or item.version == version)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda item: item.updated_at)

    # =========================================================================
    # Publish
    # =========================================================================

    def _validate_publish_input(self, data: PublishInput) -> Optional[str]:
        if not data.name.strip():
            return "Pack name is required."
        if not is_semver_like(data.version.strip()):
            return "Version must be semver-like (e.g., 1.2.3)."
        if not data.change_set_ids:
            return "At least one ChangeSet is required to publish a pack."
        return None

    def _collect_change_sets(self, change_set_ids: List[str]) -> Tuple[List[ChangeSetRecord], Optional[str]]:
        records: List[ChangeSetRecord] = []
        for change_set_id in change_set_ids:
            record = self.change_set_manager.load_change_set_record(change_set_id)
            if record is None:
                return [], f"ChangeSet not found: {change_set_id}"
            if record.status != "completed":
                return [], f"ChangeSet is not completed: {change_set_id}"
            records.append(record)
        records.sort(key=lambda r: r.completed_at if r.completed_at is not None else r.started_at)
        return records, None

    @staticmethod
    def _collect_changed_paths(
        records: List[ChangeSetRecord],
    ) -> Tuple[List[str], List[str], List[str], Dict[str, EntryAction]]:
        """Union of changed paths/zones; later ChangeSets win the planned action."""
        paths: Set[str] = set()
        zones: Set[str] = set()
        notes: List[str] = []
        actions: Dict[str, EntryAction] = {}
        for record in records:
            for file in record.changed_files:
                paths.add(file.virtual_path)
                zones.add(file.zone)
                for note in file.compatibility_notes:
                    if note not in notes:
                        notes.append(note)
                actions[file.virtual_path] = _action_for_change(file.change_type)
        return sorted(paths), sorted(zones), notes, actions

    def _build_entries(self, changed_paths: List[str], actions: Dict[str, EntryAction]) -> List[PackEntry]:
        """Read the current on-disk content of each changed path."""
        entries: List[PackEntry] = []
        for virtual_path in changed_paths:
            resolved = self.zone_manager.resolve_path(virtual_path)
            if not resolved.ok or resolved.zone is None or resolved.path is None:
                logger.warning(f"[PackService] Skipping unresolvable path {virtual_path}")
                continue
            classification = self.zone_manager.classify_path(resolved.path)
            zone_name = classification.zone.name if classification.zone else resolved.zone.name
            planned = actions.get(classification.virtual_path, EntryAction.UPDATE)

            path = Path(classification.absolute_path)
            data: Optional[bytes] = None
            if path.is_file():
                try:
                    data = path.read_bytes()
                except OSError as e:
                    logger.warning(f"[PackService] Cannot read {path}, packing as delete: {e}")

            if data is None:
                entries.append(PackEntry(
                    virtual_path=classification.virtual_path,
                    zone=zone_name,
                    project_relative_path=classification.project_relative_path,
                    action=EntryAction.DELETE,
                ))
                continue

            encoding, content = encode_content(data)
            entries.append(PackEntry(
                virtual_path=classification.virtual_path,
                zone=zone_name,
                project_relative_path=classification.project_relative_path,
                action=EntryAction.UPDATE if planned == EntryAction.DELETE else planned,
                encoding=encoding,
                content=content,
                hash=compute_sha256(data),
                size=len(data),
            ))
        entries.sort(key=lambda e: e.virtual_path)
        return entries

    def _project_diff(self, entries: List[PackEntry]) -> Tuple[str, bool]:
        project_paths = []
        for entry in entries:
            classification = self.zone_manager.classify_path(entry.virtual_path)
            if ensure_within_root(self.project_root, classification.absolute_path):
                project_paths.append(classification.project_relative_path)
        git_root = self.git.resolve_git_root(self.project_root)
        raw = self.git.get_git_diff(git_root, project_paths) if git_root else ""
        return truncate_diff(raw)

    def _request_security_review(self, payload: Dict[str, Any]) -> SecurityReview:
        result = self.backend.action("packs.securityReviewBundle", {"bundle": payload})
        review = result.mapping
        if review is None:
            logger.warning(f"[PackService] Security review unavailable: {result.error}")
            return _unavailable_review()
        try:
            return SecurityReview.model_validate(review)
        except ValidationError as e:
            logger.warning(f"[PackService] Malformed security review response: {e}")
            return _unavailable_review()

    def publish_pack(self, data: PublishInput) -> PublishResult:
        """
        Publish completed ChangeSets as a signed pack version.

        Fails closed on validation failures and on any security review
        verdict other than ``approved``.
        """
        invalid = self._validate_publish_input(data)
        if invalid:
            return PublishResult(ok=False, pack_id=data.pack_id or "", version=data.version, reason=invalid)

        try:
            return self._publish(data)
        except (CoreHostError, OSError, ValueError) as e:
            logger.error(f"[PackService] Publish failed: {e}")
            return PublishResult(ok=False, pack_id=data.pack_id or "", version=data.version, reason=str(e))

    def _publish(self, data: PublishInput) -> PublishResult:
        self.state_store.ensure_structure()
        self.change_set_manager.ensure_baseline()
        version = data.version.strip()
        device_id = data.device_id or self.device_id

        records, reason = self._collect_change_sets(data.change_set_ids)
        if reason:
            return PublishResult(ok=False, pack_id=data.pack_id or "", version=version, reason=reason)

        changed_paths, zones, notes, actions = self._collect_changed_paths(records)
        entries = self._build_entries(changed_paths, actions)
        diff_patch, diff_truncated = self._project_diff(entries)

        baseline = self.state_store.load_baseline_metadata()
        baseline_git_head = (baseline.git_head if baseline else None) or self.git.get_git_head(self.project_root)

        validations = self.validation_runner.run_validations(self.validation_runner.default_specs(self.project_root))
        summary: ValidationSummary = self.validation_runner.summarize(validations)
        if not summary.ok:
            failed = ", ".join(f.name for f in summary.required_failures)
            return PublishResult(
                ok=False, pack_id=data.pack_id or "", version=version,
                reason=f"Validations failed: {failed}",
            )

        pack_id = sanitize_pack_id(data.pack_id) if data.pack_id and data.pack_id.strip() else sanitize_pack_id(data.name)
        keys = ensure_signing_keys(self.state_store)

        review = self._request_security_review({
            "packId": pack_id,
            "name": data.name,
            "description": data.description,
            "version": version,
            "changedPaths": changed_paths,
            "diffPatch": diff_patch,
            "entries": [
                {
                    "virtualPath": e.virtual_path,
                    "zone": e.zone,
                    "action": e.action.value,
                    "size": e.size,
                    "hash": e.hash,
                    "preview": (
                        e.content[:REVIEW_PREVIEW_LIMIT]
                        if e.content and e.encoding == FileEncoding.UTF8
                        else None
                    ),
                }
                for e in entries
            ],
            "validations": [
                {"name": r.name, "status": r.status.value, "exitCode": r.exit_code}
                for r in validations
            ],
        })
        if review.status != ReviewStatus.APPROVED:
            return PublishResult(
                ok=False, pack_id=pack_id, version=version, security_review=review,
                reason=f"Security review did not approve the pack ({review.status.value}).",
            )

        manifest = PackManifest(
            pack_id=pack_id,
            name=data.name.strip(),
            description=data.description.strip(),
            version=version,
            created_at=now_ms(),
            author_device_id=device_id,
            author_public_key=keys.public_key_pem,
            change_set_ids=list(data.change_set_ids),
            baseline_id=baseline.baseline_id if baseline else None,
            baseline_git_head=baseline_git_head,
            changed_paths=changed_paths,
            zones=zones,
            compatibility_notes=[n for n in list(data.compatibility_notes) + notes if n and n.strip()],
            validations=validations,
            validation_summary=summary,
            security_review=review,
        )
        bundle = PackBundle(
            manifest=manifest,
            entries=entries,
            diff_patch=diff_patch,
            diff_patch_truncated=diff_truncated,
        ).to_json_dict(exclude_none=True)

        hashed = hash_canonical_json(bundle_without_signature(bundle))
        bundle["manifest"]["bundleHash"] = hashed.hash_hex
        bundle["manifest"]["signature"] = sign_hash(keys.private_key_pem, hashed.hash_hex)

        bundle_path = self.state_store.bundle_path(pack_id, version)
        self.state_store.write_json(bundle_path, bundle)
        logger.info(f"[PackService] Wrote bundle {pack_id}@{version} to {bundle_path}")

        published = self.backend.action("packs.publishVersion", {
            "packId": pack_id,
            "name": manifest.name,
            "description": manifest.description,
            "version": version,
            "manifest": bundle["manifest"],
            "bundle": bundle,
            "bundleHash": hashed.hash_hex,
            "signature": bundle["manifest"]["signature"],
            "authorPublicKey": keys.public_key_pem,
            "securityReview": review.to_json_dict(),
            "conversationId": data.conversation_id,
            "deviceId": device_id,
        })
        response = published.mapping or {}
        if not response.get("ok"):
            return PublishResult(
                ok=False, pack_id=pack_id, version=version, bundle_path=str(bundle_path),
                security_review=review,
                reason=response.get("reason") or "Failed to publish pack to the store registry.",
            )

        self._append_event(data.conversation_id, "pack_publish_completed", device_id, {
            "packId": pack_id,
            "version": version,
            "changedPaths": changed_paths,
            "bundleHash": hashed.hash_hex,
        })
        logger.info(f"[PackService] Published {pack_id}@{version}")
        return PublishResult(
            ok=True, pack_id=pack_id, version=version,
            bundle_path=str(bundle_path), security_review=review,
        )

    # =========================================================================
    # Install
    # =========================================================================

    def fetch_pack_bundle(self, pack_id: str, version: str, skip_local: bool = False) -> FetchedBundle:
        """
        Local bundle first, then the backend.

        Remote bundles are not cached here; the caller stores them once they verify.
        """
        local_path = self.state_store.bundle_path(pack_id, version)
        if not skip_local and local_path.exists():
            try:
                local = self.state_store.read_json(local_path)
                if isinstance(local, dict):
                    return FetchedBundle(bundle=local, source="local")
            except (OSError, ValueError) as e:
                logger.warning(f"[PackService] Ignoring unreadable local bundle {local_path}: {e}")

        remote = self.backend.action("packs.getBundleForInstall", {"packId": pack_id, "version": version})
        response = remote.mapping or {}
        bundle = response.get("bundle")
        if not response.get("ok") or not isinstance(bundle, dict):
            return FetchedBundle(
                bundle=None,
                source="remote",
                reason=response.get("reason") or remote.error or "Bundle not available.",
            )
        return FetchedBundle(bundle=bundle, source="remote")

    def _apply_entry(self, entry: PackEntry, context: GuardContext) -> str:
        resolved = self.zone_manager.resolve_path(entry.virtual_path)
        if not resolved.ok or resolved.path is None:
            raise PackApplyError(resolved.error or f"Cannot resolve {entry.virtual_path}")
        guard = self.zone_manager.enforce_guard(resolved.path, context)
        if not guard.ok:
            raise PackApplyError(guard.reason or f"Write denied for {entry.virtual_path}")
        classification = guard.classification

        evaluation = self.instruction_manager.get_instructions_for_path(classification.absolute_path)
        if evaluation.blocked:
            logger.warning(
                f"[PackService] Instruction policy flags {classification.virtual_path}: "
                f"{'; '.join(evaluation.block_reasons)}"
            )

        if entry.action == EntryAction.DELETE:
            delete_if_exists(classification.absolute_path)
            return classification.virtual_path
        if entry.content is None or entry.encoding is None:
            raise PackApplyError(f"Entry missing content for {entry.virtual_path}")
        write_file_bytes(classification.absolute_path, decode_content(entry.encoding, entry.content))
        return classification.virtual_path

    def install_pack(self, data: InstallInput) -> InstallResult:
        """
        Install a pack version after explicit user confirmation.

        Nothing on disk is touched until the bundle hash and signature verify.
        """
        if not data.user_confirmed:
            return InstallResult(ok=False, reason="Pack installation requires explicit user confirmation.")
        try:
            return self._install(data)
        except (CoreHostError, OSError, ValueError) as e:
            logger.error(f"[PackService] Install of {data.pack_id}@{data.version} failed: {e}")
            return InstallResult(ok=False, reason=str(e))

    def _install(self, data: InstallInput) -> InstallResult:
        self.state_store.ensure_structure()
        self.change_set_manager.ensure_baseline()
        device_id = data.device_id or self.device_id

        fetched = self.fetch_pack_bundle(data.pack_id, data.version)
        if fetched.bundle is None:
            return InstallResult(ok=False, reason=fetched.reason or "Pack bundle not found.")

        verification = verify_bundle(fetched.bundle)
        if not verification.ok and fetched.source == "local":
            logger.warning(
                f"[PackService] Cached bundle for {data.pack_id}@{data.version} failed verification, "
                f"fetching from backend"
            )
            remote = self.fetch_pack_bundle(data.pack_id, data.version, skip_local=True)
            if remote.bundle is not None:
                fetched = remote
                verification = verify_bundle(remote.bundle)
        if not verification.ok:
            logger.warning(
                f"[PackService] Verification failed for {data.pack_id}@{data.version} "
                f"(hash_matches={verification.hash_matches}, signature_valid={verification.signature_valid})"
            )
            return InstallResult(ok=False, reason="Pack signature verification failed.")
        if fetched.source == "remote":
            self.state_store.write_json(
                self.state_store.bundle_path(data.pack_id, data.version), fetched.bundle
            )
        try:
            bundle = PackBundle.model_validate(fetched.bundle)
        except ValidationError as e:
            return InstallResult(ok=False, reason=f"Pack bundle is malformed: {e.error_count()} error(s).")
        manifest = bundle.manifest

        install_id = str(uuid.uuid4())
        change_set = self.change_set_manager.start_change_set(
            scope="pack_install",
            agent_type=PACK_INSTALL_AGENT,
            conversation_id=data.conversation_id,
            device_id=device_id,
            reason=f"Installing pack {data.pack_id}@{data.version} (installId: {install_id})",
            user_confirmed=True,
            override_guard=True,
        )

        scope = SnapshotOptions(zone_names=manifest.zones, subset_paths=manifest.changed_paths)
        uninstall_snapshot = self.snapshots.create_snapshot(scope)
        uninstall_snapshot_path = self.state_store.save_pack_uninstall_snapshot(install_id, uninstall_snapshot)

        context = GuardContext(agent_type=PACK_INSTALL_AGENT, override_guard=True, user_confirmed=True)
        applied = 0
        try:
            for entry in bundle.entries:
                self._apply_entry(entry, context)
                applied += 1
        except (CoreHostError, OSError, ValueError) as e:
            logger.error(f"[PackService] Apply failed after {applied} change(s), rolling back: {e}")
            self.snapshots.restore_snapshot(uninstall_snapshot, scope)
            return InstallResult(
                ok=False,
                change_set_id=change_set.id,
                reason=f"Failed to apply pack entries after {applied} changes: {e}",
            )

        finish = self.change_set_manager.finish_change_set(
            title=f"Install pack: {manifest.name}@{manifest.version}",
            summary=f"Installed pack {manifest.pack_id}@{manifest.version} ({applied} changes).",
            skip_default_validations=True,
            validations=self.validation_runner.smoke_specs(self.project_root),
            user_confirmed=True,
            override_guard=True,
        )
        if not finish.ok or finish.change_set is None:
            logger.warning(f"[PackService] Install finish failed, rolling back: {finish.reason}")
            self.snapshots.restore_snapshot(uninstall_snapshot, scope)
            return InstallResult(
                ok=False,
                change_set_id=change_set.id,
                reason=finish.reason or "Pack install failed validation and was rolled back.",
            )

        now = now_ms()
        record = Installation(
            install_id=install_id,
            pack_id=manifest.pack_id,
            name=manifest.name,
            description=manifest.description,
            version=manifest.version,
            status=InstallStatus.INSTALLED,
            installed_at=now,
            updated_at=now,
            device_id=device_id,
            bundle_hash=manifest.bundle_hash,
            signature=manifest.signature,
            author_public_key=manifest.author_public_key,
            changed_paths=list(manifest.changed_paths),
            zones=list(manifest.zones),
            uninstall_snapshot_path=str(uninstall_snapshot_path),
        )
        others = [
            item for item in self.list_installations()
            if not (item.pack_id == record.pack_id and item.version == record.version)
        ]
        self.state_store.save_pack_installations([record] + others)

        self.backend.action("packs.recordInstallation", {
            "installId": install_id,
            "packId": record.pack_id,
            "version": record.version,
            "status": record.status.value,
            "deviceId": device_id,
            "bundleHash": record.bundle_hash,
            "signature": record.signature,
            "authorPublicKey": record.author_public_key,
            "changedPaths": record.changed_paths,
            "zones": record.zones,
            "conversationId": data.conversation_id,
            "changeSetId": finish.change_set.id,
        })
        self._append_event(data.conversation_id, "pack_install_completed", device_id, {
            "packId": record.pack_id,
            "version": record.version,
            "installId": install_id,
            "changeSetId": finish.change_set.id,
        })
        logger.info(f"[PackService] Installed {record.pack_id}@{record.version} ({applied} changes)")
        return InstallResult(ok=True, install_id=install_id, change_set_id=finish.change_set.id)

    # =========================================================================
    # Uninstall
    # =========================================================================

    def uninstall_pack(self, data: UninstallInput) -> UninstallResult:
        """Restore the state captured just before the pack was installed."""
        if not data.user_confirmed:
            return UninstallResult(ok=False, reason="Pack uninstall requires explicit user confirmation.")
        try:
            return self._uninstall(data)
        except (CoreHostError, OSError, ValueError) as e:
            logger.error(f"[PackService] Uninstall of {data.pack_id} failed: {e}")
            return UninstallResult(ok=False, reason=str(e))

    def _uninstall(self, data: UninstallInput) -> UninstallResult:
        self.state_store.ensure_structure()
        self.change_set_manager.ensure_baseline()
        device_id = data.device_id or self.device_id

        installation = self.find_installation(data.pack_id, data.version)
        if installation is None:
            suffix = f"@{data.version}" if data.version else ""
            return UninstallResult(ok=False, reason=f"Pack is not installed: {data.pack_id}{suffix}")
        if installation.status == InstallStatus.UNINSTALLED:
            return UninstallResult(ok=True, install_id=installation.install_id)

        saved = self.state_store.load_pack_uninstall_snapshot(installation.install_id)
        if saved is None:
            return UninstallResult(ok=False, reason="Uninstall snapshot missing; cannot safely uninstall.")

        changed_paths = installation.changed_paths or list(saved.files)
        zones = installation.zones or sorted({f.zone for f in saved.files.values()})
        scope = SnapshotOptions(zone_names=zones, subset_paths=changed_paths)
        rollback = self.snapshots.create_snapshot(scope)

        change_set = self.change_set_manager.start_change_set(
            scope="pack_uninstall",
            agent_type=PACK_UNINSTALL_AGENT,
            conversation_id=data.conversation_id,
            device_id=device_id,
            reason=f"Uninstalling pack {installation.pack_id}@{installation.version}",
            user_confirmed=True,
            override_guard=True,
        )

        try:
            self.snapshots.restore_snapshot(saved, scope)
        except (OSError, ValueError) as e:
            logger.error(f"[PackService] Uninstall restore failed, rolling back: {e}")
            self.snapshots.restore_snapshot(rollback, scope)
            return UninstallResult(
                ok=False,
                change_set_id=change_set.id,
                reason=f"Failed to restore pre-install state: {e}",
            )

        finish = self.change_set_manager.finish_change_set(
            title=f"Uninstall pack: {installation.pack_id}@{installation.version}",
            summary=(
                f"Restored state prior to pack installation "
                f"({installation.pack_id}@{installation.version})."
            ),
            skip_default_validations=True,
            validations=self.validation_runner.smoke_specs(self.project_root),
            user_confirmed=True,
            override_guard=True,
        )
        if not finish.ok or finish.change_set is None:
            logger.warning(f"[PackService] Uninstall finish failed, rolling back: {finish.reason}")
            self.snapshots.restore_snapshot(rollback, scope)
            return UninstallResult(
                ok=False,
                change_set_id=change_set.id,
                reason=finish.reason or "Uninstall failed validation and was rolled back.",
            )

        now = now_ms()
        self.state_store.save_pack_installations([
            item.model_copy(update={"status": InstallStatus.UNINSTALLED, "updated_at": now})
            if item.install_id == installation.install_id else item
            for item in self.list_installations()
        ])

        self.backend.action("packs.recordInstallation", {
            "installId": installation.install_id,
            "packId": installation.pack_id,
            "version": installation.version,
            "status": InstallStatus.UNINSTALLED.value,
            "deviceId": device_id,
            "changedPaths": changed_paths,
            "zones": zones,
            "conversationId": data.conversation_id,
            "changeSetId": finish.change_set.id,
        })
        self._append_event(data.conversation_id, "pack_uninstall_completed", device_id, {
            "packId": installation.pack_id,
            "version": installation.version,
            "installId": installation.install_id,
            "changeSetId": finish.change_set.id,
        })
        logger.info(f"[PackService] Uninstalled {installation.pack_id}@{installation.version}")
        return UninstallResult(ok=True, install_id=installation.install_id, change_set_id=finish.change_set.id)

    # =========================================================================
    # Safe Mode
    # =========================================================================

    def disable_all_for_safe_mode(self, reason: str) -> List[str]:
        """
        Flip every installed pack to disabled_safe_mode. Files are untouched.

        Returns the ids of the packs that were disabled.
        """
        installations = self.list_installations()
        if not installations:
            return []
        now = now_ms()
        disabled: List[str] = []
        updated: List[Installation] = []
        for item in installations:
            if item.status == InstallStatus.INSTALLED:
                item = item.model_copy(update={
                    "status": InstallStatus.DISABLED_SAFE_MODE,
                    "updated_at": now,
                    "last_error": reason,
                })
                disabled.append(item.pack_id)
            updated.append(item)
        self.state_store.save_pack_installations(updated)

        self.backend.action("packs.safeModeDisabled", {
            "reason": reason,
            "disabledAt": now,
            "packIds": [i.pack_id for i in updated if i.status == InstallStatus.DISABLED_SAFE_MODE],
            "deviceId": self.device_id,
        })
        if disabled:
            logger.warning(f"[PackService] Disabled {len(disabled)} pack(s) for safe mode: {reason}")
        return disabled
