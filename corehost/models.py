"""
Core Host - Data Models

Pydantic v2 models for zones, path classifications, instruction policies,
snapshots, pack bundles, installations, baselines, boot status, signing keys,
validation results and backend payloads.

All models serialize with camelCase keys (``virtualPath``, ``bundleHash``...)
so the on-disk JSON and the backend wire format stay stable across devices.
Python attributes are snake_case; both spellings are accepted on input.
Timestamps are integer milliseconds since the epoch.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


class CamelModel(BaseModel):
    """Base model serialized with camelCase aliases."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self, exclude_none: bool = False) -> Dict[str, Any]:
        """Dump to a JSON-compatible dict with camelCase keys."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=exclude_none)


# =============================================================================
# Enums
# =============================================================================

class ZoneKind(str, Enum):
    """Platform zones hold application code/config; user zones hold user data."""
    PLATFORM = "platform"
    USER = "user"


class ChangeType(str, Enum):
    """Kind of difference between two snapshots."""
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


class FileEncoding(str, Enum):
    UTF8 = "utf8"
    BASE64 = "base64"


class EntryAction(str, Enum):
    """Pack entry action. ``add`` collapses to ``update`` when applying."""
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


class InstallStatus(str, Enum):
    INSTALLED = "installed"
    UNINSTALLED = "uninstalled"
    DISABLED_SAFE_MODE = "disabled_safe_mode"


class BootState(str, Enum):
    STARTING = "starting"
    HEALTHY = "healthy"
    FAILED = "failed"


class SafeModeState(str, Enum):
    """States of the boot-health state machine."""
    STARTING = "starting"
    HEALTHY = "healthy"
    NEEDS_REVERT = "needs_revert"
    RECOVERED = "recovered"
    FAILED = "failed"
    SKIPPED = "skipped"


class ValidationStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class ReviewStatus(str, Enum):
    APPROVED = "approved"
    NEEDS_CHANGES = "needs_changes"
    REJECTED = "rejected"


class MergeStrategy(str, Enum):
    KEEP_LOCAL = "keep_local"
    USE_UPSTREAM = "use_upstream"
    MERGED = "merged"


# =============================================================================
# Zones
# =============================================================================

class Zone(CamelModel):
    """Immutable zone descriptor."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    name: str
    kind: ZoneKind
    description: str = ""
    virtual_root: str
    roots: List[str]


class PathClassification(CamelModel):
    """Derived classification of a filesystem path."""
    absolute_path: str
    zone: Optional[Zone] = None
    zone_relative_path: str
    virtual_path: str
    project_relative_path: str


class ResolveResult(CamelModel):
    """Result of resolving a virtual, absolute or project-relative path."""
    ok: bool
    path: Optional[str] = None
    zone: Optional[Zone] = None
    virtual_path: Optional[str] = None
    error: Optional[str] = None


class GuardContext(CamelModel):
    """Agent-action context used by the write guard."""
    agent_type: str
    override_guard: bool = False
    user_confirmed: bool = False


class GuardResult(CamelModel):
    ok: bool
    reason: Optional[str] = None
    classification: PathClassification


# =============================================================================
# Instruction Policies
# =============================================================================

class InstructionPolicy(CamelModel):
    """Policy parsed from an INSTRUCTIONS.md front-matter block."""
    block_paths: List[str] = Field(default_factory=list)
    allow_paths: List[str] = Field(default_factory=list)
    invariants: List[str] = Field(default_factory=list)
    compatibility_notes: List[str] = Field(default_factory=list)


class InstructionFile(CamelModel):
    file_path: str
    directory: str
    markdown: str
    policy: InstructionPolicy = Field(default_factory=InstructionPolicy)


class InstructionEvaluation(CamelModel):
    """Accumulated policy evaluation over a path's ancestor chain."""
    blocked: bool
    block_reasons: List[str] = Field(default_factory=list)
    invariants: List[str] = Field(default_factory=list)
    compatibility_notes: List[str] = Field(default_factory=list)
    classification: PathClassification
    instruction_files: List[InstructionFile] = Field(default_factory=list)


# =============================================================================
# Snapshots
# =============================================================================

class SnapshotFileRecord(CamelModel):
    virtual_path: str
    absolute_path: str
    zone: str
    zone_relative_path: str
    project_relative_path: str
    size: int
    hash: str
    encoding: FileEncoding
    content: str


class Snapshot(CamelModel):
    """Immutable, content-addressed capture of zone files."""
    id: str
    created_at: int
    zone_roots: Dict[str, List[str]] = Field(default_factory=dict)
    files: Dict[str, SnapshotFileRecord] = Field(default_factory=dict)


class SnapshotOptions(CamelModel):
    """Restricts a snapshot to zone names, zone kinds or explicit paths."""
    zone_names: Optional[List[str]] = None
    zone_kinds: Optional[List[ZoneKind]] = None
    subset_paths: Optional[List[str]] = None


class DiffEntry(CamelModel):
    virtual_path: str
    zone: str
    change_type: ChangeType
    before: Optional[SnapshotFileRecord] = None
    after: Optional[SnapshotFileRecord] = None


class RestoreResult(CamelModel):
    restored_count: int
    diffs: List[DiffEntry] = Field(default_factory=list)


class BaselineMetadata(CamelModel):
    baseline_id: str
    git_head: Optional[str] = None
    created_at: int


# =============================================================================
# Signing
# =============================================================================

class DeviceKeyPair(CamelModel):
    public_key_pem: str
    private_key_pem: str
    created_at: int


class CanonicalHash(CamelModel):
    canonical: str
    hash_hex: str


# =============================================================================
# Validations
# =============================================================================

class ValidationSpec(CamelModel):
    name: str
    command: str
    cwd: str
    timeout_ms: int = 240_000
    required: bool = True


class ValidationResult(CamelModel):
    name: str
    command: str
    cwd: str
    started_at: int
    completed_at: int
    duration_ms: int
    exit_code: Optional[int] = None
    status: ValidationStatus
    output: str = ""
    required: bool = True


class ValidationFailure(CamelModel):
    name: str
    status: ValidationStatus
    exit_code: Optional[int] = None


class ValidationSummary(CamelModel):
    ok: bool
    required_failures: List[ValidationFailure] = Field(default_factory=list)


# =============================================================================
# ChangeSets (external manager contract)
# =============================================================================

class ChangeSetHandle(CamelModel):
    id: str


class ChangeSetFile(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    virtual_path: str
    zone: str
    change_type: ChangeType
    compatibility_notes: List[str] = Field(default_factory=list)


class ChangeSetRecord(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    status: str
    started_at: int = 0
    completed_at: Optional[int] = None
    changed_files: List[ChangeSetFile] = Field(default_factory=list)


class FinishResult(CamelModel):
    ok: bool
    change_set: Optional[ChangeSetRecord] = None
    reason: Optional[str] = None


# =============================================================================
# Packs
# =============================================================================

class SecurityReview(CamelModel):
    status: ReviewStatus
    summary: str = ""
    findings: List[str] = Field(default_factory=list)
    reviewed_at: int = Field(default_factory=now_ms)


class PackEntry(CamelModel):
    virtual_path: str
    zone: str
    project_relative_path: Optional[str] = None
    action: EntryAction
    encoding: Optional[FileEncoding] = None
    content: Optional[str] = None
    hash: Optional[str] = None
    size: Optional[int] = None


class PackManifest(CamelModel):
    schema_version: int = 1
    pack_id: str
    name: str
    description: str = ""
    version: str
    created_at: int
    author_device_id: str
    author_public_key: str = ""
    change_set_ids: List[str] = Field(default_factory=list)
    baseline_id: Optional[str] = None
    baseline_git_head: Optional[str] = None
    changed_paths: List[str] = Field(default_factory=list)
    zones: List[str] = Field(default_factory=list)
    compatibility_notes: List[str] = Field(default_factory=list)
    validations: List[ValidationResult] = Field(default_factory=list)
    validation_summary: Optional[ValidationSummary] = None
    security_review: Optional[SecurityReview] = None
    bundle_hash: str = ""
    signature: str = ""


class PackBundle(CamelModel):
    schema_version: int = 1
    manifest: PackManifest
    entries: List[PackEntry] = Field(default_factory=list)
    diff_patch: str = ""
    diff_patch_truncated: bool = False


class BundleVerification(CamelModel):
    hash_hex: str
    hash_matches: bool
    signature_valid: bool

    @property
    def ok(self) -> bool:
        return self.hash_matches and self.signature_valid


class Installation(CamelModel):
    install_id: str
    pack_id: str
    name: str
    description: str = ""
    version: str
    status: InstallStatus
    installed_at: int
    updated_at: int
    device_id: str = ""
    bundle_hash: str = ""
    signature: str = ""
    author_public_key: str = ""
    changed_paths: List[str] = Field(default_factory=list)
    zones: List[str] = Field(default_factory=list)
    uninstall_snapshot_path: str = ""
    last_error: Optional[str] = None


class PublishInput(CamelModel):
    name: str
    version: str
    change_set_ids: List[str] = Field(default_factory=list)
    description: str = ""
    pack_id: Optional[str] = None
    compatibility_notes: List[str] = Field(default_factory=list)
    conversation_id: Optional[str] = None
    device_id: str = ""


class PublishResult(CamelModel):
    ok: bool
    pack_id: str = ""
    version: str = ""
    bundle_path: Optional[str] = None
    security_review: Optional[SecurityReview] = None
    reason: Optional[str] = None


class InstallInput(CamelModel):
    pack_id: str
    version: str
    user_confirmed: bool = False
    conversation_id: Optional[str] = None
    device_id: str = ""


class InstallResult(CamelModel):
    ok: bool
    install_id: Optional[str] = None
    change_set_id: Optional[str] = None
    reason: Optional[str] = None


class UninstallInput(CamelModel):
    pack_id: str
    version: Optional[str] = None
    user_confirmed: bool = False
    conversation_id: Optional[str] = None
    device_id: str = ""


class UninstallResult(CamelModel):
    ok: bool
    install_id: Optional[str] = None
    change_set_id: Optional[str] = None
    reason: Optional[str] = None


# =============================================================================
# Updates
# =============================================================================

class UpdateRelease(CamelModel):
    release_id: str
    channel_id: str = ""
    version: str
    base_git_head: Optional[str] = None
    bundle: PackBundle


class UpdateCheckResult(CamelModel):
    ok: bool
    channel_id: str
    release: Optional[UpdateRelease] = None
    reason: Optional[str] = None


class ConflictFile(CamelModel):
    """Side of a three-way conflict (base, local or upstream)."""
    action: Optional[EntryAction] = None
    hash: Optional[str] = None
    encoding: Optional[FileEncoding] = None
    content: Optional[str] = None


class ConflictInstructions(CamelModel):
    instruction_files: List[str] = Field(default_factory=list)
    invariants: List[str] = Field(default_factory=list)
    compatibility_notes: List[str] = Field(default_factory=list)


class MergeConflict(CamelModel):
    virtual_path: str
    zone: str
    base: Optional[ConflictFile] = None
    local: Optional[ConflictFile] = None
    upstream: ConflictFile
    instructions: ConflictInstructions = Field(default_factory=ConflictInstructions)


class MergeResolution(CamelModel):
    virtual_path: str
    strategy: MergeStrategy
    encoding: Optional[FileEncoding] = None
    content: Optional[str] = None


class ApplyUpdateInput(CamelModel):
    channel_id: str
    release_id: Optional[str] = None
    user_confirmed: bool = False
    conversation_id: Optional[str] = None
    device_id: str = ""


class ApplyUpdateResult(CamelModel):
    ok: bool
    release_id: Optional[str] = None
    change_set_id: Optional[str] = None
    conflicts: int = 0
    reason: Optional[str] = None


class AppliedRelease(CamelModel):
    release_id: str
    channel_id: str
    version: str
    applied_at: int
    change_set_id: str
    conflicts: int = 0


# =============================================================================
# Boot Health / Safe Mode
# =============================================================================

class BootStatus(CamelModel):
    boot_id: str
    started_at: int
    status: BootState = BootState.STARTING
    healthy_at: Optional[int] = None
    failure_reason: Optional[str] = None
    safe_mode_applied: bool = False


class SafeModeTrigger(CamelModel):
    reason: str
    requested_at: int = Field(default_factory=now_ms)


class StartupCheckResult(CamelModel):
    state: SafeModeState
    needs_revert: bool
    boot_id: str
    reason: Optional[str] = None
    smoke_passed: bool
    smoke: List[ValidationResult] = Field(default_factory=list)


class RevertResult(CamelModel):
    state: SafeModeState
    ok: bool
    boot_id: Optional[str] = None
    safe_mode_applied: bool = False
    smoke_passed: bool = False
    reason: Optional[str] = None
    smoke: List[ValidationResult] = Field(default_factory=list)


