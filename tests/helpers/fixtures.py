"""
Test fixtures and helpers for Core Host tests.

Provides:
- Temporary project/app-home builder with every component wired up
- Fake ChangeSet manager backed by the real StateStore and SnapshotEngine
- Fake backend transport, validation runner and git helper
- Signed bundle builder
"""

from __future__ import annotations

import tempfile
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from corehost.backend import BackendClient, BackendError
from corehost.git import GitHelper
from corehost.instructions import InstructionManager
from corehost.models import (
    ChangeSetFile,
    ChangeSetHandle,
    ChangeSetRecord,
    DeviceKeyPair,
    FinishResult,
    SnapshotOptions,
    ValidationResult,
    ValidationSpec,
    ValidationStatus,
    ZoneKind,
    now_ms,
)
from corehost.pack_service import PackService, bundle_without_signature
from corehost.safe_mode import SafeModeManager
from corehost.signing import generate_key_pair, hash_canonical_json, sign_hash
from corehost.snapshots import SnapshotEngine, compute_sha256, diff_snapshots, encode_content
from corehost.state_store import CoreHostError, StateStore
from corehost.update_service import UpdateService
from corehost.validations import ValidationRunner
from corehost.zones import ZoneManager


# =============================================================================
# File Helpers
# =============================================================================

def write_file(root: Path, relative: str, content: Any = "") -> Path:
    """Write text or bytes under root, creating parents."""
    path = Path(root) / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_bytes(content.encode("utf-8"))
    return path


def read_text(root: Path, relative: str) -> Optional[str]:
    path = Path(root) / relative
    if not path.exists():
        return None
    return path.read_bytes().decode("utf-8")


def snapshot_tree(root: Path) -> Dict[str, bytes]:
    """Map of relative posix path -> bytes for every file under root."""
    if not Path(root).exists():
        return {}
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(Path(root).rglob("*"))
        if p.is_file()
    }


# =============================================================================
# Fakes
# =============================================================================

class FakeBackendTransport:
    """
    Records every call and answers from registered handlers.

    Usage:
        transport = FakeBackendTransport()
        transport.on("packs.publishVersion", {"ok": True})
        transport.on("agent.invoke", lambda args: {"ok": True, "resolutions": []})
        transport.fail("packs.recordInstallation")
    """

    def __init__(self):
        self.handlers: Dict[str, Any] = {}
        self.failures: Dict[str, str] = {}
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []

    def on(self, name: str, response: Any) -> None:
        self.handlers[name] = response

    def fail(self, name: str, message: str = "backend exploded") -> None:
        self.failures[name] = message

    def calls_to(self, name: str) -> List[Dict[str, Any]]:
        return [args for _, called, args in self.calls if called == name]

    def _dispatch(self, kind: str, name: str, args: Dict[str, Any]) -> Any:
        self.calls.append((kind, name, args))
        if name in self.failures:
            raise BackendError(self.failures[name])
        handler = self.handlers.get(name)
        if callable(handler):
            return handler(args)
        return handler

    def call_mutation(self, name: str, args: Dict[str, Any]) -> Any:
        return self._dispatch("mutation", name, args)

    def call_action(self, name: str, args: Dict[str, Any]) -> Any:
        return self._dispatch("action", name, args)


class FakeValidationRunner(ValidationRunner):
    """Validation runner that never spawns processes."""

    def __init__(self, outcomes: Optional[Dict[str, ValidationStatus]] = None):
        super().__init__()
        self.outcomes: Dict[str, ValidationStatus] = dict(outcomes or {})
        self.ran: List[str] = []

    def set_outcome(self, name: str, status: ValidationStatus) -> None:
        self.outcomes[name] = status

    def _run_one(self, spec: ValidationSpec) -> ValidationResult:
        self.ran.append(spec.name)
        status = self.outcomes.get(spec.name, ValidationStatus.PASSED)
        now = now_ms()
        return ValidationResult(
            name=spec.name,
            command=spec.command,
            cwd=spec.cwd,
            started_at=now,
            completed_at=now,
            duration_ms=0,
            exit_code=0 if status == ValidationStatus.PASSED else 1,
            status=status,
            output="ok" if status == ValidationStatus.PASSED else "boom",
            required=spec.required,
        )


class FakeGitHelper(GitHelper):
    """Git helper with canned answers."""

    def __init__(self, head: Optional[str] = "abc123", diff: str = ""):
        super().__init__()
        self.head = head
        self.diff = diff

    def resolve_git_root(self, cwd: str) -> Optional[str]:
        return cwd if self.head else None

    def get_git_head(self, cwd: str) -> Optional[str]:
        return self.head

    def get_git_diff(self, cwd: str, paths=None) -> str:
        return self.diff

    def get_git_changed_paths(self, cwd: str, paths=None) -> List[str]:
        return []


class FakeChangeSetManager:
    """
    In-process ChangeSet manager.

    Records a platform snapshot at start, diffs against it at finish and
    persists the record through the StateStore. Rollback restores the
    current baseline.
    """

    def __init__(
        self,
        state_store: StateStore,
        snapshot_engine: SnapshotEngine,
        validation_runner: Optional[ValidationRunner] = None,
        git_head: Optional[str] = "abc123",
    ):
        self.state_store = state_store
        self.snapshots = snapshot_engine
        self.validation_runner = validation_runner
        self.git_head = git_head
        self.started: List[Dict[str, Any]] = []
        self.finished: List[Dict[str, Any]] = []
        self.rollbacks: List[str] = []
        self.finish_override: Optional[FinishResult] = None
        self.rollback_error: Optional[Exception] = None
        self._active: Optional[Dict[str, Any]] = None

    def ensure_baseline(self) -> None:
        if self.state_store.load_baseline_metadata() is None:
            self.snapshots.capture_baseline(self.state_store, self.git_head)

    def start_change_set(self, *, scope: str, agent_type: str, conversation_id=None, device_id=None,
                         reason=None, user_confirmed: bool = False, override_guard: bool = False) -> ChangeSetHandle:
        change_set_id = str(uuid.uuid4())
        self._active = {
            "id": change_set_id,
            "started_at": now_ms(),
            "before": self.snapshots.create_snapshot(SnapshotOptions(zone_kinds=[ZoneKind.PLATFORM])),
        }
        self.started.append({
            "id": change_set_id,
            "scope": scope,
            "agent_type": agent_type,
            "reason": reason,
            "user_confirmed": user_confirmed,
            "override_guard": override_guard,
        })
        return ChangeSetHandle(id=change_set_id)

    def finish_change_set(self, *, title: str, summary: str, skip_default_validations: bool = False,
                          validations=None, user_confirmed: bool = False,
                          override_guard: bool = False) -> FinishResult:
        if self._active is None:
            return FinishResult(ok=False, reason="No active ChangeSet.")
        active, self._active = self._active, None
        self.finished.append({"id": active["id"], "title": title, "summary": summary})

        if self.finish_override is not None:
            return self.finish_override

        if validations and self.validation_runner is not None:
            summary_result = self.validation_runner.summarize(self.validation_runner.run_validations(validations))
            if not summary_result.ok:
                failed = ", ".join(f.name for f in summary_result.required_failures)
                return FinishResult(ok=False, reason=f"Validations failed: {failed}")

        after = self.snapshots.create_snapshot(SnapshotOptions(zone_kinds=[ZoneKind.PLATFORM]))
        record = ChangeSetRecord(
            id=active["id"],
            status="completed",
            started_at=active["started_at"],
            completed_at=now_ms(),
            changed_files=[
                ChangeSetFile(virtual_path=d.virtual_path, zone=d.zone, change_type=d.change_type)
                for d in diff_snapshots(active["before"], after)
            ],
        )
        self.state_store.save_change_set_record(record)
        return FinishResult(ok=True, change_set=record)

    def rollback_to_last_known_good(self, reason: str) -> None:
        self.rollbacks.append(reason)
        if self.rollback_error is not None:
            raise self.rollback_error
        metadata = self.state_store.load_baseline_metadata()
        if metadata is None:
            raise CoreHostError("No baseline available.")
        snapshot = self.state_store.load_baseline_snapshot(metadata.baseline_id)
        if snapshot is None:
            raise CoreHostError("Baseline snapshot missing.")
        self.snapshots.restore_snapshot(snapshot, SnapshotOptions(zone_kinds=[ZoneKind.PLATFORM]))

    def load_change_set_record(self, change_set_id: str) -> Optional[ChangeSetRecord]:
        return self.state_store.load_change_set_record(change_set_id)


# =============================================================================
# Host Context
# =============================================================================

class HostTestContext:
    """
    Isolated project root + app home with every component wired up.

    Usage:
        with HostTestContext() as ctx:
            ctx.write("src/app.ts", "export {}")
            ctx.packs.install_pack(...)
    """

    def __init__(self, base: Optional[Path] = None):
        self._tmpdir: Optional[tempfile.TemporaryDirectory] = None
        self._base = base

    def __enter__(self) -> "HostTestContext":
        if self._base is None:
            self._tmpdir = tempfile.TemporaryDirectory()
            self._base = Path(self._tmpdir.name)
        self.setup(self._base)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._tmpdir is not None:
            self._tmpdir.cleanup()

    def setup(self, base: Path) -> "HostTestContext":
        self.base = Path(base).resolve()
        self.project_root = self.base / "project"
        self.app_home = self.base / "home"
        self.project_root.mkdir(parents=True, exist_ok=True)
        self.app_home.mkdir(parents=True, exist_ok=True)

        self.zones = ZoneManager(str(self.project_root), str(self.app_home))
        self.instructions = InstructionManager(self.zones)
        self.state = StateStore(self.app_home / "state", self.app_home / "packs")
        self.snapshots = SnapshotEngine(self.zones, max_workers=2)
        self.validations = FakeValidationRunner()
        self.git = FakeGitHelper()
        self.transport = FakeBackendTransport()
        self.backend = BackendClient(self.transport)
        self.change_sets = FakeChangeSetManager(self.state, self.snapshots, self.validations)

        self.packs = PackService(
            self.zones, self.instructions, self.state, self.change_sets,
            self.snapshots, self.validations, self.git, self.backend, device_id="device-test",
        )
        self.updates = UpdateService(
            self.zones, self.instructions, self.state, self.change_sets,
            self.snapshots, self.validations, self.backend, device_id="device-test",
        )
        self.safe_mode = SafeModeManager(
            self.state, self.change_sets, self.packs, self.validations,
            self.backend, str(self.project_root),
        )
        self.state.ensure_structure()
        return self

    def write(self, relative: str, content: Any = "") -> Path:
        return write_file(self.project_root, relative, content)

    def read(self, relative: str) -> Optional[str]:
        return read_text(self.project_root, relative)

    def tree(self) -> Dict[str, bytes]:
        return snapshot_tree(self.project_root)


# =============================================================================
# Bundles
# =============================================================================

def make_entry(virtual_path: str, zone: str, content: Optional[Any] = None,
               action: str = "update", **extra: Any) -> Dict[str, Any]:
    """Bundle entry dict (camelCase). ``content=None`` leaves content out."""
    entry: Dict[str, Any] = {"virtualPath": virtual_path, "zone": zone, "action": action}
    if content is not None:
        data = content if isinstance(content, bytes) else content.encode("utf-8")
        encoding, encoded = encode_content(data)
        entry.update({
            "encoding": encoding.value,
            "content": encoded,
            "hash": compute_sha256(data),
            "size": len(data),
        })
    entry.update(extra)
    return entry


def build_signed_bundle(
    entries: List[Dict[str, Any]],
    pack_id: str = "test-pack",
    version: str = "1.0.0",
    keys: Optional[DeviceKeyPair] = None,
    **manifest_extra: Any,
) -> Dict[str, Any]:
    """Signed bundle dict whose changed paths and zones derive from entries."""
    keys = keys or generate_key_pair()
    manifest: Dict[str, Any] = {
        "schemaVersion": 1,
        "packId": pack_id,
        "name": pack_id,
        "description": "",
        "version": version,
        "createdAt": now_ms(),
        "authorDeviceId": "device-author",
        "authorPublicKey": keys.public_key_pem,
        "changeSetIds": [],
        "changedPaths": sorted({e["virtualPath"] for e in entries}),
        "zones": sorted({e["zone"] for e in entries}),
        "compatibilityNotes": [],
        "validations": [],
        "bundleHash": "",
        "signature": "",
    }
    manifest.update(manifest_extra)
    bundle = {
        "schemaVersion": 1,
        "manifest": manifest,
        "entries": entries,
        "diffPatch": "",
        "diffPatchTruncated": False,
    }
    hashed = hash_canonical_json(bundle_without_signature(bundle))
    manifest["bundleHash"] = hashed.hash_hex
    manifest["signature"] = sign_hash(keys.private_key_pem, hashed.hash_hex)
    return bundle
