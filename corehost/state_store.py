"""
Core Host - State Store

Manages the on-disk state layout:
- <state_root>/
  - changesets/active.json
  - changesets/<id>/record.json, baseline.snapshot.json
  - baseline/last_known_good.json, history.json, snapshots/<id>.snapshot.json
  - packs/installations.json, uninstall/<installId>.snapshot.json
  - updates/applied.json
  - safe-mode/trigger.json
  - startup/boot.json
  - signing/device-key.json
- <packs_root>/
  - bundles/<packId>/<version>.bundle.json
  - cache/

Records are plain JSON files at well-known paths. There is no record-level
locking; the ChangeSet manager serializes self-modification operations.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .models import (
    AppliedRelease,
    BaselineMetadata,
    BootState,
    BootStatus,
    ChangeSetRecord,
    Installation,
    SafeModeTrigger,
    Snapshot,
    now_ms,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

BASELINE_HISTORY_LIMIT = 50
APPLIED_RELEASES_LIMIT = 50

# One path segment of a bundle location (pack id or version)
BUNDLE_SEGMENT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")


class CoreHostError(Exception):
    """Base exception for core host errors."""
    pass


class StateStoreError(CoreHostError):
    """Error reading or writing a state record."""
    pass


class StateStore:
    """
    Typed access to the state and packs roots.

    Loaders return None (or an empty list) for missing or malformed records
    so callers can treat "absent" and "corrupt" the same way.
    """

    def __init__(self, state_root: Path, packs_root: Path):
        self.state_root = Path(state_root).expanduser().resolve()
        self.packs_root = Path(packs_root).expanduser().resolve()

    # =========================================================================
    # Path Properties
    # =========================================================================

    @property
    def changesets_path(self) -> Path:
        return self.state_root / "changesets"

    @property
    def active_change_set_path(self) -> Path:
        return self.changesets_path / "active.json"

    @property
    def baseline_path(self) -> Path:
        return self.state_root / "baseline"

    @property
    def baseline_snapshots_path(self) -> Path:
        return self.baseline_path / "snapshots"

    @property
    def baseline_metadata_path(self) -> Path:
        """Path to last_known_good.json."""
        return self.baseline_path / "last_known_good.json"

    @property
    def baseline_history_path(self) -> Path:
        return self.baseline_path / "history.json"

    @property
    def packs_state_path(self) -> Path:
        return self.state_root / "packs"

    @property
    def pack_installations_path(self) -> Path:
        return self.packs_state_path / "installations.json"

    @property
    def pack_uninstall_path(self) -> Path:
        return self.packs_state_path / "uninstall"

    @property
    def updates_path(self) -> Path:
        return self.state_root / "updates"

    @property
    def applied_releases_path(self) -> Path:
        return self.updates_path / "applied.json"

    @property
    def safe_mode_path(self) -> Path:
        return self.state_root / "safe-mode"

    @property
    def safe_mode_trigger_path(self) -> Path:
        return self.safe_mode_path / "trigger.json"

    @property
    def startup_path(self) -> Path:
        return self.state_root / "startup"

    @property
    def boot_status_path(self) -> Path:
        return self.startup_path / "boot.json"

    @property
    def signing_path(self) -> Path:
        return self.state_root / "signing"

    @property
    def device_key_path(self) -> Path:
        return self.signing_path / "device-key.json"

    @property
    def bundles_path(self) -> Path:
        return self.packs_root / "bundles"

    @property
    def pack_cache_path(self) -> Path:
        return self.packs_root / "cache"

    def change_set_dir(self, change_set_id: str) -> Path:
        return self.changesets_path / change_set_id

    def change_set_record_path(self, change_set_id: str) -> Path:
        return self.change_set_dir(change_set_id) / "record.json"

    def change_set_baseline_path(self, change_set_id: str) -> Path:
        return self.change_set_dir(change_set_id) / "baseline.snapshot.json"

    def baseline_snapshot_path(self, baseline_id: str) -> Path:
        return self.baseline_snapshots_path / f"{baseline_id}.snapshot.json"

    def pack_uninstall_snapshot_path(self, install_id: str) -> Path:
        return self.pack_uninstall_path / f"{install_id}.snapshot.json"

    def bundle_path(self, pack_id: str, version: str) -> Path:
        """Get path to a published or cached bundle file."""
        for segment in (pack_id, version):
            if not BUNDLE_SEGMENT_RE.match(segment or "") or ".." in segment:
                raise StateStoreError(f"Invalid bundle location: {pack_id!r}@{version!r}")
        return self.bundles_path / pack_id / f"{version}.bundle.json"

    # =========================================================================
    # Initialization
    # =========================================================================

    def ensure_structure(self) -> None:
        """Ensure all required directories exist."""
        directories = [
            self.state_root,
            self.changesets_path,
            self.baseline_path,
            self.baseline_snapshots_path,
            self.packs_state_path,
            self.pack_uninstall_path,
            self.updates_path,
            self.safe_mode_path,
            self.startup_path,
            self.signing_path,
            self.packs_root,
            self.bundles_path,
            self.pack_cache_path,
        ]
        for d in directories:
            d.mkdir(parents=True, exist_ok=True)

    # =========================================================================
    # JSON I/O
    # =========================================================================

    def write_json(self, path: Path, data: Any) -> None:
        """
        Write JSON file atomically with canonical formatting.

        Uses write-to-temp-then-rename pattern for atomicity.
        """
        path.parent.mkdir(parents=True, exist_ok=True)

        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True, ensure_ascii=False)
                f.write("\n")
            tmp_path.replace(path)
        except OSError as e:
            raise StateStoreError(f"Failed to write {path}: {e}") from e
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    def read_json(self, path: Path) -> Any:
        """Read JSON file."""
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _read_optional(self, path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return self.read_json(path)
        except (OSError, ValueError) as e:
            logger.warning(f"[StateStore] Ignoring unreadable record {path}: {e}")
            return None

    def _load_model(self, path: Path, model: Type[ModelT]) -> Optional[ModelT]:
        data = self._read_optional(path)
        if data is None:
            return None
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.warning(f"[StateStore] Malformed {model.__name__} at {path}: {e}")
            return None

    def _load_model_list(self, path: Path, model: Type[ModelT]) -> List[ModelT]:
        data = self._read_optional(path)
        if not isinstance(data, list):
            return []
        items: List[ModelT] = []
        for item in data:
            try:
                items.append(model.model_validate(item))
            except ValidationError as e:
                logger.warning(f"[StateStore] Skipping malformed {model.__name__} in {path}: {e}")
        return items

    def _remove(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    # =========================================================================
    # ChangeSets
    # =========================================================================

    def set_active_change_set(self, value: Optional[Dict[str, Any]]) -> None:
        if value is None:
            self._remove(self.active_change_set_path)
            return
        self.write_json(self.active_change_set_path, value)

    def get_active_change_set(self) -> Optional[Dict[str, Any]]:
        data = self._read_optional(self.active_change_set_path)
        return data if isinstance(data, dict) else None

    def save_change_set_record(self, record: ChangeSetRecord) -> None:
        self.write_json(self.change_set_record_path(record.id), record.to_json_dict())

    def load_change_set_record(self, change_set_id: str) -> Optional[ChangeSetRecord]:
        return self._load_model(self.change_set_record_path(change_set_id), ChangeSetRecord)

    def save_change_set_baseline(self, change_set_id: str, snapshot: Snapshot) -> None:
        self.write_json(self.change_set_baseline_path(change_set_id), snapshot.to_json_dict())

    def load_change_set_baseline(self, change_set_id: str) -> Optional[Snapshot]:
        return self._load_model(self.change_set_baseline_path(change_set_id), Snapshot)

    def list_change_set_ids(self) -> List[str]:
        if not self.changesets_path.exists():
            return []
        return sorted(p.name for p in self.changesets_path.iterdir() if p.is_dir())

    # =========================================================================
    # Baselines
    # =========================================================================

    def save_baseline_metadata(self, metadata: BaselineMetadata) -> None:
        """Set the current baseline and prepend it to the capped history."""
        self.write_json(self.baseline_metadata_path, metadata.to_json_dict())
        history = [metadata] + self.load_baseline_history()
        self.write_json(
            self.baseline_history_path,
            [item.to_json_dict() for item in history[:BASELINE_HISTORY_LIMIT]],
        )

    def load_baseline_metadata(self) -> Optional[BaselineMetadata]:
        return self._load_model(self.baseline_metadata_path, BaselineMetadata)

    def load_baseline_history(self) -> List[BaselineMetadata]:
        """Baseline history, newest first."""
        return self._load_model_list(self.baseline_history_path, BaselineMetadata)

    def save_baseline_snapshot(self, baseline_id: str, snapshot: Snapshot) -> None:
        self.write_json(self.baseline_snapshot_path(baseline_id), snapshot.to_json_dict())

    def load_baseline_snapshot(self, baseline_id: str) -> Optional[Snapshot]:
        return self._load_model(self.baseline_snapshot_path(baseline_id), Snapshot)

    # =========================================================================
    # Pack Installations
    # =========================================================================

    def load_pack_installations(self) -> List[Installation]:
        return self._load_model_list(self.pack_installations_path, Installation)

    def save_pack_installations(self, installations: List[Installation]) -> None:
        self.write_json(
            self.pack_installations_path,
            [item.to_json_dict() for item in installations],
        )

    def save_pack_uninstall_snapshot(self, install_id: str, snapshot: Snapshot) -> Path:
        path = self.pack_uninstall_snapshot_path(install_id)
        self.write_json(path, snapshot.to_json_dict())
        return path

    def load_pack_uninstall_snapshot(self, install_id: str) -> Optional[Snapshot]:
        return self._load_model(self.pack_uninstall_snapshot_path(install_id), Snapshot)

    # =========================================================================
    # Applied Updates
    # =========================================================================

    def load_applied_releases(self) -> List[AppliedRelease]:
        """Applied release history, newest first."""
        return self._load_model_list(self.applied_releases_path, AppliedRelease)

    def append_applied_release(self, release: AppliedRelease) -> None:
        history = [release] + self.load_applied_releases()
        self.write_json(
            self.applied_releases_path,
            [item.to_json_dict() for item in history[:APPLIED_RELEASES_LIMIT]],
        )

    # =========================================================================
    # Safe Mode
    # =========================================================================

    def set_safe_mode_trigger(self, trigger: Optional[SafeModeTrigger]) -> None:
        if trigger is None:
            self._remove(self.safe_mode_trigger_path)
            return
        self.write_json(self.safe_mode_trigger_path, trigger.to_json_dict())

    def get_safe_mode_trigger(self) -> Optional[SafeModeTrigger]:
        return self._load_model(self.safe_mode_trigger_path, SafeModeTrigger)

    # =========================================================================
    # Boot Status
    # =========================================================================

    def start_boot(self) -> BootStatus:
        boot = BootStatus(boot_id=str(uuid.uuid4()), started_at=now_ms())
        self.write_json(self.boot_status_path, boot.to_json_dict())
        return boot

    def get_last_boot_status(self) -> Optional[BootStatus]:
        return self._load_model(self.boot_status_path, BootStatus)

    def _update_boot(self, boot_id: str, **changes: Any) -> bool:
        current = self.get_last_boot_status()
        if current is None or current.boot_id != boot_id:
            logger.debug(f"[StateStore] Ignoring boot update for stale boot {boot_id}")
            return False
        updated = current.model_copy(update=changes)
        self.write_json(self.boot_status_path, updated.to_json_dict())
        return True

    def mark_boot_healthy(self, boot_id: str, safe_mode_applied: Optional[bool] = None) -> bool:
        changes: Dict[str, Any] = {"status": BootState.HEALTHY, "healthy_at": now_ms()}
        if safe_mode_applied is not None:
            changes["safe_mode_applied"] = safe_mode_applied
        return self._update_boot(boot_id, **changes)

    def mark_boot_failed(self, boot_id: str, reason: str, safe_mode_applied: bool) -> bool:
        return self._update_boot(
            boot_id,
            status=BootState.FAILED,
            failure_reason=reason,
            safe_mode_applied=safe_mode_applied,
        )
