"""
Core Host - Snapshot Engine

Content-addressed captures of zone files, used both as diff sources and as
rollback targets.

Snapshot layout (JSON, camelCase):
    {
      "id": "<uuid>",
      "createdAt": 1700000000000,
      "zoneRoots": {"ui": ["/abs/project/src"], ...},
      "files": {
        "/ui/app.ts": {"virtualPath": ..., "hash": "<sha256>",
                       "encoding": "utf8" | "base64", "content": ...},
      }
    }

Restore never blindly overwrites: it snapshots the current state under the
same filter, diffs it against the target and replays only the divergence,
so restoring the same snapshot twice is a no-op the second time.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Iterable, List, Optional, Set, Tuple

from .models import (
    BaselineMetadata,
    ChangeType,
    DiffEntry,
    FileEncoding,
    PathClassification,
    RestoreResult,
    Snapshot,
    SnapshotFileRecord,
    SnapshotOptions,
    Zone,
    ZoneKind,
    now_ms,
)
from .state_store import StateStore
from .zones import ZoneManager

logger = logging.getLogger(__name__)

DEFAULT_IGNORED_DIRS = frozenset({
    "node_modules",
    ".git",
    "dist",
    "dist-electron",
    "release",
    "coverage",
    "bundles",
    "cache",
})
DEFAULT_MAX_WORKERS = 8


# =============================================================================
# Content Encoding
# =============================================================================

def compute_sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def encode_content(data: bytes) -> Tuple[FileEncoding, str]:
    """
    Encode file bytes for JSON storage.

    Text is bytes without NUL that decode as strict UTF-8; it is stored
    verbatim. Anything else is stored as base64.
    """
    if b"\x00" not in data:
        try:
            return FileEncoding.UTF8, data.decode("utf-8")
        except UnicodeDecodeError:
            pass
    return FileEncoding.BASE64, base64.b64encode(data).decode("ascii")


def decode_content(encoding: Optional[FileEncoding], content: str) -> bytes:
    if encoding == FileEncoding.BASE64:
        return base64.b64decode(content)
    return content.encode("utf-8")


def write_file_bytes(absolute_path: str, data: bytes) -> None:
    """Write exact bytes, creating parent directories."""
    path = Path(absolute_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


def delete_if_exists(absolute_path: str) -> None:
    Path(absolute_path).unlink(missing_ok=True)


# =============================================================================
# Snapshot Engine
# =============================================================================

class SnapshotEngine:
    """
    Creates, diffs and restores snapshots over a zone manager.

    File reads run on a bounded thread pool; the walk and the assembly of
    the result stay on the calling thread.
    """

    def __init__(
        self,
        zone_manager: ZoneManager,
        ignored_dirs: Optional[Iterable[str]] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        self.zone_manager = zone_manager
        self.ignored_dirs = frozenset(ignored_dirs) if ignored_dirs is not None else DEFAULT_IGNORED_DIRS
        self.max_workers = max(1, max_workers)

    # =========================================================================
    # Walking
    # =========================================================================

    def walk_files(self, base_path: str) -> List[str]:
        """Depth-first list of regular files, skipping ignored directories."""
        results: List[str] = []
        stack = [base_path]
        while stack:
            current = stack.pop()
            try:
                entries = list(os.scandir(current))
            except OSError as e:
                logger.debug(f"[Snapshots] Cannot list {current}: {e}")
                continue
            for entry in entries:
                try:
                    if entry.is_dir(follow_symlinks=False):
                        if entry.name not in self.ignored_dirs:
                            stack.append(entry.path)
                    elif entry.is_file(follow_symlinks=False):
                        results.append(entry.path)
                except OSError as e:
                    logger.debug(f"[Snapshots] Cannot stat {entry.path}: {e}")
        return results

    def _select_zones(self, options: SnapshotOptions) -> List[Zone]:
        zones = self.zone_manager.get_zones()
        if options.zone_names:
            zones = [z for z in zones if z.name in options.zone_names]
        elif options.zone_kinds:
            kinds = {ZoneKind(k) for k in options.zone_kinds}
            zones = [z for z in zones if z.kind in kinds]

        if options.subset_paths:
            touched = {
                c.zone.name
                for c in (self.zone_manager.classify_path(p) for p in options.subset_paths)
                if c.zone is not None
            }
            zones = [z for z in zones if z.name in touched]
        return zones

    def _subset_virtuals(self, options: SnapshotOptions) -> Optional[Set[str]]:
        if not options.subset_paths:
            return None
        return {self.zone_manager.classify_path(p).virtual_path for p in options.subset_paths}

    @staticmethod
    def _read_record(classification: PathClassification) -> Optional[SnapshotFileRecord]:
        try:
            data = Path(classification.absolute_path).read_bytes()
        except OSError as e:
            logger.debug(f"[Snapshots] Skipping unreadable {classification.absolute_path}: {e}")
            return None
        encoding, content = encode_content(data)
        return SnapshotFileRecord(
            virtual_path=classification.virtual_path,
            absolute_path=classification.absolute_path,
            zone=classification.zone.name if classification.zone else "",
            zone_relative_path=classification.zone_relative_path,
            project_relative_path=classification.project_relative_path,
            size=len(data),
            hash=compute_sha256(data),
            encoding=encoding,
            content=content,
        )

    # =========================================================================
    # Operations
    # =========================================================================

    def create_snapshot(self, options: Optional[SnapshotOptions] = None) -> Snapshot:
        options = options or SnapshotOptions()
        subset = self._subset_virtuals(options)

        candidates: List[PathClassification] = []
        seen: Set[str] = set()
        for zone in self._select_zones(options):
            for root in zone.roots:
                if not os.path.isdir(root):
                    continue
                for file_path in self.walk_files(root):
                    classification = self.zone_manager.classify_path(file_path)
                    if classification.zone is None:
                        continue
                    if subset is not None and classification.virtual_path not in subset:
                        continue
                    if classification.virtual_path in seen:
                        continue
                    seen.add(classification.virtual_path)
                    candidates.append(classification)

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            records = list(executor.map(self._read_record, candidates))

        files = {r.virtual_path: r for r in sorted(
            (r for r in records if r is not None), key=lambda r: r.virtual_path
        )}
        return Snapshot(
            id=str(uuid.uuid4()),
            created_at=now_ms(),
            zone_roots=self.zone_manager.get_zone_roots(),
            files=files,
        )

    def _filter_diffs(self, diffs: List[DiffEntry], options: SnapshotOptions) -> List[DiffEntry]:
        subset = self._subset_virtuals(options)
        allowed_zones: Optional[Set[str]] = None
        if options.zone_names:
            allowed_zones = set(options.zone_names)
        elif options.zone_kinds:
            kinds = {ZoneKind(k) for k in options.zone_kinds}
            allowed_zones = {z.name for z in self.zone_manager.get_zones() if z.kind in kinds}

        return [
            diff for diff in diffs
            if (allowed_zones is None or diff.zone in allowed_zones)
            and (subset is None or diff.virtual_path in subset)
        ]

    def restore_snapshot(
        self,
        snapshot: Snapshot,
        options: Optional[SnapshotOptions] = None,
    ) -> RestoreResult:
        """
        Bring the filtered part of the filesystem back to ``snapshot``.

        Files the target does not have are deleted; every other divergence
        is rewritten with the target's recorded bytes.
        """
        options = options or SnapshotOptions()
        current = self.create_snapshot(options)
        to_apply = self._filter_diffs(diff_snapshots(snapshot, current), options)

        for diff in to_apply:
            if diff.change_type == ChangeType.ADDED:
                if diff.after is not None:
                    delete_if_exists(diff.after.absolute_path)
                continue
            if diff.before is not None:
                write_file_bytes(
                    diff.before.absolute_path,
                    decode_content(diff.before.encoding, diff.before.content),
                )

        if to_apply:
            logger.info(f"[Snapshots] Restored {len(to_apply)} path(s) from snapshot {snapshot.id}")
        return RestoreResult(restored_count=len(to_apply), diffs=to_apply)

    def capture_baseline(self, state_store: StateStore, git_head: Optional[str] = None) -> BaselineMetadata:
        """Persist a platform-zone snapshot as the new last-known-good baseline."""
        snapshot = self.create_snapshot(SnapshotOptions(zone_kinds=[ZoneKind.PLATFORM]))
        metadata = BaselineMetadata(baseline_id=snapshot.id, git_head=git_head, created_at=snapshot.created_at)
        state_store.save_baseline_snapshot(metadata.baseline_id, snapshot)
        state_store.save_baseline_metadata(metadata)
        logger.info(f"[Snapshots] Captured baseline {metadata.baseline_id} ({len(snapshot.files)} files)")
        return metadata


# =============================================================================
# Module-level API
# =============================================================================

def diff_snapshots(before: Snapshot, after: Snapshot) -> List[DiffEntry]:
    """Differences from ``before`` to ``after``, sorted by virtual path."""
    diffs: List[DiffEntry] = []
    for key in sorted(set(before.files) | set(after.files)):
        prev = before.files.get(key)
        nxt = after.files.get(key)
        if prev is None and nxt is not None:
            diffs.append(DiffEntry(virtual_path=key, zone=nxt.zone, change_type=ChangeType.ADDED, after=nxt))
        elif prev is not None and nxt is None:
            diffs.append(DiffEntry(virtual_path=key, zone=prev.zone, change_type=ChangeType.DELETED, before=prev))
        elif prev is not None and nxt is not None and prev.hash != nxt.hash:
            diffs.append(
                DiffEntry(
                    virtual_path=key,
                    zone=nxt.zone,
                    change_type=ChangeType.MODIFIED,
                    before=prev,
                    after=nxt,
                )
            )
    return diffs


def create_snapshot(zone_manager: ZoneManager, options: Optional[SnapshotOptions] = None) -> Snapshot:
    return SnapshotEngine(zone_manager).create_snapshot(options)


def restore_snapshot(
    snapshot: Snapshot,
    zone_manager: ZoneManager,
    options: Optional[SnapshotOptions] = None,
) -> RestoreResult:
    return SnapshotEngine(zone_manager).restore_snapshot(snapshot, options)


def capture_baseline(
    zone_manager: ZoneManager,
    state_store: StateStore,
    git_head: Optional[str] = None,
) -> BaselineMetadata:
    return SnapshotEngine(zone_manager).capture_baseline(state_store, git_head)
