"""
Tests for the snapshot engine.

Covers:
  - Text vs binary encoding
  - Zone/kind/path filtering and ignored directories
  - Diffing
  - Restore semantics and idempotency
  - Baseline capture
"""

import base64

from corehost.models import ChangeType, FileEncoding, SnapshotOptions, ZoneKind
from corehost.snapshots import (
    compute_sha256,
    create_snapshot,
    decode_content,
    diff_snapshots,
    encode_content,
    restore_snapshot,
)


class TestEncoding:
    """Text detection and exact byte round trips."""

    def test_utf8_text(self):
        encoding, content = encode_content("héllo\r\nworld".encode("utf-8"))
        assert encoding == FileEncoding.UTF8
        assert content == "héllo\r\nworld"

    def test_nul_byte_is_binary(self):
        encoding, content = encode_content(b"abc\x00def")
        assert encoding == FileEncoding.BASE64
        assert base64.b64decode(content) == b"abc\x00def"

    def test_invalid_utf8_is_binary(self):
        encoding, _ = encode_content(b"\xff\xfe\xfd")
        assert encoding == FileEncoding.BASE64

    def test_decode_preserves_bytes(self):
        data = b"line1\r\nline2\n"
        encoding, content = encode_content(data)
        assert decode_content(encoding, content) == data


class TestCreateSnapshot:
    """Snapshot creation."""

    def test_captures_zone_files(self, project):
        snapshot = project.snapshots.create_snapshot()
        assert set(snapshot.files) == {"/ui/app.ts", "/screens/home.tsx", "/core-host/main.js"}
        record = snapshot.files["/ui/app.ts"]
        assert record.zone == "ui"
        assert record.hash == compute_sha256(b"export const app = 1;\n")
        assert record.project_relative_path == "src/app.ts"

    def test_ignored_directories(self, project):
        project.write("src/node_modules/dep/index.js", "x")
        project.write("src/.git/HEAD", "ref")
        snapshot = project.snapshots.create_snapshot()
        assert not any("node_modules" in p or ".git" in p for p in snapshot.files)

    def test_zone_name_filter(self, project):
        snapshot = project.snapshots.create_snapshot(SnapshotOptions(zone_names=["screens"]))
        assert list(snapshot.files) == ["/screens/home.tsx"]

    def test_zone_kind_filter(self, project):
        (project.app_home / "user").mkdir()
        (project.app_home / "user" / "notes.md").write_text("mine")
        platform = project.snapshots.create_snapshot(SnapshotOptions(zone_kinds=[ZoneKind.PLATFORM]))
        user = project.snapshots.create_snapshot(SnapshotOptions(zone_kinds=[ZoneKind.USER]))
        assert "/user/notes.md" not in platform.files
        assert list(user.files) == ["/user/notes.md"]

    def test_subset_paths(self, project):
        snapshot = project.snapshots.create_snapshot(SnapshotOptions(subset_paths=["/ui/app.ts"]))
        assert list(snapshot.files) == ["/ui/app.ts"]

    def test_module_level_function(self, project):
        snapshot = create_snapshot(project.zones)
        assert "/ui/app.ts" in snapshot.files

    def test_missing_zone_roots_are_skipped(self, host):
        assert host.snapshots.create_snapshot().files == {}


class TestDiffAndRestore:
    """Diffing and restoring."""

    def test_diff(self, project):
        before = project.snapshots.create_snapshot()
        project.write("src/app.ts", "changed")
        project.write("src/new.ts", "new")
        (project.project_root / "src" / "screens" / "home.tsx").unlink()
        after = project.snapshots.create_snapshot()

        diffs = {d.virtual_path: d.change_type for d in diff_snapshots(before, after)}
        assert diffs == {
            "/ui/app.ts": ChangeType.MODIFIED,
            "/ui/new.ts": ChangeType.ADDED,
            "/screens/home.tsx": ChangeType.DELETED,
        }

    def test_diff_is_sorted(self, project):
        before = project.snapshots.create_snapshot()
        project.write("src/z.ts", "z")
        project.write("src/a.ts", "a")
        paths = [d.virtual_path for d in diff_snapshots(before, project.snapshots.create_snapshot())]
        assert paths == sorted(paths)

    def test_restore_brings_back_state(self, project):
        original = project.tree()
        snapshot = project.snapshots.create_snapshot()

        project.write("src/app.ts", "broken")
        project.write("src/extra.ts", "extra")
        (project.project_root / "electron" / "local-host" / "main.js").unlink()

        result = project.snapshots.restore_snapshot(snapshot)
        assert result.restored_count == 3
        assert project.tree() == original

    def test_restore_is_idempotent(self, project):
        snapshot = project.snapshots.create_snapshot()
        project.write("src/app.ts", "broken")
        project.snapshots.restore_snapshot(snapshot)
        second = project.snapshots.restore_snapshot(snapshot)
        assert second.restored_count == 0

    def test_restore_respects_subset(self, project):
        snapshot = project.snapshots.create_snapshot()
        project.write("src/app.ts", "edited")
        project.write("src/screens/home.tsx", "edited")

        restore_snapshot(snapshot, project.zones, SnapshotOptions(subset_paths=["/ui/app.ts"]))
        assert project.read("src/app.ts") == "export const app = 1;\n"
        assert project.read("src/screens/home.tsx") == "edited"

    def test_restore_binary_exact(self, project):
        blob = b"\x89PNG\r\n\x1a\n\x00\x01"
        project.write("src/logo.png", blob)
        snapshot = project.snapshots.create_snapshot()
        project.write("src/logo.png", b"gone")
        project.snapshots.restore_snapshot(snapshot)
        assert (project.project_root / "src" / "logo.png").read_bytes() == blob


class TestBaseline:
    """Baseline capture."""

    def test_capture_baseline(self, project):
        metadata = project.snapshots.capture_baseline(project.state, git_head="deadbeef")
        assert project.state.load_baseline_metadata() == metadata
        assert project.state.load_baseline_history()[0].git_head == "deadbeef"
        stored = project.state.load_baseline_snapshot(metadata.baseline_id)
        assert "/ui/app.ts" in stored.files
