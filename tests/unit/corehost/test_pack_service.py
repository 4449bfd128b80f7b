"""
Tests for the pack pipeline.

Covers:
  - Publish input validation, security review gate and signed bundle output
  - Install verification, transactional apply and rollback on failure
  - Bundle caching after verification
  - Uninstall via the saved pre-install snapshot
  - Safe-mode disabling
"""

from corehost.models import (
    InstallInput,
    InstallStatus,
    PublishInput,
    UninstallInput,
    ValidationStatus,
)
from corehost.pack_service import PACK_DIFF_LIMIT, is_semver_like, sanitize_pack_id, truncate_diff, verify_bundle
from tests.helpers.fixtures import build_signed_bundle, make_entry


APPROVED = {"status": "approved", "summary": "Looks fine.", "findings": []}


def _completed_change_set(ctx, writes):
    """Run a ChangeSet through the fake manager and return its id."""
    ctx.change_sets.ensure_baseline()
    handle = ctx.change_sets.start_change_set(scope="test", agent_type="self_mod")
    for relative, content in writes.items():
        ctx.write(relative, content)
    finish = ctx.change_sets.finish_change_set(title="t", summary="s")
    assert finish.ok
    return handle.id


def _store_bundle(ctx, bundle):
    manifest = bundle["manifest"]
    ctx.state.write_json(ctx.state.bundle_path(manifest["packId"], manifest["version"]), bundle)


def _install(ctx, pack_id="test-pack", version="1.0.0", confirmed=True, **kwargs):
    return ctx.packs.install_pack(InstallInput(
        pack_id=pack_id, version=version, user_confirmed=confirmed, **kwargs
    ))


class TestHelpers:
    """Pure helpers."""

    def test_semver(self):
        assert is_semver_like("1.2.3")
        assert is_semver_like("1.2.3-beta.1")
        assert not is_semver_like("1.2")
        assert not is_semver_like("v1.2.3")

    def test_sanitize_pack_id(self):
        assert sanitize_pack_id("  My Cool Pack!! ") == "my-cool-pack"
        assert sanitize_pack_id("!!!").startswith("pack-")

    def test_truncate_diff(self):
        assert truncate_diff("abc") == ("abc", False)
        value, truncated = truncate_diff("x" * (PACK_DIFF_LIMIT + 1))
        assert truncated is True
        assert value.endswith("... (diff truncated)")


class TestPublish:
    """Publishing completed ChangeSets."""

    def test_input_validated_before_io(self, project):
        result = project.packs.publish_pack(PublishInput(name="", version="1.0.0", change_set_ids=["x"]))
        assert result.reason == "Pack name is required."
        result = project.packs.publish_pack(PublishInput(name="n", version="one", change_set_ids=["x"]))
        assert result.reason == "Version must be semver-like (e.g., 1.2.3)."
        result = project.packs.publish_pack(PublishInput(name="n", version="1.0.0"))
        assert result.reason == "At least one ChangeSet is required to publish a pack."
        assert project.transport.calls == []
        assert project.state.load_baseline_metadata() is None

    def test_unknown_change_set(self, project):
        result = project.packs.publish_pack(PublishInput(name="n", version="1.0.0", change_set_ids=["nope"]))
        assert result.ok is False
        assert result.reason == "ChangeSet not found: nope"

    def test_publish_happy_path(self, project):
        change_set_id = _completed_change_set(project, {
            "src/app.ts": "export const app = 2;\n",
            "src/screens/settings.tsx": "export default 1;\n",
        })
        project.transport.on("packs.securityReviewBundle", APPROVED)
        project.transport.on("packs.publishVersion", {"ok": True})

        result = project.packs.publish_pack(PublishInput(
            name="Dark Theme", version="1.0.0", change_set_ids=[change_set_id], conversation_id="conv-1",
        ))

        assert result.ok, result.reason
        assert result.pack_id == "dark-theme"
        bundle = project.state.read_json(project.state.bundle_path("dark-theme", "1.0.0"))
        assert verify_bundle(bundle).ok
        manifest = bundle["manifest"]
        assert manifest["changedPaths"] == ["/screens/settings.tsx", "/ui/app.ts"]
        assert manifest["zones"] == ["screens", "ui"]
        assert manifest["baselineGitHead"] == "abc123"
        assert [e["action"] for e in bundle["entries"]] == ["add", "update"]
        assert project.validations.ran == ["lint", "build"]

        published = project.transport.calls_to("packs.publishVersion")[0]
        assert published["bundleHash"] == manifest["bundleHash"]
        assert project.transport.calls_to("events.appendEvent")[0]["type"] == "pack_publish_completed"

    def test_review_unavailable_blocks(self, project):
        change_set_id = _completed_change_set(project, {"src/app.ts": "x"})
        project.transport.fail("packs.securityReviewBundle")

        result = project.packs.publish_pack(PublishInput(name="p", version="1.0.0", change_set_ids=[change_set_id]))

        assert result.ok is False
        assert result.security_review.status.value == "needs_changes"
        assert project.transport.calls_to("packs.publishVersion") == []

    def test_rejected_review_blocks(self, project):
        change_set_id = _completed_change_set(project, {"src/app.ts": "x"})
        project.transport.on("packs.securityReviewBundle", {"status": "rejected", "summary": "bad"})
        result = project.packs.publish_pack(PublishInput(name="p", version="1.0.0", change_set_ids=[change_set_id]))
        assert result.ok is False
        assert "rejected" in result.reason

    def test_failed_validations_block(self, project):
        change_set_id = _completed_change_set(project, {"src/app.ts": "x"})
        project.validations.set_outcome("lint", ValidationStatus.FAILED)
        result = project.packs.publish_pack(PublishInput(name="p", version="1.0.0", change_set_ids=[change_set_id]))
        assert result.ok is False
        assert result.reason == "Validations failed: lint"
        assert project.transport.calls_to("packs.securityReviewBundle") == []

    def test_registry_rejection(self, project):
        change_set_id = _completed_change_set(project, {"src/app.ts": "x"})
        project.transport.on("packs.securityReviewBundle", APPROVED)
        project.transport.on("packs.publishVersion", {"ok": False, "reason": "Version exists."})
        result = project.packs.publish_pack(PublishInput(name="p", version="1.0.0", change_set_ids=[change_set_id]))
        assert result.ok is False
        assert result.reason == "Version exists."

    def test_deleted_file_becomes_delete_entry(self, project):
        project.change_sets.ensure_baseline()
        project.change_sets.start_change_set(scope="test", agent_type="self_mod")
        (project.project_root / "src" / "app.ts").unlink()
        change_set_id = project.change_sets.finish_change_set(title="t", summary="s").change_set.id
        project.transport.on("packs.securityReviewBundle", APPROVED)
        project.transport.on("packs.publishVersion", {"ok": True})

        result = project.packs.publish_pack(PublishInput(name="p", version="1.0.0", change_set_ids=[change_set_id]))
        bundle = project.state.read_json(project.state.bundle_path(result.pack_id, "1.0.0"))
        assert bundle["entries"] == [{
            "virtualPath": "/ui/app.ts", "zone": "ui", "projectRelativePath": "src/app.ts", "action": "delete",
        }]


class TestInstall:
    """Installing signed bundles."""

    def test_requires_confirmation(self, project):
        result = _install(project, confirmed=False)
        assert result.reason == "Pack installation requires explicit user confirmation."

    def test_bundle_not_found(self, project):
        result = _install(project)
        assert result.ok is False
        assert result.reason

    def test_happy_path_from_backend(self, project):
        bundle = build_signed_bundle([
            make_entry("/ui/app.ts", "ui", "export const app = 42;\n"),
            make_entry("/screens/new.tsx", "screens", "new", action="add"),
        ])
        project.transport.on("packs.getBundleForInstall", {"ok": True, "bundle": bundle})

        result = _install(project, conversation_id="conv")

        assert result.ok, result.reason
        assert project.read("src/app.ts") == "export const app = 42;\n"
        assert project.read("src/screens/new.tsx") == "new"
        assert project.state.bundle_path("test-pack", "1.0.0").exists()

        [installation] = project.packs.list_installations()
        assert installation.install_id == result.install_id
        assert installation.status == InstallStatus.INSTALLED
        assert project.state.load_pack_uninstall_snapshot(result.install_id) is not None
        assert project.transport.calls_to("packs.recordInstallation")[0]["status"] == "installed"
        assert project.change_sets.started[-1]["scope"] == "pack_install"
        assert project.validations.ran == ["smoke_build"]

    def test_tampered_bundle_refused(self, project):
        before = project.tree()
        bundle = build_signed_bundle([make_entry("/ui/app.ts", "ui", "evil")])
        bundle["entries"][0]["content"] = "more evil"
        _store_bundle(project, bundle)

        result = _install(project)

        assert result.ok is False
        assert result.reason == "Pack signature verification failed."
        assert project.tree() == before
        assert project.change_sets.started == []

    def test_failure_on_third_entry_rolls_back(self, project):
        before = project.tree()
        bundle = build_signed_bundle([
            make_entry("/ui/app.ts", "ui", "changed"),
            make_entry("/screens/new.tsx", "screens", "new", action="add"),
            make_entry("/ui/broken.ts", "ui"),
            make_entry("/ui/four.ts", "ui", "4"),
            make_entry("/ui/five.ts", "ui", "5"),
        ])
        _store_bundle(project, bundle)

        result = _install(project)

        assert result.ok is False
        assert "after 2 changes" in result.reason
        assert "/ui/broken.ts" in result.reason
        assert project.tree() == before
        assert project.packs.list_installations() == []

    def test_unzoned_entry_denied(self, project):
        before = project.tree()
        outside = str(project.base / "outside.txt")
        _store_bundle(project, build_signed_bundle([make_entry(outside, "ui", "x")]))

        result = _install(project)

        assert result.ok is False
        assert "after 0 changes" in result.reason
        assert not (project.base / "outside.txt").exists()
        assert project.tree() == before

    def test_smoke_failure_rolls_back(self, project):
        before = project.tree()
        _store_bundle(project, build_signed_bundle([make_entry("/ui/app.ts", "ui", "changed")]))
        project.validations.set_outcome("smoke_build", ValidationStatus.FAILED)

        result = _install(project)

        assert result.ok is False
        assert result.reason == "Validations failed: smoke_build"
        assert project.tree() == before

    def test_reinstall_replaces_record(self, project):
        _store_bundle(project, build_signed_bundle([make_entry("/ui/app.ts", "ui", "v1")]))
        first = _install(project)
        second = _install(project)
        assert first.ok and second.ok
        assert [i.install_id for i in project.packs.list_installations()] == [second.install_id]


class TestBundleCache:
    """Bundles are cached only after they verify."""

    def test_rejected_backend_bundle_not_cached(self, project):
        good = build_signed_bundle([make_entry("/ui/app.ts", "ui", "export const app = 2;\n")])
        tampered = build_signed_bundle([make_entry("/ui/app.ts", "ui", "evil")])
        tampered["entries"][0]["content"] = "more evil"
        project.transport.on("packs.getBundleForInstall", {"ok": True, "bundle": tampered})

        first = _install(project)

        assert first.ok is False
        assert first.reason == "Pack signature verification failed."
        assert not project.state.bundle_path("test-pack", "1.0.0").exists()

        project.transport.on("packs.getBundleForInstall", {"ok": True, "bundle": good})
        second = _install(project)

        assert second.ok, second.reason
        assert project.read("src/app.ts") == "export const app = 2;\n"
        assert len(project.transport.calls_to("packs.getBundleForInstall")) == 2
        assert project.state.read_json(project.state.bundle_path("test-pack", "1.0.0")) == good

    def test_bad_local_bundle_falls_back_to_backend(self, project):
        good = build_signed_bundle([make_entry("/ui/app.ts", "ui", "export const app = 3;\n")])
        stale = build_signed_bundle([make_entry("/ui/app.ts", "ui", "old")])
        stale["entries"][0]["content"] = "corrupted"
        _store_bundle(project, stale)
        project.transport.on("packs.getBundleForInstall", {"ok": True, "bundle": good})

        result = _install(project)

        assert result.ok, result.reason
        assert project.read("src/app.ts") == "export const app = 3;\n"
        assert project.state.read_json(project.state.bundle_path("test-pack", "1.0.0")) == good

    def test_good_local_bundle_skips_backend(self, project):
        _store_bundle(project, build_signed_bundle([make_entry("/ui/app.ts", "ui", "local")]))

        assert _install(project).ok
        assert project.transport.calls_to("packs.getBundleForInstall") == []

    def test_pack_id_with_path_segments_refused(self, project):
        before = sorted(project.base.rglob("*.bundle.json"))
        project.transport.on(
            "packs.getBundleForInstall",
            {"ok": True, "bundle": build_signed_bundle([make_entry("/ui/app.ts", "ui", "x")], pack_id="../../x")},
        )

        result = _install(project, pack_id="../../x")

        assert result.ok is False
        assert "Invalid bundle location" in result.reason
        assert sorted(project.base.rglob("*.bundle.json")) == before
        assert not any(project.base.rglob("x"))
        assert project.change_sets.started == []


class TestUninstall:
    """Uninstalling restores the pre-install state."""

    def test_requires_confirmation(self, project):
        result = project.packs.uninstall_pack(UninstallInput(pack_id="test-pack"))
        assert result.reason == "Pack uninstall requires explicit user confirmation."

    def test_not_installed(self, project):
        result = project.packs.uninstall_pack(UninstallInput(pack_id="ghost", user_confirmed=True))
        assert result.ok is False
        assert result.reason == "Pack is not installed: ghost"

    def test_round_trip(self, project):
        before = project.tree()
        _store_bundle(project, build_signed_bundle([
            make_entry("/ui/app.ts", "ui", "changed"),
            make_entry("/ui/added.ts", "ui", "added", action="add"),
        ]))
        installed = _install(project)
        assert installed.ok
        assert project.tree() != before

        result = project.packs.uninstall_pack(UninstallInput(pack_id="test-pack", user_confirmed=True))

        assert result.ok, result.reason
        assert project.tree() == before
        assert project.packs.find_installation("test-pack").status == InstallStatus.UNINSTALLED

        again = project.packs.uninstall_pack(UninstallInput(pack_id="test-pack", user_confirmed=True))
        assert again.ok
        assert again.install_id == installed.install_id

    def test_missing_snapshot(self, project):
        _store_bundle(project, build_signed_bundle([make_entry("/ui/app.ts", "ui", "changed")]))
        installed = _install(project)
        project.state.pack_uninstall_snapshot_path(installed.install_id).unlink()

        result = project.packs.uninstall_pack(UninstallInput(pack_id="test-pack", user_confirmed=True))

        assert result.ok is False
        assert result.reason == "Uninstall snapshot missing; cannot safely uninstall."
        assert project.read("src/app.ts") == "changed"

    def test_finish_failure_keeps_installed_state(self, project):
        _store_bundle(project, build_signed_bundle([make_entry("/ui/app.ts", "ui", "changed")]))
        assert _install(project).ok
        project.validations.set_outcome("smoke_build", ValidationStatus.FAILED)

        result = project.packs.uninstall_pack(UninstallInput(pack_id="test-pack", user_confirmed=True))

        assert result.ok is False
        assert project.read("src/app.ts") == "changed"
        assert project.packs.find_installation("test-pack").status == InstallStatus.INSTALLED


class TestSafeModeDisable:
    """disable_all_for_safe_mode."""

    def test_disables_installed_only(self, project):
        _store_bundle(project, build_signed_bundle([make_entry("/ui/app.ts", "ui", "x")]))
        assert _install(project).ok
        _store_bundle(project, build_signed_bundle([make_entry("/ui/other.ts", "ui", "y")], pack_id="other"))
        assert _install(project, pack_id="other").ok
        project.packs.uninstall_pack(UninstallInput(pack_id="other", user_confirmed=True))

        disabled = project.packs.disable_all_for_safe_mode("boot failed")

        assert disabled == ["test-pack"]
        by_id = {i.pack_id: i for i in project.packs.list_installations()}
        assert by_id["test-pack"].status == InstallStatus.DISABLED_SAFE_MODE
        assert by_id["test-pack"].last_error == "boot failed"
        assert by_id["other"].status == InstallStatus.UNINSTALLED
        assert project.read("src/app.ts") == "x"
        assert project.transport.calls_to("packs.safeModeDisabled")[0]["packIds"] == ["test-pack"]

    def test_nothing_installed(self, project):
        assert project.packs.disable_all_for_safe_mode("x") == []
