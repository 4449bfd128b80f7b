"""
Core Host - Main Entry Point

The CoreHost facade owns every self-modification component for one
project/app-home pair: zones, instruction policies, snapshots, signing
state, validations and the pack, update and safe-mode pipelines.

Usage:
    from corehost import CoreHost, load_config

    host = CoreHost(load_config(), change_set_manager=manager)

    # Boot health
    check = host.safe_mode.run_startup_checks()
    if check.needs_revert:
        host.safe_mode.perform_revert()

    # Packs
    host.packs.install_pack(InstallInput(pack_id="dark-theme", version="1.0.0", user_confirmed=True))
"""

from typing import Optional

from .backend import (
    BackendClient,
    BackendError,
    BackendResult,
    BackendTransport,
    HttpBackendTransport,
)
from .changesets import ChangeSetManager
from .config import CommandConfig, CoreHostConfig, load_config
from .git import GitHelper
from .instructions import InstructionManager
from .models import (
    ApplyUpdateInput,
    ApplyUpdateResult,
    DeviceKeyPair,
    GuardContext,
    GuardResult,
    InstallInput,
    InstallResult,
    Installation,
    PackBundle,
    PathClassification,
    PublishInput,
    PublishResult,
    RevertResult,
    Snapshot,
    SnapshotOptions,
    StartupCheckResult,
    UninstallInput,
    UninstallResult,
    UpdateCheckResult,
    Zone,
    ZoneKind,
)
from .pack_service import PackApplyError, PackService, verify_bundle
from .safe_mode import SafeModeManager
from .signing import SigningError, ensure_signing_keys, hash_canonical_json, sign_hash, verify_signature
from .snapshots import SnapshotEngine, diff_snapshots
from .state_store import CoreHostError, StateStore, StateStoreError
from .update_service import UpdateApplyError, UpdateService, is_conflict
from .validations import ValidationRunner
from .zones import ZoneManager


__all__ = [
    # Main facade
    "CoreHost",

    # Config
    "CoreHostConfig",
    "CommandConfig",
    "load_config",

    # Components
    "ZoneManager",
    "InstructionManager",
    "StateStore",
    "SnapshotEngine",
    "ValidationRunner",
    "GitHelper",
    "BackendClient",
    "BackendTransport",
    "BackendResult",
    "HttpBackendTransport",
    "ChangeSetManager",

    # Services
    "PackService",
    "UpdateService",
    "SafeModeManager",

    # Functions
    "diff_snapshots",
    "ensure_signing_keys",
    "hash_canonical_json",
    "sign_hash",
    "verify_signature",
    "verify_bundle",
    "is_conflict",

    # Models
    "Zone",
    "ZoneKind",
    "PathClassification",
    "GuardContext",
    "GuardResult",
    "Snapshot",
    "SnapshotOptions",
    "DeviceKeyPair",
    "PackBundle",
    "Installation",
    "PublishInput",
    "PublishResult",
    "InstallInput",
    "InstallResult",
    "UninstallInput",
    "UninstallResult",
    "UpdateCheckResult",
    "ApplyUpdateInput",
    "ApplyUpdateResult",
    "StartupCheckResult",
    "RevertResult",

    # Errors
    "CoreHostError",
    "StateStoreError",
    "SigningError",
    "BackendError",
    "PackApplyError",
    "UpdateApplyError",
]


class CoreHost:
    """
    Main facade for Core Host.

    Components are built once from the config and shared by the services.
    The pipelines need a ChangeSet manager; without one only the read-only
    components (zones, instructions, snapshots, state) are usable.
    """

    def __init__(
        self,
        config: Optional[CoreHostConfig] = None,
        change_set_manager: Optional[ChangeSetManager] = None,
        transport: Optional[BackendTransport] = None,
    ):
        """
        Initialize the host.

        Args:
            config: Loaded configuration. Defaults to load_config().
            change_set_manager: ChangeSet lifecycle implementation.
            transport: Backend transport. Defaults to an HTTP transport when
                       the config names a backend URL, else offline.
        """
        self.config = config or load_config()
        project_root = str(self.config.project_root)

        self.zones = ZoneManager(project_root, str(self.config.app_home), self.config.zones)
        self.instructions = InstructionManager(self.zones)
        self.state = StateStore(self.config.state_root, self.config.packs_root)
        self.snapshots = SnapshotEngine(
            self.zones,
            ignored_dirs=self.config.ignored_dirs,
            max_workers=self.config.snapshot_workers,
        )
        self.validations = ValidationRunner(
            lint=self.config.lint,
            build=self.config.build,
            smoke=self.config.smoke,
        )
        self.git = GitHelper()

        if transport is None and self.config.backend_url:
            transport = HttpBackendTransport(
                self.config.backend_url,
                token=self.config.backend_token,
                timeout=self.config.backend_timeout,
            )
        self.backend = BackendClient(transport)

        self.change_set_manager = change_set_manager
        self._packs: Optional[PackService] = None
        self._updates: Optional[UpdateService] = None
        self._safe_mode: Optional[SafeModeManager] = None

    # =========================================================================
    # Services
    # =========================================================================

    def _require_change_sets(self) -> ChangeSetManager:
        if self.change_set_manager is None:
            raise CoreHostError("No ChangeSet manager configured.")
        return self.change_set_manager

    @property
    def packs(self) -> PackService:
        if self._packs is None:
            self._packs = PackService(
                self.zones,
                self.instructions,
                self.state,
                self._require_change_sets(),
                self.snapshots,
                self.validations,
                self.git,
                self.backend,
                device_id=self.config.device_id,
            )
        return self._packs

    @property
    def updates(self) -> UpdateService:
        if self._updates is None:
            self._updates = UpdateService(
                self.zones,
                self.instructions,
                self.state,
                self._require_change_sets(),
                self.snapshots,
                self.validations,
                self.backend,
                device_id=self.config.device_id,
            )
        return self._updates

    @property
    def safe_mode(self) -> SafeModeManager:
        if self._safe_mode is None:
            self._safe_mode = SafeModeManager(
                self.state,
                self._require_change_sets(),
                self.packs,
                self.validations,
                self.backend,
                str(self.config.project_root),
            )
        return self._safe_mode

    # =========================================================================
    # Signing
    # =========================================================================

    def signing_keys(self) -> DeviceKeyPair:
        """Load or create this device's signing key pair."""
        self.state.ensure_structure()
        return ensure_signing_keys(self.state)
