"""
Core Host - Zone Manager

Classifies any path into a named zone and a virtual path, and enforces who
may write where.

Zones:
- platform: application code and configuration (ui, screens, packs,
  core-host, instructions). Writable by the self-modification agent, or by a
  user-confirmed system operation that overrides the guard.
- user: user-owned data (workspace, user). Writable by every agent except
  the read-only explore agent.

Paths outside every zone are distrusted: only a user-confirmed,
guard-overriding self-modification may touch them.

The zone table is built once from the project root and the application home
and never changes afterwards.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .models import (
    GuardContext,
    GuardResult,
    PathClassification,
    ResolveResult,
    Zone,
    ZoneKind,
)
from .path_utils import (
    ensure_within_root,
    join_root,
    normalize_absolute_path,
    relative_to_root,
    to_posix,
)

logger = logging.getLogger(__name__)

SELF_MOD_AGENT = "self_mod"
EXPLORE_AGENT = "explore"

PLATFORM_GUARD_REASON = (
    "Platform zones may only be modified by the Self-Modification agent "
    "(or user-confirmed system operations)."
)
USER_GUARD_REASON = "Explore agent is read-only and may not write to user zones."
UNKNOWN_GUARD_REASON = (
    "Path is outside all known zones. Refuse to modify it unless explicitly "
    "routed through a user-confirmed system operation."
)


class ZoneDefinition:
    """Configured zone before its roots are anchored to real directories.

    ``base`` is ``"project"`` or ``"home"``; ``relative_root`` is resolved
    against the project root or the application home respectively.
    """

    def __init__(
        self,
        name: str,
        kind: Union[ZoneKind, str],
        virtual_root: str,
        base: str,
        relative_root: str,
        description: str = "",
    ):
        if base not in ("project", "home"):
            raise ValueError(f"Zone base must be 'project' or 'home', got: {base}")
        if not virtual_root.startswith("/"):
            raise ValueError(f"Virtual root must start with '/': {virtual_root}")
        self.name = name
        self.kind = ZoneKind(kind)
        self.virtual_root = virtual_root.rstrip("/")
        self.base = base
        self.relative_root = relative_root
        self.description = description

    def build(self, project_root: str, app_home: str) -> Zone:
        anchor = project_root if self.base == "project" else app_home
        return Zone(
            name=self.name,
            kind=self.kind,
            description=self.description,
            virtual_root=self.virtual_root,
            roots=[join_root(anchor, self.relative_root)],
        )


DEFAULT_ZONE_DEFINITIONS: Tuple[ZoneDefinition, ...] = (
    ZoneDefinition("ui", ZoneKind.PLATFORM, "/ui", "project", "src",
                   "Renderer UI and shared frontend logic."),
    ZoneDefinition("screens", ZoneKind.PLATFORM, "/screens", "project", "src/screens",
                   "Right-panel screens and screen host wiring."),
    ZoneDefinition("packs", ZoneKind.PLATFORM, "/packs", "home", "packs",
                   "Pack bundles, manifests, and pack state."),
    ZoneDefinition("core-host", ZoneKind.PLATFORM, "/core-host", "project", "electron/local-host",
                   "Local host, tool runner, and safety rails."),
    ZoneDefinition("instructions", ZoneKind.PLATFORM, "/instructions", "project", "instructions",
                   "Folder-local instruction files and platform rules."),
    ZoneDefinition("workspace", ZoneKind.USER, "/workspace", "home", "workspace",
                   "User workspace outputs and artifacts."),
    ZoneDefinition("user", ZoneKind.USER, "/user", "home", "user",
                   "User-owned data and artifacts."),
)


class ZoneManager:
    """
    Pure classification and write-policy function over an immutable zone table.
    """

    def __init__(
        self,
        project_root: Union[str, Path],
        app_home: Union[str, Path],
        definitions: Optional[Sequence[ZoneDefinition]] = None,
    ):
        self.project_root = normalize_absolute_path(project_root)
        self.app_home = normalize_absolute_path(app_home)
        if definitions is None:
            definitions = DEFAULT_ZONE_DEFINITIONS
        zones = [d.build(self.project_root, self.app_home) for d in definitions]
        names = [z.name for z in zones]
        if len(set(names)) != len(names):
            raise ValueError(f"Zone names must be unique: {names}")
        self._zones: Tuple[Zone, ...] = tuple(zones)
        self._by_virtual_root: Dict[str, Zone] = {z.virtual_root: z for z in zones}

    # =========================================================================
    # Zone Table
    # =========================================================================

    def get_zones(self) -> List[Zone]:
        return list(self._zones)

    def get_platform_zones(self) -> List[Zone]:
        return [z for z in self._zones if z.kind == ZoneKind.PLATFORM]

    def get_user_zones(self) -> List[Zone]:
        return [z for z in self._zones if z.kind == ZoneKind.USER]

    def get_zone(self, name: str) -> Optional[Zone]:
        for zone in self._zones:
            if zone.name == name:
                return zone
        return None

    def get_zone_roots(self) -> Dict[str, List[str]]:
        return {zone.name: list(zone.roots) for zone in self._zones}

    # =========================================================================
    # Classification
    # =========================================================================

    def _pick_best_zone(self, absolute_path: str) -> Optional[Tuple[Zone, str]]:
        matches: List[Tuple[Zone, str]] = []
        for zone in self._zones:
            for root in zone.roots:
                if ensure_within_root(root, absolute_path):
                    matches.append((zone, root))
        if not matches:
            return None
        # Longest root wins; ties keep table order.
        return max(matches, key=lambda match: len(match[1]))

    def _virtual_to_absolute(self, virtual_path: str) -> Optional[Tuple[Zone, str]]:
        segments = [s for s in to_posix(virtual_path).split("/") if s]
        if not segments:
            return None
        zone = self._by_virtual_root.get(f"/{segments[0]}")
        if zone is None:
            return None
        return zone, join_root(zone.roots[0], "/".join(segments[1:]))

    def _classify_absolute(self, absolute_path: str) -> PathClassification:
        normalized = normalize_absolute_path(absolute_path)
        best = self._pick_best_zone(normalized)
        if best is None:
            zone_relative = to_posix(normalized)
            return PathClassification(
                absolute_path=normalized,
                zone=None,
                zone_relative_path=zone_relative,
                virtual_path=normalized,
                project_relative_path=(
                    relative_to_root(self.project_root, normalized)
                    if ensure_within_root(self.project_root, normalized)
                    else zone_relative
                ),
            )

        zone, root = best
        zone_relative = relative_to_root(root, normalized)
        virtual_path = f"{zone.virtual_root}/{zone_relative}" if zone_relative else zone.virtual_root
        project_relative = (
            relative_to_root(self.project_root, normalized)
            if ensure_within_root(self.project_root, normalized)
            else zone_relative
        )
        return PathClassification(
            absolute_path=normalized,
            zone=zone,
            zone_relative_path=zone_relative,
            virtual_path=virtual_path,
            project_relative_path=project_relative,
        )

    def resolve_path(self, input_path: Union[str, Path, None]) -> ResolveResult:
        """
        Resolve a virtual path, absolute path or project-relative path.

        A leading ``/`` whose first segment names a zone's virtual root is
        treated as virtual; anything else falls through to ordinary
        resolution against the project root.
        """
        trimmed = str(input_path if input_path is not None else "").strip()
        if not trimmed:
            return ResolveResult(ok=False, error="Path is required.")

        if trimmed.startswith("/"):
            virtual = self._virtual_to_absolute(trimmed)
            if virtual is not None:
                zone, absolute = virtual
                return ResolveResult(ok=True, path=absolute, zone=zone, virtual_path=trimmed)

        if os.path.isabs(trimmed):
            absolute = normalize_absolute_path(trimmed)
        else:
            absolute = normalize_absolute_path(os.path.join(self.project_root, trimmed))
        classification = self._classify_absolute(absolute)
        return ResolveResult(
            ok=True,
            path=classification.absolute_path,
            zone=classification.zone,
            virtual_path=classification.virtual_path,
        )

    def classify_path(self, input_path: Union[str, Path]) -> PathClassification:
        """Best-effort classification; always succeeds (zone may be None)."""
        resolved = self.resolve_path(input_path)
        if not resolved.ok or resolved.path is None:
            return self._classify_absolute(str(input_path) or self.project_root)
        return self._classify_absolute(resolved.path)

    # =========================================================================
    # Write Guard
    # =========================================================================

    def enforce_guard(self, input_path: Union[str, Path], context: GuardContext) -> GuardResult:
        """Decide whether an agent action may write to ``input_path``."""
        classification = self.classify_path(input_path)
        zone = classification.zone

        if zone is None:
            allowed = (
                context.agent_type == SELF_MOD_AGENT
                and context.override_guard
                and context.user_confirmed
            )
            reason = None if allowed else UNKNOWN_GUARD_REASON
        elif zone.kind == ZoneKind.PLATFORM:
            allowed = context.agent_type == SELF_MOD_AGENT or (
                context.override_guard and context.user_confirmed
            )
            reason = None if allowed else f"{PLATFORM_GUARD_REASON} Blocked zone: {zone.virtual_root}."
        else:
            allowed = context.agent_type != EXPLORE_AGENT
            reason = None if allowed else USER_GUARD_REASON

        if not allowed:
            logger.debug(f"[ZoneManager] Guard denied {context.agent_type} -> {classification.virtual_path}")
        return GuardResult(ok=allowed, reason=reason, classification=classification)
