"""
Core Host configuration loader.

Loads configuration from <app_home>/corehost.yaml with fallback defaults.
The config file controls the zone table, snapshot walking, validation
commands and the backend connection.

Priority for every value:
1. Explicit arguments to load_config()
2. COREHOST_* environment variables
3. corehost.yaml
4. Defaults
"""

import logging
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from .snapshots import DEFAULT_IGNORED_DIRS, DEFAULT_MAX_WORKERS
from .zones import DEFAULT_ZONE_DEFINITIONS, ZoneDefinition

logger = logging.getLogger(__name__)

# Default paths
DEFAULT_APP_HOME = Path.home() / ".corehost"
DEFAULT_CONFIG_FILENAME = "corehost.yaml"


@dataclass
class CommandConfig:
    """A validation command and its timeout."""
    command: str
    timeout_ms: int


@dataclass
class CoreHostConfig:
    """Complete configuration for a Core Host process."""

    project_root: Path = field(default_factory=Path.cwd)
    app_home: Path = DEFAULT_APP_HOME
    device_id: str = ""

    # Backend bridge (no URL means offline)
    backend_url: Optional[str] = None
    backend_token: Optional[str] = None
    backend_timeout: float = 30.0

    # Zone table
    zones: List[ZoneDefinition] = field(default_factory=lambda: list(DEFAULT_ZONE_DEFINITIONS))

    # Snapshot walking
    ignored_dirs: List[str] = field(default_factory=lambda: sorted(DEFAULT_IGNORED_DIRS))
    snapshot_workers: int = DEFAULT_MAX_WORKERS

    # Validation commands
    lint: CommandConfig = field(default_factory=lambda: CommandConfig("npm run lint", 240_000))
    build: CommandConfig = field(default_factory=lambda: CommandConfig("npm run build", 300_000))
    smoke: CommandConfig = field(default_factory=lambda: CommandConfig("npm run build", 180_000))

    config_path: Optional[Path] = None

    @property
    def state_root(self) -> Path:
        return self.app_home / "state"

    @property
    def packs_root(self) -> Path:
        return self.app_home / "packs"


def _parse_zones(raw_zones: Any) -> Optional[List[ZoneDefinition]]:
    """Parse the optional `zones:` list. Returns None to keep defaults."""
    if raw_zones is None:
        return None
    if not isinstance(raw_zones, list):
        logger.warning("Config 'zones' must be a list, using default zones")
        return None

    zones: List[ZoneDefinition] = []
    for item in raw_zones:
        if not isinstance(item, dict):
            logger.warning(f"Ignoring malformed zone entry: {item!r}")
            continue
        try:
            zones.append(
                ZoneDefinition(
                    name=str(item["name"]),
                    kind=item.get("kind", "platform"),
                    virtual_root=str(item.get("virtual_root", f"/{item['name']}")),
                    base=str(item.get("base", "project")),
                    relative_root=str(item.get("root", item["name"])),
                    description=str(item.get("description", "")),
                )
            )
        except (KeyError, ValueError) as e:
            logger.warning(f"Ignoring invalid zone entry {item!r}: {e}")
    return zones or None


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Optional mapping section; anything else is logged and ignored."""
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        logger.warning(f"Config '{name}' must be a mapping, ignoring it")
        return {}
    return value


def _parse_number(value: Any, default: Any, convert: Callable[[Any], Any], label: str) -> Any:
    try:
        return convert(value)
    except (TypeError, ValueError):
        logger.warning(f"Config '{label}' is not a number ({value!r}), using {default}")
        return default


def _parse_command(raw: Any, default: CommandConfig, name: str = "command") -> CommandConfig:
    if isinstance(raw, str):
        return CommandConfig(raw, default.timeout_ms)
    if raw is None:
        return default
    if not isinstance(raw, dict):
        logger.warning(f"Ignoring malformed '{name}' validation config: {raw!r}")
        return default
    return CommandConfig(
        command=str(raw.get("command", default.command)),
        timeout_ms=_parse_number(
            raw.get("timeout_ms", default.timeout_ms), default.timeout_ms, int, f"{name}.timeout_ms"
        ),
    )


def _load_yaml(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        logger.debug(f"No config at {config_path}, using defaults")
        return {}
    try:
        with open(config_path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Failed to load config from {config_path}: {e}")
        return {}
    if isinstance(loaded, dict):
        logger.info(f"Loaded config from {config_path}")
        return loaded
    if loaded is not None:
        logger.warning(f"Config at {config_path} is not a mapping, using defaults")
    return {}


def load_config(
    project_root: Optional[Path] = None,
    app_home: Optional[Path] = None,
    config_path: Optional[Path] = None,
) -> CoreHostConfig:
    """
    Load Core Host configuration.

    Returns CoreHostConfig with resolved paths and merged defaults.
    """
    if app_home is None:
        app_home = Path(os.environ.get("COREHOST_HOME", DEFAULT_APP_HOME))
    app_home = Path(app_home).expanduser().resolve()

    if config_path is None:
        config_path = app_home / DEFAULT_CONFIG_FILENAME
    raw = _load_yaml(Path(config_path))

    if project_root is None:
        project_root = Path(
            os.environ.get("COREHOST_PROJECT_ROOT") or raw.get("project_root") or Path.cwd()
        )
    project_root = Path(project_root).expanduser().resolve()

    backend = _section(raw, "backend")
    snapshots = _section(raw, "snapshots")
    validations = _section(raw, "validations")

    config = CoreHostConfig(
        project_root=project_root,
        app_home=app_home,
        device_id=(
            os.environ.get("COREHOST_DEVICE_ID")
            or str(raw.get("device_id") or "")
            or socket.gethostname()
        ),
        backend_url=os.environ.get("COREHOST_BACKEND_URL") or backend.get("url"),
        backend_token=os.environ.get("COREHOST_BACKEND_TOKEN") or backend.get("token"),
        backend_timeout=_parse_number(backend.get("timeout", 30.0), 30.0, float, "backend.timeout"),
        config_path=Path(config_path),
    )

    zones = _parse_zones(raw.get("zones"))
    if zones is not None:
        config.zones = zones

    ignored = snapshots.get("ignored_dirs")
    if isinstance(ignored, list):
        config.ignored_dirs = [str(name) for name in ignored]
    if "workers" in snapshots:
        config.snapshot_workers = max(
            1, _parse_number(snapshots["workers"], config.snapshot_workers, int, "snapshots.workers")
        )

    config.lint = _parse_command(validations.get("lint"), config.lint, "lint")
    config.build = _parse_command(validations.get("build"), config.build, "build")
    config.smoke = _parse_command(validations.get("smoke"), config.smoke, "smoke")

    return config
