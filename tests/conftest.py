"""
Pytest Configuration and Global Fixtures.

This file is automatically loaded by pytest and provides:
- Shared fixtures available to all tests
- Pytest markers configuration
"""

import sys
from pathlib import Path
from typing import Generator

import pytest

# Ensure the repository root is importable for tests.helpers
sys.path.insert(0, str(Path(__file__).parent.parent))


# =============================================================================
# Re-export fixtures from helpers module
# =============================================================================

from tests.helpers.fixtures import (
    # Classes
    FakeBackendTransport,
    FakeChangeSetManager,
    FakeGitHelper,
    FakeValidationRunner,
    HostTestContext,
    # Functions
    build_signed_bundle,
    make_entry,
    read_text,
    snapshot_tree,
    write_file,
)


# =============================================================================
# Pytest Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests spanning several components"
    )


# =============================================================================
# Function-Scoped Fixtures
# =============================================================================

@pytest.fixture
def host(tmp_path: Path) -> Generator[HostTestContext, None, None]:
    """Isolated project + app home with all services and fakes wired up."""
    yield HostTestContext(tmp_path).setup(tmp_path)


@pytest.fixture
def project(host: HostTestContext) -> HostTestContext:
    """Host context seeded with a few platform files."""
    host.write("src/app.ts", "export const app = 1;\n")
    host.write("src/screens/home.tsx", "export default function Home() {}\n")
    host.write("electron/local-host/main.js", "module.exports = {};\n")
    return host
