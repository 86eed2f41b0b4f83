from __future__ import annotations

from pathlib import Path

import pytest

from shipyard.cli.context import CLIContext
from shipyard.core.config import Config
from shipyard.output.console import MockConsole


@pytest.fixture
def project(tmp_path: Path) -> Path:
    (tmp_path / "jormungandr").mkdir()
    (tmp_path / "jormungandr" / "Cargo.toml").write_text(
        '[package]\nname = "jormungandr"\nversion = "0.9.0"\n', encoding="utf-8"
    )
    (tmp_path / "Cargo.lock").write_text(
        '[[package]]\nname = "jormungandr"\nversion = "0.9.0"\n', encoding="utf-8"
    )
    return tmp_path


@pytest.fixture
def cli_context(project: Path) -> CLIContext:
    return CLIContext(
        root=project,
        config_path=project / "shipyard.toml",
        config=Config(),
        console=MockConsole(),
    )
