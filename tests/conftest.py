"""
Shared pytest fixtures and utilities for the romshelf test suite.
"""

from pathlib import Path
from typing import Any, Callable, Dict, List

import pytest
import yaml



@pytest.fixture
def project_root() -> Path:
    """
    Repository root path.
    """
    return Path(__file__).resolve().parent.parent


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[[Dict[str, Any]], Path]:
    """
    Create a minimal config.yaml in a temp directory.

    Usage:
        path = make_config({"runtime": {"offline_mode": True}})
    """

    def _builder(overrides: Dict[str, Any] | None = None) -> Path:
        base = {
            "metadata_api": {
                "client_id": "test-client",
                "client_secret": "test-secret",
            },
            "paths": {
                "roms": [str(tmp_path / "roms")],
                "output": str(tmp_path / "data"),
            },
            "runtime": {"batch_size": 5, "checkpoint_every": 10},
        }
        if overrides:
            base = merge_dicts(base, overrides)

        cfg_path = tmp_path / "config.yaml"
        cfg_path.write_text(yaml.safe_dump(base))
        return cfg_path

    return _builder


@pytest.fixture
def rom_tree(tmp_path: Path) -> Callable[[Dict[str, List[str]]], Path]:
    """
    Build a ROM root with one folder per console.

    Usage:
        root = rom_tree({"nes": ["Contra (USA).nes"]})
    """

    def _builder(layout: Dict[str, List[str]]) -> Path:
        root = tmp_path / "roms"
        for console, files in layout.items():
            console_dir = root / console
            console_dir.mkdir(parents=True, exist_ok=True)
            for name in files:
                (console_dir / name).write_bytes(b"\x00" * 16)
        return root

    return _builder


def merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Shallow+deep merge helper for fixture config dictionaries.
    """
    result: Dict[str, Any] = dict(base)
    for key, value in override.items():
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = merge_dicts(result[key], value)
        else:
            result[key] = value
    return result
