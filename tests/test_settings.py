from __future__ import annotations

from pathlib import Path

from ciflow.settings import load_settings
from ciflow.triggers import is_protected


def test_defaults():
    settings = load_settings({})
    assert settings.home == Path(".ciflow")
    assert settings.artifact_dir == Path(".ciflow") / "artifacts"
    assert settings.protected_branches == ("main",)
    assert settings.max_parallel is None
    assert settings.kill_grace == 10.0
    assert settings.history_url == "sqlite:///.ciflow/history.db"


def test_protected_branches_from_environment():
    settings = load_settings({"CIFLOW_PROTECTED_BRANCHES": " main, release/* ,,"})
    assert settings.protected_branches == ("main", "release/*")
    assert is_protected("refs/heads/release/2.0", settings.protected_branches)
    assert not is_protected("refs/heads/feature", settings.protected_branches)


def test_numeric_overrides(tmp_path):
    settings = load_settings(
        {
            "CIFLOW_HOME": str(tmp_path),
            "CIFLOW_MAX_PARALLEL": "3",
            "CIFLOW_KILL_GRACE": "0.5",
            "CIFLOW_ARTIFACT_RETENTION": "60",
        }
    )
    assert settings.max_parallel == 3
    assert settings.kill_grace == 0.5
    assert settings.artifact_retention == 60.0
    assert settings.artifact_dir == tmp_path / "artifacts"
