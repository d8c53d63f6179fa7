import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep a developer's PATCHBRIDGE_* settings from leaking into tests."""
    import os

    for key in list(os.environ):
        if key.startswith("PATCHBRIDGE_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root
