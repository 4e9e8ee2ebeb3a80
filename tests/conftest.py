from __future__ import annotations

from pathlib import Path

import pytest

from viberater.sync.config import SERVER_URL_ENV_VAR


@pytest.fixture(autouse=True)
def isolated_home(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch) -> Path:
    # Keep ~/.viberater (config, credentials, local.db) out of the real home directory.
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv(SERVER_URL_ENV_VAR, raising=False)
    return home
