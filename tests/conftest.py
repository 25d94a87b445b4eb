from __future__ import annotations

import pytest


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host STEADYTAKE_* overrides out of the tests."""

    for name in ("STEADYTAKE_CAMERA", "STEADYTAKE_CAMERA_FPS", "STEADYTAKE_RECORDINGS_DIR"):
        monkeypatch.delenv(name, raising=False)
