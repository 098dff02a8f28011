import sys
from pathlib import Path

import pytest

# Allow `import bookhub` without installing the package.
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def _block_real_network(monkeypatch):
    """Tests must never reach GitHub; use httpx.MockTransport instead."""
    import httpx

    def _blocked(*_args, **_kwargs):
        raise AssertionError("real HTTP request attempted during tests")

    monkeypatch.setattr(httpx.HTTPTransport, "handle_request", _blocked)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "BOOKHUB_GITHUB_TOKEN",
        "BOOKHUB_GITHUB_OWNER",
        "BOOKHUB_GITHUB_REPO",
        "BOOKHUB_GITHUB_BRANCH",
        "BOOKHUB_GITHUB_PATH",
        "BOOKHUB_PROFILE",
        "BOOKHUB_AUTO_SYNC",
        "BOOKHUB_STATE_DIR",
    ):
        monkeypatch.delenv(name, raising=False)
