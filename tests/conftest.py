import sys
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture(autouse=True)
def _isolate_test_env(monkeypatch):
    """
    Ensure tests don't depend on developer shell env vars

    In particular:
    - API auth is disabled unless a test explicitly enables it
    - Provider pacing sleeps are zeroed so retries don't slow the suite
    """
    monkeypatch.setattr("services.shared.config.API_AUTH_TOKEN", "", raising=False)

    monkeypatch.setattr("services.shared.github_client.GH_PAGE_DELAY_SECONDS", 0, raising=False)
    monkeypatch.setattr("services.shared.github_client.GH_RATE_LIMIT_SLEEP_SECONDS", 0, raising=False)
    monkeypatch.setattr("services.shared.github_client.GH_BACKOFF_BASE_SECONDS", 0, raising=False)
