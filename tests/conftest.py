from pathlib import Path
import sys

import pytest

# Ensure project root is on sys.path for tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    from aifunc import config as cfg

    # Prevent tests from accidentally reading your real .env file.
    monkeypatch.setenv("DOTENV_PATH", "tests/.env.DO_NOT_USE")
    for key in ["LLM_PROVIDER", "LLM_MODEL", "LLM_TIMEOUT_SECONDS", "LLM_BASE_URL", "OBS_LOG_ENABLED"]:
        monkeypatch.delenv(key, raising=False)
    cfg._config_adapter.cache_clear()  # type: ignore[attr-defined]
    yield
    cfg._config_adapter.cache_clear()  # type: ignore[attr-defined]
