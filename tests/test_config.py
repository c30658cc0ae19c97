import pytest

import config
from config import REQUIRED_ENV, Settings
from errors import ConfigError


@pytest.fixture
def env(monkeypatch):
    monkeypatch.setattr(config, "load_dotenv", lambda: False)
    for name in REQUIRED_ENV.values():
        monkeypatch.setenv(name, f"value-{name.lower()}")
    for name in ("APP_ENV", "R2_ENDPOINT"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_settings_from_env(env):
    env.setenv("APP_ENV", "production")
    env.setenv("R2_ENDPOINT", "https://r2.example")
    settings = Settings.from_env()
    assert settings.firebase_project_id == "value-firebase_project_id"
    assert settings.production is True
    assert settings.storage_endpoint == "https://r2.example"
    assert settings.zaincash_api_url == "https://api.zaincash.iq/transaction/pay"


def test_default_storage_endpoint(env):
    settings = Settings.from_env()
    assert settings.storage_endpoint == "https://value-r2_account_id.r2.cloudflarestorage.com"
    assert settings.production is False


def test_missing_variables_are_all_reported(env):
    env.delenv("FIREBASE_PROJECT_ID")
    env.delenv("ZAINCASH_SECRET_KEY")
    with pytest.raises(ConfigError) as info:
        Settings.from_env()
    assert "FIREBASE_PROJECT_ID" in str(info.value)
    assert "ZAINCASH_SECRET_KEY" in str(info.value)
