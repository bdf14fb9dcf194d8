import pytest

from aura_sync.core.settings import Settings


def _settings(**values):
    return Settings(_env_file=None, **values)


@pytest.mark.parametrize(
    ("api_url", "ws_url"),
    [
        ("https://aura.example/", "wss://aura.example/ws"),
        ("http://localhost:8000", "ws://localhost:8000/ws"),
    ],
)
def test_push_url_is_derived_from_api_url(api_url, ws_url):
    config = _settings(AURA_API_URL=api_url)

    assert config.api_enabled is True
    assert config.effective_ws_url == ws_url


def test_explicit_push_url_wins():
    config = _settings(AURA_API_URL="https://aura.example", AURA_WS_URL="wss://push.example/live")

    assert config.effective_ws_url == "wss://push.example/live"


def test_environment_overrides_defaults(monkeypatch):
    monkeypatch.setenv("AURA_CHAT_POLL_INTERVAL_SECONDS", "5")
    monkeypatch.setenv("AURA_RECONNECT_MAX_SECONDS", "3.5")
    monkeypatch.delenv("AURA_API_URL", raising=False)

    config = _settings()

    assert config.chat_poll_interval_seconds == 5.0
    assert config.reconnect_max_seconds == 3.5
    assert config.reconnect_base_seconds == 0.7
    assert config.api_enabled is False
