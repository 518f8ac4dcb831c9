import pytest

from src.config.configuration import LoopConfig, Settings


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("SESSION_DB_PATH", "/tmp/agent.db")
    monkeypatch.setenv("HEARTBEAT_INTERVAL", "2.5")
    monkeypatch.setenv("DOOM_LOOP_THRESHOLD", "4")
    monkeypatch.setenv("GATEWAY_RETRIES", "not-a-number")
    monkeypatch.setenv("MAX_ITERATIONS", "12")
    monkeypatch.setenv("ALLOWED_ORIGINS", "http://a.test, http://b.test,")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.session_db_path == "/tmp/agent.db"
    assert settings.heartbeat_interval == 2.5
    assert settings.allowed_origins == ("http://a.test", "http://b.test")
    assert settings.log_level == "DEBUG"
    assert settings.loop.doom_loop_threshold == 4
    assert settings.loop.gateway_retries == 0
    assert settings.loop.max_iterations == 12


def test_defaults_have_no_iteration_ceiling(monkeypatch):
    monkeypatch.delenv("MAX_ITERATIONS", raising=False)
    monkeypatch.delenv("DOOM_LOOP_THRESHOLD", raising=False)

    loop = Settings.from_env().loop

    assert loop.max_iterations is None
    assert loop.doom_loop_threshold == 3


def test_loop_config_validation():
    with pytest.raises(ValueError):
        LoopConfig(doom_loop_threshold=0)
    with pytest.raises(ValueError):
        LoopConfig(doom_loop_threshold=5, doom_loop_window=4)
    with pytest.raises(ValueError):
        LoopConfig(max_iterations=0)


def test_retry_delay_backs_off_up_to_limit():
    config = LoopConfig(retry_delay=1.0, retry_backoff=2.0, max_retry_delay=5.0)

    assert [config.retry_delay_for(attempt) for attempt in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]
