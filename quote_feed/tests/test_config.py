import dataclasses

import pytest

from quote_feed.config import load_settings

_KEYS = (
    "QUOTEMEDIA_USERNAME",
    "QUOTEMEDIA_PASSWORD",
    "QUOTEMEDIA_MARKET_SESSION",
    "QUOTEMEDIA_STAT",
    "QUOTEMEDIA_SID_LOGIN_MODE",
    "QUOTEMEDIA_SYNTHETIC_FALLBACK",
    "QUOTE_FEED_SYMBOLS",
    "QUOTE_FEED_PROBE_MODE",
    "QUOTE_FEED_PROBE_RACE_WIDTH",
    "QUOTE_FEED_STREAM_ENABLED",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for key in _KEYS:
        monkeypatch.delenv(key, raising=False)


def test_load_settings_defaults() -> None:
    settings = load_settings()

    assert settings.poll_interval_seconds == 15.0
    assert settings.default_symbols == []
    assert settings.quotemedia.has_credentials is False
    assert settings.quotemedia.webmaster_id == "101020"
    assert settings.quotemedia.sid_login_mode == "session_form"
    assert settings.quotemedia.market_session == "PRE"
    assert settings.quotemedia.stat == "pg"
    assert settings.quotemedia.synthetic_fallback is False
    assert settings.halts.max_attempts == 3
    assert settings.halts.timeout_seconds == 8.0
    assert settings.retry.probe_max_attempts == 1
    assert settings.probe.mode == "sequential"
    assert settings.stream.enabled is False


def test_load_settings_overrides(monkeypatch) -> None:
    monkeypatch.setenv("QUOTEMEDIA_USERNAME", " trader ")
    monkeypatch.setenv("QUOTEMEDIA_PASSWORD", "hunter2")
    monkeypatch.setenv("QUOTEMEDIA_MARKET_SESSION", "normal")
    monkeypatch.setenv("QUOTEMEDIA_SID_LOGIN_MODE", "JSON")
    monkeypatch.setenv("QUOTE_FEED_SYMBOLS", "aapl, msft,,")
    monkeypatch.setenv("QUOTE_FEED_PROBE_MODE", "concurrent")
    monkeypatch.setenv("QUOTE_FEED_STREAM_ENABLED", "yes")
    monkeypatch.setenv("QUOTEMEDIA_SYNTHETIC_FALLBACK", "1")

    settings = load_settings()

    assert settings.quotemedia.username == "trader"
    assert settings.quotemedia.has_credentials is True
    assert settings.quotemedia.market_session == "NORMAL"
    assert settings.quotemedia.sid_login_mode == "json"
    assert settings.quotemedia.synthetic_fallback is True
    assert settings.default_symbols == ["AAPL", "MSFT"]
    assert settings.probe.mode == "concurrent"
    assert settings.stream.enabled is True


def test_stream_settings_carry_no_reconnect_knob() -> None:
    stream = load_settings().stream
    assert {f.name for f in dataclasses.fields(stream)} == {"enabled", "ws_url", "connect_timeout_seconds"}


def test_load_settings_rejects_unknown_market_session(monkeypatch) -> None:
    monkeypatch.setenv("QUOTEMEDIA_MARKET_SESSION", "LUNCH")
    with pytest.raises(ValueError, match="QUOTEMEDIA_MARKET_SESSION"):
        load_settings()


def test_load_settings_clamps_race_width(monkeypatch) -> None:
    monkeypatch.setenv("QUOTE_FEED_PROBE_RACE_WIDTH", "9")
    assert load_settings().probe.race_width == 3
    monkeypatch.setenv("QUOTE_FEED_PROBE_RACE_WIDTH", "0")
    assert load_settings().probe.race_width == 1


def test_settings_repr_hides_secrets(monkeypatch) -> None:
    monkeypatch.setenv("QUOTEMEDIA_PASSWORD", "hunter2")
    settings = load_settings()
    assert "hunter2" not in repr(settings)
    assert settings.quotemedia.token_hash not in repr(settings)
