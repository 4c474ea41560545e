from __future__ import annotations

from pathlib import Path
from urllib.parse import parse_qsl, urlsplit

import pytest
from pydantic import ValidationError

from sermon_scribe.config import (
    BackoffConfig,
    CloudRelayConfig,
    DeepgramConfig,
    NotesConfig,
    RelayServerConfig,
    SessionSettings,
    load_session_settings,
    save_session_settings,
)


def test_deepgram_config_reads_environment() -> None:
    config = DeepgramConfig.from_environment(
        env={"DEEPGRAM_API_KEY": "dg-key", "DEEPGRAM_MODEL": "nova-2"}
    )

    assert config.configured is True
    assert config.model == "nova-2"
    assert DeepgramConfig.from_environment(env={"DEEPGRAM_API_KEY": ""}).configured is False


def test_upstream_url_carries_stream_options() -> None:
    url = DeepgramConfig(keyterms=("Romans", "Psalms")).upstream_url()

    parts = urlsplit(url)
    params = parse_qsl(parts.query)
    assert f"{parts.scheme}://{parts.netloc}{parts.path}" == "wss://api.deepgram.com/v1/listen"
    assert ("interim_results", "true") in params
    assert ("sample_rate", "16000") in params
    assert ("utterance_end_ms", "1000") in params
    assert [value for key, value in params if key == "keyterm"] == ["Romans", "Psalms"]


def test_relay_server_config_from_environment() -> None:
    config = RelayServerConfig.from_environment(
        env={"HOSTNAME": "127.0.0.1", "PORT": "8080", "DEEPGRAM_API_KEY": "dg-key"}
    )

    assert (config.host, config.port) == ("127.0.0.1", 8080)
    assert config.provider.configured is True
    assert config.ws_path == "/api/deepgram-ws"


def test_relay_server_config_rejects_bad_port() -> None:
    with pytest.raises(ValueError, match="PORT"):
        RelayServerConfig.from_environment(env={"PORT": "http"})


def test_cloud_reconnect_policy_defaults() -> None:
    reconnect = CloudRelayConfig().reconnect

    assert reconnect.max_attempts == 3
    assert [reconnect.delay_for(n) for n in (1, 2, 3)] == [1.0, 1.0, 1.0]


def test_backoff_config_is_frozen() -> None:
    config = BackoffConfig()
    with pytest.raises(ValidationError):
        config.base_delay = 1.0  # type: ignore[misc]


def test_notes_config_defaults_without_key() -> None:
    config = NotesConfig.from_environment(env={"OPENAI_NOTES_MODEL": "gpt-4.1-mini"})

    assert config.api_key is None
    assert config.endpoint is None
    assert config.notes_model == "gpt-4.1-mini"
    assert config.summary_model == "gpt-4o"


def test_session_settings_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "settings.json"
    settings = SessionSettings(preferred_source="local", local_model="small.en")

    save_session_settings(path, settings)

    assert load_session_settings(path) == settings


def test_missing_settings_file_yields_defaults(tmp_path: Path) -> None:
    assert load_session_settings(tmp_path / "absent.json") == SessionSettings()


@pytest.mark.parametrize(
    "content",
    ["{not json", '{"preferred_source": "satellite"}', "[]"],
)
def test_invalid_settings_fall_back_to_defaults(tmp_path: Path, content: str) -> None:
    path = tmp_path / "settings.json"
    path.write_text(content, encoding="utf-8")

    assert load_session_settings(path) == SessionSettings()


def test_unknown_settings_keys_are_ignored(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text('{"language": "es", "theme": "dark"}', encoding="utf-8")

    assert load_session_settings(path).language == "es"
