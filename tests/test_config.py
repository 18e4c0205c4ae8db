import json

import pytest

from chess_voice.config import DEFAULT_STUN_SERVERS, Config


def test_defaults(tmp_path) -> None:
    config = Config(config_path=tmp_path / "config.json")

    assert config.stun_servers == DEFAULT_STUN_SERVERS
    assert config.topic_prefix == "voice-"
    assert config.grace_delay == 1.5
    assert config.meter_interval == 0.1
    assert config.auto_answer
    assert config.sample_rate == 48000
    assert config.echo_cancellation and config.noise_suppression and config.auto_gain_control


def test_save_and_reload(tmp_path) -> None:
    path = tmp_path / "config.json"
    config = Config(config_path=path)
    config.audio_input_device = 3
    config.grace_delay = 0.25
    config.stun_servers = ["stun:stun.example.org:3478"]
    config.save()

    reloaded = Config(config_path=path)
    assert reloaded.audio_input_device == 3
    assert reloaded.grace_delay == 0.25
    assert reloaded.stun_servers == ["stun:stun.example.org:3478"]


def test_partial_file_is_merged_with_defaults(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"call": {"auto_answer": False}}))

    config = Config(config_path=path)

    assert not config.auto_answer
    assert config.grace_delay == 1.5
    assert config.transport == "reticulum"


def test_corrupt_file_falls_back_to_defaults(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{broken")

    config = Config(config_path=path)

    assert config.topic_prefix == "voice-"


def test_defaults_are_not_shared_between_instances(tmp_path) -> None:
    first = Config(config_path=tmp_path / "a.json")
    second = Config(config_path=tmp_path / "b.json")
    first.set("call", "topic_prefix", "talk-")

    assert second.topic_prefix == "voice-"


def test_setters_validate(tmp_path) -> None:
    config = Config(config_path=tmp_path / "config.json")
    with pytest.raises(ValueError):
        config.stun_servers = ["http://example.org"]
    with pytest.raises(ValueError):
        config.transport = "carrier-pigeon"
    with pytest.raises(ValueError):
        config.grace_delay = -1
