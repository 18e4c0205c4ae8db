"""
Configuration management for chess-voice.

Handles loading/saving user preferences to a JSON config file.
"""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, Optional

from chess_voice.logging_config import get_logger

logger = get_logger("config")

DEFAULT_STUN_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
]


class Config:
    """
    Application configuration with persistent storage.
    """

    DEFAULT_CONFIG = {
        "audio": {
            "input_device": None,  # None = system default
            "output_device": None,
            "sample_rate": 48000,
            "frame_ms": 20,
            "echo_cancellation": True,
            "noise_suppression": True,
            "auto_gain_control": True,
            "agc_target_level": -18.0,  # dBFS
            "agc_max_gain": 12.0,  # dB
            "noise_gate_threshold": -50.0,  # dBFS, blocks below are silenced
        },
        "network": {
            "stun_servers": DEFAULT_STUN_SERVERS,
            "transport": "reticulum",  # reticulum, loopback
            "app_name": "chess_voice",
            "fragment_timeout_sec": 10.0,
        },
        "call": {
            "topic_prefix": "voice-",
            "grace_delay_ms": 1500,  # wait for the remote "ready" before offering
            "meter_interval_ms": 100,
            "auto_answer": True,
            "dupe_window_sec": 1.0,
        },
    }

    def __init__(self, config_path: Optional[Path] = None) -> None:
        """
        Initialize configuration.

        Args:
            config_path: Path to config file. If None, uses ~/.chess_voice/config.json
        """
        if config_path is None:
            config_dir = Path.home() / ".chess_voice"
            config_dir.mkdir(exist_ok=True)
            config_path = config_dir / "config.json"

        self.config_path = config_path
        self._data: dict[str, Any] = {}
        self.load()

    def load(self) -> None:
        """Load configuration from file, or use defaults if file doesn't exist."""
        if self.config_path.exists():
            try:
                with open(self.config_path, "r") as f:
                    loaded = json.load(f)
                self._data = self._merge_defaults(loaded)
            except Exception as exc:
                logger.error(f"Failed to load config from {self.config_path}: {exc}")
                logger.warning("Using default configuration")
                self._data = copy.deepcopy(self.DEFAULT_CONFIG)
        else:
            self._data = copy.deepcopy(self.DEFAULT_CONFIG)

    def save(self) -> None:
        """Save current configuration to file."""
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w") as f:
                json.dump(self._data, f, indent=2)
        except Exception as exc:
            logger.error(f"Failed to save config to {self.config_path}: {exc}")

    def _merge_defaults(self, loaded: dict[str, Any]) -> dict[str, Any]:
        """Merge loaded config with defaults to handle missing keys."""
        result = copy.deepcopy(self.DEFAULT_CONFIG)
        for section_key, section_defaults in self.DEFAULT_CONFIG.items():
            if section_key in loaded and isinstance(section_defaults, dict):
                merged_section = copy.deepcopy(section_defaults)
                merged_section.update(loaded[section_key])
                result[section_key] = merged_section
            elif section_key in loaded:
                result[section_key] = loaded[section_key]
        return result

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        return self._data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        """Set a configuration value."""
        if section not in self._data:
            self._data[section] = {}
        self._data[section][key] = value

    def get_section(self, section: str) -> dict[str, Any]:
        """Get an entire configuration section."""
        return self._data.get(section, {}).copy()

    @property
    def audio_input_device(self) -> Optional[int]:
        return self.get("audio", "input_device")

    @audio_input_device.setter
    def audio_input_device(self, value: Optional[int]) -> None:
        self.set("audio", "input_device", value)

    @property
    def audio_output_device(self) -> Optional[int]:
        return self.get("audio", "output_device")

    @audio_output_device.setter
    def audio_output_device(self, value: Optional[int]) -> None:
        self.set("audio", "output_device", value)

    @property
    def sample_rate(self) -> int:
        return self.get("audio", "sample_rate", 48000)

    @property
    def frame_ms(self) -> int:
        return self.get("audio", "frame_ms", 20)

    @property
    def echo_cancellation(self) -> bool:
        return self.get("audio", "echo_cancellation", True)

    @echo_cancellation.setter
    def echo_cancellation(self, value: bool) -> None:
        self.set("audio", "echo_cancellation", value)

    @property
    def noise_suppression(self) -> bool:
        return self.get("audio", "noise_suppression", True)

    @noise_suppression.setter
    def noise_suppression(self, value: bool) -> None:
        self.set("audio", "noise_suppression", value)

    @property
    def auto_gain_control(self) -> bool:
        return self.get("audio", "auto_gain_control", True)

    @auto_gain_control.setter
    def auto_gain_control(self, value: bool) -> None:
        self.set("audio", "auto_gain_control", value)

    @property
    def stun_servers(self) -> list[str]:
        """Get the STUN server URLs handed to the peer connection."""
        return list(self.get("network", "stun_servers", DEFAULT_STUN_SERVERS))

    @stun_servers.setter
    def stun_servers(self, value: list[str]) -> None:
        """Set the STUN server URLs."""
        for url in value:
            if not url.startswith(("stun:", "stuns:")):
                raise ValueError(f"Invalid STUN server URL: {url}")
        self.set("network", "stun_servers", list(value))

    @property
    def transport(self) -> str:
        """Get signaling transport (reticulum, loopback)."""
        return self.get("network", "transport", "reticulum")

    @transport.setter
    def transport(self, value: str) -> None:
        """Set signaling transport."""
        if value not in ["reticulum", "loopback"]:
            raise ValueError(f"Invalid transport: {value}")
        self.set("network", "transport", value)

    @property
    def app_name(self) -> str:
        return self.get("network", "app_name", "chess_voice")

    @property
    def fragment_timeout_sec(self) -> float:
        return self.get("network", "fragment_timeout_sec", 10.0)

    @property
    def topic_prefix(self) -> str:
        return self.get("call", "topic_prefix", "voice-")

    @property
    def grace_delay(self) -> float:
        """Get the initiator's grace delay in seconds."""
        return self.get("call", "grace_delay_ms", 1500) / 1000.0

    @grace_delay.setter
    def grace_delay(self, value: float) -> None:
        """Set the initiator's grace delay in seconds."""
        if value < 0:
            raise ValueError("Grace delay cannot be negative")
        self.set("call", "grace_delay_ms", int(value * 1000))

    @property
    def meter_interval(self) -> float:
        """Get the audio meter sampling interval in seconds."""
        return self.get("call", "meter_interval_ms", 100) / 1000.0

    @property
    def auto_answer(self) -> bool:
        return self.get("call", "auto_answer", True)

    @auto_answer.setter
    def auto_answer(self, value: bool) -> None:
        self.set("call", "auto_answer", value)

    @property
    def dupe_window_sec(self) -> float:
        return self.get("call", "dupe_window_sec", 1.0)
