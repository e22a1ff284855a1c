from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

from aiortc import RTCConfiguration, RTCIceServer


DEFAULT_ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
]


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.environ.get(name)
    if v is None or not v.strip():
        return default
    return v.strip()


def _env_float(name: str, default: float) -> float:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    v = os.environ.get(name)
    if v is None:
        return list(default)
    return [item.strip() for item in v.split(",") if item.strip()]


@dataclass
class CoreConfig:
    """Settings shared by the coordinators and the CLI.

    Every field can be set from a `TEAMCALL_*` environment variable; CLI flags
    take precedence over the environment.
    """

    signaling_url: str = "ws://127.0.0.1:5000/signaling"
    api_base_url: Optional[str] = None
    api_token: Optional[str] = None
    ice_servers: List[str] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    answer_timeout_sec: float = 5.0
    audio_format: Optional[str] = None
    audio_device: Optional[str] = None
    video_format: Optional[str] = None
    video_device: Optional[str] = None
    video_size: str = "640x480"

    @classmethod
    def from_env(cls) -> "CoreConfig":
        return cls(
            signaling_url=_env_str("TEAMCALL_SIGNALING_URL", cls.signaling_url) or cls.signaling_url,
            api_base_url=_env_str("TEAMCALL_API_URL"),
            api_token=_env_str("TEAMCALL_API_TOKEN"),
            ice_servers=_env_list("TEAMCALL_ICE_SERVERS", DEFAULT_ICE_SERVERS),
            answer_timeout_sec=_env_float("TEAMCALL_ANSWER_TIMEOUT_SEC", cls.answer_timeout_sec),
            audio_format=_env_str("TEAMCALL_AUDIO_FORMAT"),
            audio_device=_env_str("TEAMCALL_AUDIO_DEVICE"),
            video_format=_env_str("TEAMCALL_VIDEO_FORMAT"),
            video_device=_env_str("TEAMCALL_VIDEO_DEVICE"),
            video_size=_env_str("TEAMCALL_VIDEO_SIZE", cls.video_size) or cls.video_size,
        )

    def rtc_configuration(self) -> RTCConfiguration:
        return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in self.ice_servers])
