"""Device streaming context: the camera data the streaming core reads."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class SwitchType(IntEnum):
    ON = 14
    SLEEP = 21
    AUDIO = 22


@dataclass(slots=True)
class SwitchItem:
    type: int
    enable: bool = False


@dataclass(slots=True)
class DeviceStreamingContext:
    """Connection info, credentials and switch states for one camera.

    Owned by whoever polls the cloud API; the streaming core only reads it,
    and reads it again on every request so switch changes apply to the next
    stream started.
    """

    name: str
    local_ip: str
    channel_number: int
    username: str
    code: str
    serial: str = ""
    switches: list[SwitchItem] = field(default_factory=list)

    def switch_enabled(self, switch_type: SwitchType) -> bool:
        for item in self.switches:
            if item.type == switch_type:
                return item.enable
        return False

    @property
    def sleeping(self) -> bool:
        return self.switch_enabled(SwitchType.SLEEP)

    @property
    def audio_enabled(self) -> bool:
        return self.switch_enabled(SwitchType.AUDIO)

    @property
    def rtsp_url(self) -> str:
        return build_rtsp_url(self.username, self.code, self.local_ip, self.channel_number)


def build_rtsp_url(username: str, code: str, local_ip: str, channel_number: int) -> str:
    """Build the camera's RTSP channel URL with embedded credentials."""
    return f"rtsp://{username}:{code}@{local_ip}/Streaming/Channels/{channel_number}/"


def device_from_dict(data: dict[str, Any]) -> DeviceStreamingContext:
    """Build a context from a settings entry. Missing fields fall back to empty values."""
    switches = [
        SwitchItem(type=int(s["type"]), enable=bool(s.get("enable", False)))
        for s in data.get("switches", [])
        if isinstance(s, dict) and "type" in s
    ]
    return DeviceStreamingContext(
        name=data.get("name", ""),
        local_ip=data.get("local_ip", ""),
        channel_number=int(data.get("channel_number", 1)),
        username=data.get("username", ""),
        code=data.get("code", ""),
        serial=data.get("serial", ""),
        switches=switches,
    )
