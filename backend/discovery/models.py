"""Pydantic models for device discovery."""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DESKTOP_PLATFORMS = ("win32", "darwin", "linux")


class DeviceType(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"


def classify_platform(platform: str) -> DeviceType:
    """Coarse device classification from an announced platform tag."""
    if platform in DESKTOP_PLATFORMS:
        return DeviceType.DESKTOP
    return DeviceType.MOBILE


class Device(BaseModel):
    """Represents a discovered device on the LAN."""
    device_id: str
    device_name: str
    ip_address: str
    transfer_port: int
    platform: str
    device_type: DeviceType = DeviceType.DESKTOP
    online: bool = True
    last_seen: float  # Unix timestamp


class Announcement(BaseModel):
    """The JSON payload broadcast over UDP, one per announce interval."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    kind: Literal["announce"] = "announce"
    device_id: str = Field(min_length=1)
    device_name: str
    platform: str
    transfer_port: int = Field(gt=0, lt=65536)
    timestamp: int  # milliseconds since the epoch, sender clock

    def encode(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def decode(cls, data: bytes) -> "Announcement":
        """Parse a datagram. Raises ``ValueError`` on anything malformed."""
        return cls.model_validate_json(data)
