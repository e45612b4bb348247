"""
Device Registry: the in-memory table of known peers.

Pure data plus eviction logic. Callers pass the current time in, so the
registry never reads a clock or touches the network.
"""

from config import DEVICE_TIMEOUT
from discovery.models import Announcement, Device, classify_platform


class DeviceRegistry:
    """Known devices keyed by device id."""

    def __init__(self, timeout: float = DEVICE_TIMEOUT) -> None:
        self.timeout = timeout
        self._devices: dict[str, Device] = {}

    def upsert(self, announcement: Announcement, source_address: str, now: float) -> bool:
        """
        Record or refresh a device from a validated announcement.

        ``source_address`` is the transport-observed sender address and always
        wins over anything the payload says. Returns True when the device was
        not known or had gone offline.
        """
        existing = self._devices.get(announcement.device_id)
        is_new = existing is None or not existing.online

        self._devices[announcement.device_id] = Device(
            device_id=announcement.device_id,
            device_name=announcement.device_name,
            ip_address=source_address,
            transfer_port=announcement.transfer_port,
            platform=announcement.platform,
            device_type=classify_platform(announcement.platform),
            online=True,
            last_seen=now,
        )
        return is_new

    def sweep(self, now: float) -> list[Device]:
        """Flag every device silent for longer than the timeout as offline."""
        newly_offline = []
        for device in self._devices.values():
            if device.online and now - device.last_seen > self.timeout:
                device.online = False
                newly_offline.append(device)
        return newly_offline

    def list(self) -> list[Device]:
        """Snapshot of the online devices."""
        return [d.model_copy() for d in self._devices.values() if d.online]

    def get(self, device_id: str) -> Device | None:
        device = self._devices.get(device_id)
        return device.model_copy() if device else None

    def __len__(self) -> int:
        return len(self._devices)
