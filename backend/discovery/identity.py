"""
Persistent device identity.

The device id is generated once and stored in application-private storage
so it survives restarts. The display name is free to change.
"""

import logging
import uuid
from pathlib import Path

from config import CONFIG_DIR, DEVICE_ID_FILE, DEVICE_NAME, PLATFORM

logger = logging.getLogger(__name__)


class DeviceIdentity:
    """The local device as it presents itself to peers."""

    def __init__(
        self,
        config_dir: Path = CONFIG_DIR,
        device_name: str = DEVICE_NAME,
        platform: str = PLATFORM,
    ):
        self._id_path = Path(config_dir) / DEVICE_ID_FILE
        self.device_id = self._load_or_generate_id()
        self.device_name = device_name
        self.platform = platform

        logger.info(f"Device identity: {self.device_name} ({self.device_id})")

    def _load_or_generate_id(self) -> str:
        """Loads the stored device id or creates and stores a new one."""
        if self._id_path.exists():
            try:
                stored = self._id_path.read_text(encoding="utf-8").strip()
                if stored:
                    return stored
            except OSError as e:
                logger.warning(f"Failed to read device id: {e}. Generating new one.")

        device_id = str(uuid.uuid4())
        try:
            self._id_path.parent.mkdir(parents=True, exist_ok=True)
            self._id_path.write_text(device_id, encoding="utf-8")
        except OSError as e:
            # Still usable for this run, just not stable across restarts
            logger.warning(f"Failed to persist device id: {e}")
        return device_id
