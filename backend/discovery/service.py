"""
UDP-based LAN discovery service.

Broadcasts a periodic announcement and listens for announcements from
other LanDrop instances on the same broadcast domain.
"""

import asyncio
import logging
import socket
import time

from config import (
    ANNOUNCE_INTERVAL,
    BROADCAST_ADDRESS,
    DISCOVERY_PORT,
    SWEEP_INTERVAL,
    TRANSFER_PORT,
)
from discovery.identity import DeviceIdentity
from discovery.models import Announcement, Device
from discovery.registry import DeviceRegistry

logger = logging.getLogger(__name__)

DEVICE_DISCOVERED = "device_discovered"
DEVICE_OFFLINE = "device_offline"
DISCOVERY_FAILED = "discovery_failed"


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol for receiving announcements."""

    def __init__(self, service: "DiscoveryService"):
        self.service = service

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self.service.handle_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        # ICMP errors for a single datagram, not fatal
        logger.warning(f"Discovery UDP error: {exc}")

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            self.service.handle_socket_failure(exc)


class DiscoveryService:
    """Manages LAN device discovery via UDP broadcast."""

    def __init__(
        self,
        identity: DeviceIdentity,
        registry: DeviceRegistry,
        port: int = DISCOVERY_PORT,
        broadcast_address: str = BROADCAST_ADDRESS,
        announce_interval: float = ANNOUNCE_INTERVAL,
        sweep_interval: float = SWEEP_INTERVAL,
        clock=time.time,
    ) -> None:
        self.identity = identity
        self.registry = registry
        self.port = port
        self.broadcast_address = broadcast_address
        self.announce_interval = announce_interval
        self.sweep_interval = sweep_interval
        self._clock = clock

        self._transport: asyncio.DatagramTransport | None = None
        self._announce_task: asyncio.Task | None = None
        self._sweep_task: asyncio.Task | None = None
        self._on_device_change: list = []  # callbacks: async def fn(event, device)
        self._transfer_port = TRANSFER_PORT
        self.failure: Exception | None = None

    @property
    def transfer_port(self) -> int:
        return self._transfer_port

    @transfer_port.setter
    def transfer_port(self, port: int) -> None:
        self._transfer_port = port

    @property
    def device_name(self) -> str:
        return self.identity.device_name

    @device_name.setter
    def device_name(self, name: str) -> None:
        self.identity.device_name = name

    @property
    def running(self) -> bool:
        return self._transport is not None

    def on_device_change(self, callback) -> None:
        """Register a callback for device discovered/offline events."""
        self._on_device_change.append(callback)

    async def start(self) -> None:
        """Bind the broadcast endpoint and start the announce and sweep timers."""
        logger.info(f"Starting discovery on UDP port {self.port}")

        loop = asyncio.get_running_loop()

        # SO_REUSEADDR set BEFORE binding so several instances can share the port
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.setblocking(False)
            sock.bind(("0.0.0.0", self.port))
        except OSError:
            sock.close()
            raise

        transport, _ = await loop.create_datagram_endpoint(
            lambda: DiscoveryProtocol(self),
            sock=sock,
        )
        self._transport = transport
        # Port 0 means "any"; announce on whatever we actually got
        self.port = transport.get_extra_info("sockname")[1]
        self.failure = None

        self._announce_task = asyncio.create_task(self._announce_loop())
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("Discovery service started")

    async def stop(self) -> None:
        """Stop the timers and release the endpoint."""
        self._stop_timers()
        if self._transport:
            self._transport.close()
            self._transport = None
        logger.info("Discovery service stopped")

    def _stop_timers(self) -> None:
        for task in (self._announce_task, self._sweep_task):
            if task and task is not asyncio.current_task():
                task.cancel()
        self._announce_task = None
        self._sweep_task = None

    def get_devices(self) -> list[Device]:
        """Return a snapshot of the currently online devices."""
        return self.registry.list()

    def get_device(self, device_id: str) -> Device | None:
        return self.registry.get(device_id)

    def build_announcement(self) -> Announcement:
        return Announcement(
            device_id=self.identity.device_id,
            device_name=self.identity.device_name,
            platform=self.identity.platform,
            transfer_port=self._transfer_port,
            timestamp=int(self._clock() * 1000),
        )

    def announce(self) -> None:
        """Send one announcement now. Send failures are logged and ignored."""
        if not self._transport:
            return
        try:
            data = self.build_announcement().encode()
            self._transport.sendto(data, (self.broadcast_address, self.port))
        except OSError as e:
            logger.warning(f"Broadcast failed: {e}")

    def handle_datagram(self, data: bytes, addr: tuple[str, int]) -> None:
        """Ingest one packet; anything that is not a peer's announcement is dropped."""
        try:
            announcement = Announcement.decode(data)
        except ValueError as e:
            logger.debug(f"Ignoring invalid discovery packet from {addr}: {e}")
            return

        if announcement.device_id == self.identity.device_id:
            return

        is_new = self.registry.upsert(announcement, addr[0], self._clock())
        if is_new:
            device = self.registry.get(announcement.device_id)
            logger.info(f"Discovered device: {device.device_name} ({device.ip_address})")
            self._notify(DEVICE_DISCOVERED, device)

    def sweep(self) -> list[Device]:
        """Evict stale devices and notify about each one exactly once."""
        stale = self.registry.sweep(self._clock())
        for device in stale:
            logger.info(f"Device offline: {device.device_name} ({device.ip_address})")
            self._notify(DEVICE_OFFLINE, device.model_copy())
        return stale

    def handle_socket_failure(self, exc: Exception) -> None:
        """The endpoint died underneath us. Discovery stays down until restarted."""
        logger.error(f"Discovery socket failed: {exc}")
        self.failure = exc
        self._stop_timers()
        self._transport = None
        self._notify(DISCOVERY_FAILED, exc)

    def _notify(self, event: str, payload) -> None:
        for cb in self._on_device_change:
            asyncio.ensure_future(cb(event, payload))

    async def _announce_loop(self) -> None:
        """Periodically send an announcement."""
        while True:
            self.announce()
            await asyncio.sleep(self.announce_interval)

    async def _sweep_loop(self) -> None:
        """Periodically flag devices that have gone quiet."""
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()
