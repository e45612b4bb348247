"""
Transfer Manager: the collaborator-facing side of file transfer.

Owns the receiver server, starts sender sessions, resolves accept/reject
decisions, serializes streaming, and turns session state changes into
events for the UI.
"""

import asyncio
import logging
import os
import uuid

from config import (
    ACCEPT_TIMEOUT,
    AUTO_ACCEPT,
    CHUNK_SIZE,
    DEFAULT_SAVE_DIR,
    IDLE_TIMEOUT,
    PROGRESS_INTERVAL,
    TRANSFER_PORT,
)
from discovery.identity import DeviceIdentity
from discovery.models import Device
from transfer.client import TransferClient
from transfer.models import (
    FileEntry,
    TransferDirection,
    TransferStatus,
    TransferTask,
    total_size_of,
)
from transfer.server import TransferServer
from transfer.session import ReceiverSession, SenderSession, TransferSession

logger = logging.getLogger(__name__)

TRANSFER_REQUEST = "transfer_request"
TRANSFER_STATE = "transfer_state"
TRANSFER_PROGRESS = "transfer_progress"
TRANSFER_COMPLETE = "transfer_complete"
TRANSFER_ERROR = "transfer_error"
NOTIFICATION = "notification"


class TransferManager:
    """Manages all active file transfers of this process."""

    def __init__(
        self,
        identity: DeviceIdentity,
        save_dir: str = DEFAULT_SAVE_DIR,
        host: str = "0.0.0.0",
        port: int = TRANSFER_PORT,
        auto_accept: bool = AUTO_ACCEPT,
        accept_timeout: float = ACCEPT_TIMEOUT,
        chunk_size: int = CHUNK_SIZE,
        progress_interval: float = PROGRESS_INTERVAL,
        idle_timeout: float = IDLE_TIMEOUT,
        client: TransferClient | None = None,
    ) -> None:
        self._identity = identity
        self._save_dir = save_dir
        self.auto_accept = auto_accept
        self.accept_timeout = accept_timeout
        self.chunk_size = chunk_size
        self.progress_interval = progress_interval
        self.idle_timeout = idle_timeout

        self._sessions: dict[str, TransferSession] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._accept_futures: dict[str, asyncio.Future] = {}
        self._event_callbacks: list = []  # (async fn(event_type, data), kinds or None)
        # Only one session may stream at a time; held from Streaming to the end
        self._stream_gate = asyncio.Lock()

        self._server = TransferServer(self._create_receiver, host, port)
        self._client = client or TransferClient()

    @property
    def save_dir(self) -> str:
        return self._save_dir

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self._save_dir = path

    @property
    def receiver_port(self) -> int:
        return self._server.port

    def on_event(self, callback, kinds=None) -> None:
        """Register callback: async fn(event_type: str, data: dict), optionally for some kinds only."""
        self._event_callbacks.append((callback, set(kinds) if kinds else None))

    async def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb, kinds in self._event_callbacks:
            if kinds is not None and event_type not in kinds:
                continue
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    async def start(self) -> None:
        """Start the receiver listener."""
        os.makedirs(self._save_dir, exist_ok=True)
        await self._server.start()

    async def stop(self) -> None:
        """Cancel all transfers and stop the receiver listener."""
        for task in list(self._tasks.values()):
            task.cancel()
        for future in self._accept_futures.values():
            if not future.done():
                future.cancel()
        await self._server.stop()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
        logger.info("Transfer manager stopped")

    def get_transfers(self) -> list[TransferTask]:
        """Return all transfers that have not reached a terminal state."""
        return [s.task for s in self._sessions.values() if s.task is not None]

    def get_transfer(self, transfer_id: str) -> TransferTask | None:
        session = self._sessions.get(transfer_id)
        return session.task if session else None

    async def send(self, device: Device, files: list[FileEntry]) -> str:
        """Start sending ``files`` to ``device``. Returns the new transfer id."""
        if not files:
            raise ValueError("Nothing to send")
        files = [_with_current_size(entry) for entry in files]

        task = TransferTask(
            transfer_id=str(uuid.uuid4()),
            peer_device_id=device.device_id,
            peer_device_name=device.device_name,
            peer_address=device.ip_address,
            files=files,
            total_size=total_size_of(files),
            direction=TransferDirection.OUTBOUND,
        )
        session = SenderSession(
            task,
            device_id=self._identity.device_id,
            device_name=self._identity.device_name,
            stream_gate=self._stream_gate,
            state_callback=self._on_state_change,
            progress_callback=self._on_progress,
            chunk_size=self.chunk_size,
            progress_interval=self.progress_interval,
        )
        self._sessions[task.transfer_id] = session
        self._tasks[task.transfer_id] = asyncio.create_task(
            self._send_task(session, device.ip_address, device.transfer_port)
        )

        await self._emit(TRANSFER_STATE, task.model_dump(mode="json"))
        return task.transfer_id

    async def _send_task(self, session: SenderSession, host: str, port: int) -> None:
        """Task wrapper: run the sender and drop it once it has ended."""
        try:
            await self._client.send(session, host, port)
        except asyncio.CancelledError:
            # Cancelled before the client got to run the session
            await session.abort(cancelled=True)
        finally:
            self._forget(session)

    def _create_receiver(self, reader, writer, peer_address: str) -> ReceiverSession:
        return ReceiverSession(
            reader,
            writer,
            save_dir=self._save_dir,
            decide=self._prompt_accept,
            peer_address=peer_address,
            stream_gate=self._stream_gate,
            idle_timeout=self.idle_timeout,
            state_callback=self._on_state_change,
            progress_callback=self._on_progress,
            chunk_size=self.chunk_size,
            progress_interval=self.progress_interval,
        )

    async def _prompt_accept(self, task: TransferTask) -> tuple[bool, str | None]:
        """
        Decide on an inbound request.

        Unless auto-accepting, creates a Future that is resolved by
        ``respond_to_request`` and rejects when nobody answers in time.
        """
        if self.auto_accept:
            return True, None

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._accept_futures[task.transfer_id] = future

        # Emit event so the UI can show the acceptance dialog
        await self._emit(TRANSFER_REQUEST, task.model_dump(mode="json"))

        try:
            return await asyncio.wait_for(future, timeout=self.accept_timeout)
        except asyncio.TimeoutError:
            logger.info(f"Transfer {task.transfer_id} timed out waiting for acceptance")
            return False, "No response from user"
        finally:
            self._accept_futures.pop(task.transfer_id, None)

    def respond_to_request(self, transfer_id: str, accept: bool, reason: str | None = None) -> bool:
        """Resolve a pending acceptance prompt. Returns False if nothing was waiting."""
        future = self._accept_futures.get(transfer_id)
        if future is None or future.done():
            return False
        if not accept and reason is None:
            reason = "Rejected by user"
        future.set_result((accept, reason))
        return True

    def cancel_transfer(self, transfer_id: str) -> bool:
        """Cancel a transfer in any non-terminal state. Returns False if unknown."""
        task = self._tasks.get(transfer_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def _on_progress(self, session: TransferSession) -> None:
        """Called by sessions when a progress sample is ready."""
        task = session.task
        await self._emit(TRANSFER_PROGRESS, {
            "transfer_id": task.transfer_id,
            "transferred": task.transferred_bytes,
            "total": task.total_size,
            "speed_bps": task.speed_bps,
            "progress_percent": task.progress_percent,
        })

    async def _on_state_change(self, session: TransferSession) -> None:
        """Called by sessions on every state transition."""
        task = session.task
        if self._sessions.get(task.transfer_id) is not session:
            self._register_inbound(session)

        await self._emit(TRANSFER_STATE, task.model_dump(mode="json"))
        if task.is_terminal:
            await self._report_terminal(task)
            self._forget(session)

    def _register_inbound(self, session: TransferSession) -> None:
        task = session.task
        if task.transfer_id in self._sessions:
            # Ids come from the peer; never let one shadow a live transfer
            task.transfer_id = str(uuid.uuid4())
        self._sessions[task.transfer_id] = session
        # Inbound sessions run inside the server's connection handler task
        self._tasks[task.transfer_id] = asyncio.current_task()

    def _forget(self, session: TransferSession) -> None:
        task = session.task
        if task is None or self._sessions.get(task.transfer_id) is not session:
            return
        if task.is_terminal:
            self._sessions.pop(task.transfer_id, None)
            self._tasks.pop(task.transfer_id, None)

    async def _report_terminal(self, task: TransferTask) -> None:
        """Hand a finished transfer to history/UI, with a user-facing notification."""
        data = task.model_dump(mode="json")
        if task.status == TransferStatus.COMPLETED:
            await self._emit(TRANSFER_COMPLETE, data)
        else:
            await self._emit(TRANSFER_ERROR, {
                "transfer_id": task.transfer_id,
                "status": task.status.value,
                "error": task.error_message,
            })

        label = _describe_files(task)
        if task.status == TransferStatus.COMPLETED:
            direction = "sent" if task.direction == TransferDirection.OUTBOUND else "received"
            notification = {"type": "success", "message": f"{label} {direction} successfully!"}
        elif task.status == TransferStatus.FAILED:
            notification = {"type": "error", "message": f"Transfer of {label} failed: {task.error_message}"}
        elif task.status == TransferStatus.CANCELLED:
            notification = {"type": "info", "message": f"Transfer of {label} cancelled."}
        else:
            notification = {"type": "warning", "message": f"Transfer of {label} was rejected."}
        notification["transfer_id"] = task.transfer_id
        await self._emit(NOTIFICATION, notification)


def _with_current_size(entry: FileEntry) -> FileEntry:
    """Re-read a file's size from disk; callers may hold a stale or made-up one."""
    if entry.is_directory:
        return entry
    if not (entry.path and os.path.isfile(entry.path)):
        raise ValueError(f"Not a readable file: {entry.path or entry.name}")
    return entry.model_copy(update={"size": os.path.getsize(entry.path)})


def _describe_files(task: TransferTask) -> str:
    if len(task.files) == 1:
        return f"'{task.files[0].name}'"
    return f"{len(task.files)} items"
