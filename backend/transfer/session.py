"""
Transfer Session: the state machine behind one file-transfer conversation.

A sender drives Idle -> RequestSent -> Accepted -> Streaming -> Finishing
-> Completed; a receiver drives Idle -> RequestReceived -> Accepted ->
Streaming -> Finishing -> Completed. Rejected ends a conversation before
any data moves, Failed is reachable from every non-terminal state, and
Cancelled follows a local cancel of the task running the session.
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from enum import Enum
from pathlib import Path

from config import ACK_TIMEOUT, CHUNK_SIZE, IDLE_TIMEOUT, PROGRESS_INTERVAL, RESPONSE_TIMEOUT
from transfer.errors import InvalidTransitionError, ProtocolError, TransferError, UnsafePathError
from transfer.files import resolve_destination, unique_path
from transfer.models import (
    FileEntry,
    TransferCompleteMessage,
    TransferDirection,
    TransferErrorMessage,
    TransferRequestMessage,
    TransferResponseMessage,
    TransferStatus,
    TransferTask,
)
from transfer.progress import ProgressTracker
from transfer.protocol import (
    read_ack,
    read_frame,
    read_request,
    read_response,
    send_chunk,
    send_end,
    send_record,
)

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    REQUEST_SENT = "request_sent"
    REQUEST_RECEIVED = "request_received"
    ACCEPTED = "accepted"
    STREAMING = "streaming"
    FINISHING = "finishing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({
    SessionState.COMPLETED,
    SessionState.REJECTED,
    SessionState.FAILED,
    SessionState.CANCELLED,
})

# Failed and Cancelled are additionally reachable from every non-terminal state
_TRANSITIONS = {
    SessionState.IDLE: {SessionState.REQUEST_SENT, SessionState.REQUEST_RECEIVED},
    SessionState.REQUEST_SENT: {SessionState.ACCEPTED, SessionState.REJECTED},
    SessionState.REQUEST_RECEIVED: {SessionState.ACCEPTED, SessionState.REJECTED},
    SessionState.ACCEPTED: {SessionState.STREAMING},
    SessionState.STREAMING: {SessionState.FINISHING},
    SessionState.FINISHING: {SessionState.COMPLETED},
}

_STATUS_FOR_STATE = {
    SessionState.IDLE: TransferStatus.PENDING,
    SessionState.REQUEST_SENT: TransferStatus.AWAITING_ACCEPTANCE,
    SessionState.REQUEST_RECEIVED: TransferStatus.AWAITING_ACCEPTANCE,
    SessionState.ACCEPTED: TransferStatus.TRANSFERRING,
    SessionState.STREAMING: TransferStatus.TRANSFERRING,
    SessionState.FINISHING: TransferStatus.TRANSFERRING,
    SessionState.COMPLETED: TransferStatus.COMPLETED,
    SessionState.REJECTED: TransferStatus.REJECTED,
    SessionState.FAILED: TransferStatus.FAILED,
    SessionState.CANCELLED: TransferStatus.CANCELLED,
}


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, asyncio.IncompleteReadError):
        return "Connection closed by peer"
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)) and not str(exc):
        return "Timed out"
    return str(exc) or exc.__class__.__name__


class TransferSession:
    """State shared by both roles: transitions, progress and teardown."""

    def __init__(
        self,
        task: TransferTask | None = None,
        state_callback=None,
        progress_callback=None,
        chunk_size: int = CHUNK_SIZE,
        progress_interval: float = PROGRESS_INTERVAL,
        clock=time.monotonic,
    ) -> None:
        self.task = task
        self.chunk_size = chunk_size
        self._state = SessionState.IDLE
        self._state_callback = state_callback  # async fn(session)
        self._progress_callback = progress_callback  # async fn(session)
        self._progress_interval = progress_interval
        self._clock = clock
        self._writer: asyncio.StreamWriter | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    async def _transition(self, state: SessionState, reason: str | None = None) -> None:
        if self._state in TERMINAL_STATES:
            raise InvalidTransitionError(f"Session already ended in {self._state.value}")
        if state not in (SessionState.FAILED, SessionState.CANCELLED) and state not in _TRANSITIONS[self._state]:
            raise InvalidTransitionError(f"Cannot go from {self._state.value} to {state.value}")

        self._state = state
        if self.task is None:
            return

        self.task.status = _STATUS_FOR_STATE[state]
        if reason:
            self.task.error_message = reason
        if state == SessionState.COMPLETED:
            self.task.progress_percent = 100.0

        logger.info(f"Transfer {self.task.transfer_id} -> {state.value}" + (f" ({reason})" if reason else ""))
        if self._state_callback:
            await self._state_callback(self)

    async def abort(self, reason: str | None = None, cancelled: bool = False) -> None:
        """End the session from outside before or instead of ``run``. No-op once terminal."""
        if self.is_terminal:
            return
        if cancelled:
            await self._transition(SessionState.CANCELLED, "Cancelled")
        else:
            await self._transition(SessionState.FAILED, reason or "Aborted")

    async def _handle_failure(self, exc: BaseException) -> None:
        reason = describe_error(exc)
        if self.task is not None:
            logger.error(f"Transfer {self.task.transfer_id} failed: {reason}")
        else:
            logger.error(f"Transfer from unknown sender failed: {reason}")
        if not self.is_terminal:
            await self._transition(SessionState.FAILED, reason)

    def _new_tracker(self) -> ProgressTracker:
        return ProgressTracker(self.task.total_size, self._progress_interval, self._clock)

    async def _account(self, tracker: ProgressTracker, byte_count: int) -> None:
        """Apply ``byte_count`` moved bytes to the task; notify when a sample was taken."""
        sampled = tracker.add(byte_count)
        self.task.transferred_bytes = tracker.transferred
        self.task.progress_percent = tracker.percent
        if sampled:
            self.task.speed_bps = tracker.speed_bps
            await self._notify_progress()

    async def _account_finished(self, tracker: ProgressTracker) -> None:
        tracker.finish()
        self.task.transferred_bytes = tracker.transferred
        self.task.speed_bps = tracker.speed_bps
        self.task.progress_percent = tracker.percent
        await self._notify_progress()

    async def _notify_progress(self) -> None:
        if self._progress_callback:
            await self._progress_callback(self)

    async def _close_connection(self) -> None:
        if self._writer:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (OSError, asyncio.CancelledError):
                pass


class SenderSession(TransferSession):
    """Initiator role: announce a manifest, then stream it if accepted."""

    def __init__(
        self,
        task: TransferTask,
        device_id: str,
        device_name: str,
        response_timeout: float = RESPONSE_TIMEOUT,
        ack_timeout: float = ACK_TIMEOUT,
        stream_gate: asyncio.Lock | None = None,
        **kwargs,
    ) -> None:
        super().__init__(task, **kwargs)
        self.device_id = device_id
        self.device_name = device_name
        self.response_timeout = response_timeout
        self.ack_timeout = ack_timeout
        self._gate = stream_gate

    def build_request(self) -> TransferRequestMessage:
        return TransferRequestMessage(
            total_size=self.task.total_size,
            files=[f.to_manifest() for f in self.task.files],
            transfer_id=self.task.transfer_id,
            device_id=self.device_id,
            device_name=self.device_name,
        )

    async def run(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> TransferTask:
        """Drive the whole conversation over an already open connection."""
        self._writer = writer
        holding_gate = False
        try:
            await send_record(writer, self.build_request())
            await self._transition(SessionState.REQUEST_SENT)

            response = await asyncio.wait_for(read_response(reader), self.response_timeout)
            if not response.accepted:
                await self._transition(SessionState.REJECTED, response.reason or "Rejected by peer")
                return self.task

            await self._transition(SessionState.ACCEPTED)
            if self._gate is not None:
                # Accepted transfers wait here while another session streams
                await self._gate.acquire()
                holding_gate = True
            await self._transition(SessionState.STREAMING)
            await self._stream(writer)

            await self._transition(SessionState.FINISHING)
            await send_end(writer)
            ack = await asyncio.wait_for(read_ack(reader), self.ack_timeout)
            if isinstance(ack, TransferErrorMessage):
                raise TransferError(f"Receiver failed: {ack.reason}")
            await self._transition(SessionState.COMPLETED)

        except asyncio.CancelledError:
            if not self.is_terminal:
                await self._transition(SessionState.CANCELLED, "Cancelled")
        except Exception as e:
            await self._handle_failure(e)
        finally:
            if holding_gate:
                self._gate.release()
            await self._close_connection()

        return self.task

    async def _stream(self, writer: asyncio.StreamWriter) -> None:
        """Send every file's bytes in manifest order; directories carry no data."""
        tracker = self._new_tracker()
        for entry in self.task.files:
            if entry.is_directory:
                continue
            if not entry.path:
                raise TransferError(f"No source path for {entry.name}")

            remaining = entry.size
            with open(entry.path, "rb") as f:
                while remaining > 0:
                    chunk = await asyncio.to_thread(f.read, min(self.chunk_size, remaining))
                    if not chunk:
                        raise TransferError(f"{entry.name} is shorter than its declared size")
                    await send_chunk(writer, chunk)
                    remaining -= len(chunk)
                    await self._account(tracker, len(chunk))

        await self._account_finished(tracker)


class ReceiverSession(TransferSession):
    """Responder role: vet a manifest, ask for a decision, then materialize it."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        save_dir: str | Path,
        decide,
        peer_address: str = "",
        stream_gate: asyncio.Lock | None = None,
        idle_timeout: float = IDLE_TIMEOUT,
        **kwargs,
    ) -> None:
        super().__init__(None, **kwargs)
        self._reader = reader
        self._writer = writer
        self.save_dir = Path(save_dir)
        self._decide = decide  # async fn(task) -> (accepted, reason)
        self.peer_address = peer_address
        self._gate = stream_gate
        self.idle_timeout = idle_timeout
        self._handle = None
        self._accepted = False

    def _task_from_request(self, request: TransferRequestMessage) -> TransferTask:
        return TransferTask(
            transfer_id=request.transfer_id or str(uuid.uuid4()),
            peer_device_id=request.device_id or "unknown",
            peer_device_name=request.device_name or self.peer_address,
            peer_address=self.peer_address,
            files=[
                FileEntry(
                    name=e.name,
                    size=e.size,
                    is_directory=e.is_directory,
                    relative_path=e.relative_path,
                )
                for e in request.files
            ],
            total_size=request.total_size,
            direction=TransferDirection.INBOUND,
        )

    async def run(self) -> TransferTask | None:
        """Handle one inbound connection from request to teardown."""
        holding_gate = False
        try:
            request = await asyncio.wait_for(read_request(self._reader), self.idle_timeout)
            self.task = self._task_from_request(request)
            await self._transition(SessionState.REQUEST_RECEIVED)

            # Every path is vetted before a decision is asked for and before any file I/O
            try:
                destinations = [resolve_destination(self.save_dir, e) for e in request.files]
            except UnsafePathError as e:
                await self._respond(False, str(e))
                raise

            if self._is_busy():
                # Never ask the user about a request that would be refused anyway
                accepted, reason = False, "busy"
            else:
                accepted, reason = await self._decide(self.task)
                if accepted and self._gate is not None:
                    # Something may have started streaming while the user decided
                    if self._is_busy():
                        accepted, reason = False, "busy"
                    else:
                        await self._gate.acquire()
                        holding_gate = True

            if not accepted:
                await self._respond(False, reason)
                await self._transition(SessionState.REJECTED, reason or "Rejected")
                return self.task

            await self._respond(True)
            self._accepted = True
            await self._transition(SessionState.ACCEPTED)
            await self._receive(request, destinations)

            await self._transition(SessionState.FINISHING)
            await send_record(self._writer, TransferCompleteMessage())
            await self._transition(SessionState.COMPLETED)

        except asyncio.CancelledError:
            self._close_file()
            if self.task is not None and not self.is_terminal:
                await self._transition(SessionState.CANCELLED, "Cancelled")
        except Exception as e:
            self._close_file()
            if self._accepted:
                await self._send_error_quietly(describe_error(e))
            await self._handle_failure(e)
        finally:
            self._close_file()
            if holding_gate:
                self._gate.release()
            await self._close_connection()

        return self.task

    def _is_busy(self) -> bool:
        return self._gate is not None and self._gate.locked()

    async def _respond(self, accepted: bool, reason: str | None = None) -> None:
        await send_record(self._writer, TransferResponseMessage(accepted=accepted, reason=reason))

    async def _send_error_quietly(self, reason: str) -> None:
        try:
            await send_record(self._writer, TransferErrorMessage(reason=reason))
        except (OSError, RuntimeError):
            pass

    def _close_file(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    async def _receive(self, request: TransferRequestMessage, destinations: list[Path]) -> None:
        """
        Apply data frames to the manifest entries in order.

        Frames may straddle file boundaries; the declared sizes alone say
        where one file ends and the next begins.
        """
        await self._transition(SessionState.STREAMING)
        tracker = self._new_tracker()
        pending = deque(zip(request.files, destinations))
        remaining = 0

        async def advance() -> None:
            nonlocal remaining
            while self._handle is None and pending:
                entry, destination = pending.popleft()
                if entry.is_directory:
                    await asyncio.to_thread(destination.mkdir, parents=True, exist_ok=True)
                    continue
                handle = await asyncio.to_thread(_open_exclusive, destination)
                if entry.size == 0:
                    handle.close()
                    continue
                self._handle = handle
                remaining = entry.size

        await advance()
        while True:
            payload = await asyncio.wait_for(read_frame(self._reader), self.idle_timeout)
            if payload is None:
                break

            view = memoryview(payload)
            offset = 0
            while offset < len(payload):
                if self._handle is None:
                    raise ProtocolError("Received more data than the manifest declared")
                take = min(remaining, len(payload) - offset)
                await asyncio.to_thread(self._handle.write, view[offset:offset + take])
                remaining -= take
                offset += take
                if remaining == 0:
                    await asyncio.to_thread(self._handle.close)
                    self._handle = None
                    await advance()
            await self._account(tracker, len(payload))

        if self._handle is not None or pending:
            raise ProtocolError("Transfer ended before all declared data arrived")
        await self._account_finished(tracker)


def _open_exclusive(destination: Path):
    """Create ``destination`` (or a free sibling name) for writing; never overwrites."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    return open(unique_path(destination), "xb")
