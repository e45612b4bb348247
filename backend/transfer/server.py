"""Transfer Server: one receiver session per inbound connection."""

import asyncio
import logging

from config import MAX_CONTROL_LINE, TRANSFER_PORT

logger = logging.getLogger(__name__)


class TransferServer:
    """
    TCP listener for inbound transfers.

    ``session_factory(reader, writer, peer_address)`` must return an object
    with an async ``run()``; the server only owns the connection plumbing.
    """

    def __init__(
        self,
        session_factory,
        host: str = "0.0.0.0",
        port: int = TRANSFER_PORT,
        limit: int = MAX_CONTROL_LINE,
    ) -> None:
        self._session_factory = session_factory
        self.host = host
        self.port = port
        self.limit = limit
        self._server: asyncio.Server | None = None
        self._handlers: set[asyncio.Task] = set()

    async def start(self) -> None:
        """Bind and listen. Bind failures propagate to the caller."""
        self._server = await asyncio.start_server(
            self._handle_connection,
            self.host,
            self.port,
            limit=self.limit,
        )
        # Port 0 means "any"; report what we actually got
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info(f"Transfer receiver listening on port {self.port}")

    async def stop(self) -> None:
        """Stop listening and cancel every in-flight session."""
        if self._server:
            self._server.close()
        for task in list(self._handlers):
            task.cancel()
        if self._handlers:
            await asyncio.gather(*self._handlers, return_exceptions=True)
        if self._server:
            await self._server.wait_closed()
            self._server = None

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = writer.get_extra_info("peername")
        peer_address = peer[0] if peer else ""
        logger.info(f"New transfer connection from {peer_address}")

        task = asyncio.current_task()
        self._handlers.add(task)
        try:
            session = self._session_factory(reader, writer, peer_address)
            await session.run()
        finally:
            self._handlers.discard(task)
