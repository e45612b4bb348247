"""Transfer Client: opens the outbound connection for a sender session."""

import asyncio
import logging

from config import CONNECT_TIMEOUT, MAX_CONTROL_LINE
from transfer.models import TransferTask
from transfer.session import SenderSession, describe_error

logger = logging.getLogger(__name__)


class TransferClient:
    def __init__(self, connect_timeout: float = CONNECT_TIMEOUT, limit: int = MAX_CONTROL_LINE) -> None:
        self.connect_timeout = connect_timeout
        self.limit = limit

    async def send(self, session: SenderSession, host: str, port: int) -> TransferTask:
        """Connect to ``host:port`` and run ``session`` to a terminal state."""
        logger.info(f"Connecting to {host}:{port} for transfer {session.task.transfer_id}")
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port, limit=self.limit),
                timeout=self.connect_timeout,
            )
        except asyncio.CancelledError:
            await session.abort(cancelled=True)
            return session.task
        except (OSError, asyncio.TimeoutError) as e:
            await session.abort(f"Could not connect to {host}:{port}: {describe_error(e)}")
            return session.task

        return await session.run(reader, writer)
