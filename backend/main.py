"""
LanDrop: FastAPI application entry point.

Starts the Discovery Service and Transfer Manager on startup,
serves the REST API and WebSocket endpoint for the UI.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from config import API_HOST, API_PORT
from discovery.identity import DeviceIdentity
from discovery.registry import DeviceRegistry
from discovery.service import DISCOVERY_FAILED, DiscoveryService
from transfer.manager import TransferManager

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ws_manager = ConnectionManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop background services."""
    logger.info("Starting LanDrop services...")

    identity = DeviceIdentity()
    discovery_service = DiscoveryService(identity, DeviceRegistry())
    transfer_manager = TransferManager(identity)
    init_routes(discovery_service, transfer_manager)

    try:
        # Wire up event broadcasting
        transfer_manager.on_event(ws_manager.handle_event)

        async def on_device_event(event: str, payload):
            if event == DISCOVERY_FAILED:
                # Not restarted automatically; the UI decides what to do
                logger.critical(f"Discovery stopped: {payload}")
            await ws_manager.broadcast(event, payload)

        discovery_service.on_device_change(on_device_event)

        # Receiver first, so the announced port is the one actually bound
        await transfer_manager.start()
        discovery_service.transfer_port = transfer_manager.receiver_port
        await discovery_service.start()

        logger.info(
            f"LanDrop ready. "
            f"API: {API_HOST}:{API_PORT}, "
            f"Receiver port: {transfer_manager.receiver_port}"
        )

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        # Shutdown
        logger.info("Shutting down LanDrop services...")
        await discovery_service.stop()
        await transfer_manager.stop()


# --- FastAPI app ---
app = FastAPI(
    title="LanDrop",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173", "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await ws_manager.connect(websocket)
    try:
        while True:
            # Keep the connection alive; we don't expect client messages
            await websocket.receive_text()
    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)
    except Exception:
        await ws_manager.disconnect(websocket)


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
