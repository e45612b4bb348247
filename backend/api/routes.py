"""REST API routes for the LanDrop UI."""

import asyncio
import logging
import os

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from transfer.files import entries_from_paths, entry_for_file, scan_directory
from transfer.models import FileEntry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_discovery_service = None
_transfer_manager = None


def init_routes(discovery_service, transfer_manager) -> None:
    """Inject service dependencies into the routes module."""
    global _discovery_service, _transfer_manager
    _discovery_service = discovery_service
    _transfer_manager = transfer_manager


# --- Devices ---

@router.get("/device")
async def local_device():
    """Return how this device announces itself."""
    identity = _discovery_service.identity
    return {
        "device_id": identity.device_id,
        "device_name": identity.device_name,
        "platform": identity.platform,
        "transfer_port": _discovery_service.transfer_port,
    }


@router.get("/devices")
async def list_devices():
    """Return the currently online devices."""
    devices = _discovery_service.get_devices()
    return {"devices": [d.model_dump(mode="json") for d in devices]}


@router.post("/devices/refresh")
async def refresh_devices():
    """Re-announce ourselves now and return the current device list."""
    _discovery_service.announce()
    devices = _discovery_service.get_devices()
    return {"devices": [d.model_dump(mode="json") for d in devices]}


# --- Native pickers ---

def _ask(folder: bool):
    """Open a native picker on the host machine."""
    import tkinter as tk
    from tkinter import filedialog

    # Tkinter requires a root window, but we don't want to show it
    root = tk.Tk()
    root.withdraw()
    root.attributes("-topmost", True)  # Bring dialog to front
    try:
        if folder:
            return filedialog.askdirectory(title="Select a folder to transfer")
        return filedialog.askopenfilenames(title="Select files to transfer")
    finally:
        root.destroy()


# Plain ``def`` so the blocking dialog runs in the threadpool, not on the event loop
@router.post("/select-files")
def select_files():
    paths = _ask(folder=False) or ()
    files = [entry_for_file(p) for p in paths if os.path.isfile(p)]
    return {"files": [f.model_dump(mode="json") for f in files]}


@router.post("/select-folder")
def select_folder():
    folder = _ask(folder=True)
    if not folder:
        return {"files": []}
    files = scan_directory(folder)
    return {"files": [f.model_dump(mode="json") for f in files]}


# --- Transfers ---

class CreateTransferBody(BaseModel):
    peer_id: str
    files: list[FileEntry] = []
    file_paths: list[str] = []


@router.get("/transfers")
async def list_transfers():
    """Return all transfers still in progress."""
    transfers = _transfer_manager.get_transfers()
    return {"transfers": [t.model_dump(mode="json") for t in transfers]}


@router.get("/transfers/{transfer_id}")
async def get_transfer(transfer_id: str):
    task = _transfer_manager.get_transfer(transfer_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Transfer not found")
    return task.model_dump(mode="json")


@router.post("/transfers")
async def create_transfer(body: CreateTransferBody):
    """Send picked entries and/or raw local paths to a peer.

    The backend reads files directly from disk; nothing is uploaded.
    """
    device = _discovery_service.get_device(body.peer_id)
    if device is None or not device.online:
        raise HTTPException(status_code=404, detail="Peer not found")

    # Folder walks touch the disk; keep them off the event loop
    files = list(body.files) + await asyncio.to_thread(entries_from_paths, body.file_paths)
    if not files:
        raise HTTPException(status_code=400, detail="No valid files selected")

    try:
        transfer_id = await _transfer_manager.send(device, files)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"transfer_id": transfer_id, "message": f"Sending {len(files)} item(s)"}


@router.post("/transfers/{transfer_id}/cancel")
async def cancel_transfer(transfer_id: str):
    if not _transfer_manager.cancel_transfer(transfer_id):
        raise HTTPException(status_code=404, detail="No active transfer with that id")
    return {"status": "cancelling"}


@router.post("/transfers/{transfer_id}/accept")
async def accept_transfer(transfer_id: str):
    if not _transfer_manager.respond_to_request(transfer_id, accept=True):
        raise HTTPException(status_code=404, detail="No pending request with that id")
    return {"status": "accepted"}


@router.post("/transfers/{transfer_id}/reject")
async def reject_transfer(transfer_id: str):
    if not _transfer_manager.respond_to_request(transfer_id, accept=False):
        raise HTTPException(status_code=404, detail="No pending request with that id")
    return {"status": "rejected"}


# --- Settings ---

class SettingsBody(BaseModel):
    device_name: str | None = None
    save_dir: str | None = None


@router.get("/settings")
async def get_settings():
    return {
        "device_name": _discovery_service.device_name,
        "save_dir": _transfer_manager.save_dir,
        "auto_accept": _transfer_manager.auto_accept,
    }


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.device_name is not None:
        if not body.device_name.strip():
            raise HTTPException(status_code=400, detail="Device name cannot be empty")
        _discovery_service.device_name = body.device_name.strip()
    if body.save_dir is not None:
        try:
            _transfer_manager.save_dir = body.save_dir
        except OSError as e:
            raise HTTPException(
                status_code=400, detail=f"Invalid directory: {e}"
            )
    return {"status": "updated"}
