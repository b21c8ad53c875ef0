"""REST API routes for the device agent."""

import logging
import os

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from errors import (
    DeviceNotFoundError,
    NegotiationError,
    NoDeviceSelectedError,
    NoSessionError,
    SessionBusyError,
)
from transfer.models import TransferRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# Injected by agent.py at startup
_transfer_manager = None


def init_routes(transfer_manager) -> None:
    """Inject the transfer manager into the routes module."""
    global _transfer_manager
    _transfer_manager = transfer_manager


# --- Devices ---

@router.get("/devices")
async def list_devices():
    """Return the other devices on the relay and the current selection."""
    return _transfer_manager.devices_payload()


@router.post("/devices/{device_id}/select")
async def select_device(device_id: str):
    try:
        device = await _transfer_manager.select_device(device_id)
    except DeviceNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"selected": device.model_dump(mode="json")}


# --- Transfers ---

@router.get("/transfers")
async def get_transfer():
    """Return the current transfer, if any."""
    info = _transfer_manager.get_transfer()
    return {
        "transfer": info.model_dump() if info else None,
        "ui_state": _transfer_manager.ui_state.value,
    }


@router.post("/transfers")
async def create_transfer(body: TransferRequest):
    """Offer local files (absolute paths) to the selected device."""
    valid_paths = []
    for path in body.file_paths:
        if os.path.isfile(path):
            valid_paths.append(path)
        else:
            logger.warning(f"Skipping invalid file path: {path}")

    if not valid_paths:
        raise HTTPException(status_code=400, detail="No valid files selected")

    try:
        info = await _transfer_manager.send_files(valid_paths, peer_id=body.peer_id)
    except DeviceNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except NoDeviceSelectedError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SessionBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {
        "transfer": info.model_dump(),
        "message": f"Offered {info.file_count} file(s) to {info.peer_device_name}",
    }


@router.post("/transfers/accept")
async def accept_transfer():
    try:
        info = await _transfer_manager.accept()
    except NoSessionError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except NegotiationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"status": "accepted", "transfer": info.model_dump()}


@router.post("/transfers/reject")
async def reject_transfer():
    try:
        await _transfer_manager.reject()
    except NoSessionError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except NegotiationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"status": "rejected"}


@router.post("/transfers/cancel")
async def cancel_transfer():
    await _transfer_manager.cancel()
    return {"status": "cancelled"}


# --- Settings ---

class SettingsBody(BaseModel):
    device_name: str | None = None
    save_dir: str | None = None


@router.get("/settings")
async def get_settings():
    return {
        "device_id": _transfer_manager.device_id,
        "device_name": _transfer_manager.device_name,
        "save_dir": _transfer_manager.save_dir,
    }


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.save_dir is not None:
        try:
            _transfer_manager.save_dir = body.save_dir
        except OSError as e:
            raise HTTPException(status_code=400, detail=f"Invalid directory: {e}")
    if body.device_name is not None:
        await _transfer_manager.rename(body.device_name)
    return {"status": "updated"}
